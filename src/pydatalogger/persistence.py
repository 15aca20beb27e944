"""Durable storage for ingested readings.

The router only depends on :class:`PersistenceSink`.  :class:`SqliteSink`
appends every reading to a local SQLite database; :class:`MemorySink` keeps
them in process (dry runs, tests).
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol

from pydatalogger.exceptions import PersistenceError

_logger = logging.getLogger(__name__)

_CREATE_TABLE = """
    CREATE TABLE IF NOT EXISTS readings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        client_id TEXT NOT NULL,
        sensor_id TEXT NOT NULL,
        value REAL NOT NULL,
        recorded_at TEXT NOT NULL
    )
"""
_INSERT = "INSERT INTO readings (client_id, sensor_id, value, recorded_at) VALUES (?, ?, ?, ?)"


class PersistenceSink(Protocol):
    def record(self, client_id: str, sensor_id: str, value: float) -> None:
        """Durably append one reading.  Raises :class:`PersistenceError` on failure."""
        ...


def resolve_database_path(database_file: str | Path, storage_mount: str | Path | None = None) -> Path:
    """Where the database lives.

    A relative *database_file* is placed under *storage_mount* when that is an
    existing directory (e.g. a mounted USB stick), otherwise under the working
    directory.  The parent directory is created if needed.
    """
    path = Path(database_file).expanduser()
    if not path.is_absolute() and storage_mount:
        mount = Path(storage_mount).expanduser()
        if mount.is_dir():
            path = mount / path
        else:
            _logger.warning("Storage mount %s is not available; using %s", mount, path.resolve())
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise PersistenceError(f"Cannot create directory for {path}: {exc}") from exc
    return path


class SqliteSink:
    """Appends readings to a ``readings`` table.

    One connection is kept open; writes are serialized with a lock so the
    sink may be shared across threads.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self._path, check_same_thread=False)
            self._conn.execute(_CREATE_TABLE)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open database {self._path}: {exc}") from exc
        _logger.info("Database %s initialized", self._path)

    @property
    def path(self) -> Path:
        return self._path

    def record(self, client_id: str, sensor_id: str, value: float) -> None:
        recorded_at = datetime.now().astimezone().isoformat(timespec="seconds")
        with self._lock:
            try:
                self._conn.execute(_INSERT, (client_id, sensor_id, value, recorded_at))
                self._conn.commit()
            except sqlite3.Error as exc:
                raise PersistenceError(f"Insert into {self._path} failed: {exc}") from exc

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM readings").fetchone()
        return int(row[0])

    def close(self) -> None:
        with self._lock:
            self._conn.close()


@dataclass
class MemorySink:
    """Keeps recorded readings in a list, oldest dropped beyond *max_records*."""

    records: list[tuple[str, str, float]] = field(default_factory=list)
    max_records: int | None = None

    def record(self, client_id: str, sensor_id: str, value: float) -> None:
        self.records.append((client_id, sensor_id, value))
        if self.max_records is not None and len(self.records) > self.max_records:
            del self.records[0]
