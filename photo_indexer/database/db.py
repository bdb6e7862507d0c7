"""
Database connection management.
"""
import sqlite3
import logging
import threading
import weakref
from pathlib import Path
from typing import Optional, Set

from .schema import init_schema


class _ReaderSlot:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn


def _release_reader(conn: sqlite3.Connection, readers: Set[sqlite3.Connection], lock: threading.Lock):
    with lock:
        readers.discard(conn)
    conn.close()

class DBManager:
    """
    Owns the catalog's SQLite connections.

    One writer connection, serialized by `write_lock`, plus one reader
    connection per thread. WAL mode lets readers run while a write
    transaction is open and they only ever see committed transactions.
    """
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._readers: Set[sqlite3.Connection] = set()
        self._readers_lock = threading.Lock()

    def connect(self) -> sqlite3.Connection:
        """
        Connects the writer to the SQLite database and configures performance pragmas.
        """
        if self._conn:
            return self._conn

        logging.info(f"Connecting to database: {self.db_path}")
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)

        # Performance Tuning (Safe for single-writer, multi-reader)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.execute("PRAGMA temp_store=MEMORY;")
        self._conn.execute("PRAGMA cache_size=10000;")

        # Ensure schema exists
        init_schema(self._conn)

        return self._conn

    def reader(self) -> sqlite3.Connection:
        """
        Returns this thread's read connection (autocommit; callers BEGIN for snapshots).
        The connection is closed once the owning thread exits.
        """
        slot = getattr(self._local, 'slot', None)
        if slot is None:
            self.connect()
            conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
            conn.execute("PRAGMA query_only=ON;")
            slot = _ReaderSlot(conn)
            self._local.slot = slot
            with self._readers_lock:
                self._readers.add(conn)
            # Thread-local data is dropped when its thread ends
            weakref.finalize(slot, _release_reader, conn, self._readers, self._readers_lock)
        return slot.conn

    @property
    def reader_count(self) -> int:
        with self._readers_lock:
            return len(self._readers)

    def close(self):
        with self._readers_lock:
            for conn in self._readers:
                conn.close()
            self._readers.clear()
        self._local = threading.local()
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def write_lock(self) -> threading.Lock:
        """Returns the write lock for thread-safe database operations."""
        return self._write_lock
