"""
SQLite access for Travel Connect.

A TripStore is built once at startup from Settings and passed to the
components that need the database. Connections are opened per operation;
writes go through `transaction()`, which takes the database write lock up
front so a read-check-write sequence cannot interleave with another writer.
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from travel_connect.models import ALL_TABLES, COLUMN_MIGRATIONS, INDEXES

logger = logging.getLogger("travel_connect.db")


def utc_now_iso() -> str:
    """UTC timestamp with Z suffix. Microseconds keep updated_at ordering stable."""
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat(timespec="microseconds") + "Z"


class TripStore:
    def __init__(self, db_path: str, timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self.initialized = False

    def connect(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode; callers manage transactions explicitly."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block atomically. BEGIN IMMEDIATE acquires the write lock before
        the first read, so concurrent mutations of the same trip serialize.
        Any exception rolls everything back.
        """
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def init_schema(self):
        """Create tables and indexes if they don't exist."""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        conn = self.connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            for table_sql in ALL_TABLES:
                conn.execute(table_sql)
            for table, column, column_type in COLUMN_MIGRATIONS:
                cols = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}  # row[1] = name
                if column not in cols:
                    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")
                    logger.info(f"Migrated: added {table}.{column}")
            for index_sql in INDEXES:
                try:
                    conn.execute(index_sql)
                except sqlite3.OperationalError as e:
                    logger.warning(f"Index creation warning: {e}")
        finally:
            conn.close()

        self.initialized = True
        logger.info(f"Database initialized at {self.db_path}")

    def close(self):
        # Connections are per-operation; nothing is held open between requests.
        self.initialized = False
        logger.info("Database store closed")
