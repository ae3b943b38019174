"""
SQLite helpers shared by the stores.

Each store opens a short-lived connection per operation, in the same way the
evaluation queue does, and runs writes inside an explicit `BEGIN IMMEDIATE`
transaction so that a read-modify-write sequence cannot interleave with
another writer. The database runs in WAL mode, so readers are never blocked
by a writer and never observe a half-applied transaction.

SQLite errors are converted to `StorageError` at this boundary.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence

from monitoring.metrics import ERROR_COUNT
from shared.errors import StorageError

CONNECT_TIMEOUT_SECONDS = 10.0


def init_schema(db_path: str, statements: Sequence[str]) -> None:
    """
    Create tables and indexes if they do not exist.

    Ensures the parent directory of the database file exists, switches the
    database to WAL journaling and executes each DDL statement. Errors are
    raised as `StorageError` so startup fails visibly.

    Args:
        db_path (str): Filesystem path to the SQLite database file.
        statements (Sequence[str]): `CREATE ... IF NOT EXISTS` statements.
    """
    with storage_operation("init_schema"):
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        con = sqlite3.connect(db_path, timeout=CONNECT_TIMEOUT_SECONDS)
        try:
            con.execute("PRAGMA journal_mode=WAL")
            for statement in statements:
                con.execute(statement)
            con.commit()
        finally:
            con.close()


@contextmanager
def storage_operation(operation: str) -> Iterator[None]:
    """Translate SQLite errors raised inside the block into `StorageError`."""
    try:
        yield
    except sqlite3.Error as e:
        ERROR_COUNT.labels(type='storage', location=operation).inc()
        raise StorageError(operation, e) from e


@contextmanager
def connect(db_path: str) -> Iterator[sqlite3.Connection]:
    """
    Open a connection in autocommit mode with row access by column name.

    Transactions are opened explicitly with `transaction()`.
    """
    con = sqlite3.connect(db_path, timeout=CONNECT_TIMEOUT_SECONDS, isolation_level=None)
    con.row_factory = sqlite3.Row
    try:
        yield con
    finally:
        con.close()


@contextmanager
def transaction(con: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block in a write transaction; roll back on any exception."""
    con.execute("BEGIN IMMEDIATE")
    try:
        yield con
    except BaseException:
        con.execute("ROLLBACK")
        raise
    con.execute("COMMIT")
