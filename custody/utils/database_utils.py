"""
Database utility helpers.

Provides consistent transaction handling for SQLite connections used across
services. Using an explicit context manager avoids relying on implicit commit
semantics and guarantees rollback on any exception.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator

from custody.utils.logging_config import get_logger


logger = get_logger(__name__)


class TransactionError(Exception):
    """Raised when a database transaction fails."""

    pass


class KeyedLocks:
    """
    Re-entrant locks created on demand per key.

    A lock lives only while some thread holds or waits for it, so the
    registry does not grow with the number of keys ever seen.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.RLock] = {}
        self._users: Dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]


# Threads sharing one connection queue here instead of colliding on BEGIN
_connection_locks = KeyedLocks()
_advance_locks = KeyedLocks()


@contextmanager
def advance_lock(tenant_id: str, advance_id: str) -> Iterator[None]:
    """Serialize balance changes to one advance within this process."""
    with _advance_locks.hold((tenant_id, advance_id)):
        yield


@contextmanager
def transactional(
    conn: sqlite3.Connection, *, immediate: bool = False
) -> Iterator[sqlite3.Connection]:
    """
    Provide a transactional scope around a series of database operations.

    Ensures an explicit BEGIN/COMMIT pair and performs rollback when any
    exception escapes the context block. With ``immediate=True`` the write
    lock is taken at BEGIN, so read-then-write sequences on the same rows
    serialize across connections. Threads sharing ``conn`` wait for each
    other's transaction to finish before starting their own.

    Database errors are re-raised as ``TransactionError``; any other
    exception (domain errors included) propagates unchanged after rollback.
    """
    with _connection_locks.hold(id(conn)):
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        except sqlite3.Error as exc:
            logger.error("transaction_begin_failed", error=str(exc))
            raise TransactionError("Could not start database transaction") from exc

        try:
            yield conn
            conn.commit()
        except Exception as exc:
            logger.error("transaction_rollback", error=str(exc), error_type=type(exc).__name__)
            conn.rollback()
            if isinstance(exc, sqlite3.Error):
                raise TransactionError("Database transaction failed") from exc
            raise
