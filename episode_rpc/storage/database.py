"""Shared DuckDB connection with serialized access and explicit transactions.

All stores built on one ``Database`` share a single connection and a single
re-entrant lock.  Transient DuckDB failures are translated to
``StoreUnavailable`` here so the layers above never see driver exceptions.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional

import duckdb

from episode_rpc.errors import StoreUnavailable


logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    duckdb.IOException,
    duckdb.ConnectionException,
    duckdb.TransactionException,
    duckdb.InterruptException,
)


def to_storage_ts(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC timestamp for TIMESTAMP columns."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_storage_ts(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    """One DuckDB connection (file-backed or in-memory) plus its lock."""

    def __init__(self, path: str = ":memory:"):
        self.path = path
        try:
            self.conn = duckdb.connect(path)
        except TRANSIENT_ERRORS as exc:
            raise StoreUnavailable(f"Cannot open database {path}: {exc}") from exc
        self.lock = threading.RLock()
        self._depth = 0
        logger.info("database_opened", extra={"path": path})

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run the block atomically; roll back and re-raise on any error.

        Nested use joins the outer transaction.
        """
        with self.lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self.conn
                finally:
                    self._depth -= 1
                return

            try:
                self.conn.begin()
            except TRANSIENT_ERRORS as exc:
                raise StoreUnavailable(str(exc)) from exc

            self._depth = 1
            try:
                yield self.conn
                self.conn.commit()
            except TRANSIENT_ERRORS as exc:
                self._rollback()
                raise StoreUnavailable(str(exc)) from exc
            except BaseException:
                self._rollback()
                raise
            finally:
                self._depth = 0

    def fetchall(self, sql: str, params: Optional[List[Any]] = None) -> List[tuple]:
        with self.lock:
            try:
                return self.conn.execute(sql, params or []).fetchall()
            except TRANSIENT_ERRORS as exc:
                raise StoreUnavailable(str(exc)) from exc

    def fetchone(self, sql: str, params: Optional[List[Any]] = None) -> Optional[tuple]:
        with self.lock:
            try:
                return self.conn.execute(sql, params or []).fetchone()
            except TRANSIENT_ERRORS as exc:
                raise StoreUnavailable(str(exc)) from exc

    def _rollback(self) -> None:
        try:
            self.conn.rollback()
        except duckdb.Error as exc:
            # Connection is gone; the open transaction died with it.
            logger.warning("rollback_failed", extra={"path": self.path, "error": str(exc)})

    def close(self) -> None:
        with self.lock:
            self.conn.close()
        logger.info("database_closed", extra={"path": self.path})
