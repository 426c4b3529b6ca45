from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass

from chainmirror.persistence.sqlite import (
    SqliteCursorRepo,
    SqliteEventLogRepo,
    SqliteGlobalStateRepo,
    SqliteMarketsRepo,
    SqliteNoncesRepo,
    SqliteOrdersRepo,
    SqlitePositionsRepo,
    SqliteTradesRepo,
    SqliteUsersRepo,
)
from chainmirror.persistence.sqlite.sqlite_connection import (
    create_sqlite_connection,
    ensure_schema,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


class UnitOfWork:
    def __init__(
        self,
        db_path: str,
        *,
        read_only: bool = False,
        now_fn: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._db_path = db_path
        self.read_only = read_only
        self._now_fn = now_fn
        self._conn: sqlite3.Connection | None = None
        self.cursors: SqliteCursorRepo
        self.users: SqliteUsersRepo
        self.markets: SqliteMarketsRepo
        self.orders: SqliteOrdersRepo
        self.positions: SqlitePositionsRepo
        self.global_state: SqliteGlobalStateRepo
        self.event_log: SqliteEventLogRepo
        self.trades: SqliteTradesRepo
        self.nonces: SqliteNoncesRepo

    def now(self) -> str:
        return self._now_fn()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("UnitOfWork is not active")
        return self._conn

    def __enter__(self) -> UnitOfWork:
        conn = create_sqlite_connection(self._db_path)
        try:
            ensure_schema(conn)
            if self.read_only:
                conn.execute("BEGIN")
            else:
                conn.execute("BEGIN IMMEDIATE")
        except Exception:
            conn.close()
            raise
        self._conn = conn
        repo_kwargs = {"read_only": self.read_only, "now_fn": self._now_fn}
        self.cursors = SqliteCursorRepo(conn, **repo_kwargs)
        self.users = SqliteUsersRepo(conn, **repo_kwargs)
        self.markets = SqliteMarketsRepo(conn, **repo_kwargs)
        self.orders = SqliteOrdersRepo(conn, **repo_kwargs)
        self.positions = SqlitePositionsRepo(conn, **repo_kwargs)
        self.global_state = SqliteGlobalStateRepo(conn, **repo_kwargs)
        self.event_log = SqliteEventLogRepo(conn, **repo_kwargs)
        self.trades = SqliteTradesRepo(conn, **repo_kwargs)
        self.nonces = SqliteNoncesRepo(conn, **repo_kwargs)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._conn is None:
            return
        try:
            if exc_type is None and not self.read_only:
                self._conn.commit()
            else:
                if exc_type is not None:
                    logger.debug(
                        "uow_rollback",
                        extra={"extra": {"db_path": self._db_path, "error_type": exc_type.__name__}},
                    )
                self._conn.rollback()
        finally:
            self._conn.close()
            self._conn = None


@dataclass(frozen=True)
class UnitOfWorkFactory:
    db_path: str
    read_only: bool = False
    now_fn: Callable[[], str] = utc_now_iso

    def __call__(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=self.read_only, now_fn=self.now_fn)
