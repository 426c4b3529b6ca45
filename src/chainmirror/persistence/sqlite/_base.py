from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable

from chainmirror.persistence.sqlite.sqlite_connection import utc_now_iso

logger = logging.getLogger(__name__)


class SqliteRepo:
    repo_name = "repo"

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        read_only: bool = False,
        now_fn: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._conn = conn
        self._read_only = read_only
        self._now = now_fn

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": self.repo_name}})
            raise PermissionError(f"UnitOfWork is read-only; {self.repo_name} writes are blocked")
