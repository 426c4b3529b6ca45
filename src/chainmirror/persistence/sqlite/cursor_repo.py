from __future__ import annotations

import sqlite3
from datetime import datetime

from chainmirror.domain.events import SyncCursor
from chainmirror.persistence.sqlite._base import SqliteRepo


def _row_to_cursor(row: sqlite3.Row) -> SyncCursor:
    return SyncCursor(
        service=str(row["service"]),
        last_slot=int(row["last_slot"]),
        last_signature=str(row["last_signature"]) if row["last_signature"] else None,
        events_processed=int(row["events_processed"]),
        updated_at=datetime.fromisoformat(str(row["updated_at"])),
    )


class SqliteCursorRepo(SqliteRepo):
    repo_name = "cursors"

    def get(self, service: str) -> SyncCursor | None:
        row = self._conn.execute("SELECT * FROM sync_state WHERE service = ?", (service,)).fetchone()
        return _row_to_cursor(row) if row is not None else None

    def get_or_create(self, service: str) -> SyncCursor:
        existing = self.get(service)
        if existing is not None:
            return existing
        if self._read_only:
            return SyncCursor(service=service)
        self._conn.execute(
            """
            INSERT INTO sync_state(service, last_slot, last_signature, events_processed, updated_at)
            VALUES (?, 0, NULL, 0, ?)
            ON CONFLICT(service) DO NOTHING
            """,
            (service, self._now()),
        )
        created = self.get(service)
        if created is None:
            raise RuntimeError(f"sync_state row for {service} vanished after insert")
        return created

    def advance(
        self,
        service: str,
        *,
        slot: int,
        signature: str | None,
        processed_delta: int,
    ) -> SyncCursor:
        """Move the cursor forward; a lower ``slot`` never rewinds it."""
        self._ensure_writable()
        self.get_or_create(service)
        self._conn.execute(
            """
            UPDATE sync_state
            SET last_signature = CASE WHEN ? >= last_slot THEN COALESCE(?, last_signature) ELSE last_signature END,
                last_slot = MAX(last_slot, ?),
                events_processed = events_processed + ?,
                updated_at = ?
            WHERE service = ?
            """,
            (slot, signature, slot, max(0, processed_delta), self._now(), service),
        )
        advanced = self.get(service)
        if advanced is None:
            raise RuntimeError(f"sync_state row for {service} is missing")
        return advanced

    def reset(self, service: str, *, slot: int = 0) -> SyncCursor:
        """Explicit operator rewind; the only path that lowers ``last_slot``."""
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO sync_state(service, last_slot, last_signature, events_processed, updated_at)
            VALUES (?, ?, NULL, 0, ?)
            ON CONFLICT(service) DO UPDATE SET
                last_slot = excluded.last_slot,
                last_signature = NULL,
                updated_at = excluded.updated_at
            """,
            (service, max(0, slot), self._now()),
        )
        return self.get_or_create(service)

    def list_all(self) -> list[SyncCursor]:
        rows = self._conn.execute("SELECT * FROM sync_state ORDER BY service").fetchall()
        return [_row_to_cursor(row) for row in rows]
