from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from enum import StrEnum
from typing import Any

from chainmirror.domain.events import EventKind, LedgerEvent
from chainmirror.persistence.sqlite._base import SqliteRepo

MISSING_PARENT_PREFIX = "missing_parent:"


class AuditStatus(StrEnum):
    NEW = "new"
    PENDING = "pending"
    PROCESSED = "processed"


def _row_to_event(row: sqlite3.Row) -> LedgerEvent:
    name = str(row["event_type"])
    block_time = row["block_time"]
    return LedgerEvent(
        kind=EventKind.from_name(name),
        name=name,
        data=json.loads(str(row["event_data"])),
        signature=str(row["transaction_signature"]),
        slot=int(row["slot"]),
        event_index=int(row["event_index"]),
        observed_at=datetime.fromisoformat(str(block_time)) if block_time else None,
    )


class SqliteEventLogRepo(SqliteRepo):
    """Audit log keyed by (signature, event type, ordinal); gates at-most-once application."""

    repo_name = "event_log"

    def record(self, event: LedgerEvent, *, program_id: str) -> AuditStatus:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            INSERT INTO event_log(
                event_type, transaction_signature, event_index, slot, block_time,
                program_id, event_data, processed, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
            ON CONFLICT(transaction_signature, event_type, event_index) DO NOTHING
            """,
            (
                event.name,
                event.signature,
                event.event_index,
                event.slot,
                event.observed_at.isoformat() if event.observed_at else None,
                program_id,
                json.dumps(dict(event.data), sort_keys=True, default=str),
                self._now(),
            ),
        )
        if cursor.rowcount > 0:
            return AuditStatus.NEW
        return AuditStatus.PROCESSED if self.is_processed(event) else AuditStatus.PENDING

    def is_processed(self, event: LedgerEvent) -> bool:
        row = self._conn.execute(
            """
            SELECT processed FROM event_log
            WHERE transaction_signature = ? AND event_type = ? AND event_index = ?
            """,
            event.audit_key,
        ).fetchone()
        return row is not None and bool(row["processed"])

    def mark_processed(self, event: LedgerEvent) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE event_log SET processed = 1, error = NULL, processed_at = ?
            WHERE transaction_signature = ? AND event_type = ? AND event_index = ?
            """,
            (self._now(), *event.audit_key),
        )

    def mark_skipped(self, event: LedgerEvent, *, error: str) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE event_log SET processed = 0, error = ?
            WHERE transaction_signature = ? AND event_type = ? AND event_index = ?
            """,
            (error, *event.audit_key),
        )

    def pending_missing_parent(
        self,
        *,
        kinds: frozenset[EventKind] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LedgerEvent]:
        if kinds is not None and not kinds:
            return []
        clauses = ["processed = 0", "error LIKE ?"]
        params: list[Any] = [f"{MISSING_PARENT_PREFIX}%"]
        if kinds is not None:
            names = sorted(kind.value for kind in kinds)
            clauses.append(f"event_type IN ({', '.join('?' for _ in names)})")
            params.extend(names)
        rows = self._conn.execute(
            f"""
            SELECT * FROM event_log
            WHERE {" AND ".join(clauses)}
            ORDER BY slot, id
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        ).fetchall()
        return [_row_to_event(row) for row in rows]

    def find_data(self, signature: str, kind: EventKind) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT event_data FROM event_log
            WHERE transaction_signature = ? AND event_type = ?
            ORDER BY event_index
            """,
            (signature, kind.value),
        ).fetchall()
        return [json.loads(str(row["event_data"])) for row in rows]

    def counts(self) -> dict[str, int]:
        row = self._conn.execute(
            """
            SELECT COUNT(*) AS total, COALESCE(SUM(processed), 0) AS processed
            FROM event_log
            """
        ).fetchone()
        total = int(row["total"])
        processed = int(row["processed"])
        return {"total": total, "processed": processed, "pending": total - processed}
