from __future__ import annotations

import json
import sqlite3

from chainmirror.persistence.sqlite._base import SqliteRepo

_FEE_COLUMNS = (
    "center_taker_fee_rate",
    "extreme_taker_fee_rate",
    "platform_fee_rate",
    "maker_rebate_rate",
    "creator_incentive_rate",
)


class SqliteGlobalStateRepo(SqliteRepo):
    repo_name = "global_state"

    def get(self) -> sqlite3.Row | None:
        return self._conn.execute("SELECT * FROM global_state WHERE id = 1").fetchone()

    def _ensure_row(self) -> None:
        self._conn.execute(
            """
            INSERT INTO global_state(id, trading_paused, operators_json, last_event_slot, updated_at)
            VALUES (1, 0, '[]', 0, ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (self._now(),),
        )

    def overwrite_fee_rates(self, rates: dict[str, int], *, updated_by: str | None, slot: int) -> None:
        """Replace the whole fee configuration; missing rates are stored as NULL."""
        self._ensure_writable()
        self._ensure_row()
        assignments = ", ".join(f"{column} = ?" for column in _FEE_COLUMNS)
        values = [rates.get(column) for column in _FEE_COLUMNS]
        self._conn.execute(
            f"""
            UPDATE global_state SET {assignments},
                updated_by = ?,
                last_event_slot = MAX(last_event_slot, ?),
                updated_at = ?
            WHERE id = 1
            """,
            (*values, updated_by, slot, self._now()),
        )

    def set_trading_paused(self, paused: bool, *, changed_by: str | None, slot: int) -> None:
        self._ensure_writable()
        self._ensure_row()
        self._conn.execute(
            """
            UPDATE global_state SET
                trading_paused = ?,
                paused_by = ?,
                updated_by = ?,
                last_event_slot = MAX(last_event_slot, ?),
                updated_at = ?
            WHERE id = 1
            """,
            (1 if paused else 0, changed_by if paused else None, changed_by, slot, self._now()),
        )

    def operators(self) -> list[str]:
        row = self.get()
        if row is None:
            return []
        return list(json.loads(str(row["operators_json"])))

    def set_operator(self, operator: str, *, enabled: bool, changed_by: str | None, slot: int) -> None:
        self._ensure_writable()
        self._ensure_row()
        current = set(self.operators())
        if enabled:
            current.add(operator)
        else:
            current.discard(operator)
        self._conn.execute(
            """
            UPDATE global_state SET
                operators_json = ?,
                updated_by = ?,
                last_event_slot = MAX(last_event_slot, ?),
                updated_at = ?
            WHERE id = 1
            """,
            (json.dumps(sorted(current)), changed_by, slot, self._now()),
        )
