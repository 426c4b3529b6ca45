from __future__ import annotations

import sqlite3

from chainmirror.persistence.sqlite._base import SqliteRepo


class SqliteTradesRepo(SqliteRepo):
    repo_name = "trades"

    def insert_trade(
        self,
        *,
        market_id: int,
        maker_user_id: int,
        taker_user_id: int,
        outcome_type: str,
        side: str,
        price: str,
        amount: int,
        total_cost: int,
        fee_amount: int,
        fee_rate: int,
        layout: str,
        is_approximate: bool,
        transaction_signature: str,
        event_index: int,
        slot: int,
        created_at: str | None,
    ) -> bool:
        """Insert a trade fact; returns False when the (signature, ordinal) is already mirrored."""
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            INSERT INTO trades(
                market_id, maker_user_id, taker_user_id, outcome_type, side, price, amount,
                total_cost, fee_amount, fee_rate, layout, is_approximate,
                transaction_signature, event_index, slot, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(transaction_signature, event_index) DO NOTHING
            """,
            (
                market_id,
                maker_user_id,
                taker_user_id,
                outcome_type,
                side,
                price,
                amount,
                total_cost,
                fee_amount,
                fee_rate,
                layout,
                1 if is_approximate else 0,
                transaction_signature,
                event_index,
                slot,
                created_at,
            ),
        )
        return cursor.rowcount > 0

    def list_for_market(self, market_id: int) -> list[sqlite3.Row]:
        return self._conn.execute(
            "SELECT * FROM trades WHERE market_id = ? ORDER BY slot, event_index",
            (market_id,),
        ).fetchall()
