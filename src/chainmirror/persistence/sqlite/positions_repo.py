from __future__ import annotations

from chainmirror.persistence.sqlite._base import SqliteRepo


class SqlitePositionsRepo(SqliteRepo):
    """Stakes plus the split/merge and redemption fact tables."""

    repo_name = "positions"

    def get_stake(self, user_id: int, market_id: int, outcome_type: str) -> int:
        row = self._conn.execute(
            "SELECT amount FROM stakes WHERE user_id = ? AND market_id = ? AND outcome_type = ?",
            (user_id, market_id, outcome_type),
        ).fetchone()
        return int(row["amount"]) if row is not None else 0

    def add_stake(self, user_id: int, market_id: int, outcome_type: str, amount: int) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO stakes(user_id, market_id, outcome_type, amount, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id, market_id, outcome_type) DO UPDATE SET
                amount = stakes.amount + excluded.amount,
                updated_at = excluded.updated_at
            """,
            (user_id, market_id, outcome_type, max(0, amount), self._now()),
        )

    def reduce_stake(self, user_id: int, market_id: int, outcome_type: str, amount: int) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE stakes SET amount = MAX(0, amount - ?), updated_at = ?
            WHERE user_id = ? AND market_id = ? AND outcome_type = ?
            """,
            (max(0, amount), self._now(), user_id, market_id, outcome_type),
        )

    def zero_stake(self, user_id: int, market_id: int, outcome_type: str) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE stakes SET amount = 0, updated_at = ?
            WHERE user_id = ? AND market_id = ? AND outcome_type = ?
            """,
            (self._now(), user_id, market_id, outcome_type),
        )

    def record_operation(
        self,
        *,
        user_id: int,
        market_id: int,
        operation_type: str,
        amount: int,
        yes_amount: int,
        no_amount: int,
        transaction_signature: str,
        created_at: str | None,
    ) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            INSERT INTO user_operations(
                user_id, market_id, operation_type, amount, yes_amount, no_amount,
                transaction_signature, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(transaction_signature, operation_type, user_id, market_id) DO NOTHING
            """,
            (user_id, market_id, operation_type, amount, yes_amount, no_amount, transaction_signature, created_at),
        )
        return cursor.rowcount > 0

    def record_redemption(
        self,
        *,
        user_id: int,
        market_id: int,
        outcome_type: str,
        amount: int,
        usdc_received: int,
        transaction_signature: str,
        redeemed_at: str | None,
    ) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            INSERT INTO redemptions(
                user_id, market_id, outcome_type, amount, usdc_received, transaction_signature, redeemed_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(transaction_signature, user_id, market_id, outcome_type) DO NOTHING
            """,
            (user_id, market_id, outcome_type, amount, usdc_received, transaction_signature, redeemed_at),
        )
        return cursor.rowcount > 0
