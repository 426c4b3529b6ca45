from __future__ import annotations

import sqlite3

from chainmirror.domain.models import OrderStatus
from chainmirror.persistence.sqlite._base import SqliteRepo


class SqliteOrdersRepo(SqliteRepo):
    repo_name = "orders"

    def get_order(self, order_hash: str) -> sqlite3.Row | None:
        return self._conn.execute("SELECT * FROM orders WHERE order_hash = ?", (order_hash,)).fetchone()

    def upsert_order(
        self,
        *,
        order_hash: str,
        user_id: int,
        market_id: int | None,
        outcome_type: str,
        side: str,
        price: str,
        amount: int,
        nonce: int | None,
    ) -> None:
        """Register an off-chain order so ledger fills and cancels can be projected onto it."""
        self._ensure_writable()
        now = self._now()
        self._conn.execute(
            """
            INSERT INTO orders(
                order_hash, user_id, market_id, outcome_type, side, price,
                amount, filled_amount, remaining_amount, nonce, status, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, 'open', ?, ?)
            ON CONFLICT(order_hash) DO NOTHING
            """,
            (order_hash, user_id, market_id, outcome_type, side, price, amount, amount, nonce, now, now),
        )

    def apply_fill(self, order_hash: str, *, fill_amount: int, filled_at: str | None) -> int | None:
        """Add a fill to a mirrored order; returns the new remaining amount, or None if unknown."""
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE orders SET
                filled_amount = filled_amount + ?,
                remaining_amount = MAX(0, amount - (filled_amount + ?)),
                status = CASE
                    WHEN status = 'cancelled' THEN status
                    WHEN amount - (filled_amount + ?) <= 0 THEN 'filled'
                    ELSE 'partial'
                END,
                filled_at = CASE WHEN amount - (filled_amount + ?) <= 0 THEN ? ELSE filled_at END,
                updated_at = ?
            WHERE order_hash = ?
            """,
            (fill_amount, fill_amount, fill_amount, fill_amount, filled_at, self._now(), order_hash),
        )
        row = self.get_order(order_hash)
        return int(row["remaining_amount"]) if row is not None else None

    def cancel(self, order_hash: str, *, cancelled_at: str | None) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE orders SET
                status = 'cancelled',
                remaining_amount = 0,
                cancelled_at = ?,
                updated_at = ?
            WHERE order_hash = ? AND status != 'cancelled'
            """,
            (cancelled_at, self._now(), order_hash),
        )
        return cursor.rowcount > 0

    def cancel_below_nonce(self, user_id: int, *, nonce: int, cancelled_at: str | None) -> list[str]:
        """Cancel open and partial orders of ``user_id`` whose nonce is missing or below ``nonce``."""
        self._ensure_writable()
        rows = self._conn.execute(
            """
            SELECT order_hash FROM orders
            WHERE user_id = ? AND status IN (?, ?) AND (nonce IS NULL OR nonce < ?)
            ORDER BY id
            """,
            (user_id, OrderStatus.OPEN.value, OrderStatus.PARTIAL.value, nonce),
        ).fetchall()
        hashes = [str(row["order_hash"]) for row in rows]
        for order_hash in hashes:
            self._conn.execute(
                """
                UPDATE orders SET status = 'cancelled', remaining_amount = 0, cancelled_at = ?, updated_at = ?
                WHERE order_hash = ?
                """,
                (cancelled_at, self._now(), order_hash),
            )
        return hashes

    def upsert_status(
        self,
        order_hash: str,
        *,
        is_closed: bool,
        remaining_amount: int | None,
        slot: int,
    ) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO order_status(order_hash, is_closed, remaining_amount, last_synced_slot, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(order_hash) DO UPDATE SET
                is_closed = MAX(order_status.is_closed, excluded.is_closed),
                remaining_amount = CASE
                    WHEN order_status.is_closed = 1 AND excluded.is_closed = 0 THEN order_status.remaining_amount
                    ELSE excluded.remaining_amount
                END,
                last_synced_slot = MAX(order_status.last_synced_slot, excluded.last_synced_slot),
                updated_at = excluded.updated_at
            """,
            (order_hash, 1 if is_closed else 0, remaining_amount, slot, self._now()),
        )

    def get_status(self, order_hash: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT * FROM order_status WHERE order_hash = ?",
            (order_hash,),
        ).fetchone()

    def insert_fill(
        self,
        *,
        order_hash: str,
        market_id: int,
        maker_user_id: int,
        taker_user_id: int,
        outcome_type: str,
        side: str,
        price: str,
        amount: int,
        fee: int,
        transaction_signature: str,
        event_index: int,
        slot: int,
        block_time: str | None,
    ) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            INSERT INTO order_fills(
                order_hash, market_id, maker_user_id, taker_user_id, outcome_type, side,
                price, amount, fee, transaction_signature, event_index, slot, block_time
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(transaction_signature, event_index) DO NOTHING
            """,
            (
                order_hash,
                market_id,
                maker_user_id,
                taker_user_id,
                outcome_type,
                side,
                price,
                amount,
                fee,
                transaction_signature,
                event_index,
                slot,
                block_time,
            ),
        )
        return cursor.rowcount > 0

    def wallets_with_open_orders(self) -> list[str]:
        rows = self._conn.execute(
            """
            SELECT DISTINCT u.wallet_address
            FROM orders o JOIN users u ON u.id = o.user_id
            WHERE o.status IN ('open', 'partial')
            ORDER BY u.wallet_address
            """
        ).fetchall()
        return [str(row["wallet_address"]) for row in rows]

    def statuses_for_user(self, user_id: int) -> dict[int | None, str]:
        rows = self._conn.execute(
            "SELECT nonce, status FROM orders WHERE user_id = ? ORDER BY id",
            (user_id,),
        ).fetchall()
        return {row["nonce"]: str(row["status"]) for row in rows}
