from __future__ import annotations

import sqlite3

from chainmirror.domain.models import MarketStatus
from chainmirror.persistence.sqlite._base import SqliteRepo


class SqliteMarketsRepo(SqliteRepo):
    repo_name = "markets"

    def get_id_by_address(self, market_address: str) -> int | None:
        row = self._conn.execute(
            "SELECT id FROM markets WHERE solana_market_account = ?",
            (market_address,),
        ).fetchone()
        return int(row["id"]) if row is not None else None

    def get_by_address(self, market_address: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT * FROM markets WHERE solana_market_account = ?",
            (market_address,),
        ).fetchone()

    def list_markets(self, status: MarketStatus | None = None) -> list[sqlite3.Row]:
        if status is None:
            return self._conn.execute("SELECT * FROM markets ORDER BY id").fetchall()
        return self._conn.execute(
            "SELECT * FROM markets WHERE status = ? ORDER BY id",
            (status.value,),
        ).fetchall()

    def upsert_created(
        self,
        *,
        market_address: str,
        creator_id: int,
        question: str | None,
        description: str | None,
        yes_description: str | None,
        no_description: str | None,
        market_key: str | None,
        created_at: str | None,
    ) -> int:
        """Insert a market; on conflict only the ledger-owned text fields are refreshed."""
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO markets(
                solana_market_account, creator_id, question, description,
                yes_description, no_description, market_key, status, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
            ON CONFLICT(solana_market_account) DO UPDATE SET
                question = COALESCE(excluded.question, markets.question),
                description = COALESCE(excluded.description, markets.description),
                updated_at = excluded.updated_at
            """,
            (
                market_address,
                creator_id,
                question,
                description,
                yes_description,
                no_description,
                market_key,
                created_at,
                self._now(),
            ),
        )
        market_id = self.get_id_by_address(market_address)
        if market_id is None:
            raise RuntimeError(f"market row for {market_address} vanished after upsert")
        return market_id

    def mark_settled(
        self,
        market_id: int,
        *,
        winning_outcome: str,
        final_yes_price: str,
        final_no_price: str,
        settled_at: str | None,
    ) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE markets SET
                status = 'settled',
                winning_outcome = ?,
                final_yes_price = ?,
                final_no_price = ?,
                can_redeem = 1,
                is_paused = 0,
                settled_at = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (winning_outcome, final_yes_price, final_no_price, settled_at, self._now(), market_id),
        )

    def mark_terminated(
        self,
        market_id: int,
        *,
        is_random: bool,
        winning_outcome: str,
        final_yes_price: str,
        final_no_price: str,
        terminated_at: str | None,
    ) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE markets SET
                status = 'terminated',
                is_randomly_terminated = ?,
                winning_outcome = ?,
                final_yes_price = ?,
                final_no_price = ?,
                can_redeem = 1,
                is_paused = 0,
                termination_triggered_at = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                1 if is_random else 0,
                winning_outcome,
                final_yes_price,
                final_no_price,
                terminated_at,
                self._now(),
                market_id,
            ),
        )

    def insert_settlement(
        self,
        *,
        market_id: int,
        settlement_type: str,
        settlement_index: int | None,
        winning_outcome: str,
        yes_price: str,
        no_price: str,
        last_trader_id: int | None,
        transaction_signature: str,
        settled_at: str | None,
    ) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            INSERT INTO market_settlements(
                market_id, settlement_type, settlement_index, winning_outcome,
                yes_price, no_price, last_trader_id, transaction_signature, settled_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (
                market_id,
                settlement_type,
                settlement_index,
                winning_outcome,
                yes_price,
                no_price,
                last_trader_id,
                transaction_signature,
                settled_at,
            ),
        )
        return cursor.rowcount > 0

    def pause(self, market_id: int, *, paused_at: str | None, reason: str) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE markets SET
                status = CASE WHEN status = 'active' THEN 'paused' ELSE status END,
                is_paused = 1,
                paused_at = ?,
                paused_reason = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (paused_at, reason, self._now(), market_id),
        )

    def resume(self, market_id: int) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE markets SET
                status = CASE WHEN status = 'paused' THEN 'active' ELSE status END,
                is_paused = 0,
                paused_at = NULL,
                paused_reason = NULL,
                updated_at = ?
            WHERE id = ?
            """,
            (self._now(), market_id),
        )

    def record_trade(self, market_id: int, *, size: int, price: str, traded_at: str | None) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE markets SET
                total_trades = total_trades + 1,
                total_volume = total_volume + ?,
                last_price = ?,
                last_trade_at = COALESCE(?, last_trade_at),
                updated_at = ?
            WHERE id = ?
            """,
            (size, price, traded_at, self._now(), market_id),
        )
