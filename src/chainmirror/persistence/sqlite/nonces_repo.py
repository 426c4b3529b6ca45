from __future__ import annotations

from chainmirror.persistence.sqlite._base import SqliteRepo


class SqliteNoncesRepo(SqliteRepo):
    repo_name = "nonces"

    def get_nonce(self, wallet_address: str) -> int | None:
        row = self._conn.execute(
            "SELECT current_nonce FROM user_nonces WHERE wallet_address = ?",
            (wallet_address,),
        ).fetchone()
        return int(row["current_nonce"]) if row is not None else None

    def raise_nonce(self, *, wallet_address: str, user_id: int, nonce: int, slot: int | None) -> int:
        """Store ``nonce`` unless a higher value is already mirrored; returns the stored value."""
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO user_nonces(wallet_address, user_id, current_nonce, last_synced_slot, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(wallet_address) DO UPDATE SET
                current_nonce = MAX(user_nonces.current_nonce, excluded.current_nonce),
                last_synced_slot = excluded.last_synced_slot,
                updated_at = excluded.updated_at
            WHERE excluded.current_nonce > user_nonces.current_nonce
            """,
            (wallet_address, user_id, nonce, slot, self._now()),
        )
        stored = self.get_nonce(wallet_address)
        if stored is None:
            raise RuntimeError(f"user_nonces row for {wallet_address} vanished after upsert")
        return stored
