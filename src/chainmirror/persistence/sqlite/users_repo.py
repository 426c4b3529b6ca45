from __future__ import annotations

from chainmirror.persistence.sqlite._base import SqliteRepo


class SqliteUsersRepo(SqliteRepo):
    repo_name = "users"

    def get_id(self, wallet_address: str) -> int | None:
        row = self._conn.execute(
            "SELECT id FROM users WHERE wallet_address = ?",
            (wallet_address,),
        ).fetchone()
        return int(row["id"]) if row is not None else None

    def ensure_user(self, wallet_address: str) -> int:
        self._ensure_writable()
        now = self._now()
        self._conn.execute(
            """
            INSERT INTO users(wallet_address, auth_provider, created_at, updated_at)
            VALUES (?, 'wallet', ?, ?)
            ON CONFLICT(wallet_address) DO NOTHING
            """,
            (wallet_address, now, now),
        )
        user_id = self.get_id(wallet_address)
        if user_id is None:
            raise RuntimeError(f"user row for {wallet_address} vanished after insert")
        return user_id

    def increment_termination_count(self, user_id: int) -> None:
        self._ensure_writable()
        self._conn.execute(
            "UPDATE users SET termination_count = termination_count + 1, updated_at = ? WHERE id = ?",
            (self._now(), user_id),
        )

    def termination_count(self, wallet_address: str) -> int:
        row = self._conn.execute(
            "SELECT termination_count FROM users WHERE wallet_address = ?",
            (wallet_address,),
        ).fetchone()
        return int(row["termination_count"]) if row is not None else 0
