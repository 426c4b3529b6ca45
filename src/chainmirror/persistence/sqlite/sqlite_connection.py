from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

MIRRORED_TABLES = (
    "users",
    "markets",
    "market_settlements",
    "orders",
    "order_fills",
    "order_status",
    "user_nonces",
    "stakes",
    "user_operations",
    "redemptions",
    "global_state",
    "trades",
)


def create_sqlite_connection(db_path: str, *, busy_timeout_ms: int = 5000) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def epoch_to_iso(epoch_seconds: int | None) -> str | None:
    if epoch_seconds is None:
        return None
    return datetime.fromtimestamp(int(epoch_seconds), UTC).isoformat()


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def ensure_sync_state_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_state (
            service TEXT PRIMARY KEY,
            last_slot INTEGER NOT NULL DEFAULT 0,
            last_signature TEXT,
            events_processed INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        )
        """
    )


def ensure_mirror_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            wallet_address TEXT NOT NULL UNIQUE,
            auth_provider TEXT NOT NULL DEFAULT 'wallet',
            termination_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS markets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            solana_market_account TEXT NOT NULL UNIQUE,
            creator_id INTEGER REFERENCES users(id),
            question TEXT,
            description TEXT,
            yes_description TEXT,
            no_description TEXT,
            market_key TEXT,
            status TEXT NOT NULL DEFAULT 'active'
                CHECK(status IN ('active', 'paused', 'settled', 'terminated')),
            winning_outcome TEXT,
            final_yes_price TEXT,
            final_no_price TEXT,
            can_redeem INTEGER NOT NULL DEFAULT 0,
            is_randomly_terminated INTEGER NOT NULL DEFAULT 0,
            is_paused INTEGER NOT NULL DEFAULT 0,
            paused_at TEXT,
            paused_reason TEXT,
            settled_at TEXT,
            termination_triggered_at TEXT,
            total_trades INTEGER NOT NULL DEFAULT 0,
            total_volume INTEGER NOT NULL DEFAULT 0,
            last_price TEXT,
            last_trade_at TEXT,
            created_at TEXT,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS market_settlements (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            market_id INTEGER NOT NULL REFERENCES markets(id),
            settlement_type TEXT NOT NULL,
            settlement_index INTEGER,
            winning_outcome TEXT NOT NULL,
            yes_price TEXT NOT NULL,
            no_price TEXT NOT NULL,
            last_trader_id INTEGER REFERENCES users(id),
            transaction_signature TEXT NOT NULL,
            settled_at TEXT,
            UNIQUE(market_id, settlement_type)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_hash TEXT NOT NULL UNIQUE,
            user_id INTEGER NOT NULL REFERENCES users(id),
            market_id INTEGER REFERENCES markets(id),
            outcome_type TEXT,
            side TEXT,
            price TEXT,
            amount INTEGER NOT NULL,
            filled_amount INTEGER NOT NULL DEFAULT 0,
            remaining_amount INTEGER NOT NULL,
            nonce INTEGER,
            status TEXT NOT NULL DEFAULT 'open'
                CHECK(status IN ('open', 'partial', 'filled', 'cancelled')),
            filled_at TEXT,
            cancelled_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_user_status ON orders(user_id, status)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS order_fills (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_hash TEXT NOT NULL,
            market_id INTEGER NOT NULL REFERENCES markets(id),
            maker_user_id INTEGER NOT NULL REFERENCES users(id),
            taker_user_id INTEGER NOT NULL REFERENCES users(id),
            outcome_type TEXT NOT NULL,
            side TEXT NOT NULL,
            price TEXT NOT NULL,
            amount INTEGER NOT NULL,
            fee INTEGER NOT NULL DEFAULT 0,
            transaction_signature TEXT NOT NULL,
            event_index INTEGER NOT NULL DEFAULT 0,
            slot INTEGER NOT NULL,
            block_time TEXT,
            UNIQUE(transaction_signature, event_index)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_order_fills_order_hash ON order_fills(order_hash)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS order_status (
            order_hash TEXT PRIMARY KEY,
            is_closed INTEGER NOT NULL DEFAULT 0,
            remaining_amount INTEGER,
            last_synced_slot INTEGER NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_nonces (
            wallet_address TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL REFERENCES users(id),
            current_nonce INTEGER NOT NULL DEFAULT 0,
            last_synced_slot INTEGER,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS stakes (
            user_id INTEGER NOT NULL REFERENCES users(id),
            market_id INTEGER NOT NULL REFERENCES markets(id),
            outcome_type TEXT NOT NULL CHECK(outcome_type IN ('yes', 'no')),
            amount INTEGER NOT NULL DEFAULT 0 CHECK(amount >= 0),
            updated_at TEXT NOT NULL,
            PRIMARY KEY(user_id, market_id, outcome_type)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_operations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL REFERENCES users(id),
            market_id INTEGER NOT NULL REFERENCES markets(id),
            operation_type TEXT NOT NULL,
            amount INTEGER NOT NULL,
            yes_amount INTEGER NOT NULL,
            no_amount INTEGER NOT NULL,
            transaction_signature TEXT NOT NULL,
            created_at TEXT,
            UNIQUE(transaction_signature, operation_type, user_id, market_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS redemptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL REFERENCES users(id),
            market_id INTEGER NOT NULL REFERENCES markets(id),
            outcome_type TEXT NOT NULL,
            amount INTEGER NOT NULL,
            usdc_received INTEGER NOT NULL,
            transaction_signature TEXT NOT NULL,
            redeemed_at TEXT,
            UNIQUE(transaction_signature, user_id, market_id, outcome_type)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS global_state (
            id INTEGER PRIMARY KEY CHECK(id = 1),
            center_taker_fee_rate INTEGER,
            extreme_taker_fee_rate INTEGER,
            platform_fee_rate INTEGER,
            maker_rebate_rate INTEGER,
            creator_incentive_rate INTEGER,
            trading_paused INTEGER NOT NULL DEFAULT 0,
            paused_by TEXT,
            operators_json TEXT NOT NULL DEFAULT '[]',
            updated_by TEXT,
            last_event_slot INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS trades (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            market_id INTEGER NOT NULL REFERENCES markets(id),
            maker_user_id INTEGER NOT NULL REFERENCES users(id),
            taker_user_id INTEGER NOT NULL REFERENCES users(id),
            outcome_type TEXT NOT NULL,
            side TEXT NOT NULL,
            price TEXT NOT NULL,
            amount INTEGER NOT NULL,
            total_cost INTEGER NOT NULL,
            fee_amount INTEGER NOT NULL,
            fee_rate INTEGER NOT NULL,
            layout TEXT NOT NULL,
            is_approximate INTEGER NOT NULL DEFAULT 0,
            transaction_signature TEXT NOT NULL,
            event_index INTEGER NOT NULL DEFAULT 0,
            slot INTEGER NOT NULL,
            created_at TEXT,
            UNIQUE(transaction_signature, event_index)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_market ON trades(market_id, slot)")


def ensure_event_log_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS event_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            event_type TEXT NOT NULL,
            transaction_signature TEXT NOT NULL,
            event_index INTEGER NOT NULL DEFAULT 0,
            slot INTEGER NOT NULL,
            block_time TEXT,
            program_id TEXT NOT NULL,
            event_data TEXT NOT NULL,
            processed INTEGER NOT NULL DEFAULT 0,
            error TEXT,
            created_at TEXT NOT NULL,
            processed_at TEXT,
            UNIQUE(transaction_signature, event_type, event_index)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_event_log_pending ON event_log(processed, slot)")


def ensure_schema(conn: sqlite3.Connection) -> None:
    ensure_sync_state_schema(conn)
    ensure_mirror_schema(conn)
    ensure_event_log_schema(conn)
