from __future__ import annotations

import base64
import hashlib
import json
import os
import sqlite3
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

import pytest
from solders.pubkey import Pubkey

from chainmirror.adapters.solana_rpc import AccountsSnapshot, SignatureInfo
from chainmirror.config import Settings
from chainmirror.domain.borsh_codec import encode_struct
from chainmirror.domain.event_schema import EVENT_FIELDS, event_discriminator
from chainmirror.domain.events import EventKind, TransactionRecord
from chainmirror.persistence.sqlite.sqlite_connection import MIRRORED_TABLES
from chainmirror.persistence.uow import UnitOfWorkFactory

PROGRAM_ID = "Fg6PaFpoGXkYsidMpWTK6W2BeZ7FEfcYkg476zPFsLnS"
FIXED_NOW = "2024-01-01T00:00:00+00:00"
BLOCK_TIME = 1_700_000_000


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)
        validation_alias = getattr(field, "validation_alias", None)
        choices = getattr(validation_alias, "choices", ())
        for choice in choices:
            if isinstance(choice, str):
                settings_env_keys.add(choice)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setenv("PROGRAM_ID", PROGRAM_ID)
    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "mirror.sqlite"))
    monkeypatch.setenv("CHAINMIRROR_LOCK_DIR", str(tmp_path / "locks"))


@pytest.fixture
def uow_factory(tmp_path: Path) -> UnitOfWorkFactory:
    return UnitOfWorkFactory(str(tmp_path / "mirror.sqlite"), now_fn=lambda: FIXED_NOW)


class LedgerBuilder:
    """Builds program log output the way the on-chain program emits it."""

    program_id = PROGRAM_ID

    @staticmethod
    def key(seed: int) -> str:
        return str(Pubkey(bytes([seed]) * 32))

    @staticmethod
    def order_hash(label: str) -> str:
        return hashlib.sha256(label.encode()).hexdigest()

    def payload(self, kind: EventKind, **values: Any) -> str:
        raw = event_discriminator(kind.value) + encode_struct(EVENT_FIELDS[kind], values)
        return base64.b64encode(raw).decode()

    def tx(
        self,
        signature: str,
        slot: int,
        payloads: Sequence[str] = (),
        *,
        block_time: int | None = BLOCK_TIME,
        extra_logs: Iterable[str] = (),
        err: object | None = None,
    ) -> TransactionRecord:
        logs = [f"Program {self.program_id} invoke [1]", "Program log: Instruction: Sync"]
        logs.extend(extra_logs)
        logs.extend(f"Program data: {payload}" for payload in payloads)
        logs.append(f"Program {self.program_id} success")
        return TransactionRecord(
            signature=signature,
            slot=slot,
            block_time=block_time,
            log_messages=tuple(logs),
            err=err,
        )

    def market_created(self, market: str, creator: str, *, question: str = "Will it rain?") -> str:
        return self.payload(
            EventKind.MARKET_CREATED,
            market=market,
            creator=creator,
            question=question,
            description="Resolves YES on rain",
            yes_description="Rain",
            no_description="No rain",
            market_id="ab" * 32,
            timestamp=BLOCK_TIME,
        )

    def market_settled(
        self,
        market: str,
        *,
        winning_outcome: int = 0,
        yes_price: int | None = 750_000,
        no_price: int | None = 250_000,
        reference_agent: str | None = None,
    ) -> str:
        return self.payload(
            EventKind.MARKET_SETTLED,
            market=market,
            settlement_index=1,
            winning_outcome=winning_outcome,
            reference_agent=reference_agent or self.key(99),
            vault_balance=1_000_000,
            total_rewards=0,
            timestamp=BLOCK_TIME + 60,
            yes_price=yes_price,
            no_price=no_price if yes_price is not None else None,
        )

    def order_filled(
        self,
        order_hash: str,
        market: str,
        *,
        maker: str,
        taker: str,
        maker_asset_id: int = 0,
        taker_asset_id: int = 1,
        maker_amount_filled: int = 600_000,
        taker_amount_filled: int = 1_000_000,
    ) -> str:
        return self.payload(
            EventKind.ORDER_FILLED,
            order_hash=order_hash,
            maker=maker,
            taker=taker,
            maker_asset_id=maker_asset_id,
            taker_asset_id=taker_asset_id,
            maker_amount_filled=maker_amount_filled,
            taker_amount_filled=taker_amount_filled,
            fee=1_000,
            market=market,
            slot=0,
            timestamp=BLOCK_TIME,
        )

    def nonce_incremented(self, user: str, new_nonce: int) -> str:
        return self.payload(
            EventKind.NONCE_INCREMENTED,
            user=user,
            new_nonce=new_nonce,
            slot=0,
            timestamp=BLOCK_TIME,
        )

    def extended_trade(
        self,
        market: str,
        *,
        maker: str,
        taker: str,
        size: int = 2_000_000,
        price: int = 650_000,
        length: int = 182,
    ) -> bytes:
        body = (
            event_discriminator(EventKind.TRADING_FEE_COLLECTED.value)
            + bytes(Pubkey.from_string(market))
            + bytes(Pubkey.from_string(maker))
            + bytes(Pubkey.from_string(taker))
            + bytes(Pubkey.from_string(taker))
            + bytes([1, 0])
            + size.to_bytes(8, "little")
            + (5_000).to_bytes(8, "little")
            + (2_500).to_bytes(4, "little")
            + price.to_bytes(8, "little")
            + (1234).to_bytes(8, "little")
            + BLOCK_TIME.to_bytes(8, "little", signed=True)
        )
        return body[:length] if length <= len(body) else body + bytes(length - len(body))

    def legacy_trade(
        self,
        market: str,
        fee_payer: str,
        *,
        fee_amount: int = 5_000,
        fee_rate: int = 2_500,
        price: int = 400_000,
        length: int = 141,
        discriminator: bytes | None = None,
    ) -> bytes:
        body = (
            (discriminator or event_discriminator(EventKind.TRADING_FEE_COLLECTED.value))
            + bytes(Pubkey.from_string(market))
            + bytes(Pubkey.from_string(fee_payer))
            + fee_amount.to_bytes(8, "little")
            + fee_rate.to_bytes(4, "little")
            + price.to_bytes(8, "little")
            + (1234).to_bytes(8, "little")
            + BLOCK_TIME.to_bytes(8, "little", signed=True)
        )
        return body + bytes(max(0, length - len(body)))


@pytest.fixture
def ledger() -> LedgerBuilder:
    return LedgerBuilder()


class FakeLedgerRpc:
    """In-memory stand-in for the RPC surface the fetcher and nonce sync use."""

    def __init__(self, max_batch_size: int = 100) -> None:
        self.max_batch_size = max_batch_size
        self._transactions: list[TransactionRecord] = []
        self.unavailable: set[str] = set()
        self.accounts: dict[str, bytes] = {}
        self.context_slot = 0
        self.signature_calls: list[dict[str, Any]] = []
        self.transaction_calls: list[list[str]] = []

    def add(self, *transactions: TransactionRecord) -> None:
        self._transactions.extend(transactions)

    def _newest_first(self) -> list[TransactionRecord]:
        indexed = list(enumerate(self._transactions))
        indexed.sort(key=lambda item: (item[1].slot, item[0]), reverse=True)
        return [tx for _index, tx in indexed]

    def get_signatures_for_address(
        self,
        address: str,
        *,
        limit: int = 1000,
        before: str | None = None,
        until: str | None = None,
    ) -> list[SignatureInfo]:
        del until
        self.signature_calls.append({"address": address, "limit": limit, "before": before})
        ordered = self._newest_first()
        if before is not None:
            position = [tx.signature for tx in ordered].index(before)
            ordered = ordered[position + 1 :]
        return [
            SignatureInfo(signature=tx.signature, slot=tx.slot, err=tx.err, block_time=tx.block_time)
            for tx in ordered[:limit]
        ]

    def get_transactions(self, signatures: Sequence[str]) -> list[TransactionRecord | None]:
        self.transaction_calls.append(list(signatures))
        by_signature = {tx.signature: tx for tx in self._transactions}
        return [None if sig in self.unavailable else by_signature.get(sig) for sig in signatures]

    def get_multiple_accounts(self, addresses: Sequence[str]) -> AccountsSnapshot:
        return AccountsSnapshot(
            context_slot=self.context_slot,
            accounts=[self.accounts.get(address) for address in addresses],
        )

    def close(self) -> None:
        return None


@pytest.fixture
def fake_rpc() -> FakeLedgerRpc:
    return FakeLedgerRpc()


def mirror_digest(db_path: str) -> str:
    """Hash of every mirrored row, ignoring surrogate ids."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        digest = hashlib.sha256()
        for table in MIRRORED_TABLES:
            rows = conn.execute(f"SELECT * FROM {table}").fetchall()
            canonical = sorted(
                json.dumps({key: row[key] for key in row.keys() if key != "id"}, sort_keys=True, default=str)
                for row in rows
            )
            digest.update(table.encode())
            for line in canonical:
                digest.update(line.encode())
        return digest.hexdigest()
    finally:
        conn.close()


@pytest.fixture
def digest_mirror():
    return mirror_digest
