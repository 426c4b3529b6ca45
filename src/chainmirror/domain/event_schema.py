from __future__ import annotations

import hashlib
from collections.abc import Mapping, Sequence
from types import MappingProxyType

from chainmirror.domain.borsh_codec import FieldSpec
from chainmirror.domain.events import EventKind

DISCRIMINATOR_LENGTH = 8


def event_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"event:{name}".encode()).digest()[:DISCRIMINATOR_LENGTH]


_HASH = ("array", 32)

_EVENT_FIELDS: dict[EventKind, tuple[FieldSpec, ...]] = {
    EventKind.MARKET_CREATED: (
        ("market", "pubkey"),
        ("creator", "pubkey"),
        ("question", "string"),
        ("description", "string"),
        ("yes_description", "string"),
        ("no_description", "string"),
        ("market_id", _HASH),
        ("timestamp", "i64"),
    ),
    EventKind.MARKET_SETTLED: (
        ("market", "pubkey"),
        ("settlement_index", "u32"),
        ("winning_outcome", "u8"),
        ("reference_agent", "pubkey"),
        ("vault_balance", "u64"),
        ("total_rewards", "u64"),
        ("timestamp", "i64"),
        ("yes_price", ("trailing", "u64")),
        ("no_price", ("trailing", "u64")),
    ),
    EventKind.MARKET_TERMINATED: (
        ("market", "pubkey"),
        ("reason", "u8"),
        ("final_yes_price", "u64"),
        ("final_no_price", "u64"),
        ("termination_slot", "u64"),
        ("timestamp", "i64"),
    ),
    EventKind.MARKET_PAUSED: (
        ("market", "pubkey"),
        ("paused_by", "pubkey"),
        ("paused_at", "i64"),
    ),
    EventKind.MARKET_RESUMED: (
        ("market", "pubkey"),
        ("resumed_by", "pubkey"),
        ("resumed_at", "i64"),
    ),
    EventKind.MARKET_PARAMS_UPDATED: (
        ("market", "pubkey"),
        ("updated_by", "pubkey"),
        ("termination_probability", "u32"),
        ("updated_at", "i64"),
    ),
    EventKind.MARKET_CREATION_FEE_COLLECTED: (
        ("market", "pubkey"),
        ("creator", "pubkey"),
        ("fee_amount", "u64"),
        ("slot", "u64"),
        ("timestamp", "i64"),
    ),
    EventKind.TERMINATION_CHECK_RESULT: (
        ("market", "pubkey"),
        ("user", "pubkey"),
        ("trade_nonce", "u64"),
        ("random_value", "u64"),
        ("threshold", "u64"),
        ("was_terminated", "bool"),
        ("slot", "u64"),
        ("timestamp", "i64"),
    ),
    EventKind.POSITION_SPLIT: (
        ("market", "pubkey"),
        ("user", "pubkey"),
        ("amount", "u64"),
        ("yes_amount", "u64"),
        ("no_amount", "u64"),
        ("timestamp", "i64"),
    ),
    EventKind.POSITION_MERGED: (
        ("market", "pubkey"),
        ("user", "pubkey"),
        ("amount", "u64"),
        ("yes_amount", "u64"),
        ("no_amount", "u64"),
        ("timestamp", "i64"),
    ),
    EventKind.CTF_TOKENS_REDEEMED: (
        ("market", "pubkey"),
        ("user", "pubkey"),
        ("winning_outcome", "u8"),
        ("token_amount", "u64"),
        ("reward_amount", "u64"),
        ("timestamp", "i64"),
    ),
    EventKind.ORDER_FILLED: (
        ("order_hash", _HASH),
        ("maker", "pubkey"),
        ("taker", "pubkey"),
        ("maker_asset_id", "u8"),
        ("taker_asset_id", "u8"),
        ("maker_amount_filled", "u64"),
        ("taker_amount_filled", "u64"),
        ("fee", "u64"),
        ("market", "pubkey"),
        ("slot", "u64"),
        ("timestamp", "i64"),
    ),
    EventKind.ORDER_CANCELLED: (
        ("order_hash", _HASH),
        ("maker", "pubkey"),
        ("market", "pubkey"),
        ("slot", "u64"),
        ("timestamp", "i64"),
    ),
    EventKind.ORDERS_MATCHED: (
        ("taker_order_hash", _HASH),
        ("taker_maker", "pubkey"),
        ("maker_asset_id", "u8"),
        ("taker_asset_id", "u8"),
        ("maker_amount_filled", "u64"),
        ("taker_amount_filled", "u64"),
        ("maker_orders_count", "u8"),
        ("market", "pubkey"),
        ("slot", "u64"),
        ("timestamp", "i64"),
    ),
    EventKind.NONCE_INCREMENTED: (
        ("user", "pubkey"),
        ("new_nonce", "u64"),
        ("slot", "u64"),
        ("timestamp", "i64"),
    ),
    EventKind.GLOBAL_FEE_RATES_UPDATED: (
        ("updated_by", "pubkey"),
        ("center_taker_fee_rate", "u32"),
        ("extreme_taker_fee_rate", "u32"),
        ("platform_fee_rate", "u32"),
        ("maker_rebate_rate", "u32"),
        ("creator_incentive_rate", "u32"),
        ("updated_at", "i64"),
    ),
    EventKind.GLOBAL_TRADING_PAUSED: (
        ("paused_by", "pubkey"),
        ("timestamp", "i64"),
    ),
    EventKind.GLOBAL_TRADING_UNPAUSED: (
        ("unpaused_by", "pubkey"),
        ("timestamp", "i64"),
    ),
    EventKind.LIQUIDITY_REWARD_DISTRIBUTED: (
        ("recipient", "pubkey"),
        ("distributed_by", "pubkey"),
        ("amount", "u64"),
        ("distributed_at", "i64"),
    ),
    EventKind.PLATFORM_FEES_WITHDRAWN: (
        ("recipient", "pubkey"),
        ("withdrawn_by", "pubkey"),
        ("amount", "u64"),
        ("withdrawn_at", "i64"),
    ),
    EventKind.REWARD_FEES_WITHDRAWN: (
        ("recipient", "pubkey"),
        ("withdrawn_by", "pubkey"),
        ("amount", "u64"),
        ("withdrawn_at", "i64"),
    ),
    EventKind.OPERATOR_ADDED: (
        ("operator", "pubkey"),
        ("added_by", "pubkey"),
        ("timestamp", "i64"),
    ),
    EventKind.OPERATOR_REMOVED: (
        ("operator", "pubkey"),
        ("removed_by", "pubkey"),
        ("timestamp", "i64"),
    ),
}

EVENT_FIELDS: Mapping[EventKind, Sequence[FieldSpec]] = MappingProxyType(_EVENT_FIELDS)

EVENT_KINDS_BY_DISCRIMINATOR: Mapping[bytes, EventKind] = MappingProxyType(
    {
        event_discriminator(kind.value): kind
        for kind in EventKind
        if kind is not EventKind.UNKNOWN
    }
)

TRADING_FEE_COLLECTED_DISCRIMINATOR = event_discriminator(EventKind.TRADING_FEE_COLLECTED.value)
