"""Fixed-offset decoders for fee-collection trade payloads.

Two layouts exist on the ledger and are told apart by buffer length only:

* extended: discriminator, market, maker, taker, fee payer, outcome, side,
  size, fee amount, fee rate, price, slot, timestamp
* legacy: discriminator, market, fee payer, fee amount, fee rate, price,
  slot, timestamp

Legacy payloads carry no size or counterparties, so the size is estimated from
the fee and both sides are attributed to the fee payer.
"""

from __future__ import annotations

from chainmirror.domain.borsh_codec import PUBKEY_LENGTH, BorshReader
from chainmirror.domain.event_schema import DISCRIMINATOR_LENGTH
from chainmirror.domain.events import DecodeError
from chainmirror.domain.models import TradeFeePayload, TradeLayout

FEE_RATE_SCALE = 1_000_000
LEGACY_SIZE_MULTIPLIER = 10

EXTENDED_LAYOUT_MIN_LENGTH = 181
LEGACY_LAYOUT_MIN_LENGTH = DISCRIMINATOR_LENGTH + PUBKEY_LENGTH * 2 + 8 + 4 + 8 + 8 + 8


def is_extended_layout(buffer: bytes) -> bool:
    return len(buffer) >= EXTENDED_LAYOUT_MIN_LENGTH


def estimate_legacy_size(fee_amount: int, fee_rate: int) -> int:
    if fee_rate > 0:
        return fee_amount * FEE_RATE_SCALE // fee_rate
    return fee_amount * LEGACY_SIZE_MULTIPLIER


def decode_extended_trade(buffer: bytes) -> TradeFeePayload:
    reader = BorshReader(buffer, DISCRIMINATOR_LENGTH)
    market = reader.read_pubkey()
    maker = reader.read_pubkey()
    taker = reader.read_pubkey()
    fee_payer = reader.read_pubkey()
    outcome_type = reader.read_u8()
    side = reader.read_u8()
    size = reader.read_u64()
    fee_amount = reader.read_u64()
    fee_rate = reader.read_u32()
    price = reader.read_u64()
    slot = reader.read_u64()
    # The shortest accepted extended buffer ends one byte into the timestamp.
    timestamp = reader.read_i64() if reader.remaining >= 8 else None
    return TradeFeePayload(
        market=market,
        maker=maker,
        taker=taker,
        fee_payer=fee_payer,
        outcome_type=outcome_type,
        side=side,
        size=size,
        fee_amount=fee_amount,
        fee_rate=fee_rate,
        price=price,
        slot=slot,
        timestamp=timestamp,
        layout=TradeLayout.EXTENDED,
    )


def decode_legacy_trade(buffer: bytes) -> TradeFeePayload:
    if len(buffer) < LEGACY_LAYOUT_MIN_LENGTH:
        raise DecodeError(
            f"legacy trade payload too short: {len(buffer)} < {LEGACY_LAYOUT_MIN_LENGTH}"
        )
    reader = BorshReader(buffer, DISCRIMINATOR_LENGTH)
    market = reader.read_pubkey()
    fee_payer = reader.read_pubkey()
    fee_amount = reader.read_u64()
    fee_rate = reader.read_u32()
    price = reader.read_u64()
    slot = reader.read_u64()
    timestamp = reader.read_i64()
    return TradeFeePayload(
        market=market,
        maker=fee_payer,
        taker=fee_payer,
        fee_payer=fee_payer,
        outcome_type=0,
        side=0,
        size=estimate_legacy_size(fee_amount, fee_rate),
        fee_amount=fee_amount,
        fee_rate=fee_rate,
        price=price,
        slot=slot,
        timestamp=timestamp,
        layout=TradeLayout.LEGACY,
    )


def decode_trade_payload(buffer: bytes) -> TradeFeePayload:
    if is_extended_layout(buffer):
        return decode_extended_trade(buffer)
    return decode_legacy_trade(buffer)
