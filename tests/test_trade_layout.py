from __future__ import annotations

import pytest

from chainmirror.domain.events import DecodeError
from chainmirror.domain.models import TradeLayout
from chainmirror.domain.trade_layout import (
    LEGACY_LAYOUT_MIN_LENGTH,
    decode_trade_payload,
    estimate_legacy_size,
    is_extended_layout,
)


def test_extended_layout_reads_distinct_counterparties(ledger) -> None:
    market, maker, taker = ledger.key(1), ledger.key(2), ledger.key(3)

    trade = decode_trade_payload(ledger.extended_trade(market, maker=maker, taker=taker))

    assert trade.layout is TradeLayout.EXTENDED
    assert trade.is_approximate is False
    assert (trade.market, trade.maker, trade.taker) == (market, maker, taker)
    assert trade.outcome_type == 1
    assert trade.side == 0
    assert trade.size == 2_000_000
    assert trade.fee_amount == 5_000
    assert trade.fee_rate == 2_500
    assert trade.price == 650_000
    assert trade.slot == 1234
    assert trade.timestamp == 1_700_000_000


def test_shortest_extended_buffer_has_no_timestamp(ledger) -> None:
    buffer = ledger.extended_trade(ledger.key(1), maker=ledger.key(2), taker=ledger.key(3), length=181)

    trade = decode_trade_payload(buffer)

    assert is_extended_layout(buffer)
    assert trade.layout is TradeLayout.EXTENDED
    assert trade.timestamp is None
    assert trade.size == 2_000_000


def test_legacy_layout_estimates_size_and_uses_fee_payer(ledger) -> None:
    market, payer = ledger.key(1), ledger.key(4)

    trade = decode_trade_payload(ledger.legacy_trade(market, payer))

    assert trade.layout is TradeLayout.LEGACY
    assert trade.is_approximate is True
    assert trade.maker == trade.taker == trade.fee_payer == payer
    assert trade.size == 5_000 * 1_000_000 // 2_500
    assert trade.price == 400_000
    assert trade.outcome_type == 0
    assert trade.side == 0


def test_legacy_layout_with_zero_rate_falls_back_to_multiplier(ledger) -> None:
    trade = decode_trade_payload(ledger.legacy_trade(ledger.key(1), ledger.key(4), fee_rate=0))

    assert trade.size == 50_000


def test_legacy_layout_rejects_short_buffer(ledger) -> None:
    buffer = ledger.legacy_trade(ledger.key(1), ledger.key(4), length=0)[: LEGACY_LAYOUT_MIN_LENGTH - 1]

    with pytest.raises(DecodeError, match="too short"):
        decode_trade_payload(buffer)


@pytest.mark.parametrize(
    ("fee", "rate", "expected"),
    [(5_000, 2_500, 2_000_000), (1, 3, 333_333), (7, 0, 70), (0, 10_000, 0)],
)
def test_estimate_legacy_size(fee: int, rate: int, expected: int) -> None:
    assert estimate_legacy_size(fee, rate) == expected
