from __future__ import annotations

import logging
from collections.abc import Mapping
from types import MappingProxyType

from chainmirror.domain.events import EventKind, LedgerEvent
from chainmirror.domain.models import PRICE_SCALE, Outcome, Side, TradeLayout, decimal_text, scaled_to_decimal
from chainmirror.persistence.sqlite.sqlite_connection import epoch_to_iso
from chainmirror.services.event_handlers import (
    APPLIED,
    Handler,
    HandlerResult,
    TransactionContext,
    missing_parent,
)

logger = logging.getLogger(__name__)


def trade_total_cost(size: int, price: int) -> int:
    """USDC base units paid for ``size`` outcome tokens at a 1e6-scaled ``price``."""
    return (int(size) * int(price)) // int(PRICE_SCALE)


def _trade_time(event: LedgerEvent) -> str | None:
    if event.observed_at is not None:
        return event.observed_at.isoformat()
    return epoch_to_iso(event.data.get("timestamp"))


def apply_trade(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    data = event.data
    market = str(data["market"])
    market_id = ctx.uow.markets.get_id_by_address(market)
    if market_id is None:
        logger.warning(
            "trade_market_missing",
            extra={"extra": {"signature": event.signature, "market": market, "slot": event.slot}},
        )
        return missing_parent("market", market)

    size = int(data["size"])
    raw_price = int(data["price"])
    price = decimal_text(scaled_to_decimal(raw_price))
    layout = TradeLayout(str(data.get("layout") or TradeLayout.EXTENDED.value))
    traded_at = _trade_time(event)

    inserted = ctx.uow.trades.insert_trade(
        market_id=market_id,
        maker_user_id=ctx.uow.users.ensure_user(str(data["maker"])),
        taker_user_id=ctx.uow.users.ensure_user(str(data["taker"])),
        outcome_type=Outcome.from_index(int(data["outcome_type"])).value,
        side=Side.from_index(int(data["side"])).value,
        price=price,
        amount=size,
        total_cost=trade_total_cost(size, raw_price),
        fee_amount=int(data["fee_amount"]),
        fee_rate=int(data["fee_rate"]),
        layout=layout.value,
        is_approximate=layout is TradeLayout.LEGACY,
        transaction_signature=event.signature,
        event_index=event.event_index,
        slot=int(data.get("slot") or event.slot),
        created_at=traded_at,
    )
    if inserted:
        ctx.uow.markets.record_trade(market_id, size=size, price=price, traded_at=traded_at)
    logger.debug(
        "trade_applied",
        extra={
            "extra": {
                "signature": event.signature,
                "market": market,
                "size": size,
                "price": price,
                "layout": layout.value,
                "inserted": inserted,
            }
        },
    )
    return APPLIED


TRADE_HANDLERS: Mapping[EventKind, Handler] = MappingProxyType({EventKind.TRADING_FEE_COLLECTED: apply_trade})
