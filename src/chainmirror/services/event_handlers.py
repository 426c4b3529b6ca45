from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from chainmirror.domain.events import EventKind, LedgerEvent
from chainmirror.domain.models import (
    PRICE_SCALE,
    YES_PRICE_THRESHOLD,
    FillTerms,
    Outcome,
    SettlementType,
    decimal_text,
    scaled_to_decimal,
)
from chainmirror.persistence.sqlite.sqlite_connection import epoch_to_iso
from chainmirror.persistence.uow import UnitOfWork

logger = logging.getLogger(__name__)

TERMINATION_REASON_RANDOM = 0


class HandlerOutcome(StrEnum):
    APPLIED = "applied"
    AUDIT_ONLY = "audit_only"
    MISSING_PARENT = "missing_parent"


@dataclass(frozen=True)
class HandlerResult:
    outcome: HandlerOutcome
    detail: str | None = None


APPLIED = HandlerResult(HandlerOutcome.APPLIED)
AUDIT_ONLY = HandlerResult(HandlerOutcome.AUDIT_ONLY)


def missing_parent(entity: str, key: str) -> HandlerResult:
    return HandlerResult(HandlerOutcome.MISSING_PARENT, detail=f"{entity}:{key}")


@dataclass(frozen=True)
class TransactionContext:
    uow: UnitOfWork
    program_id: str


Handler = Callable[[TransactionContext, LedgerEvent], HandlerResult]


def _event_time(event: LedgerEvent, field: str = "timestamp") -> str | None:
    value = event.data.get(field)
    if value is not None:
        return epoch_to_iso(int(value))
    return event.observed_at.isoformat() if event.observed_at else None


def _price_text(value: int) -> str:
    return decimal_text(scaled_to_decimal(value))


def _warn_missing(event: LedgerEvent, result: HandlerResult) -> HandlerResult:
    logger.warning(
        "event_parent_missing",
        extra={
            "extra": {
                "event_type": event.name,
                "signature": event.signature,
                "slot": event.slot,
                "missing": result.detail,
            }
        },
    )
    return result


def handle_market_created(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    data = event.data
    creator_id = ctx.uow.users.ensure_user(str(data["creator"]))
    ctx.uow.markets.upsert_created(
        market_address=str(data["market"]),
        creator_id=creator_id,
        question=data.get("question"),
        description=data.get("description"),
        yes_description=data.get("yes_description"),
        no_description=data.get("no_description"),
        market_key=data.get("market_id"),
        created_at=_event_time(event),
    )
    logger.info("market_created_applied", extra={"extra": {"market": data["market"], "slot": event.slot}})
    return APPLIED


def handle_market_settled(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    data = event.data
    market = str(data["market"])
    market_id = ctx.uow.markets.get_id_by_address(market)
    if market_id is None:
        return _warn_missing(event, missing_parent("market", market))

    winning = Outcome.from_index(int(data["winning_outcome"]))
    # Older program builds omit the closing prices; the winner then redeems at par.
    yes_raw = data.get("yes_price")
    no_raw = data.get("no_price")
    if yes_raw is None:
        yes_raw = int(PRICE_SCALE) if winning is Outcome.YES else 0
    if no_raw is None:
        no_raw = int(PRICE_SCALE) - int(yes_raw)
    yes_price = _price_text(int(yes_raw))
    no_price = _price_text(int(no_raw))
    settled_at = _event_time(event)

    reference_agent = data.get("reference_agent")
    last_trader_id = ctx.uow.users.ensure_user(str(reference_agent)) if reference_agent else None

    ctx.uow.markets.mark_settled(
        market_id,
        winning_outcome=winning.value,
        final_yes_price=yes_price,
        final_no_price=no_price,
        settled_at=settled_at,
    )
    ctx.uow.markets.insert_settlement(
        market_id=market_id,
        settlement_type=SettlementType.NORMAL.value,
        settlement_index=data.get("settlement_index"),
        winning_outcome=winning.value,
        yes_price=yes_price,
        no_price=no_price,
        last_trader_id=last_trader_id,
        transaction_signature=event.signature,
        settled_at=settled_at,
    )
    logger.info(
        "market_settled_applied",
        extra={"extra": {"market": market, "winning_outcome": winning.value, "final_yes_price": yes_price}},
    )
    return APPLIED


def _terminating_trader(ctx: TransactionContext, event: LedgerEvent) -> str | None:
    checks = ctx.uow.event_log.find_data(event.signature, EventKind.TERMINATION_CHECK_RESULT)
    for check in reversed(checks):
        if check.get("was_terminated") and check.get("market") == event.data.get("market"):
            return str(check["user"])
    return None


def handle_market_terminated(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    data = event.data
    market = str(data["market"])
    market_id = ctx.uow.markets.get_id_by_address(market)
    if market_id is None:
        return _warn_missing(event, missing_parent("market", market))

    is_random = int(data["reason"]) == TERMINATION_REASON_RANDOM
    yes_decimal = scaled_to_decimal(int(data["final_yes_price"]))
    yes_price = decimal_text(yes_decimal)
    no_price = _price_text(int(data["final_no_price"]))
    winning = Outcome.YES if yes_decimal >= YES_PRICE_THRESHOLD else Outcome.NO
    terminated_at = _event_time(event)

    trader = _terminating_trader(ctx, event)
    last_trader_id = ctx.uow.users.ensure_user(trader) if trader else None

    ctx.uow.markets.mark_terminated(
        market_id,
        is_random=is_random,
        winning_outcome=winning.value,
        final_yes_price=yes_price,
        final_no_price=no_price,
        terminated_at=terminated_at,
    )
    inserted = ctx.uow.markets.insert_settlement(
        market_id=market_id,
        settlement_type=(SettlementType.RANDOM_VRF if is_random else SettlementType.AUTO_TERMINATED).value,
        settlement_index=None,
        winning_outcome=winning.value,
        yes_price=yes_price,
        no_price=no_price,
        last_trader_id=last_trader_id,
        transaction_signature=event.signature,
        settled_at=terminated_at,
    )
    if is_random and inserted and last_trader_id is not None:
        ctx.uow.users.increment_termination_count(last_trader_id)
    logger.info(
        "market_terminated_applied",
        extra={"extra": {"market": market, "reason": "random" if is_random else "inactivity", "winning_outcome": winning.value}},
    )
    return APPLIED


def handle_market_paused(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    market = str(event.data["market"])
    market_id = ctx.uow.markets.get_id_by_address(market)
    if market_id is None:
        return _warn_missing(event, missing_parent("market", market))
    paused_by = event.data.get("paused_by")
    ctx.uow.markets.pause(
        market_id,
        paused_at=_event_time(event, "paused_at"),
        reason=f"paused by {paused_by}" if paused_by else "admin paused",
    )
    return APPLIED


def handle_market_resumed(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    market = str(event.data["market"])
    market_id = ctx.uow.markets.get_id_by_address(market)
    if market_id is None:
        return _warn_missing(event, missing_parent("market", market))
    ctx.uow.markets.resume(market_id)
    return APPLIED


def handle_order_filled(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    data = event.data
    market = str(data["market"])
    market_id = ctx.uow.markets.get_id_by_address(market)
    if market_id is None:
        return _warn_missing(event, missing_parent("market", market))

    order_hash = str(data["order_hash"])
    terms = FillTerms.from_amounts(
        maker_asset_id=int(data["maker_asset_id"]),
        taker_asset_id=int(data["taker_asset_id"]),
        maker_amount_filled=int(data["maker_amount_filled"]),
        taker_amount_filled=int(data["taker_amount_filled"]),
    )
    maker_id = ctx.uow.users.ensure_user(str(data["maker"]))
    taker_id = ctx.uow.users.ensure_user(str(data["taker"]))
    filled_at = _event_time(event)
    slot = int(data.get("slot") or event.slot)

    remaining = ctx.uow.orders.apply_fill(order_hash, fill_amount=terms.size, filled_at=filled_at)
    ctx.uow.orders.upsert_status(
        order_hash,
        is_closed=remaining == 0,
        remaining_amount=remaining,
        slot=slot,
    )
    ctx.uow.orders.insert_fill(
        order_hash=order_hash,
        market_id=market_id,
        maker_user_id=maker_id,
        taker_user_id=taker_id,
        outcome_type=terms.outcome.value,
        side=terms.side.value,
        price=decimal_text(terms.price),
        amount=terms.size,
        fee=int(data.get("fee") or 0),
        transaction_signature=event.signature,
        event_index=event.event_index,
        slot=slot,
        block_time=filled_at,
    )
    logger.debug(
        "order_filled_applied",
        extra={"extra": {"order_hash": order_hash[:16], "remaining": remaining, "size": terms.size}},
    )
    return APPLIED


def handle_order_cancelled(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    data = event.data
    order_hash = str(data["order_hash"])
    ctx.uow.users.ensure_user(str(data["maker"]))
    ctx.uow.orders.cancel(order_hash, cancelled_at=_event_time(event))
    ctx.uow.orders.upsert_status(
        order_hash,
        is_closed=True,
        remaining_amount=0,
        slot=int(data.get("slot") or event.slot),
    )
    return APPLIED


def handle_nonce_incremented(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    wallet = str(event.data["user"])
    new_nonce = int(event.data["new_nonce"])
    user_id = ctx.uow.users.ensure_user(wallet)
    ctx.uow.nonces.raise_nonce(
        wallet_address=wallet,
        user_id=user_id,
        nonce=new_nonce,
        slot=int(event.data.get("slot") or event.slot),
    )
    cancelled = ctx.uow.orders.cancel_below_nonce(user_id, nonce=new_nonce, cancelled_at=_event_time(event))
    logger.info(
        "nonce_incremented_applied",
        extra={"extra": {"wallet": wallet, "new_nonce": new_nonce, "orders_cancelled": len(cancelled)}},
    )
    return APPLIED


def _stake_event_parties(ctx: TransactionContext, event: LedgerEvent) -> tuple[int, int] | HandlerResult:
    market = str(event.data["market"])
    market_id = ctx.uow.markets.get_id_by_address(market)
    if market_id is None:
        return _warn_missing(event, missing_parent("market", market))
    user_id = ctx.uow.users.ensure_user(str(event.data["user"]))
    return user_id, market_id


def handle_position_split(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    parties = _stake_event_parties(ctx, event)
    if isinstance(parties, HandlerResult):
        return parties
    user_id, market_id = parties
    yes_amount = int(event.data["yes_amount"])
    no_amount = int(event.data["no_amount"])
    ctx.uow.positions.add_stake(user_id, market_id, Outcome.YES.value, yes_amount)
    ctx.uow.positions.add_stake(user_id, market_id, Outcome.NO.value, no_amount)
    ctx.uow.positions.record_operation(
        user_id=user_id,
        market_id=market_id,
        operation_type="split",
        amount=int(event.data["amount"]),
        yes_amount=yes_amount,
        no_amount=no_amount,
        transaction_signature=event.signature,
        created_at=_event_time(event),
    )
    return APPLIED


def handle_position_merged(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    parties = _stake_event_parties(ctx, event)
    if isinstance(parties, HandlerResult):
        return parties
    user_id, market_id = parties
    yes_amount = int(event.data["yes_amount"])
    no_amount = int(event.data["no_amount"])
    ctx.uow.positions.reduce_stake(user_id, market_id, Outcome.YES.value, yes_amount)
    ctx.uow.positions.reduce_stake(user_id, market_id, Outcome.NO.value, no_amount)
    ctx.uow.positions.record_operation(
        user_id=user_id,
        market_id=market_id,
        operation_type="merge",
        amount=int(event.data["amount"]),
        yes_amount=yes_amount,
        no_amount=no_amount,
        transaction_signature=event.signature,
        created_at=_event_time(event),
    )
    return APPLIED


def handle_ctf_tokens_redeemed(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    parties = _stake_event_parties(ctx, event)
    if isinstance(parties, HandlerResult):
        return parties
    user_id, market_id = parties
    outcome = Outcome.from_index(int(event.data["winning_outcome"]))
    ctx.uow.positions.record_redemption(
        user_id=user_id,
        market_id=market_id,
        outcome_type=outcome.value,
        amount=int(event.data["token_amount"]),
        usdc_received=int(event.data["reward_amount"]),
        transaction_signature=event.signature,
        redeemed_at=_event_time(event),
    )
    ctx.uow.positions.zero_stake(user_id, market_id, outcome.value)
    return APPLIED


def handle_global_fee_rates_updated(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    rates = {
        key: int(event.data[key])
        for key in (
            "center_taker_fee_rate",
            "extreme_taker_fee_rate",
            "platform_fee_rate",
            "maker_rebate_rate",
            "creator_incentive_rate",
        )
    }
    ctx.uow.global_state.overwrite_fee_rates(rates, updated_by=event.data.get("updated_by"), slot=event.slot)
    logger.info(
        "global_fee_rates_applied",
        extra={"extra": {key: str(Decimal(value) / PRICE_SCALE) for key, value in rates.items()}},
    )
    return APPLIED


def handle_global_trading_paused(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    ctx.uow.global_state.set_trading_paused(True, changed_by=event.data.get("paused_by"), slot=event.slot)
    logger.warning("global_trading_paused_applied", extra={"extra": {"slot": event.slot}})
    return APPLIED


def handle_global_trading_unpaused(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    ctx.uow.global_state.set_trading_paused(False, changed_by=event.data.get("unpaused_by"), slot=event.slot)
    logger.info("global_trading_unpaused_applied", extra={"extra": {"slot": event.slot}})
    return APPLIED


def handle_operator_added(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    ctx.uow.global_state.set_operator(
        str(event.data["operator"]),
        enabled=True,
        changed_by=event.data.get("added_by"),
        slot=event.slot,
    )
    return APPLIED


def handle_operator_removed(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    ctx.uow.global_state.set_operator(
        str(event.data["operator"]),
        enabled=False,
        changed_by=event.data.get("removed_by"),
        slot=event.slot,
    )
    return APPLIED


def record_only(ctx: TransactionContext, event: LedgerEvent) -> HandlerResult:
    del ctx, event
    return AUDIT_ONLY


_EVENT_HANDLERS: dict[EventKind, Handler] = {
    EventKind.MARKET_CREATED: handle_market_created,
    EventKind.MARKET_SETTLED: handle_market_settled,
    EventKind.MARKET_TERMINATED: handle_market_terminated,
    EventKind.MARKET_PAUSED: handle_market_paused,
    EventKind.MARKET_RESUMED: handle_market_resumed,
    EventKind.ORDER_FILLED: handle_order_filled,
    EventKind.ORDER_CANCELLED: handle_order_cancelled,
    EventKind.NONCE_INCREMENTED: handle_nonce_incremented,
    EventKind.POSITION_SPLIT: handle_position_split,
    EventKind.POSITION_MERGED: handle_position_merged,
    EventKind.CTF_TOKENS_REDEEMED: handle_ctf_tokens_redeemed,
    EventKind.GLOBAL_FEE_RATES_UPDATED: handle_global_fee_rates_updated,
    EventKind.GLOBAL_TRADING_PAUSED: handle_global_trading_paused,
    EventKind.GLOBAL_TRADING_UNPAUSED: handle_global_trading_unpaused,
    EventKind.OPERATOR_ADDED: handle_operator_added,
    EventKind.OPERATOR_REMOVED: handle_operator_removed,
    EventKind.ORDERS_MATCHED: record_only,
    EventKind.TERMINATION_CHECK_RESULT: record_only,
    EventKind.MARKET_PARAMS_UPDATED: record_only,
    EventKind.MARKET_CREATION_FEE_COLLECTED: record_only,
    EventKind.LIQUIDITY_REWARD_DISTRIBUTED: record_only,
    EventKind.PLATFORM_FEES_WITHDRAWN: record_only,
    EventKind.REWARD_FEES_WITHDRAWN: record_only,
}

EVENT_HANDLERS: Mapping[EventKind, Handler] = MappingProxyType(_EVENT_HANDLERS)


def event_summary(event: LedgerEvent) -> dict[str, Any]:
    summary: dict[str, Any] = {"event_type": event.name, "signature": event.signature, "slot": event.slot}
    for key in ("market", "user", "maker", "order_hash"):
        if key in event.data:
            summary[key] = event.data[key]
    return summary
