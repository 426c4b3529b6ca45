from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import pytest

from chainmirror.domain.events import EventKind, LedgerEvent
from chainmirror.persistence.sqlite.event_log_repo import MISSING_PARENT_PREFIX
from chainmirror.services.event_handlers import EVENT_HANDLERS, TransactionContext
from chainmirror.services.event_router import (
    EventRouter,
    RouteOutcome,
    _ensure_handler_coverage,
    router_for_service,
)
from chainmirror.services.trade_pipeline import TRADE_HANDLERS

PROGRAM_ID = "Fg6PaFpoGXkYsidMpWTK6W2BeZ7FEfcYkg476zPFsLnS"


def _event(kind: EventKind, data: dict[str, Any], *, signature: str = "sig-1", slot: int = 100, index: int = 0) -> LedgerEvent:
    return LedgerEvent(
        kind=kind,
        name=kind.value,
        data=data,
        signature=signature,
        slot=slot,
        event_index=index,
        observed_at=datetime(2024, 1, 1, tzinfo=UTC),
    )


def _market_created(market: str, creator: str, *, signature: str = "sig-create", slot: int = 100) -> LedgerEvent:
    return _event(
        EventKind.MARKET_CREATED,
        {
            "market": market,
            "creator": creator,
            "question": "Q?",
            "description": "",
            "yes_description": "",
            "no_description": "",
            "market_id": "00" * 32,
            "timestamp": 1_700_000_000,
        },
        signature=signature,
        slot=slot,
    )


def _paused(market: str, *, signature: str = "sig-pause", slot: int = 90) -> LedgerEvent:
    return _event(
        EventKind.MARKET_PAUSED,
        {"market": market, "paused_by": market, "paused_at": 1_700_000_001},
        signature=signature,
        slot=slot,
    )


def _ctx(uow) -> TransactionContext:
    return TransactionContext(uow=uow, program_id=PROGRAM_ID)


def test_every_known_kind_has_a_handler() -> None:
    _ensure_handler_coverage((EVENT_HANDLERS, TRADE_HANDLERS))


def test_coverage_check_names_missing_kinds() -> None:
    with pytest.raises(RuntimeError, match="TradingFeeCollected"):
        _ensure_handler_coverage((EVENT_HANDLERS,))


def test_unknown_events_are_skipped_without_audit_row(uow_factory, caplog) -> None:
    router = router_for_service("events")
    event = _event(EventKind.UNKNOWN, {"discriminator": "00" * 8, "payload_length": 8})

    with caplog.at_level(logging.WARNING), uow_factory() as uow:
        outcome = router.route(_ctx(uow), event)
        counts = uow.event_log.counts()

    assert outcome is RouteOutcome.UNKNOWN
    assert counts["total"] == 0
    assert any(record.getMessage() == "event_kind_unknown" for record in caplog.records)


def test_event_is_applied_once(uow_factory, ledger) -> None:
    router = router_for_service("events")
    event = _market_created(ledger.key(1), ledger.key(2))

    with uow_factory() as uow:
        first = router.route(_ctx(uow), event)
        second = router.route(_ctx(uow), event)
        counts = uow.event_log.counts()

    assert first is RouteOutcome.APPLIED
    assert second is RouteOutcome.DUPLICATE
    assert counts == {"total": 1, "processed": 1, "pending": 0}


def test_informational_event_is_marked_processed(uow_factory, ledger) -> None:
    router = router_for_service("events")
    event = _event(
        EventKind.MARKET_PARAMS_UPDATED,
        {"market": ledger.key(1), "updated_by": ledger.key(2), "termination_probability": 1, "updated_at": 1},
    )

    with uow_factory() as uow:
        outcome = router.route(_ctx(uow), event)
        processed = uow.event_log.is_processed(event)

    assert outcome is RouteOutcome.AUDIT_ONLY
    assert processed is True


def test_missing_parent_is_parked_then_redriven(uow_factory, ledger) -> None:
    router = router_for_service("events")
    market = ledger.key(1)
    pause = _paused(market)

    with uow_factory() as uow:
        parked = router.route(_ctx(uow), pause)
        pending = uow.event_log.pending_missing_parent()
        nothing_yet = router.redrive_pending(_ctx(uow))
        router.route(_ctx(uow), _market_created(market, ledger.key(2)))
        redriven = router.redrive_pending(_ctx(uow))
        row = uow.markets.get_by_address(market)
        processed = uow.event_log.is_processed(pause)

    assert parked is RouteOutcome.MISSING_PARENT
    assert [event.audit_key for event in pending] == [pause.audit_key]
    assert nothing_yet == 0
    assert redriven == 1
    assert row["status"] == "paused"
    assert processed is True


def test_parked_event_redelivered_runs_handler_again(uow_factory, ledger) -> None:
    router = router_for_service("events")
    market = ledger.key(1)
    pause = _paused(market)

    with uow_factory() as uow:
        router.route(_ctx(uow), pause)
        router.route(_ctx(uow), _market_created(market, ledger.key(2)))
        outcome = router.route(_ctx(uow), pause)

    assert outcome is RouteOutcome.APPLIED


def test_events_router_excludes_trades(uow_factory, ledger) -> None:
    router = router_for_service("events")
    event = _event(EventKind.TRADING_FEE_COLLECTED, {"market": ledger.key(1)})

    with uow_factory() as uow:
        outcome = router.route(_ctx(uow), event)
        counts = uow.event_log.counts()

    assert outcome is RouteOutcome.EXCLUDED
    assert counts["total"] == 0


def test_markets_router_filters_non_lifecycle_kinds(ledger) -> None:
    router = router_for_service("markets")

    assert router.classify(_market_created(ledger.key(1), ledger.key(2))) is None
    assert router.classify(_event(EventKind.NONCE_INCREMENTED, {"user": ledger.key(3)})) is RouteOutcome.FILTERED


def test_global_router_only_takes_global_state(ledger) -> None:
    router = router_for_service("global")

    assert router.classify(_event(EventKind.GLOBAL_TRADING_PAUSED, {"paused_by": ledger.key(3)})) is None
    assert router.classify(_market_created(ledger.key(1), ledger.key(2))) is RouteOutcome.FILTERED


def test_trades_router_excludes_everything_but_trades(ledger) -> None:
    router = router_for_service("trades")

    assert router.classify(_market_created(ledger.key(1), ledger.key(2))) is RouteOutcome.EXCLUDED
    assert router.classify(_event(EventKind.TRADING_FEE_COLLECTED, {})) is None


def test_redrive_respects_router_kinds(uow_factory, ledger) -> None:
    events_router = router_for_service("events")
    global_router = router_for_service("global")
    market = ledger.key(1)

    with uow_factory() as uow:
        events_router.route(_ctx(uow), _paused(market))
        events_router.route(_ctx(uow), _market_created(market, ledger.key(2)))
        assert global_router.redrive_pending(_ctx(uow)) == 0
        assert events_router.redrive_pending(_ctx(uow)) == 1


def test_redrive_reaches_own_rows_behind_another_services_backlog(uow_factory, ledger) -> None:
    events_router = router_for_service("events")
    market = ledger.key(1)
    absent_market = ledger.key(9)

    with uow_factory() as uow:
        for slot in range(10, 15):
            trade = _event(EventKind.TRADING_FEE_COLLECTED, {"market": absent_market}, signature=f"sig-trade-{slot}", slot=slot)
            uow.event_log.record(trade, program_id=PROGRAM_ID)
            uow.event_log.mark_skipped(trade, error=f"{MISSING_PARENT_PREFIX}market:{absent_market}")
        parked = events_router.route(_ctx(uow), _paused(market, slot=500))
        events_router.route(_ctx(uow), _market_created(market, ledger.key(2), slot=600))
        redriven = events_router.redrive_pending(_ctx(uow), limit=2)
        row = uow.markets.get_by_address(market)
        trades_still_parked = uow.event_log.pending_missing_parent(kinds=frozenset({EventKind.TRADING_FEE_COLLECTED}))

    assert parked is RouteOutcome.MISSING_PARENT
    assert redriven == 1
    assert row["status"] == "paused"
    assert len(trades_still_parked) == 5


def test_redrive_pages_past_rows_whose_parent_never_arrives(uow_factory, ledger) -> None:
    router = router_for_service("events")
    market = ledger.key(1)

    with uow_factory() as uow:
        for n in range(5):
            router.route(_ctx(uow), _paused(ledger.key(50 + n), signature=f"sig-orphan-{n}", slot=10 + n))
        router.route(_ctx(uow), _paused(market, slot=500))
        router.route(_ctx(uow), _market_created(market, ledger.key(2), slot=600))
        redriven = router.redrive_pending(_ctx(uow), limit=2)
        row = uow.markets.get_by_address(market)
        pending = uow.event_log.pending_missing_parent()

    assert redriven == 1
    assert row["status"] == "paused"
    assert sorted(event.signature for event in pending) == [f"sig-orphan-{n}" for n in range(5)]


def test_unknown_service_has_no_router() -> None:
    with pytest.raises(ValueError):
        router_for_service("user-nonces")


def test_custom_router_without_handler_excludes(ledger) -> None:
    router = EventRouter({})

    assert router.classify(_market_created(ledger.key(1), ledger.key(2))) is RouteOutcome.EXCLUDED
