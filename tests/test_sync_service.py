from __future__ import annotations

import base64
from dataclasses import replace
from pathlib import Path

import pytest

from chainmirror.domain.event_decoder import EventDecoder
from chainmirror.domain.events import EventKind, SyncCursor
from chainmirror.persistence.uow import UnitOfWorkFactory
from chainmirror.services.cursor_store import load_cursor, reset_cursor
from chainmirror.services.event_handlers import EVENT_HANDLERS
from chainmirror.services.event_router import EventRouter, router_for_service
from chainmirror.services.ledger_fetcher import LedgerFetcher
from chainmirror.services.sync_service import EventSyncService, SyncState

PROGRAM_ID = "Fg6PaFpoGXkYsidMpWTK6W2BeZ7FEfcYkg476zPFsLnS"
FIXED_NOW = "2024-01-01T00:00:00+00:00"


def _service(
    rpc,
    uow_factory,
    *,
    service: str = "events",
    batch_size: int = 100,
    router: EventRouter | None = None,
    dry_run: bool = False,
) -> EventSyncService:
    return EventSyncService(
        service=service,
        fetcher=LedgerFetcher(rpc, PROGRAM_ID),
        decoder=EventDecoder(PROGRAM_ID),
        router=router or router_for_service(service),
        uow_factory=uow_factory,
        program_id=PROGRAM_ID,
        batch_size=batch_size,
        dry_run=dry_run,
        sleep_fn=lambda _seconds: None,
    )


def _run_until_idle(service: EventSyncService, uow_factory, *, max_iterations: int = 20) -> SyncCursor:
    cursor = load_cursor(uow_factory, service.service)
    for _ in range(max_iterations):
        next_cursor, result = service.run_iteration(cursor)
        assert result.ok, result.error
        if result.fetched == 0 and next_cursor.last_slot == cursor.last_slot:
            return next_cursor
        cursor = next_cursor
    raise AssertionError("sync did not reach the ledger head")


@pytest.fixture
def scenario(ledger, fake_rpc):
    market, creator, maker, taker = ledger.key(1), ledger.key(2), ledger.key(3), ledger.key(4)
    fake_rpc.add(
        ledger.tx("sig-a", 10, [ledger.market_created(market, creator)]),
        ledger.tx("sig-b", 11, [ledger.nonce_incremented(maker, 2)]),
        ledger.tx(
            "sig-c",
            12,
            [
                ledger.order_filled(ledger.order_hash("o-1"), market, maker=maker, taker=taker),
                ledger.order_filled(ledger.order_hash("o-2"), market, maker=maker, taker=taker),
            ],
        ),
        ledger.tx("sig-d", 13, [ledger.market_settled(market)]),
        ledger.tx("sig-e", 14, [ledger.nonce_incremented(maker, 9)], err={"InstructionError": [0, "Custom"]}),
    )
    return {"market": market, "maker": maker}


def test_iteration_applies_batch_and_advances_cursor(scenario, fake_rpc, uow_factory) -> None:
    service = _service(fake_rpc, uow_factory)

    cursor, result = service.run_iteration(SyncCursor(service="events"))

    assert result.ok
    assert result.fetched == 4
    assert result.decoded == 5
    assert result.applied == 5
    assert cursor.last_slot == 14
    assert cursor.last_signature == "sig-e"
    assert cursor.events_processed == 5
    assert service.transitions == [
        SyncState.FETCHING,
        SyncState.DECODING,
        SyncState.APPLYING,
        SyncState.ADVANCING,
        SyncState.IDLE,
    ]
    with uow_factory() as uow:
        market = uow.markets.get_by_address(scenario["market"])
        nonce = uow.nonces.get_nonce(scenario["maker"])
        fills = uow.connection.execute("SELECT COUNT(*) FROM order_fills").fetchone()[0]
    assert market["status"] == "settled"
    assert market["final_yes_price"] == "0.75"
    assert nonce == 2
    assert fills == 2


def test_replay_after_cursor_reset_leaves_mirror_unchanged(scenario, fake_rpc, uow_factory, digest_mirror) -> None:
    service = _service(fake_rpc, uow_factory)
    _run_until_idle(service, uow_factory)
    before = digest_mirror(uow_factory.db_path)

    reset_cursor(uow_factory, "events")
    cursor, result = service.run_iteration(load_cursor(uow_factory, "events"))

    assert result.duplicates == 5
    assert result.applied == 0
    assert cursor.last_slot == 14
    assert cursor.events_processed == 5
    assert digest_mirror(uow_factory.db_path) == before


def test_batch_size_does_not_change_the_mirror(scenario, fake_rpc, uow_factory, digest_mirror, tmp_path: Path) -> None:
    other = UnitOfWorkFactory(str(tmp_path / "other.sqlite"), now_fn=lambda: FIXED_NOW)

    whole = _run_until_idle(_service(fake_rpc, uow_factory, batch_size=100), uow_factory)
    stepped = _run_until_idle(_service(fake_rpc, other, batch_size=1), other)

    assert whole.last_slot == stepped.last_slot == 14
    assert whole.events_processed == stepped.events_processed
    assert digest_mirror(uow_factory.db_path) == digest_mirror(other.db_path)


def test_failed_handler_rolls_back_the_whole_batch(scenario, fake_rpc, uow_factory, digest_mirror, tmp_path: Path) -> None:
    def _boom(ctx, event):
        raise RuntimeError("handler exploded")

    broken = EventRouter(
        {**EVENT_HANDLERS, EventKind.MARKET_SETTLED: _boom},
        excluded=(EventKind.TRADING_FEE_COLLECTED,),
    )
    service = _service(fake_rpc, uow_factory, router=broken)

    cursor, result = service.run_iteration(SyncCursor(service="events"))

    assert not result.ok
    assert result.state is SyncState.ERROR
    assert "handler exploded" in (result.error or "")
    assert cursor.last_slot == 0
    assert SyncState.ERROR in service.transitions
    assert service.state is SyncState.IDLE
    with uow_factory() as uow:
        assert uow.markets.list_markets() == []
        assert uow.event_log.counts()["total"] == 0
        assert uow.cursors.get("events") is None

    _run_until_idle(_service(fake_rpc, uow_factory), uow_factory)
    reference = UnitOfWorkFactory(str(tmp_path / "reference.sqlite"), now_fn=lambda: FIXED_NOW)
    _run_until_idle(_service(fake_rpc, reference), reference)
    assert digest_mirror(uow_factory.db_path) == digest_mirror(reference.db_path)


def test_fetch_error_keeps_cursor(uow_factory) -> None:
    class _DownRpc:
        max_batch_size = 100

        def get_signatures_for_address(self, *args, **kwargs):
            raise ConnectionError("rpc down")

        def get_transactions(self, signatures):
            return []

    service = _service(_DownRpc(), uow_factory)
    start = SyncCursor(service="events", last_slot=50)

    cursor, result = service.run_iteration(start)

    assert cursor == start
    assert result.state is SyncState.ERROR
    assert result.error == "ConnectionError: rpc down"


def test_dry_run_writes_nothing(scenario, fake_rpc, uow_factory) -> None:
    service = _service(fake_rpc, uow_factory, dry_run=True)
    start = SyncCursor(service="events")

    cursor, result = service.run_iteration(start)

    assert cursor == start
    assert result.dry_run is True
    assert result.applied == 5
    assert not Path(uow_factory.db_path).exists()


def test_service_filter_counts_filtered_events(scenario, fake_rpc, uow_factory) -> None:
    service = _service(fake_rpc, uow_factory, service="markets")

    cursor, result = service.run_iteration(load_cursor(uow_factory, "markets"))

    assert result.applied == 2
    assert result.filtered == 3
    assert cursor.last_slot == 14
    with uow_factory() as uow:
        assert uow.nonces.get_nonce(scenario["maker"]) is None
    assert load_cursor(replace(uow_factory, read_only=True), "events").last_slot == 0


def test_trade_parked_until_events_service_creates_market(ledger, fake_rpc, uow_factory) -> None:
    market = ledger.key(1)
    raw = ledger.extended_trade(market, maker=ledger.key(3), taker=ledger.key(4))
    fake_rpc.add(ledger.tx("sig-trade", 20, [base64.b64encode(raw).decode()]))
    trades = _service(fake_rpc, uow_factory, service="trades")

    cursor, first = trades.run_iteration(load_cursor(uow_factory, "trades"))
    assert first.skipped_missing_parent == 1
    assert cursor.last_slot == 20

    fake_rpc.add(ledger.tx("sig-create", 21, [ledger.market_created(market, ledger.key(2))]))
    _run_until_idle(_service(fake_rpc, uow_factory, service="events"), uow_factory)

    cursor, second = trades.run_iteration(cursor)
    assert second.excluded == 1
    assert second.redriven == 1
    assert cursor.last_slot == 21

    _, third = trades.run_iteration(cursor)
    assert third.redriven == 0
    with uow_factory() as uow:
        market_row = uow.markets.get_by_address(market)
    assert market_row["total_trades"] == 1
