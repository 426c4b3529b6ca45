from __future__ import annotations

import pytest

from chainmirror.config import ConfigurationError, Settings
from chainmirror.domain.events import EventKind, LedgerEvent
from chainmirror.services.event_router import RouteOutcome
from chainmirror.services.nonce_sync_service import NonceSyncService
from chainmirror.services.service_factory import build_rpc_client, build_sync_service, build_uow_factory
from chainmirror.services.sync_service import EventSyncService


def test_build_rpc_client_applies_settings(monkeypatch) -> None:
    monkeypatch.setenv("SOLANA_RPC_URL", "http://127.0.0.1:8899")
    monkeypatch.setenv("RPC_MAX_BATCH_SIZE", "25")
    monkeypatch.setenv("SOLANA_COMMITMENT", "finalized")

    client = build_rpc_client(Settings())
    try:
        assert client.url == "http://127.0.0.1:8899"
        assert client.max_batch_size == 25
        assert client.commitment == "finalized"
    finally:
        client.close()


def test_build_uow_factory_uses_state_db_path(tmp_path) -> None:
    factory = build_uow_factory(Settings(), now_fn=lambda: "fixed")

    assert factory.db_path == str(tmp_path / "mirror.sqlite")
    assert factory.now_fn() == "fixed"


@pytest.mark.parametrize("service", ["events", "markets", "global", "trades"])
def test_event_services_share_one_loop_implementation(service: str, fake_rpc, uow_factory) -> None:
    built = build_sync_service(Settings(), service, rpc=fake_rpc, uow_factory=uow_factory)

    assert isinstance(built, EventSyncService)
    assert built.service == service
    assert built.batch_size == 100


def test_nonce_service_is_account_driven(fake_rpc, uow_factory) -> None:
    built = build_sync_service(Settings(), "user-nonces", rpc=fake_rpc, uow_factory=uow_factory, dry_run=True)

    assert isinstance(built, NonceSyncService)
    assert built.dry_run is True


def test_trades_service_router_only_handles_trades(fake_rpc, uow_factory, ledger) -> None:
    built = build_sync_service(Settings(), "trades", rpc=fake_rpc, uow_factory=uow_factory)
    event = LedgerEvent(kind=EventKind.NONCE_INCREMENTED, name="NonceIncremented", data={}, signature="s", slot=1)

    assert built.router.classify(event) is RouteOutcome.EXCLUDED


def test_unknown_service_is_a_configuration_error(fake_rpc, uow_factory) -> None:
    with pytest.raises(ConfigurationError, match="unknown sync service"):
        build_sync_service(Settings(), "orders", rpc=fake_rpc, uow_factory=uow_factory)
