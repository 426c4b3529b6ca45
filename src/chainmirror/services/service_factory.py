from __future__ import annotations

import logging
from collections.abc import Callable

from chainmirror.adapters.solana_rpc import SolanaRpcClient
from chainmirror.config import SYNC_SERVICES, ConfigurationError, Settings
from chainmirror.domain.event_decoder import EventDecoder
from chainmirror.persistence.uow import UnitOfWorkFactory
from chainmirror.security.redaction import redact_url
from chainmirror.services.event_router import router_for_service
from chainmirror.services.ledger_fetcher import LedgerFetcher
from chainmirror.services.nonce_sync_service import NonceSyncService
from chainmirror.services.sync_service import EventSyncService, SyncService

logger = logging.getLogger(__name__)


def build_rpc_client(settings: Settings) -> SolanaRpcClient:
    logger.debug(
        "rpc_client_configured",
        extra={
            "extra": {
                "endpoint": redact_url(settings.rpc_url),
                "commitment": settings.commitment,
                "timeout_seconds": settings.rpc_timeout_seconds,
            }
        },
    )
    return SolanaRpcClient(
        settings.rpc_url,
        commitment=settings.commitment,
        timeout=settings.rpc_timeout_seconds,
        max_attempts=settings.rpc_max_retries,
        base_delay_ms=settings.rpc_retry_delay_ms,
        max_delay_ms=settings.rpc_max_delay_ms,
        max_batch_size=settings.rpc_max_batch_size,
    )


def build_uow_factory(settings: Settings, *, now_fn: Callable[[], str] | None = None) -> UnitOfWorkFactory:
    if now_fn is None:
        return UnitOfWorkFactory(settings.state_db_path)
    return UnitOfWorkFactory(settings.state_db_path, now_fn=now_fn)


def build_sync_service(
    settings: Settings,
    service: str,
    *,
    rpc: SolanaRpcClient,
    uow_factory: UnitOfWorkFactory,
    dry_run: bool | None = None,
    sleep_fn: Callable[[float], None] | None = None,
) -> SyncService:
    if service not in SYNC_SERVICES:
        raise ConfigurationError(f"unknown sync service {service!r}; expected one of {', '.join(SYNC_SERVICES)}")
    effective_dry_run = settings.dry_run if dry_run is None else dry_run
    if service == "user-nonces":
        return NonceSyncService(
            rpc=rpc,
            program_id=settings.program_id,
            uow_factory=uow_factory,
            service=service,
            dry_run=effective_dry_run,
            db_max_attempts=settings.db_retry_max_attempts,
            db_base_delay_ms=settings.db_retry_base_delay_ms,
            db_max_delay_ms=settings.db_retry_max_delay_ms,
            sleep_fn=sleep_fn,
        )
    return EventSyncService(
        service=service,
        fetcher=LedgerFetcher(
            rpc,
            settings.program_id,
            max_backfill_pages=settings.sync_max_backfill_pages,
            fetch_concurrency=settings.rpc_fetch_concurrency,
        ),
        decoder=EventDecoder(settings.program_id),
        router=router_for_service(service),
        uow_factory=uow_factory,
        program_id=settings.program_id,
        batch_size=settings.sync_batch_size,
        dry_run=effective_dry_run,
        db_max_attempts=settings.db_retry_max_attempts,
        db_base_delay_ms=settings.db_retry_base_delay_ms,
        db_max_delay_ms=settings.db_retry_max_delay_ms,
        sleep_fn=sleep_fn,
    )
