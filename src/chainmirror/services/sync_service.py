from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any, Protocol
from uuid import uuid4

from chainmirror.domain.event_decoder import EventDecoder
from chainmirror.domain.events import LedgerEvent, SyncCursor
from chainmirror.logging_context import with_iteration_context
from chainmirror.persistence.uow import UnitOfWork, UnitOfWorkFactory
from chainmirror.services.cursor_store import set_cursor
from chainmirror.services.event_handlers import TransactionContext, event_summary
from chainmirror.services.event_router import EventRouter, RouteOutcome
from chainmirror.services.ledger_fetcher import FetchResult, LedgerFetcher
from chainmirror.services.retry import transaction_with_retry

logger = logging.getLogger(__name__)


class SyncState(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    DECODING = "decoding"
    APPLYING = "applying"
    ADVANCING = "advancing"
    ERROR = "error"


@dataclass
class IterationResult:
    service: str
    iteration_id: str
    state: SyncState = SyncState.IDLE
    fetched: int = 0
    decoded: int = 0
    decode_failures: int = 0
    applied: int = 0
    audit_only: int = 0
    duplicates: int = 0
    skipped_unknown: int = 0
    skipped_missing_parent: int = 0
    excluded: int = 0
    filtered: int = 0
    redriven: int = 0
    cursor_before: int = 0
    cursor_after: int = 0
    dry_run: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is not SyncState.ERROR

    def as_log_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["state"] = self.state.value
        return payload

    def record_routes(self, counts: Counter[RouteOutcome]) -> None:
        self.applied = counts[RouteOutcome.APPLIED]
        self.audit_only = counts[RouteOutcome.AUDIT_ONLY]
        self.duplicates = counts[RouteOutcome.DUPLICATE]
        self.skipped_unknown = counts[RouteOutcome.UNKNOWN]
        self.skipped_missing_parent = counts[RouteOutcome.MISSING_PARENT]
        self.excluded = counts[RouteOutcome.EXCLUDED]
        self.filtered = counts[RouteOutcome.FILTERED]


class SyncService(Protocol):
    service: str

    def run_iteration(self, cursor: SyncCursor) -> tuple[SyncCursor, IterationResult]: ...


def new_iteration_id() -> str:
    return uuid4().hex[:12]


class EventSyncService:
    """One ledger-driven sync loop: fetch, decode, route and apply, advance the cursor."""

    def __init__(
        self,
        *,
        service: str,
        fetcher: LedgerFetcher,
        decoder: EventDecoder,
        router: EventRouter,
        uow_factory: UnitOfWorkFactory | Callable[[], UnitOfWork],
        program_id: str,
        batch_size: int = 100,
        dry_run: bool = False,
        db_max_attempts: int = 3,
        db_base_delay_ms: int = 500,
        db_max_delay_ms: int = 5000,
        sleep_fn: Callable[[float], None] | None = None,
        redrive_limit: int = 100,
    ) -> None:
        self.service = service
        self.fetcher = fetcher
        self.decoder = decoder
        self.router = router
        self.uow_factory = uow_factory
        self.program_id = program_id
        self.batch_size = batch_size
        self.dry_run = dry_run
        self.db_max_attempts = db_max_attempts
        self.db_base_delay_ms = db_base_delay_ms
        self.db_max_delay_ms = db_max_delay_ms
        self.sleep_fn = sleep_fn
        self.redrive_limit = redrive_limit
        self.state = SyncState.IDLE
        self.transitions: list[SyncState] = []

    def _transition(self, state: SyncState) -> None:
        self.state = state
        self.transitions.append(state)
        logger.debug("sync_state_changed", extra={"extra": {"state": state.value}})

    def run_iteration(self, cursor: SyncCursor) -> tuple[SyncCursor, IterationResult]:
        result = IterationResult(
            service=self.service,
            iteration_id=new_iteration_id(),
            cursor_before=cursor.last_slot,
            cursor_after=cursor.last_slot,
            dry_run=self.dry_run,
        )
        with with_iteration_context(self.service, result.iteration_id):
            try:
                next_cursor = self._run(cursor, result)
            except Exception as exc:
                self._transition(SyncState.ERROR)
                result.state = SyncState.ERROR
                result.error = f"{type(exc).__name__}: {exc}"
                logger.exception(
                    "sync_iteration_failed",
                    extra={"extra": {"cursor_slot": cursor.last_slot, "error_type": type(exc).__name__}},
                )
                self._transition(SyncState.IDLE)
                return cursor, result
            self._transition(SyncState.IDLE)
            result.state = SyncState.IDLE
            result.cursor_after = next_cursor.last_slot
            logger.info("sync_iteration_completed", extra={"extra": result.as_log_payload()})
            return next_cursor, result

    def _run(self, cursor: SyncCursor, result: IterationResult) -> SyncCursor:
        self._transition(SyncState.FETCHING)
        fetched = self.fetcher.fetch_since(cursor.last_slot, self.batch_size)
        result.fetched = len(fetched.transactions)

        self._transition(SyncState.DECODING)
        events: list[LedgerEvent] = []
        for decoded in (self.decoder.decode_transaction(tx) for tx in fetched.transactions):
            events.extend(decoded.events)
            result.decode_failures += len(decoded.failures)
        result.decoded = len(events)

        if self.dry_run:
            self._preview(events, result)
            return cursor

        # Runs even when the ledger is quiet so parked events are redriven.
        self._transition(SyncState.APPLYING)
        advanced, counts, redriven = transaction_with_retry(
            self.uow_factory,
            lambda uow: self._apply(uow, events, fetched),
            max_attempts=self.db_max_attempts,
            base_delay_ms=self.db_base_delay_ms,
            max_delay_ms=self.db_max_delay_ms,
            sleep_fn=self.sleep_fn,
            operation=f"sync_{self.service}",
        )
        result.record_routes(counts)
        result.redriven = redriven
        return advanced

    def _apply(
        self,
        uow: UnitOfWork,
        events: Sequence[LedgerEvent],
        fetched: FetchResult,
    ) -> tuple[SyncCursor, Counter[RouteOutcome], int]:
        counts: Counter[RouteOutcome] = Counter()
        ctx = TransactionContext(uow=uow, program_id=self.program_id)
        for event in events:
            counts[self.router.route(ctx, event)] += 1
        redriven = self.router.redrive_pending(ctx, limit=self.redrive_limit)

        self._transition(SyncState.ADVANCING)
        advanced = set_cursor(
            uow,
            self.service,
            slot=fetched.advance_slot,
            signature=fetched.advance_signature,
            processed_delta=counts[RouteOutcome.APPLIED] + counts[RouteOutcome.AUDIT_ONLY] + redriven,
        )
        return advanced, counts, redriven

    def _preview(self, events: Sequence[LedgerEvent], result: IterationResult) -> None:
        counts: Counter[RouteOutcome] = Counter()
        for event in events:
            decided = self.router.classify(event)
            if decided is None:
                counts[RouteOutcome.APPLIED] += 1
                logger.info("dry_run_would_apply", extra={"extra": event_summary(event)})
            else:
                counts[decided] += 1
        result.record_routes(counts)
