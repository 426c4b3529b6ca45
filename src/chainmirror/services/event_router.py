from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from enum import StrEnum

from chainmirror.domain.events import GLOBAL_STATE_KINDS, MARKET_LIFECYCLE_KINDS, EventKind, LedgerEvent
from chainmirror.logging_context import with_logging_context
from chainmirror.persistence.sqlite.event_log_repo import MISSING_PARENT_PREFIX, AuditStatus
from chainmirror.services.event_handlers import (
    EVENT_HANDLERS,
    Handler,
    HandlerOutcome,
    TransactionContext,
    event_summary,
)
from chainmirror.services.trade_pipeline import TRADE_HANDLERS

logger = logging.getLogger(__name__)


class RouteOutcome(StrEnum):
    APPLIED = "applied"
    AUDIT_ONLY = "audit_only"
    DUPLICATE = "duplicate"
    MISSING_PARENT = "missing_parent"
    UNKNOWN = "unknown"
    EXCLUDED = "excluded"
    FILTERED = "filtered"


def _ensure_handler_coverage(handler_maps: Iterable[Mapping[EventKind, Handler]]) -> None:
    covered: set[EventKind] = set()
    for handlers in handler_maps:
        covered.update(handlers)
    missing = sorted(kind.value for kind in EventKind if kind is not EventKind.UNKNOWN and kind not in covered)
    if missing:
        raise RuntimeError(f"event kinds without a handler: {', '.join(missing)}")


_ensure_handler_coverage((EVENT_HANDLERS, TRADE_HANDLERS))


class EventRouter:
    """Gate each decoded event through the audit log, then dispatch it to its handler."""

    def __init__(
        self,
        handlers: Mapping[EventKind, Handler],
        *,
        excluded: Iterable[EventKind] = (),
        kinds: Iterable[EventKind] | None = None,
    ) -> None:
        self.handlers = handlers
        self.excluded = frozenset(excluded)
        self.kinds = frozenset(kinds) if kinds is not None else None

    def classify(self, event: LedgerEvent) -> RouteOutcome | None:
        """Return the outcome decided without touching storage, or None when a handler must run."""
        if event.kind is EventKind.UNKNOWN:
            return RouteOutcome.UNKNOWN
        if event.kind in self.excluded:
            return RouteOutcome.EXCLUDED
        if self.kinds is not None and event.kind not in self.kinds:
            return RouteOutcome.FILTERED
        if event.kind not in self.handlers:
            return RouteOutcome.EXCLUDED
        return None

    def route(self, ctx: TransactionContext, event: LedgerEvent) -> RouteOutcome:
        decided = self.classify(event)
        if decided is RouteOutcome.UNKNOWN:
            logger.warning(
                "event_kind_unknown",
                extra={
                    "extra": {
                        "signature": event.signature,
                        "slot": event.slot,
                        "discriminator": event.data.get("discriminator"),
                    }
                },
            )
            return decided
        if decided is not None:
            return decided

        status = ctx.uow.event_log.record(event, program_id=ctx.program_id)
        if status is AuditStatus.PROCESSED:
            logger.debug("event_duplicate_skipped", extra={"extra": event_summary(event)})
            return RouteOutcome.DUPLICATE
        return self._dispatch(ctx, event)

    def _dispatch(self, ctx: TransactionContext, event: LedgerEvent) -> RouteOutcome:
        handler = self.handlers[event.kind]
        market = event.data.get("market")
        with with_logging_context(signature=event.signature, market=str(market) if market else None):
            result = handler(ctx, event)
        if result.outcome is HandlerOutcome.MISSING_PARENT:
            ctx.uow.event_log.mark_skipped(event, error=f"{MISSING_PARENT_PREFIX}{result.detail}")
            return RouteOutcome.MISSING_PARENT
        ctx.uow.event_log.mark_processed(event)
        if result.outcome is HandlerOutcome.AUDIT_ONLY:
            return RouteOutcome.AUDIT_ONLY
        return RouteOutcome.APPLIED

    def redrive_pending(self, ctx: TransactionContext, *, limit: int = 100) -> int:
        """Retry audit rows parked for a missing parent; returns how many now applied.

        Rows are read ``limit`` at a time, oldest slot first, until every parked row of this
        router's kinds has been tried once.
        """
        kinds = frozenset(self.handlers) - self.excluded
        if self.kinds is not None:
            kinds &= self.kinds
        page_size = max(1, limit)
        applied = 0
        still_parked = 0
        while True:
            page = ctx.uow.event_log.pending_missing_parent(kinds=kinds, limit=page_size, offset=still_parked)
            for event in page:
                if self._dispatch(ctx, event) in {RouteOutcome.APPLIED, RouteOutcome.AUDIT_ONLY}:
                    applied += 1
                    logger.info("event_redriven", extra={"extra": event_summary(event)})
                else:
                    still_parked += 1
            if len(page) < page_size:
                return applied


def router_for_service(service: str) -> EventRouter:
    if service == "events":
        return EventRouter(EVENT_HANDLERS, excluded=(EventKind.TRADING_FEE_COLLECTED,))
    if service == "markets":
        return EventRouter(
            EVENT_HANDLERS,
            excluded=(EventKind.TRADING_FEE_COLLECTED,),
            kinds=MARKET_LIFECYCLE_KINDS,
        )
    if service == "global":
        return EventRouter(
            EVENT_HANDLERS,
            excluded=(EventKind.TRADING_FEE_COLLECTED,),
            kinds=GLOBAL_STATE_KINDS,
        )
    if service == "trades":
        return EventRouter(TRADE_HANDLERS)
    raise ValueError(f"no event router for service {service!r}")
