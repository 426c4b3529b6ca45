from __future__ import annotations

import logging
from collections import deque
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Protocol

from chainmirror.adapters.solana_rpc import SignatureInfo
from chainmirror.domain.events import TransactionRecord

logger = logging.getLogger(__name__)

SIGNATURE_PAGE_SIZE = 1000


class LedgerRpc(Protocol):
    max_batch_size: int

    def get_signatures_for_address(
        self,
        address: str,
        *,
        limit: int = ...,
        before: str | None = ...,
        until: str | None = ...,
    ) -> list[SignatureInfo]: ...

    def get_transactions(self, signatures: Sequence[str]) -> list[TransactionRecord | None]: ...


@dataclass(frozen=True)
class FetchResult:
    transactions: list[TransactionRecord] = field(default_factory=list)
    advance_slot: int = 0
    advance_signature: str | None = None
    scanned: int = 0
    skipped_failed: int = 0
    deferred: int = 0
    truncated: bool = False


def select_batch_window(signatures: Sequence[SignatureInfo], batch_size: int) -> list[SignatureInfo]:
    """Oldest ``batch_size`` signatures without splitting the last slot.

    ``signatures`` must be ordered oldest first. When dropping the trailing slot would
    leave nothing, the whole first slot is returned even if it exceeds ``batch_size``.
    """
    if len(signatures) <= batch_size:
        return list(signatures)
    window = list(signatures[:batch_size])
    boundary_slot = window[-1].slot
    if signatures[batch_size].slot == boundary_slot:
        window = [info for info in window if info.slot != boundary_slot]
    if not window:
        first_slot = signatures[0].slot
        window = [info for info in signatures if info.slot == first_slot]
    return window


class LedgerFetcher:
    def __init__(
        self,
        rpc: LedgerRpc,
        program_id: str,
        *,
        max_backfill_pages: int = 10,
        page_size: int = SIGNATURE_PAGE_SIZE,
        fetch_concurrency: int = 4,
    ) -> None:
        self.rpc = rpc
        self.program_id = program_id
        self.max_backfill_pages = max(1, max_backfill_pages)
        self.page_size = max(1, page_size)
        self.fetch_concurrency = max(1, fetch_concurrency)
        self.backfill_anchor: SignatureInfo | None = None

    def list_new_signatures(self, position: int) -> tuple[list[SignatureInfo], bool]:
        """Signatures above slot ``position``, oldest first, plus whether newer ones are held back.

        The walk always continues until it reaches ``position``, so the result is contiguous
        with the cursor. Only the oldest ``max_backfill_pages * page_size`` signatures are kept,
        trimmed at slot boundaries; the oldest dropped signature becomes the backfill anchor
        and later walks start below it until everything older than it has been returned.
        """
        anchor = self.backfill_anchor
        before = anchor.signature if anchor is not None else None
        retain = self.max_backfill_pages * self.page_size
        collected: deque[SignatureInfo] = deque()
        dropped: SignatureInfo | None = None
        pages = 0
        while True:
            page = self.rpc.get_signatures_for_address(self.program_id, limit=self.page_size, before=before)
            pages += 1
            fresh = [info for info in page if info.slot > position]
            collected.extend(info for info in fresh if anchor is None or info.slot < anchor.slot)
            # Never split the oldest slot still held.
            while len(collected) > retain and collected[0].slot > collected[-1].slot:
                dropped = collected.popleft()
            if len(fresh) < len(page) or len(page) < self.page_size:
                break
            before = page[-1].signature

        if dropped is not None:
            self.backfill_anchor = dropped
            logger.warning(
                "signature_backfill_truncated",
                extra={
                    "extra": {
                        "position": position,
                        "pages": pages,
                        "held": len(collected),
                        "anchor_signature": dropped.signature,
                        "anchor_slot": dropped.slot,
                    }
                },
            )
            held = [info for info in reversed(collected) if info.slot < dropped.slot]
            return held, True
        return list(reversed(collected)), self.backfill_anchor is not None

    def fetch_since(self, position: int, batch_size: int) -> FetchResult:
        signatures, truncated = self.list_new_signatures(position)
        if not signatures:
            # Nothing left below the anchor; the next walk starts from the newest signature.
            self.backfill_anchor = None
            return FetchResult(advance_slot=position, truncated=truncated)

        window = select_batch_window(signatures, batch_size)
        deferred = len(signatures) - len(window)
        wanted = [info for info in window if info.err is None]
        skipped_failed = len(window) - len(wanted)

        records = self._fetch_transactions([info.signature for info in wanted])
        transactions: list[TransactionRecord] = []
        cutoff_slot: int | None = None
        for info, record in zip(wanted, records, strict=True):
            if record is None:
                cutoff_slot = info.slot
                logger.info(
                    "transaction_not_yet_available",
                    extra={"extra": {"signature": info.signature, "slot": info.slot}},
                )
                break
            transactions.append(record)

        kept = window
        if cutoff_slot is not None:
            kept = [info for info in window if info.slot < cutoff_slot]
            transactions = [tx for tx in transactions if tx.slot < cutoff_slot]
            deferred = len(signatures) - len(kept)

        if self.backfill_anchor is not None and len(kept) == len(signatures):
            logger.info(
                "signature_backfill_caught_up",
                extra={"extra": {"anchor_slot": self.backfill_anchor.slot, "position": position}},
            )
            self.backfill_anchor = None

        transactions.sort(key=lambda tx: tx.slot)
        advance_slot = max((info.slot for info in kept), default=position)
        advance_signature = kept[-1].signature if kept else None
        logger.debug(
            "ledger_fetch_completed",
            extra={
                "extra": {
                    "position": position,
                    "scanned": len(signatures),
                    "fetched": len(transactions),
                    "skipped_failed": skipped_failed,
                    "deferred": deferred,
                    "advance_slot": advance_slot,
                }
            },
        )
        return FetchResult(
            transactions=transactions,
            advance_slot=max(position, advance_slot),
            advance_signature=advance_signature,
            scanned=len(signatures),
            skipped_failed=skipped_failed,
            deferred=deferred,
            truncated=truncated,
        )

    def _fetch_transactions(self, signatures: list[str]) -> list[TransactionRecord | None]:
        if not signatures:
            return []
        chunk_size = max(1, int(self.rpc.max_batch_size))
        chunks = [signatures[start : start + chunk_size] for start in range(0, len(signatures), chunk_size)]
        if len(chunks) == 1 or self.fetch_concurrency == 1:
            return [record for chunk in chunks for record in self.rpc.get_transactions(chunk)]
        with ThreadPoolExecutor(max_workers=min(self.fetch_concurrency, len(chunks))) as pool:
            results = list(pool.map(self.rpc.get_transactions, chunks))
        return [record for chunk_records in results for record in chunk_records]
