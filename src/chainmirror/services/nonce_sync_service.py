from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Sequence
from typing import Protocol

from solders.pubkey import Pubkey

from chainmirror.adapters.solana_rpc import AccountsSnapshot
from chainmirror.domain.events import DecodeError, SyncCursor
from chainmirror.domain.models import NonceAccountSnapshot
from chainmirror.logging_context import with_iteration_context
from chainmirror.persistence.uow import UnitOfWork, UnitOfWorkFactory
from chainmirror.services.cursor_store import set_cursor
from chainmirror.services.retry import transaction_with_retry
from chainmirror.services.sync_service import IterationResult, SyncState, new_iteration_id

logger = logging.getLogger(__name__)

USER_NONCE_SEED = b"user_nonce"
# 8-byte account discriminator followed by the 32-byte owner key.
NONCE_OFFSET = 40
NONCE_ACCOUNT_MIN_LENGTH = NONCE_OFFSET + 8


class AccountRpc(Protocol):
    def get_multiple_accounts(self, addresses: Sequence[str]) -> AccountsSnapshot: ...


def derive_user_nonce_address(wallet_address: str, program_id: str) -> str:
    pda, _bump = Pubkey.find_program_address(
        [USER_NONCE_SEED, bytes(Pubkey.from_string(wallet_address))],
        Pubkey.from_string(program_id),
    )
    return str(pda)


def decode_user_nonce_account(data: bytes) -> int:
    if len(data) < NONCE_ACCOUNT_MIN_LENGTH:
        raise DecodeError(f"user nonce account too short: {len(data)} bytes")
    return int.from_bytes(data[NONCE_OFFSET:NONCE_ACCOUNT_MIN_LENGTH], "little")


class NonceSyncService:
    """Reconcile mirrored nonces against the on-chain UserNonce accounts of wallets with live orders."""

    def __init__(
        self,
        *,
        rpc: AccountRpc,
        program_id: str,
        uow_factory: UnitOfWorkFactory,
        service: str = "user-nonces",
        dry_run: bool = False,
        db_max_attempts: int = 3,
        db_base_delay_ms: int = 500,
        db_max_delay_ms: int = 5000,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.rpc = rpc
        self.program_id = program_id
        self.uow_factory = uow_factory
        self.service = service
        self.dry_run = dry_run
        self.db_max_attempts = db_max_attempts
        self.db_base_delay_ms = db_base_delay_ms
        self.db_max_delay_ms = db_max_delay_ms
        self.sleep_fn = sleep_fn
        self.state = SyncState.IDLE

    def _wallets(self) -> list[str]:
        with dataclasses.replace(self.uow_factory, read_only=True)() as uow:
            return uow.orders.wallets_with_open_orders()

    def snapshot(self, wallets: Sequence[str]) -> tuple[int, list[NonceAccountSnapshot], int]:
        """Read nonce accounts; returns (context slot, decoded snapshots, decode failures)."""
        addresses = [derive_user_nonce_address(wallet, self.program_id) for wallet in wallets]
        accounts = self.rpc.get_multiple_accounts(addresses)
        snapshots: list[NonceAccountSnapshot] = []
        failures = 0
        for wallet, address, data in zip(wallets, addresses, accounts.accounts, strict=True):
            if data is None:
                continue
            try:
                nonce = decode_user_nonce_account(data)
            except DecodeError as exc:
                failures += 1
                logger.warning(
                    "nonce_account_decode_failed",
                    extra={"extra": {"wallet": wallet, "nonce_account": address, "reason": str(exc)}},
                )
                continue
            snapshots.append(NonceAccountSnapshot(wallet_address=wallet, nonce_account=address, current_nonce=nonce))
        return accounts.context_slot, snapshots, failures

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
                self.state = SyncState.FETCHING
                wallets = self._wallets()
                if not wallets:
                    self.state = SyncState.IDLE
                    return cursor, result
                context_slot, snapshots, failures = self.snapshot(wallets)
                result.fetched = len(wallets)
                result.decoded = len(snapshots)
                result.decode_failures = failures

                if self.dry_run:
                    for snapshot in snapshots:
                        logger.info("dry_run_would_apply", extra={"extra": dataclasses.asdict(snapshot)})
                    self.state = SyncState.IDLE
                    return cursor, result

                self.state = SyncState.APPLYING
                advanced, applied = transaction_with_retry(
                    self.uow_factory,
                    lambda uow: self._apply(uow, snapshots, context_slot),
                    max_attempts=self.db_max_attempts,
                    base_delay_ms=self.db_base_delay_ms,
                    max_delay_ms=self.db_max_delay_ms,
                    sleep_fn=self.sleep_fn,
                    operation=f"sync_{self.service}",
                )
            except Exception as exc:
                self.state = SyncState.IDLE
                result.state = SyncState.ERROR
                result.error = f"{type(exc).__name__}: {exc}"
                logger.exception("sync_iteration_failed", extra={"extra": {"error_type": type(exc).__name__}})
                return cursor, result

            self.state = SyncState.IDLE
            result.applied = applied
            result.cursor_after = advanced.last_slot
            logger.info("sync_iteration_completed", extra={"extra": result.as_log_payload()})
            return advanced, result

    def _apply(
        self,
        uow: UnitOfWork,
        snapshots: Sequence[NonceAccountSnapshot],
        context_slot: int,
    ) -> tuple[SyncCursor, int]:
        applied = 0
        now = uow.now()
        for snapshot in snapshots:
            user_id = uow.users.ensure_user(snapshot.wallet_address)
            previous = uow.nonces.get_nonce(snapshot.wallet_address)
            stored = uow.nonces.raise_nonce(
                wallet_address=snapshot.wallet_address,
                user_id=user_id,
                nonce=snapshot.current_nonce,
                slot=context_slot,
            )
            cancelled = uow.orders.cancel_below_nonce(user_id, nonce=stored, cancelled_at=now)
            if stored != previous or cancelled:
                applied += 1
                logger.info(
                    "user_nonce_reconciled",
                    extra={
                        "extra": {
                            "wallet": snapshot.wallet_address,
                            "nonce": stored,
                            "orders_cancelled": len(cancelled),
                        }
                    },
                )
        self.state = SyncState.ADVANCING
        advanced = set_cursor(uow, self.service, slot=context_slot, signature=None, processed_delta=applied)
        return advanced, applied
