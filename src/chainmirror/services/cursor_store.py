from __future__ import annotations

from chainmirror.domain.events import SyncCursor
from chainmirror.persistence.uow import UnitOfWork, UnitOfWorkFactory


def get_cursor(uow: UnitOfWork, service: str) -> SyncCursor:
    """Resumption point for ``service``; a zero-valued row is created on first use."""
    return uow.cursors.get_or_create(service)


def set_cursor(
    uow: UnitOfWork,
    service: str,
    *,
    slot: int,
    signature: str | None,
    processed_delta: int,
) -> SyncCursor:
    """Advance inside the caller's transaction so the cursor commits with the batch it accounts for."""
    return uow.cursors.advance(service, slot=slot, signature=signature, processed_delta=processed_delta)


def load_cursor(uow_factory: UnitOfWorkFactory, service: str) -> SyncCursor:
    with uow_factory() as uow:
        return get_cursor(uow, service)


def reset_cursor(uow_factory: UnitOfWorkFactory, service: str, *, slot: int = 0) -> SyncCursor:
    with uow_factory() as uow:
        return uow.cursors.reset(service, slot=slot)


def list_cursors(uow_factory: UnitOfWorkFactory) -> list[SyncCursor]:
    with uow_factory() as uow:
        return uow.cursors.list_all()
