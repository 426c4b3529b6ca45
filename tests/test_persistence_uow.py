from __future__ import annotations

import sqlite3

import pytest

from chainmirror.domain.events import EventKind, LedgerEvent
from chainmirror.persistence.sqlite.event_log_repo import AuditStatus
from chainmirror.persistence.uow import UnitOfWorkFactory

PROGRAM_ID = "Fg6PaFpoGXkYsidMpWTK6W2BeZ7FEfcYkg476zPFsLnS"


def _event(signature: str = "sig-1", index: int = 0) -> LedgerEvent:
    return LedgerEvent(
        kind=EventKind.MARKET_PAUSED,
        name=EventKind.MARKET_PAUSED.value,
        data={"market": "m", "paused_by": "admin", "paused_at": 1},
        signature=signature,
        slot=10,
        event_index=index,
    )


def test_uow_commit_and_rollback(tmp_path) -> None:
    db = tmp_path / "state.sqlite"
    factory = UnitOfWorkFactory(str(db))

    with factory() as uow:
        uow.users.ensure_user("wallet-a")

    with pytest.raises(RuntimeError):
        with factory() as uow:
            uow.users.ensure_user("wallet-b")
            uow.cursors.advance("events", slot=50, signature="s", processed_delta=1)
            raise RuntimeError("boom")

    with sqlite3.connect(db) as conn:
        users = [row[0] for row in conn.execute("SELECT wallet_address FROM users ORDER BY id")]
        cursors = conn.execute("SELECT COUNT(*) FROM sync_state").fetchone()[0]
    assert users == ["wallet-a"]
    assert cursors == 0


def test_read_only_guard_fails_closed(tmp_path) -> None:
    ro_factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"), read_only=True)

    with pytest.raises(PermissionError):
        with ro_factory() as uow:
            uow.users.ensure_user("wallet-a")


def test_read_only_cursor_lookup_does_not_create_row(tmp_path) -> None:
    db = str(tmp_path / "state.sqlite")

    with UnitOfWorkFactory(db, read_only=True)() as uow:
        cursor = uow.cursors.get_or_create("events")

    assert cursor.last_slot == 0
    with UnitOfWorkFactory(db)() as uow:
        assert uow.cursors.get("events") is None


def test_cursor_advance_never_moves_backwards(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))

    with factory() as uow:
        uow.cursors.advance("events", slot=100, signature="sig-100", processed_delta=3)
        cursor = uow.cursors.advance("events", slot=40, signature="sig-40", processed_delta=2)

    assert cursor.last_slot == 100
    assert cursor.last_signature == "sig-100"
    assert cursor.events_processed == 5


def test_cursor_reset_is_the_only_rewind(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))

    with factory() as uow:
        uow.cursors.advance("trades", slot=100, signature="sig-100", processed_delta=3)
        cursor = uow.cursors.reset("trades", slot=20)

    assert cursor.last_slot == 20
    assert cursor.last_signature is None
    assert cursor.events_processed == 3


def test_event_log_status_transitions(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))
    event = _event()

    with factory() as uow:
        assert uow.event_log.record(event, program_id=PROGRAM_ID) is AuditStatus.NEW
        assert uow.event_log.record(event, program_id=PROGRAM_ID) is AuditStatus.PENDING
        uow.event_log.mark_processed(event)
        assert uow.event_log.record(event, program_id=PROGRAM_ID) is AuditStatus.PROCESSED
        assert uow.event_log.counts() == {"total": 1, "processed": 1, "pending": 0}


def test_event_log_keys_on_ordinal(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))

    with factory() as uow:
        uow.event_log.record(_event(index=0), program_id=PROGRAM_ID)
        uow.event_log.record(_event(index=1), program_id=PROGRAM_ID)
        assert uow.event_log.counts()["total"] == 2


def test_missing_parent_rows_are_listed_for_redrive(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))
    event = _event()

    with factory() as uow:
        uow.event_log.record(event, program_id=PROGRAM_ID)
        uow.event_log.mark_skipped(event, error="missing_parent:market:m")
        pending = uow.event_log.pending_missing_parent()
        assert [item.audit_key for item in pending] == [event.audit_key]
        assert uow.event_log.pending_missing_parent(kinds=frozenset({EventKind.ORDER_FILLED})) == []


def test_missing_parent_kind_filter_applies_before_limit(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))
    settle = LedgerEvent(
        kind=EventKind.MARKET_SETTLED,
        name=EventKind.MARKET_SETTLED.value,
        data={"market": "m"},
        signature="sig-settle",
        slot=500,
        event_index=0,
    )

    with factory() as uow:
        for n in range(3):
            pause = _event(signature=f"sig-pause-{n}")
            uow.event_log.record(pause, program_id=PROGRAM_ID)
            uow.event_log.mark_skipped(pause, error="missing_parent:market:m")
        uow.event_log.record(settle, program_id=PROGRAM_ID)
        uow.event_log.mark_skipped(settle, error="missing_parent:market:m")

        only_settled = uow.event_log.pending_missing_parent(kinds=frozenset({EventKind.MARKET_SETTLED}), limit=1)
        second_page = uow.event_log.pending_missing_parent(limit=2, offset=2)
        assert uow.event_log.pending_missing_parent(kinds=frozenset(), limit=10) == []

    assert [event.signature for event in only_settled] == ["sig-settle"]
    assert [event.signature for event in second_page] == ["sig-pause-2", "sig-settle"]


def test_uow_now_uses_injected_clock(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"), now_fn=lambda: "2024-01-01T00:00:00+00:00")

    with factory() as uow:
        assert uow.now() == "2024-01-01T00:00:00+00:00"
        uow.users.ensure_user("wallet-a")

    with sqlite3.connect(tmp_path / "state.sqlite") as conn:
        created_at = conn.execute("SELECT created_at FROM users").fetchone()[0]
    assert created_at == "2024-01-01T00:00:00+00:00"
