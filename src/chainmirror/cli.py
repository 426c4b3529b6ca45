from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import asdict, replace

from pydantic import ValidationError

from chainmirror.adapters.solana_rpc import SolanaRpcClient
from chainmirror.config import SYNC_SERVICES, ConfigurationError, Settings
from chainmirror.domain.events import SyncCursor
from chainmirror.logging_utils import setup_logging
from chainmirror.persistence.uow import UnitOfWorkFactory
from chainmirror.security.redaction import redact_url
from chainmirror.services.cursor_store import list_cursors, load_cursor, reset_cursor
from chainmirror.services.process_lock import ServiceLockedError, single_instance_lock
from chainmirror.services.service_factory import build_rpc_client, build_sync_service, build_uow_factory

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ITERATION_FAILED = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chainmirror",
        epilog=(
            "Configuration is read from the environment (PROGRAM_ID, SOLANA_RPC_URL, STATE_DB_PATH, "
            "SYNC_BATCH_SIZE, SYNC_INTERVAL_SECONDS, DRY_RUN, SYNC_ONCE, ...)."
        ),
    )
    parser.add_argument("--env-file", default=None, help="Optional dotenv file with configuration")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Mirror ledger events into the database")
    sync_parser.add_argument(
        "--service",
        choices=SYNC_SERVICES,
        default=None,
        help="Sync service to run (default: SYNC_SERVICE)",
    )
    sync_parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    sync_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch, decode and route without writing to the database",
    )
    sync_parser.add_argument(
        "--interval-seconds",
        type=float,
        default=None,
        help="Seconds between passes in continuous mode (default: SYNC_INTERVAL_SECONDS)",
    )

    cursor_parser = subparsers.add_parser("cursor", help="Inspect or rewind sync cursors")
    cursor_subparsers = cursor_parser.add_subparsers(dest="cursor_command", required=True)
    show_parser = cursor_subparsers.add_parser("show", help="Print cursors as JSON")
    show_parser.add_argument("--service", choices=SYNC_SERVICES, default=None)
    reset_parser = cursor_subparsers.add_parser("reset", help="Rewind a cursor for replay")
    reset_parser.add_argument("--service", choices=SYNC_SERVICES, required=True)
    reset_parser.add_argument("--slot", type=int, default=0, help="Slot to rewind to (default: 0)")

    subparsers.add_parser("init-db", help="Create the mirror schema if missing")
    return parser


def _load_settings(env_file: str | None) -> Settings:
    if env_file:
        return Settings(_env_file=env_file)
    return Settings()


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = _load_settings(args.env_file)
    except (ValidationError, ConfigurationError) as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    setup_logging(settings.log_level)
    logger.info(
        "runtime_prepared",
        extra={
            "extra": {
                "command": args.command,
                "db_path": settings.state_db_path,
                "rpc_url": redact_url(settings.rpc_url),
                "program_id": settings.program_id,
                "pid": os.getpid(),
            }
        },
    )

    try:
        if args.command == "sync":
            stop_event = threading.Event()
            with stop_on_signals(stop_event):
                return run_sync(
                    settings,
                    service=args.service or settings.sync_service,
                    once=bool(args.once or settings.sync_once),
                    dry_run=bool(args.dry_run or settings.dry_run),
                    interval_seconds=(
                        args.interval_seconds if args.interval_seconds is not None else settings.sync_interval_seconds
                    ),
                    stop_event=stop_event,
                )
        if args.command == "cursor":
            if args.cursor_command == "show":
                return run_cursor_show(settings, service=args.service)
            return run_cursor_reset(settings, service=args.service, slot=args.slot)
        if args.command == "init-db":
            return run_init_db(settings)
    except ConfigurationError as exc:
        logger.error(
            "configuration_error",
            extra={"extra": {"error_type": type(exc).__name__, "safe_message": str(exc)}},
        )
        print(f"configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except ServiceLockedError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_ITERATION_FAILED

    parser.error(f"unknown command {args.command}")
    return EXIT_CONFIG_ERROR


@contextmanager
def stop_on_signals(stop_event: threading.Event) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cooperative stop request checked between iterations."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _request_stop(signum: int, frame: object) -> None:
        del frame
        logger.warning("stop_signal_received", extra={"extra": {"signal": signal.Signals(signum).name}})
        stop_event.set()

    previous = {sig: signal.signal(sig, _request_stop) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def run_with_optional_loop(
    *,
    command: str,
    cycle_fn: Callable[[], int],
    loop_enabled: bool,
    interval_seconds: float,
    stop_loop_fn: Callable[[], bool] | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
    max_cycles: int | None = None,
) -> int:
    if interval_seconds < 0:
        message = "interval-seconds must be >= 0"
        logger.error(
            "configuration_error",
            extra={"extra": {"command": command, "error_type": "ConfigurationError", "safe_message": message}},
        )
        print(f"configuration error: {message}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if not loop_enabled:
        return cycle_fn()

    cycle = 0
    last_rc = EXIT_OK
    logger.info(
        "loop_runner_started",
        extra={"extra": {"command": command, "interval_seconds": interval_seconds, "max_cycles": max_cycles}},
    )
    try:
        while True:
            cycle += 1
            attempt = 0
            while True:
                attempt += 1
                try:
                    last_rc = cycle_fn()
                    break
                except KeyboardInterrupt:
                    raise
                except Exception as exc:  # noqa: BLE001
                    if attempt >= 3:
                        logger.exception(
                            "loop_cycle_failed",
                            extra={
                                "extra": {
                                    "command": command,
                                    "cycle": cycle,
                                    "attempt": attempt,
                                    "error_type": type(exc).__name__,
                                }
                            },
                        )
                        last_rc = EXIT_ITERATION_FAILED
                        break
                    backoff = min(8, 2 ** (attempt - 1))
                    logger.warning(
                        "loop_cycle_retrying",
                        extra={
                            "extra": {
                                "command": command,
                                "cycle": cycle,
                                "attempt": attempt,
                                "sleep_seconds": backoff,
                                "error_type": type(exc).__name__,
                            }
                        },
                    )
                    _sleep_interruptibly(backoff, sleep_fn=sleep_fn, stop_loop_fn=stop_loop_fn)

            if callable(stop_loop_fn) and stop_loop_fn():
                logger.warning("loop_runner_stop_requested", extra={"extra": {"command": command, "cycle": cycle}})
                return last_rc

            if max_cycles is not None and cycle >= max_cycles:
                logger.info(
                    "loop_runner_completed",
                    extra={"extra": {"command": command, "cycles": cycle, "last_rc": last_rc}},
                )
                return last_rc

            _sleep_interruptibly(max(1.0, interval_seconds), sleep_fn=sleep_fn, stop_loop_fn=stop_loop_fn)
            if callable(stop_loop_fn) and stop_loop_fn():
                logger.warning("loop_runner_stop_requested", extra={"extra": {"command": command, "cycle": cycle}})
                return last_rc
    except KeyboardInterrupt:
        logger.info(
            "loop_runner_stopped",
            extra={
                "extra": {
                    "command": command,
                    "cycles": cycle,
                    "last_rc": last_rc,
                    "reason": "keyboard_interrupt",
                }
            },
        )
        print(f"{command}: interrupted, shutting down cleanly")
        return last_rc


def _sleep_interruptibly(
    seconds: float,
    *,
    sleep_fn: Callable[[float], None],
    stop_loop_fn: Callable[[], bool] | None,
) -> None:
    remaining = float(seconds)
    while remaining > 0:
        if callable(stop_loop_fn) and stop_loop_fn():
            return
        step = min(1.0, remaining)
        sleep_fn(step)
        remaining -= step


def run_sync(
    settings: Settings,
    *,
    service: str,
    once: bool,
    dry_run: bool,
    interval_seconds: float,
    stop_event: threading.Event | None = None,
    rpc: SolanaRpcClient | None = None,
    uow_factory: UnitOfWorkFactory | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
    max_cycles: int | None = None,
) -> int:
    if service not in SYNC_SERVICES:
        raise ConfigurationError(f"unknown sync service {service!r}")
    resolved_uow_factory = uow_factory or build_uow_factory(settings)
    stop = stop_event or threading.Event()
    try:
        with single_instance_lock(db_path=settings.state_db_path, service=service):
            rpc_client = rpc or build_rpc_client(settings)
            try:
                sync = build_sync_service(
                    settings,
                    service,
                    rpc=rpc_client,
                    uow_factory=resolved_uow_factory,
                    dry_run=dry_run,
                )
                cursor_factory = replace(resolved_uow_factory, read_only=True) if dry_run else resolved_uow_factory
                cursor_holder: list[SyncCursor] = [load_cursor(cursor_factory, service)]
                logger.info(
                    "sync_service_started",
                    extra={
                        "extra": {
                            "service": service,
                            "cursor_slot": cursor_holder[0].last_slot,
                            "dry_run": dry_run,
                            "once": once,
                        }
                    },
                )

                def _cycle() -> int:
                    cursor_holder[0], result = sync.run_iteration(cursor_holder[0])
                    return EXIT_OK if result.ok else EXIT_ITERATION_FAILED

                return run_with_optional_loop(
                    command=f"sync:{service}",
                    cycle_fn=_cycle,
                    loop_enabled=not once,
                    interval_seconds=interval_seconds,
                    stop_loop_fn=stop.is_set,
                    sleep_fn=sleep_fn,
                    max_cycles=max_cycles,
                )
            finally:
                if rpc is None:
                    rpc_client.close()
    except ServiceLockedError as exc:
        logger.error("sync_service_locked", extra={"extra": {"service": service, "safe_message": str(exc)}})
        print(str(exc), file=sys.stderr)
        return EXIT_ITERATION_FAILED


def _cursor_payload(cursor: SyncCursor) -> dict[str, object]:
    payload = asdict(cursor)
    payload["updated_at"] = cursor.updated_at.isoformat() if cursor.updated_at else None
    return payload


def run_cursor_show(settings: Settings, *, service: str | None) -> int:
    cursors = list_cursors(UnitOfWorkFactory(settings.state_db_path, read_only=True))
    if service is not None:
        cursors = [cursor for cursor in cursors if cursor.service == service]
    print(json.dumps([_cursor_payload(cursor) for cursor in cursors], indent=2, sort_keys=True))
    return EXIT_OK


def run_cursor_reset(settings: Settings, *, service: str, slot: int) -> int:
    if slot < 0:
        raise ConfigurationError("--slot must be >= 0")
    with single_instance_lock(db_path=settings.state_db_path, service=service):
        cursor = reset_cursor(build_uow_factory(settings), service, slot=slot)
    logger.warning("cursor_reset", extra={"extra": {"service": service, "slot": cursor.last_slot}})
    print(json.dumps(_cursor_payload(cursor), sort_keys=True))
    return EXIT_OK


def run_init_db(settings: Settings) -> int:
    with build_uow_factory(settings)():
        pass
    logger.info("schema_ready", extra={"extra": {"db_path": settings.state_db_path}})
    print(f"schema ready: {settings.state_db_path}")
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
