from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass, fields, replace


@dataclass(frozen=True)
class LogContext:
    """Identifiers attached to every log record emitted while a sync pass runs."""

    service: str | None = None
    iteration_id: str | None = None
    signature: str | None = None
    market: str | None = None

    def as_dict(self) -> dict[str, str | None]:
        return asdict(self)


CONTEXT_FIELDS = tuple(item.name for item in fields(LogContext))

_current: ContextVar[LogContext] = ContextVar("chainmirror_log_context", default=LogContext())


def current_log_context() -> LogContext:
    return _current.get()


def get_logging_context() -> dict[str, str | None]:
    return {key: value for key, value in current_log_context().as_dict().items() if value is not None}


@contextmanager
def with_logging_context(**context: str | None) -> Iterator[None]:
    # None leaves the enclosing value in place; unknown keys are ignored.
    updates = {key: value for key, value in context.items() if key in CONTEXT_FIELDS and value is not None}
    token = _current.set(replace(_current.get(), **updates))
    try:
        yield
    finally:
        _current.reset(token)


@contextmanager
def with_iteration_context(service: str, iteration_id: str) -> Iterator[None]:
    token = _current.set(LogContext(service=service, iteration_id=iteration_id))
    try:
        yield
    finally:
        _current.reset(token)
