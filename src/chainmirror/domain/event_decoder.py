from __future__ import annotations

import base64
import binascii
import logging
from collections import Counter
from dataclasses import asdict
from typing import Any

from chainmirror.domain.borsh_codec import BorshReader
from chainmirror.domain.event_schema import (
    DISCRIMINATOR_LENGTH,
    EVENT_FIELDS,
    EVENT_KINDS_BY_DISCRIMINATOR,
)
from chainmirror.domain.events import (
    DecodedTransaction,
    DecodeError,
    DecodeFailure,
    EventKind,
    LedgerEvent,
    TransactionRecord,
)
from chainmirror.domain.trade_layout import decode_trade_payload

logger = logging.getLogger(__name__)

PROGRAM_DATA_PREFIX = "Program data: "
TRADE_LOG_MARKER = "Program log: TradingFeeCollected"


def _invoked_program(line: str) -> str | None:
    parts = line.split()
    if len(parts) >= 3 and parts[0] == "Program" and parts[2] == "invoke":
        return parts[1]
    return None


def _returned_program(line: str) -> str | None:
    parts = line.split()
    if len(parts) >= 3 and parts[0] == "Program" and parts[2] in {"success", "failed:"}:
        return parts[1]
    return None


def program_data_payloads(log_messages: tuple[str, ...] | list[str], program_id: str) -> list[str]:
    """Return ``Program data:`` payloads emitted while ``program_id`` was executing.

    Lines outside any invocation frame are accepted so that truncated logs still decode.
    """
    payloads: list[str] = []
    stack: list[str] = []
    for line in log_messages:
        invoked = _invoked_program(line)
        if invoked is not None:
            stack.append(invoked)
            continue
        returned = _returned_program(line)
        if returned is not None:
            if stack and stack[-1] == returned:
                stack.pop()
            continue
        if line.startswith(PROGRAM_DATA_PREFIX) and (not stack or stack[-1] == program_id):
            payloads.append(line[len(PROGRAM_DATA_PREFIX) :].strip())
    return payloads


def has_trade_marker(log_messages: tuple[str, ...] | list[str]) -> bool:
    return any(TRADE_LOG_MARKER in line for line in log_messages)


class EventDecoder:
    def __init__(self, program_id: str) -> None:
        self.program_id = program_id

    def decode_transaction(self, tx: TransactionRecord) -> DecodedTransaction:
        events: list[LedgerEvent] = []
        failures: list[DecodeFailure] = []
        ordinals: Counter[str] = Counter()
        trade_marker = has_trade_marker(tx.log_messages)
        trade_seen = False

        for encoded in program_data_payloads(tx.log_messages, self.program_id):
            try:
                kind, data = self._decode_payload(encoded, legacy_trade_hint=trade_marker and not trade_seen)
            except DecodeError as exc:
                failure = DecodeFailure(
                    signature=tx.signature,
                    slot=tx.slot,
                    reason=str(exc),
                    payload_prefix=encoded[:32],
                )
                failures.append(failure)
                logger.warning(
                    "event_decode_failed",
                    extra={
                        "extra": {
                            "signature": tx.signature,
                            "slot": tx.slot,
                            "reason": failure.reason,
                        }
                    },
                )
                continue

            if kind is EventKind.TRADING_FEE_COLLECTED:
                trade_seen = True
            name = kind.value
            events.append(
                LedgerEvent(
                    kind=kind,
                    name=name,
                    data=data,
                    signature=tx.signature,
                    slot=tx.slot,
                    event_index=ordinals[name],
                    observed_at=tx.observed_at,
                )
            )
            ordinals[name] += 1

        return DecodedTransaction(transaction=tx, events=tuple(events), failures=tuple(failures))

    def _decode_payload(self, encoded: str, *, legacy_trade_hint: bool) -> tuple[EventKind, dict[str, Any]]:
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError(f"invalid base64 payload: {exc}") from exc
        if len(payload) < DISCRIMINATOR_LENGTH:
            raise DecodeError(f"payload shorter than discriminator: {len(payload)} bytes")

        discriminator = payload[:DISCRIMINATOR_LENGTH]
        kind = EVENT_KINDS_BY_DISCRIMINATOR.get(discriminator, EventKind.UNKNOWN)

        if kind is EventKind.TRADING_FEE_COLLECTED or (kind is EventKind.UNKNOWN and legacy_trade_hint):
            trade = decode_trade_payload(payload)
            data = asdict(trade)
            data["layout"] = trade.layout.value
            data["is_approximate"] = trade.is_approximate
            data["payload_length"] = len(payload)
            return EventKind.TRADING_FEE_COLLECTED, data

        if kind is EventKind.UNKNOWN:
            return kind, {"discriminator": discriminator.hex(), "payload_length": len(payload)}

        reader = BorshReader(payload, DISCRIMINATOR_LENGTH)
        return kind, reader.read_struct(EVENT_FIELDS[kind])
