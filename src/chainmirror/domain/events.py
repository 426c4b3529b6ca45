from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class DecodeError(ValueError):
    """Raised when an event payload cannot be decoded."""


class EventKind(StrEnum):
    MARKET_CREATED = "MarketCreated"
    MARKET_SETTLED = "MarketSettled"
    MARKET_TERMINATED = "MarketTerminated"
    MARKET_PAUSED = "MarketPaused"
    MARKET_RESUMED = "MarketResumed"
    MARKET_PARAMS_UPDATED = "MarketParamsUpdated"
    MARKET_CREATION_FEE_COLLECTED = "MarketCreationFeeCollected"
    TERMINATION_CHECK_RESULT = "TerminationCheckResult"
    POSITION_SPLIT = "PositionSplit"
    POSITION_MERGED = "PositionMerged"
    CTF_TOKENS_REDEEMED = "CtfTokensRedeemed"
    TRADING_FEE_COLLECTED = "TradingFeeCollected"
    ORDER_FILLED = "OrderFilled"
    ORDER_CANCELLED = "OrderCancelled"
    ORDERS_MATCHED = "OrdersMatched"
    NONCE_INCREMENTED = "NonceIncremented"
    GLOBAL_FEE_RATES_UPDATED = "GlobalFeeRatesUpdated"
    GLOBAL_TRADING_PAUSED = "GlobalTradingPaused"
    GLOBAL_TRADING_UNPAUSED = "GlobalTradingUnpaused"
    LIQUIDITY_REWARD_DISTRIBUTED = "LiquidityRewardDistributed"
    PLATFORM_FEES_WITHDRAWN = "PlatformFeesWithdrawn"
    REWARD_FEES_WITHDRAWN = "RewardFeesWithdrawn"
    OPERATOR_ADDED = "OperatorAdded"
    OPERATOR_REMOVED = "OperatorRemoved"
    UNKNOWN = "Unknown"

    @classmethod
    def from_name(cls, name: str) -> EventKind:
        try:
            return cls(name)
        except ValueError:
            return cls.UNKNOWN


MARKET_LIFECYCLE_KINDS = frozenset(
    {
        EventKind.MARKET_CREATED,
        EventKind.MARKET_SETTLED,
        EventKind.MARKET_TERMINATED,
        EventKind.MARKET_PAUSED,
        EventKind.MARKET_RESUMED,
    }
)
GLOBAL_STATE_KINDS = frozenset(
    {
        EventKind.GLOBAL_FEE_RATES_UPDATED,
        EventKind.GLOBAL_TRADING_PAUSED,
        EventKind.GLOBAL_TRADING_UNPAUSED,
    }
)


@dataclass(frozen=True)
class TransactionRecord:
    signature: str
    slot: int
    block_time: int | None
    log_messages: tuple[str, ...] = ()
    err: object | None = None

    @property
    def observed_at(self) -> datetime | None:
        if self.block_time is None:
            return None
        return datetime.fromtimestamp(self.block_time, UTC)


@dataclass(frozen=True)
class LedgerEvent:
    kind: EventKind
    name: str
    data: Mapping[str, Any]
    signature: str
    slot: int
    event_index: int = 0
    observed_at: datetime | None = None

    @property
    def audit_key(self) -> tuple[str, str, int]:
        return (self.signature, self.name, self.event_index)


@dataclass(frozen=True)
class DecodeFailure:
    signature: str
    slot: int
    reason: str
    payload_prefix: str = ""


@dataclass(frozen=True)
class SyncCursor:
    service: str
    last_slot: int = 0
    last_signature: str | None = None
    events_processed: int = 0
    updated_at: datetime | None = None

    def advanced(self, *, slot: int, signature: str | None, processed: int) -> SyncCursor:
        if slot < self.last_slot:
            return SyncCursor(
                service=self.service,
                last_slot=self.last_slot,
                last_signature=self.last_signature,
                events_processed=self.events_processed + processed,
                updated_at=self.updated_at,
            )
        return SyncCursor(
            service=self.service,
            last_slot=slot,
            last_signature=signature or self.last_signature,
            events_processed=self.events_processed + processed,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class DecodedTransaction:
    transaction: TransactionRecord
    events: tuple[LedgerEvent, ...] = ()
    failures: tuple[DecodeFailure, ...] = field(default_factory=tuple)
