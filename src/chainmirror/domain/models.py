from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import IntEnum, StrEnum

PRICE_SCALE = Decimal(1_000_000)
PRICE_QUANTUM = Decimal("0.000001")
YES_PRICE_THRESHOLD = Decimal("0.5")


class MarketStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    SETTLED = "settled"
    TERMINATED = "terminated"


class OrderStatus(StrEnum):
    OPEN = "open"
    PARTIAL = "partial"
    FILLED = "filled"
    CANCELLED = "cancelled"


OPEN_ORDER_STATUSES = (OrderStatus.OPEN, OrderStatus.PARTIAL)


class Outcome(StrEnum):
    YES = "yes"
    NO = "no"

    @classmethod
    def from_index(cls, index: int) -> Outcome:
        return cls.YES if index == 0 else cls.NO


class Side(StrEnum):
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def from_index(cls, index: int) -> Side:
        return cls.BUY if index == 0 else cls.SELL


class AssetId(IntEnum):
    USDC = 0
    YES = 1
    NO = 2


class SettlementType(StrEnum):
    NORMAL = "normal"
    RANDOM_VRF = "random_vrf"
    AUTO_TERMINATED = "auto_terminated"


class TradeLayout(StrEnum):
    EXTENDED = "extended"
    LEGACY = "legacy"


def scaled_to_decimal(value: int, scale: Decimal = PRICE_SCALE) -> Decimal:
    """Convert a 1e6-scaled integer price or rate into its decimal value."""
    return (Decimal(int(value)) / scale).normalize() if value else Decimal("0")


def decimal_text(value: Decimal) -> str:
    text = format(value.normalize(), "f")
    return text if text != "-0" else "0"


@dataclass(frozen=True)
class TradeFeePayload:
    market: str
    maker: str
    taker: str
    fee_payer: str
    outcome_type: int
    side: int
    size: int
    fee_amount: int
    fee_rate: int
    price: int
    slot: int
    timestamp: int | None
    layout: TradeLayout

    @property
    def is_approximate(self) -> bool:
        return self.layout is TradeLayout.LEGACY


@dataclass(frozen=True)
class FillTerms:
    """Outcome-token view of an OrderFilled event."""

    outcome: Outcome
    side: Side
    size: int
    price: Decimal

    @staticmethod
    def _ratio(numerator: int, denominator: int) -> Decimal:
        if not denominator:
            return Decimal("0")
        return (Decimal(numerator) / Decimal(denominator)).quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP)

    @classmethod
    def from_amounts(
        cls,
        *,
        maker_asset_id: int,
        taker_asset_id: int,
        maker_amount_filled: int,
        taker_amount_filled: int,
    ) -> FillTerms:
        if maker_asset_id == AssetId.USDC:
            size = taker_amount_filled
            outcome = Outcome.YES if taker_asset_id == AssetId.YES else Outcome.NO
            price = cls._ratio(maker_amount_filled, size)
            return cls(outcome=outcome, side=Side.BUY, size=size, price=price)
        size = maker_amount_filled
        outcome = Outcome.YES if maker_asset_id == AssetId.YES else Outcome.NO
        price = cls._ratio(taker_amount_filled, size)
        return cls(outcome=outcome, side=Side.SELL, size=size, price=price)


@dataclass(frozen=True)
class NonceAccountSnapshot:
    wallet_address: str
    nonce_account: str
    current_nonce: int
