"""Typed results returned by the mutating operations."""

from __future__ import annotations

from dataclasses import dataclass

from matchstick.errors import ErrorReason


@dataclass(frozen=True)
class ProductionResult:
    produced: int
    combo_multiplier: float
    total_multiplier: float
    combo_count: int


@dataclass(frozen=True)
class TradeTransaction:
    id: str
    timestamp: int
    matchsticks_sold: int
    price_per_unit: float
    total_revenue: float
    market_condition: str
    player_cash: float
    market_share: float
    is_auto_sale: bool = False


@dataclass(frozen=True)
class SaleResult:
    success: bool
    revenue: float
    price_per_unit: float
    remaining_matchsticks: int
    market_share: float = 0.0
    transaction: TradeTransaction | None = None
    error: ErrorReason | None = None
    message: str | None = None


@dataclass(frozen=True)
class PurchaseResult:
    success: bool
    item_id: str
    cost: int | None = None
    new_level: int | None = None
    error: ErrorReason | None = None
    message: str | None = None

    @classmethod
    def failure(cls, item_id: str, reason: ErrorReason, message: str, cost: int | None = None) -> "PurchaseResult":
        return cls(success=False, item_id=item_id, cost=cost, error=reason, message=message)
