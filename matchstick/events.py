"""Typed game events.

Each event kind has its own payload dataclass; ``GameEvent.create`` derives
the event type from the payload class so the two can never disagree.
Consumers dispatch on ``event.type`` and can rely on the payload shape
listed in ``PAYLOAD_TYPES``.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Union


class EventType(str, Enum):
    STATE_LOADED = "state_loaded"
    NEW_GAME_STARTED = "new_game_started"
    GAME_RESET = "game_reset"
    GAME_SAVED = "game_saved"
    GAME_LOADED = "game_loaded"
    MANUAL_PRODUCTION = "manual_production"
    MULTIPLIER_APPLIED = "multiplier_applied"
    MULTIPLIER_REMOVED = "multiplier_removed"
    PRICE_CHANGE = "price_change"
    CONDITION_CHANGE = "condition_change"
    TRADE_EXECUTED = "trade_executed"
    UPGRADE_PURCHASED = "upgrade_purchased"
    MAINTENANCE_REQUIRED = "maintenance_required"
    ACHIEVEMENT_UNLOCKED = "achievement_unlocked"


@dataclass(frozen=True)
class StateLoaded:
    full_state: bool
    success: bool = True


@dataclass(frozen=True)
class NewGameStarted:
    version: str


@dataclass(frozen=True)
class GameReset:
    pass


@dataclass(frozen=True)
class GameSaved:
    save_id: str
    save_name: str
    is_auto_save: bool


@dataclass(frozen=True)
class GameLoaded:
    save_id: str


@dataclass(frozen=True)
class ManualProduction:
    produced: int
    click_count: int
    combo_multiplier: float
    total_multiplier: float
    combo_count: int


@dataclass(frozen=True)
class MultiplierApplied:
    key: str
    multiplier: float
    duration_ms: int | None


@dataclass(frozen=True)
class MultiplierRemoved:
    key: str


@dataclass(frozen=True)
class PriceChange:
    previous_price: float
    new_price: float
    change: float
    change_percent: float


@dataclass(frozen=True)
class ConditionChange:
    condition_id: str | None
    name: str | None = None
    description: str | None = None
    price_multiplier: float | None = None
    duration_ms: int | None = None
    cleared: bool = False


@dataclass(frozen=True)
class TradeExecuted:
    amount: int
    revenue: float
    price_per_unit: float
    market_share: float
    is_auto_sale: bool = False


@dataclass(frozen=True)
class UpgradePurchased:
    item_type: str  # auto_clicker | facility
    item_id: str
    cost: int
    new_level: int
    total_spent: float


@dataclass(frozen=True)
class MaintenanceRequired:
    message: str
    upkeep_due: float
    efficiency: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class AchievementUnlocked:
    achievement_id: str
    name: str
    points: int
    reward_type: str
    reward_amount: float


EventPayload = Union[
    StateLoaded,
    NewGameStarted,
    GameReset,
    GameSaved,
    GameLoaded,
    ManualProduction,
    MultiplierApplied,
    MultiplierRemoved,
    PriceChange,
    ConditionChange,
    TradeExecuted,
    UpgradePurchased,
    MaintenanceRequired,
    AchievementUnlocked,
]

PAYLOAD_TYPES: dict[EventType, type] = {
    EventType.STATE_LOADED: StateLoaded,
    EventType.NEW_GAME_STARTED: NewGameStarted,
    EventType.GAME_RESET: GameReset,
    EventType.GAME_SAVED: GameSaved,
    EventType.GAME_LOADED: GameLoaded,
    EventType.MANUAL_PRODUCTION: ManualProduction,
    EventType.MULTIPLIER_APPLIED: MultiplierApplied,
    EventType.MULTIPLIER_REMOVED: MultiplierRemoved,
    EventType.PRICE_CHANGE: PriceChange,
    EventType.CONDITION_CHANGE: ConditionChange,
    EventType.TRADE_EXECUTED: TradeExecuted,
    EventType.UPGRADE_PURCHASED: UpgradePurchased,
    EventType.MAINTENANCE_REQUIRED: MaintenanceRequired,
    EventType.ACHIEVEMENT_UNLOCKED: AchievementUnlocked,
}

_TYPE_BY_PAYLOAD = {payload_cls: event_type for event_type, payload_cls in PAYLOAD_TYPES.items()}


@dataclass(frozen=True)
class GameEvent:
    id: str
    type: EventType
    timestamp: int
    data: EventPayload
    source: str

    @classmethod
    def create(cls, data: EventPayload, *, source: str, timestamp: int) -> "GameEvent":
        try:
            event_type = _TYPE_BY_PAYLOAD[type(data)]
        except KeyError:
            raise TypeError(f"Unknown event payload type: {type(data).__name__}") from None
        return cls(
            id=f"evt_{uuid.uuid4().hex[:12]}",
            type=event_type,
            timestamp=timestamp,
            data=data,
            source=source,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "data": asdict(self.data),
            "source": self.source,
        }
