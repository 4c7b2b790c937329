"""Shared game state container.

Key Classes:
    GameState: The persisted shape of one game, split into section dataclasses
        (resources, production, market, automation, achievements,
        progression, metadata)
    StateStore: Single owner of the live GameState. All mutation goes through
        its methods, which validate input, keep the ledger non-negative and
        report failures to the ErrorHandler instead of raising.

Reads return deep copies, so callers can never mutate the live state by
accident. Engines that need a read-modify-write across several calls wrap
them in ``store.transaction()``, which holds the store's re-entrant lock.
Derived values (production rate, net worth) are memoized against a version
counter that every mutation bumps.
"""

from __future__ import annotations

import copy
import logging
import math
import threading
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Callable, Iterator

from matchstick import bignum
from matchstick.config import DEFAULT_CONFIG, GAME_VERSION
from matchstick.errors import Category, ErrorHandler, MatchstickError, Severity
from matchstick.events import EventPayload, GameEvent, StateLoaded


_logger = logging.getLogger("matchstick.state")

SECTIONS = ("resources", "production", "market", "automation", "achievements", "progression", "metadata")

# Sections a partial load may touch
MERGEABLE_SECTIONS = ("resources", "production", "market", "automation")

# Keys whose presence marks a complete saved game rather than a patch
FULL_STATE_KEYS = ("metadata", "resources", "production", "market")

LEDGER_FIELDS = ("matchsticks", "money", "wood", "reputation")

_INVALID = object()


def _safe_int(value: Any, default: int = 0) -> int:
    """Read a stored integer. Negative values clamp to 0, unsafe ones reset."""
    try:
        result = bignum.coerce(value)
    except ValueError:
        _logger.warning(f"Discarding malformed integer value {value!r}")
        return default
    if result < 0:
        return 0
    if result > bignum.MAX_SAFE:
        _logger.warning("Discarding integer above MAX_SAFE")
        return default
    return result


def _safe_float(value: Any, default: float = 0.0, minimum: float | None = 0.0) -> float:
    if isinstance(value, bool):
        return default
    try:
        result = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    if not math.isfinite(result):
        return default
    if minimum is not None and result < minimum:
        return minimum
    return result


@dataclass
class ResourceLedger:
    matchsticks: int = 0
    money: float = 0.0
    wood: float = 0.0
    reputation: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ResourceLedger":
        data = data or {}
        return cls(
            matchsticks=_safe_int(data.get("matchsticks", 0)),
            money=_safe_float(data.get("money", 0.0)),
            wood=_safe_float(data.get("wood", 0.0)),
            reputation=_safe_float(data.get("reputation", 0.0)),
        )


@dataclass
class ProductionState:
    manual_rate: float = 1.0
    automated_rate: float = 0.0
    multipliers: dict[str, float] = field(default_factory=dict)
    total_produced: int = 0
    last_update: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProductionState":
        data = data or {}
        multipliers = {}
        for key, value in (data.get("multipliers") or {}).items():
            number = _safe_float(value, default=math.nan, minimum=None)
            if math.isnan(number):
                _logger.warning(f"Dropping non-numeric multiplier '{key}'")
                continue
            multipliers[str(key)] = number
        return cls(
            manual_rate=_safe_float(data.get("manual_rate", 1.0), default=1.0),
            automated_rate=_safe_float(data.get("automated_rate", 0.0)),
            multipliers=multipliers,
            total_produced=_safe_int(data.get("total_produced", 0)),
            last_update=_safe_int(data.get("last_update", 0)),
        )


@dataclass
class PriceHistoryEntry:
    timestamp: int
    price: float
    volume: int = 0
    condition: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PriceHistoryEntry":
        return cls(
            timestamp=_safe_int(data.get("timestamp", 0)),
            price=_safe_float(data.get("price", DEFAULT_CONFIG["base_price"]), default=DEFAULT_CONFIG["base_price"]),
            volume=_safe_int(data.get("volume", 0)),
            condition=data.get("condition"),
        )


@dataclass
class MarketCondition:
    condition_id: str
    price_multiplier: float
    demand_level: str
    trend: str
    duration: int
    description: str
    started_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MarketCondition":
        return cls(
            condition_id=str(data.get("condition_id", "unknown")),
            price_multiplier=_safe_float(data.get("price_multiplier", 1.0), default=1.0),
            demand_level=str(data.get("demand_level", "normal")),
            trend=str(data.get("trend", "stable")),
            duration=_safe_int(data.get("duration", 0)),
            description=str(data.get("description", "")),
            started_at=_safe_int(data.get("started_at", 0)),
        )


@dataclass
class MarketState:
    current_price: float = 1.0
    base_price: float = 1.0
    price_history: list[PriceHistoryEntry] = field(default_factory=list)
    condition: MarketCondition | None = None
    total_sold: int = 0
    total_revenue: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_price": self.current_price,
            "base_price": self.base_price,
            "price_history": [entry.to_dict() for entry in self.price_history],
            "condition": self.condition.to_dict() if self.condition else None,
            "total_sold": self.total_sold,
            "total_revenue": self.total_revenue,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MarketState":
        data = data or {}
        min_price = DEFAULT_CONFIG["min_price"]
        condition = data.get("condition")
        return cls(
            current_price=_safe_float(data.get("current_price", 1.0), default=1.0, minimum=min_price),
            base_price=_safe_float(data.get("base_price", 1.0), default=1.0, minimum=min_price),
            price_history=[
                PriceHistoryEntry.from_dict(entry)
                for entry in (data.get("price_history") or [])
                if isinstance(entry, dict)
            ],
            condition=MarketCondition.from_dict(condition) if isinstance(condition, dict) else None,
            total_sold=_safe_int(data.get("total_sold", 0)),
            total_revenue=_safe_float(data.get("total_revenue", 0.0)),
        )


@dataclass
class AutoClickerState:
    id: str
    level: int = 0
    total_clicks: int = 0
    is_active: bool = True
    efficiency: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AutoClickerState":
        return cls(
            id=str(data["id"]),
            level=_safe_int(data.get("level", 0)),
            total_clicks=_safe_int(data.get("total_clicks", 0)),
            is_active=bool(data.get("is_active", True)),
            efficiency=min(1.0, _safe_float(data.get("efficiency", 1.0), default=1.0)),
        )


@dataclass
class FacilityState:
    id: str
    owned: int = 0
    efficiency: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FacilityState":
        floor = DEFAULT_CONFIG["min_facility_efficiency"]
        efficiency = _safe_float(data.get("efficiency", 1.0), default=1.0, minimum=floor)
        return cls(
            id=str(data["id"]),
            owned=_safe_int(data.get("owned", 0)),
            efficiency=min(1.0, efficiency),
        )


@dataclass
class AutoSellSettings:
    enabled: bool = False
    threshold: int = 100
    percentage: float = 50.0
    min_price: float = 0.5
    max_per_second: int = 100

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AutoSellSettings":
        data = data or {}
        defaults = cls()
        percentage = _safe_float(data.get("percentage", defaults.percentage), default=defaults.percentage)
        if percentage <= 0 or percentage > 100:
            percentage = defaults.percentage
        max_per_second = _safe_int(data.get("max_per_second", defaults.max_per_second), default=defaults.max_per_second)
        return cls(
            enabled=bool(data.get("enabled", False)),
            threshold=_safe_int(data.get("threshold", defaults.threshold), default=defaults.threshold),
            percentage=percentage,
            min_price=_safe_float(data.get("min_price", defaults.min_price), default=defaults.min_price),
            max_per_second=max_per_second or defaults.max_per_second,
        )


@dataclass
class AutomationState:
    auto_clickers: dict[str, AutoClickerState] = field(default_factory=dict)
    facilities: dict[str, FacilityState] = field(default_factory=dict)
    auto_sell_settings: AutoSellSettings = field(default_factory=AutoSellSettings)
    total_money_spent: float = 0.0
    last_update: int = 0

    def total_auto_clickers(self) -> int:
        """Auto-clicker levels summed over every type."""
        return sum(clicker.level for clicker in self.auto_clickers.values())

    def total_facilities(self) -> int:
        return sum(facility.owned for facility in self.facilities.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "auto_clickers": {key: value.to_dict() for key, value in self.auto_clickers.items()},
            "facilities": {key: value.to_dict() for key, value in self.facilities.items()},
            "auto_sell_settings": self.auto_sell_settings.to_dict(),
            "total_money_spent": self.total_money_spent,
            "last_update": self.last_update,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AutomationState":
        data = data or {}
        clickers = {}
        for key, value in (data.get("auto_clickers") or {}).items():
            if isinstance(value, dict):
                clickers[key] = AutoClickerState.from_dict({"id": key, **value})
        facilities = {}
        for key, value in (data.get("facilities") or {}).items():
            if isinstance(value, dict):
                facilities[key] = FacilityState.from_dict({"id": key, **value})
        return cls(
            auto_clickers=clickers,
            facilities=facilities,
            auto_sell_settings=AutoSellSettings.from_dict(data.get("auto_sell_settings")),
            total_money_spent=_safe_float(data.get("total_money_spent", 0.0)),
            last_update=_safe_int(data.get("last_update", 0)),
        )


@dataclass
class AchievementState:
    unlocked: list[str] = field(default_factory=list)
    stats: dict[str, float] = field(
        default_factory=lambda: {"total_unlocked": 0, "achievement_points": 0, "completion_percentage": 0.0}
    )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AchievementState":
        data = data or {}
        unlocked: list[str] = []
        for achievement_id in data.get("unlocked") or []:
            if isinstance(achievement_id, str) and achievement_id not in unlocked:
                unlocked.append(achievement_id)
        state = cls(unlocked=unlocked)
        for key, value in (data.get("stats") or {}).items():
            if key in state.stats:
                state.stats[key] = _safe_float(value)
        return state


@dataclass
class ProgressionState:
    current_phase: str = "manual"
    unlocked_features: list[str] = field(default_factory=lambda: ["manual_production"])
    milestones: list[str] = field(default_factory=list)
    prestige_level: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProgressionState":
        data = data or {}
        return cls(
            current_phase=str(data.get("current_phase", "manual")),
            unlocked_features=list(data.get("unlocked_features") or ["manual_production"]),
            milestones=list(data.get("milestones") or []),
            prestige_level=_safe_int(data.get("prestige_level", 0)),
        )


@dataclass
class GameMetadata:
    version: str = GAME_VERSION
    player_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    created_at: int = 0
    last_saved: int = 0
    total_play_time: int = 0
    session_start_time: int = 0
    game_speed: float = 1.0
    debug_mode: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GameMetadata":
        data = data or {}
        return cls(
            version=str(data.get("version", GAME_VERSION)),
            player_id=str(data.get("player_id") or uuid.uuid4().hex[:8]),
            created_at=_safe_int(data.get("created_at", 0)),
            last_saved=_safe_int(data.get("last_saved", 0)),
            total_play_time=_safe_int(data.get("total_play_time", 0)),
            session_start_time=_safe_int(data.get("session_start_time", 0)),
            game_speed=_safe_float(data.get("game_speed", 1.0), default=1.0),
            debug_mode=bool(data.get("debug_mode", False)),
        )


_SECTION_TYPES: dict[str, type] = {
    "resources": ResourceLedger,
    "production": ProductionState,
    "market": MarketState,
    "automation": AutomationState,
    "achievements": AchievementState,
    "progression": ProgressionState,
    "metadata": GameMetadata,
}


@dataclass
class GameState:
    resources: ResourceLedger = field(default_factory=ResourceLedger)
    production: ProductionState = field(default_factory=ProductionState)
    market: MarketState = field(default_factory=MarketState)
    automation: AutomationState = field(default_factory=AutomationState)
    achievements: AchievementState = field(default_factory=AchievementState)
    progression: ProgressionState = field(default_factory=ProgressionState)
    metadata: GameMetadata = field(default_factory=GameMetadata)

    @classmethod
    def new(cls, now_ms: int) -> "GameState":
        """Fresh new-game state stamped with the given time."""
        state = cls()
        state.production.last_update = now_ms
        state.automation.last_update = now_ms
        state.metadata.created_at = now_ms
        state.metadata.last_saved = now_ms
        state.metadata.session_start_time = now_ms
        return state

    def to_dict(self) -> dict[str, Any]:
        return {name: getattr(self, name).to_dict() for name in SECTIONS}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GameState":
        kwargs = {}
        for name in SECTIONS:
            section = data.get(name)
            kwargs[name] = _SECTION_TYPES[name].from_dict(section if isinstance(section, dict) else None)
        return cls(**kwargs)


def is_full_state(data: dict[str, Any]) -> bool:
    return all(key in data for key in FULL_STATE_KEYS)


def _deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict) and "__type" not in value:
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _finite_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        result = float(value)
    except OverflowError:
        return None
    return result if math.isfinite(result) else None


def _conform_multipliers(value: Any) -> Any:
    if not isinstance(value, dict):
        return _INVALID
    multipliers = {}
    for key, number in value.items():
        number = _finite_number(number)
        if not isinstance(key, str) or number is None:
            return _INVALID
        multipliers[key] = number
    return multipliers


def _conform_stats(value: Any) -> Any:
    if not isinstance(value, dict):
        return _INVALID
    stats = {}
    for key, number in value.items():
        if not isinstance(key, str) or _finite_number(number) is None:
            return _INVALID
        stats[key] = number
    return stats


def _conform_names(value: Any) -> Any:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        return _INVALID
    return list(value)


def _conform_price_history(value: Any) -> Any:
    if not isinstance(value, list):
        return _INVALID
    history = []
    for entry in value:
        if isinstance(entry, dict):
            entry = PriceHistoryEntry.from_dict(entry)
        if not isinstance(entry, PriceHistoryEntry):
            return _INVALID
        history.append(entry)
    return history


def _conform_condition(value: Any) -> Any:
    if value is None or isinstance(value, MarketCondition):
        return value
    if isinstance(value, dict):
        return MarketCondition.from_dict(value)
    return _INVALID


def _conform_auto_sell(value: Any) -> Any:
    if isinstance(value, AutoSellSettings):
        return value
    if isinstance(value, dict):
        return AutoSellSettings.from_dict(value)
    return _INVALID


def _keyed_states(state_cls: type) -> Callable[[Any], Any]:
    """Conformer for an id -> state dataclass mapping."""

    def conform(value: Any) -> Any:
        if not isinstance(value, dict):
            return _INVALID
        states = {}
        for key, item in value.items():
            if not isinstance(key, str):
                return _INVALID
            if isinstance(item, dict):
                item = state_cls.from_dict({**item, "id": key})
            if not isinstance(item, state_cls):
                return _INVALID
            states[key] = item
        return states

    return conform


# Fields that hold containers or nested records, keyed by (section, field)
_FIELD_CONFORMERS: dict[tuple[str, str], Callable[[Any], Any]] = {
    ("production", "multipliers"): _conform_multipliers,
    ("market", "price_history"): _conform_price_history,
    ("market", "condition"): _conform_condition,
    ("automation", "auto_clickers"): _keyed_states(AutoClickerState),
    ("automation", "facilities"): _keyed_states(FacilityState),
    ("automation", "auto_sell_settings"): _conform_auto_sell,
    ("achievements", "unlocked"): _conform_names,
    ("achievements", "stats"): _conform_stats,
    ("progression", "unlocked_features"): _conform_names,
    ("progression", "milestones"): _conform_names,
}


class StateStore:
    """Single owner of the live game state.

    Mutators never raise: malformed input is logged and skipped, failures
    are reported to the ErrorHandler and the previous values are kept.
    """

    def __init__(
        self,
        clock,
        error_handler: ErrorHandler | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.clock = clock
        self.error_handler = error_handler or ErrorHandler()
        self.config = config or DEFAULT_CONFIG
        self._lock = threading.RLock()
        self._state = GameState.new(clock.now_ms())
        self._events: deque[GameEvent] = deque(maxlen=self.config["event_log_capacity"])
        self._subscribers: list[Callable[[str], None]] = []
        self._event_listeners: list[Callable[[GameEvent], None]] = []
        self._version = 0
        self._derived: dict[str, tuple[int, float]] = {}

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    @contextmanager
    def transaction(self) -> Iterator["StateStore"]:
        """Hold the store lock across several reads and writes."""
        with self._lock:
            yield self

    def get(self) -> GameState:
        with self._lock:
            return copy.deepcopy(self._state)

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return self._state.to_dict()

    def section(self, name: str):
        """Deep copy of one section, or None for an unknown section name."""
        if name not in SECTIONS:
            return None
        with self._lock:
            return copy.deepcopy(getattr(self._state, name))

    def events(self, limit: int | None = None) -> list[GameEvent]:
        """Event log, newest first."""
        with self._lock:
            items = list(self._events)
        return items if limit is None else items[:limit]

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Call ``callback(section)`` after every change. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def on_event(self, callback: Callable[[GameEvent], None]) -> Callable[[], None]:
        """Call ``callback(event)`` for every emitted event. Returns an unsubscribe function."""
        self._event_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._event_listeners:
                self._event_listeners.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    def total_production_rate(self) -> float:
        """(manual + automated rate) times every positive multiplier."""
        return self._memoized("total_production_rate", self._compute_production_rate)

    def net_worth(self) -> float:
        """Money plus the market value of everything held."""
        return self._memoized("net_worth", self._compute_net_worth)

    def _memoized(self, key: str, compute: Callable[[], float]) -> float:
        with self._lock:
            cached = self._derived.get(key)
            if cached is not None and cached[0] == self._version:
                return cached[1]
            try:
                value = compute()
            except Exception as e:
                self._report(f"Failed to calculate {key}", e)
                value = 0.0
            self._derived[key] = (self._version, value)
            return value

    def _compute_production_rate(self) -> float:
        production = self._state.production
        factor = 1.0
        for value in production.multipliers.values():
            if value > 0:
                factor *= value
        return (production.manual_rate + production.automated_rate) * factor

    def _compute_net_worth(self) -> float:
        resources = self._state.resources
        matchstick_value = float(resources.matchsticks) * self._state.market.current_price
        return resources.money + matchstick_value + resources.wood * 10 + resources.reputation * 5

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def add_resources(self, **delta: Any) -> None:
        """Credit ledger fields independently; bad components are skipped."""
        try:
            with self._lock:
                parsed = {}
                for name, value in delta.items():
                    amount = self._parse_amount(name, value)
                    if amount is not None:
                        parsed[name] = amount
                if parsed:
                    self._credit(parsed)
                    self._changed("resources")
        except Exception as e:
            self._report("Failed to add resources", e, {"delta": repr(delta)})

    def subtract_resources(self, **delta: Any) -> bool:
        """Debit every field or none. Returns False on any shortfall or bad input."""
        try:
            with self._lock:
                parsed = self._parse_strict(delta)
                if parsed is None or not self._can_debit(parsed):
                    return False
                self._debit(parsed)
                self._changed("resources")
                return True
        except Exception as e:
            self._report("Failed to subtract resources", e, {"delta": repr(delta)})
            return False

    def exchange(self, subtract: dict[str, Any], add: dict[str, Any]) -> bool:
        """Atomic debit plus credit, e.g. matchsticks for money."""
        try:
            with self._lock:
                debit = self._parse_strict(subtract)
                credit = self._parse_strict(add)
                if debit is None or credit is None or not self._can_debit(debit):
                    return False
                self._debit(debit)
                self._credit(credit)
                self._changed("resources")
                return True
        except Exception as e:
            self._report("Failed to exchange resources", e, {"subtract": repr(subtract), "add": repr(add)})
            return False

    def _parse_amount(self, name: str, value: Any) -> int | float | None:
        if name not in LEDGER_FIELDS:
            _logger.warning(f"Ignoring unknown resource '{name}'")
            return None
        if name == "matchsticks":
            try:
                amount = bignum.coerce(value)
            except ValueError:
                _logger.warning(f"Ignoring malformed matchstick amount {value!r}")
                return None
        else:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                _logger.warning(f"Ignoring malformed {name} amount {value!r}")
                return None
            amount = float(value)
            if not math.isfinite(amount):
                _logger.warning(f"Ignoring non-finite {name} amount")
                return None
        if amount < 0:
            _logger.warning(f"Ignoring negative {name} amount {value!r}")
            return None
        return amount

    def _parse_strict(self, delta: dict[str, Any]) -> dict[str, int | float] | None:
        parsed = {}
        for name, value in delta.items():
            amount = self._parse_amount(name, value)
            if amount is None:
                return None
            parsed[name] = amount
        return parsed

    def _can_debit(self, amounts: dict[str, int | float]) -> bool:
        ledger = self._state.resources
        return all(getattr(ledger, name) >= amount for name, amount in amounts.items())

    def _debit(self, amounts: dict[str, int | float]) -> None:
        ledger = self._state.resources
        for name, amount in amounts.items():
            if name == "matchsticks":
                ledger.matchsticks = bignum.subtract(ledger.matchsticks, amount)
            else:
                setattr(ledger, name, max(0.0, getattr(ledger, name) - amount))

    def _credit(self, amounts: dict[str, int | float]) -> None:
        ledger = self._state.resources
        for name, amount in amounts.items():
            if name == "matchsticks":
                ledger.matchsticks = bignum.add(ledger.matchsticks, amount)
            else:
                setattr(ledger, name, getattr(ledger, name) + amount)

    # ------------------------------------------------------------------
    # Section updates
    # ------------------------------------------------------------------

    def update_production(self, **partial: Any) -> None:
        self._update("production", partial)
        with self._lock:
            self._state.production.last_update = self.clock.now_ms()

    def update_market(self, **partial: Any) -> None:
        self._update("market", partial)

    def update_automation(self, **partial: Any) -> None:
        self._update("automation", partial)

    def update_achievements(self, **partial: Any) -> None:
        self._update("achievements", partial)

    def update_progression(self, **partial: Any) -> None:
        self._update("progression", partial)

    def update_metadata(self, **partial: Any) -> None:
        self._update("metadata", partial)

    def _update(self, section: str, partial: dict[str, Any]) -> None:
        try:
            with self._lock:
                target = getattr(self._state, section)
                known = {f.name for f in fields(target)}
                changed = False
                for key, value in partial.items():
                    if key not in known:
                        _logger.warning(f"Ignoring unknown {section} field '{key}'")
                        continue
                    conformed = self._conform(section, key, getattr(target, key), value)
                    if conformed is _INVALID:
                        _logger.warning(f"Ignoring malformed value for {section}.{key}: {value!r}")
                        continue
                    setattr(target, key, copy.deepcopy(conformed))
                    changed = True
                if changed:
                    self._changed(section)
        except Exception as e:
            self._report(f"Failed to update {section}", e, {"partial": repr(partial)})

    @staticmethod
    def _conform(section: str, key: str, current: Any, value: Any) -> Any:
        """Keep the field's type.

        Ints stay safe ints, floats stay finite floats, strings stay strings,
        and container fields keep their element types. Anything else is
        rejected with ``_INVALID``.
        """
        conformer = _FIELD_CONFORMERS.get((section, key))
        if conformer is not None:
            try:
                return conformer(value)
            except (TypeError, ValueError, KeyError):
                return _INVALID
        if isinstance(current, str):
            return value if isinstance(value, str) else _INVALID
        if isinstance(current, bool):
            return value if isinstance(value, bool) else _INVALID
        if isinstance(current, int):
            try:
                result = bignum.coerce(value)
            except ValueError:
                return _INVALID
            return result if bignum.is_safe(result) else _INVALID
        if isinstance(current, float):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return _INVALID
            result = float(value)
            return result if math.isfinite(result) else _INVALID
        return _INVALID

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def emit_event(self, event: GameEvent) -> None:
        """Prepend to the bounded event log and fan out to listeners."""
        try:
            with self._lock:
                self._events.appendleft(event)
        except Exception as e:
            self._report("Failed to emit event", e)
            return
        for listener in list(self._event_listeners):
            try:
                listener(event)
            except Exception as e:
                _logger.error(f"Event listener failed for {event.type.value}: {e}")

    def emit(self, payload: EventPayload, source: str) -> GameEvent:
        event = GameEvent.create(payload, source=source, timestamp=self.clock.now_ms())
        self.emit_event(event)
        return event

    def clear_events(self) -> None:
        with self._lock:
            self._events.clear()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self, data: dict[str, Any]) -> bool:
        """Replace the state with a saved game, or merge a partial update.

        A complete saved game is sanitized and installed wholesale. Anything
        else is deep-merged into the resources, production, market and
        automation sections only. Emits ``state_loaded`` either way.
        """
        full = isinstance(data, dict) and is_full_state(data)
        success = True
        try:
            if not isinstance(data, dict):
                raise TypeError(f"Cannot load state from {type(data).__name__}")
            with self._lock:
                if full:
                    self._state = self.validate_and_sanitize(data)
                else:
                    self._merge_partial(data)
                self._changed("all")
        except Exception as e:
            success = False
            self._report("Failed to load game state", e)
        self.emit(StateLoaded(full_state=full, success=success), source="game_system")
        return success

    def _merge_partial(self, data: dict[str, Any]) -> None:
        for name, patch in data.items():
            if name not in MERGEABLE_SECTIONS or not isinstance(patch, dict):
                _logger.warning(f"Ignoring '{name}' in partial state load")
                continue
            current = getattr(self._state, name).to_dict()
            merged = _deep_merge(current, patch)
            setattr(self._state, name, _SECTION_TYPES[name].from_dict(merged))
        self._state.production.last_update = self.clock.now_ms()

    def validate_and_sanitize(self, data: dict[str, Any]) -> GameState:
        """Build a clean GameState from loosely-typed saved data."""
        now = self.clock.now_ms()
        try:
            state = GameState.from_dict(data)
        except Exception as e:
            self._report("Failed to validate game state", e)
            return GameState.new(now)
        max_history = self.config["max_price_history"]
        if len(state.market.price_history) > max_history:
            state.market.price_history = state.market.price_history[-max_history:]
        state.metadata.created_at = state.metadata.created_at or now
        state.metadata.last_saved = state.metadata.last_saved or now
        state.metadata.session_start_time = now
        return state

    def reset(self) -> None:
        """Fresh new-game state and an empty event log."""
        try:
            with self._lock:
                self._state = GameState.new(self.clock.now_ms())
                self._events.clear()
                self._changed("all")
        except Exception as e:
            self._report("Failed to reset game state", e)

    def _changed(self, section: str) -> None:
        self._version += 1
        self._derived.clear()
        for callback in list(self._subscribers):
            try:
                callback(section)
            except Exception as e:
                _logger.error(f"State subscriber failed: {e}")

    def _report(self, message: str, error: Exception, details: dict[str, Any] | None = None) -> None:
        wrapped = MatchstickError(
            message,
            category=Category.GAME_LOGIC,
            severity=Severity.MEDIUM,
            details={"error": str(error), **(details or {})},
        )
        wrapped.__cause__ = error
        _logger.debug(f"{message}: {error}", exc_info=True)
        self.error_handler.handle_error(wrapped)
