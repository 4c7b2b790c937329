"""Manual matchstick production with combo bonuses and multiplier stacking."""

from __future__ import annotations

import logging
import math
import uuid
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any

from matchstick import bignum
from matchstick.config import DEFAULT_CONFIG
from matchstick.errors import Category, MatchstickError, Severity
from matchstick.events import ManualProduction, MultiplierApplied, MultiplierRemoved
from matchstick.results import ProductionResult


_logger = logging.getLogger("matchstick.production")


@dataclass
class ComboState:
    count: int = 0
    last_click_time: int | None = None
    multiplier: float = 1.0
    started_at: int = 0


@dataclass
class ProductionStats:
    total_clicks: int = 0
    total_produced: int = 0
    average_click_rate: float = 0.0
    max_combo: int = 0
    session_production: int = 0
    session_clicks: int = 0
    session_start_time: int = 0


class ProductionEngine:
    """Turns clicks into matchsticks.

    The combo is process state, not game state: it is never saved and is
    reset whenever a saved game is loaded.
    """

    def __init__(self, store, scheduler, achievements=None, config: dict[str, Any] | None = None) -> None:
        self.store = store
        self.scheduler = scheduler
        self.achievements = achievements
        self.clock = store.clock
        self.config = config or DEFAULT_CONFIG
        self._combo = ComboState()
        self._stats = ProductionStats(session_start_time=self.clock.now_ms())
        # (timestamp, clicks) pairs inside the click-rate window
        self._recent_clicks: deque[tuple[int, int]] = deque()

    def produce(self, click_count: int = 1, source: str = "production_service") -> ProductionResult:
        """Produce matchsticks for ``click_count`` clicks.

        Always yields at least one matchstick per click, however low the
        manual rate is.
        """
        if isinstance(click_count, bool) or not isinstance(click_count, int) or click_count < 1:
            _logger.warning(f"Ignoring production request with click_count={click_count!r}")
            return ProductionResult(
                produced=0,
                combo_multiplier=self._combo.multiplier,
                total_multiplier=self._combo.multiplier,
                combo_count=self._combo.count,
            )

        now = self.clock.now_ms()
        try:
            with self.store.transaction():
                production = self.store.section("production")
                combo_multiplier = self._update_combo(now)
                self._record_clicks(click_count, now)
                total_multiplier = self._total_multiplier(combo_multiplier, production.multipliers)

                base = production.manual_rate * click_count
                produced = max(math.floor(base * total_multiplier), click_count)

                self.store.add_resources(matchsticks=produced)
                self.store.update_production(total_produced=bignum.add(production.total_produced, produced))

                self._stats.total_produced = bignum.add(self._stats.total_produced, produced)
                self._stats.session_production = bignum.add(self._stats.session_production, produced)

                result = ProductionResult(
                    produced=produced,
                    combo_multiplier=combo_multiplier,
                    total_multiplier=total_multiplier,
                    combo_count=self._combo.count,
                )
                self.store.emit(
                    ManualProduction(
                        produced=produced,
                        click_count=click_count,
                        combo_multiplier=combo_multiplier,
                        total_multiplier=total_multiplier,
                        combo_count=self._combo.count,
                    ),
                    source=source,
                )
        except Exception as e:
            self._report("Failed to produce matchsticks", e, {"click_count": click_count})
            return ProductionResult(produced=0, combo_multiplier=1.0, total_multiplier=1.0, combo_count=0)

        if self.achievements is not None:
            self.achievements.check_all()
        return result

    def apply_temporary_multiplier(self, value: float, duration_ms: int) -> str | None:
        """Add a multiplier that removes itself after ``duration_ms``.

        Returns the multiplier key. The removal is armed on the scheduler and
        cannot be cancelled by the caller.
        """
        if not self._valid_multiplier(value) or duration_ms <= 0:
            _logger.warning(f"Rejected temporary multiplier {value!r} for {duration_ms!r} ms")
            return None
        key = f"temp_{uuid.uuid4().hex[:10]}"
        if not self._set_multiplier(key, float(value)):
            return None
        self.scheduler.call_later(duration_ms, lambda: self.remove_multiplier(key), name=f"expire_{key}")
        self.store.emit(
            MultiplierApplied(key=key, multiplier=float(value), duration_ms=duration_ms),
            source="production_service",
        )
        return key

    def apply_permanent_multiplier(self, key: str, value: float) -> bool:
        if not self._valid_multiplier(value):
            _logger.warning(f"Rejected permanent multiplier {key}={value!r}")
            return False
        if not self._set_multiplier(key, float(value)):
            return False
        self.store.emit(MultiplierApplied(key=key, multiplier=float(value), duration_ms=None), source="production_service")
        return True

    def remove_multiplier(self, key: str) -> bool:
        try:
            with self.store.transaction():
                multipliers = self.store.section("production").multipliers
                if key not in multipliers:
                    return False
                del multipliers[key]
                self.store.update_production(multipliers=multipliers)
        except Exception as e:
            self._report("Failed to remove multiplier", e, {"key": key})
            return False
        self.store.emit(MultiplierRemoved(key=key), source="production_service")
        return True

    def get_current_production_rate(self) -> float:
        """Matchsticks per click at the current combo and multipliers."""
        with self.store.transaction():
            production = self.store.section("production")
            return production.manual_rate * self._total_multiplier(self._combo.multiplier, production.multipliers)

    def get_combo_info(self) -> dict[str, Any]:
        now = self.clock.now_ms()
        with self.store.transaction():
            combo = self._combo
            if combo.last_click_time is None:
                remaining = 0
            else:
                remaining = max(0, self.config["combo_decay_ms"] - (now - combo.last_click_time))
            return {
                "count": combo.count,
                "multiplier": combo.multiplier,
                "time_remaining_ms": remaining,
                "max_combo": self.config["max_combo"],
            }

    def get_production_stats(self) -> dict[str, Any]:
        now = self.clock.now_ms()
        with self.store.transaction():
            self._trim_click_window(now)
            window = min(self.config["click_rate_window_ms"], now - self._stats.session_start_time)
            if window > 0:
                clicks = sum(count for _, count in self._recent_clicks)
                self._stats.average_click_rate = clicks / window * 1000
            return asdict(self._stats)

    def reset_stats(self) -> None:
        """Start a new session; lifetime counters survive."""
        with self.store.transaction():
            self._stats = ProductionStats(
                total_clicks=self._stats.total_clicks,
                total_produced=self._stats.total_produced,
                max_combo=self._stats.max_combo,
                session_start_time=self.clock.now_ms(),
            )
            self._recent_clicks.clear()
            self.reset_combo()

    def reset_combo(self) -> None:
        with self.store.transaction():
            self._combo = ComboState()

    def _update_combo(self, now: int) -> float:
        combo = self._combo
        expired = combo.last_click_time is None or now - combo.last_click_time > self.config["combo_decay_ms"]
        if expired:
            combo.count = 1
            combo.started_at = now
        else:
            combo.count = min(combo.count + 1, self.config["max_combo"])
        combo.multiplier = 1 + self.config["combo_step"] * (combo.count - 1)
        combo.last_click_time = now
        self._stats.max_combo = max(self._stats.max_combo, combo.count)
        return combo.multiplier

    def _record_clicks(self, click_count: int, now: int) -> None:
        self._stats.total_clicks += click_count
        self._stats.session_clicks += click_count
        self._recent_clicks.append((now, click_count))
        self._trim_click_window(now)

    def _trim_click_window(self, now: int) -> None:
        cutoff = now - self.config["click_rate_window_ms"]
        while self._recent_clicks and self._recent_clicks[0][0] <= cutoff:
            self._recent_clicks.popleft()

    @staticmethod
    def _total_multiplier(combo_multiplier: float, multipliers: dict[str, float]) -> float:
        total = combo_multiplier
        for value in multipliers.values():
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
                total *= value
        return total

    @staticmethod
    def _valid_multiplier(value: Any) -> bool:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return math.isfinite(value) and value > 0

    def _set_multiplier(self, key: str, value: float) -> bool:
        try:
            with self.store.transaction():
                multipliers = self.store.section("production").multipliers
                multipliers[key] = value
                self.store.update_production(multipliers=multipliers)
            return True
        except Exception as e:
            self._report("Failed to apply multiplier", e, {"key": key, "value": value})
            return False

    def _report(self, message: str, error: Exception, details: dict[str, Any]) -> None:
        wrapped = MatchstickError(
            message,
            category=Category.GAME_LOGIC,
            severity=Severity.MEDIUM,
            details={"error": str(error), **details},
        )
        wrapped.__cause__ = error
        self.store.error_handler.handle_error(wrapped)
