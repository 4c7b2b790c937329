"""Auto-clickers, production facilities, auto-sell and maintenance.

Key Classes:
    AutoClickerConfig / FacilityConfig: Catalog entries with cost curves and
        unlock requirements
    AutomationScheduler: Purchases plus the four periodic automation ticks

Ticks (default cadence):
    auto-click      1s   active auto-clickers produce through ProductionEngine
    auto-production 1s   facilities add matchsticks directly, no combo
    auto-sell       2s   sells a share of holdings through MarketEngine
    maintenance     5s   pays facility upkeep, or degrades efficiency when broke
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any

from matchstick import bignum
from matchstick.config import DEFAULT_CONFIG
from matchstick.errors import Category, ErrorReason, MatchstickError, Severity, ValidationError
from matchstick.events import MaintenanceRequired, UpgradePurchased
from matchstick.results import PurchaseResult
from matchstick.state_store import AutoClickerState, AutoSellSettings, FacilityState, GameState


_logger = logging.getLogger("matchstick.automation")

AUTOMATION_GROUP = "automation"


@dataclass(frozen=True)
class UnlockRequirement:
    total_produced: int = 0
    total_revenue: float = 0.0
    auto_clickers_owned: int = 0
    game_phase: str | None = None

    def is_met(self, state: GameState) -> bool:
        if state.production.total_produced < self.total_produced:
            return False
        if state.market.total_revenue < self.total_revenue:
            return False
        if state.automation.total_auto_clickers() < self.auto_clickers_owned:
            return False
        if self.game_phase is not None and state.progression.current_phase != self.game_phase:
            return False
        return True

    def describe(self) -> str:
        parts = []
        if self.total_produced:
            parts.append(f"{self.total_produced:,} total production")
        if self.total_revenue:
            parts.append(f"${self.total_revenue:,.0f} total revenue")
        if self.auto_clickers_owned:
            parts.append(f"{self.auto_clickers_owned} auto-clickers")
        if self.game_phase:
            parts.append(f"the {self.game_phase} phase")
        return "Requires " + " and ".join(parts) if parts else "Always available"


@dataclass(frozen=True)
class AutoClickerConfig:
    id: str
    name: str
    description: str
    base_cost: int
    cost_multiplier: float
    base_clicks_per_second: int
    max_level: int
    unlock: UnlockRequirement = field(default_factory=UnlockRequirement)

    def cost_at(self, level: int) -> int:
        return math.floor(self.base_cost * self.cost_multiplier ** level)


@dataclass(frozen=True)
class FacilityConfig:
    id: str
    name: str
    description: str
    cost: int
    base_production: int  # matchsticks per second
    max_owned: int
    maintenance_cost: float  # money per second, per facility
    unlock: UnlockRequirement = field(default_factory=UnlockRequirement)

    def cost_at(self, owned: int, growth: float) -> int:
        return math.floor(self.cost * growth ** owned)


AUTO_CLICKERS: dict[str, AutoClickerConfig] = {
    config.id: config
    for config in (
        AutoClickerConfig(
            id="basic_clicker",
            name="Basic Auto-Clicker",
            description="Automatically clicks once per second",
            base_cost=50,
            cost_multiplier=1.15,
            base_clicks_per_second=1,
            max_level=50,
        ),
        AutoClickerConfig(
            id="fast_clicker",
            name="Fast Auto-Clicker",
            description="Clicks 3 times per second with improved efficiency",
            base_cost=250,
            cost_multiplier=1.2,
            base_clicks_per_second=3,
            max_level=25,
            unlock=UnlockRequirement(total_produced=1000),
        ),
        AutoClickerConfig(
            id="turbo_clicker",
            name="Turbo Auto-Clicker",
            description="High-speed clicking with 8 clicks per second",
            base_cost=1000,
            cost_multiplier=1.25,
            base_clicks_per_second=8,
            max_level=10,
            unlock=UnlockRequirement(total_produced=10_000, total_revenue=1000),
        ),
        AutoClickerConfig(
            id="quantum_clicker",
            name="Quantum Auto-Clicker",
            description="Theoretical physics-powered clicking at 20/second",
            base_cost=5000,
            cost_multiplier=1.3,
            base_clicks_per_second=20,
            max_level=5,
            unlock=UnlockRequirement(total_produced=100_000, total_revenue=10_000),
        ),
    )
}

FACILITIES: dict[str, FacilityConfig] = {
    config.id: config
    for config in (
        FacilityConfig(
            id="basic_factory",
            name="Basic Matchstick Factory",
            description="Produces 5 matchsticks per second automatically",
            cost=500,
            base_production=5,
            max_owned=10,
            maintenance_cost=2,
            unlock=UnlockRequirement(total_produced=5000),
        ),
        FacilityConfig(
            id="advanced_factory",
            name="Advanced Production Line",
            description="High-efficiency production of 25 matchsticks/second",
            cost=2500,
            base_production=25,
            max_owned=5,
            maintenance_cost=8,
            unlock=UnlockRequirement(total_produced=50_000, auto_clickers_owned=5),
        ),
        FacilityConfig(
            id="mega_plant",
            name="Mega Production Plant",
            description="Industrial-scale production at 100 matchsticks/second",
            cost=15_000,
            base_production=100,
            max_owned=2,
            maintenance_cost=30,
            unlock=UnlockRequirement(total_produced=500_000),
        ),
    )
}


class AutomationScheduler:
    def __init__(
        self,
        store,
        scheduler,
        production,
        market,
        achievements=None,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.production = production
        self.market = market
        self.achievements = achievements
        self.clock = store.clock
        self.config = config or DEFAULT_CONFIG

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.stop()
        cfg = self.config
        self.scheduler.every(cfg["auto_click_ms"], self.process_auto_clickers, name="auto_click", group=AUTOMATION_GROUP)
        self.scheduler.every(
            cfg["auto_production_ms"], self.process_auto_production, name="auto_production", group=AUTOMATION_GROUP
        )
        self.scheduler.every(cfg["auto_sell_ms"], self.process_auto_sell, name="auto_sell", group=AUTOMATION_GROUP)
        self.scheduler.every(cfg["maintenance_ms"], self.process_maintenance, name="maintenance", group=AUTOMATION_GROUP)
        _logger.info("Automation started")

    def stop(self) -> None:
        """Cancel all four automation ticks."""
        if self.scheduler.cancel_group(AUTOMATION_GROUP):
            _logger.info("Automation stopped")

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    def purchase_auto_clicker(self, clicker_id: str) -> PurchaseResult:
        """Buy one level of an auto-clicker.

        Checks, in order: the clicker exists, it is below its max level, its
        unlock requirement is met, and the player can afford it. The first
        failing check decides the error reason; nothing changes on failure.
        """
        config = AUTO_CLICKERS.get(clicker_id)
        if config is None:
            return self._fail(clicker_id, ErrorReason.NOT_FOUND, "Auto-clicker not found")

        try:
            with self.store.transaction():
                state = self.store.get()
                clickers = state.automation.auto_clickers
                current = clickers.get(clicker_id)
                level = current.level if current else 0

                if level >= config.max_level:
                    return self._fail(clicker_id, ErrorReason.MAX_LEVEL_REACHED, "Maximum level reached")
                if not config.unlock.is_met(state):
                    return self._fail(clicker_id, ErrorReason.REQUIREMENTS_NOT_MET, config.unlock.describe())

                cost = config.cost_at(level)
                if not self.store.subtract_resources(money=cost):
                    return self._fail(clicker_id, ErrorReason.INSUFFICIENT_FUNDS, "Insufficient funds", cost)

                new_level = level + 1
                if current is None:
                    clickers[clicker_id] = AutoClickerState(id=clicker_id, level=new_level)
                else:
                    current.level = new_level
                total_spent = state.automation.total_money_spent + cost
                self.store.update_automation(auto_clickers=clickers, total_money_spent=total_spent)
                self._enter_automation_phase(state)
                self.store.emit(
                    UpgradePurchased(
                        item_type="auto_clicker",
                        item_id=clicker_id,
                        cost=cost,
                        new_level=new_level,
                        total_spent=total_spent,
                    ),
                    source="automation_service",
                )
        except Exception as e:
            self._report("Failed to purchase auto-clicker", e, {"clicker_id": clicker_id})
            return PurchaseResult.failure(clicker_id, ErrorReason.INTERNAL_ERROR, "Purchase failed")

        _logger.info(f"Purchased {clicker_id} level {new_level} for {cost}")
        if self.achievements is not None:
            self.achievements.check_all()
        return PurchaseResult(success=True, item_id=clicker_id, cost=cost, new_level=new_level)

    def purchase_facility(self, facility_id: str) -> PurchaseResult:
        """Buy one facility. Same check order as auto-clickers."""
        config = FACILITIES.get(facility_id)
        if config is None:
            return self._fail(facility_id, ErrorReason.NOT_FOUND, "Facility not found")

        try:
            with self.store.transaction():
                state = self.store.get()
                facilities = state.automation.facilities
                current = facilities.get(facility_id)
                owned = current.owned if current else 0

                if owned >= config.max_owned:
                    return self._fail(facility_id, ErrorReason.MAX_LEVEL_REACHED, "Maximum facilities owned")
                if not config.unlock.is_met(state):
                    return self._fail(facility_id, ErrorReason.REQUIREMENTS_NOT_MET, config.unlock.describe())

                cost = config.cost_at(owned, self.config["facility_cost_growth"])
                if not self.store.subtract_resources(money=cost):
                    return self._fail(facility_id, ErrorReason.INSUFFICIENT_FUNDS, "Insufficient funds", cost)

                new_count = owned + 1
                if current is None:
                    facilities[facility_id] = FacilityState(id=facility_id, owned=new_count)
                else:
                    current.owned = new_count
                total_spent = state.automation.total_money_spent + cost
                self.store.update_automation(facilities=facilities, total_money_spent=total_spent)
                self._enter_automation_phase(state)
                self.store.emit(
                    UpgradePurchased(
                        item_type="facility",
                        item_id=facility_id,
                        cost=cost,
                        new_level=new_count,
                        total_spent=total_spent,
                    ),
                    source="automation_service",
                )
        except Exception as e:
            self._report("Failed to purchase facility", e, {"facility_id": facility_id})
            return PurchaseResult.failure(facility_id, ErrorReason.INTERNAL_ERROR, "Purchase failed")

        _logger.info(f"Purchased {facility_id} #{new_count} for {cost}")
        if self.achievements is not None:
            self.achievements.check_all()
        return PurchaseResult(success=True, item_id=facility_id, cost=cost, new_level=new_count)

    def _enter_automation_phase(self, state: GameState) -> None:
        progression = state.progression
        if progression.current_phase != "manual":
            return
        features = list(progression.unlocked_features)
        if "automation" not in features:
            features.append("automation")
        self.store.update_progression(current_phase="automation", unlocked_features=features)
        _logger.info("Entered the automation phase")

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def configure_auto_sell(self, settings: AutoSellSettings | dict[str, Any]) -> bool:
        """Replace the auto-sell settings after validating them."""
        if isinstance(settings, dict):
            try:
                settings = AutoSellSettings(**settings)
            except TypeError as e:
                self.store.error_handler.log_error(ValidationError(str(e), ErrorReason.INVALID_SETTINGS))
                return False

        problems = []
        if settings.threshold <= 0:
            problems.append("threshold must be positive")
        if settings.percentage <= 0 or settings.percentage > 100:
            problems.append("percentage must be in (0, 100]")
        if settings.min_price < 0:
            problems.append("min_price must not be negative")
        if settings.max_per_second <= 0:
            problems.append("max_per_second must be positive")
        if problems:
            self.store.error_handler.log_error(
                ValidationError("Invalid auto-sell settings: " + "; ".join(problems), ErrorReason.INVALID_SETTINGS)
            )
            return False

        self.store.update_automation(auto_sell_settings=AutoSellSettings(**asdict(settings)))
        _logger.info(f"Auto-sell {'enabled' if settings.enabled else 'disabled'}")
        return True

    def set_auto_clicker_active(self, clicker_id: str, active: bool) -> PurchaseResult:
        with self.store.transaction():
            automation = self.store.section("automation")
            clicker = automation.auto_clickers.get(clicker_id)
            if clicker is None or clicker.level == 0:
                return self._fail(clicker_id, ErrorReason.NOT_FOUND, "Auto-clicker not owned")
            clicker.is_active = bool(active)
            self.store.update_automation(auto_clickers=automation.auto_clickers)
        return PurchaseResult(success=True, item_id=clicker_id, new_level=clicker.level)

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def process_auto_clickers(self) -> None:
        try:
            tick_seconds = self.config["auto_click_ms"] / 1000
            state = self.store.get()
            for clicker in state.automation.auto_clickers.values():
                if not clicker.is_active or clicker.level <= 0:
                    continue
                config = AUTO_CLICKERS.get(clicker.id)
                if config is None or not config.unlock.is_met(state):
                    continue
                clicks = math.floor(config.base_clicks_per_second * tick_seconds * clicker.level * clicker.efficiency)
                if clicks <= 0:
                    continue
                self.production.produce(clicks, source="automation_service")
                with self.store.transaction():
                    automation = self.store.section("automation")
                    entry = automation.auto_clickers.get(clicker.id)
                    if entry is not None:
                        entry.total_clicks = bignum.add(entry.total_clicks, clicks)
                        self.store.update_automation(auto_clickers=automation.auto_clickers)
        except Exception as e:
            self._report("Auto-clicker processing failed", e)

    def process_auto_production(self) -> None:
        try:
            tick_seconds = self.config["auto_production_ms"] / 1000
            with self.store.transaction():
                automation = self.store.section("automation")
                rate = self._facility_rate(automation)
                produced = 0
                for facility in automation.facilities.values():
                    config = FACILITIES.get(facility.id)
                    if config is None or facility.owned <= 0:
                        continue
                    amount = math.floor(config.base_production * facility.owned * facility.efficiency * tick_seconds)
                    produced = bignum.add(produced, amount)

                production = self.store.section("production")
                if produced > 0:
                    self.store.add_resources(matchsticks=produced)
                    self.store.update_production(
                        total_produced=bignum.add(production.total_produced, produced),
                        automated_rate=rate,
                    )
                elif production.automated_rate != rate:
                    self.store.update_production(automated_rate=rate)
        except Exception as e:
            self._report("Auto production processing failed", e)
            return

        if produced > 0 and self.achievements is not None:
            self.achievements.check_all()

    def process_auto_sell(self) -> None:
        try:
            with self.store.transaction():
                settings = self.store.section("automation").auto_sell_settings
                if not settings.enabled:
                    return
                holdings = self.store.section("resources").matchsticks
                if holdings < settings.threshold:
                    return
                if self.store.section("market").current_price < settings.min_price:
                    return
                # percentage is kept to two decimals so the share stays integral
                amount = bignum.divide(bignum.multiply(holdings, round(settings.percentage * 100)), 10_000)
                amount = min(amount, settings.max_per_second)
            if amount > 0:
                self.market.sell_matchsticks(amount, is_auto_sale=True)
        except Exception as e:
            self._report("Auto-sell processing failed", e)

    def process_maintenance(self) -> None:
        try:
            tick_seconds = self.config["maintenance_ms"] / 1000
            with self.store.transaction():
                automation = self.store.section("automation")
                upkeep = self._upkeep_per_second(automation) * tick_seconds
                if upkeep <= 0:
                    return
                if self.store.subtract_resources(money=upkeep):
                    return

                floor = self.config["min_facility_efficiency"]
                penalty = self.config["efficiency_penalty"]
                for facility in automation.facilities.values():
                    if facility.owned > 0:
                        facility.efficiency = max(floor, round(facility.efficiency - penalty, 6))
                self.store.update_automation(facilities=automation.facilities)
                self.store.emit(
                    MaintenanceRequired(
                        message="Facility efficiency reduced due to unpaid maintenance",
                        upkeep_due=upkeep,
                        efficiency={f.id: f.efficiency for f in automation.facilities.values() if f.owned > 0},
                    ),
                    source="automation_service",
                )
            _logger.warning(f"Unpaid maintenance of {upkeep:.2f}; facility efficiency reduced")
        except Exception as e:
            self._report("Maintenance processing failed", e)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_automation_stats(self) -> dict[str, Any]:
        automation = self.store.section("automation")
        total_clickers = automation.total_auto_clickers()
        total_facilities = automation.total_facilities()
        production_rate = self._facility_rate(automation)
        click_rate = sum(
            AUTO_CLICKERS[c.id].base_clicks_per_second * c.level * c.efficiency
            for c in automation.auto_clickers.values()
            if c.id in AUTO_CLICKERS and c.is_active
        )
        maintenance = self._upkeep_per_second(automation)
        owned = [f for f in automation.facilities.values() if f.owned > 0]
        return {
            "total_auto_clickers": total_clickers,
            "total_facilities": total_facilities,
            "auto_production_rate": production_rate,
            "auto_click_rate": click_rate,
            "total_money_spent": automation.total_money_spent,
            "efficiency_rating": self._efficiency_rating(total_clickers, total_facilities),
            "maintenance_cost": maintenance,
            "net_production": max(0, production_rate - math.floor(maintenance * 0.5)),
            "average_facility_efficiency": sum(f.efficiency for f in owned) / len(owned) if owned else 1.0,
        }

    def get_available_auto_clickers(self) -> list[dict[str, Any]]:
        state = self.store.get()
        items = []
        for config in AUTO_CLICKERS.values():
            current = state.automation.auto_clickers.get(config.id)
            level = current.level if current else 0
            items.append({
                "id": config.id,
                "name": config.name,
                "description": config.description,
                "base_clicks_per_second": config.base_clicks_per_second,
                "max_level": config.max_level,
                "cost": config.cost_at(level),
                "current_level": level,
                "is_active": current.is_active if current else False,
                "is_unlocked": config.unlock.is_met(state),
                "is_maxed": level >= config.max_level,
                "requirement": config.unlock.describe(),
            })
        return items

    def get_available_facilities(self) -> list[dict[str, Any]]:
        state = self.store.get()
        growth = self.config["facility_cost_growth"]
        items = []
        for config in FACILITIES.values():
            current = state.automation.facilities.get(config.id)
            owned = current.owned if current else 0
            items.append({
                "id": config.id,
                "name": config.name,
                "description": config.description,
                "base_production": config.base_production,
                "maintenance_cost": config.maintenance_cost,
                "max_owned": config.max_owned,
                "cost": config.cost_at(owned, growth),
                "owned": owned,
                "efficiency": current.efficiency if current else 1.0,
                "is_unlocked": config.unlock.is_met(state),
                "is_maxed": owned >= config.max_owned,
                "requirement": config.unlock.describe(),
            })
        return items

    @staticmethod
    def _facility_rate(automation) -> int:
        rate = 0
        for facility in automation.facilities.values():
            config = FACILITIES.get(facility.id)
            if config is not None:
                rate += math.floor(config.base_production * facility.owned * facility.efficiency)
        return rate

    @staticmethod
    def _upkeep_per_second(automation) -> float:
        return sum(
            FACILITIES[f.id].maintenance_cost * f.owned
            for f in automation.facilities.values()
            if f.id in FACILITIES
        )

    @staticmethod
    def _efficiency_rating(auto_clickers: int, facilities: int) -> float:
        base = min(100, (auto_clickers + facilities) * 5)
        balance_bonus = 20 if abs(auto_clickers - facilities * 2) < 5 else 0
        return min(100, base + balance_bonus)

    def _fail(self, item_id: str, reason: ErrorReason, message: str, cost: int | None = None) -> PurchaseResult:
        self.store.error_handler.log_error(ValidationError(message, reason, details={"item_id": item_id}))
        return PurchaseResult.failure(item_id, reason, message, cost)

    def _report(self, message: str, error: Exception, details: dict[str, Any] | None = None) -> None:
        wrapped = MatchstickError(
            message,
            category=Category.GAME_LOGIC,
            severity=Severity.MEDIUM,
            details={"error": str(error), **(details or {})},
        )
        wrapped.__cause__ = error
        self.store.error_handler.handle_error(wrapped)
