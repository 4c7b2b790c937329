"""Matchstick market: price random walk, market conditions, trades and analysis.

Key Classes:
    ConditionConfig: One entry of the fixed market condition catalog
    MarketEngine: Price and condition ticks, trade execution and analytics

The price moves every ``price_update_ms`` by a random step proportional to
the current price plus a pull toward the target price (base price times the
active condition's multiplier). Conditions are rolled every
``condition_check_ms``; at most one is active at a time.
"""

from __future__ import annotations

import logging
import random
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any

import pandas as pd

from matchstick import bignum
from matchstick.config import DEFAULT_CONFIG
from matchstick.errors import Category, ErrorReason, MatchstickError, Severity, ValidationError
from matchstick.events import ConditionChange, PriceChange, TradeExecuted
from matchstick.results import SaleResult, TradeTransaction
from matchstick.state_store import MarketCondition, PriceHistoryEntry


_logger = logging.getLogger("matchstick.market")

NORMAL_LABEL = "Normal"


@dataclass(frozen=True)
class ConditionConfig:
    id: str
    name: str
    description: str
    price_multiplier: float
    demand_level: str  # low | normal | high | peak
    duration_ms: int
    probability: float  # chance per condition check


# Checked in this order; the first successful roll wins
MARKET_CONDITIONS: tuple[ConditionConfig, ...] = (
    ConditionConfig(
        id="recession",
        name="Economic Recession",
        description="Demand for luxury items like matchsticks decreases",
        price_multiplier=0.7,
        demand_level="low",
        duration_ms=120_000,
        probability=0.05,
    ),
    ConditionConfig(
        id="boom",
        name="Economic Boom",
        description="High demand for all goods including matchsticks",
        price_multiplier=1.4,
        demand_level="high",
        duration_ms=90_000,
        probability=0.08,
    ),
    ConditionConfig(
        id="winter_season",
        name="Winter Season",
        description="Cold weather increases demand for fire-making tools",
        price_multiplier=1.2,
        demand_level="high",
        duration_ms=180_000,
        probability=0.12,
    ),
    ConditionConfig(
        id="fire_ban",
        name="Fire Safety Restrictions",
        description="Government restrictions reduce matchstick demand",
        price_multiplier=0.6,
        demand_level="low",
        duration_ms=150_000,
        probability=0.03,
    ),
    ConditionConfig(
        id="festival",
        name="Festival Season",
        description="Celebrations and events drive up matchstick demand",
        price_multiplier=1.3,
        demand_level="peak",
        duration_ms=60_000,
        probability=0.10,
    ),
)

_CONDITIONS_BY_ID = {condition.id: condition for condition in MARKET_CONDITIONS}


class MarketEngine:
    def __init__(
        self,
        store,
        scheduler,
        achievements=None,
        config: dict[str, Any] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.achievements = achievements
        self.clock = store.clock
        self.config = config or DEFAULT_CONFIG
        self.rng = rng or random.Random()
        self._recent_trades: deque[TradeTransaction] = deque(maxlen=self.config["max_trade_history"])
        self._volume_since_tick = 0
        self._analysis_cache: dict[str, Any] | None = None
        self._analysis_time = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.stop()
        self.scheduler.every(self.config["price_update_ms"], self.update_price, name="market_price", group="market")
        self.scheduler.every(
            self.config["condition_check_ms"], self.check_conditions, name="market_conditions", group="market"
        )
        _logger.info("Market simulation started")

    def stop(self) -> None:
        if self.scheduler.cancel_group("market"):
            _logger.info("Market simulation stopped")

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def update_price(self) -> None:
        """One step of the price random walk."""
        try:
            with self.store.transaction():
                market = self.store.section("market")
                condition = market.condition
                multiplier = condition.price_multiplier if condition else 1.0

                volatility = self.config["base_volatility"]
                if condition:
                    volatility = min(self.config["max_volatility"], volatility * (1 + abs(multiplier - 1)))

                current = market.current_price
                target = market.base_price * multiplier
                step = current * volatility * self.rng.uniform(-1, 1) + self.config["target_pull"] * (target - current)
                new_price = max(self.config["min_price"], current + step)

                history = market.price_history
                history.append(
                    PriceHistoryEntry(
                        timestamp=self.clock.now_ms(),
                        price=new_price,
                        volume=self._volume_since_tick,
                        condition=self._condition_label(condition),
                    )
                )
                self._volume_since_tick = 0
                max_history = self.config["max_price_history"]
                if len(history) > max_history:
                    history = history[-max_history:]

                self.store.update_market(current_price=new_price, price_history=history)
                self.store.emit(
                    PriceChange(
                        previous_price=current,
                        new_price=new_price,
                        change=new_price - current,
                        change_percent=(new_price - current) / current * 100,
                    ),
                    source="market_service",
                )
        except Exception as e:
            self._report("Failed to update market price", e)

    def check_conditions(self) -> None:
        """Expire the active condition, or roll for a new one when none is active."""
        try:
            market = self.store.section("market")
            if market.condition is not None:
                if self._condition_expired(market.condition):
                    self.clear_market_condition()
                return
            for condition in MARKET_CONDITIONS:
                if self.rng.random() < condition.probability:
                    self._apply_condition(condition)
                    break
        except Exception as e:
            self._report("Failed to check market conditions", e)

    def _condition_expired(self, condition: MarketCondition) -> bool:
        if self.config["condition_expiry_mode"] == "probabilistic":
            return self.rng.random() < self.config["condition_expiry_probability"]
        return self.clock.now_ms() - condition.started_at >= condition.duration

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def sell_matchsticks(self, amount: int, is_auto_sale: bool = False) -> SaleResult:
        """Sell ``amount`` matchsticks at the current price.

        All or nothing: on failure neither the ledger nor the market changes.
        """
        try:
            with self.store.transaction():
                resources = self.store.section("resources")
                market = self.store.section("market")

                if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
                    return self._rejected(ErrorReason.INVALID_AMOUNT, "Amount must be greater than 0", resources, market)
                if amount > resources.matchsticks:
                    return self._rejected(
                        ErrorReason.INSUFFICIENT_RESOURCES, "Insufficient matchsticks", resources, market
                    )

                price_per_unit = market.current_price * self._market_impact(amount)
                revenue = amount * price_per_unit
                if not self.store.exchange(subtract={"matchsticks": amount}, add={"money": revenue}):
                    return self._rejected(ErrorReason.INTERNAL_ERROR, "Trade could not be settled", resources, market)

                total_sold = bignum.add(market.total_sold, amount)
                post_trade_impact = min(self.config["post_trade_impact_max"], amount / 5000)
                self.store.update_market(
                    total_sold=total_sold,
                    total_revenue=market.total_revenue + revenue,
                    current_price=max(self.config["min_price"], price_per_unit * (1 - post_trade_impact)),
                )
                self._volume_since_tick = bignum.add(self._volume_since_tick, amount)

                after = self.store.section("resources")
                market_share = self._market_share(total_sold)
                transaction = TradeTransaction(
                    id=f"trade_{uuid.uuid4().hex[:12]}",
                    timestamp=self.clock.now_ms(),
                    matchsticks_sold=amount,
                    price_per_unit=price_per_unit,
                    total_revenue=revenue,
                    market_condition=self._condition_label(market.condition),
                    player_cash=after.money,
                    market_share=market_share,
                    is_auto_sale=is_auto_sale,
                )
                self._recent_trades.appendleft(transaction)
                self.store.emit(
                    TradeExecuted(
                        amount=amount,
                        revenue=revenue,
                        price_per_unit=price_per_unit,
                        market_share=market_share,
                        is_auto_sale=is_auto_sale,
                    ),
                    source="market_service",
                )
        except Exception as e:
            self._report("Failed to sell matchsticks", e, {"amount": str(amount)})
            resources = self.store.section("resources")
            return SaleResult(
                success=False,
                revenue=0.0,
                price_per_unit=self.get_current_price(),
                remaining_matchsticks=resources.matchsticks,
                error=ErrorReason.INTERNAL_ERROR,
                message=str(e),
            )

        if self.achievements is not None:
            self.achievements.check_all()
        return SaleResult(
            success=True,
            revenue=revenue,
            price_per_unit=price_per_unit,
            remaining_matchsticks=after.matchsticks,
            market_share=market_share,
            transaction=transaction,
        )

    def _rejected(self, reason: ErrorReason, message: str, resources, market) -> SaleResult:
        self.store.error_handler.log_error(ValidationError(message, reason))
        return SaleResult(
            success=False,
            revenue=0.0,
            price_per_unit=market.current_price,
            remaining_matchsticks=resources.matchsticks,
            error=reason,
            message=message,
        )

    def _market_impact(self, amount: int) -> float:
        threshold = self.config["market_impact_threshold"]
        if amount <= threshold:
            return 1.0
        return 1 - min(self.config["market_impact_max"], (amount - threshold) / 10_000)

    def _market_share(self, total_sold: int) -> float:
        return min(100.0, total_sold / self.config["total_market_size"] * 100)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_current_price(self) -> float:
        market = self.store.section("market")
        return market.current_price if market else self.config["base_price"]

    def get_recent_trades(self, limit: int = 10) -> list[TradeTransaction]:
        with self.store.transaction():
            return list(self._recent_trades)[:limit]

    def get_available_conditions(self) -> list[ConditionConfig]:
        return list(MARKET_CONDITIONS)

    def price_history_frame(self) -> pd.DataFrame:
        """Price history as a DataFrame, oldest first."""
        history = self.store.section("market").price_history
        frame = pd.DataFrame(
            [entry.to_dict() for entry in history],
            columns=["timestamp", "price", "volume", "condition"],
        )
        frame["time"] = pd.to_datetime(frame["timestamp"], unit="ms", utc=True)
        return frame

    def get_market_analysis(self) -> dict[str, Any]:
        """Trend, volatility, support/resistance and a trading recommendation.

        Results are cached for ``analysis_cache_ms``; callers get a copy.
        """
        with self.store.transaction():
            analysis = self._cached_analysis(self.clock.now_ms())
            return {**analysis, "price_history": [dict(entry) for entry in analysis["price_history"]]}

    def _cached_analysis(self, now: int) -> dict[str, Any]:
        if self._analysis_cache is not None and now - self._analysis_time < self.config["analysis_cache_ms"]:
            return self._analysis_cache

        try:
            market = self.store.section("market")
            prices = self.price_history_frame()["price"].astype(float)

            trend = "stable"
            if len(prices) >= 5:
                recent = prices.iloc[-5:]
                change = (recent.iloc[-1] - recent.iloc[0]) / recent.iloc[0]
                if change > 0.02:
                    trend = "rising"
                elif change < -0.02:
                    trend = "falling"

            volatility = 0.0
            if len(prices) >= 10:
                recent = prices.iloc[-20:]
                volatility = float(recent.std(ddof=0) / recent.mean())

            support = resistance = 0.0
            if len(prices) >= 20:
                recent = prices.iloc[-50:]
                support, resistance = float(recent.min()), float(recent.max())

            trades = list(self._recent_trades)
            average_volume = sum(t.matchsticks_sold for t in trades) // len(trades) if trades else 0

            analysis = {
                "current_price": market.current_price,
                "price_history": [entry.to_dict() for entry in market.price_history],
                "trend": trend,
                "volatility": volatility,
                "support": support,
                "resistance": resistance,
                "market_cap": market.current_price * float(market.total_sold),
                "average_volume": average_volume,
                "recommendation": self._recommend(market.current_price, trend, volatility, support, resistance),
                "condition": self._condition_label(market.condition),
            }
        except Exception as e:
            self._report("Failed to generate market analysis", e)
            return {
                "current_price": self.get_current_price(),
                "price_history": [],
                "trend": "stable",
                "volatility": 0.0,
                "support": 0.0,
                "resistance": 0.0,
                "market_cap": 0.0,
                "average_volume": 0,
                "recommendation": "hold",
                "condition": NORMAL_LABEL,
            }

        self._analysis_cache = analysis
        self._analysis_time = now
        return analysis

    @staticmethod
    def _recommend(price: float, trend: str, volatility: float, support: float, resistance: float) -> str:
        if trend == "rising" and price < resistance * 0.9:
            return "buy"
        if trend == "falling" and price > support * 1.1:
            return "sell"
        return "hold"

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    def trigger_market_condition(self, condition_id: str) -> bool:
        """Force a catalog condition, replacing any active one."""
        condition = _CONDITIONS_BY_ID.get(condition_id)
        if condition is None:
            _logger.warning(f"Unknown market condition '{condition_id}'")
            return False
        try:
            self._apply_condition(condition)
            return True
        except Exception as e:
            self._report("Failed to trigger market condition", e, {"condition_id": condition_id})
            return False

    def clear_market_condition(self) -> bool:
        market = self.store.section("market")
        if market.condition is None:
            return False
        self.store.update_market(condition=None)
        self.store.emit(ConditionChange(condition_id=market.condition.condition_id, cleared=True), source="market_service")
        _logger.info(f"Market condition '{market.condition.condition_id}' ended")
        return True

    def _apply_condition(self, config: ConditionConfig) -> None:
        condition = MarketCondition(
            condition_id=config.id,
            price_multiplier=config.price_multiplier,
            demand_level=config.demand_level,
            trend="rising" if config.price_multiplier > 1 else "falling",
            duration=config.duration_ms,
            description=config.description,
            started_at=self.clock.now_ms(),
        )
        self.store.update_market(condition=condition)
        self.store.emit(
            ConditionChange(
                condition_id=config.id,
                name=config.name,
                description=config.description,
                price_multiplier=config.price_multiplier,
                duration_ms=config.duration_ms,
            ),
            source="market_service",
        )
        _logger.info(f"Market condition '{config.id}' started ({config.price_multiplier}x)")

    @staticmethod
    def _condition_label(condition: MarketCondition | None) -> str:
        if condition is None:
            return NORMAL_LABEL
        config = _CONDITIONS_BY_ID.get(condition.condition_id)
        return config.name if config else condition.condition_id

    def _report(self, message: str, error: Exception, details: dict[str, Any] | None = None) -> None:
        wrapped = MatchstickError(
            message,
            category=Category.GAME_LOGIC,
            severity=Severity.MEDIUM,
            details={"error": str(error), **(details or {})},
        )
        wrapped.__cause__ = error
        self.store.error_handler.handle_error(wrapped)
