"""Declarative achievement rules evaluated against the game state.

Each rule has a requirement (a threshold on lifetime production, a named
stat, or reaching a game phase) and a money reward. Unlocking is monotonic:
an id unlocks at most once and its reward is credited exactly once. The
persisted list in ``GameState.achievements.unlocked`` is the source of truth;
the in-memory flags are a cache that ``sync_with_game_state`` rebuilds after
a saved game is loaded.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable

from matchstick.errors import Category, MatchstickError, Severity
from matchstick.events import AchievementUnlocked
from matchstick.state_store import GameState


_logger = logging.getLogger("matchstick.achievements")

STAT_READERS: dict[str, Callable[[GameState], float]] = {
    "total_sold": lambda state: state.market.total_sold,
    "total_revenue": lambda state: state.market.total_revenue,
    "total_automation_spent": lambda state: state.automation.total_money_spent,
    "total_auto_clickers": lambda state: state.automation.total_auto_clickers(),
}

RESOURCE_READERS: dict[str, Callable[[GameState], int]] = {
    "matchsticks": lambda state: state.production.total_produced,
}


@dataclass(frozen=True)
class Requirement:
    type: str  # resource_total | stat_threshold | phase_reached
    resource: str | None = None
    amount: int = 0
    stat: str | None = None
    value: float = 0
    phase: str | None = None


@dataclass(frozen=True)
class Reward:
    type: str = "money"
    amount: float = 0.0


@dataclass
class Achievement:
    id: str
    name: str
    description: str
    category: str
    difficulty: str
    points: int
    requirement: Requirement
    reward: Reward = field(default_factory=Reward)
    unlocked: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_achievements() -> list[Achievement]:
    return [
        Achievement(
            id="first_match",
            name="First Light",
            description="Create your very first matchstick",
            category="production",
            difficulty="easy",
            points=5,
            requirement=Requirement(type="resource_total", resource="matchsticks", amount=1),
            reward=Reward(amount=10),
        ),
        Achievement(
            id="first_hundred",
            name="Century Maker",
            description="Produce 100 matchsticks",
            category="production",
            difficulty="easy",
            points=10,
            requirement=Requirement(type="resource_total", resource="matchsticks", amount=100),
            reward=Reward(amount=50),
        ),
        Achievement(
            id="thousand_matches",
            name="Master Craftsman",
            description="Produce 1,000 matchsticks",
            category="production",
            difficulty="medium",
            points=25,
            requirement=Requirement(type="resource_total", resource="matchsticks", amount=1000),
            reward=Reward(amount=200),
        ),
        Achievement(
            id="first_sale",
            name="First Sale",
            description="Make your first sale",
            category="trading",
            difficulty="easy",
            points=5,
            requirement=Requirement(type="stat_threshold", stat="total_sold", value=1),
            reward=Reward(amount=25),
        ),
        Achievement(
            id="merchant_apprentice",
            name="Merchant Apprentice",
            description="Earn $100 in total revenue",
            category="trading",
            difficulty="easy",
            points=10,
            requirement=Requirement(type="stat_threshold", stat="total_revenue", value=100),
            reward=Reward(amount=50),
        ),
        Achievement(
            id="bulk_trader",
            name="Bulk Trader",
            description="Sell 1,000 matchsticks in total",
            category="trading",
            difficulty="medium",
            points=20,
            requirement=Requirement(type="stat_threshold", stat="total_sold", value=1000),
            reward=Reward(amount=100),
        ),
        Achievement(
            id="automation_investor",
            name="Automation Investor",
            description="Spend $500 on automation",
            category="automation",
            difficulty="medium",
            points=15,
            requirement=Requirement(type="stat_threshold", stat="total_automation_spent", value=500),
            reward=Reward(amount=75),
        ),
        Achievement(
            id="clicker_collector",
            name="Clicker Collector",
            description="Own 10 auto-clickers",
            category="automation",
            difficulty="medium",
            points=20,
            requirement=Requirement(type="stat_threshold", stat="total_auto_clickers", value=10),
            reward=Reward(amount=100),
        ),
        Achievement(
            id="automation_phase",
            name="Industrial Revolution",
            description="Reach the automation phase",
            category="progression",
            difficulty="medium",
            points=30,
            requirement=Requirement(type="phase_reached", phase="automation"),
            reward=Reward(amount=150),
        ),
    ]


class AchievementEvaluator:
    def __init__(self, store) -> None:
        self.store = store
        self._achievements: dict[str, Achievement] = {a.id: a for a in default_achievements()}

    def check_all(self) -> list[Achievement]:
        """Unlock every rule whose requirement is now met.

        Returns only the achievements unlocked by this call.
        """
        newly_unlocked: list[Achievement] = []
        try:
            with self.store.transaction():
                state = self.store.get()
                persisted = set(state.achievements.unlocked)
                for achievement in self._achievements.values():
                    if achievement.unlocked:
                        continue
                    if achievement.id in persisted:
                        # Unlocked in a loaded game; no second reward
                        achievement.unlocked = True
                        continue
                    if self._is_met(achievement.requirement, state):
                        self._unlock(achievement)
                        newly_unlocked.append(replace(achievement))
        except Exception as e:
            self._report("Failed to check achievements", e)
        return newly_unlocked

    def unlock_by_id(self, achievement_id: str) -> Achievement | None:
        """Unlock regardless of the requirement. None if unknown or already unlocked."""
        try:
            with self.store.transaction():
                achievement = self._achievements.get(achievement_id)
                if achievement is None or achievement.unlocked:
                    return None
                if achievement_id in self.store.section("achievements").unlocked:
                    achievement.unlocked = True
                    return None
                self._unlock(achievement)
                return replace(achievement)
        except Exception as e:
            self._report("Failed to unlock achievement", e, {"achievement_id": achievement_id})
            return None

    def progress(self, achievement_id: str) -> float | None:
        """Completion ratio in [0, 1]; 1.0 once unlocked, None for unknown ids."""
        achievement = self._achievements.get(achievement_id)
        if achievement is None:
            return None
        if achievement.unlocked:
            return 1.0
        state = self.store.get()
        req = achievement.requirement
        current, target = self._measure(req, state)
        if target is None:
            return 1.0 if self._is_met(req, state) else 0.0
        if target <= 0:
            return 0.0
        return min(current / target, 1.0)

    def sync_with_game_state(self) -> None:
        """Rebuild unlock flags from the persisted list. Call after every load."""
        with self.store.transaction():
            persisted = set(self.store.section("achievements").unlocked)
            for achievement in self._achievements.values():
                achievement.unlocked = achievement.id in persisted
            self.store.update_achievements(stats=self._persisted_stats())
        _logger.info(f"Achievements synced: {len(persisted)} unlocked")

    def get_all(self) -> list[Achievement]:
        return [replace(a) for a in self._achievements.values()]

    def get_unlocked(self) -> list[Achievement]:
        return [replace(a) for a in self._achievements.values() if a.unlocked]

    def get_available(self) -> list[Achievement]:
        return [replace(a) for a in self._achievements.values() if not a.unlocked]

    def get(self, achievement_id: str) -> Achievement | None:
        achievement = self._achievements.get(achievement_id)
        return replace(achievement) if achievement else None

    def get_by_category(self, category: str) -> list[Achievement]:
        return [replace(a) for a in self._achievements.values() if a.category == category]

    def get_stats(self) -> dict[str, Any]:
        total = len(self._achievements)
        unlocked = [a for a in self._achievements.values() if a.unlocked]
        return {
            "total_achievements": total,
            "unlocked_achievements": len(unlocked),
            "completion_percentage": len(unlocked) / total * 100 if total else 0.0,
            "achievement_points": sum(a.points for a in unlocked),
        }

    def add_custom_achievement(self, config: dict[str, Any]) -> bool:
        achievement_id = config.get("id")
        name = config.get("name")
        if not achievement_id or not name or achievement_id in self._achievements:
            return False
        try:
            requirement = config.get("requirement") or {"type": "custom"}
            reward = config.get("reward") or {"type": "money", "amount": 10}
            self._achievements[achievement_id] = Achievement(
                id=achievement_id,
                name=name,
                description=config.get("description", ""),
                category=config.get("category", "custom"),
                difficulty=config.get("difficulty", "medium"),
                points=int(config.get("points", 10)),
                requirement=requirement if isinstance(requirement, Requirement) else Requirement(**requirement),
                reward=reward if isinstance(reward, Reward) else Reward(**reward),
            )
        except (TypeError, ValueError) as e:
            _logger.warning(f"Rejected custom achievement '{achievement_id}': {e}")
            return False
        return True

    def reset_achievements(self) -> None:
        """Lock everything again and clear the persisted unlock list."""
        for achievement in self._achievements.values():
            achievement.unlocked = False
        self.store.update_achievements(unlocked=[], stats=self._persisted_stats())

    def _unlock(self, achievement: Achievement) -> None:
        achievement.unlocked = True
        reward = achievement.reward
        if reward.type == "money" and reward.amount > 0:
            self.store.add_resources(money=reward.amount)

        # Read the list fresh so earlier unlocks in this pass are kept
        unlocked = list(self.store.section("achievements").unlocked)
        if achievement.id not in unlocked:
            unlocked.append(achievement.id)
        self.store.update_achievements(unlocked=unlocked, stats=self._persisted_stats())
        self.store.emit(
            AchievementUnlocked(
                achievement_id=achievement.id,
                name=achievement.name,
                points=achievement.points,
                reward_type=reward.type,
                reward_amount=reward.amount,
            ),
            source="achievement_service",
        )
        _logger.info(f"Achievement unlocked: {achievement.name} (+{achievement.points} points)")

    def _persisted_stats(self) -> dict[str, float]:
        stats = self.get_stats()
        return {
            "total_unlocked": stats["unlocked_achievements"],
            "achievement_points": stats["achievement_points"],
            "completion_percentage": stats["completion_percentage"],
        }

    @staticmethod
    def _measure(req: Requirement, state: GameState) -> tuple[float, float | None]:
        """(current, target) for threshold rules; target None for the rest."""
        if req.type == "resource_total" and req.resource in RESOURCE_READERS:
            return RESOURCE_READERS[req.resource](state), req.amount
        if req.type == "stat_threshold" and req.stat in STAT_READERS:
            return STAT_READERS[req.stat](state), req.value
        return 0, None

    def _is_met(self, req: Requirement, state: GameState) -> bool:
        if req.type == "phase_reached":
            return state.progression.current_phase == req.phase
        current, target = self._measure(req, state)
        if target is None:
            return False
        return current >= target

    def _report(self, message: str, error: Exception, details: dict[str, Any] | None = None) -> None:
        wrapped = MatchstickError(
            message,
            category=Category.GAME_LOGIC,
            severity=Severity.MEDIUM,
            details={"error": str(error), **(details or {})},
        )
        wrapped.__cause__ = error
        self.store.error_handler.handle_error(wrapped)
