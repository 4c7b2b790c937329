"""Object graph for one running game.

``Game`` builds every subsystem around a single clock, error handler and
state store, and owns the save/load/reset lifecycle and autosave.

Autosave snapshots are taken on the scheduler thread and written by a single
background worker.
"""

from __future__ import annotations

import logging
import random
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from matchstick.achievements import AchievementEvaluator
from matchstick.automation import AutomationScheduler
from matchstick.config import GAME_VERSION, build_config
from matchstick.errors import ErrorHandler
from matchstick.events import GameLoaded, GameReset, GameSaved, NewGameStarted
from matchstick.market import MarketEngine
from matchstick.persistence import PersistenceLayer
from matchstick.production import ProductionEngine
from matchstick.scheduler import ManualClock, SystemClock, TickScheduler
from matchstick.state_store import StateStore


_logger = logging.getLogger("matchstick.game")

AUTOSAVE_GROUP = "autosave"


class Game:
    def __init__(
        self,
        *,
        clock: SystemClock | ManualClock | None = None,
        config: dict[str, Any] | None = None,
        database_url: str | None = None,
        seed: int | None = None,
    ) -> None:
        self.config = build_config(config)
        self.clock = clock or SystemClock()
        self.error_handler = ErrorHandler(clock=self.clock.now_ms)
        self.store = StateStore(self.clock, self.error_handler, self.config)
        self.scheduler = TickScheduler(self.clock, self.error_handler)
        self.achievements = AchievementEvaluator(self.store)
        self.production = ProductionEngine(self.store, self.scheduler, self.achievements, self.config)
        self.market = MarketEngine(self.store, self.scheduler, self.achievements, self.config, rng=random.Random(seed))
        self.automation = AutomationScheduler(
            self.store, self.scheduler, self.production, self.market, self.achievements, self.config
        )
        self.persistence = PersistenceLayer(database_url, self.error_handler, self.clock, self.config)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="autosave")
        self.running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Initialize storage and arm the market, automation and autosave ticks."""
        self.persistence.initialize()
        self.market.start()
        self.automation.start()
        self.scheduler.cancel_group(AUTOSAVE_GROUP)
        if self.config["autosave_enabled"]:
            self.scheduler.every(self.config["autosave_interval_ms"], self.autosave, name="autosave", group=AUTOSAVE_GROUP)
        self.running = True
        _logger.info(f"Game started (version {GAME_VERSION}, player {self.store.section('metadata').player_id})")

    def shutdown(self) -> None:
        """Stop all ticks, wait for pending autosave writes, release the database."""
        self.running = False
        self.automation.stop()
        self.market.stop()
        self.scheduler.shutdown()
        self._executor.shutdown(wait=True)
        self.persistence.close()
        _logger.info("Game shut down")

    def run_for(self, ms: int) -> int:
        """Advance a ManualClock game by ``ms`` and run every job that falls due."""
        return self.scheduler.advance(ms)

    # ------------------------------------------------------------------
    # Save / load
    # ------------------------------------------------------------------

    def _snapshot(self) -> dict[str, Any]:
        now = self.clock.now_ms()
        with self.store.transaction():
            metadata = self.store.section("metadata")
            played = max(0, now - metadata.session_start_time)
            self.store.update_metadata(
                last_saved=now,
                total_play_time=metadata.total_play_time + played,
                session_start_time=now,
            )
            return self.store.to_dict()

    def save_game(self, name: str | None = None, is_auto_save: bool = False) -> str | None:
        return self._write_snapshot(self._snapshot(), name, is_auto_save)

    def _write_snapshot(self, snapshot: dict[str, Any], name: str | None, is_auto_save: bool) -> str | None:
        save_id = self.persistence.save(snapshot, name=name, is_auto_save=is_auto_save)
        if save_id is not None:
            self.store.emit(
                GameSaved(save_id=save_id, save_name=name or "", is_auto_save=is_auto_save),
                source="game_system",
            )
        return save_id

    def autosave(self) -> Future:
        """Snapshot now, write on the autosave worker."""
        snapshot = self._snapshot()
        return self._executor.submit(self._write_snapshot, snapshot, None, True)

    def load_game(self, save_id: str | None = None) -> bool:
        """Load a save (the newest one when ``save_id`` is None).

        On success the achievement flags are rebuilt from the loaded state
        and the combo starts over.
        """
        save_id = save_id or self.persistence.latest_save_id()
        if save_id is None:
            _logger.info("No saved game to load")
            return False
        data = self.persistence.load(save_id)
        if data is None:
            return False
        if not self.store.load(data):
            return False
        self.achievements.sync_with_game_state()
        self.production.reset_combo()
        self.store.emit(GameLoaded(save_id=save_id), source="game_system")
        _logger.info(f"Loaded game {save_id}")
        return True

    def reset_game(self) -> None:
        """Discard the current game and start a new one."""
        self.store.reset()
        self.achievements.reset_achievements()
        self.production.reset_stats()
        self.production.reset_combo()
        self.store.emit(GameReset(), source="game_system")
        self.store.emit(NewGameStarted(version=GAME_VERSION), source="game_system")
        _logger.info("Game reset")

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        state = self.store.get()
        return {
            "running": self.running,
            "version": state.metadata.version,
            "player_id": state.metadata.player_id,
            "now_ms": self.clock.now_ms(),
            "state_version": self.store.version,
            "phase": state.progression.current_phase,
            "matchsticks": state.resources.matchsticks,
            "money": state.resources.money,
            "current_price": state.market.current_price,
            "production_rate": self.store.total_production_rate(),
            "net_worth": self.store.net_worth(),
            "achievements_unlocked": len(state.achievements.unlocked),
        }
