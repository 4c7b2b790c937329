import pytest

from matchstick.config import build_config
from matchstick.errors import ConfigValidationError
from matchstick.events import EventType
from matchstick.game import AUTOSAVE_GROUP, Game
from matchstick.scheduler import ManualClock


def test_invalid_config_is_rejected(database_url):
    with pytest.raises(ConfigValidationError):
        Game(clock=ManualClock(), config={"max_combo": 0}, database_url=database_url)


def test_start_arms_market_and_automation(game):
    assert game.running
    assert len(game.scheduler.pending_jobs("market")) == 2
    assert len(game.scheduler.pending_jobs("automation")) == 4
    assert game.scheduler.pending_jobs(AUTOSAVE_GROUP) == []


def test_save_then_load_restores_state(game):
    game.production.produce(5)
    game.store.add_resources(matchsticks=2 ** 60)
    expected = game.store.section("resources").matchsticks
    save_id = game.save_game(name="checkpoint")
    assert save_id is not None
    assert game.store.events()[0].type is EventType.GAME_SAVED

    game.market.sell_matchsticks(1000)
    assert game.load_game(save_id)
    assert game.store.section("resources").matchsticks == expected
    assert game.store.events()[0].type is EventType.GAME_LOADED
    assert game.production.get_combo_info()["count"] == 0


def test_load_newest_save_by_default(game):
    game.save_game(name="first")
    game.store.add_resources(money=42.0)
    newest = game.save_game(name="second")
    game.store.add_resources(money=1000.0)
    assert game.load_game()
    assert game.store.section("resources").money == pytest.approx(42.0)
    assert game.persistence.latest_save_id() == newest


def test_load_without_saves_fails(game):
    assert not game.load_game()
    assert not game.load_game("save_missing")


def test_loaded_achievements_are_not_rewarded_twice(game):
    game.production.produce()
    money = game.store.section("resources").money
    save_id = game.save_game()
    game.reset_game()
    assert game.load_game(save_id)
    assert game.achievements.get("first_match").unlocked
    game.production.produce()
    assert game.store.section("resources").money == pytest.approx(money)


def test_save_tracks_play_time(game):
    game.run_for(60_000)
    game.save_game()
    metadata = game.store.section("metadata")
    assert metadata.total_play_time == 60_000
    assert metadata.last_saved == game.clock.now_ms()


def test_reset_game(game):
    game.production.produce(3)
    game.reset_game()
    assert game.store.section("resources").matchsticks == 0
    assert game.achievements.get_unlocked() == []
    types = [event.type for event in game.store.events()]
    assert types[:2] == [EventType.NEW_GAME_STARTED, EventType.GAME_RESET]


def test_autosave_writes_on_the_worker(database_url):
    g = Game(
        clock=ManualClock(),
        config={"autosave_interval_ms": 10_000},
        database_url=database_url,
        seed=1,
    )
    g.start()
    try:
        future = g.autosave()
        save_id = future.result(timeout=10)
        assert save_id is not None
        assert g.persistence.list_saves()[0]["is_auto_save"]
        assert len(g.scheduler.pending_jobs(AUTOSAVE_GROUP)) == 1
    finally:
        g.shutdown()


def test_simulated_minute_runs_the_economy(database_url):
    config = build_config({"autosave_enabled": False})
    g = Game(clock=ManualClock(), config=config, database_url=database_url, seed=11)
    g.start()
    try:
        g.store.add_resources(money=50.0)
        assert g.automation.purchase_auto_clicker("basic_clicker").success
        g.run_for(60_000)
        state = g.store.get()
        assert state.production.total_produced >= 60
        assert len(state.market.price_history) == 12
        assert g.status()["phase"] == "automation"
    finally:
        g.shutdown()


def test_shutdown_clears_every_job(game):
    game.production.apply_temporary_multiplier(2.0, 60_000)
    game.shutdown()
    assert game.scheduler.pending_jobs() == []
    assert not game.running
