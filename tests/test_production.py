import threading

import pytest

from matchstick.events import EventType
from matchstick.production import ProductionEngine


def test_single_click_produces_at_least_one(production, store):
    result = production.produce()
    assert result.produced == 1
    assert store.section("resources").matchsticks == 1
    assert store.section("production").total_produced == 1


def test_produce_never_yields_less_than_click_count(production, store):
    store.update_production(manual_rate=0.01)
    result = production.produce(7)
    assert result.produced == 7


def test_combo_builds_within_the_decay_window(production, store, clock):
    store.update_production(manual_rate=10.0)
    multipliers, produced = [], []
    for _ in range(3):
        result = production.produce()
        multipliers.append(result.combo_multiplier)
        produced.append(result.produced)
        clock.advance(500)
    assert multipliers == pytest.approx([1.0, 1.01, 1.02])
    assert produced == [10, 10, 10]
    assert store.section("resources").matchsticks == 30


def test_combo_resets_after_the_decay_window(production, clock):
    production.produce()
    clock.advance(500)
    assert production.produce().combo_count == 2
    clock.advance(2001)
    result = production.produce()
    assert result.combo_count == 1
    assert result.combo_multiplier == 1.0


def test_combo_is_capped(store, scheduler, config, clock):
    engine = ProductionEngine(store, scheduler, None, {**config, "max_combo": 3})
    for _ in range(5):
        result = engine.produce()
        clock.advance(10)
    assert result.combo_count == 3
    assert result.combo_multiplier == pytest.approx(1.02)


@pytest.mark.parametrize("bad", [0, -3, 1.5, "2", True, None])
def test_invalid_click_count_produces_nothing(production, store, bad):
    result = production.produce(bad)
    assert result.produced == 0
    assert store.section("resources").matchsticks == 0


def test_produce_emits_manual_production_event(production, store):
    production.produce(2)
    event = store.events()[0]
    assert event.type is EventType.MANUAL_PRODUCTION
    assert event.data.produced == 2
    assert event.data.click_count == 2
    assert event.source == "production_service"


def test_permanent_multiplier_scales_production(production, store):
    assert production.apply_permanent_multiplier("upgrade", 3.0)
    assert production.produce(2).produced == 6
    assert store.total_production_rate() == 3.0


@pytest.mark.parametrize("bad", [0, -1, float("nan"), float("inf"), "2", True])
def test_invalid_multipliers_are_rejected(production, store, bad):
    assert not production.apply_permanent_multiplier("bad", bad)
    assert production.apply_temporary_multiplier(bad, 1000) is None
    assert store.section("production").multipliers == {}


def test_temporary_multiplier_expires_on_schedule(production, store, scheduler):
    key = production.apply_temporary_multiplier(2.0, 5000)
    assert key is not None
    assert store.section("production").multipliers == {key: 2.0}
    scheduler.advance(4999)
    assert key in store.section("production").multipliers
    scheduler.advance(1)
    assert store.section("production").multipliers == {}
    assert store.events()[0].type is EventType.MULTIPLIER_REMOVED


def test_remove_unknown_multiplier(production):
    assert not production.remove_multiplier("missing")


def test_combo_info_and_rate(production, clock):
    production.produce()
    clock.advance(500)
    production.produce()
    info = production.get_combo_info()
    assert info["count"] == 2
    assert info["time_remaining_ms"] == 2000
    assert info["max_combo"] == 50
    assert production.get_current_production_rate() == pytest.approx(1.01)


def test_production_stats_track_clicks(production, clock):
    production.produce(3)
    clock.advance(1000)
    production.produce(2)
    stats = production.get_production_stats()
    assert stats["total_clicks"] == 5
    assert stats["session_clicks"] == 5
    assert stats["total_produced"] >= 5
    assert stats["max_combo"] == 2
    assert stats["average_click_rate"] == pytest.approx(5.0)


def test_reset_stats_keeps_lifetime_counters(production, clock):
    production.produce(4)
    production.reset_stats()
    stats = production.get_production_stats()
    assert stats["total_clicks"] == 4
    assert stats["session_clicks"] == 0
    assert production.get_combo_info()["count"] == 0


def test_production_checks_achievements(store, scheduler, config, achievements):
    engine = ProductionEngine(store, scheduler, achievements, config)
    engine.produce()
    assert "first_match" in store.section("achievements").unlocked
    assert store.section("resources").money == 10.0


@pytest.mark.parametrize(
    "reader", ["get_production_stats", "get_combo_info", "get_current_production_rate"]
)
def test_readers_wait_for_the_store_lock(production, store, reader):
    held = threading.Event()
    release = threading.Event()

    def hold_lock():
        with store.transaction():
            held.set()
            release.wait(5)

    holder = threading.Thread(target=hold_lock)
    holder.start()
    assert held.wait(5)
    results = []
    thread = threading.Thread(target=lambda: results.append(getattr(production, reader)()))
    thread.start()
    thread.join(0.2)
    assert thread.is_alive()
    release.set()
    thread.join(5)
    holder.join(5)
    assert len(results) == 1
