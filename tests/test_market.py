import random
import threading

import pytest

from matchstick.errors import ErrorReason
from matchstick.events import EventType
from matchstick.market import MARKET_CONDITIONS, MarketEngine


def test_sell_ten_of_a_thousand(market, store):
    store.add_resources(matchsticks=1000)
    result = market.sell_matchsticks(10)
    assert result.success
    assert result.revenue == pytest.approx(10.0)
    assert result.price_per_unit == pytest.approx(1.0)
    assert result.remaining_matchsticks == 990
    resources = store.section("resources")
    assert resources.matchsticks == 990
    assert resources.money == pytest.approx(10.0)
    market_state = store.section("market")
    assert market_state.total_sold == 10
    assert market_state.total_revenue == pytest.approx(10.0)
    # Post-trade impact of 10 / 5000
    assert market_state.current_price == pytest.approx(0.998)


@pytest.mark.parametrize("amount", [0, -5, 2.5, "10", True])
def test_invalid_amount_is_rejected(market, store, amount):
    store.add_resources(matchsticks=100)
    result = market.sell_matchsticks(amount)
    assert not result.success
    assert result.error is ErrorReason.INVALID_AMOUNT
    assert store.section("resources").matchsticks == 100


def test_overselling_changes_nothing(market, store):
    store.add_resources(matchsticks=5)
    before = store.to_dict()
    result = market.sell_matchsticks(6)
    assert not result.success
    assert result.error is ErrorReason.INSUFFICIENT_RESOURCES
    assert result.remaining_matchsticks == 5
    assert store.to_dict() == before
    assert market.get_recent_trades() == []


def test_large_sales_get_a_volume_discount(market, store):
    store.add_resources(matchsticks=5000)
    result = market.sell_matchsticks(3000)
    assert result.price_per_unit == pytest.approx(0.8)
    assert result.revenue == pytest.approx(2400.0)


def test_trades_are_recorded_newest_first(market, store):
    store.add_resources(matchsticks=100)
    market.sell_matchsticks(10)
    market.sell_matchsticks(20, is_auto_sale=True)
    trades = market.get_recent_trades()
    assert [t.matchsticks_sold for t in trades] == [20, 10]
    assert trades[0].is_auto_sale
    assert trades[0].market_condition == "Normal"
    event = store.events()[0]
    assert event.type is EventType.TRADE_EXECUTED
    assert event.data.amount == 20


def test_price_walk_stays_above_the_floor(store, scheduler, config):
    engine = MarketEngine(store, scheduler, None, {**config, "base_volatility": 0.15, "target_pull": 0.0},
                          rng=random.Random(3))
    store.update_market(current_price=0.11)
    for _ in range(200):
        engine.update_price()
    market = store.section("market")
    assert market.current_price >= config["min_price"]
    assert len(market.price_history) == config["max_price_history"]


def test_price_pulls_toward_the_target(store, scheduler, config):
    engine = MarketEngine(store, scheduler, None, {**config, "base_volatility": 0.0}, rng=random.Random(0))
    store.update_market(current_price=2.0)
    engine.update_price()
    # 2.0 + 0.1 * (1.0 - 2.0)
    assert store.section("market").current_price == pytest.approx(1.9)
    event = store.events()[0]
    assert event.type is EventType.PRICE_CHANGE
    assert event.data.change == pytest.approx(-0.1)


def test_price_history_records_volume_since_last_tick(market, store):
    store.add_resources(matchsticks=100)
    market.sell_matchsticks(30)
    market.update_price()
    market.update_price()
    history = store.section("market").price_history
    assert [entry.volume for entry in history] == [30, 0]


def test_start_and_stop_manage_ticks(market, store, scheduler, config):
    market.start()
    assert len(scheduler.pending_jobs("market")) == 2
    scheduler.advance(config["price_update_ms"] * 3)
    assert len(store.section("market").price_history) == 3
    market.stop()
    assert scheduler.pending_jobs("market") == []


def test_trigger_and_clear_condition(market, store):
    assert market.trigger_market_condition("boom")
    condition = store.section("market").condition
    assert condition.condition_id == "boom"
    assert condition.price_multiplier == 1.4
    assert market.get_market_analysis()["condition"] == "Economic Boom"
    assert market.clear_market_condition()
    assert store.section("market").condition is None
    assert not market.clear_market_condition()
    assert not market.trigger_market_condition("alien_invasion")


def test_condition_expires_after_its_duration(market, store, clock):
    market.trigger_market_condition("festival")
    clock.advance(59_999)
    market.check_conditions()
    assert store.section("market").condition is not None
    clock.advance(1)
    market.check_conditions()
    assert store.section("market").condition is None
    event = store.events()[0]
    assert event.type is EventType.CONDITION_CHANGE
    assert event.data.cleared


def test_probabilistic_expiry(store, scheduler, config):
    engine = MarketEngine(
        store, scheduler, None,
        {**config, "condition_expiry_mode": "probabilistic", "condition_expiry_probability": 1.0},
        rng=random.Random(5),
    )
    engine.trigger_market_condition("recession")
    engine.check_conditions()
    assert store.section("market").condition is None


def test_condition_rolls_pick_at_most_one(store, scheduler, config):
    class AlwaysRoll(random.Random):
        def random(self):
            return 0.0

    engine = MarketEngine(store, scheduler, None, config, rng=AlwaysRoll())
    engine.check_conditions()
    assert store.section("market").condition.condition_id == MARKET_CONDITIONS[0].id
    engine.check_conditions()
    assert store.section("market").condition.condition_id == MARKET_CONDITIONS[0].id


def test_analysis_on_empty_history(market):
    analysis = market.get_market_analysis()
    assert analysis["trend"] == "stable"
    assert analysis["volatility"] == 0.0
    assert analysis["recommendation"] == "hold"
    assert analysis["condition"] == "Normal"


def test_analysis_detects_rising_trend(market, store, clock):
    history = [{"timestamp": clock.now_ms() + i, "price": 1.0 + i * 0.05} for i in range(25)]
    store.load({"market": {"price_history": history}})
    analysis = market.get_market_analysis()
    assert analysis["trend"] == "rising"
    assert analysis["support"] == pytest.approx(1.0)
    assert analysis["resistance"] == pytest.approx(2.2)
    assert analysis["volatility"] > 0


def test_analysis_is_cached(market, store, clock, config):
    first = market.get_market_analysis()
    store.update_market(current_price=5.0)
    assert market.get_market_analysis() == first
    clock.advance(config["analysis_cache_ms"])
    assert market.get_market_analysis()["current_price"] == 5.0


def test_analysis_callers_cannot_change_the_cache(market, store):
    market.update_price()
    analysis = market.get_market_analysis()
    analysis["trend"] = "tampered"
    analysis["price_history"][0]["price"] = -1.0
    analysis["price_history"].clear()
    again = market.get_market_analysis()
    assert again["trend"] == "stable"
    assert len(again["price_history"]) == 1
    assert again["price_history"][0]["price"] > 0


@pytest.mark.parametrize("reader", ["get_market_analysis", "get_recent_trades"])
def test_readers_wait_for_the_store_lock(market, store, reader):
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
    thread = threading.Thread(target=lambda: results.append(getattr(market, reader)()))
    thread.start()
    thread.join(0.2)
    assert thread.is_alive()
    release.set()
    thread.join(5)
    holder.join(5)
    assert len(results) == 1


def test_price_history_frame(market):
    market.update_price()
    market.update_price()
    frame = market.price_history_frame()
    assert list(frame.columns) == ["timestamp", "price", "volume", "condition", "time"]
    assert len(frame) == 2
    assert str(frame["time"].dt.tz) == "UTC"


def test_sale_checks_achievements(store, scheduler, config, achievements):
    engine = MarketEngine(store, scheduler, achievements, config, rng=random.Random(1))
    store.add_resources(matchsticks=10)
    engine.sell_matchsticks(1)
    assert "first_sale" in store.section("achievements").unlocked
    assert store.section("resources").money == pytest.approx(1.0 + 25.0)
