import pytest

from matchstick.events import EventType
from matchstick.state_store import AutoClickerState, GameState, MarketCondition, PriceHistoryEntry, StateStore


def test_new_state_defaults(store, clock):
    state = store.get()
    assert state.resources.matchsticks == 0
    assert state.resources.money == 0.0
    assert state.production.manual_rate == 1.0
    assert state.market.current_price == 1.0
    assert state.progression.current_phase == "manual"
    assert state.metadata.created_at == clock.now_ms()


def test_reads_are_copies(store):
    state = store.get()
    state.resources.matchsticks = 999
    assert store.get().resources.matchsticks == 0
    section = store.section("production")
    section.multipliers["x"] = 5.0
    assert store.section("production").multipliers == {}


def test_unknown_section_is_none(store):
    assert store.section("nope") is None


def test_add_resources_skips_bad_components(store):
    store.add_resources(matchsticks=10, money=-5, wood="lots", bogus=3)
    resources = store.section("resources")
    assert resources.matchsticks == 10
    assert resources.money == 0.0
    assert resources.wood == 0.0


def test_subtract_resources_is_all_or_nothing(store):
    store.add_resources(matchsticks=10, money=5.0)
    assert not store.subtract_resources(matchsticks=5, money=10.0)
    resources = store.section("resources")
    assert (resources.matchsticks, resources.money) == (10, 5.0)
    assert store.subtract_resources(matchsticks=5, money=5.0)
    resources = store.section("resources")
    assert (resources.matchsticks, resources.money) == (5, 0.0)


def test_subtract_rejects_malformed_input(store):
    store.add_resources(matchsticks=10)
    assert not store.subtract_resources(matchsticks="ten")
    assert not store.subtract_resources(matchsticks=-1)
    assert store.section("resources").matchsticks == 10


def test_exchange_is_atomic(store):
    store.add_resources(matchsticks=100)
    assert store.exchange({"matchsticks": 40}, {"money": 40.0})
    assert not store.exchange({"matchsticks": 400}, {"money": 400.0})
    resources = store.section("resources")
    assert resources.matchsticks == 60
    assert resources.money == 40.0


def test_ledger_handles_counts_beyond_float_precision(store):
    big = 2 ** 80 + 1
    store.add_resources(matchsticks=big)
    store.add_resources(matchsticks=1)
    assert store.section("resources").matchsticks == 2 ** 80 + 2


def test_update_keeps_field_types(store):
    store.update_production(manual_rate=2, total_produced="12", bogus=1)
    production = store.section("production")
    assert production.manual_rate == 2.0
    assert isinstance(production.manual_rate, float)
    assert production.total_produced == 12
    store.update_production(manual_rate=float("nan"), total_produced=-4)
    production = store.section("production")
    assert production.manual_rate == 2.0
    assert production.total_produced == 12


def test_update_production_stamps_last_update(store, clock):
    clock.advance(5000)
    store.update_production(manual_rate=3.0)
    assert store.section("production").last_update == clock.now_ms()


def test_update_converts_a_condition_dict(store):
    store.update_market(condition={"condition_id": "boom", "price_multiplier": 1.4, "duration": 1000})
    condition = store.section("market").condition
    assert isinstance(condition, MarketCondition)
    assert condition.condition_id == "boom"
    assert store.to_dict()["market"]["condition"]["price_multiplier"] == 1.4
    store.update_market(condition=None)
    assert store.section("market").condition is None


@pytest.mark.parametrize(
    "section, fields",
    [
        ("production", {"multipliers": "fast"}),
        ("production", {"multipliers": {"boost": "x2"}}),
        ("production", {"multipliers": {"boost": float("inf")}}),
        ("market", {"condition": "boom"}),
        ("market", {"price_history": [1.0, 2.0]}),
        ("automation", {"auto_clickers": ["basic_clicker"]}),
        ("automation", {"facilities": {"basic_factory": 3}}),
        ("automation", {"auto_sell_settings": True}),
        ("achievements", {"unlocked": ["first_match", 7]}),
        ("progression", {"milestones": "all"}),
        ("progression", {"current_phase": 3}),
    ],
)
def test_update_rejects_malformed_containers(store, section, fields):
    before = store.to_dict()
    getattr(store, f"update_{section}")(**fields)
    after = store.to_dict()
    after["production"]["last_update"] = before["production"]["last_update"]
    assert after == before


def test_produce_survives_rejected_multipliers(store, production):
    store.update_production(multipliers="fast")
    result = production.produce(3)
    assert result.produced >= 3
    assert store.section("resources").matchsticks == result.produced


def test_update_converts_nested_record_dicts(store):
    store.update_automation(
        auto_clickers={"basic_clicker": {"level": 2}},
        auto_sell_settings={"enabled": True, "threshold": 10},
    )
    automation = store.section("automation")
    assert isinstance(automation.auto_clickers["basic_clicker"], AutoClickerState)
    assert automation.auto_clickers["basic_clicker"].id == "basic_clicker"
    assert automation.auto_sell_settings.threshold == 10
    store.update_market(price_history=[{"timestamp": 5, "price": 1.2}])
    assert store.section("market").price_history == [PriceHistoryEntry(timestamp=5, price=1.2)]


def test_subscribers_and_unsubscribe(store):
    seen = []
    unsubscribe = store.subscribe(seen.append)
    store.add_resources(money=1.0)
    store.update_market(current_price=2.0)
    unsubscribe()
    store.add_resources(money=1.0)
    assert seen == ["resources", "market"]


def test_derived_values_are_memoized_per_version(store):
    store.update_production(manual_rate=2.0, automated_rate=3.0, multipliers={"a": 2.0, "b": -1.0})
    assert store.total_production_rate() == 10.0
    version = store.version
    assert store.total_production_rate() == 10.0
    assert store.version == version
    store.update_production(automated_rate=8.0)
    assert store.total_production_rate() == 20.0


def test_net_worth(store):
    store.add_resources(matchsticks=100, money=50.0, wood=1.0, reputation=2.0)
    store.update_market(current_price=0.5)
    assert store.net_worth() == 50.0 + 50.0 + 10.0 + 10.0


def test_event_log_is_newest_first_and_bounded(clock, error_handler, config):
    store = StateStore(clock, error_handler, {**config, "event_log_capacity": 3})
    for _ in range(5):
        store.load({"resources": {"money": 1.0}})
    events = store.events()
    assert len(events) == 3
    assert all(event.type is EventType.STATE_LOADED for event in events)
    assert store.events(limit=1) == events[:1]


def test_partial_load_merges_and_ignores_other_sections(store):
    store.add_resources(matchsticks=5, money=2.0)
    assert store.load({"resources": {"money": 7.5}, "metadata": {"player_id": "hijack"}})
    state = store.get()
    assert state.resources.matchsticks == 5
    assert state.resources.money == 7.5
    assert state.metadata.player_id != "hijack"
    event = store.events()[0]
    assert event.type is EventType.STATE_LOADED
    assert event.data.full_state is False


def test_full_load_sanitizes(store, clock):
    data = GameState.new(0).to_dict()
    data["resources"]["matchsticks"] = -50
    data["resources"]["money"] = float("inf")
    data["market"]["current_price"] = 0.0001
    data["market"]["price_history"] = [{"timestamp": i, "price": 1.0} for i in range(250)]
    data["achievements"]["unlocked"] = ["first_match", "first_match", 7]
    clock.advance(1000)
    assert store.load(data)
    state = store.get()
    assert state.resources.matchsticks == 0
    assert state.resources.money == 0.0
    assert state.market.current_price == 0.1
    assert len(state.market.price_history) == 100
    assert state.market.price_history[0].timestamp == 150
    assert state.achievements.unlocked == ["first_match"]
    assert state.metadata.session_start_time == clock.now_ms()
    assert store.events()[0].data.full_state is True


def test_full_load_accepts_tagged_bigints(store):
    data = GameState.new(0).to_dict()
    data["resources"]["matchsticks"] = {"__type": "bigint", "value": "9007199254740993"}
    assert store.load(data)
    assert store.section("resources").matchsticks == 9007199254740993


def test_load_of_non_dict_fails_without_changing_state(store):
    store.add_resources(money=3.0)
    assert not store.load(["not", "a", "state"])
    assert store.section("resources").money == 3.0
    assert store.events()[0].data.success is False


def test_reset(store):
    store.add_resources(matchsticks=10)
    store.load({"resources": {"money": 1.0}})
    store.reset()
    assert store.section("resources").matchsticks == 0
    assert store.events() == []


def test_round_trip_through_dict():
    state = GameState.new(42)
    state.resources.matchsticks = 2 ** 60
    state.production.multipliers = {"boost": 1.5}
    assert GameState.from_dict(state.to_dict()) == state
