import pytest
from fastapi.testclient import TestClient

from matchstick.api import create_app


@pytest.fixture
def client(game):
    return TestClient(create_app(game))


def test_status(client, game):
    game.production.produce(3)
    body = client.get("/status").json()
    assert body["running"] is True
    assert body["matchsticks"] == 3
    assert body["phase"] == "manual"


def test_full_state_and_sections(client, game):
    game.store.add_resources(matchsticks=2 ** 60)
    state = client.get("/state").json()
    assert set(state) == {"resources", "production", "market", "automation", "achievements", "progression", "metadata"}
    resources = client.get("/state/resources").json()
    assert resources["matchsticks"] == 2 ** 60


def test_unknown_section_is_404(client):
    assert client.get("/state/secrets").status_code == 404


def test_events_newest_first(client, game):
    game.production.produce()
    game.store.add_resources(matchsticks=10)
    game.market.sell_matchsticks(5)
    events = client.get("/events", params={"limit": 2}).json()
    assert len(events) == 2
    assert events[0]["type"] == "achievement_unlocked"
    assert events[1]["type"] == "trade_executed"


def test_market_endpoints(client, game):
    game.store.add_resources(matchsticks=10)
    game.market.sell_matchsticks(4)
    analysis = client.get("/market/analysis").json()
    assert analysis["recommendation"] in ("buy", "sell", "hold")
    trades = client.get("/market/trades").json()
    assert trades[0]["matchsticks_sold"] == 4


def test_automation_endpoint(client):
    body = client.get("/automation").json()
    assert body["stats"]["total_auto_clickers"] == 0
    assert {item["id"] for item in body["auto_clickers"]} >= {"basic_clicker"}
    assert len(body["facilities"]) == 3


def test_achievements_endpoint(client, game):
    game.production.produce()
    body = client.get("/achievements").json()
    assert body["stats"]["unlocked_achievements"] == 1
    by_id = {a["id"]: a for a in body["achievements"]}
    assert by_id["first_match"]["progress"] == 1.0
    assert by_id["first_hundred"]["progress"] == pytest.approx(0.01)


def test_production_stats_endpoint(client, game):
    game.production.produce(2)
    body = client.get("/production/stats").json()
    assert body["stats"]["total_clicks"] == 2
    assert body["combo"]["count"] == 1
