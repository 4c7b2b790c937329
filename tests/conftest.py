from __future__ import annotations

import random

import pytest

from matchstick.achievements import AchievementEvaluator
from matchstick.automation import AutomationScheduler
from matchstick.config import build_config
from matchstick.errors import ErrorHandler
from matchstick.game import Game
from matchstick.market import MarketEngine
from matchstick.persistence import PersistenceLayer
from matchstick.production import ProductionEngine
from matchstick.scheduler import ManualClock, TickScheduler
from matchstick.state_store import StateStore


@pytest.fixture
def config():
    return build_config()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def error_handler(clock):
    return ErrorHandler(clock=clock.now_ms)


@pytest.fixture
def store(clock, error_handler, config):
    return StateStore(clock, error_handler, config)


@pytest.fixture
def scheduler(clock, error_handler):
    return TickScheduler(clock, error_handler)


@pytest.fixture
def achievements(store):
    return AchievementEvaluator(store)


@pytest.fixture
def production(store, scheduler, config):
    """Production without achievement checks, so ledger values stay exact."""
    return ProductionEngine(store, scheduler, None, config)


@pytest.fixture
def market(store, scheduler, config):
    return MarketEngine(store, scheduler, None, config, rng=random.Random(1234))


@pytest.fixture
def automation(store, scheduler, production, market, config):
    return AutomationScheduler(store, scheduler, production, market, None, config)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'matchstick-test.db'}"


@pytest.fixture
def persistence(database_url, error_handler, clock, config):
    layer = PersistenceLayer(database_url, error_handler, clock, config)
    assert layer.initialize()
    yield layer
    layer.close()


@pytest.fixture
def game(database_url):
    g = Game(clock=ManualClock(), config={"autosave_enabled": False}, database_url=database_url, seed=7)
    g.start()
    yield g
    g.shutdown()
