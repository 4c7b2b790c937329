"""Minimal live API: read-only GET endpoints over the running game. Call and get values."""
from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, Query

from matchstick.state_store import SECTIONS

# Game reference set by main when starting run-service
_game: Any = None


def set_game(game: Any) -> None:
    global _game
    _game = game


def get_game() -> Any:
    if _game is None:
        raise HTTPException(status_code=503, detail="Simulation not running")
    return _game


app = FastAPI(title="Matchstick Simulation API", description="Read-only live game state. Call and get values.")


def create_app(game: Any | None = None) -> FastAPI:
    if game is not None:
        set_game(game)
    return app


@app.get("/status")
def get_status() -> dict:
    """Running flag, clock, phase and headline resources."""
    return get_game().status()


@app.get("/state")
def get_state() -> dict:
    """The full game state."""
    return get_game().store.to_dict()


@app.get("/state/{section}")
def get_state_section(section: str) -> dict:
    """One state section (resources, production, market, ...)."""
    if section not in SECTIONS:
        raise HTTPException(status_code=404, detail="Not found")
    return get_game().store.section(section).to_dict()


@app.get("/events")
def get_events(limit: int = Query(default=50, ge=1, le=1000)) -> list[dict]:
    """Event log, newest first."""
    return [event.to_dict() for event in get_game().store.events(limit)]


@app.get("/market/analysis")
def get_market_analysis() -> dict:
    return get_game().market.get_market_analysis()


@app.get("/market/trades")
def get_market_trades(limit: int = Query(default=10, ge=1, le=100)) -> list[dict]:
    return [asdict(trade) for trade in get_game().market.get_recent_trades(limit)]


@app.get("/automation")
def get_automation() -> dict:
    """Automation stats plus the purchasable catalog."""
    g = get_game()
    return {
        "stats": g.automation.get_automation_stats(),
        "auto_clickers": g.automation.get_available_auto_clickers(),
        "facilities": g.automation.get_available_facilities(),
    }


@app.get("/achievements")
def get_achievements() -> dict:
    g = get_game()
    return {
        "stats": g.achievements.get_stats(),
        "achievements": [
            {**a.to_dict(), "progress": g.achievements.progress(a.id)}
            for a in g.achievements.get_all()
        ],
    }


@app.get("/production/stats")
def get_production_stats() -> dict:
    g = get_game()
    return {
        "stats": g.production.get_production_stats(),
        "combo": g.production.get_combo_info(),
        "current_rate": g.production.get_current_production_rate(),
    }
