"""Simulation configuration defaults and validation.

Every engine receives the merged config dict produced by ``build_config``.
Values can be overridden per command from ``config.json`` (see main.py).
"""

from __future__ import annotations

from typing import Any

from matchstick.errors import ConfigValidationError


GAME_VERSION = "1.0.0"

# Default simulation parameters (can be overridden via config)
DEFAULT_CONFIG: dict[str, Any] = {
    # Production / combo
    "combo_decay_ms": 2000,
    "max_combo": 50,
    "combo_step": 0.01,
    "click_rate_window_ms": 10_000,
    # Market
    "base_price": 1.0,
    "min_price": 0.1,
    "base_volatility": 0.02,
    "max_volatility": 0.15,
    "target_pull": 0.1,
    "price_update_ms": 5000,
    "condition_check_ms": 30_000,
    "max_price_history": 100,
    "max_trade_history": 50,
    "analysis_cache_ms": 10_000,
    "market_impact_threshold": 1000,
    "market_impact_max": 0.2,
    "post_trade_impact_max": 0.05,
    "total_market_size": 1_000_000,
    # "duration" expires conditions after their declared duration,
    # "probabilistic" clears them with condition_expiry_probability per check
    "condition_expiry_mode": "duration",
    "condition_expiry_probability": 0.1,
    # Automation
    "auto_click_ms": 1000,
    "auto_production_ms": 1000,
    "auto_sell_ms": 2000,
    "maintenance_ms": 5000,
    "facility_cost_growth": 1.5,
    "efficiency_penalty": 0.05,
    "min_facility_efficiency": 0.1,
    # Persistence / lifecycle
    "autosave_enabled": True,
    "autosave_interval_ms": 30_000,
    "autosave_keep": 5,
    "analytics_retention_days": 7,
    "event_log_capacity": 100,
}


def _validate_config(cfg: dict[str, Any]) -> None:
    """Validate configuration values, collecting every problem before raising."""
    errors = []

    for key in (
        "combo_decay_ms",
        "price_update_ms",
        "condition_check_ms",
        "auto_click_ms",
        "auto_production_ms",
        "auto_sell_ms",
        "maintenance_ms",
        "autosave_interval_ms",
    ):
        if cfg[key] <= 0:
            errors.append(f"{key} must be positive")

    if cfg["max_combo"] < 1:
        errors.append("max_combo must be at least 1")
    if cfg["base_price"] <= 0:
        errors.append("base_price must be positive")
    if cfg["min_price"] <= 0:
        errors.append("min_price must be positive")
    if cfg["base_volatility"] < 0 or cfg["base_volatility"] > cfg["max_volatility"]:
        errors.append("base_volatility must be between 0 and max_volatility")
    if cfg["target_pull"] < 0 or cfg["target_pull"] > 1:
        errors.append("target_pull must be between 0 and 1")
    if cfg["max_price_history"] < 1 or cfg["max_trade_history"] < 1:
        errors.append("history sizes must be at least 1")
    if cfg["condition_expiry_mode"] not in ("duration", "probabilistic"):
        errors.append("condition_expiry_mode must be 'duration' or 'probabilistic'")
    if cfg["condition_expiry_probability"] < 0 or cfg["condition_expiry_probability"] > 1:
        errors.append("condition_expiry_probability must be between 0 and 1")
    if cfg["min_facility_efficiency"] <= 0 or cfg["min_facility_efficiency"] > 1:
        errors.append("min_facility_efficiency must be in (0, 1]")
    if cfg["autosave_keep"] < 1:
        errors.append("autosave_keep must be at least 1")
    if cfg["event_log_capacity"] < 1:
        errors.append("event_log_capacity must be at least 1")

    if errors:
        raise ConfigValidationError("Invalid configuration: " + "; ".join(errors))


def build_config(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
    """Merge overrides with DEFAULT_CONFIG and validate the result.

    Raises:
        ConfigValidationError: On unknown keys or out-of-range values.
    """
    overrides = overrides or {}
    unknown = sorted(set(overrides) - set(DEFAULT_CONFIG))
    if unknown:
        raise ConfigValidationError(f"Unknown configuration keys: {', '.join(unknown)}")
    cfg = {**DEFAULT_CONFIG, **overrides}
    _validate_config(cfg)
    return cfg
