from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from matchstick.errors import ConfigValidationError
from matchstick.formatting import format_number
from matchstick.game import Game
from matchstick.scheduler import ManualClock, SystemClock


BASE_DIR = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = BASE_DIR / "config.json"
LOG_FILE = BASE_DIR / "matchstick.log"

# Global logger
logger: logging.Logger | None = None


def setup_logging(log_file: Path = LOG_FILE, level: int = logging.INFO) -> logging.Logger:
    """Set up rotating file-based logging for background service operation."""
    log = logging.getLogger("matchstick")
    log.setLevel(level)

    # Avoid duplicate handlers
    if log.handlers:
        return log

    # File handler with rotation (10MB max, keep 5 backups)
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(level)

    # Console handler for immediate feedback
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    # Format: timestamp - level - message
    formatter = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    log.addHandler(file_handler)
    log.addHandler(console_handler)

    return log


def load_config(path: Path | None) -> dict[str, Any]:
    """Load configuration from JSON file."""
    if path is None or not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON in config file {path}: {e}", file=sys.stderr)
        sys.exit(1)
    except IOError as e:
        print(f"Error: Cannot read config file {path}: {e}", file=sys.stderr)
        sys.exit(1)


def resolve_value(cli_value: Any, cfg_section: dict[str, Any], key: str, fallback: Any) -> Any:
    """Resolve configuration value with priority: CLI > config file > fallback."""
    if cli_value is not None:
        return cli_value
    if key in cfg_section:
        return cfg_section[key]
    return fallback


def build_game(
    *,
    clock: SystemClock | ManualClock | None = None,
    seed: int | None = None,
    game_config: dict[str, Any] | None = None,
    database_url: str | None = None,
) -> Game:
    try:
        return Game(clock=clock, config=game_config, database_url=database_url, seed=seed)
    except ConfigValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def validate_simulation_params(seconds: int, clicks_per_second: int, seed: int | None) -> None:
    """Validate simulation parameters."""
    if seconds <= 0:
        print(f"Error: seconds must be positive, got {seconds}", file=sys.stderr)
        sys.exit(1)
    if clicks_per_second < 0 or clicks_per_second > 1000:
        print(f"Error: clicks-per-second must be between 0 and 1000, got {clicks_per_second}", file=sys.stderr)
        sys.exit(1)
    if seed is not None and seed < 0:
        print(f"Error: seed must be non-negative, got {seed}", file=sys.stderr)
        sys.exit(1)


def print_summary(game: Game) -> None:
    state = game.store.get()
    stats = game.achievements.get_stats()
    print("Summary:")
    print(f"  Matchsticks:    {format_number(state.resources.matchsticks)}")
    print(f"  Money:          ${format_number(state.resources.money)}")
    print(f"  Total produced: {format_number(state.production.total_produced)}")
    print(f"  Total sold:     {format_number(state.market.total_sold)}")
    print(f"  Market price:   ${state.market.current_price:.2f}")
    print(f"  Phase:          {state.progression.current_phase}")
    print(
        f"  Achievements:   {stats['unlocked_achievements']}/{stats['total_achievements']} "
        f"({stats['achievement_points']} points)"
    )


def run_simulation(
    seconds: int,
    clicks_per_second: int,
    seed: int | None,
    save: bool,
    game_config: dict[str, Any] | None = None,
    auto_sell: dict[str, Any] | None = None,
) -> None:
    """Run an accelerated simulation on a manual clock."""
    validate_simulation_params(seconds, clicks_per_second, seed)

    game = build_game(clock=ManualClock(), seed=seed, game_config=game_config)
    game.start()
    if auto_sell:
        game.automation.configure_auto_sell(auto_sell)
    if clicks_per_second > 0:
        game.scheduler.every(
            max(1, 1000 // clicks_per_second),
            game.production.produce,
            name="simulated_clicks",
        )

    print(f"Running simulation for {seconds} seconds...")
    for i in range(seconds):
        game.run_for(1000)
        # Progress indicator every simulated minute
        if (i + 1) % 60 == 0:
            state = game.store.get()
            print(
                f"  {(i + 1) // 60} min | matchsticks {format_number(state.resources.matchsticks)} | "
                f"money ${format_number(state.resources.money)} | price ${state.market.current_price:.2f}"
            )

    if save:
        save_id = game.save_game(name=f"Simulation {seconds}s seed {seed}")
        if save_id:
            print(f"Saved as {save_id}")
        else:
            print("Warning: Failed to save simulation result", file=sys.stderr)

    print_summary(game)
    game.shutdown()


def run_continuous_service(
    tick_interval: float,
    resume: bool,
    seed: int | None,
    game_config: dict[str, Any] | None = None,
    api_host: str = "127.0.0.1",
    api_port: int = 8010,
    api_enabled: bool = True,
) -> None:
    """Run the game on the wall clock until SIGINT/SIGTERM, autosaving as it goes."""
    global logger
    logger = setup_logging()

    logger.info("=" * 60)
    logger.info("Starting Matchstick Simulation Service")
    logger.info("=" * 60)

    game = build_game(clock=SystemClock(), seed=seed, game_config=game_config)
    if not game.persistence.test_connection():
        logger.error("Database connection failed. Check your .env configuration.")
        logger.info("Hint: Set DATABASE_URL, or DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD.")
        sys.exit(1)
    game.start()

    # Try to resume from the newest save
    if resume:
        if game.load_game():
            state = game.store.get()
            logger.info("Resuming from saved game:")
            logger.info(f"  Matchsticks: {format_number(state.resources.matchsticks)}")
            logger.info(f"  Money: ${format_number(state.resources.money)}")
        else:
            logger.info("No saved game found. Starting fresh game.")
    else:
        logger.info("Starting fresh game (--fresh mode)")

    # Set up graceful shutdown
    def handle_shutdown(signum, frame):
        logger.info(f"Received signal {signum}. Initiating graceful shutdown...")
        game.scheduler.stop()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    # Start live API in daemon thread (read-only; call and get values)
    if api_enabled:
        try:
            import uvicorn
            from matchstick.api import create_app

            app = create_app(game)
            thread = threading.Thread(
                target=uvicorn.run,
                kwargs={"app": app, "host": api_host, "port": api_port},
                daemon=True,
            )
            thread.start()
            logger.info(f"  API: http://{api_host}:{api_port} (GET /status, /state, /market/analysis, /events)")
        except Exception as e:
            logger.warning(f"Could not start API server: {e}")

    logger.info("Service configuration:")
    logger.info(f"  Tick interval: {tick_interval} seconds")
    logger.info(f"  Autosave: every {game.config['autosave_interval_ms'] / 1000:.0f}s, keep {game.config['autosave_keep']}")
    logger.info(f"  Database: {game.persistence.engine.url.render_as_string(hide_password=True)}")
    logger.info("")
    logger.info("Service is running. Press Ctrl+C to stop.")

    started = time.time()
    game.scheduler.run_forever(max_sleep_ms=int(tick_interval * 1000))

    # Graceful shutdown
    logger.info("Shutting down...")
    save_id = game.save_game(name="Service shutdown")
    if save_id:
        logger.info(f"Final state saved as {save_id}")
    else:
        logger.error("Failed to save final state")
    game.shutdown()
    logger.info(f"Service stopped after {(time.time() - started) / 60:.1f} minutes")


def list_saves() -> int:
    game = build_game()
    game.persistence.initialize()
    saves = game.persistence.list_saves()
    if not saves:
        print("No saved games.")
    for save in saves:
        kind = "auto" if save["is_auto_save"] else "manual"
        print(f"{save['id']}  {save['name']:<40} {kind:<6} v{save['version']}  {save['timestamp']}")
    stats = game.persistence.get_storage_stats()
    print(f"{stats['saves']} save(s), {stats['total_size']:,} bytes of game state")
    game.shutdown()
    return 0


def export_data(output: Path) -> int:
    game = build_game()
    game.persistence.initialize()
    bundle = game.persistence.export_data()
    game.shutdown()
    if bundle is None:
        print("Error: Export failed", file=sys.stderr)
        return 1
    try:
        output.write_text(bundle + "\n", encoding="utf-8")
    except IOError as e:
        print(f"Error: Cannot write {output}: {e}", file=sys.stderr)
        return 1
    print(f"Exported to {output}")
    return 0


def import_data(input_path: Path) -> int:
    try:
        bundle = input_path.read_text(encoding="utf-8")
    except IOError as e:
        print(f"Error: Cannot read {input_path}: {e}", file=sys.stderr)
        return 1
    game = build_game()
    game.persistence.initialize()
    ok = game.persistence.import_data(bundle)
    game.shutdown()
    if not ok:
        print("Error: Import failed; existing data left unchanged", file=sys.stderr)
        return 1
    print(f"Imported {input_path}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Matchstick simulation CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  init-db          Create the database tables
  simulate         Run an accelerated simulation for a fixed number of seconds
  run-service      Run the game continuously with autosave and a read-only API
  saves            List saved games
  export           Export every save, setting and achievement to a JSON file
  import           Replace stored data with an exported JSON file

Examples:
  python main.py init-db
  python main.py simulate --seconds 600 --clicks-per-second 5 --seed 42 --save
  python main.py run-service --tick-interval 0.1
  python main.py export --output backup.json
        """
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config file (default: ./config.json if present).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database tables")

    # simulate command
    sim = sub.add_parser("simulate", help="Run an accelerated simulation")
    sim.add_argument("--seconds", type=int, default=None, help="Simulated seconds to run.")
    sim.add_argument("--clicks-per-second", type=int, default=None, help="Simulated manual clicks per second.")
    sim.add_argument("--seed", type=int, default=None, help="Market RNG seed.")
    sim.add_argument("--save", action="store_true", help="Save the final state to the database.")

    # run-service command
    svc = sub.add_parser("run-service", help="Run as a continuous service with autosave")
    svc.add_argument(
        "--tick-interval",
        type=float,
        default=None,
        help="Maximum seconds between scheduler checks (default: 0.1).",
    )
    svc.add_argument(
        "--fresh",
        action="store_true",
        help="Start fresh, ignoring any saved game.",
    )
    svc.add_argument("--seed", type=int, default=None, help="Market RNG seed.")

    sub.add_parser("saves", help="List saved games")

    exp = sub.add_parser("export", help="Export stored data to JSON")
    exp.add_argument("--output", type=Path, required=True, help="Output file.")

    imp = sub.add_parser("import", help="Import stored data from JSON")
    imp.add_argument("--input", type=Path, required=True, help="Input file.")

    args = parser.parse_args()
    config_path = args.config or (DEFAULT_CONFIG_PATH if DEFAULT_CONFIG_PATH.exists() else None)
    config = load_config(config_path)

    if args.command == "init-db":
        from matchstick.init_db import main as init_db_main

        return init_db_main()

    if args.command == "simulate":
        section = config.get("simulate", {})
        seconds = resolve_value(args.seconds, section, "seconds", 300)
        clicks_per_second = resolve_value(args.clicks_per_second, section, "clicks_per_second", 5)
        seed = resolve_value(args.seed, section, "seed", 42)
        save = args.save or section.get("save", False)
        game_config = section.get("game", {})
        auto_sell = section.get("auto_sell", {"enabled": True, "threshold": 100, "percentage": 50.0})
        run_simulation(
            seconds=seconds,
            clicks_per_second=clicks_per_second,
            seed=seed,
            save=save,
            game_config=game_config,
            auto_sell=auto_sell,
        )
        return 0

    if args.command == "run-service":
        section = config.get("run-service", {})
        tick_interval = resolve_value(args.tick_interval, section, "tick_interval", 0.1)
        seed = resolve_value(args.seed, section, "seed", None)
        game_config = section.get("game", {})
        api_host = section.get("api_host", "127.0.0.1")
        api_port = section.get("api_port", 8010)
        api_enabled = section.get("api_enabled", True)
        run_continuous_service(
            tick_interval=tick_interval,
            resume=not args.fresh,
            seed=seed,
            game_config=game_config,
            api_host=api_host,
            api_port=api_port,
            api_enabled=api_enabled,
        )
        return 0

    if args.command == "saves":
        return list_saves()

    if args.command == "export":
        return export_data(args.output)

    if args.command == "import":
        return import_data(args.input)

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
