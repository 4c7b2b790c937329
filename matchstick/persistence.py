"""Save games, settings and analytics in a SQL database.

This module provides the persistence layer for the simulation: integrity
checked save snapshots, autosave rotation, whole-database export/import and
a few small key-value tables.

Key Functions:
    - get_database_url(): Resolve the database URL from the environment
    - create_db_engine(): SQLAlchemy engine with backend-appropriate pooling
    - canonical_json() / compute_checksum(): Deterministic state encoding

Key Classes:
    PersistenceLayer: Save/load/list/delete snapshots, export/import bundles

Every integer in a saved state is written as ``{"__type": "bigint",
"value": "<decimal>"}`` so counters beyond 2**53 survive JSON untouched. The
checksum is SHA-256 over that canonical encoding with sorted keys.

Usage:
    layer = PersistenceLayer()          # DATABASE_URL, DB_* vars or sqlite file
    layer.initialize()
    save_id = layer.save(store.to_dict(), name="before prestige")
    state = layer.load(save_id)

Note:
    Database errors never propagate to callers. Connection problems are
    reported to the ErrorHandler as TransientError and the method returns
    None / False / 0; the in-memory game keeps running.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import urllib.parse
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator

from dotenv import load_dotenv
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from matchstick.bignum import BIGINT_TAG
from matchstick.config import DEFAULT_CONFIG, GAME_VERSION
from matchstick.errors import Category, ErrorHandler, IntegrityError, MatchstickError, Severity, TransientError
from matchstick.init_db import TABLES, init_tables


_logger = logging.getLogger("matchstick.db")

DEFAULT_DATABASE_URL = "sqlite:///matchstick.db"

DAY_MS = 24 * 60 * 60 * 1000


def get_database_url() -> str:
    """Resolve the database URL.

    Order: ``DATABASE_URL``; then a PostgreSQL URL built from
    ``DB_HOST``/``DB_PORT``/``DB_NAME``/``DB_USER``/``DB_PASSWORD`` (and
    optional ``DB_SSLMODE``) when all are set; otherwise a local SQLite file.
    """
    load_dotenv()

    url = os.getenv("DATABASE_URL")
    if url:
        return url

    required_vars = ["DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD"]
    if all(os.getenv(var) for var in required_vars):
        password = urllib.parse.quote_plus(os.getenv("DB_PASSWORD"))
        sslmode = os.getenv("DB_SSLMODE") or "require"
        return (
            f"postgresql://{os.getenv('DB_USER')}:{password}@{os.getenv('DB_HOST')}:"
            f"{os.getenv('DB_PORT')}/{os.getenv('DB_NAME')}?sslmode={sslmode}"
        )

    return DEFAULT_DATABASE_URL


def create_db_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # Autosave writes happen on a worker thread
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,  # Verify connections before use
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


def encode_value(value: Any) -> Any:
    """Tag every int (bools excepted) so JSON never sees a bare integer."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return {"__type": BIGINT_TAG, "value": str(value)}
    if isinstance(value, dict):
        return {str(key): encode_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(item) for item in value]
    return value


def decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if value.get("__type") == BIGINT_TAG and set(value) == {"__type", "value"}:
            return int(value["value"])
        return {key: decode_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [decode_value(item) for item in value]
    return value


def canonical_json(state: dict[str, Any]) -> str:
    return json.dumps(encode_value(state), sort_keys=True, separators=(",", ":"), allow_nan=False)


def compute_checksum(state: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(state).encode("utf-8")).hexdigest()


class PersistenceLayer:
    def __init__(
        self,
        url: str | None = None,
        error_handler: ErrorHandler | None = None,
        clock=None,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.url = url or get_database_url()
        self.engine = create_db_engine(self.url)
        self._session_factory = sessionmaker(bind=self.engine)
        self.error_handler = error_handler or ErrorHandler()
        self.clock = clock
        self.config = config or DEFAULT_CONFIG
        self.session_id = f"session_{uuid.uuid4().hex[:12]}"

    def _now(self) -> int:
        if self.clock is not None:
            return self.clock.now_ms()
        return int(datetime.now(timezone.utc).timestamp() * 1000)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Session that commits on success and rolls back on any error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def initialize(self) -> bool:
        """Create tables and drop analytics older than the retention window."""
        if not init_tables(self.engine):
            self._report_transient("initialize storage", RuntimeError("table creation failed"))
            return False
        cutoff = self._now() - self.config["analytics_retention_days"] * DAY_MS
        self.prune_analytics(cutoff)
        return True

    def test_connection(self) -> bool:
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Saves
    # ------------------------------------------------------------------

    def save(self, state: dict[str, Any], name: str | None = None, is_auto_save: bool = False) -> str | None:
        """Store a checksummed snapshot. Returns the save id, or None on failure.

        Autosaves beyond the ``autosave_keep`` most recent are deleted.
        """
        if hasattr(state, "to_dict"):
            state = state.to_dict()
        now = self._now()
        save_id = f"save_{uuid.uuid4().hex[:16]}"
        if not name:
            if is_auto_save:
                stamp = datetime.fromtimestamp(now / 1000, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
                name = f"AutoSave_{stamp}"
            else:
                name = f"Save_{now}"

        try:
            payload = canonical_json(state)
            checksum = hashlib.sha256(payload.encode("utf-8")).hexdigest()
            version = (state.get("metadata") or {}).get("version", GAME_VERSION)
            with self.get_session() as session:
                seq = session.execute(text("SELECT COALESCE(MAX(seq), 0) + 1 FROM saves")).scalar()
                session.execute(
                    text("""
                        INSERT INTO saves (id, name, game_state, timestamp, version, checksum, is_auto_save, seq)
                        VALUES (:id, :name, :game_state, :timestamp, :version, :checksum, :is_auto_save, :seq)
                    """),
                    {
                        "id": save_id,
                        "name": name,
                        "game_state": payload,
                        "timestamp": now,
                        "version": version,
                        "checksum": checksum,
                        "is_auto_save": 1 if is_auto_save else 0,
                        "seq": seq,
                    },
                )
                if is_auto_save:
                    self._rotate_autosaves(session)
        except OperationalError as e:
            self._report_transient("save game", e)
            return None
        except SQLAlchemyError as e:
            self._report_storage(f"Failed to save game '{name}'", e)
            return None
        except (TypeError, ValueError) as e:
            self._report_storage(f"Game state for '{name}' is not serializable", e)
            return None

        _logger.info(f"Saved game {save_id} ({'auto' if is_auto_save else 'manual'})")
        self.track_event("game_saved", {"save_id": save_id, "is_auto_save": is_auto_save})
        return save_id

    def _rotate_autosaves(self, session: Session) -> None:
        keep = self.config["autosave_keep"]
        rows = session.execute(text("SELECT id FROM saves WHERE is_auto_save = 1 ORDER BY seq DESC")).fetchall()
        for row in rows[keep:]:
            session.execute(text("DELETE FROM saves WHERE id = :id"), {"id": row[0]})
        if len(rows) > keep:
            _logger.info(f"Rotated out {len(rows) - keep} old autosave(s)")

    def load(self, save_id: str) -> dict[str, Any] | None:
        """Load a snapshot, verifying its checksum.

        Returns None when the save does not exist, the database is
        unavailable, or the stored state does not match its checksum.
        """
        try:
            with self.get_session() as session:
                row = session.execute(
                    text("SELECT game_state, checksum, timestamp, version FROM saves WHERE id = :id"),
                    {"id": save_id},
                ).fetchone()
        except OperationalError as e:
            self._report_transient("load game", e)
            return None
        except SQLAlchemyError as e:
            self._report_storage(f"Failed to load save {save_id}", e)
            return None

        if row is None:
            _logger.info(f"Save {save_id} not found")
            return None

        try:
            state = decode_value(json.loads(row[0]))
            valid = compute_checksum(state) == row[1]
        except (TypeError, ValueError) as e:
            _logger.warning(f"Save {save_id} could not be decoded: {e}")
            valid = False
        if not valid:
            self.error_handler.handle_error(IntegrityError("Save file corrupted", details={"save_id": save_id}))
            return None

        self.track_event("game_loaded", {"save_id": save_id, "version": row[3], "time_since_save": self._now() - row[2]})
        return state

    def list_saves(self) -> list[dict[str, Any]]:
        """Save metadata, newest first (no game state)."""
        try:
            with self.get_session() as session:
                rows = session.execute(
                    text("""
                        SELECT id, name, timestamp, version, checksum, is_auto_save
                        FROM saves
                        ORDER BY seq DESC
                    """)
                ).fetchall()
        except OperationalError as e:
            self._report_transient("list saves", e)
            return []
        except SQLAlchemyError as e:
            self._report_storage("Failed to list saves", e)
            return []
        return [
            {
                "id": row[0],
                "name": row[1],
                "timestamp": row[2],
                "version": row[3],
                "checksum": row[4],
                "is_auto_save": bool(row[5]),
            }
            for row in rows
        ]

    def latest_save_id(self) -> str | None:
        saves = self.list_saves()
        return saves[0]["id"] if saves else None

    def delete_save(self, save_id: str) -> bool:
        try:
            with self.get_session() as session:
                result = session.execute(text("DELETE FROM saves WHERE id = :id"), {"id": save_id})
                deleted = result.rowcount > 0
        except OperationalError as e:
            self._report_transient("delete save", e)
            return False
        except SQLAlchemyError as e:
            self._report_storage(f"Failed to delete save {save_id}", e)
            return False
        if deleted:
            self.track_event("game_deleted", {"save_id": save_id})
        return deleted

    # ------------------------------------------------------------------
    # Settings and achievements
    # ------------------------------------------------------------------

    def save_setting(self, key: str, value: Any) -> bool:
        try:
            with self.get_session() as session:
                session.execute(text("DELETE FROM settings WHERE id = :id"), {"id": key})
                session.execute(
                    text("""
                        INSERT INTO settings (id, setting_key, value, timestamp)
                        VALUES (:id, :key, :value, :timestamp)
                    """),
                    {"id": key, "key": key, "value": json.dumps(encode_value(value)), "timestamp": self._now()},
                )
            return True
        except OperationalError as e:
            self._report_transient("save setting", e)
            return False
        except SQLAlchemyError as e:
            self._report_storage(f"Failed to save setting '{key}'", e)
            return False

    def load_setting(self, key: str) -> Any:
        try:
            with self.get_session() as session:
                row = session.execute(text("SELECT value FROM settings WHERE id = :id"), {"id": key}).fetchone()
        except OperationalError as e:
            self._report_transient("load setting", e)
            return None
        except SQLAlchemyError as e:
            self._report_storage(f"Failed to load setting '{key}'", e)
            return None
        if row is None or row[0] is None:
            return None
        return decode_value(json.loads(row[0]))

    def save_achievement(self, achievement_id: str, progress: dict[str, Any]) -> bool:
        try:
            with self.get_session() as session:
                session.execute(text("DELETE FROM achievements WHERE id = :id"), {"id": achievement_id})
                session.execute(
                    text("""
                        INSERT INTO achievements (id, achievement_id, unlocked_at, progress)
                        VALUES (:id, :achievement_id, :unlocked_at, :progress)
                    """),
                    {
                        "id": achievement_id,
                        "achievement_id": achievement_id,
                        "unlocked_at": self._now(),
                        "progress": json.dumps(encode_value(progress)),
                    },
                )
        except OperationalError as e:
            self._report_transient("save achievement", e)
            return False
        except SQLAlchemyError as e:
            self._report_storage(f"Failed to save achievement '{achievement_id}'", e)
            return False
        self.track_event("achievement_unlocked", {"achievement_id": achievement_id})
        return True

    def load_achievements(self) -> list[dict[str, Any]]:
        try:
            with self.get_session() as session:
                rows = session.execute(
                    text("SELECT id, achievement_id, unlocked_at, progress FROM achievements ORDER BY unlocked_at")
                ).fetchall()
        except OperationalError as e:
            self._report_transient("load achievements", e)
            return []
        except SQLAlchemyError as e:
            self._report_storage("Failed to load achievements", e)
            return []
        return [
            {
                "id": row[0],
                "achievement_id": row[1],
                "unlocked_at": row[2],
                "progress": decode_value(json.loads(row[3])) if row[3] else {},
            }
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def track_event(self, event: str, data: dict[str, Any] | None = None) -> bool:
        try:
            with self.get_session() as session:
                session.execute(
                    text("""
                        INSERT INTO analytics (id, event, data, timestamp, session_id)
                        VALUES (:id, :event, :data, :timestamp, :session_id)
                    """),
                    {
                        "id": f"evt_{uuid.uuid4().hex[:16]}",
                        "event": event,
                        "data": json.dumps(encode_value(data or {})),
                        "timestamp": self._now(),
                        "session_id": self.session_id,
                    },
                )
            return True
        except SQLAlchemyError as e:
            # Analytics are best effort
            _logger.warning(f"Failed to track analytics event '{event}': {e}")
            return False

    def prune_analytics(self, cutoff_ms: int) -> int:
        """Delete analytics rows older than ``cutoff_ms``. Returns rows deleted."""
        try:
            with self.get_session() as session:
                result = session.execute(text("DELETE FROM analytics WHERE timestamp < :cutoff"), {"cutoff": cutoff_ms})
                deleted = result.rowcount or 0
        except SQLAlchemyError as e:
            _logger.warning(f"Failed to prune analytics: {e}")
            return 0
        if deleted:
            _logger.info(f"Pruned {deleted} analytics event(s)")
        return deleted

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def export_data(self) -> str | None:
        """Every save, setting and achievement as one JSON bundle."""
        try:
            with self.get_session() as session:
                saves = session.execute(
                    text("""
                        SELECT id, name, game_state, timestamp, version, checksum, is_auto_save, seq
                        FROM saves ORDER BY seq
                    """)
                ).fetchall()
                settings = session.execute(text("SELECT id, setting_key, value, timestamp FROM settings")).fetchall()
                achievements = session.execute(
                    text("SELECT id, achievement_id, unlocked_at, progress FROM achievements")
                ).fetchall()
        except OperationalError as e:
            self._report_transient("export data", e)
            return None
        except SQLAlchemyError as e:
            self._report_storage("Failed to export data", e)
            return None

        bundle = {
            "version": GAME_VERSION,
            "exported_at": self._now(),
            "saves": [
                {
                    "id": row[0],
                    "name": row[1],
                    "game_state": decode_value(json.loads(row[2])),
                    "timestamp": row[3],
                    "version": row[4],
                    "checksum": row[5],
                    "is_auto_save": bool(row[6]),
                    "seq": row[7],
                }
                for row in saves
            ],
            "settings": [
                {"id": row[0], "key": row[1], "value": decode_value(json.loads(row[2])) if row[2] else None, "timestamp": row[3]}
                for row in settings
            ],
            "achievements": [
                {
                    "id": row[0],
                    "achievement_id": row[1],
                    "unlocked_at": row[2],
                    "progress": decode_value(json.loads(row[3])) if row[3] else {},
                }
                for row in achievements
            ],
        }
        _logger.info(f"Exported {len(saves)} save(s), {len(settings)} setting(s), {len(achievements)} achievement(s)")
        return json.dumps(encode_value(bundle), sort_keys=True)

    def import_data(self, bundle_json: str) -> bool:
        """Replace saves, settings and achievements with a bundle's contents.

        The bundle is validated first (structure and every save checksum);
        the tables are then cleared and repopulated in one transaction, so a
        failure leaves the previous data in place.
        """
        try:
            bundle = decode_value(json.loads(bundle_json))
            saves = self._validated_saves(bundle)
            settings = self._validated_settings(bundle)
            achievements = self._validated_achievements(bundle)
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            self.error_handler.handle_error(
                MatchstickError(f"Invalid import data: {e}", category=Category.STORAGE, severity=Severity.MEDIUM)
            )
            return False
        except IntegrityError as e:
            self.error_handler.handle_error(e)
            return False

        try:
            with self.get_session() as session:
                for table in ("saves", "settings", "achievements"):
                    session.execute(text(f"DELETE FROM {table}"))
                for save in saves:
                    session.execute(
                        text("""
                            INSERT INTO saves (id, name, game_state, timestamp, version, checksum, is_auto_save, seq)
                            VALUES (:id, :name, :game_state, :timestamp, :version, :checksum, :is_auto_save, :seq)
                        """),
                        save,
                    )
                for setting in settings:
                    session.execute(
                        text("""
                            INSERT INTO settings (id, setting_key, value, timestamp)
                            VALUES (:id, :key, :value, :timestamp)
                        """),
                        setting,
                    )
                for achievement in achievements:
                    session.execute(
                        text("""
                            INSERT INTO achievements (id, achievement_id, unlocked_at, progress)
                            VALUES (:id, :achievement_id, :unlocked_at, :progress)
                        """),
                        achievement,
                    )
        except OperationalError as e:
            self._report_transient("import data", e)
            return False
        except SQLAlchemyError as e:
            self._report_storage("Failed to import data", e)
            return False

        _logger.info(f"Imported {len(saves)} save(s), {len(settings)} setting(s), {len(achievements)} achievement(s)")
        self.track_event(
            "data_imported",
            {"save_count": len(saves), "setting_count": len(settings), "achievement_count": len(achievements)},
        )
        return True

    @staticmethod
    def _validated_saves(bundle: dict[str, Any]) -> list[dict[str, Any]]:
        if not isinstance(bundle, dict) or not bundle.get("version") or not isinstance(bundle.get("saves"), list):
            raise ValueError("bundle needs a version and a list of saves")
        rows = []
        for index, save in enumerate(bundle["saves"], start=1):
            state = save["game_state"]
            if not isinstance(state, dict):
                raise ValueError(f"save {save.get('id')} has no game state")
            if compute_checksum(state) != save["checksum"]:
                raise IntegrityError("Imported save failed its checksum", details={"save_id": save.get("id")})
            rows.append({
                "id": save["id"],
                "name": save["name"],
                "game_state": canonical_json(state),
                "timestamp": save["timestamp"],
                "version": save.get("version", GAME_VERSION),
                "checksum": save["checksum"],
                "is_auto_save": 1 if save.get("is_auto_save") else 0,
                "seq": save.get("seq", index),
            })
        return rows

    @staticmethod
    def _bundle_records(bundle: dict[str, Any], key: str) -> list[dict[str, Any]]:
        records = bundle.get(key) or []
        if not isinstance(records, list):
            raise ValueError(f"bundle {key} must be a list")
        for record in records:
            if not isinstance(record, dict) or not isinstance(record.get("id"), str):
                raise ValueError(f"every bundle {key} entry needs an id")
        return records

    def _validated_settings(self, bundle: dict[str, Any]) -> list[dict[str, Any]]:
        return [
            {
                "id": setting["id"],
                "key": str(setting.get("key", setting["id"])),
                "value": json.dumps(encode_value(setting.get("value"))),
                "timestamp": int(setting.get("timestamp", self._now())),
            }
            for setting in self._bundle_records(bundle, "settings")
        ]

    def _validated_achievements(self, bundle: dict[str, Any]) -> list[dict[str, Any]]:
        return [
            {
                "id": achievement["id"],
                "achievement_id": str(achievement.get("achievement_id", achievement["id"])),
                "unlocked_at": int(achievement.get("unlocked_at", self._now())),
                "progress": json.dumps(encode_value(achievement.get("progress") or {})),
            }
            for achievement in self._bundle_records(bundle, "achievements")
        ]

    def clear_all_data(self) -> bool:
        try:
            with self.get_session() as session:
                for table in TABLES:
                    session.execute(text(f"DELETE FROM {table}"))
        except OperationalError as e:
            self._report_transient("clear data", e)
            return False
        except SQLAlchemyError as e:
            self._report_storage("Failed to clear data", e)
            return False
        _logger.info("All stored data cleared")
        self.track_event("data_cleared", {})
        return True

    def get_storage_stats(self) -> dict[str, int]:
        stats = {table: 0 for table in TABLES}
        stats["total_size"] = 0
        try:
            with self.get_session() as session:
                for table in TABLES:
                    stats[table] = session.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar() or 0
                stats["total_size"] = session.execute(
                    text("SELECT COALESCE(SUM(LENGTH(game_state)), 0) FROM saves")
                ).scalar() or 0
        except OperationalError as e:
            self._report_transient("read storage stats", e)
        except SQLAlchemyError as e:
            self._report_storage("Failed to get storage stats", e)
        return stats

    # ------------------------------------------------------------------
    # Error reporting
    # ------------------------------------------------------------------

    def _report_transient(self, action: str, error: Exception) -> None:
        _logger.error(f"Database connection error during {action}: {error}")
        self.error_handler.handle_error(
            TransientError(f"Storage unavailable during {action}", details={"error": str(error)})
        )

    def _report_storage(self, message: str, error: Exception) -> None:
        _logger.warning(f"{message}: {error}")
        self.error_handler.handle_error(
            MatchstickError(message, category=Category.STORAGE, severity=Severity.MEDIUM, details={"error": str(error)})
        )
