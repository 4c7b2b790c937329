"""Error taxonomy and the error handler / notification sink.

Key Classes:
    MatchstickError: Base exception carrying category, severity and details
    ValidationError, IntegrityError, TransientError, ConfigValidationError
    ErrorReason: Typed failure reasons carried by operation results
    ErrorHandler: Logs errors, keeps a bounded history and fans out
        user-facing notifications to registered sinks

Validation failures are normally returned as typed results (see results.py)
rather than raised. The exception classes exist so that the error handler
has one shape to log and report, and so persistence can signal integrity
and availability problems to its callers' handlers.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable


_logger = logging.getLogger("matchstick.errors")


class ErrorReason(str, Enum):
    """Structured reasons attached to failed operation results."""

    NOT_FOUND = "not_found"
    MAX_LEVEL_REACHED = "max_level_reached"
    REQUIREMENTS_NOT_MET = "requirements_not_met"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INSUFFICIENT_RESOURCES = "insufficient_resources"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_SETTINGS = "invalid_settings"
    INTERNAL_ERROR = "internal_error"


class Category(str, Enum):
    STORAGE = "storage"
    GAME_LOGIC = "game_logic"
    NETWORK = "network"
    UI = "ui"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MatchstickError(Exception):
    """Base class for all simulation errors."""

    category = Category.UNKNOWN
    severity = Severity.MEDIUM

    def __init__(
        self,
        message: str,
        *,
        category: Category | None = None,
        severity: Severity | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category
        if severity is not None:
            self.severity = severity
        self.details = details or {}
        self.id = f"err_{uuid.uuid4().hex[:12]}"
        self.timestamp = int(time.time() * 1000)


class ValidationError(MatchstickError):
    """Insufficient funds/resources, invalid amount or unmet requirement."""

    category = Category.GAME_LOGIC
    severity = Severity.LOW

    def __init__(self, message: str, reason: ErrorReason, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class IntegrityError(MatchstickError):
    """A stored record failed its checksum; the record is unusable."""

    category = Category.STORAGE
    severity = Severity.HIGH


class TransientError(MatchstickError):
    """Storage unavailable or a similar retryable failure."""

    category = Category.STORAGE
    severity = Severity.HIGH


class ConfigValidationError(MatchstickError):
    """Raised when configuration values are invalid."""

    category = Category.UNKNOWN
    severity = Severity.CRITICAL


@dataclass
class Notification:
    """User-facing message handed to notification sinks (toasts etc.)."""

    type: str  # info | success | warning | error
    title: str
    message: str
    timestamp: int
    id: str = field(default_factory=lambda: f"notif_{uuid.uuid4().hex[:12]}")
    duration_ms: int | None = 5000
    actions: list[str] = field(default_factory=list)


@dataclass
class ErrorResponse:
    handled: bool
    recovery: str = "none"  # reload_state | use_fallback | retry_operation | save_backup | none
    should_retry: bool = False
    notification: Notification | None = None


_FRIENDLY_MESSAGES = {
    Category.STORAGE: "There was a problem saving your progress. Your game data is safe.",
    Category.GAME_LOGIC: "Something unexpected happened in the game. We'll try to fix it automatically.",
    Category.NETWORK: "Connection problem. Some features may not work until reconnected.",
    Category.UI: "Display issue detected. Try refreshing if problems persist.",
    Category.UNKNOWN: "An unexpected error occurred. The game should continue working normally.",
}

_TITLES = {
    Category.STORAGE: "Save Issue",
    Category.GAME_LOGIC: "Game Error",
    Category.NETWORK: "Connection Issue",
    Category.UI: "Display Issue",
    Category.UNKNOWN: "Warning",
}

_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


class ErrorHandler:
    """Central error sink shared by every subsystem.

    Errors are logged at a level matching their severity and kept in a
    bounded newest-first history. Errors of medium severity and above are
    turned into notifications for registered listeners, with repeats of the
    same message inside a minute suppressed.
    """

    def __init__(self, max_history: int = 100, clock: Callable[[], int] | None = None) -> None:
        self._history: deque[MatchstickError] = deque(maxlen=max_history)
        self._listeners: list[Callable[[Notification], None]] = []
        self._now = clock or (lambda: int(time.time() * 1000))

    def handle_error(self, error: BaseException) -> ErrorResponse:
        normalized = self._normalize(error)
        self.log_error(normalized)

        response = self._recovery_for(normalized)
        if self._should_notify(normalized):
            response.notification = self._build_notification(normalized)
            self._send(response.notification)
        return response

    def log_error(self, error: BaseException) -> None:
        normalized = self._normalize(error)
        normalized.timestamp = self._now()
        self._history.appendleft(normalized)
        level = _LOG_LEVELS.get(normalized.severity, logging.WARNING)
        details = f" | details: {normalized.details}" if normalized.details else ""
        _logger.log(
            level,
            f"[{normalized.category.value}/{normalized.severity.value}] {normalized.message}{details}",
        )

    def notify_user(self, message: str, severity: str = "info") -> Notification:
        titles = {"error": "Error", "warning": "Warning"}
        notification = Notification(
            type=severity if severity in ("info", "success", "warning", "error") else "info",
            title=titles.get(severity, "Information"),
            message=message,
            timestamp=self._now(),
        )
        self._send(notification)
        return notification

    def get_error_history(self) -> list[MatchstickError]:
        return list(self._history)

    def clear_error_history(self) -> None:
        self._history.clear()

    def on_notification(self, callback: Callable[[Notification], None]) -> None:
        self._listeners.append(callback)

    def off_notification(self, callback: Callable[[Notification], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _normalize(self, error: BaseException) -> MatchstickError:
        if isinstance(error, MatchstickError):
            return error
        wrapped = MatchstickError(
            str(error) or error.__class__.__name__,
            details={"exception": error.__class__.__name__},
        )
        wrapped.__cause__ = error
        return wrapped

    def _recovery_for(self, error: MatchstickError) -> ErrorResponse:
        if error.category is Category.STORAGE:
            if error.severity is Severity.CRITICAL:
                return ErrorResponse(handled=True, recovery="save_backup")
            return ErrorResponse(handled=True, recovery="retry_operation", should_retry=True)
        if error.category is Category.GAME_LOGIC:
            critical = error.severity is Severity.CRITICAL
            return ErrorResponse(
                handled=True,
                recovery="reload_state" if critical else "use_fallback",
                should_retry=not critical,
            )
        if error.category is Category.NETWORK:
            return ErrorResponse(handled=True, recovery="retry_operation", should_retry=True)
        if error.category is Category.UI:
            return ErrorResponse(handled=True)
        return ErrorResponse(handled=False)

    def _should_notify(self, error: MatchstickError) -> bool:
        if error.severity is Severity.LOW:
            return False
        if error.severity is Severity.CRITICAL:
            return True
        cutoff = self._now() - 60_000
        similar = [
            e for e in self._history
            if e.category is error.category and e.message == error.message and e.timestamp >= cutoff
        ]
        # The current error is already in the history
        return len(similar) <= 1

    def _build_notification(self, error: MatchstickError) -> Notification:
        critical = error.severity is Severity.CRITICAL
        actions = []
        if critical:
            actions.append("reload_game")
        if error.category is Category.STORAGE:
            actions.append("retry_save")
        if error.category is Category.NETWORK:
            actions.append("retry_operation")
        actions.append("dismiss")
        return Notification(
            type="error" if critical else "warning",
            title="Critical Error" if critical else _TITLES[error.category],
            message=_FRIENDLY_MESSAGES[error.category],
            timestamp=self._now(),
            duration_ms=None if critical else 5000,
            actions=actions,
        )

    def _send(self, notification: Notification) -> None:
        if not self._listeners:
            _logger.info(f"Notification: {notification.title} - {notification.message}")
            return
        for callback in list(self._listeners):
            try:
                callback(notification)
            except Exception as e:
                _logger.error(f"Notification listener failed: {e}")
