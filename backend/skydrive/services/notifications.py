"""User-facing notifications (the UI renders them as toasts)."""
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

logger = logging.getLogger(__name__)

_LOG_LEVELS = {"success": logging.INFO, "info": logging.INFO, "error": logging.ERROR}


@dataclass(frozen=True)
class Notification:
    level: str
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Notifier:
    """Keeps the most recent notifications and fans them out to subscribers."""

    def __init__(self, maxlen: int = 50):
        self._recent: deque[Notification] = deque(maxlen=maxlen)
        self._listeners: list[Callable[[Notification], None]] = []

    def success(self, message: str) -> Notification:
        return self._emit("success", message)

    def info(self, message: str) -> Notification:
        return self._emit("info", message)

    def error(self, message: str) -> Notification:
        return self._emit("error", message)

    def recent(self) -> list[Notification]:
        """Most recent first."""
        return list(reversed(self._recent))

    def subscribe(self, listener: Callable[[Notification], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, level: str, message: str) -> Notification:
        note = Notification(level=level, message=message)
        self._recent.append(note)
        logger.log(_LOG_LEVELS[level], f"[notify:{level}] {message}")
        for listener in list(self._listeners):
            try:
                listener(note)
            except Exception as e:
                logger.error(f"Notification listener failed: {e}")
        return note
