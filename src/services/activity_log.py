"""
ActivityLog - structured event sink for the indexing and caching services.

Events are kept in a bounded ring buffer, forwarded to the stdlib logger and
handed to any subscribed callbacks (UI toasts, telemetry, ...).
Emitting never raises and never blocks the caller.
"""
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Literal, Optional

from core.dates import utc_now

logger = logging.getLogger("activity")

ActivityLevel = Literal["info", "success", "warning", "error", "progress"]

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "progress": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class ActivityMessage:
    id: str
    level: ActivityLevel
    message: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[ActivityMessage], None]


class ActivityLog:
    def __init__(self, max_messages: int = 500):
        self.max_messages = max_messages
        self._messages: Deque[ActivityMessage] = deque(maxlen=max_messages)
        self._subscribers: List[Subscriber] = []
        self._counter = itertools.count(1)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, level: ActivityLevel, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        try:
            entry = ActivityMessage(
                id=f"{int(utc_now().timestamp() * 1000)}-{next(self._counter)}",
                level=level,
                message=message,
                timestamp=utc_now(),
                metadata=dict(metadata or {}),
            )
            self._messages.append(entry)
            logger.log(
                _LOG_LEVELS.get(level, logging.INFO),
                message,
                extra={"activity_level": level, "activity": entry.metadata},
            )
        except Exception as e:
            logger.debug(f"Dropped activity message: {e}")
            return

        for callback in list(self._subscribers):
            try:
                callback(entry)
            except Exception as e:
                logger.debug(f"Activity subscriber {callback!r} failed: {e}")

    def info(self, message: str, **metadata: Any) -> None:
        self.emit("info", message, metadata)

    def success(self, message: str, **metadata: Any) -> None:
        self.emit("success", message, metadata)

    def warning(self, message: str, **metadata: Any) -> None:
        self.emit("warning", message, metadata)

    def error(self, message: str, **metadata: Any) -> None:
        self.emit("error", message, metadata)

    def progress(self, message: str, current: int, total: int, **metadata: Any) -> None:
        metadata["progress"] = {"current": current, "total": total}
        self.emit("progress", message, metadata)

    def get_messages(self) -> List[ActivityMessage]:
        return list(self._messages)

    def clear(self) -> None:
        self._messages.clear()

    # Convenience events

    def start_feed_refresh(self, feed_title: str, feed_id: str) -> None:
        self.info(f"Refreshing feed: {feed_title}", feed_id=feed_id, feed_title=feed_title)

    def complete_feed_refresh(self, feed_title: str, feed_id: str, item_count: int) -> None:
        self.success(f"Refreshed {feed_title}: {item_count} items", feed_id=feed_id, feed_title=feed_title)

    def error_feed_refresh(self, feed_title: str, feed_id: str, error: str) -> None:
        self.error(f"Failed to refresh {feed_title}: {error}", feed_id=feed_id, feed_title=feed_title)

    def start_bundle_search(self, bundle_title: str, bundle_id: str) -> None:
        self.info(f"Searching stories for bundle: {bundle_title}", bundle_id=bundle_id, bundle_title=bundle_title)

    def complete_bundle_search(self, bundle_title: str, bundle_id: str, story_count: int) -> None:
        self.success(f"Found {story_count} stories for {bundle_title}", bundle_id=bundle_id, bundle_title=bundle_title)

    def remove_story_from_bundle(self, story_url: str, bundle_id: str) -> None:
        self.info(f"Removed story from bundle {bundle_id}: {story_url[:80]}", bundle_id=bundle_id)
