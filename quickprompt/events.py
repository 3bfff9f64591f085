"""Fire-and-forget notifications from the widget to its host."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger("quickprompt.events")

CHAT_CONNECTED = "chat-connected"
CHAT_ACTIVATED = "chat-activated"
CHAT_HIDDEN = "chat-hidden"
GENERATION_STARTED = "generation-started"
GENERATION_PROGRESS = "generation-progress"
GENERATION_COMPLETE = "generation-complete"
GENERATION_CANCELLED = "generation-cancelled"
GENERATION_ERROR = "generation-error"
MODEL_LOADING = "model-loading"
MODEL_LOADING_NEEDED = "model-loading-needed"
MODEL_PROGRESS = "model-progress"
MODEL_LOADED = "model-loaded"
MODEL_ERROR = "model-error"
STORAGE_WARNING = "storage-warning"
HISTORY_CLEARED = "history-cleared"

WILDCARD = "*"


@dataclass(frozen=True)
class Notification:
    name: str
    detail: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


Listener = Callable[[Notification], Any]


class EventBus:
    """Synchronous pub/sub. A failing listener is logged and never breaks the emitter."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def subscribe(self, name: str, listener: Listener) -> Callable[[], None]:
        """Register *listener* for *name* (or ``"*"`` for everything). Returns an unsubscribe callable."""
        self._listeners[name].append(listener)

        def unsubscribe() -> None:
            self.unsubscribe(name, listener)

        return unsubscribe

    def unsubscribe(self, name: str, listener: Listener) -> None:
        listeners = self._listeners.get(name)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def emit(self, name: str, **detail: Any) -> Notification:
        notification = Notification(name, detail)
        for listener in [*self._listeners.get(name, ()), *self._listeners.get(WILDCARD, ())]:
            try:
                listener(notification)
            except Exception:
                logger.warning(
                    "[QuickPrompt Events] Listener for '%s' raised; ignoring.", name, exc_info=True
                )
        return notification

    def clear(self) -> None:
        self._listeners.clear()

    def listener_count(self, name: str | None = None) -> int:
        if name is None:
            return sum(len(listeners) for listeners in self._listeners.values())
        return len(self._listeners.get(name, ()))
