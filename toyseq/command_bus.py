"""In-process publish/subscribe of commands keyed by their type."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Callable

__all__ = ["CommandBus"]

Handler = Callable[[Any, int], None]


class CommandBus:
    """Routes each published command to the handlers for its exact type."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: defaultdict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, command_type: type, handler: Handler) -> None:
        """Call ``handler(command, sender_id)`` for commands of ``command_type``."""
        with self._lock:
            self._handlers[command_type].append(handler)

    def publish(self, command: Any, sender_id: int) -> None:
        """Deliver ``command`` to its subscribers, outside the lock."""
        with self._lock:
            handlers = list(self._handlers.get(type(command), ()))
        for handler in handlers:
            handler(command, sender_id)