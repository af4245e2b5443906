"""In-process publish/subscribe bus.

Components receive the bus through their constructor; there is no global
instance.  Callbacks run synchronously on the publishing thread, so they
should be quick.  A failing callback is logged and does not stop delivery
to the other subscribers.

Topics used by Folio:

- ``store.initialized`` — catalog finished opening (payload: db path)
- ``store.count``       — number of papers after a write (payload: int)
- ``store.updated``     — a write happened (payload: epoch seconds)
- ``library.count`` / ``library.updated`` — relayed by the library
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]


class EventBus:
    """Topic-keyed subscriber registry with "already fired" memory."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callback]] = defaultdict(list)
        self._last: dict[str, Any] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, callback: Callback) -> Callable[[], None]:
        """Register *callback* for *topic*.  Returns an unsubscribe function."""
        with self._lock:
            self._subscribers[topic].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers[topic]:
                    self._subscribers[topic].remove(callback)

        return unsubscribe

    def publish(self, topic: str, payload: Any = None) -> None:
        """Deliver *payload* to every subscriber of *topic*."""
        with self._lock:
            self._last[topic] = payload
            callbacks = list(self._subscribers[topic])
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                logger.exception("Subscriber for '%s' failed", topic)

    def already(self, topic: str, callback: Callback) -> None:
        """Run *callback* now if *topic* has fired, otherwise once on first publish."""
        with self._lock:
            fired = topic in self._last
            payload = self._last.get(topic)
            if not fired:
                holder: dict[str, Callable[[], None]] = {}
                claimed = threading.Lock()

                def once(p: Any) -> None:
                    if not claimed.acquire(blocking=False):
                        return
                    holder["unsubscribe"]()
                    callback(p)

                self._subscribers[topic].append(once)

                def unsubscribe() -> None:
                    with self._lock:
                        if once in self._subscribers[topic]:
                            self._subscribers[topic].remove(once)

                holder["unsubscribe"] = unsubscribe
        if fired:
            callback(payload)

    def has_fired(self, topic: str) -> bool:
        with self._lock:
            return topic in self._last

    def last(self, topic: str, default: Any = None) -> Any:
        """Most recent payload published on *topic*."""
        with self._lock:
            return self._last.get(topic, default)
