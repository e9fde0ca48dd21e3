"""
"Link changed" notifications.

The rendering layer keeps cached HTML per source item; the only signal it gets
that a cached rendering is stale is ``on_link_changed(source_id)``. The link
store fires it once per accepted insertion and once per status transition.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Callable, List, Protocol

logger = logging.getLogger("semanticlinker.notifications")


class LinkChangeSink(Protocol):
    def on_link_changed(self, source_id: int) -> None: ...


class LoggingSink:
    """
    Default sink: logs the invalidation at DEBUG level.
    """

    def on_link_changed(self, source_id: int) -> None:
        logger.debug("Link changed for source item %s", source_id)


class CallbackSink:
    """
    Fan out notifications to registered callbacks.

    A failing listener is logged and does not prevent later listeners or the
    store write that triggered it.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._callbacks: List[Callable[[int], None]] = []

    def subscribe(self, callback: Callable[[int], None]) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def on_link_changed(self, source_id: int) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(source_id)
            except Exception as exc:
                logger.warning(
                    "Link-changed listener %r failed for source %s: %s",
                    callback,
                    source_id,
                    exc,
                )


class RecordingSink:
    """
    Keeps every notification in order. Handy for tests and dry runs.
    """

    def __init__(self) -> None:
        self.events: List[int] = []

    def on_link_changed(self, source_id: int) -> None:
        self.events.append(source_id)


__all__ = ["LinkChangeSink", "LoggingSink", "CallbackSink", "RecordingSink"]
