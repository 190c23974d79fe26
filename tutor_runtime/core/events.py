"""
Event channel used for progress and log forwarding.

Components emit into a channel; callers subscribe independently of control
flow and get back an unsubscribe function. A failing subscriber is logged and
never interrupts the emitter.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Deque, Generic, List, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E")

Subscriber = Callable[[E], None]


class EventChannel(Generic[E]):
    """Synchronous fan-out of events to registered subscribers."""

    def __init__(self, name: str, history: int = 0):
        self.name = name
        self._subscribers: List[Callable[[E], None]] = []
        self._history: Deque[E] = deque(maxlen=history or None)
        self._keep_history = history > 0

    def subscribe(self, callback: Callable[[E], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    def emit(self, event: E) -> None:
        if self._keep_history:
            self._history.append(event)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"[EventChannel:{self.name}] Subscriber error: {e}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def recent(self) -> List[E]:
        """Events retained in history (oldest first)."""
        return list(self._history)
