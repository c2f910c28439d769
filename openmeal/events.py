"""
Typed notifications for meal record mutations.

The record store publishes an event for every add, update and delete; the
analysis pipeline's state changes arrive the same way. Consumers either
register a callback or poll an asyncio queue.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .types import MealRecord

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class MealEvent:
    """A single mutation. ``record`` is None for deletions."""
    kind: EventKind
    meal_id: str
    record: Optional[MealRecord] = None


MealListener = Callable[[MealEvent], None]


class Subscription:
    """Handle returned by ``EventBus.subscribe``; close it to stop delivery."""

    def __init__(self, bus: "EventBus", listener: MealListener):
        self._bus = bus
        self._listener = listener

    def close(self) -> None:
        self._bus._remove(self._listener)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class EventBus:
    """In-process fan-out of ``MealEvent`` to subscribers."""

    def __init__(self):
        self._listeners: list[MealListener] = []

    def subscribe(self, listener: MealListener) -> Subscription:
        self._listeners.append(listener)
        return Subscription(self, listener)

    def queue(self, maxsize: int = 0) -> tuple[asyncio.Queue, Subscription]:
        """Subscribe with an asyncio queue instead of a callback.

        Events that do not fit a bounded queue are dropped with a warning.
        """
        q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

        def _put(event: MealEvent) -> None:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event queue full, dropping %s for %s", event.kind.value, event.meal_id)

        return q, self.subscribe(_put)

    def publish(self, event: MealEvent) -> None:
        # A failing listener must not starve the others
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning("Event listener failed on %s %s: %s", event.kind.value, event.meal_id, e)

    def _remove(self, listener: MealListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def __len__(self) -> int:
        return len(self._listeners)
