"""
Processed-event log used by consumers to apply each event once in effect.

The broker only promises at-least-once delivery, so every consumer keeps its
own record of the ``event_id``s it has already applied. Claiming an id is
atomic: of two concurrent deliveries of the same event, exactly one wins.
"""

import logging
import threading
from typing import Optional
from uuid import UUID

logger = logging.getLogger("idempotency")


class ProcessedEventLog:
    """
    Thread-safe set of applied event ids, private to one consumer.

    Usage inside a handler:

        if not log.claim(event.event_id):
            return  # duplicate delivery
        try:
            apply(event)
        except Exception:
            log.release(event.event_id)  # let the redelivery try again
            raise
    """

    def __init__(self, consumer: str):
        self.consumer = consumer
        self._seen: set[UUID] = set()
        self._lock = threading.Lock()

    def claim(self, event_id: UUID) -> bool:
        """Record ``event_id``; returns False if it was already recorded."""
        with self._lock:
            if event_id in self._seen:
                logger.warning(f"[{self.consumer}] Duplicate delivery of event {event_id} ignored")
                return False
            self._seen.add(event_id)
            return True

    def release(self, event_id: UUID) -> None:
        """Forget ``event_id`` after a failed apply so a redelivery can retry it."""
        with self._lock:
            self._seen.discard(event_id)

    def contains(self, event_id: Optional[UUID]) -> bool:
        with self._lock:
            return event_id in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
