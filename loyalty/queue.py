"""Redis-backed event queue between webhook intake and the ingestion worker.

Plain FIFO on a Redis list (RPUSH at the tail, pop at the head) with a
claim-then-ack step: ``dequeue`` moves the head item into a per-consumer
processing list with LMOVE, and it only leaves that list on ``ack``,
``requeue`` or ``dead_letter``. Items a crashed worker left in its
processing list are put back at the head of the queue by ``recover``.

Key layout:
  webhook:queue                   pending payloads
  webhook:processing:{consumer}   claimed, not yet acknowledged
  webhook:dead_letter             payloads that can never be processed
"""

from __future__ import annotations

import logging
import os

import redis

logger = logging.getLogger(__name__)

_REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

QUEUE_KEY = "webhook:queue"
PROCESSING_KEY_PREFIX = "webhook:processing"
DEAD_LETTER_KEY = "webhook:dead_letter"

_redis_client: redis.Redis | None = None


def _get_redis() -> redis.Redis:
    """Get or create the singleton Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(_REDIS_URL, decode_responses=True)
    return _redis_client


class EventQueue:
    """Unbounded FIFO of serialized webhook payloads."""

    def __init__(
        self,
        client: redis.Redis | None = None,
        *,
        consumer: str = "default",
        key: str = QUEUE_KEY,
    ):
        self._redis = client if client is not None else _get_redis()
        self._key = key
        self._processing_key = f"{PROCESSING_KEY_PREFIX}:{consumer}"

    @property
    def key(self) -> str:
        return self._key

    @property
    def processing_key(self) -> str:
        return self._processing_key

    def enqueue(self, payload: str) -> int:
        """Append ``payload`` at the tail.  Returns the new queue length."""
        length = self._redis.rpush(self._key, payload)
        logger.debug("Webhook added to queue (depth=%d)", length)
        return length

    def dequeue(self) -> str | None:
        """Claim the oldest payload, or None if the queue is empty.

        The payload stays in the processing list until acknowledged.
        """
        payload = self._redis.lmove(self._key, self._processing_key, "LEFT", "RIGHT")
        if payload is not None:
            logger.debug("Webhook claimed from queue")
        return payload

    def ack(self, payload: str) -> None:
        """Drop a claimed payload for good."""
        self._redis.lrem(self._processing_key, 1, payload)

    def requeue(self, payload: str) -> None:
        """Release a claimed payload back to the tail of the queue."""
        pipe = self._redis.pipeline(transaction=True)
        pipe.lrem(self._processing_key, 1, payload)
        pipe.rpush(self._key, payload)
        pipe.execute()
        logger.info("Webhook re-enqueued for retry")

    def dead_letter(self, payload: str) -> None:
        """Move a claimed payload to the dead-letter list."""
        pipe = self._redis.pipeline(transaction=True)
        pipe.lrem(self._processing_key, 1, payload)
        pipe.rpush(DEAD_LETTER_KEY, payload)
        pipe.execute()
        logger.warning("Webhook moved to dead-letter list %s", DEAD_LETTER_KEY)

    def recover(self) -> int:
        """Return unacknowledged claims to the head of the queue.

        Claim order is preserved.  Returns the number of payloads recovered.
        """
        recovered = 0
        while self._redis.lmove(self._processing_key, self._key, "RIGHT", "LEFT") is not None:
            recovered += 1
        if recovered:
            logger.warning(
                "Recovered %d unacknowledged webhook(s) from %s",
                recovered,
                self._processing_key,
            )
        return recovered

    def size(self) -> int:
        return self._redis.llen(self._key) or 0

    def in_flight(self) -> int:
        return self._redis.llen(self._processing_key) or 0


_queue: EventQueue | None = None


def get_event_queue() -> EventQueue:
    """Get or create the singleton EventQueue."""
    global _queue
    if _queue is None:
        _queue = EventQueue()
    return _queue
