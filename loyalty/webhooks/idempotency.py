"""Webhook idempotency: Redis-based deduplication.

Contract:
- Tracks processed event fingerprints in Redis with 24h TTL
- Key pattern: webhook:processed:{fingerprint}
- Duplicates are answered with 200 at intake (providers retry on errors)
- The fingerprint hashes canonical JSON (sorted keys), so key order in the
  delivered body does not matter
- This is a shortcut to skip queue/DB work, not the correctness boundary:
  the ledger's transaction hash decides whether an order is credited
- If Redis is down, lookups fail open (treated as not seen)
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from typing import Any, Mapping

import redis

from loyalty.queue import _get_redis

logger = logging.getLogger(__name__)

WEBHOOK_DEDUP_TTL_SECONDS = int(os.environ.get("WEBHOOK_DEDUP_TTL_SECONDS", "86400"))

_KEY_PREFIX = "webhook:processed"


def canonical_json(payload: Mapping[str, Any] | str | bytes) -> str:
    """Serialize a payload deterministically (sorted keys, compact)."""
    if isinstance(payload, (bytes, bytearray, str)):
        payload = json.loads(payload)
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def event_fingerprint(payload: Mapping[str, Any] | str | bytes) -> str:
    """SHA256 of the canonical serialization of an inbound event."""
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


class WebhookDedupCache:
    """TTL-bounded set of processed event fingerprints."""

    def __init__(
        self,
        client: redis.Redis | None = None,
        ttl: int = WEBHOOK_DEDUP_TTL_SECONDS,
    ):
        self._redis = client if client is not None else _get_redis()
        self._ttl = ttl

    @staticmethod
    def _key(fingerprint: str) -> str:
        return f"{_KEY_PREFIX}:{fingerprint}"

    def contains(self, fingerprint: str) -> bool:
        """True if ``fingerprint`` was marked within the TTL window."""
        if not fingerprint:
            return False
        try:
            return self._redis.exists(self._key(fingerprint)) == 1
        except redis.RedisError:
            # Redis down: fail open; the ledger still rejects duplicates
            logger.warning(
                "Redis unavailable for webhook dedup, allowing %s",
                fingerprint,
                exc_info=True,
            )
            return False

    def mark(self, fingerprint: str) -> None:
        """Record ``fingerprint`` as processed (sets or refreshes the TTL)."""
        if not fingerprint:
            return
        try:
            self._redis.set(self._key(fingerprint), "1", ex=self._ttl)
            logger.debug("Webhook %s marked as processed", fingerprint)
        except redis.RedisError:
            logger.warning("Failed to mark webhook as processed: %s", fingerprint, exc_info=True)


_cache: WebhookDedupCache | None = None


def get_dedup_cache() -> WebhookDedupCache:
    """Get or create the singleton WebhookDedupCache."""
    global _cache
    if _cache is None:
        _cache = WebhookDedupCache()
    return _cache
