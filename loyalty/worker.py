"""Ingestion worker: drains the webhook queue into the ledger.

A single loop in a background thread:

  claim payload ──▶ parse + fingerprint ──▶ credit_points ──▶ mark seen ──▶ ack
        │                    │                     │
     (empty)            (malformed)             (error)
        ▼                    ▼                     ▼
   wait poll_interval   dead-letter list     requeue at tail

Credited and rejected orders are both terminal: the fingerprint is marked
in the dedup cache either way.  Orders whose values the ledger columns
reject (a psycopg ``DataError``) are dead-lettered like malformed ones.

Stopping is cooperative: ``stop()`` sets the run's cancellation event,
which the loop checks before each claim; a ledger transaction already in
progress runs to completion.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Callable

import psycopg

from loyalty.ledger import CreditResult, OrderEvent, credit_points
from loyalty.queue import EventQueue, get_event_queue
from loyalty.webhooks.idempotency import WebhookDedupCache, event_fingerprint, get_dedup_cache

logger = logging.getLogger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

POLL_INTERVAL_S = float(os.environ.get("LOYALTY_WORKER_POLL_INTERVAL", "1.0"))
MAX_CONSECUTIVE_ERRORS = 5

STATE_IDLE = "idle-polling"
STATE_PROCESSING = "processing"
STATE_STOPPED = "stopped"

OUTCOME_IDLE = "idle"
OUTCOME_CREDITED = "credited"
OUTCOME_REJECTED = "rejected"
OUTCOME_REQUEUED = "requeued"
OUTCOME_DEAD_LETTERED = "dead_lettered"


class IngestionWorker:
    """Single consumer of the webhook queue.

    Owns its own run state: each ``start()`` creates a fresh cancellation
    event for the new loop, so a stopped worker can be started again.
    """

    def __init__(
        self,
        queue: EventQueue | None = None,
        dedup: WebhookDedupCache | None = None,
        *,
        credit: Callable[[OrderEvent], CreditResult] | None = None,
        poll_interval: float = POLL_INTERVAL_S,
        name: str = "loyalty-ingestion",
    ):
        self._queue = queue if queue is not None else get_event_queue()
        self._dedup = dedup if dedup is not None else get_dedup_cache()
        self._credit = credit if credit is not None else credit_points
        self._poll_interval = poll_interval
        self._name = name

        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._state = STATE_STOPPED
        self._consecutive_errors = 0
        self._counts = {
            "processed": 0,
            OUTCOME_CREDITED: 0,
            OUTCOME_REJECTED: 0,
            OUTCOME_REQUEUED: 0,
            OUTCOME_DEAD_LETTERED: 0,
        }

    @property
    def is_active(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def state(self) -> str:
        return self._state

    def start(self) -> bool:
        """Start the loop in a daemon thread.  No-op if already running.

        A loop that was asked to stop but is still finishing its current
        event is not running: it is joined first, so the two loops never
        share the processing list.

        Returns True if a new loop was started.
        """
        with self._lock:
            thread = self._thread
            if self.is_active:
                if not self._stop_event.is_set():
                    logger.warning("Ingestion worker already running")
                    return False
                if thread is not threading.current_thread():
                    logger.info("Waiting for the stopping ingestion worker to finish")
                    thread.join()
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(self._stop_event,),
                daemon=True,
                name=self._name,
            )
            self._state = STATE_IDLE
            self._thread.start()
        logger.info("Ingestion worker STARTED (poll=%ss)", self._poll_interval)
        return True

    def stop(self, timeout: float | None = None) -> None:
        """Signal the loop to stop; wait up to ``timeout`` seconds if given."""
        logger.info("Ingestion worker stopping...")
        self._stop_event.set()
        thread = self._thread
        if timeout is not None and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def stats(self) -> dict[str, Any]:
        return {
            "active": self.is_active,
            "state": self._state,
            **self._counts,
        }

    # ── The Loop ──────────────────────────────────────────────────────────

    def _run_loop(self, stop_event: threading.Event) -> None:
        try:
            self._queue.recover()
        except Exception:
            logger.exception("Failed to recover unacknowledged webhooks")

        while not stop_event.is_set():
            try:
                outcome = self.run_once()
            except Exception:
                # Claiming itself failed (e.g. Redis down)
                logger.error("Ingestion worker loop error", exc_info=True)
                self._state = STATE_IDLE
                stop_event.wait(self._poll_interval)
                continue

            if outcome == OUTCOME_IDLE:
                stop_event.wait(self._poll_interval)
            elif outcome == OUTCOME_REQUEUED and self._consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                logger.warning(
                    "%d consecutive processing failures, pausing %.1fs",
                    self._consecutive_errors,
                    self._poll_interval,
                )
                stop_event.wait(self._poll_interval)

        self._state = STATE_STOPPED
        logger.info(
            "Ingestion worker STOPPED (%d webhooks processed)", self._counts["processed"]
        )

    def run_once(self) -> str:
        """Claim and process at most one queued webhook.  Returns the outcome."""
        payload = self._queue.dequeue()
        if payload is None:
            return OUTCOME_IDLE

        self._state = STATE_PROCESSING
        try:
            outcome = self._process(payload)
        finally:
            self._state = STATE_IDLE
        self._counts[outcome] += 1
        self._counts["processed"] += 1
        return outcome

    def _process(self, payload: str) -> str:
        try:
            fingerprint = event_fingerprint(payload)
            order = OrderEvent.from_payload(json.loads(payload))
        except ValueError as e:
            # Invalid JSON or InvalidOrderError: retrying can never succeed
            logger.error("Malformed webhook payload, dead-lettering: %s", e)
            self._queue.dead_letter(payload)
            self._consecutive_errors = 0
            return OUTCOME_DEAD_LETTERED

        logger.info("Processing webhook for order %s", order.order_id)
        try:
            result = self._credit(order)
            self._dedup.mark(fingerprint)
            self._queue.ack(payload)
        except psycopg.DataError as e:
            # Values the ledger columns reject; retrying can never succeed
            logger.error(
                "Order %s rejected by the ledger, dead-lettering: %s", order.order_id, e
            )
            self._queue.dead_letter(payload)
            self._consecutive_errors = 0
            return OUTCOME_DEAD_LETTERED
        except Exception:
            self._consecutive_errors += 1
            logger.exception(
                "Failed to process webhook for order %s (%d consecutive), re-enqueueing",
                order.order_id,
                self._consecutive_errors,
            )
            self._queue.requeue(payload)
            return OUTCOME_REQUEUED

        self._consecutive_errors = 0
        if result.credited:
            logger.info(
                "Webhook processed for order %s. New balance: %d",
                order.order_id,
                result.new_balance,
            )
            return OUTCOME_CREDITED
        logger.info("Webhook for order %s not credited (%s)", order.order_id, result.reason)
        return OUTCOME_REJECTED


# ── Singleton ─────────────────────────────────────────────────────────────

_worker: IngestionWorker | None = None


def get_worker() -> IngestionWorker:
    global _worker
    if _worker is None:
        _worker = IngestionWorker()
    return _worker
