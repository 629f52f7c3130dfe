"""Webhook and balance HTTP handlers (FastAPI routes).

POST /webhooks/orders/create:
1. Reads raw body (needed for HMAC verification)
2. Verifies Shopify signature (401 bad/missing, 500 secret not configured)
3. Parses and validates the order (400 on malformed payload)
4. Checks the dedup cache (200 already_processed)
5. Enqueues for the ingestion worker and returns 202 immediately

Crediting happens asynchronously; the response never reflects the ledger.
Error responses carry no internal details.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from loyalty import ledger
from loyalty.errors import InvalidOrderError, WebhookAuthenticationError, WebhookConfigurationError
from loyalty.queue import get_event_queue
from loyalty.webhooks.idempotency import canonical_json, event_fingerprint, get_dedup_cache
from loyalty.webhooks.verification import verify_webhook
from loyalty.worker import get_worker

logger = logging.getLogger(__name__)

# Webhook receive counter for monitoring (simple in-memory)
_webhook_counts: dict[str, int] = {}


class CustomerBalanceOut(BaseModel):
    email: str
    points_balance: int
    shopify_id: int


class CustomerListOut(BaseModel):
    count: int
    customers: list[CustomerBalanceOut]


class LedgerEntryOut(BaseModel):
    id: int
    order_id: int
    amount: str
    currency: str
    points_added: int
    created_at: datetime | None = None


class TransactionListOut(BaseModel):
    email: str
    count: int
    transactions: list[LedgerEntryOut]


def _log_webhook(order_id: object, webhook_id: str, status: str) -> None:
    """Audit log for webhook activity."""
    _webhook_counts[status] = _webhook_counts.get(status, 0) + 1
    logger.info(
        "WEBHOOK_AUDIT order=%s id=%s status=%s count=%d",
        order_id,
        webhook_id,
        status,
        _webhook_counts[status],
    )


def _balance_out(customer: ledger.Customer) -> CustomerBalanceOut:
    return CustomerBalanceOut(
        email=customer.email,
        points_balance=customer.points_balance,
        shopify_id=customer.external_id,
    )


async def _handle_order_created(request: Request) -> JSONResponse:
    start = time.time()

    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    # 1. Verify signature on the exact bytes received
    try:
        verify_webhook(body, headers)
    except WebhookConfigurationError:
        _log_webhook("unknown", "unknown", "misconfigured")
        return JSONResponse({"error": "Server configuration error"}, status_code=500)
    except WebhookAuthenticationError as e:
        _log_webhook("unknown", "unknown", "signature_failed")
        return JSONResponse(
            {"error": "Unauthorized", "message": e.reason}, status_code=401
        )

    # 2. Parse + validate
    try:
        payload = json.loads(body)
        order = ledger.OrderEvent.from_payload(payload)
    except (json.JSONDecodeError, UnicodeDecodeError):
        _log_webhook("unknown", "unknown", "invalid_json")
        return JSONResponse({"error": "Invalid JSON payload"}, status_code=400)
    except InvalidOrderError as e:
        _log_webhook("unknown", "unknown", "invalid_order")
        return JSONResponse(
            {"error": "Invalid order payload", "field": e.field}, status_code=400
        )

    # 3. Dedup shortcut (ledger remains the authoritative guard)
    webhook_id = event_fingerprint(payload)
    if get_dedup_cache().contains(webhook_id):
        _log_webhook(order.order_id, webhook_id, "already_processed")
        return JSONResponse({"status": "already_processed", "id": webhook_id}, status_code=200)

    # 4. Queue for the worker
    try:
        get_event_queue().enqueue(canonical_json(payload))
    except Exception:
        logger.exception("Failed to enqueue webhook for order %s", order.order_id)
        _log_webhook(order.order_id, webhook_id, "enqueue_failed")
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    _log_webhook(order.order_id, webhook_id, "queued")
    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook accepted in %.1fms: order %s", elapsed_ms, order.order_id)
    return JSONResponse({"status": "queued", "id": webhook_id}, status_code=202)


def register_webhook_routes(app: FastAPI) -> None:
    """Register webhook intake and balance read routes on the FastAPI app."""

    @app.post("/webhooks/orders/create")
    async def orders_create_webhook(request: Request):
        """Receive Shopify orders/create webhooks (signature-verified)."""
        return await _handle_order_created(request)

    @app.get("/webhooks/status")
    def webhook_status():
        """Queue depth, worker state and receive counts."""
        queue = get_event_queue()
        return {
            "queue_depth": queue.size(),
            "in_flight": queue.in_flight(),
            "worker": get_worker().stats(),
            "counts": dict(_webhook_counts),
        }

    @app.get("/customers/{email}/balance", response_model=CustomerBalanceOut)
    def customer_balance(email: str):
        customer = ledger.get_customer_balance(email)
        if customer is None:
            return JSONResponse(
                {"error": "Customer not found", "email": email}, status_code=404
            )
        return _balance_out(customer)

    @app.get("/customers/{email}/transactions", response_model=TransactionListOut)
    def customer_transactions(email: str, limit: int = 50):
        if ledger.get_customer_balance(email) is None:
            return JSONResponse(
                {"error": "Customer not found", "email": email}, status_code=404
            )
        entries = ledger.list_transactions(email, limit=min(max(limit, 1), 500))
        return TransactionListOut(
            email=ledger.normalize_email(email),
            count=len(entries),
            transactions=[
                LedgerEntryOut(
                    id=e.id,
                    order_id=e.order_id,
                    amount=str(e.amount),
                    currency=e.currency,
                    points_added=e.points_added,
                    created_at=e.created_at,
                )
                for e in entries
            ],
        )

    @app.get("/customers", response_model=CustomerListOut)
    def customers():
        rows = ledger.list_customers()
        return CustomerListOut(count=len(rows), customers=[_balance_out(c) for c in rows])

    @app.get("/health")
    def health():
        return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}

    logger.info("Webhook routes registered: /webhooks/orders/create, /customers")
