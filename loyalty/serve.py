"""FastAPI application for the loyalty service.

Lifespan (skipped when TESTING=1):
- create the ledger schema if missing
- start the ingestion worker (which first recovers unacknowledged webhooks)
- stop the worker on shutdown

Run with: uvicorn loyalty.serve:app --port 3000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from loyalty.db import init_schema
from loyalty.webhooks.handlers import register_webhook_routes
from loyalty.worker import get_worker

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

_TESTING = os.environ.get("TESTING", "") == "1"

_WORKER_STOP_TIMEOUT_S = 10.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    if _TESTING:
        yield
        return

    logger.info("Initializing PostgreSQL schema...")
    init_schema()

    logger.info("Starting ingestion worker...")
    worker = get_worker()
    worker.start()
    try:
        yield
    finally:
        logger.info("Shutting down ingestion worker...")
        worker.stop(timeout=_WORKER_STOP_TIMEOUT_S)


def create_app() -> FastAPI:
    application = FastAPI(title="Loyalty Ledger", lifespan=lifespan)
    register_webhook_routes(application)
    return application


app = create_app()
