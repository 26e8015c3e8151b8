"""
Mailhook API
FastAPI application receiving inbound email notifications over signed webhooks.

Environment variables
---------------------
SHUTDOWN_GRACE_SECONDS   How long shutdown waits for in-flight deliveries
                         before cancelling them (default: 10).
HOST_PORT                Port reported in the startup log (default: 8000).

See mailhook.services.receiver, mailhook.services.deduplicator and
mailhook.handlers for the rest.
"""

import logging
import os
from typing import Optional

from fastapi import FastAPI, HTTPException

from mailhook.handlers import build_default_router
from mailhook.routers import webhooks
from mailhook.services.deduplicator import SupabaseProcessedStore
from mailhook.services.dispatch import DispatchRouter
from mailhook.services.receiver import WebhookReceiver

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def create_app(
    receiver: Optional[WebhookReceiver] = None,
    router: Optional[DispatchRouter] = None,
) -> FastAPI:
    """
    Build the application around one WebhookReceiver.

    Pass `receiver` (tests) or `router` (embedding code with its own mailbox
    handlers); otherwise everything is configured from the environment.
    """
    if receiver is None:
        receiver = WebhookReceiver.from_env(router=router or build_default_router())

    app = FastAPI(
        title="Mailhook API",
        description="Signed, deduplicated inbound email webhooks",
        version=VERSION,
    )
    app.state.receiver = receiver

    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])

    @app.on_event("startup")
    async def log_startup() -> None:
        host_port = os.getenv("HOST_PORT", "8000")
        logger.info(
            "Mailhook API running at http://localhost:%s (mailboxes: %s)",
            host_port,
            ", ".join(receiver.router.prefixes) or "none",
        )

    @app.on_event("shutdown")
    async def drain_deliveries() -> None:
        await receiver.drain(float(os.getenv("SHUTDOWN_GRACE_SECONDS", "10")))

    @app.get("/")
    async def root():
        return {"message": "Mailhook API", "version": VERSION}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/health/store")
    async def health_store():
        """
        Check the processed-delivery store.

        The in-memory store is always reachable. For the Supabase store a
        lightweight SELECT is issued; returns 503 on failure.
        """
        store = receiver.deduplicator.store
        if not isinstance(store, SupabaseProcessedStore):
            return {"status": "ok", "store": "memory", "entries": len(store)}

        try:
            store.ping()
        except Exception as exc:
            logger.error(f"Processed store health check failed: {exc}")
            raise HTTPException(
                status_code=503,
                detail=f"Processed store unreachable: {str(exc)}",
            )
        return {"status": "ok", "store": "supabase", "table": store.table}

    return app


app = create_app()
