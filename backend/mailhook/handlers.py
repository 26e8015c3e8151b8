"""
Built-in mailbox handlers.

Business handlers live with the code that embeds the receiver and are
registered on a DispatchRouter passed to create_app(). For a plain
deployment, MAILBOXES lists the mailboxes to accept with the logging
handler below, e.g.:

    MAILBOXES=support,sales,billing

Addresses outside that list fall through to the default handler and are
reported as unknown.
"""

import logging
import os

from mailhook.models.delivery import Delivery, HandlerResult
from mailhook.services.dispatch import DispatchRouter

logger = logging.getLogger(__name__)


def log_delivery(delivery: Delivery) -> HandlerResult:
    """Accept a delivery and log a one-line summary of it."""
    message = delivery.message
    subject = message.subject if message else None
    attachments = len(message.attachments) if message else 0
    logger.info(
        f"Accepted {delivery.id!r} for {delivery.address}: "
        f"subject={subject!r}, attachments={attachments}"
    )
    return HandlerResult.success()


def build_default_router() -> DispatchRouter:
    """Router with log_delivery registered for every mailbox in MAILBOXES."""
    router = DispatchRouter()
    mailboxes_env = os.getenv("MAILBOXES", "").strip()
    if mailboxes_env:
        for mailbox in (m.strip() for m in mailboxes_env.split(",")):
            if mailbox:
                router.register(mailbox, log_delivery)
    return router
