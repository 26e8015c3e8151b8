"""
Inbound webhook receiver (verify -> deduplicate -> dispatch).

One WebhookReceiver is built at application start and torn down at shutdown.
For every HTTP delivery it:

1. Verifies the HMAC signature over the raw body. Failure -> "rejected".
2. Parses the body into an InboundMessage. An authentic but malformed body
   can never succeed on retry -> "terminal_failure".
3. Takes the per-id lock and skips ids that already completed
   -> "already_processed". Claims the id in the processed store, so a worker
   sharing a durable store cannot run the same delivery concurrently.
4. Routes the delivery to one handler.
5. Marks the id processed only when the handler succeeded -> "processed".
   Retryable failures leave the id unmarked so the sender's redelivery can
   try again -> "retryable_failure". Terminal failures are also left
   unmarked -> "terminal_failure".

Steps 3-5 run as a background task. The HTTP answer waits for it for at most
the handler timeout; past that the sender gets "retryable_failure"
(handler_timeout) while the task keeps the per-id lock and the claim until
the handler really finishes, then marks the id if it succeeded. A sync
handler's worker thread cannot be interrupted, so releasing the lock early
would let the redelivery run the handler a second time.

Expected conditions come back as a DeliveryRecord; nothing here raises for
them. Every record is appended to the DeliveryLog.

Environment variables
---------------------
WEBHOOK_SIGNING_SECRET    Shared HMAC secret. When unset every delivery is
                          rejected.
HANDLER_TIMEOUT_SECONDS   How long a request waits for its delivery to finish
                          (default: 25). The sender gives up after about
                          30 seconds.
DELIVERY_LOG_SIZE         Outcomes kept for the operator endpoints (default: 500).
"""

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError

from mailhook.models.delivery import (
    Delivery,
    DeliveryOutcome,
    DeliveryRecord,
    HandlerStatus,
    InboundMessage,
)
from mailhook.services.deduplicator import DeliveryDeduplicator
from mailhook.services.delivery_log import DEFAULT_LOG_SIZE, DeliveryLog
from mailhook.services.dispatch import DispatchRouter
from mailhook.services.signature import verify_signature

logger = logging.getLogger(__name__)

DEFAULT_HANDLER_TIMEOUT_SECONDS = 25.0

_LOG_LEVELS = {
    DeliveryOutcome.PROCESSED: logging.INFO,
    DeliveryOutcome.ALREADY_PROCESSED: logging.INFO,
    DeliveryOutcome.REJECTED: logging.WARNING,
    DeliveryOutcome.RETRYABLE_FAILURE: logging.WARNING,
    DeliveryOutcome.TERMINAL_FAILURE: logging.ERROR,
}

_HANDLER_OUTCOMES = {
    HandlerStatus.SUCCESS: DeliveryOutcome.PROCESSED,
    HandlerStatus.RETRYABLE_FAILURE: DeliveryOutcome.RETRYABLE_FAILURE,
    HandlerStatus.TERMINAL_FAILURE: DeliveryOutcome.TERMINAL_FAILURE,
}


class WebhookReceiver:
    """
    Authenticates, deduplicates and dispatches inbound deliveries.

    Example:
        router = DispatchRouter()
        router.register("sales", handle_sales)
        receiver = WebhookReceiver(secret="whsec_...", router=router)

        record = await receiver.receive(raw_body, request.headers.get("X-Signature"))
    """

    def __init__(
        self,
        secret: Optional[str],
        router: Optional[DispatchRouter] = None,
        deduplicator: Optional[DeliveryDeduplicator] = None,
        delivery_log: Optional[DeliveryLog] = None,
        handler_timeout: float = DEFAULT_HANDLER_TIMEOUT_SECONDS,
    ):
        self.secret = secret or None
        self.router = router or DispatchRouter()
        self.deduplicator = deduplicator or DeliveryDeduplicator()
        self.delivery_log = delivery_log or DeliveryLog()
        self.handler_timeout = handler_timeout
        self._in_flight: set[asyncio.Task] = set()

    @classmethod
    def from_env(cls, router: Optional[DispatchRouter] = None) -> "WebhookReceiver":
        """Build a receiver from environment variables."""
        secret = os.getenv("WEBHOOK_SIGNING_SECRET") or None
        if not secret:
            logger.warning(
                "No webhook secret configured (WEBHOOK_SIGNING_SECRET); "
                "all inbound deliveries will be rejected"
            )
        return cls(
            secret=secret,
            router=router,
            deduplicator=DeliveryDeduplicator.from_env(),
            delivery_log=DeliveryLog(int(os.getenv("DELIVERY_LOG_SIZE", str(DEFAULT_LOG_SIZE)))),
            handler_timeout=float(
                os.getenv("HANDLER_TIMEOUT_SECONDS", str(DEFAULT_HANDLER_TIMEOUT_SECONDS))
            ),
        )

    # ------------------------------------------------------------------
    # Delivery processing
    # ------------------------------------------------------------------

    async def receive(self, raw_body: bytes, signature: Optional[str]) -> DeliveryRecord:
        """Process one HTTP delivery and return its outcome record."""
        received_at = datetime.now(timezone.utc)
        started = time.monotonic()

        outcome, delivery, route, reason = await self._process(raw_body, signature, received_at)

        record = DeliveryRecord(
            delivery_id=delivery.id if delivery else None,
            address=delivery.address if delivery else None,
            route=route,
            outcome=outcome,
            reason=reason,
            received_at=received_at,
            completed_at=datetime.now(timezone.utc),
            duration_ms=round((time.monotonic() - started) * 1000, 3),
        )
        self.delivery_log.append(record)
        logger.log(
            _LOG_LEVELS[outcome],
            f"Delivery {record.delivery_id!r} to {record.address!r} "
            f"(route={record.route}): {outcome.value}"
            + (f" ({reason})" if reason else ""),
        )
        return record

    async def _process(
        self,
        raw_body: bytes,
        signature: Optional[str],
        received_at: datetime,
    ) -> tuple[DeliveryOutcome, Optional[Delivery], Optional[str], Optional[str]]:
        # 1. Authenticate over the raw bytes, before any parsing
        if not self.secret:
            return DeliveryOutcome.REJECTED, None, None, "secret_not_configured"
        if not signature:
            return DeliveryOutcome.REJECTED, None, None, "missing_signature"
        if not verify_signature(raw_body, signature, self.secret):
            return DeliveryOutcome.REJECTED, None, None, "invalid_signature"

        # 2. Parse
        try:
            message = InboundMessage.model_validate_json(raw_body)
        except ValidationError as exc:
            logger.error(f"Authentic delivery with invalid payload: {exc}")
            return DeliveryOutcome.TERMINAL_FAILURE, None, None, "invalid_payload"

        delivery = Delivery(
            id=message.id,
            address=message.to,
            payload=raw_body,
            received_at=received_at,
            message=message,
        )
        route, _ = self.router.resolve(delivery.address)

        # 3-5. Run in a tracked task that outlives the wait below if it has to
        work = asyncio.create_task(self._dispatch(delivery))
        self._in_flight.add(work)
        work.add_done_callback(self._in_flight.discard)

        try:
            outcome, reason = await asyncio.wait_for(
                asyncio.shield(work), timeout=self.handler_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Delivery {delivery.id!r} still running after {self.handler_timeout}s; "
                "holding its lock until the handler finishes"
            )
            work.add_done_callback(
                lambda task: self._log_late_completion(delivery.id, task)
            )
            return DeliveryOutcome.RETRYABLE_FAILURE, delivery, route, "handler_timeout"

        return outcome, delivery, route, reason

    async def _dispatch(self, delivery: Delivery) -> tuple[DeliveryOutcome, Optional[str]]:
        """Check, claim, dispatch and mark one delivery under its per-id lock."""
        async with self.deduplicator.guard(delivery.id):
            try:
                fresh = await asyncio.to_thread(self.deduplicator.should_process, delivery.id)
                claimed = fresh and await asyncio.to_thread(self.deduplicator.claim, delivery.id)
                if fresh and not claimed:
                    # Another worker sharing the store holds the id, or it
                    # finished between the check and the claim.
                    fresh = await asyncio.to_thread(self.deduplicator.should_process, delivery.id)
            except Exception:
                logger.exception(f"Processed-set lookup failed for {delivery.id!r}")
                return DeliveryOutcome.RETRYABLE_FAILURE, "store_unavailable"

            if not fresh:
                return DeliveryOutcome.ALREADY_PROCESSED, None
            if not claimed:
                return DeliveryOutcome.RETRYABLE_FAILURE, "in_progress"

            try:
                result = await self.router.route(delivery)
            except asyncio.CancelledError:
                logger.warning(f"Delivery {delivery.id!r} cancelled before completion; not marked")
                self._release_claim(delivery.id)
                raise

            if not result.ok:
                await asyncio.to_thread(self._release_claim, delivery.id)
                return _HANDLER_OUTCOMES[result.status], result.reason

            try:
                await asyncio.to_thread(self.deduplicator.mark_processed, delivery.id)
            except Exception:
                # The handler's side effects happened but the sender will retry;
                # the next attempt re-runs the handler.
                logger.exception(f"Failed to mark {delivery.id!r} as processed")
                await asyncio.to_thread(self._release_claim, delivery.id)
                return DeliveryOutcome.RETRYABLE_FAILURE, "store_unavailable"

            return DeliveryOutcome.PROCESSED, None

    def _release_claim(self, delivery_id: str) -> None:
        try:
            self.deduplicator.release(delivery_id)
        except Exception:
            logger.exception(
                f"Failed to release claim on {delivery_id!r}; it lapses after "
                f"{self.deduplicator.claim_lease_seconds}s"
            )

    @staticmethod
    def _log_late_completion(delivery_id: str, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning(f"Timed-out delivery {delivery_id!r} was cancelled; not marked")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Timed-out delivery {delivery_id!r} failed in the background: {exc!r}")
            return
        outcome, reason = task.result()
        logger.info(
            f"Timed-out delivery {delivery_id!r} finished in the background: {outcome.value}"
            + (f" ({reason})" if reason else "")
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def in_flight(self) -> int:
        """Deliveries whose check/dispatch/mark step has not finished."""
        return sum(1 for task in self._in_flight if not task.done())

    async def drain(self, grace_seconds: float) -> None:
        """
        Wait up to grace_seconds for in-flight deliveries, then cancel the rest.

        A cancelled delivery never marks its id and gives up its claim, so the
        sender's retry will run the handler again.
        """
        pending = {t for t in self._in_flight if not t.done()}
        if not pending:
            return

        logger.info(f"Waiting up to {grace_seconds}s for {len(pending)} in-flight deliveries")
        _, still_running = await asyncio.wait(pending, timeout=grace_seconds)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} deliveries still running at shutdown")
            await asyncio.gather(*still_running, return_exceptions=True)
