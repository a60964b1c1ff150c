import asyncio
import logging
import time
from dataclasses import dataclass
from enum import StrEnum

from gateway_webhooks.database import Database
from gateway_webhooks.dispatcher import EventDispatcher
from gateway_webhooks.metrics import EVENTS_TOTAL, PROCESSING_DURATION, PROCESSING_ERRORS_TOTAL
from gateway_webhooks.retry import RetryExecutor
from gateway_webhooks.models import WebhookEvent
from gateway_webhooks.services import AuditService
from gateway_webhooks.side_effects import SideEffects
from gateway_webhooks.signature import SignatureVerifier
from gateway_webhooks.states import ProcessingStatus
from gateway_webhooks.store import SQLiteIdempotencyStore

logger = logging.getLogger(__name__)


class ReceiveOutcome(StrEnum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"


@dataclass(frozen=True)
class ReceiveResult:
    event_id: str
    event_type: str
    outcome: ReceiveOutcome


class WebhookReceiver:
    """Entry point for one gateway delivery.

    verify -> idempotency gate -> retried dispatch -> finalize -> audit.
    Rejections raise before anything is recorded. A dispatch that still fails
    after the last retry (or runs past ``timeout``) marks the event failed and
    re-raises so the caller can ask the gateway to redeliver.

    Each dispatch attempt is one database transaction. Its notifications and
    audit entries are sent only after it commits, so a retried attempt starts
    from the state the failed one found.
    """

    def __init__(
        self,
        verifier: SignatureVerifier,
        store: SQLiteIdempotencyStore,
        dispatcher: EventDispatcher,
        retry: RetryExecutor,
        audit: AuditService,
        database: Database,
        side_effects: SideEffects,
        timeout: float | None = None,
    ) -> None:
        self._verifier = verifier
        self._store = store
        self._dispatcher = dispatcher
        self._retry = retry
        self._audit = audit
        self._db = database
        self._effects = side_effects
        self._timeout = timeout or None

    async def receive(self, payload: bytes, signature: str | None) -> ReceiveResult:
        try:
            event = self._verifier.verify(payload, signature)
        except Exception:
            EVENTS_TOTAL.labels(result="rejected").inc()
            raise

        token = await self._store.begin(event)
        if token is None:
            EVENTS_TOTAL.labels(result="duplicate").inc()
            logger.info("Webhook event %s already processed, skipping", event.id)
            return ReceiveResult(event.id, event.type, ReceiveOutcome.ALREADY_PROCESSED)

        logger.info("Processing %s event %s (delivery %d)", event.type, event.id, token.attempt)
        await self._log_audit("Processing", event.id, f"Processing gateway webhook event {event.type}")
        start = time.monotonic()
        try:
            async with asyncio.timeout(self._timeout):
                await self._retry.run(lambda: self._attempt(event), label=f"{event.type} {event.id}")
        except Exception as e:
            PROCESSING_ERRORS_TOTAL.inc()
            EVENTS_TOTAL.labels(result="failed").inc()
            reason = str(e) or type(e).__name__
            logger.error("Error processing webhook event %s of type %s: %s", event.id, event.type, reason)
            await self._store.complete(token, ProcessingStatus.FAILED, reason)
            await self._log_audit(
                "Failed",
                event.id,
                f"Failed to process gateway webhook event {event.type}: {reason}",
            )
            raise
        finally:
            PROCESSING_DURATION.observe(time.monotonic() - start)

        await self._store.complete(token, ProcessingStatus.PROCESSED)
        EVENTS_TOTAL.labels(result="processed").inc()
        await self._log_audit("Processed", event.id, f"Successfully processed gateway webhook event {event.type}")
        logger.info("Processed %s event %s", event.type, event.id)
        return ReceiveResult(event.id, event.type, ReceiveOutcome.PROCESSED)

    async def _attempt(self, event: WebhookEvent) -> None:
        async with self._effects.deferred():
            async with self._db.transaction():
                await self._dispatcher.dispatch(event)

    async def _log_audit(self, action: str, event_id: str, description: str) -> None:
        try:
            await self._audit.log_action("Webhook", action, event_id, description)
        except Exception:
            logger.exception("Audit Webhook/%s for %s failed", action, event_id)
