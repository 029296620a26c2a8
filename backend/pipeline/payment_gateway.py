"""
Webhook Gateway
===============
Entry point for Stripe deliveries:

- Signature verification BEFORE parsing (WebhookVerifier)
- Exact-replay short-circuit via the webhook_events audit log (deferred
  events are not final and are processed again on redelivery)
- Routing to the ledger handlers (WebhookRouter + LedgerWriter)
- Outcome recorded per Stripe event id with correlation-bound logs

Processing is synchronous within the request: a transient failure
propagates so the endpoint answers 500 and Stripe redelivers. Handlers
are idempotent, so a redelivery after a partial failure is safe.

Example:
    gateway = WebhookGateway(store, WebhookVerifier(secret))
    result = await gateway.process(payload, signature)
"""

from decimal import Decimal
from typing import Optional, Union

import structlog

from pipeline.errors import EventDeferred
from pipeline.ledger_writer import BillingIntervalResolver, LedgerWriter
from pipeline.webhook_router import RouteResult, WebhookRouter
from pipeline.webhook_verifier import WebhookVerifier
from schemas.documents import WebhookEventRecord, WebhookOutcome
from storage.document_store import SERVER_TIMESTAMP, DocumentStore, utcnow

# Outcomes that make a redelivery of the same event id a no-op
FINAL_OUTCOMES = (WebhookOutcome.PROCESSED.value, WebhookOutcome.SKIPPED.value)


class WebhookGateway:
    """Verify, dedupe, route and record Stripe webhook events"""

    def __init__(
        self,
        store: DocumentStore,
        verifier: WebhookVerifier,
        interval_resolver: Optional[BillingIntervalResolver] = None,
        fee_percent: Optional[Union[Decimal, int, str]] = None,
        router: Optional[WebhookRouter] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.router = router or WebhookRouter()
        self.ledger = LedgerWriter(store, interval_resolver, fee_percent)
        self.ledger.register_handlers(self.router)
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(component="webhook_gateway", correlation_id=correlation_id)

    async def process(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Handle one webhook delivery.
        Raises SignatureInvalid (400), EventDeferred (503) or any transient
        error (500).
        """
        envelope = self.verifier.verify(payload, signature)

        stripe_event_id = envelope["id"]
        event_type = envelope["type"]
        log = self._get_logger(stripe_event_id).bind(event_type=event_type)
        log.info("webhook_received", livemode=envelope.get("livemode", False))

        seen = await self.store.get("webhook_events", stripe_event_id)
        if seen is not None and seen.get("status") in FINAL_OUTCOMES:
            log.info("webhook_duplicate", previous_status=seen.get("status"))
            return {"received": True, "duplicate": True}

        received_at = utcnow()
        try:
            result = await self.router.route(envelope, stripe_event_id)
        except Exception as e:
            log.error("webhook_failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            raise

        await self._record(stripe_event_id, event_type, result, received_at)
        log.info("webhook_processed", outcome=result.outcome.value, detail=result.detail)
        if result.outcome == WebhookOutcome.DEFERRED:
            raise EventDeferred(stripe_event_id, result.detail)
        return {"received": True}

    async def _record(self, stripe_event_id: str, event_type: str, result: RouteResult, received_at) -> None:
        record = WebhookEventRecord(
            type=event_type,
            status=result.outcome,
            detail=result.detail,
            received_at=received_at,
            processed_at=SERVER_TIMESTAMP,
        )
        await self.store.set("webhook_events", stripe_event_id, record.to_document())
