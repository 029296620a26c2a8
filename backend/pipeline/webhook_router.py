"""
Webhook Router
==============
Maps Stripe event types to handlers.

- Unknown types are logged and acknowledged (outcome "unhandled")
- PermanentEventError from a handler is logged and acknowledged
  (outcome "skipped") without retry, unless it is retryable (outcome
  "deferred")
- Every other exception propagates so the endpoint answers 500
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from pipeline.errors import PermanentEventError
from schemas.documents import WebhookOutcome
from schemas.event_definitions import parse_event

# Handler signature: async (event, log) -> detail string or None
WebhookHandler = Callable[[Any, Any], Awaitable[Optional[str]]]


@dataclass
class RouteResult:
    outcome: WebhookOutcome
    detail: Optional[str] = None


class WebhookRouter:
    """
    Webhook routing by event type.
    Separates routing logic from business logic.
    """

    def __init__(self):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, *event_types: str):
        """Decorator to register a handler for one or more event types"""
        def decorator(handler: WebhookHandler):
            for event_type in event_types:
                self._handlers[event_type] = handler
                self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, envelope: dict, correlation_id: str) -> RouteResult:
        """Validate the envelope and run its handler"""
        event_type = envelope.get("type", "unknown")
        log = self._logger.bind(correlation_id=correlation_id, event_type=event_type)

        handler = self._handlers.get(event_type)
        if not handler:
            log.info("no_handler")
            return RouteResult(WebhookOutcome.UNHANDLED, f"no handler for {event_type}")

        try:
            event = parse_event(envelope)
            detail = await handler(event, log)
        except PermanentEventError as e:
            if e.retryable:
                log.warning("event_deferred", reason=e.reason, error=str(e), **e.context)
                return RouteResult(WebhookOutcome.DEFERRED, f"{e.reason}: {e}")
            log.error("event_skipped", reason=e.reason, error=str(e), **e.context)
            return RouteResult(WebhookOutcome.SKIPPED, f"{e.reason}: {e}")

        return RouteResult(WebhookOutcome.PROCESSED, detail)

    @property
    def supported_events(self) -> List[str]:
        return list(self._handlers.keys())
