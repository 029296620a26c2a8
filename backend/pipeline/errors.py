"""
Webhook Pipeline Errors
=======================
- SignatureInvalid: request rejected with 400, never processed
- PermanentEventError and subclasses: logged, acknowledged with 200,
  nothing written (redelivery would fail the same way)
- Retryable ReferentNotFound: the referent is created by another event
  that has not arrived yet; recorded as "deferred" and answered with 503
  (EventDeferred) so Stripe redelivers with backoff

Anything else raised while handling an event is transient and propagates
to the endpoint as a 500 so Stripe redelivers.
"""

from typing import Optional


class SignatureInvalid(Exception):
    """Webhook signature header missing, malformed, stale or wrong."""


class PermanentEventError(Exception):
    """Event can never be applied; acknowledge it and move on."""

    reason = "permanent_error"
    retryable = False

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.context = context


class MissingMetadata(PermanentEventError):
    reason = "missing_metadata"

    def __init__(self, object_id: str, missing: list):
        super().__init__(
            f"{object_id} is missing required metadata: {', '.join(missing)}",
            object_id=object_id,
            missing=missing,
        )
        self.missing = missing


class ReferentNotFound(PermanentEventError):
    reason = "referent_not_found"

    def __init__(self, kind: str, key: Optional[str], retryable: bool = False):
        super().__init__(f"{kind} not found: {key}", kind=kind, key=key)
        self.kind = kind
        self.key = key
        self.retryable = retryable


class MalformedEvent(PermanentEventError):
    reason = "malformed_event"


class EventDeferred(Exception):
    """Event recorded as deferred; the endpoint answers 503 so Stripe redelivers."""

    def __init__(self, stripe_event_id: str, detail: Optional[str]):
        super().__init__(f"{stripe_event_id} deferred: {detail}")
        self.stripe_event_id = stripe_event_id
        self.detail = detail
