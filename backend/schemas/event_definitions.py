# schemas/event_definitions.py
# ============================================================================
# TRAINER LEDGER - STRIPE EVENT SCHEMAS
# ============================================================================
# Purpose: Type-safe envelopes for the Stripe webhook events the ledger reads
#
# - One envelope variant per handled event type, discriminated on `type`
# - Each variant carries a typed `data.object`
# - Unknown fields are ignored; Stripe adds them across API versions
# - Expandable references ("cus_123" or {"id": "cus_123", ...}) collapse to ids
# ============================================================================

from typing import Annotated, Any, Dict, Generic, List, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from pipeline.errors import MalformedEvent


def _expandable_id(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("id")
    return value


# ============================================================================
# SECTION 1: STRIPE OBJECTS
# ============================================================================

class StripeObject(BaseModel):
    """Base for Stripe API objects (extra fields dropped)."""
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def metadata_or_empty(cls, value: Any) -> Any:
        return value or {}


class CheckoutSession(StripeObject):
    mode: Literal["payment", "subscription", "setup"] = "payment"
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    payment_status: Optional[str] = None
    payment_intent: Optional[str] = None
    subscription: Optional[str] = None
    customer: Optional[str] = None

    collapse_ids = field_validator(
        "payment_intent", "subscription", "customer", mode="before"
    )(_expandable_id)


class Period(BaseModel):
    start: Optional[int] = None
    end: Optional[int] = None


class InvoiceLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    period: Optional[Period] = None


class InvoiceLines(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: List[InvoiceLine] = Field(default_factory=list)


class Invoice(StripeObject):
    subscription: Optional[str] = None
    billing_reason: Optional[str] = None
    amount_paid: int = 0
    currency: Optional[str] = None
    payment_intent: Optional[str] = None
    charge: Optional[str] = None
    customer: Optional[str] = None
    period_end: Optional[int] = None
    lines: InvoiceLines = Field(default_factory=InvoiceLines)
    parent: Optional[Dict[str, Any]] = None

    collapse_ids = field_validator(
        "subscription", "payment_intent", "charge", "customer", mode="before"
    )(_expandable_id)

    @property
    def subscription_id(self) -> Optional[str]:
        """Subscription id, from the legacy field or the newer `parent` block."""
        if self.subscription:
            return self.subscription
        details = (self.parent or {}).get("subscription_details") or {}
        return _expandable_id(details.get("subscription"))

    @property
    def line_period_end(self) -> Optional[int]:
        for line in self.lines.data:
            if line.period and line.period.end:
                return line.period.end
        return self.period_end


class Recurring(BaseModel):
    model_config = ConfigDict(extra="ignore")

    interval: Optional[str] = None


class Price(BaseModel):
    model_config = ConfigDict(extra="ignore")

    recurring: Optional[Recurring] = None


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    price: Optional[Price] = None
    current_period_end: Optional[int] = None


class SubscriptionItems(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: List[SubscriptionItem] = Field(default_factory=list)


class StripeSubscription(StripeObject):
    status: str
    current_period_end: Optional[int] = None
    canceled_at: Optional[int] = None
    customer: Optional[str] = None
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)

    collapse_ids = field_validator("customer", mode="before")(_expandable_id)

    @property
    def interval(self) -> Optional[str]:
        for item in self.items.data:
            if item.price and item.price.recurring and item.price.recurring.interval:
                return item.price.recurring.interval
        return None

    @property
    def period_end(self) -> Optional[int]:
        # Newer API versions only report the period on subscription items
        if self.current_period_end:
            return self.current_period_end
        for item in self.items.data:
            if item.current_period_end:
                return item.current_period_end
        return None


class Transfer(StripeObject):
    amount: int
    currency: str
    destination: Optional[str] = None

    collapse_ids = field_validator("destination", mode="before")(_expandable_id)


class Charge(StripeObject):
    amount: int
    amount_refunded: int = 0
    currency: str
    payment_intent: Optional[str] = None
    invoice: Optional[str] = None
    refunded: bool = False

    collapse_ids = field_validator("payment_intent", "invoice", mode="before")(_expandable_id)


class Account(StripeObject):
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False


class PaymentIntent(StripeObject):
    amount: int = 0
    currency: Optional[str] = None
    status: Optional[str] = None


class Payout(StripeObject):
    amount: int = 0
    currency: Optional[str] = None
    status: Optional[str] = None


# ============================================================================
# SECTION 2: EVENT ENVELOPES
# ============================================================================

ObjT = TypeVar("ObjT")


class EventData(BaseModel, Generic[ObjT]):
    model_config = ConfigDict(extra="ignore")

    object: ObjT


class BaseStripeEvent(BaseModel):
    """Fields shared by every Stripe event envelope."""
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    account: Optional[str] = None


class CheckoutSessionCompleted(BaseStripeEvent):
    # async_payment_succeeded arrives once a delayed method (boleto) settles
    type: Literal["checkout.session.completed", "checkout.session.async_payment_succeeded"]
    data: EventData[CheckoutSession]


class CheckoutPaymentFailed(BaseStripeEvent):
    type: Literal["checkout.session.async_payment_failed"]
    data: EventData[CheckoutSession]


class InvoicePaid(BaseStripeEvent):
    type: Literal["invoice.payment_succeeded", "invoice.paid"]
    data: EventData[Invoice]


class InvoicePaymentFailed(BaseStripeEvent):
    type: Literal["invoice.payment_failed"]
    data: EventData[Invoice]


class SubscriptionUpdated(BaseStripeEvent):
    type: Literal["customer.subscription.updated"]
    data: EventData[StripeSubscription]


class SubscriptionDeleted(BaseStripeEvent):
    type: Literal["customer.subscription.deleted"]
    data: EventData[StripeSubscription]


class TransferCreated(BaseStripeEvent):
    type: Literal["transfer.created"]
    data: EventData[Transfer]


class ChargeRefunded(BaseStripeEvent):
    type: Literal["charge.refunded"]
    data: EventData[Charge]


class AccountUpdated(BaseStripeEvent):
    type: Literal["account.updated"]
    data: EventData[Account]


class PaymentIntentEvent(BaseStripeEvent):
    type: Literal["payment_intent.succeeded", "payment_intent.payment_failed"]
    data: EventData[PaymentIntent]


class PayoutEvent(BaseStripeEvent):
    type: Literal["payout.paid", "payout.failed"]
    data: EventData[Payout]


StripeEvent = Annotated[
    Union[
        CheckoutSessionCompleted,
        CheckoutPaymentFailed,
        InvoicePaid,
        InvoicePaymentFailed,
        SubscriptionUpdated,
        SubscriptionDeleted,
        TransferCreated,
        ChargeRefunded,
        AccountUpdated,
        PaymentIntentEvent,
        PayoutEvent,
    ],
    Field(discriminator="type"),
]

_event_adapter = TypeAdapter(StripeEvent)


def parse_event(envelope: Dict[str, Any]) -> BaseStripeEvent:
    """
    Validate a raw webhook envelope into its typed variant.

    Raises MalformedEvent when the type is not modelled or the object does
    not have the fields the ledger relies on.
    """
    try:
        return _event_adapter.validate_python(envelope)
    except ValidationError as e:
        raise MalformedEvent(
            f"Invalid {envelope.get('type', 'unknown')} event: {e.error_count()} error(s)",
            event_id=envelope.get("id"),
            errors=e.errors(include_url=False),
        ) from e


# ============================================================================
# SECTION 3: EXPORTS
# ============================================================================

__all__ = [
    # Objects
    "StripeObject",
    "CheckoutSession",
    "Invoice",
    "StripeSubscription",
    "Transfer",
    "Charge",
    "Account",
    "PaymentIntent",
    "Payout",

    # Envelopes
    "BaseStripeEvent",
    "CheckoutSessionCompleted",
    "CheckoutPaymentFailed",
    "InvoicePaid",
    "InvoicePaymentFailed",
    "SubscriptionUpdated",
    "SubscriptionDeleted",
    "TransferCreated",
    "ChargeRefunded",
    "AccountUpdated",
    "PaymentIntentEvent",
    "PayoutEvent",
    "StripeEvent",
    "parse_event",
]
