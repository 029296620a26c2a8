# schemas/documents.py
# ============================================================================
# TRAINER LEDGER - DOCUMENT MODELS
# ============================================================================
# Shapes of the documents the ledger writes. Fields are snake_case in Python
# and camelCase in the store, where the CMS reads them.
#
# Money:
# - subscriptions / transactions / payouts: integer minor units (cents)
# - users.financial counters: Decimal major units (updated via Increment)
# ============================================================================

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED)


class BillingType(str, Enum):
    ONE_TIME = "one_time"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    RENEWAL = "renewal"
    REFUND = "refund"


class AccessStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    UNHANDLED = "unhandled"
    # Referent not recorded yet; redelivery is processed again
    DEFERRED = "deferred"


# ============================================================================
# SECTION 2: DOCUMENTS
# ============================================================================

class StoredDocument(BaseModel):
    """Base for documents written to the store."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        validate_default=True,
        arbitrary_types_allowed=True,
    )

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SubscriptionRecord(StoredDocument):
    """
    Trainer/student/program binding created by a completed checkout.
    Invariant at creation: trainer_earnings + platform_fee == price.
    """
    id: str
    student_id: str
    trainer_id: str
    program_id: str
    stripe_checkout_session_id: str
    stripe_payment_intent_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    type: BillingType = BillingType.ONE_TIME
    price: int
    platform_fee: int
    trainer_earnings: int
    currency: str
    # datetime or SERVER_TIMESTAMP
    start_date: Any
    current_period_end: Optional[datetime] = None
    created_at: Any
    updated_at: Any


class TransactionRecord(StoredDocument):
    """Immutable ledger entry. net_amount is negative for refunds."""
    id: str
    subscription_id: Optional[str] = None
    trainer_id: str
    student_id: Optional[str] = None
    program_id: Optional[str] = None
    type: TransactionType
    gross_amount: int
    platform_fee: int
    net_amount: int
    currency: str
    status: str = "succeeded"
    stripe_payment_intent_id: Optional[str] = None
    stripe_invoice_id: Optional[str] = None
    stripe_charge_id: Optional[str] = None
    created_at: Any


class PayoutRecord(StoredDocument):
    id: str
    trainer_id: str
    stripe_transfer_id: str
    amount: int
    currency: str
    destination: Optional[str] = None
    created_at: Any


class ProgramAccess(StoredDocument):
    """users/{studentId}.programs.{programId}"""
    access_granted_at: Any
    subscription_id: str
    trainer_id: str
    status: AccessStatus = AccessStatus.ACTIVE


class ReviewRecord(StoredDocument):
    id: str
    trainer_id: str
    student_id: str
    student_name: str = ""
    student_photo_url: Optional[str] = Field(default=None, alias="studentPhotoURL")
    rating: int
    comment: str = ""
    created_at: Any
    updated_at: Any


class WebhookEventRecord(StoredDocument):
    """webhook_events/{stripeEventId} audit entry"""
    type: str
    status: WebhookOutcome
    detail: Optional[str] = None
    received_at: Any
    processed_at: Any


__all__ = [
    "SubscriptionStatus",
    "BillingType",
    "TransactionType",
    "AccessStatus",
    "WebhookOutcome",
    "StoredDocument",
    "SubscriptionRecord",
    "TransactionRecord",
    "PayoutRecord",
    "ProgramAccess",
    "ReviewRecord",
    "WebhookEventRecord",
]
