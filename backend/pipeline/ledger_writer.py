"""
Ledger Writer
=============
Projects Stripe events onto the document store.

Per event type one idempotent handler, each running a single store
transaction so a redelivered or concurrent event never double-books:

- checkout.session.completed    subscription + purchase entry + earnings + access grant
                                (async_payment_succeeded when a delayed method settles)
- invoice.payment_succeeded     period refresh, renewal entry on subscription_cycle,
                                first invoice ids linked to the purchase entry
- invoice.payment_failed        subscription -> past_due
- customer.subscription.*       status sync, cancellation revokes access
- transfer.created              pending -> available, one payout per transfer
- charge.refunded               negative entry for the newly refunded delta
- account.updated               Connect onboarding flags

A missing subscription or original entry may still be on its way (Stripe
does not order deliveries), so those lookups raise a retryable
ReferentNotFound and the event is redelivered.

Subscription status machine: active <-> past_due, then canceled or expired
(terminal, never left).
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Union

import stripe
import structlog

from pipeline.balance import (
    FeeSplit,
    earnings_changes,
    ledger_config,
    payout_changes,
    refund_changes,
    refund_split,
    split_amount,
)
from pipeline.errors import MissingMetadata, ReferentNotFound
from pipeline.webhook_router import WebhookRouter
from schemas.documents import (
    AccessStatus,
    BillingType,
    PayoutRecord,
    ProgramAccess,
    SubscriptionRecord,
    SubscriptionStatus,
    TransactionRecord,
    TransactionType,
)
from schemas.event_definitions import (
    AccountUpdated,
    Charge,
    ChargeRefunded,
    CheckoutPaymentFailed,
    CheckoutSessionCompleted,
    Invoice,
    InvoicePaid,
    InvoicePaymentFailed,
    PaymentIntentEvent,
    PayoutEvent,
    StripeSubscription,
    SubscriptionDeleted,
    SubscriptionUpdated,
    TransferCreated,
)
from storage.document_store import (
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    DocumentStore,
    Increment,
    StoreTransaction,
)

logger = structlog.get_logger().bind(component="ledger_writer")

CHECKOUT_METADATA = ("trainerId", "programId", "studentId")

# Delayed payment methods complete the session before the money arrives
UNPAID_CHECKOUT = "unpaid"

# Stripe subscription status -> local status; anything else leaves status as is
STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}

INTERVAL_MAP = {
    "month": BillingType.MONTHLY,
    "year": BillingType.YEARLY,
}


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _status_of(snapshot: DocumentSnapshot) -> Optional[SubscriptionStatus]:
    raw = snapshot.get("status")
    try:
        return SubscriptionStatus(raw) if raw else None
    except ValueError:
        return None


# =============================================================================
# BILLING INTERVAL RESOLUTION
# =============================================================================

@dataclass(frozen=True)
class BillingInfo:
    type: BillingType
    current_period_end: Optional[datetime] = None


def billing_from_subscription(subscription: StripeSubscription) -> BillingInfo:
    billing_type = INTERVAL_MAP.get(subscription.interval or "")
    if billing_type is None:
        logger.warning(
            "billing_interval_unsupported",
            stripe_subscription_id=subscription.id,
            interval=subscription.interval,
        )
        billing_type = BillingType.ONE_TIME
    return BillingInfo(type=billing_type, current_period_end=from_timestamp(subscription.period_end))


class BillingIntervalResolver(ABC):
    """Looks up the billing interval of a Stripe subscription"""

    @abstractmethod
    async def resolve(self, stripe_subscription_id: str) -> BillingInfo:
        pass


class StripeBillingIntervalResolver(BillingIntervalResolver):
    """Retrieves the subscription from the Stripe API"""

    def __init__(self, api_key: Optional[str] = None):
        self._api_key = api_key

    async def resolve(self, stripe_subscription_id: str) -> BillingInfo:
        try:
            raw = await asyncio.to_thread(
                stripe.Subscription.retrieve, stripe_subscription_id, api_key=self._api_key
            )
        except stripe.StripeError as e:
            logger.error(
                "subscription_retrieve_failed",
                stripe_subscription_id=stripe_subscription_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        return billing_from_subscription(StripeSubscription.model_validate(raw.to_dict()))


# =============================================================================
# LEDGER WRITER
# =============================================================================

class LedgerWriter:
    """
    Idempotent state mutations for each handled Stripe event.

    Example:
        writer = LedgerWriter(store, StripeBillingIntervalResolver())
        router = WebhookRouter()
        writer.register_handlers(router)
    """

    def __init__(
        self,
        store: DocumentStore,
        interval_resolver: Optional[BillingIntervalResolver] = None,
        fee_percent: Optional[Union[Decimal, int, str]] = None,
    ):
        self.store = store
        self.intervals = interval_resolver or StripeBillingIntervalResolver()
        self.fee_percent = ledger_config.PLATFORM_FEE_PERCENT if fee_percent is None else Decimal(str(fee_percent))

    def register_handlers(self, router: WebhookRouter) -> None:
        """Register all webhook handlers"""

        @router.register("checkout.session.completed", "checkout.session.async_payment_succeeded")
        async def handle_checkout_completed(event, log):
            return await self.on_checkout_completed(event, log)

        @router.register("checkout.session.async_payment_failed")
        async def handle_checkout_payment_failed(event, log):
            return await self.on_checkout_payment_failed(event, log)

        @router.register("invoice.payment_succeeded", "invoice.paid")
        async def handle_invoice_paid(event, log):
            return await self.on_invoice_paid(event, log)

        @router.register("invoice.payment_failed")
        async def handle_invoice_failed(event, log):
            return await self.on_invoice_payment_failed(event, log)

        @router.register("customer.subscription.updated")
        async def handle_subscription_updated(event, log):
            return await self.on_subscription_updated(event, log)

        @router.register("customer.subscription.deleted")
        async def handle_subscription_deleted(event, log):
            return await self.on_subscription_deleted(event, log)

        @router.register("transfer.created")
        async def handle_transfer(event, log):
            return await self.on_transfer_created(event, log)

        @router.register("charge.refunded")
        async def handle_refund(event, log):
            return await self.on_charge_refunded(event, log)

        @router.register("account.updated")
        async def handle_account(event, log):
            return await self.on_account_updated(event, log)

        @router.register("payment_intent.succeeded", "payment_intent.payment_failed")
        async def handle_payment_intent(event, log):
            return await self.on_payment_intent(event, log)

        @router.register("payout.paid", "payout.failed")
        async def handle_payout(event, log):
            return await self.on_payout(event, log)

    # -------------------------------------------------------------------------
    # shared lookups
    # -------------------------------------------------------------------------

    async def _require_user(self, tx: StoreTransaction, kind: str, user_id: str) -> DocumentSnapshot:
        user = await tx.get("users", user_id)
        if user is None:
            raise ReferentNotFound(kind, user_id)
        return user

    async def _require_subscription(self, tx: StoreTransaction, stripe_subscription_id: str) -> DocumentSnapshot:
        subscription = await tx.find_one("subscriptions", {"stripeSubscriptionId": stripe_subscription_id})
        if subscription is None:
            raise ReferentNotFound("subscription", stripe_subscription_id, retryable=True)
        return subscription

    async def _terminate(
        self,
        tx: StoreTransaction,
        subscription: DocumentSnapshot,
        status: SubscriptionStatus,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Move a live subscription to a terminal status and revoke access once."""
        changes: Dict[str, Any] = {"status": status.value, "updatedAt": SERVER_TIMESTAMP}
        if status == SubscriptionStatus.CANCELED:
            changes["canceledAt"] = SERVER_TIMESTAMP
        changes.update(extra or {})
        tx.update("subscriptions", subscription.id, changes)

        student_id = subscription.get("studentId")
        program_id = subscription.get("programId")
        if not student_id or not program_id:
            return

        student = await tx.get("users", student_id)
        # A later purchase of the same program keeps its own grant
        if student and student.get(f"programs.{program_id}.subscriptionId") == subscription.id:
            tx.update("users", student_id, {
                f"programs.{program_id}.status": AccessStatus.CANCELED.value,
                f"programs.{program_id}.revokedAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            })

        if await tx.get("programs", program_id) is not None:
            tx.update("programs", program_id, {
                "stats.activeStudents": Increment(-1),
                "updatedAt": SERVER_TIMESTAMP,
            })

    async def _link_first_invoice(self, tx: StoreTransaction, subscription: DocumentSnapshot, invoice: Invoice) -> str:
        """
        Subscription checkouts carry no payment intent; the first invoice
        does. Copy its ids onto the purchase entry so refunds of the first
        charge find it. Only missing references are filled in.
        """
        purchase = await tx.find_one("transactions", {
            "subscriptionId": subscription.id,
            "type": TransactionType.PURCHASE.value,
        })
        if purchase is None:
            return "period_updated"

        links: Dict[str, Any] = {}
        if invoice.payment_intent and not purchase.get("stripePaymentIntentId"):
            links["stripePaymentIntentId"] = invoice.payment_intent
        if not purchase.get("stripeInvoiceId"):
            links["stripeInvoiceId"] = invoice.id
        if not links:
            return "period_updated"

        tx.update("transactions", purchase.id, links)
        if "stripePaymentIntentId" in links and not subscription.get("stripePaymentIntentId"):
            tx.update("subscriptions", subscription.id, {"stripePaymentIntentId": invoice.payment_intent})
        return "first_invoice_linked"

    # -------------------------------------------------------------------------
    # checkout.session.completed
    # -------------------------------------------------------------------------

    async def on_checkout_completed(self, event: CheckoutSessionCompleted, log) -> str:
        session = event.data.object
        metadata = session.metadata
        missing = [key for key in CHECKOUT_METADATA if not metadata.get(key)]
        if missing:
            raise MissingMetadata(session.id, missing)

        trainer_id = metadata["trainerId"]
        program_id = metadata["programId"]
        student_id = metadata["studentId"]

        log = log.bind(stripe_session_id=session.id, trainer_id=trainer_id, student_id=student_id)
        log.info(
            "checkout_completed_received",
            amount_total=session.amount_total,
            mode=session.mode,
            payment_status=session.payment_status,
        )

        # Booked by checkout.session.async_payment_succeeded once it settles
        if session.payment_status == UNPAID_CHECKOUT:
            log.info("checkout_awaiting_payment")
            return "checkout_awaiting_payment"

        # Cheap replay check before calling Stripe; the transaction re-checks
        if await self.store.find_one("subscriptions", {"stripeCheckoutSessionId": session.id}):
            log.info("checkout_already_recorded")
            return "checkout_already_recorded"

        billing = BillingInfo(type=BillingType.ONE_TIME)
        if session.mode == "subscription" and session.subscription:
            billing = await self.intervals.resolve(session.subscription)

        split = split_amount(session.amount_total or 0, self.fee_percent)
        currency = (session.currency or ledger_config.DEFAULT_CURRENCY).lower()

        async def apply(tx: StoreTransaction) -> Optional[str]:
            if await tx.find_one("subscriptions", {"stripeCheckoutSessionId": session.id}):
                return None

            await self._require_user(tx, "trainer", trainer_id)
            await self._require_user(tx, "student", student_id)
            program = await tx.get("programs", program_id)

            subscription_id = self.store.new_id()
            subscription = SubscriptionRecord(
                id=subscription_id,
                student_id=student_id,
                trainer_id=trainer_id,
                program_id=program_id,
                stripe_checkout_session_id=session.id,
                stripe_payment_intent_id=session.payment_intent,
                stripe_subscription_id=session.subscription,
                stripe_customer_id=session.customer,
                status=SubscriptionStatus.ACTIVE,
                type=billing.type,
                price=split.gross,
                platform_fee=split.platform_fee,
                trainer_earnings=split.net,
                currency=currency,
                start_date=SERVER_TIMESTAMP,
                current_period_end=billing.current_period_end,
                created_at=SERVER_TIMESTAMP,
                updated_at=SERVER_TIMESTAMP,
            )
            tx.create("subscriptions", subscription_id, subscription.to_document())

            transaction_id = self.store.new_id()
            entry = TransactionRecord(
                id=transaction_id,
                subscription_id=subscription_id,
                trainer_id=trainer_id,
                student_id=student_id,
                program_id=program_id,
                type=TransactionType.PURCHASE,
                gross_amount=split.gross,
                platform_fee=split.platform_fee,
                net_amount=split.net,
                currency=currency,
                stripe_payment_intent_id=session.payment_intent,
                created_at=SERVER_TIMESTAMP,
            )
            tx.create("transactions", transaction_id, entry.to_document())

            tx.update("users", trainer_id, earnings_changes(split.net, currency, new_student=True))

            access = ProgramAccess(
                access_granted_at=SERVER_TIMESTAMP,
                subscription_id=subscription_id,
                trainer_id=trainer_id,
            )
            tx.update("users", student_id, {
                f"programs.{program_id}": access.to_document(),
                "updatedAt": SERVER_TIMESTAMP,
            })

            if program is not None:
                tx.update("programs", program_id, {
                    "stats.totalSales": Increment(1),
                    "stats.activeStudents": Increment(1),
                    "updatedAt": SERVER_TIMESTAMP,
                })
            return subscription_id

        subscription_id = await self.store.run_transaction(apply)
        if subscription_id is None:
            log.info("checkout_already_recorded")
            return "checkout_already_recorded"

        log.info(
            "checkout_recorded",
            subscription_id=subscription_id,
            billing_type=billing.type.value,
            price=split.gross,
            platform_fee=split.platform_fee,
            trainer_earnings=split.net,
            currency=currency,
        )
        return "checkout_recorded"

    async def on_checkout_payment_failed(self, event: CheckoutPaymentFailed, log) -> str:
        session = event.data.object
        log.warning(
            "checkout_payment_failed",
            stripe_session_id=session.id,
            trainer_id=session.metadata.get("trainerId"),
            student_id=session.metadata.get("studentId"),
            amount_total=session.amount_total,
        )
        return "logged"

    # -------------------------------------------------------------------------
    # invoice.payment_succeeded / invoice.paid
    # -------------------------------------------------------------------------

    async def on_invoice_paid(self, event: InvoicePaid, log) -> str:
        invoice = event.data.object
        stripe_subscription_id = invoice.subscription_id
        if not stripe_subscription_id:
            log.info("invoice_without_subscription", stripe_invoice_id=invoice.id)
            return "invoice_without_subscription"

        log = log.bind(stripe_invoice_id=invoice.id, stripe_subscription_id=stripe_subscription_id)
        period_end = from_timestamp(invoice.line_period_end)
        is_renewal = invoice.billing_reason == "subscription_cycle"
        split = split_amount(invoice.amount_paid, self.fee_percent)

        async def apply(tx: StoreTransaction) -> str:
            subscription = await self._require_subscription(tx, stripe_subscription_id)
            status = _status_of(subscription)

            if status is not None and not status.is_terminal:
                changes: Dict[str, Any] = {"updatedAt": SERVER_TIMESTAMP}
                if period_end:
                    changes["currentPeriodEnd"] = period_end
                if status == SubscriptionStatus.PAST_DUE:
                    changes["status"] = SubscriptionStatus.ACTIVE.value
                tx.update("subscriptions", subscription.id, changes)

            # The first invoice is already booked by checkout.session.completed
            if invoice.billing_reason == "subscription_create":
                return await self._link_first_invoice(tx, subscription, invoice)
            if not is_renewal:
                return "period_updated"

            if await tx.find_one("transactions", {"stripeInvoiceId": invoice.id}):
                return "renewal_already_recorded"

            trainer_id = subscription.get("trainerId")
            await self._require_user(tx, "trainer", trainer_id)
            currency = (invoice.currency or subscription.get("currency") or ledger_config.DEFAULT_CURRENCY).lower()

            transaction_id = self.store.new_id()
            entry = TransactionRecord(
                id=transaction_id,
                subscription_id=subscription.id,
                trainer_id=trainer_id,
                student_id=subscription.get("studentId"),
                program_id=subscription.get("programId"),
                type=TransactionType.RENEWAL,
                gross_amount=split.gross,
                platform_fee=split.platform_fee,
                net_amount=split.net,
                currency=currency,
                stripe_payment_intent_id=invoice.payment_intent,
                stripe_invoice_id=invoice.id,
                created_at=SERVER_TIMESTAMP,
            )
            tx.create("transactions", transaction_id, entry.to_document())
            tx.update("users", trainer_id, earnings_changes(split.net, currency))
            return "renewal_recorded"

        detail = await self.store.run_transaction(apply)
        log.info(
            "invoice_paid_applied",
            detail=detail,
            billing_reason=invoice.billing_reason,
            amount_paid=invoice.amount_paid,
        )
        return detail

    # -------------------------------------------------------------------------
    # invoice.payment_failed
    # -------------------------------------------------------------------------

    async def on_invoice_payment_failed(self, event: InvoicePaymentFailed, log) -> str:
        invoice = event.data.object
        stripe_subscription_id = invoice.subscription_id
        if not stripe_subscription_id:
            log.info("invoice_without_subscription", stripe_invoice_id=invoice.id)
            return "invoice_without_subscription"

        async def apply(tx: StoreTransaction) -> str:
            subscription = await self._require_subscription(tx, stripe_subscription_id)
            status = _status_of(subscription)
            if status is not None and status.is_terminal:
                return "status_terminal"
            if status == SubscriptionStatus.PAST_DUE:
                return "already_past_due"
            tx.update("subscriptions", subscription.id, {
                "status": SubscriptionStatus.PAST_DUE.value,
                "updatedAt": SERVER_TIMESTAMP,
            })
            return "marked_past_due"

        detail = await self.store.run_transaction(apply)
        log.warning(
            "invoice_payment_failed",
            stripe_invoice_id=invoice.id,
            stripe_subscription_id=stripe_subscription_id,
            detail=detail,
        )
        return detail

    # -------------------------------------------------------------------------
    # customer.subscription.updated / deleted
    # -------------------------------------------------------------------------

    async def on_subscription_updated(self, event: SubscriptionUpdated, log) -> str:
        remote = event.data.object
        target = STRIPE_STATUS_MAP.get(remote.status)
        period_end = from_timestamp(remote.period_end)

        async def apply(tx: StoreTransaction) -> str:
            subscription = await self._require_subscription(tx, remote.id)
            current = _status_of(subscription)
            if current is not None and current.is_terminal:
                return "status_terminal"

            if target is not None and target.is_terminal:
                extra = {"currentPeriodEnd": period_end} if period_end else None
                await self._terminate(tx, subscription, target, extra)
                return f"status_{target.value}"

            changes: Dict[str, Any] = {"updatedAt": SERVER_TIMESTAMP}
            if period_end:
                changes["currentPeriodEnd"] = period_end
            if target is not None and target != current:
                changes["status"] = target.value
            tx.update("subscriptions", subscription.id, changes)
            resulting = target or current
            return f"status_{resulting.value}" if resulting else "synced"

        detail = await self.store.run_transaction(apply)
        log.info(
            "subscription_updated",
            stripe_subscription_id=remote.id,
            stripe_status=remote.status,
            detail=detail,
        )
        return detail

    async def on_subscription_deleted(self, event: SubscriptionDeleted, log) -> str:
        remote = event.data.object

        async def apply(tx: StoreTransaction) -> str:
            subscription = await self._require_subscription(tx, remote.id)
            current = _status_of(subscription)
            if current is not None and current.is_terminal:
                return "status_terminal"
            await self._terminate(tx, subscription, SubscriptionStatus.CANCELED)
            return "canceled"

        detail = await self.store.run_transaction(apply)
        log.info("subscription_deleted", stripe_subscription_id=remote.id, detail=detail)
        return detail

    # -------------------------------------------------------------------------
    # transfer.created
    # -------------------------------------------------------------------------

    async def on_transfer_created(self, event: TransferCreated, log) -> str:
        transfer = event.data.object
        trainer_id = transfer.metadata.get("trainerId")
        if not trainer_id:
            raise MissingMetadata(transfer.id, ["trainerId"])

        async def apply(tx: StoreTransaction) -> str:
            if await tx.find_one("payouts", {"stripeTransferId": transfer.id}):
                return "transfer_already_recorded"
            await self._require_user(tx, "trainer", trainer_id)

            payout_id = self.store.new_id()
            payout = PayoutRecord(
                id=payout_id,
                trainer_id=trainer_id,
                stripe_transfer_id=transfer.id,
                amount=transfer.amount,
                currency=transfer.currency.lower(),
                destination=transfer.destination,
                created_at=SERVER_TIMESTAMP,
            )
            tx.create("payouts", payout_id, payout.to_document())
            tx.update("users", trainer_id, payout_changes(transfer.amount, transfer.currency))
            return "transfer_recorded"

        detail = await self.store.run_transaction(apply)
        log.info(
            "transfer_applied",
            stripe_transfer_id=transfer.id,
            trainer_id=trainer_id,
            amount=transfer.amount,
            destination=transfer.destination,
            detail=detail,
        )
        return detail

    # -------------------------------------------------------------------------
    # charge.refunded
    # -------------------------------------------------------------------------

    async def _find_refunded_entry(self, tx: StoreTransaction, charge: Charge) -> Optional[DocumentSnapshot]:
        """The purchase or renewal a charge paid for: by payment intent, then by invoice."""
        chargeable = (TransactionType.PURCHASE.value, TransactionType.RENEWAL.value)
        for field, value in (("stripePaymentIntentId", charge.payment_intent), ("stripeInvoiceId", charge.invoice)):
            if not value:
                continue
            for entry in await tx.find("transactions", {field: value}):
                if entry.get("type") in chargeable:
                    return entry
        return None

    async def on_charge_refunded(self, event: ChargeRefunded, log) -> str:
        charge = event.data.object
        log = log.bind(
            stripe_charge_id=charge.id,
            stripe_payment_intent_id=charge.payment_intent,
            stripe_invoice_id=charge.invoice,
        )

        async def apply(tx: StoreTransaction) -> str:
            original = await self._find_refunded_entry(tx, charge)
            if original is None:
                raise ReferentNotFound(
                    "transaction", charge.payment_intent or charge.invoice or charge.id, retryable=True
                )

            # amount_refunded is cumulative per charge; book only what is not booked yet
            booked = FeeSplit(gross=0, platform_fee=0, net=0)
            for e in await tx.find("transactions", {"stripeChargeId": charge.id}):
                if e.get("type") == TransactionType.REFUND.value:
                    booked = booked - FeeSplit(
                        gross=int(e.get("grossAmount", 0)),
                        platform_fee=int(e.get("platformFee", 0)),
                        net=int(e.get("netAmount", 0)),
                    )

            target = refund_split(
                charge.amount_refunded,
                int(original.get("grossAmount", 0)),
                int(original.get("platformFee", 0)),
            )
            delta = target - booked
            if delta.gross <= 0:
                return "refund_already_recorded"

            trainer_id = original.get("trainerId")
            await self._require_user(tx, "trainer", trainer_id)
            currency = original.get("currency") or charge.currency.lower()

            refund = delta.negated()
            transaction_id = self.store.new_id()
            entry = TransactionRecord(
                id=transaction_id,
                subscription_id=original.get("subscriptionId"),
                trainer_id=trainer_id,
                student_id=original.get("studentId"),
                program_id=original.get("programId"),
                type=TransactionType.REFUND,
                gross_amount=refund.gross,
                platform_fee=refund.platform_fee,
                net_amount=refund.net,
                currency=currency,
                stripe_payment_intent_id=charge.payment_intent or original.get("stripePaymentIntentId"),
                stripe_charge_id=charge.id,
                created_at=SERVER_TIMESTAMP,
            )
            tx.create("transactions", transaction_id, entry.to_document())
            tx.update("users", trainer_id, refund_changes(delta.net, currency))
            return "refund_recorded"

        detail = await self.store.run_transaction(apply)
        log.info("charge_refunded", amount_refunded=charge.amount_refunded, detail=detail)
        return detail

    # -------------------------------------------------------------------------
    # account.updated
    # -------------------------------------------------------------------------

    async def on_account_updated(self, event: AccountUpdated, log) -> str:
        account = event.data.object
        trainer_id = account.metadata.get("trainerId")
        if not trainer_id:
            raise MissingMetadata(account.id, ["trainerId"])

        async def apply(tx: StoreTransaction) -> str:
            await self._require_user(tx, "trainer", trainer_id)
            tx.update("users", trainer_id, {
                "financial.stripeAccountId": account.id,
                "financial.stripeOnboardingComplete": account.charges_enabled and account.payouts_enabled,
                "financial.stripeChargesEnabled": account.charges_enabled,
                "financial.stripePayoutsEnabled": account.payouts_enabled,
                "updatedAt": SERVER_TIMESTAMP,
            })
            return "account_synced"

        detail = await self.store.run_transaction(apply)
        log.info(
            "account_updated",
            stripe_account_id=account.id,
            trainer_id=trainer_id,
            charges_enabled=account.charges_enabled,
            payouts_enabled=account.payouts_enabled,
        )
        return detail

    # -------------------------------------------------------------------------
    # log-only events
    # -------------------------------------------------------------------------

    async def on_payment_intent(self, event: PaymentIntentEvent, log) -> str:
        intent = event.data.object
        if event.type == "payment_intent.payment_failed":
            log.warning("payment_intent_failed", stripe_payment_intent_id=intent.id, amount=intent.amount)
        else:
            # Booked by checkout.session.completed
            log.info("payment_intent_succeeded", stripe_payment_intent_id=intent.id, amount=intent.amount)
        return "logged"

    async def on_payout(self, event: PayoutEvent, log) -> str:
        payout = event.data.object
        if event.type == "payout.failed":
            log.error("payout_failed", stripe_payout_id=payout.id, amount=payout.amount)
        else:
            log.info("payout_paid", stripe_payout_id=payout.id, amount=payout.amount)
        return "logged"
