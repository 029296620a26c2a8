import pytest

from pipeline.errors import MissingMetadata, ReferentNotFound
from pipeline.webhook_router import WebhookRouter
from schemas.documents import WebhookOutcome
from schemas.event_definitions import CheckoutSessionCompleted, PayoutEvent, parse_event
from tests.factories import checkout_session, invoice, make_event


@pytest.fixture
def router():
    return WebhookRouter()


@pytest.mark.asyncio
async def test_unknown_type_is_unhandled(router):
    calls = []

    @router.register("checkout.session.completed")
    async def handler(event, log):
        calls.append(event)

    result = await router.route(make_event("customer.created", {"id": "cus_1"}), "evt_1")

    assert result.outcome == WebhookOutcome.UNHANDLED
    assert calls == []


@pytest.mark.asyncio
async def test_handler_receives_typed_event(router):
    seen = []

    @router.register("checkout.session.completed")
    async def handler(event, log):
        seen.append(event)
        return "ok"

    result = await router.route(make_event("checkout.session.completed", checkout_session()), "evt_1")

    assert result.outcome == WebhookOutcome.PROCESSED
    assert result.detail == "ok"
    assert isinstance(seen[0], CheckoutSessionCompleted)
    assert seen[0].data.object.amount_total == 10000


@pytest.mark.asyncio
async def test_one_handler_for_several_types(router):
    seen = []

    @router.register("payout.paid", "payout.failed")
    async def handler(event, log):
        seen.append(event.type)

    await router.route(make_event("payout.paid", {"id": "po_1", "amount": 100}), "evt_1")
    await router.route(make_event("payout.failed", {"id": "po_2", "amount": 100}), "evt_2")

    assert seen == ["payout.paid", "payout.failed"]
    assert set(router.supported_events) == {"payout.paid", "payout.failed"}


@pytest.mark.asyncio
async def test_permanent_error_is_skipped(router):
    @router.register("checkout.session.completed")
    async def handler(event, log):
        raise MissingMetadata(event.data.object.id, ["trainerId"])

    result = await router.route(make_event("checkout.session.completed", checkout_session()), "evt_1")

    assert result.outcome == WebhookOutcome.SKIPPED
    assert "missing_metadata" in result.detail


@pytest.mark.asyncio
async def test_missing_referent_that_may_still_arrive_is_deferred(router):
    @router.register("invoice.paid")
    async def handler(event, log):
        raise ReferentNotFound("subscription", "sub_later", retryable=True)

    result = await router.route(make_event("invoice.paid", invoice()), "evt_1")

    assert result.outcome == WebhookOutcome.DEFERRED
    assert "subscription not found: sub_later" in result.detail


@pytest.mark.asyncio
async def test_malformed_object_is_skipped(router):
    called = []

    @router.register("transfer.created")
    async def handler(event, log):
        called.append(event)

    # transfer without amount/currency
    result = await router.route(make_event("transfer.created", {"id": "tr_1"}), "evt_1")

    assert result.outcome == WebhookOutcome.SKIPPED
    assert "malformed_event" in result.detail
    assert called == []


@pytest.mark.asyncio
async def test_transient_errors_propagate(router):
    @router.register("payout.paid")
    async def handler(event, log):
        raise RuntimeError("database unavailable")

    with pytest.raises(RuntimeError):
        await router.route(make_event("payout.paid", {"id": "po_1"}), "evt_1")


def test_payout_variant_parses():
    event = parse_event(make_event("payout.failed", {"id": "po_1", "amount": 250}))
    assert isinstance(event, PayoutEvent)
