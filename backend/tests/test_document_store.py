from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from storage.document_store import (
    SERVER_TIMESTAMP,
    DocumentExists,
    DocumentNotFound,
    Increment,
    InMemoryDocumentStore,
    TransactionConflict,
    apply_changes,
    tx_config,
)


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(tx_config, "RETRY_DELAY_SECONDS", 0)


def test_apply_changes_creates_missing_parents_and_increments():
    now = datetime.now(timezone.utc)
    updated = apply_changes({"a": 1}, {"financial.totalEarnings": Increment(Decimal("90.00")), "stats.count": Increment(1)}, now)

    assert updated["financial"]["totalEarnings"] == Decimal("90.00")
    assert updated["stats"]["count"] == 1
    assert updated["a"] == 1


def test_apply_changes_does_not_mutate_input():
    original = {"stats": {"count": 1}}
    apply_changes(original, {"stats.count": Increment(1)}, datetime.now(timezone.utc))
    assert original == {"stats": {"count": 1}}


@pytest.mark.asyncio
async def test_decimal_increments_are_exact():
    store = InMemoryDocumentStore()
    await store.set("users", "u1", {"financial": {"totalEarnings": 0}})

    for _ in range(3):
        await store.update("users", "u1", {"financial.totalEarnings": Increment(Decimal("0.10"))})

    doc = await store.get("users", "u1")
    assert doc.get("financial.totalEarnings") == Decimal("0.30")


@pytest.mark.asyncio
async def test_server_timestamp_resolved_inside_nested_maps():
    store = InMemoryDocumentStore()
    await store.set("users", "u1", {"programs": {}})
    await store.update("users", "u1", {"programs.p1": {"accessGrantedAt": SERVER_TIMESTAMP}, "updatedAt": SERVER_TIMESTAMP})

    doc = await store.get("users", "u1")
    assert isinstance(doc.get("programs.p1.accessGrantedAt"), datetime)
    assert isinstance(doc.get("updatedAt"), datetime)


@pytest.mark.asyncio
async def test_update_missing_document_raises():
    store = InMemoryDocumentStore()
    with pytest.raises(DocumentNotFound):
        await store.update("users", "ghost", {"a": 1})


@pytest.mark.asyncio
async def test_transaction_is_all_or_nothing():
    store = InMemoryDocumentStore()
    await store.set("subscriptions", "s1", {"status": "active"})
    await store.set("users", "u1", {"financial": {"totalEarnings": 0}})

    with pytest.raises(DocumentExists):
        async with store.transaction() as tx:
            tx.update("users", "u1", {"financial.totalEarnings": Increment(10)})
            tx.create("subscriptions", "s1", {"status": "active"})

    doc = await store.get("users", "u1")
    assert doc.get("financial.totalEarnings") == 0


@pytest.mark.asyncio
async def test_transaction_not_committed_when_body_raises():
    store = InMemoryDocumentStore()

    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            tx.create("reviews", "r1", {"rating": 5})
            raise RuntimeError("abort")

    assert await store.get("reviews", "r1") is None


@pytest.mark.asyncio
async def test_reads_inside_transaction_do_not_see_buffered_writes():
    store = InMemoryDocumentStore()

    async with store.transaction() as tx:
        tx.create("reviews", "r1", {"trainerId": "t1", "rating": 5})
        assert await tx.find("reviews", {"trainerId": "t1"}) == []

    assert len(await store.find("reviews", {"trainerId": "t1"})) == 1


@pytest.mark.asyncio
async def test_find_orders_pages_and_counts():
    store = InMemoryDocumentStore()
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    for i in range(5):
        await store.set("reviews", f"r{i}", {"trainerId": "t1", "createdAt": base + timedelta(days=i)})
    await store.set("reviews", "other", {"trainerId": "t2", "createdAt": base})

    page = await store.find("reviews", {"trainerId": "t1"}, order_by="createdAt", descending=True, offset=1, limit=2)

    assert [doc.id for doc in page] == ["r3", "r2"]
    assert await store.count("reviews", {"trainerId": "t1"}) == 5


@pytest.mark.asyncio
async def test_find_filters_on_dotted_paths():
    store = InMemoryDocumentStore()
    await store.set("users", "u1", {"financial": {"stripeAccountId": "acct_1"}})
    await store.set("users", "u2", {"financial": {"stripeAccountId": "acct_2"}})

    found = await store.find_one("users", {"financial.stripeAccountId": "acct_2"})
    assert found.id == "u2"


@pytest.mark.asyncio
async def test_run_transaction_retries_on_conflict():
    store = InMemoryDocumentStore()
    attempts = []

    async def work(tx):
        attempts.append(1)
        if len(attempts) == 1:
            raise TransactionConflict("contention")
        tx.set("counters", "c1", {"value": 1})
        return "done"

    assert await store.run_transaction(work) == "done"
    assert len(attempts) == 2
    assert (await store.get("counters", "c1")).get("value") == 1


@pytest.mark.asyncio
async def test_run_transaction_gives_up_after_max_attempts():
    store = InMemoryDocumentStore()

    async def always_conflicts(tx):
        raise TransactionConflict("contention")

    with pytest.raises(TransactionConflict):
        await store.run_transaction(always_conflicts, max_attempts=3)
