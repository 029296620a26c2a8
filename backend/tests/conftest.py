import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from api.server import ServerConfig, create_app
from pipeline.payment_gateway import WebhookGateway
from pipeline.webhook_verifier import WebhookVerifier
from storage.document_store import InMemoryDocumentStore
from tests.factories import (
    JWT_SECRET,
    WEBHOOK_SECRET,
    StaticIntervalResolver,
    encode,
    seed_users,
    sign_payload,
)


@pytest_asyncio.fixture
async def store():
    store = InMemoryDocumentStore()
    await seed_users(store)
    return store


@pytest.fixture
def resolver():
    return StaticIntervalResolver()


@pytest.fixture
def gateway(store, resolver):
    return WebhookGateway(store, WebhookVerifier(WEBHOOK_SECRET), resolver)


@pytest.fixture
def deliver(gateway):
    """Sign and process an event envelope through the gateway"""
    async def _deliver(event: dict) -> dict:
        payload = encode(event)
        return await gateway.process(payload, sign_payload(payload))
    return _deliver


@pytest.fixture
def settings():
    return ServerConfig(
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        AUTH_JWT_SECRET=JWT_SECRET,
        STORE_BACKEND="memory",
        ENV="test",
    )


@pytest_asyncio.fixture
async def client(store, resolver, settings):
    app = create_app(store=store, interval_resolver=resolver, settings=settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
