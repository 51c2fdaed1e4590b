import httpx
import pytest

from ledger_sync.core.database import get_db
from ledger_sync.core.deps import get_optional_aggregator, get_session_factory, get_verifier
from ledger_sync.main import app
from ledger_sync.services.webhook_verifier import WebhookVerifier
from tests.fakes import FakeAggregator


@pytest.fixture
def fake():
    return FakeAggregator()


@pytest.fixture
def verifier(fake):
    return WebhookVerifier(fake.webhook_verification_key_get)


@pytest.fixture
async def http(session_factory, fake, verifier):
    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_optional_aggregator] = lambda: fake
    app.dependency_overrides[get_verifier] = lambda: verifier
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
