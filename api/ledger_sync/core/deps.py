from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from ledger_sync.core.database import async_session
from ledger_sync.services.aggregator import AggregatorClient
from ledger_sync.services.sync import SyncOrchestrator
from ledger_sync.services.webhook_verifier import WebhookVerifier
from ledger_sync.services.webhooks import WebhookDispatcher

# Clients are built once in main.lifespan and parked on app.state; these
# dependencies hand them to the routes.


def get_session_factory() -> async_sessionmaker:
    return async_session


def get_optional_aggregator(request: Request) -> AggregatorClient | None:
    return getattr(request.app.state, "aggregator", None)


def get_aggregator(client: AggregatorClient | None = Depends(get_optional_aggregator)) -> AggregatorClient:
    if client is None:
        raise HTTPException(status_code=503, detail="Plaid not configured")
    return client


def get_orchestrator(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    client: AggregatorClient = Depends(get_aggregator),
) -> SyncOrchestrator:
    return SyncOrchestrator(session_factory, client)


def get_verifier(request: Request) -> WebhookVerifier | None:
    return getattr(request.app.state, "webhook_verifier", None)


def get_webhook_dispatcher(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    client: AggregatorClient | None = Depends(get_optional_aggregator),
) -> WebhookDispatcher | None:
    if client is None:
        return None
    return WebhookDispatcher(session_factory, SyncOrchestrator(session_factory, client), client)
