import asyncio
import json
import logging
import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_sync.core.config import settings
from ledger_sync.core.database import get_db
from ledger_sync.core.deps import (
    get_aggregator,
    get_orchestrator,
    get_verifier,
    get_webhook_dispatcher,
)
from ledger_sync.core.errors import UpstreamError, VerificationFailed
from ledger_sync.core.rate_limit import limiter
from ledger_sync.core.security import encrypt_value
from ledger_sync.models.account import Account, Connection, SyncStatus
from ledger_sync.schemas.sync import (
    ConnectionResponse,
    ConnectionSyncResult,
    PublicTokenExchange,
    SyncAllResponse,
    SyncErrorResponse,
    SyncRequest,
    SyncResponse,
    UserRequest,
)
from ledger_sync.services.aggregator import AggregatorClient
from ledger_sync.services.reconcile import upsert_accounts
from ledger_sync.services.sync import SyncOrchestrator, SyncResult
from ledger_sync.services.webhook_verifier import WebhookVerifier
from ledger_sync.services.webhooks import WebhookDispatcher, WebhookEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plaid", tags=["plaid"])

ERROR_STATUS = {
    "connection_not_found": 404,
    "already_syncing": 409,
    "upstream_error": 502,
    "upstream_rate_limited": 502,
    "sync_limit_exceeded": 502,
    "storage_error": 500,
    "internal_error": 500,
}


# ─── Helpers ───────────────────────────────────────────────────────────────

def _sync_response(result: SyncResult) -> SyncResponse | JSONResponse:
    if not result.success:
        return JSONResponse(
            status_code=ERROR_STATUS.get(result.error, 500),
            content={"error": "Failed to sync transactions", "reason": result.error},
        )
    return SyncResponse(
        success=True,
        transactions_synced=result.transactions_synced,
        pending_transactions_updated=result.pending_transactions_updated,
        transactions_removed=result.transactions_removed,
        records_skipped=result.records_skipped,
        accounts_updated=result.accounts_updated,
        cursor=result.cursor,
        mode=result.mode,
    )


def _summarize(results: list[SyncResult], total: int) -> SyncAllResponse:
    ok = [r for r in results if r.success]
    return SyncAllResponse(
        success=True,
        items_synced=len(ok),
        total_items=total,
        failed_items=len(results) - len(ok),
        total_transactions_synced=sum(r.transactions_synced for r in ok),
        total_pending_updated=sum(r.pending_transactions_updated for r in ok),
        results=[
            ConnectionSyncResult(
                connection_id=r.connection_id,
                success=r.success,
                transactions_synced=r.transactions_synced,
                pending_transactions_updated=r.pending_transactions_updated,
                error=r.error,
            )
            for r in results
        ],
    )


async def _connection_response(db: AsyncSession, conn: Connection) -> ConnectionResponse:
    account_count = await db.scalar(
        select(func.count(Account.id)).where(Account.connection_id == conn.id)
    )
    return ConnectionResponse(
        id=conn.id,
        item_id=conn.item_id,
        institution_name=conn.institution_name,
        environment=conn.environment,
        sync_status=conn.sync_status,
        last_synced_at=conn.last_synced_at,
        last_error=conn.last_error,
        error_code=conn.error_code,
        is_active=conn.is_active,
        account_count=account_count or 0,
    )


# ─── Sync triggers ─────────────────────────────────────────────────────────

@router.post(
    "/transactions/sync",
    response_model=SyncResponse,
    responses={code: {"model": SyncErrorResponse} for code in (404, 409, 500, 502)},
)
@limiter.limit("30/minute")
async def sync_transactions(
    request: Request,
    payload: SyncRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.sync_connection(
        payload.connection_id, payload.user_id, force_sync=payload.force_sync
    )
    return _sync_response(result)


@router.post("/transactions/sync-all", response_model=SyncAllResponse)
@limiter.limit("10/minute")
async def sync_all_transactions(
    request: Request,
    payload: UserRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    results = await orchestrator.sync_all(payload.user_id)
    return _summarize(results, len(results))


@router.post("/reset-cursor", response_model=SyncAllResponse)
@limiter.limit("5/minute")
async def reset_cursor(
    request: Request,
    payload: UserRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    results = await orchestrator.reset_cursor(payload.user_id)
    return _summarize(results, len(results))


# ─── Linking ───────────────────────────────────────────────────────────────

@router.post("/exchange-token", response_model=ConnectionResponse)
async def exchange_public_token(
    payload: PublicTokenExchange,
    db: AsyncSession = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    try:
        access_token, item_id = await asyncio.to_thread(
            client.item_public_token_exchange, payload.public_token
        )
    except UpstreamError as exc:
        logger.error("Public token exchange failed: %s", exc)
        raise HTTPException(status_code=502, detail="Could not link institution")

    conn = await db.scalar(select(Connection).where(Connection.item_id == item_id))
    if conn is None:
        conn = Connection(user_id=payload.user_id, item_id=item_id, sync_status=SyncStatus.IDLE)
        db.add(conn)
    elif conn.user_id != payload.user_id:
        raise HTTPException(status_code=409, detail="Institution is linked to another user")
    conn.institution_id = payload.institution_id
    conn.institution_name = payload.institution_name
    conn.encrypted_access_token = encrypt_value(access_token)
    conn.environment = payload.environment or settings.plaid_env
    conn.is_active = True
    conn.error_code = None
    await db.flush()

    try:
        upstream = await asyncio.to_thread(client.accounts_get, access_token)
        await upsert_accounts(db, conn, upstream)
    except UpstreamError as exc:
        # Accounts also arrive with the first sync page; linking still succeeds
        logger.warning("Initial account fetch failed for item %s: %s", item_id, exc)
    await db.commit()

    # Immediately sync transactions; failures are recorded on the connection
    result = await orchestrator.sync_connection(conn.id, payload.user_id)
    if not result.success:
        logger.warning("Post-link sync for item %s failed: %s", item_id, result.error)

    await db.refresh(conn)
    return await _connection_response(db, conn)


@router.get("/connections", response_model=list[ConnectionResponse])
async def list_connections(
    user_id: uuid.UUID = Query(...),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Connection).where(Connection.user_id == user_id).order_by(Connection.created_at)
    )
    return [await _connection_response(db, c) for c in result.scalars().all()]


# ─── Webhook ───────────────────────────────────────────────────────────────

@router.post("/webhook")
async def plaid_webhook(
    request: Request,
    background: BackgroundTasks,
    verifier: WebhookVerifier | None = Depends(get_verifier),
    dispatcher: WebhookDispatcher | None = Depends(get_webhook_dispatcher),
):
    """Always answers 200 so Plaid never retries a payload we cannot use."""
    body = await request.body()

    if verifier is None or dispatcher is None:
        logger.error("Plaid webhook received but Plaid is not configured")
        return {"received": True}

    try:
        await asyncio.to_thread(verifier.verify, dict(request.headers), body)
    except VerificationFailed:
        return {"received": True}

    try:
        event = WebhookEvent.model_validate(json.loads(body))
    except (ValueError, ValidationError) as exc:
        logger.warning("Unparseable Plaid webhook body: %s", exc)
        return {"received": True}

    background.add_task(_dispatch, dispatcher, event)
    return {"received": True}


async def _dispatch(dispatcher: WebhookDispatcher, event: WebhookEvent) -> None:
    try:
        outcome = await dispatcher.handle(event)
        logger.info("Webhook %s.%s handled: %s", event.webhook_type, event.webhook_code, outcome.value)
    except Exception:
        logger.exception("Error processing webhook %s.%s", event.webhook_type, event.webhook_code)
