"""Plaid webhook dispatch.

Runs after the verifier accepted the request.  Only transaction-update webhooks start
a sync; removal webhooks delete rows directly; item lifecycle webhooks update the
connection and are logged.  Anything unknown is logged and ignored so new Plaid
webhook codes never break the endpoint.
"""
import asyncio
import enum
import logging

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ledger_sync.core.errors import UpstreamError
from ledger_sync.core.security import decrypt_value
from ledger_sync.models.account import Connection, SyncStatus
from ledger_sync.schemas.upstream import removed_ids
from ledger_sync.services.reconcile import delete_transactions, load_accounts, upsert_accounts
from ledger_sync.services.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

TRANSACTION_UPDATE_CODES = frozenset({
    "INITIAL_UPDATE",
    "HISTORICAL_UPDATE",
    "DEFAULT_UPDATE",
    "SYNC_UPDATES_AVAILABLE",
})


class WebhookEvent(BaseModel):
    webhook_type: str
    webhook_code: str
    item_id: str | None = None
    removed_transactions: list[str | dict] | None = None
    new_transactions: int | None = None
    error: dict | None = None

    model_config = {"extra": "ignore"}


class WebhookOutcome(str, enum.Enum):
    SYNC_TRIGGERED = "sync_triggered"
    TRANSACTIONS_REMOVED = "transactions_removed"
    CONNECTION_UPDATED = "connection_updated"
    ACCOUNTS_UPDATED = "accounts_updated"
    UNKNOWN_CONNECTION = "unknown_connection"
    IGNORED = "ignored"


class WebhookDispatcher:
    def __init__(self, session_factory: async_sessionmaker, orchestrator: SyncOrchestrator, client):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.client = client

    async def handle(self, event: WebhookEvent) -> WebhookOutcome:
        kind = f"{event.webhook_type}.{event.webhook_code}"
        logger.info("Received Plaid webhook %s for item %s", kind, event.item_id)

        if event.webhook_type == "TRANSACTIONS":
            if event.webhook_code in TRANSACTION_UPDATE_CODES:
                return await self._sync(event)
            if event.webhook_code == "TRANSACTIONS_REMOVED":
                return await self._remove(event)
        elif event.webhook_type == "ITEM":
            if event.webhook_code in ("ERROR", "USER_PERMISSION_REVOKED", "PENDING_EXPIRATION"):
                return await self._item_status(event)
            if event.webhook_code == "NEW_ACCOUNTS_AVAILABLE":
                return await self._new_accounts(event)

        logger.info("Ignoring unhandled webhook %s", kind)
        return WebhookOutcome.IGNORED

    async def _connection_id(self, item_id: str | None):
        if not item_id:
            return None
        async with self.session_factory() as db:
            return await db.scalar(select(Connection.id).where(Connection.item_id == item_id))

    # ─── TRANSACTIONS ──────────────────────────────────────────────────────

    async def _sync(self, event: WebhookEvent) -> WebhookOutcome:
        connection_id = await self._connection_id(event.item_id)
        if connection_id is None:
            logger.warning("Webhook for unknown item %s", event.item_id)
            return WebhookOutcome.UNKNOWN_CONNECTION

        result = await self.orchestrator.sync_connection(connection_id)
        if not result.success:
            logger.warning(
                "Webhook-triggered sync for %s did not complete: %s", connection_id, result.error
            )
        return WebhookOutcome.SYNC_TRIGGERED

    async def _remove(self, event: WebhookEvent) -> WebhookOutcome:
        ids = removed_ids(event.removed_transactions)
        async with self.session_factory() as db:
            connection = await db.scalar(select(Connection).where(Connection.item_id == event.item_id))
            if connection is None:
                logger.warning("Removal webhook for unknown item %s", event.item_id)
                return WebhookOutcome.UNKNOWN_CONNECTION
            accounts = await load_accounts(db, connection)
            deleted = await delete_transactions(db, [a.id for a in accounts.values()], ids)
            await db.commit()
        logger.info("Removed %d of %d transactions for item %s", deleted, len(ids), event.item_id)
        return WebhookOutcome.TRANSACTIONS_REMOVED

    # ─── ITEM ──────────────────────────────────────────────────────────────

    async def _item_status(self, event: WebhookEvent) -> WebhookOutcome:
        async with self.session_factory() as db:
            connection = await db.scalar(select(Connection).where(Connection.item_id == event.item_id))
            if connection is None:
                logger.warning("Item webhook for unknown item %s", event.item_id)
                return WebhookOutcome.UNKNOWN_CONNECTION

            if event.webhook_code == "ERROR":
                error = event.error or {}
                connection.error_code = (error.get("error_code") or "ITEM_ERROR")[:100]
                connection.last_error = error.get("error_message") or "Unknown error"
                # A run in flight owns sync_status; it will record its own outcome
                if connection.sync_status != SyncStatus.SYNCING:
                    connection.sync_status = SyncStatus.ERROR
            elif event.webhook_code == "USER_PERMISSION_REVOKED":
                connection.is_active = False
                connection.error_code = "USER_PERMISSION_REVOKED"
            else:
                connection.error_code = event.webhook_code
            await db.commit()

        logger.warning("Item %s reported %s", event.item_id, event.webhook_code)
        return WebhookOutcome.CONNECTION_UPDATED

    async def _new_accounts(self, event: WebhookEvent) -> WebhookOutcome:
        async with self.session_factory() as db:
            connection = await db.scalar(select(Connection).where(Connection.item_id == event.item_id))
            if connection is None:
                logger.warning("Accounts webhook for unknown item %s", event.item_id)
                return WebhookOutcome.UNKNOWN_CONNECTION
            try:
                upstream = await asyncio.to_thread(
                    self.client.accounts_get, decrypt_value(connection.encrypted_access_token)
                )
            except UpstreamError as exc:
                logger.error("Could not fetch new accounts for item %s: %s", event.item_id, exc)
                return WebhookOutcome.IGNORED
            _, created = await upsert_accounts(db, connection, upstream)
            await db.commit()

        logger.info("Item %s: %d new account(s) linked", event.item_id, created)
        return WebhookOutcome.ACCOUNTS_UPDATED
