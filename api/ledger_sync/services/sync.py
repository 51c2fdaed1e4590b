"""Plaid transaction sync service: idempotent, incremental.

The orchestrator owns the per-connection lock.  ``connections.sync_status`` is the
mutex and lives in the shared database, because a sync can be started by a direct API
call, a webhook, the post-link trigger or the Celery beat job at the same time.

State machine per connection:

    idle/NULL ──claim──▶ syncing ──success──▶ idle
                            └──────failure──▶ error

Every fetch round is reconciled and committed together with that round's cursor, so a
failing round leaves the cursor of the last good round in place.  Failures come back
as a ``SyncResult`` with ``success=False``; nothing is raised past this module.
"""
import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ledger_sync.core.config import Settings, settings
from ledger_sync.core.errors import (
    AlreadySyncing,
    ConnectionNotFound,
    StorageError,
    SyncError,
)
from ledger_sync.core.security import decrypt_value
from ledger_sync.models.account import Connection, SyncStatus
from ledger_sync.services.balances import refresh_balances
from ledger_sync.services.fetch_strategy import FetchMode, build_fetcher, select_mode
from ledger_sync.services.reconcile import ReconcileResult, load_accounts, reconcile_batch
from ledger_sync.worker import celery_app

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    success: bool
    connection_id: str | None = None
    mode: str | None = None
    transactions_synced: int = 0
    pending_transactions_updated: int = 0
    transactions_removed: int = 0
    records_skipped: int = 0
    accounts_updated: int = 0
    cursor: str | None = None
    error: str | None = None        # SyncError.reason
    detail: str | None = None


class SyncOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        client,
        config: Settings = settings,
        *,
        fetcher_factory=build_fetcher,
    ):
        self.session_factory = session_factory
        self.client = client
        self.config = config
        self._fetcher_factory = fetcher_factory

    # ─── Lock ──────────────────────────────────────────────────────────────

    async def _claim(
        self,
        db: AsyncSession,
        connection_id: uuid.UUID,
        user_id: uuid.UUID | None,
        force_sync: bool,
    ) -> None:
        """Compare-and-set idle → syncing in one UPDATE. NULL status counts as idle."""
        scope = [Connection.id == connection_id, Connection.is_active == True]  # noqa: E712
        if user_id is not None:
            scope.append(Connection.user_id == user_id)

        stmt = update(Connection).where(*scope)
        if not force_sync:
            stmt = stmt.where(
                or_(Connection.sync_status.is_(None), Connection.sync_status != SyncStatus.SYNCING)
            )
        result = await db.execute(
            stmt.values(sync_status=SyncStatus.SYNCING, last_error=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount == 1:
            return

        found = await db.scalar(select(Connection.id).where(*scope))
        if found is None:
            raise ConnectionNotFound(f"connection {connection_id} not found")
        raise AlreadySyncing(f"connection {connection_id} is already syncing")

    async def _fail(
        self,
        db: AsyncSession,
        connection_id: uuid.UUID,
        exc: Exception,
        mode: FetchMode | None,
        totals: ReconcileResult,
    ) -> SyncResult:
        reason = exc.reason if isinstance(exc, SyncError) else "internal_error"
        await db.rollback()
        await db.execute(
            update(Connection)
            .where(Connection.id == connection_id)
            .values(sync_status=SyncStatus.ERROR, last_error=f"{reason}: {exc}"[:1000])
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        cursor = await db.scalar(select(Connection.cursor).where(Connection.id == connection_id))
        return SyncResult(
            success=False,
            connection_id=str(connection_id),
            mode=mode.value if mode else None,
            transactions_synced=totals.upserted,
            pending_transactions_updated=totals.promoted,
            transactions_removed=totals.deleted,
            records_skipped=totals.skipped + totals.unmapped,
            cursor=cursor,
            error=reason,
            detail=str(exc),
        )

    # ─── Run ───────────────────────────────────────────────────────────────

    async def sync_connection(
        self,
        connection_id: uuid.UUID,
        user_id: uuid.UUID | None = None,
        force_sync: bool = False,
    ) -> SyncResult:
        async with self.session_factory() as db:
            try:
                await self._claim(db, connection_id, user_id, force_sync)
            except (AlreadySyncing, ConnectionNotFound) as exc:
                logger.info("Sync refused for connection %s: %s", connection_id, exc.reason)
                return SyncResult(
                    success=False, connection_id=str(connection_id), error=exc.reason, detail=str(exc)
                )
            return await self._run(db, connection_id)

    async def _run(self, db: AsyncSession, connection_id: uuid.UUID) -> SyncResult:
        totals = ReconcileResult()
        mode: FetchMode | None = None
        try:
            connection = await db.get(Connection, connection_id, populate_existing=True)
            access_token = decrypt_value(connection.encrypted_access_token)
            mode = select_mode(
                connection.environment or self.config.plaid_env,
                self.config.snapshot_environments,
            )
            fetcher = self._fetcher_factory(mode, self.client, self.config)
            logger.info("Syncing connection %s (%s mode)", connection_id, mode.value)

            async for batch in fetcher.batches(access_token, connection.cursor):
                try:
                    stats = await reconcile_batch(db, connection, batch)
                    if fetcher.writes_cursor and batch.next_cursor is not None:
                        connection.cursor = batch.next_cursor
                    await db.commit()
                except SQLAlchemyError as exc:
                    raise StorageError(str(exc)) from exc
                totals.merge(stats)

            connection.sync_status = SyncStatus.IDLE
            connection.last_synced_at = datetime.now(timezone.utc)
            connection.last_error = None
            connection.error_code = None
            await db.commit()
        except SyncError as exc:
            logger.warning("Sync failed for connection %s: %s (%s)", connection_id, exc.reason, exc)
            return await self._fail(db, connection_id, exc, mode, totals)
        except Exception as exc:
            logger.exception("Unexpected error syncing connection %s", connection_id)
            return await self._fail(db, connection_id, exc, mode, totals)

        cursor = connection.cursor
        accounts_updated = 0
        if mode is FetchMode.INCREMENTAL and self.config.sync_refresh_balances:
            try:
                accounts = await load_accounts(db, connection)
                refreshed = await refresh_balances(db, self.client, connection, access_token, accounts)
                accounts_updated = refreshed.updated
            except Exception:
                logger.exception("Balance refresh crashed for connection %s", connection_id)
                await db.rollback()

        logger.info(
            "Sync complete for connection %s: %d synced, %d promoted, %d removed, %d skipped",
            connection_id, totals.upserted, totals.promoted, totals.deleted,
            totals.skipped + totals.unmapped,
        )
        return SyncResult(
            success=True,
            connection_id=str(connection_id),
            mode=mode.value,
            transactions_synced=totals.upserted,
            pending_transactions_updated=totals.promoted,
            transactions_removed=totals.deleted,
            records_skipped=totals.skipped + totals.unmapped,
            accounts_updated=accounts_updated,
            cursor=cursor,
        )

    # ─── Fan-out ───────────────────────────────────────────────────────────

    async def sync_all(self, user_id: uuid.UUID | None = None) -> list[SyncResult]:
        """Sync every active, non-syncing connection (optionally for one user) in parallel."""
        async with self.session_factory() as db:
            stmt = select(Connection.id).where(
                Connection.is_active == True,  # noqa: E712
                or_(Connection.sync_status.is_(None), Connection.sync_status != SyncStatus.SYNCING),
            )
            if user_id is not None:
                stmt = stmt.where(Connection.user_id == user_id)
            connection_ids = (await db.execute(stmt)).scalars().all()

        if not connection_ids:
            return []
        return list(await asyncio.gather(
            *(self.sync_connection(cid, user_id) for cid in connection_ids)
        ))

    async def reset_cursor(self, user_id: uuid.UUID) -> list[SyncResult]:
        """Forget the cursor of a user's idle connections and rebuild them from scratch."""
        async with self.session_factory() as db:
            idle = or_(Connection.sync_status.is_(None), Connection.sync_status != SyncStatus.SYNCING)
            connection_ids = (await db.execute(
                select(Connection.id).where(
                    Connection.user_id == user_id,
                    Connection.is_active == True,  # noqa: E712
                    idle,
                )
            )).scalars().all()
            if not connection_ids:
                return []
            await db.execute(
                update(Connection)
                .where(Connection.id.in_(connection_ids), idle)
                .values(cursor=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        results = []
        for cid in connection_ids:
            logger.info("Cursor reset for connection %s, resyncing", cid)
            results.append(await self.sync_connection(cid, user_id))
        return results


# ─── Celery tasks ──────────────────────────────────────────────────────────

async def _with_orchestrator(fn):
    from ledger_sync.services.aggregator import AggregatorClient

    # Fresh engine per task: asyncio.run() gives every task its own event loop
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    try:
        orchestrator = SyncOrchestrator(
            async_sessionmaker(engine, expire_on_commit=False),
            AggregatorClient.from_settings(settings),
        )
        return await fn(orchestrator)
    finally:
        await engine.dispose()


@celery_app.task(name="ledger_sync.services.sync.sync_all_connections")
def sync_all_connections() -> dict:
    """Scheduled: sync every idle connection."""
    logger.info("Starting scheduled transaction sync for all connections")
    results = asyncio.run(_with_orchestrator(lambda o: o.sync_all()))
    failed = [r for r in results if not r.success]
    logger.info("Scheduled sync finished: %d ok, %d failed", len(results) - len(failed), len(failed))
    return {"connections": len(results), "failed": len(failed)}


@celery_app.task(name="ledger_sync.services.sync.sync_connection")
def sync_connection(connection_id: str, force_sync: bool = False) -> dict:
    """Sync a single connection, queued on demand."""
    logger.info("Syncing connection %s", connection_id)
    result = asyncio.run(_with_orchestrator(
        lambda o: o.sync_connection(uuid.UUID(connection_id), force_sync=force_sync)
    ))
    return asdict(result)
