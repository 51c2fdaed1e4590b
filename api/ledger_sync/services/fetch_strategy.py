"""Fetch strategy: how transaction deltas are pulled from Plaid.

Two mutually exclusive modes, fixed per sync call:

    snapshot     – /transactions/get over a trailing window; one complete result,
                   everything treated as "added", no cursor read or written
    incremental  – /transactions/sync from the stored cursor, one SyncBatch per page
                   until has_more is false, bounded by a safety cap

Both fetchers are async iterators of SyncBatch so the orchestrator can reconcile and
commit each round before asking for the next one.
"""
import asyncio
import enum
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import date, timedelta

from ledger_sync.core.config import Settings
from ledger_sync.core.errors import SyncLimitExceeded
from ledger_sync.schemas.upstream import SyncBatch

logger = logging.getLogger(__name__)


class FetchMode(str, enum.Enum):
    SNAPSHOT = "snapshot"
    INCREMENTAL = "incremental"


def select_mode(environment: str, snapshot_environments: list[str]) -> FetchMode:
    if environment.lower() in {e.lower() for e in snapshot_environments}:
        return FetchMode.SNAPSHOT
    return FetchMode.INCREMENTAL


@dataclass
class SyncLimits:
    max_transactions: int = 10_000
    max_rounds: int = 100

    @classmethod
    def from_settings(cls, s: Settings) -> "SyncLimits":
        return cls(max_transactions=s.sync_max_transactions, max_rounds=s.sync_max_rounds)


class SnapshotFetcher:
    mode = FetchMode.SNAPSHOT
    writes_cursor = False

    def __init__(self, client, window_days: int = 30, today: date | None = None):
        self.client = client
        self.window_days = window_days
        self._today = today

    async def batches(self, access_token: str, cursor: str | None) -> AsyncIterator[SyncBatch]:
        end = self._today or date.today()
        start = end - timedelta(days=self.window_days)
        batch = await asyncio.to_thread(self.client.transactions_get, access_token, start, end)
        # Snapshot results never carry continuation state
        batch.next_cursor = None
        batch.has_more = False
        logger.info("Snapshot fetch %s..%s returned %d transactions", start, end, len(batch.added))
        yield batch


class IncrementalFetcher:
    mode = FetchMode.INCREMENTAL
    writes_cursor = True

    def __init__(self, client, page_size: int = 500, limits: SyncLimits | None = None):
        self.client = client
        self.page_size = page_size
        self.limits = limits or SyncLimits()

    async def batches(self, access_token: str, cursor: str | None) -> AsyncIterator[SyncBatch]:
        next_cursor = cursor or ""
        rounds = 0
        seen = 0
        has_more = True

        while has_more:
            batch = await asyncio.to_thread(
                self.client.transactions_sync, access_token, next_cursor, self.page_size
            )
            rounds += 1
            seen += batch.record_count

            if rounds > self.limits.max_rounds:
                raise SyncLimitExceeded(f"more than {self.limits.max_rounds} pages")
            if seen > self.limits.max_transactions:
                raise SyncLimitExceeded(f"more than {self.limits.max_transactions} transactions")

            logger.debug(
                "Incremental page %d: +%d ~%d -%d has_more=%s",
                rounds, len(batch.added), len(batch.modified), len(batch.removed), batch.has_more,
            )
            yield batch

            has_more = batch.has_more
            if batch.next_cursor is not None:
                next_cursor = batch.next_cursor


def build_fetcher(mode: FetchMode, client, s: Settings):
    if mode is FetchMode.SNAPSHOT:
        return SnapshotFetcher(client, window_days=s.snapshot_window_days)
    return IncrementalFetcher(client, page_size=s.sync_page_size, limits=SyncLimits.from_settings(s))
