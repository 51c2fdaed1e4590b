from datetime import date

import pytest

from ledger_sync.core.config import settings
from ledger_sync.core.errors import SyncLimitExceeded, UpstreamError
from ledger_sync.services.fetch_strategy import (
    FetchMode,
    IncrementalFetcher,
    SnapshotFetcher,
    SyncLimits,
    build_fetcher,
    select_mode,
)
from tests.fakes import FakeAggregator, page, txn


async def collect(fetcher, cursor=None):
    return [batch async for batch in fetcher.batches("access-token", cursor)]


class TestSelectMode:
    def test_sandbox_is_snapshot(self):
        assert select_mode("sandbox", ["sandbox"]) is FetchMode.SNAPSHOT

    def test_case_insensitive(self):
        assert select_mode("Sandbox", ["sandbox"]) is FetchMode.SNAPSHOT

    def test_production_is_incremental(self):
        assert select_mode("production", ["sandbox"]) is FetchMode.INCREMENTAL

    def test_no_snapshot_environments(self):
        assert select_mode("sandbox", []) is FetchMode.INCREMENTAL

    def test_build_fetcher(self):
        assert isinstance(build_fetcher(FetchMode.SNAPSHOT, FakeAggregator(), settings), SnapshotFetcher)
        fetcher = build_fetcher(FetchMode.INCREMENTAL, FakeAggregator(), settings)
        assert isinstance(fetcher, IncrementalFetcher)
        assert fetcher.limits.max_rounds == settings.sync_max_rounds


class TestSnapshotFetcher:
    async def test_single_batch_without_cursor(self):
        client = FakeAggregator(snapshot=page(added=[txn("t1")], next_cursor="ignored", has_more=True))
        batches = await collect(SnapshotFetcher(client, window_days=30, today=date(2026, 10, 16)), cursor="old")

        assert len(batches) == 1
        assert [r.transaction_id for r in batches[0].added] == ["t1"]
        assert batches[0].next_cursor is None
        assert batches[0].has_more is False
        assert client.sync_cursors == []

    async def test_window(self):
        client = FakeAggregator()
        await collect(SnapshotFetcher(client, window_days=30, today=date(2026, 10, 16)))
        assert client.snapshot_windows == [(date(2026, 9, 16), date(2026, 10, 16))]

    def test_does_not_write_cursor(self):
        assert SnapshotFetcher.writes_cursor is False
        assert IncrementalFetcher.writes_cursor is True


class TestIncrementalFetcher:
    async def test_follows_cursor_until_done(self):
        client = FakeAggregator(pages=[
            page(added=[txn("t1")], next_cursor="c1", has_more=True),
            page(added=[txn("t2")], next_cursor="c2", has_more=True),
            page(removed=["t1"], next_cursor="c3", has_more=False),
        ])
        batches = await collect(IncrementalFetcher(client), cursor="c0")

        assert [b.next_cursor for b in batches] == ["c1", "c2", "c3"]
        assert client.sync_cursors == ["c0", "c1", "c2"]

    async def test_no_cursor_starts_from_empty_string(self):
        client = FakeAggregator(pages=[page(next_cursor="c1")])
        await collect(IncrementalFetcher(client))
        assert client.sync_cursors == [""]

    async def test_round_cap(self):
        client = FakeAggregator(pages=[page(next_cursor=f"c{i}", has_more=True) for i in range(5)])
        fetcher = IncrementalFetcher(client, limits=SyncLimits(max_transactions=1000, max_rounds=2))
        seen = []
        with pytest.raises(SyncLimitExceeded):
            async for batch in fetcher.batches("access-token", None):
                seen.append(batch.next_cursor)
        assert seen == ["c0", "c1"]

    async def test_transaction_cap(self):
        client = FakeAggregator(pages=[
            page(added=[txn("t1"), txn("t2")], next_cursor="c1", has_more=True),
            page(added=[txn("t3"), txn("t4")], next_cursor="c2", has_more=False),
        ])
        fetcher = IncrementalFetcher(client, limits=SyncLimits(max_transactions=3, max_rounds=10))
        seen = []
        with pytest.raises(SyncLimitExceeded):
            async for batch in fetcher.batches("access-token", None):
                seen.append(batch.next_cursor)
        assert seen == ["c1"]

    async def test_upstream_error_propagates(self):
        client = FakeAggregator(pages=[
            page(next_cursor="c1", has_more=True),
            UpstreamError("ITEM_LOGIN_REQUIRED", error_code="ITEM_LOGIN_REQUIRED"),
        ])
        seen = []
        with pytest.raises(UpstreamError):
            async for batch in IncrementalFetcher(client).batches("access-token", None):
                seen.append(batch.next_cursor)
        assert seen == ["c1"]
