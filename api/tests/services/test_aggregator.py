"""
AggregatorClient call policy and response mapping, with the Plaid API object replaced.
"""
import json
from datetime import date

import plaid
import pytest
from urllib3.exceptions import HTTPError

from ledger_sync.core.errors import UpstreamError, UpstreamRateLimited
from ledger_sync.services.aggregator import AggregatorClient


class Response:
    def __init__(self, payload: dict):
        self.payload = payload

    def to_dict(self) -> dict:
        return self.payload


def api_error(status: int, error_code: str | None = None, message: str = "boom") -> plaid.ApiException:
    exc = plaid.ApiException(status=status, reason="error")
    if error_code:
        exc.body = json.dumps({"error_code": error_code, "error_message": message})
    return exc


class FakeApi:
    """Returns (or raises) scripted outcomes in order, recording each request."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, object, float]] = []

    def _next(self, name, request, timeout):
        self.calls.append((name, request, timeout))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return Response(outcome)

    def transactions_sync(self, request, _request_timeout=None):
        return self._next("transactions_sync", request, _request_timeout)

    def transactions_get(self, request, _request_timeout=None):
        return self._next("transactions_get", request, _request_timeout)

    def accounts_get(self, request, _request_timeout=None):
        return self._next("accounts_get", request, _request_timeout)


def make_client(api, **kwargs):
    sleeps: list[float] = []
    client = AggregatorClient(api, sleep=sleeps.append, **kwargs)
    return client, sleeps


SYNC_PAGE = {
    "added": [{"transaction_id": "t1", "account_id": "acc-1", "amount": 12.5}],
    "modified": [],
    "removed": [{"transaction_id": "t0"}],
    "next_cursor": "c1",
    "has_more": True,
    "accounts": [{"account_id": "acc-1", "name": "Checking"}],
}


class TestCallPolicy:
    def test_passes_timeout(self):
        api = FakeApi(SYNC_PAGE)
        client, _ = make_client(api, timeout=2.5)
        client.transactions_sync("access-token", "", 100)
        assert api.calls[0][2] == 2.5

    def test_rate_limit_retried_with_backoff(self):
        api = FakeApi(api_error(429), api_error(429), SYNC_PAGE)
        client, sleeps = make_client(api, max_attempts=3, backoff_seconds=0.5)

        batch = client.transactions_sync("access-token", "c0", 100)

        assert batch.next_cursor == "c1"
        assert sleeps == [0.5, 1.0]
        assert len(api.calls) == 3

    def test_rate_limit_error_code_retried(self):
        api = FakeApi(api_error(400, "TRANSACTIONS_SYNC_LIMIT"), SYNC_PAGE)
        client, sleeps = make_client(api)
        client.transactions_sync("access-token", "c0", 100)
        assert len(sleeps) == 1

    def test_rate_limit_gives_up(self):
        api = FakeApi(api_error(429), api_error(429), api_error(429))
        client, sleeps = make_client(api, max_attempts=3)

        with pytest.raises(UpstreamRateLimited):
            client.transactions_sync("access-token", "c0", 100)
        assert len(sleeps) == 2

    def test_other_errors_not_retried(self):
        api = FakeApi(api_error(400, "ITEM_LOGIN_REQUIRED", "login required"))
        client, sleeps = make_client(api)

        with pytest.raises(UpstreamError) as exc:
            client.transactions_sync("access-token", "c0", 100)
        assert not isinstance(exc.value, UpstreamRateLimited)
        assert exc.value.error_code == "ITEM_LOGIN_REQUIRED"
        assert exc.value.status == 400
        assert sleeps == []

    def test_transport_error_mapped(self):
        api = FakeApi(HTTPError("connection reset"))
        client, _ = make_client(api)
        with pytest.raises(UpstreamError):
            client.accounts_get("access-token")


class TestResponseMapping:
    def test_sync_page(self):
        client, _ = make_client(FakeApi(SYNC_PAGE))
        batch = client.transactions_sync("access-token", "c0", 100)

        assert [t.transaction_id for t in batch.added] == ["t1"]
        assert batch.removed == ["t0"]
        assert batch.has_more is True
        assert batch.accounts[0].account_id == "acc-1"

    def test_malformed_record_counted(self):
        page = dict(SYNC_PAGE, added=[{"transaction_id": ["not", "a", "string"]}])
        client, _ = make_client(FakeApi(page))
        batch = client.transactions_sync("access-token", "c0", 100)
        assert batch.added == []
        assert batch.malformed == 1

    def test_snapshot_pages_by_offset(self):
        first = {
            "transactions": [
                {"transaction_id": "t1", "account_id": "acc-1", "amount": 1},
                {"transaction_id": "t2", "account_id": "acc-1", "amount": 2},
            ],
            "total_transactions": 3,
            "accounts": [{"account_id": "acc-1"}],
        }
        second = {
            "transactions": [{"transaction_id": "t3", "account_id": "acc-1", "amount": 3}],
            "total_transactions": 3,
            "accounts": [{"account_id": "acc-1"}],
        }
        api = FakeApi(first, second)
        client, _ = make_client(api)

        batch = client.transactions_get("access-token", date(2026, 9, 16), date(2026, 10, 16))

        assert [t.transaction_id for t in batch.added] == ["t1", "t2", "t3"]
        assert [call[1].options.offset for call in api.calls] == [0, 2]
        assert len(batch.accounts) == 1
