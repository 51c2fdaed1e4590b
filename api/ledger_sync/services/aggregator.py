"""Plaid API client wrapper.

Built once at process start (see ``ledger_sync.main``) and handed to the services that
need it.  Responsibilities:

  * build request models and call the blocking plaid-python SDK
  * enforce a per-call timeout
  * retry rate-limited calls with bounded exponential backoff
  * translate SDK failures into UpstreamError / UpstreamRateLimited
  * convert SDK response models into ``ledger_sync.schemas.upstream`` types
"""
import json
import logging
import time
from collections.abc import Callable
from datetime import date
from typing import Any

from ledger_sync.core.config import Settings
from ledger_sync.core.errors import UpstreamError, UpstreamRateLimited
from ledger_sync.schemas.upstream import (
    SyncBatch,
    UpstreamAccount,
    parse_accounts,
    parse_transactions,
    removed_ids,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_CODES = frozenset({
    "RATE_LIMIT_EXCEEDED",
    "TRANSACTIONS_LIMIT",
    "TRANSACTIONS_SYNC_LIMIT",
    "ACCOUNTS_BALANCE_GET_LIMIT",
    "INSTITUTION_RATE_LIMIT",
})

SNAPSHOT_PAGE_SIZE = 500   # Plaid maximum for /transactions/get


def _error_details(exc: Exception) -> tuple[int | None, str | None, str]:
    """Pull (http status, Plaid error_code, message) out of an SDK exception."""
    status = getattr(exc, "status", None)
    body = getattr(exc, "body", None)
    error_code = None
    message = str(exc)
    if body:
        try:
            payload = json.loads(body)
        except (TypeError, ValueError):
            payload = {}
        error_code = payload.get("error_code")
        message = payload.get("error_message") or message
    return status, error_code, message


class AggregatorClient:
    def __init__(
        self,
        api,
        *,
        timeout: float = 5.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._api = api
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @classmethod
    def from_settings(cls, s: Settings) -> "AggregatorClient":
        import plaid
        from plaid.api import plaid_api

        configuration = plaid.Configuration(
            host=getattr(plaid.Environment, s.plaid_env.capitalize()),
            api_key={
                "clientId": s.plaid_client_id,
                "secret": s.plaid_secret,
            },
        )
        return cls(
            plaid_api.PlaidApi(plaid.ApiClient(configuration)),
            timeout=s.plaid_request_timeout_seconds,
            max_attempts=s.plaid_max_attempts,
            backoff_seconds=s.plaid_backoff_seconds,
        )

    # ─── Call policy ───────────────────────────────────────────────────────

    def _call(self, operation: str, request) -> Any:
        import plaid
        from urllib3.exceptions import HTTPError as TransportError

        method = getattr(self._api, operation)
        delay = self.backoff_seconds
        for attempt in range(1, self.max_attempts + 1):
            try:
                return method(request, _request_timeout=self.timeout)
            except plaid.ApiException as exc:
                status, error_code, message = _error_details(exc)
                if status != 429 and error_code not in RATE_LIMIT_CODES:
                    raise UpstreamError(f"{operation}: {message}", error_code=error_code, status=status) from exc
                if attempt == self.max_attempts:
                    raise UpstreamRateLimited(
                        f"{operation}: rate limited after {attempt} attempts",
                        error_code=error_code,
                        status=status,
                    ) from exc
                logger.warning(
                    "Plaid %s rate limited (attempt %d/%d), retrying in %.2fs",
                    operation, attempt, self.max_attempts, delay,
                )
                self._sleep(delay)
                delay *= 2
            except TransportError as exc:
                raise UpstreamError(f"{operation}: {exc}") from exc

    # ─── Transactions ──────────────────────────────────────────────────────

    def transactions_sync(self, access_token: str, cursor: str, count: int) -> SyncBatch:
        from plaid.model.transactions_sync_request import TransactionsSyncRequest

        req = TransactionsSyncRequest(access_token=access_token, cursor=cursor or "", count=count)
        data = self._call("transactions_sync", req).to_dict()

        added, bad_added = parse_transactions(data.get("added"))
        modified, bad_modified = parse_transactions(data.get("modified"))
        return SyncBatch(
            added=added,
            modified=modified,
            removed=removed_ids(data.get("removed")),
            next_cursor=data.get("next_cursor"),
            has_more=bool(data.get("has_more")),
            accounts=parse_accounts(data.get("accounts")),
            malformed=bad_added + bad_modified,
        )

    def transactions_get(self, access_token: str, start_date: date, end_date: date) -> SyncBatch:
        """Every transaction in [start_date, end_date], paged offset-wise until complete."""
        from plaid.model.transactions_get_request import TransactionsGetRequest
        from plaid.model.transactions_get_request_options import TransactionsGetRequestOptions

        batch = SyncBatch()
        offset = 0
        while True:
            req = TransactionsGetRequest(
                access_token=access_token,
                start_date=start_date,
                end_date=end_date,
                options=TransactionsGetRequestOptions(count=SNAPSHOT_PAGE_SIZE, offset=offset),
            )
            data = self._call("transactions_get", req).to_dict()
            raw = data.get("transactions") or []
            records, malformed = parse_transactions(raw)
            batch.added.extend(records)
            batch.malformed += malformed
            if not batch.accounts:
                batch.accounts = parse_accounts(data.get("accounts"))

            offset += len(raw)
            total = data.get("total_transactions") or 0
            if not raw or offset >= total:
                return batch

    # ─── Accounts ──────────────────────────────────────────────────────────

    def accounts_get(self, access_token: str) -> list[UpstreamAccount]:
        from plaid.model.accounts_get_request import AccountsGetRequest

        data = self._call("accounts_get", AccountsGetRequest(access_token=access_token)).to_dict()
        return parse_accounts(data.get("accounts"))

    def accounts_balance_get(self, access_token: str) -> list[UpstreamAccount]:
        from plaid.model.accounts_balance_get_request import AccountsBalanceGetRequest

        data = self._call(
            "accounts_balance_get", AccountsBalanceGetRequest(access_token=access_token)
        ).to_dict()
        return parse_accounts(data.get("accounts"))

    # ─── Linking and webhooks ──────────────────────────────────────────────

    def item_public_token_exchange(self, public_token: str) -> tuple[str, str]:
        """Returns (access_token, item_id)."""
        from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest

        data = self._call(
            "item_public_token_exchange",
            ItemPublicTokenExchangeRequest(public_token=public_token),
        ).to_dict()
        return data["access_token"], data["item_id"]

    def webhook_verification_key_get(self, key_id: str) -> dict:
        """JWK used to sign webhooks with this key id."""
        from plaid.model.webhook_verification_key_get_request import WebhookVerificationKeyGetRequest

        data = self._call(
            "webhook_verification_key_get",
            WebhookVerificationKeyGetRequest(key_id=key_id),
        ).to_dict()
        return data["key"]
