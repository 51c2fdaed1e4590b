"""Typed views of Plaid responses.

Every field is optional: the aggregator hands us whatever the SDK returned and the
normalizer resolves defaults explicitly.  Unknown keys are ignored so new Plaid fields
never break parsing.
"""
import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class _Upstream(BaseModel):
    model_config = {"extra": "ignore"}


class Counterparty(_Upstream):
    name: str | None = None
    type: str | None = None
    logo_url: str | None = None
    website: str | None = None


class PersonalFinanceCategory(_Upstream):
    primary: str | None = None
    detailed: str | None = None


class UpstreamTransaction(_Upstream):
    transaction_id: str | None = None
    account_id: str | None = None
    amount: Any = None                      # parsed by the normalizer, may be junk
    iso_currency_code: str | None = None
    unofficial_currency_code: str | None = None
    pending: bool | None = None
    pending_transaction_id: str | None = None
    name: str | None = None
    merchant_name: str | None = None
    original_description: str | None = None
    logo_url: str | None = None
    website: str | None = None
    counterparties: list[Counterparty] | None = None
    personal_finance_category: PersonalFinanceCategory | None = None
    category_id: str | None = None
    payment_channel: str | None = None
    date: Any = None                        # datetime.date or "YYYY-MM-DD"
    datetime: Any = None                    # datetime.datetime or ISO-8601 string


class UpstreamBalances(_Upstream):
    current: Any = None
    available: Any = None
    limit: Any = None
    iso_currency_code: str | None = None
    unofficial_currency_code: str | None = None


class UpstreamAccount(_Upstream):
    account_id: str | None = None
    name: str | None = None
    official_name: str | None = None
    type: str | None = None
    subtype: str | None = None
    mask: str | None = None
    balances: UpstreamBalances | None = None


@dataclass
class SyncBatch:
    """One fetch round. Never persisted."""
    added: list[UpstreamTransaction] = field(default_factory=list)
    modified: list[UpstreamTransaction] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False
    accounts: list[UpstreamAccount] = field(default_factory=list)
    malformed: int = 0          # records that failed to parse at all

    @property
    def record_count(self) -> int:
        return len(self.added) + len(self.modified) + len(self.removed)


def parse_transactions(raw: list[dict] | None) -> tuple[list[UpstreamTransaction], int]:
    """Validate raw transaction dicts. Returns (records, malformed_count)."""
    records: list[UpstreamTransaction] = []
    malformed = 0
    for item in raw or []:
        try:
            records.append(UpstreamTransaction.model_validate(item))
        except ValidationError as exc:
            malformed += 1
            logger.warning("Dropping unparseable upstream transaction: %s", exc.errors()[:1])
    return records, malformed


def parse_accounts(raw: list[dict] | None) -> list[UpstreamAccount]:
    accounts: list[UpstreamAccount] = []
    for item in raw or []:
        try:
            accounts.append(UpstreamAccount.model_validate(item))
        except ValidationError as exc:
            logger.warning("Dropping unparseable upstream account: %s", exc.errors()[:1])
    return accounts


def removed_ids(raw: list[Any] | None) -> list[str]:
    """Plaid sends removed transactions as objects; webhooks send bare ids. Accept both."""
    ids: list[str] = []
    for item in raw or []:
        if isinstance(item, str):
            ids.append(item)
        elif isinstance(item, dict) and item.get("transaction_id"):
            ids.append(item["transaction_id"])
    return ids
