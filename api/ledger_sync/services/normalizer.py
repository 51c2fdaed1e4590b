"""
Upstream transaction normalizer: pure functions, no DB, no network.

Turns one UpstreamTransaction into the canonical ledger representation:

    amount        – Plaid reports outflows as positive; the ledger stores
                    money in as positive, so the amount is always negated
    name          – merchant name → original description → Plaid name → "Unknown"
    icon_url      – logo_url → first counterparty logo → None
    occurred_at   – datetime → date at 00:00 UTC → None
    currency_code – ISO code → unofficial code → "USD"

Only two things make a record unusable: an amount that is not a finite number
(InvalidAmount) and a missing transaction/account id (MissingIdentity).
"""
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

from ledger_sync.core.errors import InvalidAmount, MissingIdentity
from ledger_sync.schemas.upstream import UpstreamTransaction

DEFAULT_CURRENCY = "USD"
UNKNOWN_DESCRIPTION = "Unknown"


@dataclass
class NormalizedTransaction:
    provider_transaction_id: str
    provider_account_id: str
    amount: Decimal
    currency_code: str
    pending: bool
    pending_transaction_id: str | None
    name: str
    merchant_name: str | None
    icon_url: str | None
    occurred_at: datetime | None
    provider_category: str | None
    payment_channel: str | None
    website: str | None


# ─── Field resolution ──────────────────────────────────────────────────────

def normalize_amount(value) -> Decimal:
    """Negate an upstream amount. Zero always comes back as Decimal("0")."""
    if value is None or isinstance(value, bool):
        raise InvalidAmount(f"amount is {value!r}")
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"amount {value!r} is not a number")
    if not parsed.is_finite():
        raise InvalidAmount(f"amount {value!r} is not finite")
    if parsed.is_zero():
        return Decimal("0")
    return -parsed


def resolve_icon(record: UpstreamTransaction) -> str | None:
    if record.logo_url:
        return record.logo_url
    if record.counterparties:
        return record.counterparties[0].logo_url or None
    return None


def resolve_description(record: UpstreamTransaction) -> str:
    return (
        record.merchant_name
        or record.original_description
        or UNKNOWN_DESCRIPTION
    )


def resolve_currency(record: UpstreamTransaction) -> str:
    return record.iso_currency_code or record.unofficial_currency_code or DEFAULT_CURRENCY


def resolve_category(record: UpstreamTransaction) -> str | None:
    pfc = record.personal_finance_category
    if pfc and (pfc.detailed or pfc.primary):
        return pfc.detailed or pfc.primary
    return record.category_id


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_timestamp(record: UpstreamTransaction) -> datetime | None:
    """Prefer the precise instant; fall back to the posting day at midnight UTC."""
    ts = record.datetime
    if isinstance(ts, datetime):
        return _to_utc(ts)
    if isinstance(ts, str) and ts:
        try:
            return _to_utc(datetime.fromisoformat(ts.replace("Z", "+00:00")))
        except ValueError:
            pass

    d = record.date
    if isinstance(d, datetime):
        return _to_utc(d)
    if isinstance(d, date):
        return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)
    if isinstance(d, str) and d:
        try:
            parsed = date.fromisoformat(d[:10])
        except ValueError:
            return None
        return datetime(parsed.year, parsed.month, parsed.day, tzinfo=timezone.utc)
    return None


# ─── Entry point ───────────────────────────────────────────────────────────

def normalize_transaction(record: UpstreamTransaction) -> NormalizedTransaction:
    if not record.transaction_id:
        raise MissingIdentity("transaction_id is missing")
    if not record.account_id:
        raise MissingIdentity("account_id is missing", record.transaction_id)

    try:
        amount = normalize_amount(record.amount)
    except InvalidAmount as exc:
        exc.transaction_id = record.transaction_id
        raise

    return NormalizedTransaction(
        provider_transaction_id=record.transaction_id,
        provider_account_id=record.account_id,
        amount=amount,
        currency_code=resolve_currency(record),
        pending=bool(record.pending),
        pending_transaction_id=record.pending_transaction_id or None,
        name=resolve_description(record),
        merchant_name=record.merchant_name,
        icon_url=resolve_icon(record),
        occurred_at=resolve_timestamp(record),
        provider_category=resolve_category(record),
        payment_channel=record.payment_channel,
        website=record.website,
    )
