"""Reconciliation engine: merge one SyncBatch into the local ledger.

Per round:

    1. normalize added + modified; remember {pending id → posted record} for added
       records that supersede a pending transaction
    2. delete (removed ids ∪ superseded pending ids) in one statement
    3. upsert the normalized records keyed on provider_transaction_id, minus pending
       records superseded in the same page

Deletes run before upserts.  Deleting by a set union makes the "removed" signal and
the implicit promotion signal collapse into a single idempotent delete, so a pending
row named by both is removed exactly once and a missing row is not an error.

Per-record problems are counted and skipped.  Storage errors propagate so the
orchestrator can roll the round back without advancing the cursor.
"""
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_sync.core.errors import AccountNotMapped, RecordSkipped
from ledger_sync.models.account import Account, Category, Connection, Transaction
from ledger_sync.schemas.upstream import SyncBatch, UpstreamAccount
from ledger_sync.services.balances import apply_balances
from ledger_sync.services.normalizer import NormalizedTransaction, normalize_transaction

logger = logging.getLogger(__name__)

_CHUNK = 500


@dataclass
class ReconcileResult:
    upserted: int = 0
    inserted: int = 0
    promoted: int = 0
    deleted: int = 0
    skipped: int = 0
    unmapped: int = 0
    accounts_created: int = 0

    def merge(self, other: "ReconcileResult") -> None:
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(self, name) + getattr(other, name))


def _chunks(items: list, size: int = _CHUNK) -> Iterator[list]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


# ─── Accounts ──────────────────────────────────────────────────────────────

async def load_accounts(db: AsyncSession, connection: Connection) -> dict[str, Account]:
    result = await db.execute(select(Account).where(Account.connection_id == connection.id))
    return {a.provider_account_id: a for a in result.scalars().all()}


async def upsert_accounts(
    db: AsyncSession,
    connection: Connection,
    upstream: Iterable[UpstreamAccount],
) -> tuple[dict[str, Account], int]:
    """Create accounts seen for the first time; refresh metadata on known ones.

    Balances are only written on creation; keeping them current is the balance
    refresher's job.
    """
    accounts = await load_accounts(db, connection)
    created = 0

    for ua in upstream:
        if not ua.account_id:
            continue
        acct = accounts.get(ua.account_id)
        if acct is None:
            acct = Account(
                connection_id=connection.id,
                provider_account_id=ua.account_id,
                name=ua.name or ua.official_name or "Account",
                official_name=ua.official_name,
                type=ua.type,
                subtype=ua.subtype,
                mask=ua.mask,
            )
            if ua.balances is not None:
                try:
                    apply_balances(acct, ua.balances)
                except (ArithmeticError, ValueError) as exc:
                    logger.warning("Ignoring malformed balances for new account %s: %s", ua.account_id, exc)
            db.add(acct)
            accounts[ua.account_id] = acct
            created += 1
        else:
            acct.name = ua.name or acct.name
            acct.official_name = ua.official_name or acct.official_name
            acct.type = ua.type or acct.type
            acct.subtype = ua.subtype or acct.subtype
            acct.mask = ua.mask or acct.mask

    await db.flush()
    return accounts, created


# ─── Transactions ──────────────────────────────────────────────────────────

async def delete_transactions(
    db: AsyncSession,
    account_ids: list,
    provider_ids: Iterable[str],
) -> int:
    """Delete ledger rows by upstream id, scoped to the given accounts. Idempotent."""
    keys = sorted(set(provider_ids))
    if not keys or not account_ids:
        return 0
    deleted = 0
    for chunk in _chunks(keys):
        result = await db.execute(
            delete(Transaction)
            .where(
                Transaction.account_id.in_(account_ids),
                Transaction.provider_transaction_id.in_(chunk),
            )
            .execution_options(synchronize_session=False)
        )
        deleted += result.rowcount or 0
    return deleted


async def _category_ids(db: AsyncSession, keys: set[str]) -> dict[str, object]:
    if not keys:
        return {}
    result = await db.execute(
        select(Category.provider_key, Category.id).where(Category.provider_key.in_(sorted(keys)))
    )
    return {key: cat_id for key, cat_id in result.all()}


def _apply(txn: Transaction, account: Account, record: NormalizedTransaction, category_id) -> None:
    txn.account_id = account.id
    txn.amount = record.amount
    txn.currency_code = record.currency_code
    txn.pending = record.pending
    txn.pending_transaction_id = record.pending_transaction_id
    txn.occurred_at = record.occurred_at
    txn.name = record.name[:500]
    txn.merchant_name = record.merchant_name
    txn.icon_url = record.icon_url
    txn.payment_channel = record.payment_channel
    txn.website = record.website
    txn.provider_category = record.provider_category
    if not txn.is_manual_category:
        txn.category_id = category_id


async def reconcile_batch(
    db: AsyncSession,
    connection: Connection,
    batch: SyncBatch,
) -> ReconcileResult:
    """Apply one round to the ledger. Flushes but does not commit."""
    stats = ReconcileResult(skipped=batch.malformed)
    accounts, stats.accounts_created = await upsert_accounts(db, connection, batch.accounts)
    account_ids = [a.id for a in accounts.values()]

    # ── 1. Normalize ─────────────────────────────────────────────────
    records: dict[str, tuple[Account, NormalizedTransaction]] = {}
    promotions: dict[str, NormalizedTransaction] = {}

    for is_added, upstream in [(True, r) for r in batch.added] + [(False, r) for r in batch.modified]:
        try:
            record = normalize_transaction(upstream)
            account = accounts.get(record.provider_account_id)
            if account is None:
                raise AccountNotMapped(
                    f"no local account for {record.provider_account_id}",
                    record.provider_transaction_id,
                )
        except AccountNotMapped as exc:
            stats.unmapped += 1
            logger.warning("Skipping transaction %s: %s", exc.transaction_id, exc)
            continue
        except RecordSkipped as exc:
            stats.skipped += 1
            logger.warning("Skipping transaction %s: %s", exc.transaction_id, exc)
            continue

        # Later records win: a modified copy in the same page replaces the added one
        records[record.provider_transaction_id] = (account, record)
        if is_added and record.pending_transaction_id:
            promotions[record.pending_transaction_id] = record

    # ── 2. Delete removed ∪ superseded pending ───────────────────────
    deletion_keys = set(batch.removed) | set(promotions)
    stats.deleted = await delete_transactions(db, account_ids, deletion_keys)
    stats.promoted = len(promotions)

    # A pending row superseded in the same page must not be written back; the posted
    # record itself stays even when it reuses its pending id
    for key in promotions:
        if key in records and records[key][1].pending_transaction_id != key:
            del records[key]

    # ── 3. Upsert by provider_transaction_id ─────────────────────────
    if records:
        categories = await _category_ids(
            db, {r.provider_category for _, r in records.values() if r.provider_category}
        )
        existing: dict[str, Transaction] = {}
        for chunk in _chunks(list(records)):
            result = await db.execute(
                select(Transaction).where(
                    Transaction.account_id.in_(account_ids),
                    Transaction.provider_transaction_id.in_(chunk),
                )
            )
            existing.update({t.provider_transaction_id: t for t in result.scalars().all()})

        for provider_id, (account, record) in records.items():
            txn = existing.get(provider_id)
            if txn is None:
                txn = Transaction(provider_transaction_id=provider_id, is_manual_category=False)
                db.add(txn)
                stats.inserted += 1
            _apply(txn, account, record, categories.get(record.provider_category))
            stats.upserted += 1

    await db.flush()
    logger.info(
        "Reconciled connection %s: upserted=%d promoted=%d deleted=%d skipped=%d unmapped=%d",
        connection.id, stats.upserted, stats.promoted, stats.deleted, stats.skipped, stats.unmapped,
    )
    return stats
