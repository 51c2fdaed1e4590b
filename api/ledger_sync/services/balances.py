"""Balance refresher: post-sync account balance update.

Runs after a successful incremental sync (snapshot fetches do not return fresh
balances).  One upstream call returns every account on the connection; each account is
validated and written on its own so a bad row only costs that account.  Nothing here
can fail the sync that already committed.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_sync.core.errors import BalanceRefreshPartialFailure, UpstreamError
from ledger_sync.models.account import Account, Connection
from ledger_sync.schemas.upstream import UpstreamBalances

logger = logging.getLogger(__name__)


@dataclass
class BalanceRefreshResult:
    updated: int = 0
    failed: list[str] = field(default_factory=list)


def _decimal(value) -> Decimal | None:
    if value is None:
        return None
    parsed = Decimal(str(value))
    if not parsed.is_finite():
        raise ValueError(f"balance {value!r} is not finite")
    return parsed


def apply_balances(account: Account, balances: UpstreamBalances, now: datetime | None = None) -> None:
    """Write an upstream balance object onto an account. Raises on malformed numbers."""
    current = _decimal(balances.current)
    available = _decimal(balances.available)
    account.current_balance = current
    account.available_balance = available
    account.currency_code = (
        balances.iso_currency_code or balances.unofficial_currency_code or account.currency_code or "USD"
    )
    account.balances = balances.model_dump(mode="json")
    account.balances_updated_at = now or datetime.now(timezone.utc)


async def refresh_balances(
    db: AsyncSession,
    client,
    connection: Connection,
    access_token: str,
    accounts: dict[str, Account],
) -> BalanceRefreshResult:
    """Fetch current balances and write them. Commits what succeeded."""
    result = BalanceRefreshResult()
    try:
        upstream = await asyncio.to_thread(client.accounts_balance_get, access_token)
    except UpstreamError as exc:
        logger.warning("Balance refresh skipped for connection %s: %s", connection.id, exc)
        result.failed = list(accounts)
        return result

    now = datetime.now(timezone.utc)
    seen: set[str] = set()
    for ua in upstream:
        provider_id = ua.account_id or "?"
        seen.add(provider_id)
        try:
            account = accounts.get(provider_id)
            if account is None:
                raise BalanceRefreshPartialFailure(provider_id, "account is not linked locally")
            if ua.balances is None:
                raise BalanceRefreshPartialFailure(provider_id, "no balances returned")
            try:
                apply_balances(account, ua.balances, now)
            except (ArithmeticError, ValueError) as exc:
                raise BalanceRefreshPartialFailure(provider_id, str(exc)) from exc
            result.updated += 1
        except BalanceRefreshPartialFailure as exc:
            result.failed.append(provider_id)
            logger.warning("Balance refresh failed for account %s", exc)

    for provider_id in accounts:
        if provider_id not in seen:
            logger.info("Balance refresh: account %s not returned upstream", provider_id)

    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Could not store refreshed balances for connection %s: %s", connection.id, exc)
        result.failed = sorted(set(result.failed) | set(accounts))
        result.updated = 0
        return result

    logger.info(
        "Refreshed balances for %d account(s) on connection %s (%d failed)",
        result.updated, connection.id, len(result.failed),
    )
    return result
