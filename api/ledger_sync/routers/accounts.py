import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_sync.core.database import get_db
from ledger_sync.models.account import Account, Connection, Transaction
from ledger_sync.schemas.account import AccountResponse, TransactionResponse

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.get("/", response_model=list[AccountResponse])
async def list_accounts(
    user_id: uuid.UUID = Query(...),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Account)
        .join(Connection, Account.connection_id == Connection.id)
        .where(Connection.user_id == user_id, Connection.is_active == True)  # noqa: E712
        .order_by(Account.name)
    )
    return result.scalars().all()


@router.get("/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    user_id: uuid.UUID = Query(...),
    account_id: uuid.UUID | None = Query(default=None),
    pending: bool | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Ledger rows for a user, newest first. Amounts are positive for money in."""
    stmt = (
        select(Transaction)
        .join(Account, Transaction.account_id == Account.id)
        .join(Connection, Account.connection_id == Connection.id)
        .where(Connection.user_id == user_id)
    )
    if account_id is not None:
        owned = await db.scalar(
            select(Account.id)
            .join(Connection, Account.connection_id == Connection.id)
            .where(Account.id == account_id, Connection.user_id == user_id)
        )
        if owned is None:
            raise HTTPException(status_code=404, detail="Account not found")
        stmt = stmt.where(Transaction.account_id == account_id)
    if pending is not None:
        stmt = stmt.where(Transaction.pending == pending)

    result = await db.execute(
        stmt.order_by(Transaction.occurred_at.desc(), Transaction.id).limit(limit).offset(offset)
    )
    return result.scalars().all()
