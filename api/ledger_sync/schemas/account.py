import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class AccountResponse(BaseModel):
    id: uuid.UUID
    connection_id: uuid.UUID
    provider_account_id: str
    name: str
    official_name: str | None
    type: str | None
    subtype: str | None
    mask: str | None
    current_balance: Decimal | None
    available_balance: Decimal | None
    currency_code: str
    balances_updated_at: datetime | None

    model_config = {"from_attributes": True}


class TransactionResponse(BaseModel):
    id: uuid.UUID
    account_id: uuid.UUID
    provider_transaction_id: str
    amount: Decimal
    currency_code: str
    pending: bool
    occurred_at: datetime | None
    name: str
    merchant_name: str | None
    icon_url: str | None
    provider_category: str | None
    category_id: uuid.UUID | None

    model_config = {"from_attributes": True}
