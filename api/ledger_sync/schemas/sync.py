import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class SyncRequest(BaseModel):
    connection_id: uuid.UUID = Field(alias="connectionId")
    user_id: uuid.UUID = Field(alias="userId")
    force_sync: bool = Field(default=False, alias="forceSync")

    model_config = {"populate_by_name": True}


class UserRequest(BaseModel):
    user_id: uuid.UUID = Field(alias="userId")

    model_config = {"populate_by_name": True}


class PublicTokenExchange(BaseModel):
    public_token: str = Field(alias="publicToken")
    user_id: uuid.UUID = Field(alias="userId")
    institution_id: str | None = Field(default=None, alias="institutionId")
    institution_name: str | None = Field(default=None, alias="institutionName")
    environment: str | None = None

    model_config = {"populate_by_name": True}


class SyncResponse(BaseModel):
    success: bool
    transactions_synced: int
    pending_transactions_updated: int
    transactions_removed: int = 0
    records_skipped: int = 0
    accounts_updated: int
    cursor: str | None
    mode: str | None = None


class SyncErrorResponse(BaseModel):
    error: str
    reason: str


class ConnectionSyncResult(BaseModel):
    connection_id: str
    success: bool
    transactions_synced: int = 0
    pending_transactions_updated: int = 0
    error: str | None = None


class SyncAllResponse(BaseModel):
    success: bool
    items_synced: int
    total_items: int
    failed_items: int
    total_transactions_synced: int
    total_pending_updated: int
    results: list[ConnectionSyncResult]


class ConnectionResponse(BaseModel):
    id: uuid.UUID
    item_id: str
    institution_name: str | None
    environment: str | None
    sync_status: str | None
    last_synced_at: datetime | None
    last_error: str | None
    error_code: str | None
    is_active: bool
    account_count: int = 0
