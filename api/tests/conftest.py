"""
Shared fixtures. Settings are read at import time, so the environment is set up
before anything from ledger_sync is imported.

Run with:
    pip install -e ".[test]" && pytest
"""
import os
import tempfile
import uuid
from pathlib import Path

from cryptography.fernet import Fernet

_DB_DIR = tempfile.mkdtemp(prefix="ledger-sync-tests-")
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{Path(_DB_DIR) / 'app.db'}"
os.environ["REDIS_URL"] = "memory://"
os.environ["ENVIRONMENT"] = "test"
os.environ["PLAID_ENV"] = "sandbox"

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from ledger_sync.core.database import Base  # noqa: E402
from ledger_sync.core.security import encrypt_value  # noqa: E402
from ledger_sync.models.account import Account, Connection, SyncStatus  # noqa: E402

ACCESS_TOKEN = "access-sandbox-0001"


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


async def seed_connection(
    session_factory,
    *,
    accounts: tuple[str, ...] = ("acc-1",),
    environment: str = "production",
    sync_status: str | None = SyncStatus.IDLE,
    cursor: str | None = None,
    user_id: uuid.UUID | None = None,
    item_id: str | None = None,
    is_active: bool = True,
) -> Connection:
    """Insert one connection with the given upstream account ids."""
    async with session_factory() as db:
        conn = Connection(
            user_id=user_id or uuid.uuid4(),
            item_id=item_id or f"item-{uuid.uuid4().hex[:8]}",
            institution_name="First Platypus Bank",
            encrypted_access_token=encrypt_value(ACCESS_TOKEN),
            environment=environment,
            cursor=cursor,
            sync_status=sync_status,
            is_active=is_active,
        )
        db.add(conn)
        await db.flush()
        for provider_id in accounts:
            db.add(Account(
                connection_id=conn.id,
                provider_account_id=provider_id,
                name=f"Checking {provider_id}",
                type="depository",
                subtype="checking",
            ))
        await db.commit()
        return conn


@pytest.fixture
def seed(session_factory):
    async def _seed(**kwargs) -> Connection:
        return await seed_connection(session_factory, **kwargs)
    return _seed
