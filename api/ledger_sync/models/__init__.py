from ledger_sync.models.account import Account, Category, Connection, SyncStatus, Transaction

__all__ = ["Account", "Category", "Connection", "SyncStatus", "Transaction"]
