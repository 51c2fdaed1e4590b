"""Error taxonomy for the sync engine.

Two families:

    RecordSkipped   – a single upstream record could not be used; the batch carries on
    SyncError       – the current run cannot continue; the orchestrator turns it into a
                      failed SyncResult and never lets it escape the API boundary

Every SyncError carries a stable ``reason`` code that API callers can branch on.
"""


class RecordSkipped(Exception):
    """Per-record failure. Counted, logged, never fatal to a batch."""

    def __init__(self, message: str, transaction_id: str | None = None):
        super().__init__(message)
        self.transaction_id = transaction_id


class InvalidAmount(RecordSkipped):
    pass


class MissingIdentity(RecordSkipped):
    pass


class AccountNotMapped(RecordSkipped):
    pass


class SyncError(Exception):
    reason = "sync_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)


class UpstreamError(SyncError):
    reason = "upstream_error"

    def __init__(self, message: str = "", error_code: str | None = None, status: int | None = None):
        super().__init__(message)
        self.error_code = error_code
        self.status = status


class UpstreamRateLimited(UpstreamError):
    reason = "upstream_rate_limited"


class SyncLimitExceeded(SyncError):
    reason = "sync_limit_exceeded"


class StorageError(SyncError):
    reason = "storage_error"


class AlreadySyncing(SyncError):
    reason = "already_syncing"


class ConnectionNotFound(SyncError):
    reason = "connection_not_found"


class VerificationFailed(Exception):
    """Webhook rejected. The message is fixed so callers learn nothing about which check failed."""

    def __init__(self):
        super().__init__("webhook verification failed")


class BalanceRefreshPartialFailure(Exception):
    """Raised per account inside the balance refresher and logged, never propagated."""

    def __init__(self, provider_account_id: str, message: str):
        super().__init__(f"{provider_account_id}: {message}")
        self.provider_account_id = provider_account_id
