"""Error types and degradation codes shared by the engine.

Pool shortfalls, stale stored sessions and user mismatches are recoverable
and surface as warning dicts or log events carrying one of the codes below.
"""

INSUFFICIENT_POOL = "insufficient_pool"
STORAGE_QUOTA_EXCEEDED = "storage_quota_exceeded"
STALE_SESSION_MISMATCH = "stale_session_mismatch"
CONCURRENT_USER_MISMATCH = "concurrent_user_mismatch"


class StorageQuotaExceeded(Exception):
    """A persistence write was rejected because the store is full."""


class SessionNotActive(Exception):
    """The operation needs an ACTIVE session and there is none."""
