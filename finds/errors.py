"""Error taxonomy for the find ledger."""

from __future__ import annotations

from typing import Any, Dict, Optional


class FindLedgerError(Exception):
    """Raised when a find ledger operation fails."""

    status_code = 500
    error_code = "find_ledger_error"

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload or {"error": self.error_code, "message": message}


class FindNotFound(FindLedgerError):
    """The cache or the user referenced by a find does not exist."""

    status_code = 404
    error_code = "not_found"

    @classmethod
    def for_cache(cls, cache_id: str) -> "FindNotFound":
        return cls(
            f"Cache {cache_id} not found",
            payload={"error": "cache_not_found", "cache_id": cache_id},
        )

    @classmethod
    def for_user(cls, user_id: str) -> "FindNotFound":
        return cls(
            f"User {user_id} not found",
            payload={"error": "user_not_found", "user_id": user_id},
        )


class DuplicateFind(FindLedgerError):
    """The user already logged this cache; the existing record stands."""

    status_code = 409
    error_code = "duplicate_find"

    def __init__(self, user_id: str, cache_id: str):
        super().__init__(
            "Find already logged for this cache",
            payload={"error": self.error_code, "user_id": user_id, "cache_id": cache_id},
        )
        self.user_id = user_id
        self.cache_id = cache_id


class TransientFailure(FindLedgerError):
    """Storage unavailable or timed out; callers may retry with backoff."""

    status_code = 503
    error_code = "storage_unavailable"
    retry_after_seconds = 2


class InvalidFindNote(FindLedgerError):
    """The optional log note was rejected."""

    status_code = 400
    error_code = "invalid_note"
