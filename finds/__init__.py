"""Find ledger package (service + JSON API)."""

from .errors import DuplicateFind, FindLedgerError, FindNotFound, InvalidFindNote, TransientFailure
from .service import (
    get_found_cache_ids,
    get_user_find,
    has_found,
    log_find,
    reconcile_all_find_counts,
    reconcile_cache_find_count,
    reconcile_profile_counts,
)
from .routes import create_finds_blueprint

__all__ = [
    "DuplicateFind",
    "FindLedgerError",
    "FindNotFound",
    "InvalidFindNote",
    "TransientFailure",
    "create_finds_blueprint",
    "get_found_cache_ids",
    "get_user_find",
    "has_found",
    "log_find",
    "reconcile_all_find_counts",
    "reconcile_cache_find_count",
    "reconcile_profile_counts",
]
