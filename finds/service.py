"""Find ledger: log finds once per user/cache, award FTC and keep find counters honest.

Two storage backends are supported, mirroring the rest of the app: Supabase (when
``USE_SUPABASE`` is on and a client is configured) and the local SQLAlchemy database.
Uniqueness and the FTC claim are always decided by the database itself, never by a
read-then-write in Python.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple

from dateutil import parser as date_parser
from flask import current_app, has_app_context
from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from finds.errors import (
    DuplicateFind,
    FindLedgerError,
    FindNotFound,
    TransientFailure,
)
from finds.models import Find
from finds.notes import clean_find_note
from models import Cache, Profile

FINDS_TABLE = "finds"
CACHES_TABLE = "caches"
LOG_FIND_RPC = "log_find"
RECONCILE_CACHE_RPC = "reconcile_find_counts"
RECONCILE_PROFILE_RPC = "reconcile_profile_counts"
DEFAULT_TIMEOUT_SECONDS = 5.0

_SUPABASE_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="find-ledger")


# ====== Public API ======

def log_find(
    user_id: str,
    cache_id: str,
    *,
    log_text: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Find:
    """Record that ``user_id`` found ``cache_id`` and return the new Find.

    Raises FindNotFound, DuplicateFind, InvalidFindNote or TransientFailure.
    Never retries: a retried insert that already landed must surface as DuplicateFind.
    """
    client = _get_supabase_client()
    if client:
        return _log_find_supabase(client, user_id, cache_id, log_text, _resolve_timeout(timeout))
    return _log_find_sql(user_id, cache_id, log_text, _resolve_timeout(timeout))


def has_found(user_id: str, cache_id: str, *, timeout: Optional[float] = None) -> bool:
    """Return True when the user already logged this cache (display only, not a guard)."""
    timeout = _resolve_timeout(timeout)
    client = _get_supabase_client()
    if client:
        rows = _supabase_select(
            "checking find",
            lambda: client.table(FINDS_TABLE)
            .select("id")
            .eq("user_id", user_id)
            .eq("cache_id", cache_id)
            .limit(1)
            .execute(),
            timeout,
        )
        return bool(rows)

    try:
        _apply_statement_timeout(timeout)
        return (
            db.session.query(Find.id)
            .filter(Find.user_id == user_id, Find.cache_id == cache_id)
            .first()
            is not None
        )
    except SQLAlchemyError as exc:
        raise _transient_from_sql("checking find", exc) from exc


def get_user_find(user_id: str, cache_id: str, *, timeout: Optional[float] = None) -> Optional[Find]:
    """Return the user's find for a cache, used to refetch after DuplicateFind."""
    timeout = _resolve_timeout(timeout)
    client = _get_supabase_client()
    if client:
        rows = _supabase_select(
            "fetching find",
            lambda: client.table(FINDS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .eq("cache_id", cache_id)
            .limit(1)
            .execute(),
            timeout,
        )
        return _find_from_row(rows[0]) if rows else None

    try:
        _apply_statement_timeout(timeout)
        return Find.query.filter_by(user_id=user_id, cache_id=cache_id).first()
    except SQLAlchemyError as exc:
        raise _transient_from_sql("fetching find", exc) from exc


def get_found_cache_ids(
    user_id: str,
    cache_ids: Iterable[str],
    *,
    timeout: Optional[float] = None,
) -> Set[str]:
    """Return which of ``cache_ids`` the user has found."""
    wanted = [cache_id for cache_id in dict.fromkeys(cache_ids) if cache_id]
    if not user_id or not wanted:
        return set()

    timeout = _resolve_timeout(timeout)
    client = _get_supabase_client()
    if client:
        rows = _supabase_select(
            "fetching user finds",
            lambda: client.table(FINDS_TABLE)
            .select("cache_id")
            .eq("user_id", user_id)
            .in_("cache_id", wanted)
            .execute(),
            timeout,
        )
        return {row.get("cache_id") for row in rows if row.get("cache_id")}

    try:
        _apply_statement_timeout(timeout)
        rows = (
            db.session.query(Find.cache_id)
            .filter(Find.user_id == user_id, Find.cache_id.in_(wanted))
            .all()
        )
    except SQLAlchemyError as exc:
        raise _transient_from_sql("fetching user finds", exc) from exc
    return {row[0] for row in rows}


def reconcile_cache_find_count(cache_id: str, *, timeout: Optional[float] = None) -> int:
    """Recompute one cache's finds_count from the ledger and return it (idempotent)."""
    timeout = _resolve_timeout(timeout)
    client = _get_supabase_client()
    if client:
        data = _supabase_rpc(client, RECONCILE_CACHE_RPC, {"p_cache_id": cache_id}, "reconciling cache", timeout)
        if data is None:
            raise FindNotFound.for_cache(cache_id)
        return _coerce_int(data)

    try:
        _apply_statement_timeout(timeout)
        if db.session.get(Cache, cache_id) is None:
            raise FindNotFound.for_cache(cache_id)
        db.session.execute(
            update(Cache)
            .where(Cache.id == cache_id)
            .values(finds_count=_cache_count_subquery())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return int(db.session.query(Cache.finds_count).filter(Cache.id == cache_id).scalar() or 0)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise _transient_from_sql("reconciling cache", exc) from exc


def reconcile_all_find_counts(*, timeout: Optional[float] = None) -> int:
    """Recompute every cache's finds_count; return how many had drifted."""
    timeout = _resolve_timeout(timeout)
    client = _get_supabase_client()
    if client:
        data = _supabase_rpc(client, RECONCILE_CACHE_RPC, {"p_cache_id": None}, "reconciling caches", timeout)
        return _coerce_int(data)

    try:
        _apply_statement_timeout(timeout)
        actual = dict(
            db.session.query(Find.cache_id, func.count(Find.id)).group_by(Find.cache_id).all()
        )
        drifted = 0
        for cache_id, stored in db.session.query(Cache.id, Cache.finds_count).all():
            expected = actual.get(cache_id, 0)
            if (stored or 0) != expected:
                drifted += 1
                _log_info("Reconciling finds_count for cache %s: %s -> %s", cache_id, stored, expected)

        # Recount at write time so finds landing mid-pass are still counted.
        db.session.execute(
            update(Cache)
            .values(finds_count=_cache_count_subquery())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise _transient_from_sql("reconciling caches", exc) from exc
    return drifted


def reconcile_profile_counts(user_id: str, *, timeout: Optional[float] = None) -> Tuple[int, int]:
    """Recompute a profile's finds_count and ftc_count; return both."""
    timeout = _resolve_timeout(timeout)
    client = _get_supabase_client()
    if client:
        data = _supabase_rpc(client, RECONCILE_PROFILE_RPC, {"p_user_id": user_id}, "reconciling profile", timeout)
        row = data[0] if isinstance(data, list) and data else data
        if not isinstance(row, dict):
            raise FindNotFound.for_user(user_id)
        return _coerce_int(row.get("finds_count")), _coerce_int(row.get("ftc_count"))

    try:
        _apply_statement_timeout(timeout)
        if db.session.get(Profile, user_id) is None:
            raise FindNotFound.for_user(user_id)
        finds_subquery = (
            select(func.count(Find.id)).where(Find.user_id == Profile.id).scalar_subquery()
        )
        ftc_subquery = (
            select(func.count(Find.id))
            .where(Find.user_id == Profile.id, Find.is_ftc.is_(True))
            .scalar_subquery()
        )
        db.session.execute(
            update(Profile)
            .where(Profile.id == user_id)
            .values(finds_count=finds_subquery, ftc_count=ftc_subquery)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        row = (
            db.session.query(Profile.finds_count, Profile.ftc_count)
            .filter(Profile.id == user_id)
            .one()
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise _transient_from_sql("reconciling profile", exc) from exc
    return int(row[0] or 0), int(row[1] or 0)


# ====== SQL backend ======

def _log_find_sql(user_id: str, cache_id: str, log_text: Optional[str], timeout: Optional[float]) -> Find:
    found_at = datetime.now(timezone.utc)
    try:
        _apply_statement_timeout(timeout)
        cache = db.session.get(Cache, cache_id)
        if cache is None:
            raise FindNotFound.for_cache(cache_id)
        if db.session.get(Profile, user_id) is None:
            raise FindNotFound.for_user(user_id)
        note = clean_find_note(log_text, cache)

        is_ftc = _claim_ftc_sql(cache_id, user_id, found_at)
        find = _insert_find_sql(user_id, cache_id, note, is_ftc, found_at)
        db.session.commit()
    except FindLedgerError:
        db.session.rollback()
        raise
    except IntegrityError as exc:
        db.session.rollback()
        if _is_unique_violation(exc):
            raise DuplicateFind(user_id, cache_id) from exc
        # Foreign key failure: the cache or profile vanished mid-write.
        raise FindNotFound(
            "Cache or user no longer exists",
            payload={"error": "not_found", "cache_id": cache_id, "user_id": user_id},
        ) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise _transient_from_sql("logging find", exc) from exc

    _log_info("Find logged: user=%s cache=%s ftc=%s", user_id, cache_id, is_ftc)

    try:
        _increment_counters_sql(cache_id, user_id, is_ftc)
    except SQLAlchemyError as exc:
        db.session.rollback()
        _log_warning(
            "Find counter increment failed for cache %s (user %s); run reconciliation: %s",
            cache_id,
            user_id,
            exc,
        )
    return find


def _claim_ftc_sql(cache_id: str, user_id: str, found_at: datetime) -> bool:
    """Compare-and-swap the cache's FTC slot; True only for the single winner."""
    result = db.session.execute(
        update(Cache)
        .where(Cache.id == cache_id, Cache.ftc_user_id.is_(None))
        .values(ftc_user_id=user_id, ftc_at=found_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _insert_find_sql(
    user_id: str,
    cache_id: str,
    note: Optional[str],
    is_ftc: bool,
    found_at: datetime,
) -> Find:
    find = Find(
        user_id=user_id,
        cache_id=cache_id,
        is_ftc=is_ftc,
        log_text=note,
        found_at=found_at,
    )
    db.session.add(find)
    db.session.flush()
    return find


def _increment_counters_sql(cache_id: str, user_id: str, is_ftc: bool) -> None:
    db.session.execute(
        update(Cache)
        .where(Cache.id == cache_id)
        .values(finds_count=Cache.finds_count + 1)
        .execution_options(synchronize_session=False)
    )
    profile_values: Dict[str, Any] = {"finds_count": Profile.finds_count + 1}
    if is_ftc:
        profile_values["ftc_count"] = Profile.ftc_count + 1
    db.session.execute(
        update(Profile)
        .where(Profile.id == user_id)
        .values(**profile_values)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


def _cache_count_subquery():
    return select(func.count(Find.id)).where(Find.cache_id == Cache.id).scalar_subquery()


def _apply_statement_timeout(timeout: Optional[float]) -> None:
    if not timeout:
        return
    # SQLite relies on its busy timeout; only Postgres supports a per-transaction bound.
    if db.engine.dialect.name != "postgresql":
        return
    db.session.execute(text(f"SET LOCAL statement_timeout = {int(timeout * 1000)}"))


def _is_unique_violation(exc: IntegrityError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return (
        "uq_finds_user_cache" in message
        or "unique constraint" in message
        or "duplicate key value" in message
    )


def _transient_from_sql(action: str, exc: Exception) -> TransientFailure:
    if has_app_context():
        current_app.logger.exception("Find ledger storage error while %s: %s", action, exc)
    return TransientFailure(f"Find ledger storage unavailable while {action}")


# ====== Supabase backend ======

def _log_find_supabase(
    client,
    user_id: str,
    cache_id: str,
    log_text: Optional[str],
    timeout: Optional[float],
) -> Find:
    rows = _supabase_select(
        "fetching cache",
        lambda: client.table(CACHES_TABLE)
        .select("id, url, message")
        .eq("id", cache_id)
        .limit(1)
        .execute(),
        timeout=timeout,
    )
    if not rows:
        raise FindNotFound.for_cache(cache_id)
    note = clean_find_note(log_text, rows[0])

    payload = {"p_user_id": user_id, "p_cache_id": cache_id, "p_log_text": note}
    data = _supabase_rpc(client, LOG_FIND_RPC, payload, "logging find", timeout, user_id=user_id)
    row = data[0] if isinstance(data, list) and data else data
    if not isinstance(row, dict):
        raise TransientFailure("Find ledger returned no record")

    find = _find_from_row(row)
    _log_info("Find logged via Supabase: user=%s cache=%s ftc=%s", user_id, cache_id, find.is_ftc)
    return find


def _supabase_select(action: str, query: Callable[[], Any], timeout: Optional[float]) -> list:
    try:
        resp = _call_with_timeout(query, timeout)
    except FuturesTimeoutError as exc:
        _log_supabase_warning(action, exc)
        raise TransientFailure(f"Supabase timed out while {action}") from exc
    except Exception as exc:
        _log_supabase_warning(action, exc)
        raise TransientFailure(f"Supabase unavailable while {action}") from exc
    return getattr(resp, "data", None) or []


def _supabase_rpc(
    client,
    function: str,
    params: Dict[str, Any],
    action: str,
    timeout: Optional[float],
    *,
    user_id: Optional[str] = None,
):
    try:
        resp = _call_with_timeout(lambda: client.rpc(function, params).execute(), timeout)
    except FuturesTimeoutError as exc:
        _log_supabase_warning(action, exc)
        raise TransientFailure(f"Supabase timed out while {action}") from exc
    except Exception as exc:
        if _is_supabase_conflict(exc):
            raise DuplicateFind(user_id or params.get("p_user_id"), params.get("p_cache_id")) from exc
        missing = _supabase_missing_entity(exc)
        if missing == "cache":
            raise FindNotFound.for_cache(params.get("p_cache_id")) from exc
        if missing == "user":
            raise FindNotFound.for_user(user_id or params.get("p_user_id")) from exc
        _log_supabase_warning(action, exc)
        raise TransientFailure(f"Supabase unavailable while {action}") from exc
    return getattr(resp, "data", None)


def _call_with_timeout(call: Callable[[], Any], timeout: Optional[float]):
    if not timeout:
        return call()
    future = _SUPABASE_EXECUTOR.submit(call)
    return future.result(timeout=timeout)


def _find_from_row(row: Dict[str, Any]) -> Find:
    return Find(
        id=row.get("id"),
        cache_id=row.get("cache_id"),
        user_id=row.get("user_id"),
        is_ftc=bool(row.get("is_ftc")),
        log_text=row.get("log_text"),
        found_at=_parse_datetime(row.get("found_at")),
    )


def _is_supabase_conflict(exc: Exception) -> bool:
    message = str(exc).lower()
    return "duplicate key value" in message or "unique constraint" in message or "23505" in message


def _supabase_missing_entity(exc: Exception) -> Optional[str]:
    message = str(exc).lower()
    if "cache_not_found" in message:
        return "cache"
    if "user_not_found" in message:
        return "user"
    return None


def _get_supabase_client():
    if not has_app_context():
        return None
    if not current_app.config.get("USE_SUPABASE"):
        return None
    client = current_app.config.get("SUPABASE_CLIENT")
    return client if client else None


# ====== Helpers ======

def _resolve_timeout(timeout: Optional[float]) -> Optional[float]:
    if timeout is None and has_app_context():
        timeout = current_app.config.get("FIND_LEDGER_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
    try:
        value = float(timeout) if timeout is not None else None
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT_SECONDS
    if value is None or value <= 0:
        return None
    return value


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = date_parser.isoparse(str(value))
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _coerce_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _log_info(message: str, *args) -> None:
    if has_app_context():
        current_app.logger.info(message, *args)


def _log_warning(message: str, *args) -> None:
    if has_app_context():
        current_app.logger.warning(message, *args)


def _log_supabase_warning(action: str, exc: Exception) -> None:
    _log_warning("Find ledger Supabase error while %s: %s", action, exc)
