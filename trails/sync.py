"""Helpers for keeping the local Trail/Cache tables in sync with Supabase."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from dateutil import parser as date_parser
from flask import current_app

from extensions import db
from models import Cache, Trail

SYNC_STATE_KEY = "CONTENT_LAST_SUPABASE_SYNC"


def ensure_content_cache(force: bool = False) -> int:
    """Refresh the local trail/cache mirror from Supabase when it is stale.

    Finds are never mirrored; they stay in Supabase where the ledger enforces them.
    """
    client = _supabase_client()
    if not client:
        return 0

    now = datetime.now(timezone.utc)
    max_age = _cache_ttl(current_app)
    last_sync: datetime | None = current_app.config.get(SYNC_STATE_KEY)

    if not force and last_sync and (now - last_sync) < timedelta(seconds=max_age):
        return 0

    trail_rows = _fetch_supabase_rows(client, "trails")
    cache_rows = _fetch_supabase_rows(client, "caches")
    if trail_rows is None or cache_rows is None:
        return 0

    trail_ids: set[str] = set()
    for row in trail_rows:
        record_id = _coerce_id(row.get("id"))
        if record_id is None:
            continue
        trail_ids.add(record_id)
        trail = db.session.get(Trail, record_id) or Trail(id=record_id)
        _hydrate_trail_from_row(trail, row)
        db.session.add(trail)

    cache_ids: set[str] = set()
    for row in cache_rows:
        record_id = _coerce_id(row.get("id"))
        if record_id is None:
            continue
        cache_ids.add(record_id)
        cache = db.session.get(Cache, record_id) or Cache(id=record_id)
        _hydrate_cache_from_row(cache, row)
        db.session.add(cache)

    db.session.flush()
    cache_query = db.session.query(Cache)
    if cache_ids:
        cache_query = cache_query.filter(~Cache.id.in_(cache_ids))
    cache_query.delete(synchronize_session=False)
    trail_query = db.session.query(Trail)
    if trail_ids:
        trail_query = trail_query.filter(~Trail.id.in_(trail_ids))
    trail_query.delete(synchronize_session=False)

    db.session.commit()
    current_app.config[SYNC_STATE_KEY] = now
    return len(trail_rows) + len(cache_rows)


def mark_content_cache_stale() -> None:
    """Invalidate the cached sync timestamp so the next request refetches."""
    current_app.config.pop(SYNC_STATE_KEY, None)


def _hydrate_trail_from_row(trail: Trail, row: dict[str, Any]) -> None:
    trail.name = row.get("name") or ""
    trail.description = row.get("description")
    trail.difficulty = _coerce_int(row.get("difficulty")) or 1
    trail.estimated_time = row.get("estimated_time")
    trail.is_active = bool(row.get("is_active", True))
    created_at = _parse_datetime(row.get("created_at"))
    if created_at:
        trail.created_at = created_at
    elif not trail.created_at:
        trail.created_at = datetime.now(timezone.utc)


def _hydrate_cache_from_row(cache: Cache, row: dict[str, Any]) -> None:
    cache.url = row.get("url") or ""
    cache.name = row.get("name") or ""
    cache.clue = row.get("clue") or ""
    cache.message = row.get("message") or ""
    cache.hint = row.get("hint")
    cache.difficulty = _coerce_int(row.get("difficulty")) or 1
    cache.category = row.get("category")
    cache.owner_display = row.get("owner_display")
    cache.trail_id = _coerce_id(row.get("trail_id"))
    cache.trail_order = _coerce_int(row.get("trail_order"))
    cache.is_active = bool(row.get("is_active", True))
    cache.finds_count = _coerce_int(row.get("finds_count")) or 0
    created_at = _parse_datetime(row.get("created_at"))
    if created_at:
        cache.created_at = created_at
    elif not cache.created_at:
        cache.created_at = datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> datetime | None:
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


def _coerce_id(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _coerce_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _fetch_supabase_rows(client, table: str) -> list[dict[str, Any]] | None:
    try:
        resp = client.table(table).select("*").execute()
        return resp.data or []
    except Exception as exc:
        current_app.logger.warning("Content Supabase sync of %s failed: %s", table, exc)
        return None


def _cache_ttl(app) -> int:
    try:
        value = int(app.config.get("CONTENT_CACHE_MAX_AGE_SECONDS", 90))
    except (TypeError, ValueError):
        value = 90
    return max(15, value)


def _supabase_client():
    try:
        if not current_app.config.get("USE_SUPABASE"):
            return None
        return current_app.config.get("SUPABASE_CLIENT")
    except RuntimeError:
        return None
