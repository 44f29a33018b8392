"""Cache card and find-logging endpoints (JSON only; rendering lives in the web client)."""

from __future__ import annotations

from typing import Callable, Optional, Union

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from finds import service
from finds.errors import DuplicateFind, FindLedgerError, TransientFailure
from models import Cache, hash_cache_url
from trails.sync import ensure_content_cache, mark_content_cache_stale

UserProvider = Callable[[], Optional[dict]]

STANDALONE_CACHE_LIMIT = 10


def create_finds_blueprint(current_user_provider: UserProvider) -> Blueprint:
    """Factory so the app can inject its identity lookup."""

    bp = Blueprint("finds", __name__, url_prefix="/api/caches")

    def _current_user_id() -> Optional[str]:
        user = current_user_provider()
        if not user:
            return None
        value = user.get("id")
        return str(value) if value else None

    def _load_cache(cache_id: str) -> Union[Cache, tuple]:
        ensure_content_cache()
        try:
            cache = db.session.get(Cache, cache_id)
        except SQLAlchemyError as exc:
            current_app.logger.exception("Cache lookup failed for %s: %s", cache_id, exc)
            return _error_response(TransientFailure("Cache storage unavailable"))
        if cache is None or not cache.is_active:
            return jsonify({"error": "cache_not_found", "cache_id": cache_id}), 404
        return cache

    @bp.get("")
    def list_standalone_caches():
        """Newest active caches that are not part of any trail."""
        ensure_content_cache()
        try:
            caches = (
                Cache.query.filter(Cache.is_active.is_(True), Cache.trail_id.is_(None))
                .order_by(Cache.created_at.desc(), Cache.id.asc())
                .limit(STANDALONE_CACHE_LIMIT)
                .all()
            )
        except SQLAlchemyError as exc:
            current_app.logger.exception("Standalone cache listing failed: %s", exc)
            return _error_response(TransientFailure("Cache storage unavailable"))
        return jsonify([cache.to_public_dict() for cache in caches])

    @bp.get("/lookup")
    def lookup_cache_by_url():
        """Resolve the page a crawler is on to the cache hidden there, if any."""
        url = (request.args.get("url") or "").strip()
        if not url:
            return jsonify({"error": "missing_url", "message": "Pass the page url as ?url=."}), 400

        ensure_content_cache()
        try:
            cache = (
                Cache.query.filter(Cache.url_hash == hash_cache_url(url), Cache.is_active.is_(True))
                .order_by(Cache.created_at.asc(), Cache.id.asc())
                .first()
            )
        except SQLAlchemyError as exc:
            current_app.logger.exception("Cache lookup by url failed: %s", exc)
            return _error_response(TransientFailure("Cache storage unavailable"))
        if cache is None:
            return jsonify({"error": "cache_not_found", "url": url}), 404

        user_id = _current_user_id()
        found = False
        if user_id:
            try:
                found = service.has_found(user_id, cache.id)
            except FindLedgerError as exc:
                return _error_response(exc)
        return jsonify(
            {
                "cache": cache.to_public_dict(reveal_message=found),
                "signed_in": bool(user_id),
                "found": found,
            }
        )

    @bp.get("/<cache_id>")
    def cache_detail(cache_id: str):
        cache = _load_cache(cache_id)
        if not isinstance(cache, Cache):
            return cache

        user_id = _current_user_id()
        find = None
        if user_id:
            try:
                find = service.get_user_find(user_id, cache.id)
            except FindLedgerError as exc:
                return _error_response(exc)

        return jsonify(
            {
                "cache": cache.to_public_dict(reveal_message=find is not None),
                "signed_in": bool(user_id),
                "found": find is not None,
                "find": find.to_dict() if find else None,
            }
        )

    @bp.post("/<cache_id>/finds")
    def log_cache_find(cache_id: str):
        user_id = _current_user_id()
        if not user_id:
            return jsonify({"error": "not_authenticated", "message": "Sign in to track your finds."}), 401

        cache = _load_cache(cache_id)
        if not isinstance(cache, Cache):
            return cache

        payload = request.get_json(silent=True) or {}
        log_text = payload.get("log_text")

        try:
            find = service.log_find(user_id, cache.id, log_text=log_text)
        except DuplicateFind:
            return _already_found_response(user_id, cache)
        except FindLedgerError as exc:
            return _error_response(exc)

        # Counters live in the source of truth; the mirror must refetch them.
        mark_content_cache_stale()
        return (
            jsonify(
                {
                    "status": "ok",
                    "find": find.to_dict(),
                    "cache": _refreshed_cache_dict(cache.id),
                }
            ),
            201,
        )

    def _already_found_response(user_id: str, cache: Cache):
        try:
            existing = service.get_user_find(user_id, cache.id)
        except FindLedgerError as exc:
            return _error_response(exc)
        return jsonify(
            {
                "status": "already_found",
                "find": existing.to_dict() if existing else None,
                "cache": _refreshed_cache_dict(cache.id),
            }
        )

    return bp


def _refreshed_cache_dict(cache_id: str) -> Optional[dict]:
    # The counter bump may have committed after the cache row was loaded.
    try:
        ensure_content_cache()
        db.session.expire_all()
        cache = db.session.get(Cache, cache_id)
    except SQLAlchemyError as exc:
        current_app.logger.warning("Unable to refresh cache %s after find: %s", cache_id, exc)
        return None
    return cache.to_public_dict(reveal_message=True) if cache else None


def _error_response(exc: FindLedgerError):
    response = jsonify(exc.payload)
    response.status_code = exc.status_code
    if isinstance(exc, TransientFailure):
        response.headers["Retry-After"] = str(exc.retry_after_seconds)
    return response
