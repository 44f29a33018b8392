"""Load trails with the viewer's progress projected onto them."""

from __future__ import annotations

from typing import Dict, List, Optional

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from finds.errors import TransientFailure
from finds.service import get_found_cache_ids
from models import Cache, Trail
from trails.projector import TrailProjection, project_trail


class TrailNotFound(Exception):
    """Raised when a trail id does not match an active trail."""

    status_code = 404

    def __init__(self, trail_id: str):
        super().__init__(f"Trail {trail_id} not found")
        self.trail_id = trail_id
        self.payload = {"error": "trail_not_found", "trail_id": trail_id}


def list_trails() -> List[dict]:
    """Return active trails (newest first) with their active cache counts."""
    try:
        counts: Dict[str, int] = dict(
            db.session.query(Cache.trail_id, func.count(Cache.id))
            .filter(Cache.trail_id.isnot(None), Cache.is_active.is_(True))
            .group_by(Cache.trail_id)
            .all()
        )
        trails = (
            Trail.query.filter(Trail.is_active.is_(True))
            .order_by(Trail.created_at.desc(), Trail.name.asc())
            .all()
        )
    except SQLAlchemyError as exc:
        current_app.logger.exception("Trail listing failed: %s", exc)
        raise TransientFailure("Trail storage unavailable") from exc
    return [trail.to_public_dict(cache_count=counts.get(trail.id, 0)) for trail in trails]


def get_trail_projection(trail_id: str, user_id: Optional[str]) -> TrailProjection:
    """Load one trail and project the viewer's progress (empty find set when anonymous)."""
    try:
        trail = db.session.get(Trail, trail_id)
        if trail is None or not trail.is_active:
            raise TrailNotFound(trail_id)
        caches = Cache.query.filter(Cache.trail_id == trail.id, Cache.is_active.is_(True)).all()
    except SQLAlchemyError as exc:
        current_app.logger.exception("Trail lookup failed for %s: %s", trail_id, exc)
        raise TransientFailure("Trail storage unavailable") from exc

    found_ids = get_found_cache_ids(user_id, [cache.id for cache in caches]) if user_id else set()
    return project_trail(trail, caches, found_ids)


def serialize_projection(projection: TrailProjection, signed_in: bool) -> dict:
    """JSON view of a projection; locked caches hide their clue, unfound ones their message."""
    current = projection.current
    entries = []
    for entry in projection.entries:
        card = entry.cache.to_public_dict(
            reveal_message=entry.is_found,
            reveal_clue=not (signed_in and entry.is_locked),
        )
        entries.append({"step": entry.step, "state": entry.state, "cache": card})

    starting = signed_in and current is not None and current.step == 1
    return {
        "trail": projection.trail.to_public_dict(cache_count=projection.total),
        "signed_in": signed_in,
        "progress": {
            "status": projection.status,
            "found": projection.found_count,
            "total": projection.total,
            "percent": projection.percent,
            "complete": projection.is_complete,
            "current_cache_id": current.cache.id if current else None,
        },
        "start_url": current.cache.url if starting else None,
        "caches": entries,
    }
