"""Public JSON API for trails and the viewer's progress along them.

Ledger and lookup errors propagate to the app-level handlers, which map them to
JSON (with ``Retry-After`` on transient storage failures).
"""

from __future__ import annotations

from typing import Callable, Optional

from flask import Blueprint, jsonify

from trails.service import get_trail_projection, list_trails, serialize_projection
from trails.sync import ensure_content_cache

UserProvider = Callable[[], Optional[dict]]


def create_trails_blueprint(current_user_provider: UserProvider) -> Blueprint:
    """Factory so the app can inject its identity lookup."""

    bp = Blueprint("trails", __name__, url_prefix="/api/trails")

    def _current_user_id() -> Optional[str]:
        user = current_user_provider()
        if not user or not user.get("id"):
            return None
        return str(user["id"])

    @bp.get("")
    def list_active_trails():
        ensure_content_cache()
        return jsonify(list_trails())

    @bp.get("/<trail_id>")
    def trail_detail(trail_id: str):
        ensure_content_cache()
        user_id = _current_user_id()
        projection = get_trail_projection(trail_id, user_id)
        return jsonify(serialize_projection(projection, signed_in=bool(user_id)))

    return bp
