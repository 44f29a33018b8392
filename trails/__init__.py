"""Trail package: progress projection, content mirror and public API."""

from .projector import TrailProjection, order_trail_caches, project_trail
from .routes import create_trails_blueprint
from .sync import ensure_content_cache, mark_content_cache_stale

__all__ = [
    "TrailProjection",
    "create_trails_blueprint",
    "ensure_content_cache",
    "mark_content_cache_stale",
    "order_trail_caches",
    "project_trail",
]
