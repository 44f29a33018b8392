"""Tests for mirroring Supabase trails/caches into the local database."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

from extensions import db
from models import Cache, Trail, hash_cache_url
from trails import sync

TRAIL_ROWS = [{"id": "t1", "name": "Old Web", "difficulty": "2", "created_at": "2026-01-01T00:00:00Z"}]
CACHE_ROWS = [
    {
        "id": "c1",
        "url": "https://example.org/one",
        "name": "One",
        "clue": "first",
        "message": "first message",
        "trail_id": "t1",
        "trail_order": 1,
        "finds_count": 4,
        "created_at": "2026-01-02T00:00:00Z",
    }
]


def _client(trail_rows, cache_rows):
    tables = {
        "trails": SimpleNamespace(data=trail_rows),
        "caches": SimpleNamespace(data=cache_rows),
    }

    def _table(name):
        query = MagicMock()
        query.select.return_value.execute.return_value = tables[name]
        return query

    client = MagicMock()
    client.table.side_effect = _table
    return client


def test_sync_is_noop_without_supabase(app) -> None:
    assert sync.ensure_content_cache(force=True) == 0


def test_sync_mirrors_rows_and_prunes_missing(app, make_trail, make_cache) -> None:
    stale_trail_id = make_trail("Stale").id
    make_cache(trail_id=stale_trail_id, trail_order=1)
    app.config["USE_SUPABASE"] = True
    app.config["SUPABASE_CLIENT"] = _client(TRAIL_ROWS, CACHE_ROWS)

    assert sync.ensure_content_cache(force=True) == 2

    assert [trail.id for trail in Trail.query.all()] == ["t1"]
    cache = db.session.get(Cache, "c1")
    assert cache.trail_id == "t1"
    assert cache.finds_count == 4
    assert cache.url_hash == hash_cache_url("http://www.example.org/one/")
    assert Cache.query.count() == 1

    # A fresh sync is skipped until the cache goes stale.
    assert sync.ensure_content_cache() == 0
    sync.mark_content_cache_stale()
    assert sync.ensure_content_cache() == 2
