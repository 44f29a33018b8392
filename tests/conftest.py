"""
Shared pytest fixtures for the find ledger and trail API tests.

Every test gets a fresh app on an in-memory SQLite database with Supabase switched
off; tests that exercise the Supabase backend swap a fake client in explicitly.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest

from app import create_app
from extensions import db
from models import Cache, Profile, Trail


@pytest.fixture()
def app():
    """Flask app bound to a throwaway in-memory database, with an active app context."""
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "USE_SUPABASE": False,
            "SUPABASE_CLIENT": None,
            "FIND_LEDGER_TIMEOUT_SECONDS": 0,
        }
    )
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def make_profile(app) -> Callable[..., Profile]:
    def _make(username: str = "crawler", **kwargs) -> Profile:
        profile = Profile(username=username, **kwargs)
        db.session.add(profile)
        db.session.commit()
        return profile

    return _make


@pytest.fixture()
def make_trail(app) -> Callable[..., Trail]:
    def _make(name: str = "The Old Web", **kwargs) -> Trail:
        trail = Trail(name=name, **kwargs)
        db.session.add(trail)
        db.session.commit()
        return trail

    return _make


@pytest.fixture()
def make_cache(app) -> Callable[..., Cache]:
    counter = {"n": 0}
    base_time = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def _make(name: str | None = None, **kwargs) -> Cache:
        counter["n"] += 1
        number = counter["n"]
        fields = {
            "url": f"https://example.org/page-{number}",
            "name": name or f"Cache {number}",
            "clue": f"Look where page {number} hides.",
            "message": f"You found the secret of page number {number}!",
            "hint": "Try the footer.",
            "created_at": base_time + timedelta(minutes=number),
        }
        fields.update(kwargs)
        cache = Cache(**fields)
        db.session.add(cache)
        db.session.commit()
        return cache

    return _make


@pytest.fixture()
def login_as(client) -> Callable[[Profile], None]:
    def _login(profile: Profile) -> None:
        with client.session_transaction() as sess:
            sess["user_id"] = profile.id

    return _login
