"""Database models for caches, trails and player profiles."""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import validates

from extensions import db


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_cache_url(url: Optional[str]) -> str:
    """Return the lookup hash for a cache url (scheme, case and trailing slash ignored)."""
    cleaned = (url or "").strip().lower()
    for prefix in ("https://", "http://"):
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
            break
    if cleaned.startswith("www."):
        cleaned = cleaned[4:]
    cleaned = cleaned.rstrip("/")
    return hashlib.sha256(cleaned.encode("utf-8")).hexdigest()


class Profile(db.Model):
    """Player profile; rows are provisioned by the identity layer."""

    __tablename__ = "profiles"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    username = db.Column(db.String(40), unique=True, nullable=False)
    display_name = db.Column(db.String(80), nullable=True)

    finds_count = db.Column(db.Integer, default=0, nullable=False)
    ftc_count = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "display_name": self.display_name or self.username,
            "finds_count": self.finds_count or 0,
            "ftc_count": self.ftc_count or 0,
        }

    def __repr__(self) -> str:  # pragma: no cover - helper for shell debugging
        return f"<Profile id={self.id} username={self.username!r}>"


class Trail(db.Model):
    """An ordered sequence of caches meant to be found in order."""

    __tablename__ = "trails"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    difficulty = db.Column(db.Integer, default=1, nullable=False)
    estimated_time = db.Column(db.String(40), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    caches = db.relationship("Cache", back_populates="trail", lazy="select")

    def to_public_dict(self, cache_count: Optional[int] = None) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "difficulty": self.difficulty,
            "estimated_time": self.estimated_time,
            "cache_count": cache_count,
            "created_at": _isoformat_or_none(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - helper for shell debugging
        return f"<Trail id={self.id} name={self.name!r}>"


class Cache(db.Model):
    """A discoverable content item with a clue and a message revealed on discovery."""

    __tablename__ = "caches"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    url = db.Column(db.String(500), nullable=False)
    url_hash = db.Column(db.String(64), index=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    clue = db.Column(db.Text, nullable=False)
    message = db.Column(db.Text, nullable=False)
    hint = db.Column(db.Text, nullable=True)
    difficulty = db.Column(db.Integer, default=1, nullable=False)
    category = db.Column(db.String(50), nullable=True)
    owner_display = db.Column(db.String(80), nullable=True)

    trail_id = db.Column(db.String(36), db.ForeignKey("trails.id"), index=True, nullable=True)
    trail_order = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, default=True, nullable=False)

    # Derived from the finds table; maintained by finds.service only.
    finds_count = db.Column(db.Integer, default=0, nullable=False)
    ftc_user_id = db.Column(db.String(36), db.ForeignKey("profiles.id"), nullable=True)
    ftc_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    trail = db.relationship("Trail", back_populates="caches")

    DIFFICULTY_MAX = 5

    @validates("url")
    def _sync_url_hash(self, _key, value):
        self.url_hash = hash_cache_url(value)
        return value

    @property
    def difficulty_stars(self) -> str:
        level = max(0, min(self.difficulty or 0, self.DIFFICULTY_MAX))
        return "★" * level + "☆" * (self.DIFFICULTY_MAX - level)

    def to_public_dict(self, reveal_message: bool = False, reveal_clue: bool = True) -> dict:
        """Serialize the cache card; the message is withheld until the viewer found it."""
        return {
            "id": self.id,
            "name": self.name,
            "clue": self.clue if reveal_clue else None,
            "message": self.message if reveal_message else None,
            "hint": None if reveal_message else self.hint,
            "difficulty": self.difficulty,
            "difficulty_stars": self.difficulty_stars,
            "category": self.category,
            "owner_display": self.owner_display,
            "trail_id": self.trail_id,
            "trail_order": self.trail_order,
            "finds_count": self.finds_count or 0,
            "created_at": _isoformat_or_none(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - helper for shell debugging
        return f"<Cache id={self.id} name={self.name!r} trail={self.trail_id!r}>"


def _isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    aware = ensure_aware(value)
    return aware.astimezone(timezone.utc).isoformat()


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
