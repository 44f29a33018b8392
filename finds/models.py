"""Database model for logged finds (unique per user/cache)."""

from datetime import timezone

from extensions import db
from models import _new_id, _utcnow


class Find(db.Model):
    """One row per (user, cache) discovery; created once, never updated."""

    __tablename__ = "finds"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    cache_id = db.Column(db.String(36), db.ForeignKey("caches.id"), index=True, nullable=False)
    user_id = db.Column(db.String(36), db.ForeignKey("profiles.id"), index=True, nullable=False)
    is_ftc = db.Column(db.Boolean, default=False, nullable=False)
    log_text = db.Column(db.Text, nullable=True)
    found_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("user_id", "cache_id", name="uq_finds_user_cache"),
    )

    def to_dict(self) -> dict:
        found_at = self.found_at
        if found_at is not None and found_at.tzinfo is None:
            found_at = found_at.replace(tzinfo=timezone.utc)
        return {
            "id": self.id,
            "cache_id": self.cache_id,
            "user_id": self.user_id,
            "is_ftc": bool(self.is_ftc),
            "log_text": self.log_text,
            "found_at": found_at.isoformat() if found_at else None,
        }
