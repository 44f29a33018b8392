"""Trail progress projector: which caches in a trail are found, current or locked.

Pure functions over already-loaded rows. Nothing here touches the database, so the
same inputs always give the same projection and callers may run it as often as they
like.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import AbstractSet, Any, Iterable, List, Optional, Tuple

from models import ensure_aware

STATE_FOUND = "found"
STATE_CURRENT = "current"
STATE_LOCKED = "locked"

STATUS_EMPTY = "empty"
STATUS_NOT_STARTED = "not_started"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETE = "complete"


@dataclass(frozen=True)
class CacheProgress:
    """One cache of a trail annotated with the viewer's unlock state."""

    cache: Any
    state: str
    step: int

    @property
    def is_found(self) -> bool:
        return self.state == STATE_FOUND

    @property
    def is_current(self) -> bool:
        return self.state == STATE_CURRENT

    @property
    def is_locked(self) -> bool:
        return self.state == STATE_LOCKED


@dataclass(frozen=True)
class TrailProjection:
    trail: Any
    entries: Tuple[CacheProgress, ...]

    @property
    def total(self) -> int:
        return len(self.entries)

    @property
    def found_count(self) -> int:
        return sum(1 for entry in self.entries if entry.is_found)

    @property
    def is_complete(self) -> bool:
        return self.total > 0 and self.found_count == self.total

    @property
    def current(self) -> Optional[CacheProgress]:
        for entry in self.entries:
            if entry.is_current:
                return entry
        return None

    @property
    def percent(self) -> int:
        if not self.total:
            return 0
        return int((self.found_count / self.total) * 100)

    @property
    def status(self) -> str:
        if not self.total:
            return STATUS_EMPTY
        if self.is_complete:
            return STATUS_COMPLETE
        if self.found_count:
            return STATUS_IN_PROGRESS
        return STATUS_NOT_STARTED


def trail_sort_key(cache: Any) -> tuple:
    """Total order for caches in a trail: position, then creation time, then id.

    Caches without a position sort after every numbered one, and so do caches
    without a creation time, so shared or missing positions never reorder between calls.
    """
    position = getattr(cache, "trail_order", None)
    created_at = getattr(cache, "created_at", None)
    if isinstance(created_at, datetime):
        created_key = ensure_aware(created_at).timestamp()
    else:
        created_key = 0.0
    return (
        position is None,
        position if position is not None else 0,
        created_at is None,
        created_key,
        str(getattr(cache, "id", "")),
    )


def order_trail_caches(caches: Iterable[Any]) -> List[Any]:
    return sorted(caches, key=trail_sort_key)


def project_trail(trail: Any, caches: Iterable[Any], found_ids: AbstractSet[str]) -> TrailProjection:
    """Annotate each cache of ``trail`` with found / current / locked for one viewer.

    A cache is found when its id is in ``found_ids``; otherwise it is current when every
    cache before it is found, else locked. Raises ValueError when a cache belongs to a
    different trail.
    """
    trail_id = getattr(trail, "id", None)
    ordered = order_trail_caches(caches)
    for cache in ordered:
        if getattr(cache, "trail_id", None) != trail_id:
            raise ValueError(
                f"Cache {getattr(cache, 'id', None)!r} belongs to trail "
                f"{getattr(cache, 'trail_id', None)!r}, not {trail_id!r}"
            )

    entries: List[CacheProgress] = []
    all_previous_found = True
    for index, cache in enumerate(ordered):
        if cache.id in found_ids:
            state = STATE_FOUND
        elif all_previous_found:
            state = STATE_CURRENT
        else:
            state = STATE_LOCKED
        entries.append(CacheProgress(cache=cache, state=state, step=index + 1))
        all_previous_found = all_previous_found and state == STATE_FOUND

    return TrailProjection(trail=trail, entries=tuple(entries))
