"""Sanitiser for the optional note a player leaves when logging a find."""

from __future__ import annotations

import re
from typing import Any, Optional

import bleach

from .errors import InvalidFindNote

MAX_NOTE_LENGTH = 280
_PHONE_PATTERN = re.compile(r"(?:\+?\d[\s().-]*){7,}\d")
_WHITESPACE = re.compile(r"\s+")
# Shorter messages are too generic to count as a spoiler ("Hi!").
_SPOILER_MIN_LENGTH = 12


def clean_find_note(raw: Optional[str], cache: Any = None) -> Optional[str]:
    """Return a plain-text note safe to store, or None when nothing is left.

    Raises InvalidFindNote when the note shares a phone number or gives away the
    cache (its url or the message revealed on discovery). ``cache`` may be a
    Cache model or a Supabase row dict.
    """
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise InvalidFindNote("Find note must be text.")

    text = bleach.clean(raw, tags=[], attributes={}, strip=True)
    text = _WHITESPACE.sub(" ", text).strip()
    if not text:
        return None
    if len(text) > MAX_NOTE_LENGTH:
        raise InvalidFindNote(f"Find notes are limited to {MAX_NOTE_LENGTH} characters.")
    if _PHONE_PATTERN.search(text):
        raise InvalidFindNote("Please keep phone numbers out of find notes.")
    if cache is not None and _spoils_cache(text, cache):
        raise InvalidFindNote("That note gives the cache away. Keep the secret for the next crawler!")
    return text


def _cache_field(cache: Any, name: str) -> str:
    if isinstance(cache, dict):
        value = cache.get(name)
    else:
        value = getattr(cache, name, None)
    return value or ""


def _spoils_cache(text: str, cache: Any) -> bool:
    lowered = text.lower()
    url = _cache_field(cache, "url").strip().lower()
    for prefix in ("https://", "http://"):
        if url.startswith(prefix):
            url = url[len(prefix):]
            break
    url = url.rstrip("/")
    if url and url in lowered:
        return True
    message = _WHITESPACE.sub(" ", _cache_field(cache, "message")).strip().lower()
    return len(message) >= _SPOILER_MIN_LENGTH and message in lowered
