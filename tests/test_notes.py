"""Tests for find note sanitising."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from finds.errors import InvalidFindNote
from finds.notes import MAX_NOTE_LENGTH, clean_find_note

CACHE = SimpleNamespace(url="https://www.example.org/attic/", message="Welcome to the attic of the old web.")


def test_blank_notes_become_none() -> None:
    assert clean_find_note(None) is None
    assert clean_find_note("   ") is None
    assert clean_find_note("<i></i>") is None


def test_markup_is_stripped() -> None:
    assert clean_find_note("<script>x</script>Found it\n\n<b>finally</b>") == "x Found it finally"


def test_too_long_note_is_rejected() -> None:
    with pytest.raises(InvalidFindNote):
        clean_find_note("a" * (MAX_NOTE_LENGTH + 1))


def test_phone_numbers_are_rejected() -> None:
    with pytest.raises(InvalidFindNote):
        clean_find_note("text me +44 7700 900 123")


def test_spoilers_are_rejected_for_models_and_rows() -> None:
    with pytest.raises(InvalidFindNote):
        clean_find_note("go to www.example.org/attic", CACHE)
    with pytest.raises(InvalidFindNote):
        clean_find_note("WELCOME TO THE ATTIC of the old web. Ha", {"url": "", "message": CACHE.message})


def test_short_messages_are_not_treated_as_spoilers() -> None:
    assert clean_find_note("Hi there, lovely hunt", {"url": "", "message": "Hi"}) == "Hi there, lovely hunt"
