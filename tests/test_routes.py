"""
Tests for the JSON API.

These tests ensure:
- logging a find returns 201, repeats return 200 ``already_found``
- every ledger error maps onto its HTTP status
- trail views expose progress and hide locked clues / unfound messages
"""

from __future__ import annotations

import trails.routes as trail_routes
from finds import service
from finds.errors import TransientFailure


def test_log_find_requires_signed_in_user(client, make_cache) -> None:
    cache_id = make_cache().id

    response = client.post(f"/api/caches/{cache_id}/finds")

    assert response.status_code == 401
    assert response.get_json()["error"] == "not_authenticated"


def test_log_find_then_repeat_is_already_found(client, make_profile, make_cache, login_as) -> None:
    profile = make_profile()
    cache = make_cache()
    cache_id = cache.id
    login_as(profile)

    first = client.post(f"/api/caches/{cache_id}/finds", json={"log_text": "Nice one"})
    assert first.status_code == 201
    body = first.get_json()
    assert body["status"] == "ok"
    assert body["find"]["is_ftc"] is True
    assert body["find"]["log_text"] == "Nice one"
    assert body["cache"]["finds_count"] == 1
    assert body["cache"]["message"].startswith("You found the secret")

    again = client.post(f"/api/caches/{cache_id}/finds")
    assert again.status_code == 200
    repeat = again.get_json()
    assert repeat["status"] == "already_found"
    assert repeat["find"]["id"] == body["find"]["id"]
    assert repeat["cache"]["finds_count"] == 1


def test_cache_detail_hides_message_until_found(client, make_profile, make_cache, login_as) -> None:
    profile = make_profile()
    cache_id = make_cache().id

    anonymous = client.get(f"/api/caches/{cache_id}").get_json()
    assert anonymous["signed_in"] is False
    assert anonymous["cache"]["message"] is None
    assert anonymous["cache"]["hint"] == "Try the footer."

    login_as(profile)
    client.post(f"/api/caches/{cache_id}/finds")
    found = client.get(f"/api/caches/{cache_id}").get_json()
    assert found["found"] is True
    assert found["find"]["is_ftc"] is True
    assert found["cache"]["message"] is not None
    assert found["cache"]["hint"] is None


def test_unknown_cache_is_404(client, make_profile, login_as) -> None:
    login_as(make_profile())

    response = client.post("/api/caches/missing/finds")

    assert response.status_code == 404
    assert response.get_json()["error"] == "cache_not_found"


def test_rejected_note_is_400(client, make_profile, make_cache, login_as) -> None:
    login_as(make_profile())
    cache_id = make_cache().id

    response = client.post(f"/api/caches/{cache_id}/finds", json={"log_text": "call me on 07700 900123"})

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_note"


def test_transient_failure_is_503_with_retry_after(client, make_profile, make_cache, login_as, monkeypatch) -> None:
    login_as(make_profile())
    cache_id = make_cache().id

    def _unavailable(*_args, **_kwargs):
        raise TransientFailure("Find ledger storage unavailable")

    monkeypatch.setattr(service, "log_find", _unavailable)

    response = client.post(f"/api/caches/{cache_id}/finds")

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "2"
    assert response.get_json()["error"] == "storage_unavailable"


def test_trail_list_counts_active_caches(client, make_trail, make_cache) -> None:
    trail = make_trail()
    make_cache(trail_id=trail.id, trail_order=1)
    make_cache(trail_id=trail.id, trail_order=2)
    make_cache(trail_id=trail.id, trail_order=3, is_active=False)

    body = client.get("/api/trails").get_json()

    assert [(item["id"], item["cache_count"]) for item in body] == [(trail.id, 2)]


def test_trail_detail_projects_progress(client, make_profile, make_trail, make_cache, login_as) -> None:
    profile = make_profile()
    trail_id = make_trail().id
    first = make_cache(trail_id=trail_id, trail_order=1)
    first_id, first_url = first.id, first.url
    second_id = make_cache(trail_id=trail_id, trail_order=2).id
    third_id = make_cache(trail_id=trail_id, trail_order=3).id
    login_as(profile)

    fresh = client.get(f"/api/trails/{trail_id}").get_json()
    assert [entry["state"] for entry in fresh["caches"]] == ["current", "locked", "locked"]
    assert fresh["progress"]["status"] == "not_started"
    assert fresh["start_url"] == first_url
    assert fresh["caches"][1]["cache"]["clue"] is None

    client.post(f"/api/caches/{first_id}/finds")
    progressed = client.get(f"/api/trails/{trail_id}").get_json()
    assert [entry["state"] for entry in progressed["caches"]] == ["found", "current", "locked"]
    assert progressed["progress"]["current_cache_id"] == second_id
    assert progressed["start_url"] is None
    assert progressed["caches"][0]["cache"]["message"] is not None
    assert progressed["caches"][1]["cache"]["message"] is None
    assert progressed["caches"][1]["cache"]["clue"] is not None

    client.post(f"/api/caches/{second_id}/finds")
    client.post(f"/api/caches/{third_id}/finds")
    done = client.get(f"/api/trails/{trail_id}").get_json()
    assert done["progress"]["complete"] is True
    assert done["progress"]["status"] == "complete"
    assert done["progress"]["found"] == 3


def test_anonymous_trail_view_shows_clues(client, make_trail, make_cache) -> None:
    trail_id = make_trail().id
    make_cache(trail_id=trail_id, trail_order=1)
    make_cache(trail_id=trail_id, trail_order=2)

    body = client.get(f"/api/trails/{trail_id}").get_json()

    assert body["signed_in"] is False
    assert body["start_url"] is None
    assert all(entry["cache"]["clue"] for entry in body["caches"])


def test_unknown_trail_is_404(client) -> None:
    response = client.get("/api/trails/missing")

    assert response.status_code == 404
    assert response.get_json()["error"] == "trail_not_found"


def test_healthz_reports_sql_backend(client) -> None:
    assert client.get("/healthz").get_json() == {"status": "ok", "storage": "sql"}


def test_standalone_cache_list_excludes_trail_and_inactive_caches(client, make_trail, make_cache) -> None:
    trail_id = make_trail().id
    older_id = make_cache().id
    make_cache(trail_id=trail_id, trail_order=1)
    make_cache(is_active=False)
    newer_id = make_cache().id

    body = client.get("/api/caches").get_json()

    assert [card["id"] for card in body] == [newer_id, older_id]
    assert all(card["message"] is None for card in body)


def test_standalone_cache_list_is_capped_at_ten(client, make_cache) -> None:
    for _ in range(12):
        make_cache()

    assert len(client.get("/api/caches").get_json()) == 10


def test_lookup_by_url_ignores_scheme_www_and_trailing_slash(client, make_profile, make_cache, login_as) -> None:
    profile = make_profile()
    cache_id = make_cache(url="https://example.org/attic").id

    anonymous = client.get("/api/caches/lookup", query_string={"url": "http://www.Example.org/attic/"})
    assert anonymous.status_code == 200
    assert anonymous.get_json()["cache"]["id"] == cache_id
    assert anonymous.get_json()["found"] is False
    assert anonymous.get_json()["cache"]["message"] is None

    login_as(profile)
    client.post(f"/api/caches/{cache_id}/finds")
    found = client.get("/api/caches/lookup", query_string={"url": "example.org/attic"}).get_json()
    assert found["found"] is True
    assert found["cache"]["message"] is not None


def test_lookup_unknown_or_missing_url(client, make_cache) -> None:
    make_cache(url="https://example.org/hidden", is_active=False)

    assert client.get("/api/caches/lookup", query_string={"url": "https://example.org/hidden"}).status_code == 404
    assert client.get("/api/caches/lookup").status_code == 400


def test_trail_routes_report_transient_failure_with_retry_after(client, monkeypatch) -> None:
    def _unavailable(*_args, **_kwargs):
        raise TransientFailure("Trail storage unavailable")

    monkeypatch.setattr(trail_routes, "list_trails", _unavailable)
    monkeypatch.setattr(trail_routes, "get_trail_projection", _unavailable)

    for path in ("/api/trails", "/api/trails/some-trail"):
        response = client.get(path)
        assert response.status_code == 503
        assert response.headers["Retry-After"] == "2"
        assert response.get_json()["error"] == "storage_unavailable"
