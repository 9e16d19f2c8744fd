from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app.auth_store import upsert_owner_account
from app.main import create_app
from app.rate_limit import TIERS, Tier
from app.record_store import insert_record
from app.view_store import create_view, fetch_view, update_view

OWNER_EMAIL = "owner@example.com"
OWNER_PASSWORD = "owner-password-123"


@pytest.fixture(autouse=True)
def isolated_runtime(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("MEYAML_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("MEYAML_DB_PATH", raising=False)
    monkeypatch.delenv("APP_URL", raising=False)
    monkeypatch.setenv("ENCRYPTION_KEY", "views-test-encryption-key-0123456789")
    monkeypatch.setenv("ADMIN_EMAILS", OWNER_EMAIL)
    monkeypatch.setenv("ADMIN_PASSWORD", OWNER_PASSWORD)


@pytest.fixture()
def client() -> TestClient:
    app = create_app()
    app.state.rate_limiter.tiers = {name: Tier(name, 1000.0, 1000) for name in TIERS}
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture()
def owner_headers(client: TestClient) -> dict[str, str]:
    upsert_owner_account(email=OWNER_EMAIL, password=OWNER_PASSWORD)
    resp = client.post("/api/auth/login", json={"email": OWNER_EMAIL, "password": OWNER_PASSWORD})
    assert resp.status_code == 200
    client.cookies.clear()
    return {"x-session-token": resp.json()["token"]}


def generate_token(client: TestClient, owner_headers: dict[str, str], view_id: str, **extra) -> str:
    resp = client.post("/api/share/generate", json={"view_id": view_id, **extra}, headers=owner_headers)
    assert resp.status_code == 201
    return resp.json()["token"]


def test_create_view_rejects_reserved_slugs_case_insensitively(
    client: TestClient, owner_headers: dict[str, str]
) -> None:
    for slug in ("admin", "API", "Health", "s"):
        resp = client.post("/api/views", json={"slug": slug, "name": "Nope"}, headers=owner_headers)
        assert resp.status_code == 400
        assert resp.json() == {"error": "slug: reserved slug cannot be used"}

    created = client.post(
        "/api/views",
        json={"slug": "recruiters", "name": "Recruiters", "visibility": "public"},
        headers=owner_headers,
    )
    assert created.status_code == 201
    view = created.json()
    assert view["has_password"] is False
    assert "password_hash" not in view

    renamed = client.patch(f"/api/views/{view['id']}", json={"slug": "Login"}, headers=owner_headers)
    assert renamed.status_code == 400
    assert renamed.json() == {"error": "slug: reserved slug cannot be used"}


def test_create_view_validation_rules(client: TestClient, owner_headers: dict[str, str]) -> None:
    first = client.post("/api/views", json={"slug": "work", "name": "Work"}, headers=owner_headers)
    assert first.status_code == 201

    duplicate = client.post("/api/views", json={"slug": "WORK", "name": "Again"}, headers=owner_headers)
    assert duplicate.status_code == 400
    assert duplicate.json() == {"error": "slug: already in use"}

    bad_slug = client.post("/api/views", json={"slug": "no spaces", "name": "Bad"}, headers=owner_headers)
    assert bad_slug.status_code == 400

    no_password = client.post(
        "/api/views",
        json={"slug": "locked", "name": "Locked", "visibility": "password"},
        headers=owner_headers,
    )
    assert no_password.status_code == 400
    assert no_password.json() == {"error": "password: required for password-protected views"}

    private_default = client.post(
        "/api/views",
        json={"slug": "hidden", "name": "Hidden", "visibility": "private", "is_default": True},
        headers=owner_headers,
    )
    assert private_default.status_code == 400

    with_password = client.post(
        "/api/views",
        json={"slug": "locked", "name": "Locked", "visibility": "password", "password": "open-sesame"},
        headers=owner_headers,
    )
    assert with_password.status_code == 201
    assert with_password.json()["has_password"] is True


def test_only_one_default_view(client: TestClient, owner_headers: dict[str, str]) -> None:
    first = create_view({"slug": "first", "name": "First", "visibility": "public", "is_default": True})
    second = create_view({"slug": "second", "name": "Second", "visibility": "public", "is_default": True})

    assert fetch_view(first["id"])["is_default"] is False
    assert fetch_view(second["id"])["is_default"] is True

    resp = client.get("/api/default-view")
    assert resp.json() == {"has_default": True, "slug": "second", "view_id": second["id"], "name": "Second"}


def test_default_view_resolution(client: TestClient) -> None:
    assert client.get("/api/default-view").json() == {"has_default": False, "fallback": "homepage"}

    create_view({"slug": "secret", "name": "Secret", "visibility": "private"})
    assert client.get("/api/default-view").json()["has_default"] is False

    public = create_view({"slug": "about", "name": "About", "visibility": "public"})
    resp = client.get("/api/default-view").json()
    assert resp["has_default"] is True
    assert resp["view_id"] == public["id"]

    update_view(public["id"], {"is_active": False})
    assert client.get("/api/default-view").json()["has_default"] is False


def test_view_management_requires_owner(client: TestClient) -> None:
    resp = client.get("/api/views")
    assert resp.status_code == 401
    assert resp.json() == {"error": "authentication required"}

    create = client.post("/api/views", json={"slug": "x", "name": "X"})
    assert create.status_code == 401


def test_access_table_for_anonymous_callers(client: TestClient, owner_headers: dict[str, str]) -> None:
    create_view({"slug": "open", "name": "Open", "visibility": "public"})
    unlisted = create_view({"slug": "shared", "name": "Shared", "visibility": "unlisted"})
    create_view({"slug": "locked", "name": "Locked", "visibility": "password", "password": "open-sesame"})
    create_view({"slug": "secret", "name": "Secret", "visibility": "private"})
    inactive = create_view({"slug": "retired", "name": "Retired", "visibility": "public"})
    update_view(inactive["id"], {"is_active": False})

    unknown = client.get("/api/view/nobody/access")
    assert unknown.status_code == 404
    not_found_body = unknown.json()

    public_resp = client.get("/api/view/open/access")
    assert public_resp.status_code == 200
    assert public_resp.json()["requires_password"] is False
    assert public_resp.json()["requires_token"] is False

    locked_resp = client.get("/api/view/locked/access")
    assert locked_resp.status_code == 200
    assert locked_resp.json()["requires_password"] is True

    for slug in ("shared", "secret", "retired"):
        for suffix in ("access", "data"):
            resp = client.get(f"/api/view/{slug}/{suffix}")
            assert resp.status_code == 404
            assert resp.json() == not_found_body

    token = generate_token(client, owner_headers, unlisted["id"])
    shared_resp = client.get("/api/view/shared/access", headers={"x-share-token": token})
    assert shared_resp.status_code == 200
    assert shared_resp.json()["requires_token"] is True

    query_resp = client.get(f"/api/view/shared/data?token={token}")
    assert query_resp.status_code == 200
    assert query_resp.json()["slug"] == "shared"

    other = create_view({"slug": "other", "name": "Other", "visibility": "unlisted"})
    other_token = generate_token(client, owner_headers, other["id"])
    wrong_view = client.get("/api/view/shared/data", headers={"x-share-token": other_token})
    assert wrong_view.status_code == 404


def test_owner_sees_every_view(client: TestClient, owner_headers: dict[str, str]) -> None:
    create_view({"slug": "secret", "name": "Secret", "visibility": "private"})
    retired = create_view({"slug": "retired", "name": "Retired", "visibility": "unlisted"})
    update_view(retired["id"], {"is_active": False})
    create_view({"slug": "locked", "name": "Locked", "visibility": "password", "password": "open-sesame"})

    for slug in ("secret", "retired"):
        resp = client.get(f"/api/view/{slug}/data", headers=owner_headers)
        assert resp.status_code == 200
        assert resp.json()["slug"] == slug

    locked = client.get("/api/view/locked/data", headers=owner_headers)
    assert locked.status_code == 200
    assert "requires_password" not in locked.json()
    assert "sections" in locked.json()


def test_password_flow(client: TestClient) -> None:
    locked = create_view({"slug": "locked", "name": "Locked", "visibility": "password", "password": "open-sesame"})
    public = create_view({"slug": "open", "name": "Open", "visibility": "public"})

    prompt = client.get("/api/view/locked/data")
    assert prompt.status_code == 200
    assert prompt.json() == {
        "id": locked["id"],
        "slug": "locked",
        "name": "Locked",
        "visibility": "password",
        "requires_password": True,
    }

    wrong = client.post("/api/password/check", json={"view_id": locked["id"], "password": "nope"})
    assert wrong.status_code == 401
    assert wrong.json() == {"error": "incorrect password"}

    not_protected = client.post("/api/password/check", json={"view_id": public["id"], "password": "x"})
    assert not_protected.status_code == 400

    missing = client.post("/api/password/check", json={"view_id": "missing", "password": "x"})
    assert missing.status_code == 404

    ok = client.post("/api/password/check", json={"view_id": locked["id"], "password": "open-sesame"})
    assert ok.status_code == 200
    body = ok.json()
    assert body["expires_in"] == 3600

    data = client.get("/api/view/locked/data", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert data.status_code == 200
    assert "sections" in data.json()

    alt_header = client.get("/api/view/locked/data", headers={"x-password-token": body["access_token"]})
    assert alt_header.status_code == 200

    other_locked = create_view(
        {"slug": "vault", "name": "Vault", "visibility": "password", "password": "different-pass"}
    )
    reused = client.get("/api/view/vault/data", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert reused.status_code == 200
    assert reused.json()["requires_password"] is True
    assert reused.json()["id"] == other_locked["id"]


def test_password_set_switches_view_to_password(client: TestClient, owner_headers: dict[str, str]) -> None:
    view = create_view({"slug": "open", "name": "Open", "visibility": "public", "is_default": True})

    resp = client.post("/api/password/set", json={"view_id": view["id"], "password": "new-secret"}, headers=owner_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["visibility"] == "password"
    assert body["has_password"] is True
    assert body["is_default"] is False

    check = client.post("/api/password/check", json={"view_id": view["id"], "password": "new-secret"})
    assert check.status_code == 200


def test_access_check_does_not_consume_share_uses(client: TestClient, owner_headers: dict[str, str]) -> None:
    view = create_view({"slug": "shared", "name": "Shared", "visibility": "unlisted"})
    token = generate_token(client, owner_headers, view["id"], max_uses=1)
    headers = {"x-share-token": token}

    for _ in range(3):
        assert client.get("/api/view/shared/access", headers=headers).status_code == 200

    assert client.get("/api/view/shared/data", headers=headers).status_code == 200
    assert client.get("/api/view/shared/data", headers=headers).status_code == 404
    assert client.get("/api/view/shared/access", headers=headers).status_code == 404


def test_view_payload_sections_overrides_and_visibility(client: TestClient) -> None:
    view = create_view({"slug": "work", "name": "Work", "visibility": "public", "hero_headline": "Hello"})

    later = insert_record(
        "experience",
        {"title": "Engineer", "company": "Acme", "visibility": "public", "sort_order": 2},
    )
    earlier = insert_record(
        "experience",
        {"title": "Intern", "company": "Initech", "visibility": "public", "sort_order": 1},
    )
    insert_record("experience", {"title": "Hidden", "visibility": "private"})
    insert_record("experience", {"title": "Draft", "visibility": "public", "is_draft": True})
    insert_record(
        "experience",
        {"title": "Not here", "visibility": "public", "view_visibility": {view["id"]: False}},
    )
    p1 = insert_record("projects", {"title": "One", "visibility": "public"})
    p2 = insert_record("projects", {"title": "Two", "visibility": "unlisted"})
    private_project = insert_record("projects", {"title": "Secret", "visibility": "private"})
    insert_record("profile", {"name": "Ada", "headline": "Builder", "visibility": "public"})

    update_view(
        view["id"],
        {
            "sections": [
                {
                    "section": "experience",
                    "layout": "timeline",
                    "itemConfig": {later["id"]: {"overrides": {"title": "Staff Engineer", "company": "Nope"}}},
                },
                {"section": "projects", "items": [p2["id"], private_project["id"], p1["id"]], "width": "half"},
                {"section": "skills", "enabled": False},
                {"section": "unknown-section"},
            ]
        },
    )

    resp = client.get("/api/view/work/data")
    assert resp.status_code == 200
    payload = resp.json()

    assert payload["hero_headline"] == "Hello"
    assert payload["section_order"] == ["experience", "projects"]
    assert payload["section_layouts"] == {"experience": "timeline", "projects": "grid-3"}
    assert payload["section_widths"] == {"experience": "full", "projects": "half"}

    experience = payload["sections"]["experience"]
    assert [item["id"] for item in experience] == [earlier["id"], later["id"]]
    assert experience[1]["title"] == "Staff Engineer"
    assert experience[1]["company"] == "Acme"

    projects = payload["sections"]["projects"]
    assert [item["title"] for item in projects] == ["Two", "One"]

    assert payload["profile"]["name"] == "Ada"
    assert "password_hash" not in resp.text


def test_view_count_tracks_anonymous_reads_only(client: TestClient, owner_headers: dict[str, str]) -> None:
    view = create_view({"slug": "open", "name": "Open", "visibility": "public"})

    client.get("/api/view/open/data")
    client.get("/api/view/open/data")
    client.get("/api/view/open/data", headers=owner_headers)
    client.get("/api/view/open/access")

    refreshed = fetch_view(view["id"])
    assert refreshed["view_count"] == 2
    assert refreshed["last_viewed_at"]


def test_share_link_sets_cookie_and_redirects(client: TestClient, owner_headers: dict[str, str]) -> None:
    view = create_view({"slug": "shared", "name": "Shared", "visibility": "unlisted"})
    token = generate_token(client, owner_headers, view["id"])

    resp = client.get(f"/s/{token}", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == "/shared"
    cookie_header = resp.headers["set-cookie"]
    assert "me_share_token=" in cookie_header
    assert "HttpOnly" in cookie_header
    assert "samesite=lax" in cookie_header.lower()

    data = client.get("/api/view/shared/data")
    assert data.status_code == 200
    assert data.json()["id"] == view["id"]

    client.cookies.clear()
    missing = client.get("/s/not-a-real-token", follow_redirects=False)
    assert missing.status_code == 404
    assert missing.json() == {"error": "not found"}


def test_slug_entry_with_query_token(client: TestClient, owner_headers: dict[str, str]) -> None:
    view = create_view({"slug": "shared", "name": "Shared", "visibility": "unlisted"})
    other = create_view({"slug": "other", "name": "Other", "visibility": "unlisted"})
    token = generate_token(client, owner_headers, view["id"])
    other_token = generate_token(client, owner_headers, other["id"])

    resp = client.get(f"/shared?t={token}", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == "/shared"
    assert "me_share_token=" in resp.headers["set-cookie"]
    client.cookies.clear()

    mismatch = client.get(f"/shared?t={other_token}", follow_redirects=False)
    assert mismatch.status_code == 404

    plain = client.get("/shared")
    assert plain.status_code == 200
    assert plain.json() == {"slug": "shared", "view_path": "/api/view/shared/data"}


def test_legacy_and_reserved_paths(client: TestClient) -> None:
    legacy = client.get("/v/work", follow_redirects=False)
    assert legacy.status_code == 301
    assert legacy.headers["location"] == "/work"

    assert client.get("/v/admin", follow_redirects=False).status_code == 404
    assert client.get("/admin").status_code == 404
    assert client.get("/Static").status_code == 404
    assert client.get("/health").json() == {"status": "ok"}


def test_revoked_share_cookie_no_longer_opens_view(client: TestClient, owner_headers: dict[str, str]) -> None:
    view = create_view({"slug": "recruiter", "name": "Recruiter", "visibility": "unlisted"})
    generated = client.post("/api/share/generate", json={"view_id": view["id"]}, headers=owner_headers)
    assert generated.status_code == 201
    token = generated.json()["token"]
    assert len(token) == 43

    redirect = client.get(f"/s/{token}", follow_redirects=False)
    assert redirect.status_code == 302
    assert redirect.headers["location"] == "/recruiter"
    assert client.cookies.get("me_share_token") == token

    before = client.get("/api/view/recruiter/data")
    assert before.status_code == 200
    assert "sections" in before.json()

    revoked = client.post(f"/api/share/revoke/{generated.json()['id']}", headers=owner_headers)
    assert revoked.status_code == 200

    after = client.get("/api/view/recruiter/data")
    assert after.status_code == 404
    assert after.json() == {"error": "not found"}


def test_password_check_is_rate_limited_per_client_ip(monkeypatch) -> None:
    monkeypatch.setenv("TRUST_PROXY", "true")
    app = create_app()
    strict_client = TestClient(app, raise_server_exceptions=False)
    locked = create_view({"slug": "locked", "name": "Locked", "visibility": "password", "password": "open-sesame"})
    payload = {"view_id": locked["id"], "password": "guess"}
    headers = {"x-real-ip": "203.0.113.9"}

    responses = [strict_client.post("/api/password/check", json=payload, headers=headers) for _ in range(5)]

    assert [resp.status_code for resp in responses] == [401, 401, 401, 429, 429]
    for limited in responses[3:]:
        assert limited.json() == {"error": "too many requests"}
        assert 1 <= int(limited.headers["Retry-After"]) <= 60
        assert limited.headers["X-RateLimit-Remaining"] == "0"

    other_ip = strict_client.post("/api/password/check", json=payload, headers={"x-real-ip": "203.0.113.10"})
    assert other_ip.status_code == 401
