"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> token resolution in
the require() dependency -> auth/ operations -> AuthStore -> response model
serialization and the typed-error -> status mapping in api/main.py.

Coverage:
  - Auth failures: 401 without/with unknown token, 403 without permission
  - Password signin: 200 + no-store, identical 401 for unknown login / wrong password
  - Absent signin inputs: 400 missing_credential on every signin endpoint
  - Code signin: send, redeem, replay rejected
  - Token lifecycle: token info, touch, signout
  - User and group administration happy paths and 4xx mappings
  - Two-phase password restore

Fixtures used (from conftest.py):
  - api_client: (client, token, uid) -- TestClient with an admin bearer token.
    The admin has login="testadmin", password="correct-horse".
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

PASSWORD = "correct-horse"


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _signup(client: TestClient, admin_token: str, login: str, permissions=()) -> int:
    resp = client.post(
        "/api/v1/auth/signup",
        json={"login": login, "password": PASSWORD, "email": f"{login}@example.com", "permissions": list(permissions)},
        headers=_auth(admin_token),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["user"]


def _signin(client: TestClient, login: str, password: str = PASSWORD) -> str:
    resp = client.post("/api/v1/auth/signin", json={"login": login, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["token"]


class TestApiAuthFailure:
    """Requests without a usable token must be rejected before any work is done."""

    def test_missing_token(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/users")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_required"
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_unknown_token(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/token", headers=_auth("not-a-real-token"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token"

    def test_non_bearer_scheme(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        resp = client.get("/api/v1/auth/token", headers={"Authorization": f"Basic {token}"})
        assert resp.status_code == 401

    def test_docs_require_token(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        assert client.get("/docs").status_code == 401
        assert client.get("/docs", headers=_auth(token)).status_code == 200


class TestSignin:
    def test_password_signin(self, api_client: tuple[TestClient, str, int]) -> None:
        """Signing in while a token is active returns that same token."""
        client, token, _uid = api_client
        resp = client.post("/api/v1/auth/signin", json={"login": "testadmin", "password": PASSWORD})
        assert resp.status_code == 200
        assert resp.json() == {"token": token, "token_type": "bearer"}
        assert resp.headers["Cache-Control"] == "no-store"

    def test_bad_credentials_are_uniform(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        wrong = client.post("/api/v1/auth/signin", json={"login": "testadmin", "password": "nope-nope"})
        unknown = client.post("/api/v1/auth/signin", json={"login": "nobody", "password": PASSWORD})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()

    @pytest.mark.parametrize(
        "body",
        [{"login": "testadmin"}, {"password": PASSWORD}, {"login": "testadmin", "password": ""}, {}],
    )
    def test_missing_field_is_missing_credential(self, api_client: tuple[TestClient, str, int], body: dict) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/signin", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "missing_credential"

    def test_wrong_type_is_still_validation_error(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/signin", json={"login": "testadmin", "password": PASSWORD, "expire": 0})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestCodeSignin:
    def test_send_and_redeem(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        uid = _signup(client, token, "coder")
        outbox = client.app.state.auth.config.single_use_sender

        resp = client.get("/api/v1/auth/signin/code", params={"login": "coder"})
        assert resp.status_code == 200
        contact, code = outbox.messages[-1]
        assert contact == "coder@example.com"

        resp = client.post("/api/v1/auth/signin/code", json={"login": "coder", "code": code})
        assert resp.status_code == 200
        assert resp.headers["Cache-Control"] == "no-store"
        info = client.get("/api/v1/auth/token", headers=_auth(resp.json()["token"]))
        assert info.json()["id"] == uid

        replay = client.post("/api/v1/auth/signin/code", json={"login": "coder", "code": code})
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "code_mismatch"

    def test_unknown_login(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/signin/code", params={"login": "ghost"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "user_not_found"

    def test_missing_login(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/signin/code")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "missing_credential"

    def test_missing_code(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/signin/code", json={"login": "testadmin"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "missing_credential"


class TestTokenLifecycle:
    def test_info_touch_signout(self, api_client: tuple[TestClient, str, int]) -> None:
        client, admin_token, _uid = api_client
        _signup(client, admin_token, "lifecycle")
        token = _signin(client, "lifecycle")

        info = client.get("/api/v1/auth/token", headers=_auth(token))
        assert info.status_code == 200
        assert info.json()["login"] == "lifecycle"
        assert "password" not in info.json()

        assert client.post("/api/v1/auth/touch", params={"expire": 120}, headers=_auth(token)).status_code == 200
        assert client.post("/api/v1/auth/signout", headers=_auth(token)).status_code == 200

        after = client.get("/api/v1/auth/token", headers=_auth(token))
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "token_expired"


class TestPermissions:
    def test_info_permission_allows_reads_only(self, api_client: tuple[TestClient, str, int]) -> None:
        client, admin_token, _uid = api_client
        reader_id = _signup(client, admin_token, "reader", ["auth-info"])
        token = _signin(client, "reader")

        assert client.get("/api/v1/auth/users", headers=_auth(token)).status_code == 200
        assert client.get(f"/api/v1/auth/users/{reader_id}", headers=_auth(token)).status_code == 200

        denied = client.post(
            "/api/v1/auth/signup",
            json={"login": "sneaky", "password": PASSWORD, "email": "s@example.com"},
            headers=_auth(token),
        )
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "forbidden"
        assert client.delete(f"/api/v1/auth/users/{reader_id}", headers=_auth(token)).status_code == 403


class TestUserAdmin:
    def test_crud(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        uid = _signup(client, token, "crud")

        resp = client.get(f"/api/v1/auth/users/{uid}", headers=_auth(token))
        assert resp.status_code == 200
        assert resp.json() == {
            "id": uid,
            "login": "crud",
            "email": "crud@example.com",
            "permissions": [],
            "groups": [],
        }

        resp = client.patch(f"/api/v1/auth/users/{uid}", json={"email": "new@example.com"}, headers=_auth(token))
        assert resp.status_code == 200
        assert client.get(f"/api/v1/auth/users/{uid}", headers=_auth(token)).json()["email"] == "new@example.com"

        resp = client.put(
            f"/api/v1/auth/users/{uid}",
            json={"login": "crud2", "password": "replaced-pw", "email": "c2@example.com", "permissions": ["x"]},
            headers=_auth(token),
        )
        assert resp.status_code == 200
        _signin(client, "crud2", "replaced-pw")

        assert client.delete(f"/api/v1/auth/users/{uid}", headers=_auth(token)).status_code == 204
        missing = client.get(f"/api/v1/auth/users/{uid}", headers=_auth(token))
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "user_not_found"

    def test_duplicate_login(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        resp = client.post(
            "/api/v1/auth/signup",
            json={"login": "testadmin", "password": PASSWORD, "email": "dup@example.com"},
            headers=_auth(token),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "duplicate_login"

    def test_weak_password(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        resp = client.post(
            "/api/v1/auth/signup",
            json={"login": "weak", "password": "abc", "email": "weak@example.com"},
            headers=_auth(token),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "weak_password"

    def test_list(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        resp = client.get("/api/v1/auth/users", params={"page": 0, "size": 1}, headers=_auth(token))
        assert resp.status_code == 200
        data = resp.json()
        assert len(data["items"]) == 1
        assert data["pages"] == data["total"]


class TestRestore:
    def test_two_phase_restore(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        uid = _signup(client, token, "forgetful")
        outbox = client.app.state.auth.config.restore_sender

        assert client.post(f"/api/v1/auth/restore/{uid}", json={}).status_code == 200
        code = outbox.last_code

        missing = client.post(f"/api/v1/auth/restore/{uid}", json={"code": code})
        assert missing.status_code == 400
        assert missing.json()["error"]["code"] == "missing_credential"

        wrong = client.post(f"/api/v1/auth/restore/{uid}", json={"code": "bad", "password": "whatever-pw"})
        assert wrong.status_code == 400
        assert wrong.json()["error"]["code"] == "code_mismatch"

        done = client.post(f"/api/v1/auth/restore/{uid}", json={"code": code, "password": "remembered"})
        assert done.status_code == 200
        _signin(client, "forgetful", "remembered")

    def test_unknown_user(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        assert client.post("/api/v1/auth/restore/99999", json={}).status_code == 404


class TestGroups:
    def test_crud(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        member = _signup(client, token, "member")

        resp = client.post(
            "/api/v1/auth/groups",
            json={"name": "editors", "permissions": ["edit"], "users": [member]},
            headers=_auth(token),
        )
        assert resp.status_code == 201
        gid = resp.json()["id"]

        group = client.get(f"/api/v1/auth/groups/{gid}", headers=_auth(token)).json()
        assert group == {"id": gid, "name": "editors", "permissions": ["edit"], "users": [member]}

        member_token = _signin(client, "member")
        assert client.get(f"/api/v1/auth/groups/{gid}", headers=_auth(member_token)).status_code == 403

        assert (
            client.patch(f"/api/v1/auth/groups/{gid}", json={"permissions": ["auth-info"]}, headers=_auth(token))
        ).status_code == 200
        assert client.get(f"/api/v1/auth/groups/{gid}", headers=_auth(member_token)).status_code == 200

        resp = client.put(
            f"/api/v1/auth/groups/{gid}",
            json={"name": "readers", "permissions": [], "users": []},
            headers=_auth(token),
        )
        assert resp.status_code == 200
        assert client.get(f"/api/v1/auth/groups/{gid}", headers=_auth(member_token)).status_code == 403

        listing = client.get("/api/v1/auth/groups", headers=_auth(token)).json()
        assert [g["name"] for g in listing["items"]] == ["readers"]

        assert client.delete(f"/api/v1/auth/groups/{gid}", headers=_auth(token)).status_code == 204
        missing = client.get(f"/api/v1/auth/groups/{gid}", headers=_auth(token))
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "group_not_found"

    def test_unknown_member(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        resp = client.post("/api/v1/auth/groups", json={"name": "ghosts", "users": [99999]}, headers=_auth(token))
        assert resp.status_code == 404
