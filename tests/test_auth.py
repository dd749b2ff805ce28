"""
Session issuance and guard tests for Flask-MunchAuth.
"""

from datetime import datetime, timedelta, timezone

import pytest


SESSION = "/api/auth/session"


@pytest.mark.unit
class TestAuthentication:
    def test_unauthenticated_user(self, client, munch):
        with client:
            client.get("/public")
            assert munch.is_authenticated() is False
            assert munch.get_current_user() is None

    def test_authenticated_user(self, authenticated_client, munch, test_user):
        with authenticated_client:
            authenticated_client.get("/public")
            assert munch.is_authenticated() is True
            assert munch.get_current_user()["id"] == test_user["id"]

    def test_expired_session_fails(self, expired_session_client, munch):
        with expired_session_client:
            expired_session_client.get("/public")
            assert munch.is_authenticated() is False

    def test_helpers_without_request_user(self, app):
        from flask_munchauth import get_current_user, is_authenticated

        with app.test_request_context("/public"):
            assert is_authenticated() is False
            assert get_current_user() is None

    def test_logout_helper_redirects(self, app):
        from flask import session
        from flask_munchauth import logout

        with app.test_request_context("/pantry"):
            session["user_id"] = 1
            resp = logout()
            assert resp.status_code == 302
            assert "user_id" not in session


@pytest.mark.unit
class TestLoginRequired:
    def test_blocks_unauthenticated(self, client):
        response = client.get("/pantry", follow_redirects=False)
        assert response.status_code == 302
        assert response.location.endswith("/login")

    def test_allows_authenticated(self, authenticated_client):
        response = authenticated_client.get("/pantry", follow_redirects=False)
        assert response.status_code == 200
        assert b"Pantry" in response.data

    def test_blocks_expired_session(self, expired_session_client):
        response = expired_session_client.get("/pantry", follow_redirects=False)
        assert response.status_code == 302

    def test_blocks_deleted_user(self, authenticated_client, storage, test_user):
        storage.delete_user(test_user["id"])

        response = authenticated_client.get("/pantry", follow_redirects=False)
        assert response.status_code == 302
        with authenticated_client.session_transaction() as sess:
            assert "user_id" not in sess


@pytest.mark.integration
class TestSessionExchange:
    def test_exchange_bridge_token(self, client, munch, test_user):
        with client.application.app_context():
            token = munch.bridge.mint(test_user["id"])

        resp = client.post(SESSION, json={"loginToken": token})

        assert resp.status_code == 200
        user = resp.get_json()["data"]["user"]
        assert user["id"] == test_user["id"]
        assert user["email"] == "ada@x.com"
        assert user["name"] == "Ada"
        assert user["emailVerified"]

        with client.session_transaction() as sess:
            assert sess["user_id"] == test_user["id"]
            assert "logged_in_at" in sess
            assert "refreshed_at" in sess

    def test_exchange_sets_http_only_cookie(self, client, munch, test_user):
        with client.application.app_context():
            token = munch.bridge.mint(test_user["id"])

        resp = client.post(SESSION, json={"loginToken": token})
        cookie = resp.headers.get("Set-Cookie")
        assert "HttpOnly" in cookie
        assert "SameSite=Lax" in cookie
        assert "Expires=" in cookie

    def test_exchange_rejects_garbage(self, client):
        resp = client.post(SESSION, json={"loginToken": "not-a-token"})
        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "UNAUTHORIZED"

    def test_exchange_requires_token(self, client):
        resp = client.post(SESSION, json={})
        assert resp.status_code == 401

    def test_exchange_for_deleted_user(self, client, munch, storage, test_user):
        with client.application.app_context():
            token = munch.bridge.mint(test_user["id"])
        storage.delete_user(test_user["id"])

        resp = client.post(SESSION, json={"loginToken": token})
        assert resp.status_code == 401

    def test_bridge_token_is_reusable_until_it_expires(self, client, munch, test_user):
        with client.application.app_context():
            token = munch.bridge.mint(test_user["id"])

        assert client.post(SESSION, json={"loginToken": token}).status_code == 200
        assert client.post(SESSION, json={"loginToken": token}).status_code == 200

    def test_new_login_replaces_old_session_data(self, authenticated_client, munch, test_user):
        with authenticated_client.session_transaction() as sess:
            sess["stale"] = "value"
        with authenticated_client.application.app_context():
            token = munch.bridge.mint(test_user["id"])

        authenticated_client.post(SESSION, json={"loginToken": token})
        with authenticated_client.session_transaction() as sess:
            assert "stale" not in sess


@pytest.mark.integration
class TestSessionGuard:
    def test_get_session_anonymous(self, client):
        resp = client.get(SESSION)
        assert resp.status_code == 200
        assert resp.get_json()["data"] == {"user": {}}

    def test_get_session_authenticated(self, authenticated_client, test_user):
        resp = authenticated_client.get(SESSION)
        assert resp.get_json()["data"]["user"]["id"] == test_user["id"]

    def test_session_for_deleted_user_becomes_anonymous(self, authenticated_client, storage, test_user):
        storage.delete_user(test_user["id"])

        resp = authenticated_client.get(SESSION)
        assert resp.status_code == 200
        assert resp.get_json()["data"] == {"user": {}}

    def test_expired_session_is_cleared(self, expired_session_client):
        resp = expired_session_client.get(SESSION)
        assert resp.get_json()["data"] == {"user": {}}
        with expired_session_client.session_transaction() as sess:
            assert "user_id" not in sess

    def test_garbled_session_timestamp_is_cleared(self, client, test_user):
        with client.session_transaction() as sess:
            sess["user_id"] = test_user["id"]
            sess["refreshed_at"] = "yesterday"

        resp = client.get(SESSION)
        assert resp.get_json()["data"] == {"user": {}}

    def test_recent_session_is_not_refreshed(self, authenticated_client):
        with authenticated_client.session_transaction() as sess:
            before = sess["refreshed_at"]

        authenticated_client.get("/public")
        with authenticated_client.session_transaction() as sess:
            assert sess["refreshed_at"] == before

    def test_day_old_session_slides_forward(self, client, test_user):
        day_old = (datetime.now(timezone.utc) - timedelta(days=1, minutes=1)).isoformat()
        with client.session_transaction() as sess:
            sess["user_id"] = test_user["id"]
            sess["logged_in_at"] = day_old
            sess["refreshed_at"] = day_old

        resp = client.get("/pantry")
        assert resp.status_code == 200
        with client.session_transaction() as sess:
            assert sess["refreshed_at"] != day_old
            assert sess["logged_in_at"] == day_old

    def test_six_day_old_session_still_valid(self, client, test_user):
        old = (datetime.now(timezone.utc) - timedelta(days=6)).isoformat()
        with client.session_transaction() as sess:
            sess["user_id"] = test_user["id"]
            sess["refreshed_at"] = old

        assert client.get("/pantry").status_code == 200


@pytest.mark.integration
class TestLogoutAndAccount:
    def test_logout_clears_session(self, authenticated_client):
        resp = authenticated_client.get("/api/auth/logout", follow_redirects=False)

        assert resp.status_code == 302
        assert resp.location.endswith("/login")
        with authenticated_client.session_transaction() as sess:
            assert "user_id" not in sess

        assert authenticated_client.get("/pantry").status_code == 302

    def test_delete_account(self, authenticated_client, storage, test_user):
        storage.add_passkey(test_user["id"], {"credential_id": b"c", "public_key": b"pk"})

        resp = authenticated_client.delete("/api/auth/account")

        assert resp.status_code == 200
        assert storage.get_user_by_id(test_user["id"]) is None
        assert storage.get_passkeys(test_user["id"]) == []
        with authenticated_client.session_transaction() as sess:
            assert "user_id" not in sess

    def test_delete_account_requires_session(self, client):
        resp = client.delete("/api/auth/account")
        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "UNAUTHORIZED"
