"""
Pytest fixtures for Flask-MunchAuth tests.

Pytest automatically discovers this file (conftest.py) and uses it to provide
fixtures to tests under this directory tree.
"""

import sys
from pathlib import Path
from datetime import datetime, timedelta, timezone
from urllib.parse import urlparse, parse_qs

import pytest
from flask import Flask

# Ensure project root is importable when running tests from /tests
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from flask_munchauth import MunchAuth, login_required
from flask_munchauth.storage import InMemoryStorageAdapter


def query_param(url, name):
    """Pull one query parameter out of a link or redirect location."""
    values = parse_qs(urlparse(url).query).get(name)
    return values[0] if values else None


@pytest.fixture
def base_config():
    # Keep config minimal and explicit for test determinism
    return {
        "SECRET_KEY": "test-secret-key",
        "TESTING": True,

        # MunchAuth config
        "MUNCH_DEV_MODE": True,
        "MUNCH_LOGIN_URL": "/login",
        "MUNCH_RP_NAME": "Test App",

        # Mail defaults (dev mode suppresses sending anyway)
        "MAIL_SUPPRESS_SEND": True,
        "MAIL_SERVER": "localhost",
        "MAIL_DEFAULT_SENDER": "test@example.com",

        "SERVER_NAME": "localhost",
        "PREFERRED_URL_SCHEME": "http",
    }


@pytest.fixture
def app(base_config):
    """Flask app with MunchAuth + in-memory storage and a couple host routes."""
    app = Flask(__name__)
    app.config.update(base_config)

    storage = InMemoryStorageAdapter()
    MunchAuth(app, storage_adapter=storage)

    # ---- Minimal host-app routes used by tests / redirects ----
    @app.route("/public")
    def public():
        return "Public content"

    @app.route("/pantry")
    @login_required
    def pantry():
        return "Pantry"

    @app.route("/login")
    def login_page():
        return "Login page"

    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def munch(app):
    return app.extensions["munchauth"]


@pytest.fixture
def storage(munch):
    return munch.storage


@pytest.fixture
def test_email():
    return "ada@x.com"


@pytest.fixture
def test_user(storage, test_email):
    """An existing, verified identity."""
    return storage.get_or_create_user(
        test_email, name="Ada", email_verified=datetime.now(timezone.utc)
    )


def _login(client, user, refreshed_at=None):
    now = datetime.now(timezone.utc)
    with client.session_transaction() as sess:
        sess["user_id"] = user["id"]
        sess["logged_in_at"] = (refreshed_at or now).isoformat()
        sess["refreshed_at"] = (refreshed_at or now).isoformat()
    return client


@pytest.fixture
def authenticated_client(client, test_user):
    return _login(client, test_user)


@pytest.fixture
def expired_session_client(client, test_user):
    return _login(client, test_user, datetime.now(timezone.utc) - timedelta(days=8))


@pytest.fixture
def magic_link(client, test_user):
    """Request a login link through the API; dev mode echoes it back."""
    resp = client.post("/api/auth/magic-link/start", json={"email": test_user["email"]})
    data = resp.get_json()["data"]
    return {
        "link": data["link"],
        "token": query_param(data["link"], "token"),
        "request_id": data["requestId"],
    }


@pytest.fixture
def rewind(storage):
    """Move a stored token timestamp into the past."""
    def _rewind(token, field, **delta):
        entry = storage.tokens[storage._hash_token(token)]
        entry[field] = entry[field] - timedelta(**delta)
    return _rewind
