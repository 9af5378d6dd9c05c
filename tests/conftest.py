import os

# Must be set before the application modules read their settings.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["BCRYPT_ROUNDS"] = "10"
os.environ["PASSWORD_PEPPER"] = "test-pepper"
os.environ["ADMIN_PASSWORD"] = "admin-secret"

import pytest
from fastapi.testclient import TestClient

from opsdash.accounts import ensure_admin_account
from opsdash.api import app
from opsdash.database import Base, engine


ADMIN_PASSWORD = "admin-secret"


@pytest.fixture(autouse=True)
def fresh_database():
    """Rebuild the schema and the admin account for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    ensure_admin_account()
    yield


@pytest.fixture
def client():
    return TestClient(app)


def login(client, username, password):
    return client.post("/login", json={"username": username, "password": password})


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(client):
    resp = login(client, "admin", ADMIN_PASSWORD)
    assert resp.status_code == 200, resp.text
    return bearer(resp.json()["access_token"])


@pytest.fixture
def make_user(client, admin_headers):
    """Create an approved account through an invitation and return its auth headers."""

    def _make(username, role="readonly", password="secret1"):
        resp = client.post(
            "/invite-user",
            json={"username": username, "email": f"{username}@x.com", "role": role},
            headers=admin_headers,
        )
        assert resp.status_code == 201, resp.text
        resp = client.post(
            "/accept-invitation",
            json={"token": resp.json()["token"], "password": password},
        )
        assert resp.status_code == 201, resp.text
        resp = login(client, username, password)
        assert resp.status_code == 200, resp.text
        return bearer(resp.json()["access_token"])

    return _make
