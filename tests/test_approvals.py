import pytest

from conftest import login
from opsdash import approvals
from opsdash.database import ApprovalRequest, SessionLocal
from opsdash.errors import Conflict, Forbidden, NotFound, ValidationError
from opsdash.models.user import User


def _register(client, username, role="readonly"):
    resp = client.post(
        "/register",
        json={
            "username": username,
            "password": "secret1",
            "email": f"{username}@x.com",
            "role": role,
        },
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["account_id"]


def _account(user_id):
    session = SessionLocal()
    try:
        return session.get(User, user_id)
    finally:
        session.close()


def _requests_for(user_id):
    session = SessionLocal()
    try:
        return session.query(ApprovalRequest).filter(ApprovalRequest.user_id == user_id).all()
    finally:
        session.close()


def test_registration_creates_unapproved_account_and_one_request(client, admin_headers):
    account_id = _register(client, "bob")
    assert _account(account_id).is_approved is False

    requests = _requests_for(account_id)
    assert len(requests) == 1
    assert requests[0].status == "pending"
    assert requests[0].requested_role == "readonly"

    pending = client.get("/approval-requests", headers=admin_headers).json()["requests"]
    assert [r["username"] for r in pending] == ["bob"]
    assert pending[0]["email"] == "bob@x.com"


def test_bob_rejection_scenario(client, admin_headers):
    account_id = _register(client, "bob")
    request_id = _requests_for(account_id)[0].id

    resp = client.post(
        f"/approval-requests/{request_id}", json={"status": "rejected"}, headers=admin_headers
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "rejected"

    assert _account(account_id).is_approved is False
    request = _requests_for(account_id)[0]
    assert request.status == "rejected"
    assert request.reviewed_by is not None
    assert request.reviewed_at is not None

    assert login(client, "bob", "secret1").status_code == 403
    assert client.get("/approval-requests", headers=admin_headers).json()["requests"] == []

    resp = client.post(
        f"/approval-requests/{request_id}", json={"status": "approved"}, headers=admin_headers
    )
    assert resp.status_code == 400
    assert _account(account_id).is_approved is False


def test_approval_flips_only_the_target(client, admin_headers):
    first = _register(client, "bob")
    second = _register(client, "bea", role="write")
    request_id = _requests_for(second)[0].id

    resp = client.post(
        f"/approval-requests/{request_id}", json={"status": "approved"}, headers=admin_headers
    )
    assert resp.status_code == 200
    assert _account(second).is_approved is True
    assert _account(first).is_approved is False
    assert _account(second).role == "write"

    logs = client.get("/user-logs", params={"action": "approve_user"}, headers=admin_headers)
    assert len(logs.json()["logs"]) == 1


def test_pending_requests_newest_first(client, admin_headers):
    for name in ("one", "two", "three"):
        _register(client, f"user_{name}")
    pending = client.get("/approval-requests", headers=admin_headers).json()["requests"]
    assert [r["username"] for r in pending] == ["user_three", "user_two", "user_one"]


def test_duplicate_registration_conflicts(client):
    _register(client, "bob")
    resp = client.post(
        "/register",
        json={"username": "bob", "password": "secret1", "email": "bob2@x.com", "role": "readonly"},
    )
    assert resp.status_code == 400
    resp = client.post(
        "/register",
        json={"username": "bob2", "password": "secret1", "email": "BOB@x.com", "role": "readonly"},
    )
    assert resp.status_code == 400


def test_store_constraint_catches_racing_registration(monkeypatch):
    approvals.register("bob", "secret1", "bob@x.com", "readonly")
    # Simulate a second request that passed the availability check before the first committed.
    monkeypatch.setattr("opsdash.accounts.ensure_available", lambda *args, **kwargs: None)
    with pytest.raises(Conflict):
        approvals.register("bob", "secret1", "bob-again@x.com", "readonly")

    session = SessionLocal()
    try:
        assert session.query(User).filter(User.username == "bob").count() == 1
        assert session.query(ApprovalRequest).count() == 1
    finally:
        session.close()


def test_registration_cannot_request_admin(client):
    resp = client.post(
        "/register",
        json={"username": "eve", "password": "secret1", "email": "eve@x.com", "role": "admin"},
    )
    assert resp.status_code == 400


def test_registration_validates_password_and_username(client):
    resp = client.post(
        "/register",
        json={"username": "eve", "password": "123", "email": "eve@x.com", "role": "readonly"},
    )
    assert resp.status_code == 400
    resp = client.post(
        "/register",
        json={"username": "e v", "password": "secret1", "email": "eve@x.com", "role": "readonly"},
    )
    assert resp.status_code == 400


def test_decide_guards():
    user_id = approvals.register("bob", "secret1", "bob@x.com", "readonly")
    request_id = _requests_for(user_id)[0].id
    session = SessionLocal()
    admin = session.query(User).filter(User.username == "admin").one()
    session.close()

    reader = User(id=123, username="r", email="r@x.com", role="readonly", is_approved=True)
    with pytest.raises(Forbidden):
        approvals.decide(reader, request_id, "approved")
    with pytest.raises(NotFound):
        approvals.decide(admin, request_id + 100, "approved")
    with pytest.raises(ValidationError):
        approvals.decide(admin, request_id, "maybe")


def test_unapproved_cannot_use_api_even_with_forged_session(client):
    from opsdash.auth import create_access_token

    user_id = _register(client, "bob")
    token = create_access_token(_account(user_id))
    resp = client.get("/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 403
