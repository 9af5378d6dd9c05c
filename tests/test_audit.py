from opsdash import approvals, audit
from opsdash.database import SessionLocal
from opsdash.models.user import User


def _admin():
    session = SessionLocal()
    try:
        return session.query(User).filter(User.username == "admin").one()
    finally:
        session.close()


def test_entries_are_listed_newest_first():
    admin = _admin()
    for n in range(3):
        assert audit.record(admin.id, admin.username, f"action_{n}", "ec2", f"run {n}")
    actions = [e.action for e in audit.list_entries()]
    assert actions == ["action_2", "action_1", "action_0"]


def test_list_limit_is_clamped(monkeypatch):
    admin = _admin()
    for n in range(5):
        audit.record(admin.id, admin.username, "toggle", "ecs", str(n))
    assert len(audit.list_entries(limit=2)) == 2
    assert len(audit.list_entries(limit=0)) == 1
    monkeypatch.setattr(audit.settings, "audit_log_max_limit", 3)
    assert len(audit.list_entries(limit=50)) == 3


def test_filters(client, admin_headers):
    admin = _admin()
    audit.record(admin.id, admin.username, "start_service", "ec2", "i-0abc in us-east-1")
    audit.record(admin.id, admin.username, "stop_service", "ecs", "web in eu-west-1")
    audit.record(admin.id, admin.username, "update_rule", "alb", "priority 10")

    def fetch(**params):
        resp = client.get("/user-logs", params=params, headers=admin_headers)
        assert resp.status_code == 200
        return [log["action"] for log in resp.json()["logs"]]

    assert fetch(resource="ecs") == ["stop_service"]
    assert fetch(action="update_rule") == ["update_rule"]
    assert fetch(search="EU-WEST") == ["stop_service"]
    assert set(fetch(search="_service")) == {"start_service", "stop_service"}
    assert fetch(search="service", resource="ec2") == ["start_service"]


def test_log_action_records_caller(client, make_user, admin_headers):
    headers = make_user("walt", role="write")
    resp = client.post(
        "/log-action",
        json={"action": "force_redeploy", "resource": "ecs", "details": "api service"},
        headers=headers,
    )
    assert resp.status_code == 201
    assert resp.json() == {"logged": True}

    logs = client.get("/user-logs", params={"action": "force_redeploy"}, headers=admin_headers)
    entry = logs.json()["logs"][0]
    assert entry["username"] == "walt"
    assert entry["details"] == "api service"


def test_log_action_requires_session(client):
    resp = client.post("/log-action", json={"action": "x", "resource": "y"})
    assert resp.status_code == 401


def test_failed_standalone_write_is_swallowed(client, admin_headers, monkeypatch):
    def broken(**kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(audit, "AuditLogEntry", broken)
    resp = client.post(
        "/log-action", json={"action": "stop_service", "resource": "ec2"}, headers=admin_headers
    )
    assert resp.status_code == 201
    assert resp.json() == {"logged": False}


def test_failed_entry_does_not_fail_the_decision(monkeypatch):
    user_id = approvals.register("bob", "secret1", "bob@x.com", "readonly")
    admin = _admin()
    request_id = approvals.list_pending()[0][0].id

    def broken(**kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(audit, "AuditLogEntry", broken)
    decision = approvals.decide(admin, request_id, "approved")
    assert decision.status == "approved"

    session = SessionLocal()
    try:
        assert session.get(User, user_id).is_approved is True
    finally:
        session.close()
    monkeypatch.undo()
    assert [e.action for e in audit.list_entries(action="approve_user")] == []


def test_decision_and_entry_commit_together():
    approvals.register("bob", "secret1", "bob@x.com", "readonly")
    admin = _admin()
    request_id = approvals.list_pending()[0][0].id
    approvals.decide(admin, request_id, "rejected")

    entries = audit.list_entries(action="reject_user")
    assert len(entries) == 1
    assert entries[0].username == "admin"
    assert entries[0].resource == "user_management"
    assert f"#{request_id}" in entries[0].details
