from conftest import bearer, login, register
from gatekeeper.models.audit import AuditLog, SecurityEvent
from gatekeeper.models.user import User

ADMIN = "/api/v1/admin"


def _user_id(client, email="alice@example.com"):
    response = register(client, email=email, name="Alice")
    assert response.status_code == 201
    return response.json()["data"]["user"]["id"], response.json()["data"]["token"]


def test_admin_routes_require_admin(client, user_token):
    assert client.get(f"{ADMIN}/dashboard").status_code == 401

    response = client.get(f"{ADMIN}/dashboard", headers=bearer(user_token))
    assert response.status_code == 403
    assert response.json()["message"] == "Not authorized to access this route"


def test_dashboard_counts(client, admin_token, drain):
    register(client)
    login(client)
    login(client, password="Wrong123")
    drain()

    response = client.get(f"{ADMIN}/dashboard", headers=bearer(admin_token))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["users"] == {"total": 2, "new": 2}
    # admin register + admin login + alice register + alice login
    assert data["sessions"]["active"] == 4
    assert data["logins"]["successful"] == 2
    assert data["logins"]["failed"] == 1
    assert data["logins"]["success_rate"] == 66.67
    assert len(data["daily_logins"]) == 1
    assert data["daily_logins"][0]["success"] == 2
    assert data["daily_logins"][0]["failed"] == 1
    assert set(data["security"]["by_severity"]) == {"low", "medium", "high", "critical"}


def test_audit_logs_are_filtered_enriched_and_paginated(client, admin_token, drain):
    user_id, _ = _user_id(client)
    login(client)
    login(client)
    drain()

    headers = bearer(admin_token)
    response = client.get(f"{ADMIN}/audit-logs", headers=headers,
                          params={"user_id": user_id, "action": "user_login_success", "limit": 1})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert body["count"] == 1
    assert body["total_pages"] == 2
    assert body["current_page"] == 1
    log = body["data"]["logs"][0]
    assert log["action"] == "user_login_success"
    assert log["user"] == {"id": user_id, "name": "Alice", "email": "alice@example.com"}

    second_page = client.get(f"{ADMIN}/audit-logs", headers=headers,
                             params={"user_id": user_id, "action": "user_login_success", "limit": 1, "page": 2})
    assert second_page.json()["data"]["logs"][0]["id"] != log["id"]


def test_audit_logs_newest_first(client, admin_token, drain):
    drain()
    logs = client.get(f"{ADMIN}/audit-logs", headers=bearer(admin_token)).json()["data"]["logs"]
    timestamps = [entry["timestamp"] for entry in logs]
    assert timestamps == sorted(timestamps, reverse=True)


def test_audit_logs_reject_unknown_filter_value(client, admin_token):
    response = client.get(f"{ADMIN}/audit-logs", headers=bearer(admin_token), params={"severity": "loud"})
    assert response.status_code == 400


def test_resolve_security_event(client, admin_token, app, drain):
    user_id, _ = _user_id(client)
    for _ in range(3):
        login(client, password="Wrong123")
    drain()

    headers = bearer(admin_token)
    listed = client.get(f"{ADMIN}/security-events", headers=headers,
                        params={"event_type": "brute_force_attempt", "resolved": False})
    assert listed.json()["total"] == 1
    event = listed.json()["data"]["events"][0]
    assert event["user"]["email"] == "alice@example.com"
    assert event["severity"] == "medium"

    response = client.patch(f"{ADMIN}/security-events/{event['id']}/resolve", headers=headers, json={})

    assert response.status_code == 200
    resolved = response.json()["data"]["event"]
    assert resolved["resolved"] is True
    assert resolved["notes"] == "Resolved by admin"
    assert resolved["resolved_at"] is not None

    again = client.patch(f"{ADMIN}/security-events/{event['id']}/resolve", headers=headers,
                         json={"notes": "Checked"})
    assert again.status_code == 400

    remaining = client.get(f"{ADMIN}/security-events", headers=headers,
                           params={"event_type": "brute_force_attempt", "resolved": False})
    assert remaining.json()["total"] == 0


def test_resolve_unknown_or_malformed_event(client, admin_token):
    headers = bearer(admin_token)
    missing = client.patch(f"{ADMIN}/security-events/00000000-0000-0000-0000-000000000000/resolve",
                           headers=headers, json={})
    assert missing.status_code == 404

    malformed = client.patch(f"{ADMIN}/security-events/abc/resolve", headers=headers, json={})
    assert malformed.status_code == 404
    assert malformed.json() == {"success": False, "message": "No item found with id: abc"}


def test_invalidate_single_session(client, admin_token):
    user_id, token = _user_id(client)
    headers = bearer(admin_token)

    sessions = client.get(f"{ADMIN}/user-sessions", headers=headers, params={"user_id": user_id}).json()
    assert sessions["total"] == 1
    session_id = sessions["data"]["sessions"][0]["id"]
    assert sessions["data"]["sessions"][0]["user"]["email"] == "alice@example.com"

    response = client.delete(f"{ADMIN}/user-sessions/{session_id}", headers=headers)

    assert response.status_code == 200
    assert client.get("/api/v1/auth/me", headers=bearer(token)).status_code == 401
    inactive = client.get(f"{ADMIN}/user-sessions", headers=headers,
                          params={"user_id": user_id, "is_active": False}).json()
    assert inactive["total"] == 1


def test_invalidate_all_user_sessions(client, admin_token):
    user_id, token = _user_id(client)
    login(client)

    response = client.delete(f"{ADMIN}/users/{user_id}/sessions", headers=bearer(admin_token))

    assert response.status_code == 200
    assert response.json()["data"]["count"] == 2
    assert client.get("/api/v1/auth/me", headers=bearer(token)).status_code == 401


def test_user_activity(client, admin_token, drain):
    user_id, _ = _user_id(client)
    login(client)
    login(client, password="Wrong123")
    drain()

    response = client.get(f"{ADMIN}/users/{user_id}/activity", headers=bearer(admin_token))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["user"]["email"] == "alice@example.com"
    assert data["logins"]["successful"] == 1
    assert data["logins"]["failed"] == 1
    assert data["logins"]["last_login"] is not None
    assert len(data["active_sessions"]) == 2
    assert len(data["recent_audit_logs"]) == 3


def test_list_and_search_users(client, admin_token):
    _user_id(client)
    _user_id(client, email="bob@example.com")
    headers = bearer(admin_token)

    everyone = client.get(f"{ADMIN}/users", headers=headers).json()
    assert everyone["total"] == 3

    found = client.get(f"{ADMIN}/users", headers=headers, params={"search": "BOB"}).json()
    assert found["total"] == 1
    assert found["data"]["users"][0]["email"] == "bob@example.com"


def test_change_role(client, admin_token, app, drain):
    user_id, _ = _user_id(client)

    response = client.patch(f"{ADMIN}/users/{user_id}/role", headers=bearer(admin_token), json={"role": "admin"})
    drain()

    assert response.status_code == 200
    assert response.json()["data"]["user"]["role"] == "admin"
    promoted = login(client).json()["data"]["token"]
    assert client.get(f"{ADMIN}/dashboard", headers=bearer(promoted)).status_code == 200

    invalid = client.patch(f"{ADMIN}/users/{user_id}/role", headers=bearer(admin_token), json={"role": "owner"})
    assert invalid.status_code == 400

    db = app.state.session_factory()
    try:
        entry = db.query(AuditLog).filter(AuditLog.action == "user_role_changed").one()
        assert entry.details == {"user_id": user_id, "from": "user", "to": "admin"}
    finally:
        db.close()


def test_lock_and_unlock_user(client, admin_token):
    user_id, _ = _user_id(client)
    headers = bearer(admin_token)

    locked = client.patch(f"{ADMIN}/users/{user_id}/lock", headers=headers, json={"lock": True})
    assert locked.status_code == 200
    assert locked.json()["data"]["user"]["lock_until"] is not None
    refused = login(client)
    assert refused.status_code == 429
    assert "Try again in 1440 minutes" in refused.json()["message"]

    unlocked = client.patch(f"{ADMIN}/users/{user_id}/lock", headers=headers, json={"lock": False})
    assert unlocked.status_code == 200
    assert unlocked.json()["data"]["user"]["login_attempts"] == 0
    assert login(client).status_code == 200


def test_delete_user(client, admin_token, app):
    user_id, _ = _user_id(client)
    headers = bearer(admin_token)

    response = client.delete(f"{ADMIN}/users/{user_id}", headers=headers)

    assert response.status_code == 200
    assert client.delete(f"{ADMIN}/users/{user_id}", headers=headers).status_code == 404
    db = app.state.session_factory()
    try:
        assert db.query(User).filter(User.id == user_id).count() == 0
        admin = db.query(User).filter(User.email == "admin@example.com").one()
    finally:
        db.close()

    own = client.delete(f"{ADMIN}/users/{admin.id}", headers=headers)
    assert own.status_code == 400


def test_security_events_survive_user_deletion(client, admin_token, app, drain):
    user_id, _ = _user_id(client)
    for _ in range(3):
        login(client, password="Wrong123")
    drain()
    client.delete(f"{ADMIN}/users/{user_id}", headers=bearer(admin_token))

    db = app.state.session_factory()
    try:
        assert db.query(SecurityEvent).filter(SecurityEvent.user_id == user_id).count() == 1
    finally:
        db.close()
