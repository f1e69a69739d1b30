import pytest

from backend.app.models import Session as AuthSession
from backend.tests.utils import login, seed_user


def test_login_logout_flow(client, db_session):
    seed_user(db_session, "member.one@x.org")

    csrf = login(client, "member.one@x.org")
    res = client.post("/api/auth/logout", headers={"X-CSRF-Token": csrf})
    assert res.status_code == 200

    res = client.get("/api/auth/me")
    assert res.status_code == 401
    assert db_session.query(AuthSession).count() == 0


def test_me_reports_identity(client, db_session):
    user = seed_user(db_session, "leader.one@x.org", role="leader", name="Leader One")
    login(client, "Leader.One@X.org ")

    res = client.get("/api/auth/me")
    data = res.json()
    assert data["user"]["id"] == str(user.id)
    assert data["user"]["name"] == "Leader One"
    assert data["identity"] == {
        "user_id": str(user.id),
        "is_impersonating": False,
        "authorization_role": "leader",
        "data_scope_role": "leader",
    }
    assert data["impersonating"] is None


def test_wrong_password_and_unknown_email_look_the_same(client, db_session):
    seed_user(db_session, "member.one@x.org")

    wrong = client.post("/api/auth/login", json={"email": "member.one@x.org", "password": "nope-nope"})
    unknown = client.post("/api/auth/login", json={"email": "ghost@x.org", "password": "nope-nope"})
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json()


def test_disabled_account_cannot_login(client, db_session):
    user = seed_user(db_session, "gone@x.org")
    user.active = False
    db_session.commit()

    res = client.post("/api/auth/login", json={"email": "gone@x.org", "password": "Secret123!"})
    assert res.status_code == 403


def test_disabled_account_loses_existing_session(client, db_session):
    user = seed_user(db_session, "member.one@x.org")
    login(client, "member.one@x.org")

    user.active = False
    db_session.commit()
    assert client.get("/api/auth/me").status_code == 401


@pytest.mark.parametrize(
    "path",
    [
        "/api/auth/me",
        "/api/users/visible?category=attendance",
        "/api/attendance",
        "/api/attendance/stats",
        "/api/progress",
        "/api/evaluations",
        "/api/user/profile",
        "/api/groups",
        "/api/admin/impersonate",
        "/api/admin/users",
        "/api/pdf/anything",
    ],
)
def test_reads_require_a_session(client, path):
    res = client.get(path)
    assert res.status_code == 401


def test_writes_require_csrf_token(client, db_session):
    seed_user(db_session, "member.one@x.org")
    csrf = login(client, "member.one@x.org")
    body = {"date": "2026-10-19", "days": {"monday": True}}

    assert client.post("/api/attendance", json=body).status_code == 403
    assert client.post("/api/attendance", json=body, headers={"X-CSRF-Token": "forged"}).status_code == 403
    assert client.post("/api/attendance", json=body, headers={"X-CSRF-Token": csrf}).status_code == 200


def test_csrf_token_is_per_session(client, other_client, db_session):
    seed_user(db_session, "member.one@x.org")
    first = login(client, "member.one@x.org")
    second = login(other_client, "member.one@x.org")
    assert first != second

    res = client.post("/api/auth/logout", headers={"X-CSRF-Token": second})
    assert res.status_code == 403


def test_bootstrap_admin_only_once(client):
    body = {"email": "root@x.org", "name": "Root", "password": "Secret123!"}
    res = client.post("/api/admin/bootstrap", json=body)
    assert res.status_code == 200
    assert res.json()["user"]["role"] == "admin"

    res = client.post("/api/admin/bootstrap", json={**body, "email": "again@x.org"})
    assert res.status_code == 403

    login(client, "root@x.org")


def test_bootstrap_rejects_short_password(client):
    res = client.post("/api/admin/bootstrap", json={"email": "root@x.org", "name": "Root", "password": "short"})
    assert res.status_code == 400


def test_admin_user_management(client, db_session):
    admin = seed_user(db_session, "admin@x.org", role="admin")
    csrf = login(client, "admin@x.org")
    headers = {"X-CSRF-Token": csrf}

    res = client.post(
        "/api/admin/users",
        json={"email": "New@X.org", "name": "New Person", "password": "Secret123!", "role": "leader"},
        headers=headers,
    )
    assert res.status_code == 200
    new_id = res.json()["user"]["id"]
    assert res.json()["user"]["email"] == "new@x.org"

    dup = client.post(
        "/api/admin/users",
        json={"email": "new@x.org", "name": "Dup", "password": "Secret123!"},
        headers=headers,
    )
    assert dup.status_code == 409

    res = client.get("/api/admin/users", params={"role": "leader"})
    assert [item["id"] for item in res.json()["items"]] == [new_id]

    res = client.patch(f"/api/admin/users/{new_id}", json={"active": "false"}, headers=headers)
    assert res.status_code == 400
    assert client.get("/api/admin/users", params={"role": "leader"}).json()["items"][0]["active"] is True

    res = client.patch(f"/api/admin/users/{new_id}", json={"active": False}, headers=headers)
    assert res.status_code == 200
    assert res.json()["user"]["active"] is False

    res = client.patch(f"/api/admin/users/{admin.id}", json={"role": "member"}, headers=headers)
    assert res.status_code == 400
    res = client.patch(f"/api/admin/users/{admin.id}", json={"active": False}, headers=headers)
    assert res.status_code == 400


def test_admin_endpoints_forbidden_for_others(client, db_session):
    seed_user(db_session, "leader.one@x.org", role="leader")
    csrf = login(client, "leader.one@x.org")

    assert client.get("/api/admin/users").status_code == 403
    assert client.get("/api/admin/stats").status_code == 403
    assert client.get("/api/metrics").status_code == 403
    res = client.post("/api/admin/groups", json={"name": "G"}, headers={"X-CSRF-Token": csrf})
    assert res.status_code == 403
