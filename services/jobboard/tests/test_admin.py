from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from jobboard.models import Role

pytestmark = pytest.mark.integration


@pytest.fixture
def admin(account):
    return account("root", Role.ADMIN)


def test_admin_routes_are_gated(client: TestClient, account) -> None:
    employer = account("olivia", Role.EMPLOYER)

    assert client.get("/admin/users").status_code == 401
    assert client.get("/admin/users", headers=employer.headers).status_code == 403
    assert client.get("/admin/audit-events", headers=employer.headers).status_code == 403


def test_admin_lists_users_with_filters(client: TestClient, account, admin) -> None:
    account("olivia", Role.EMPLOYER)
    account("sam")
    account("dormant", active=False)

    everyone = client.get("/admin/users", headers=admin.headers)
    assert everyone.status_code == 200
    assert [user["username"] for user in everyone.json()] == ["root", "olivia", "sam", "dormant"]
    assert all("password" not in user for user in everyone.json())

    seekers = client.get("/admin/users", headers=admin.headers, params={"role": "job_seeker"})
    assert [user["username"] for user in seekers.json()] == ["sam", "dormant"]

    inactive = client.get("/admin/users", headers=admin.headers, params={"active": "false"})
    assert [user["username"] for user in inactive.json()] == ["dormant"]


def test_admin_reads_and_updates_user(client: TestClient, account, admin) -> None:
    seeker = account("sam")

    detail = client.get(f"/admin/users/{seeker.id}", headers=admin.headers)
    assert detail.status_code == 200
    assert detail.json()["email"] == "sam@example.com"
    assert client.get("/admin/users/999", headers=admin.headers).status_code == 404

    promoted = client.put(
        f"/admin/users/{seeker.id}",
        headers=admin.headers,
        json={"role": "employer"},
    )
    assert promoted.status_code == 200
    assert promoted.json()["role"] == "employer"
    assert promoted.headers.get("x-audit-event-id")

    rejected = client.put(
        f"/admin/users/{seeker.id}",
        headers=admin.headers,
        json={"password": "new-password"},
    )
    assert rejected.status_code == 400


def test_deactivation_revokes_sessions(client: TestClient, account, admin) -> None:
    seeker = account("sam")

    response = client.put(
        f"/admin/users/{seeker.id}",
        headers=admin.headers,
        json={"active": False},
    )
    assert response.status_code == 200
    assert response.json()["active"] is False
    assert client.get("/auth/user", headers=seeker.headers).status_code == 401


def test_admin_deletes_user_without_cascade(
    client: TestClient, account, admin, create_company
) -> None:
    owner = account("olivia", Role.EMPLOYER)
    company = create_company(owner.headers)

    assert client.delete(f"/admin/users/{owner.id}", headers=admin.headers).status_code == 204
    assert client.delete(f"/admin/users/{owner.id}", headers=admin.headers).status_code == 404
    assert client.get(f"/companies/{company['id']}").json()["owner_id"] == owner.id
    assert client.get("/auth/user", headers=owner.headers).status_code == 401


def test_approving_unknown_job_is_not_found(client: TestClient, admin) -> None:
    response = client.put("/admin/jobs/77/approve", headers=admin.headers)
    assert response.status_code == 404
    assert response.json() == {"detail": "Job not found"}


def test_audit_events_record_outcomes(client: TestClient, account, admin) -> None:
    seeker = account("sam")
    employer = account("olivia", Role.EMPLOYER)

    denied = client.post("/companies", headers=seeker.headers, json={"name": "Nope"})
    created = client.post("/companies", headers=employer.headers, json={"name": "Acme"})
    client.post("/companies", json={"name": "Anonymous"})

    assert denied.status_code == 403
    assert denied.headers.get("x-audit-event-id")
    assert created.status_code == 201

    events = client.get(
        "/admin/audit-events",
        headers=admin.headers,
        params={"action": "company_create"},
    )
    assert events.status_code == 200
    body = events.json()
    assert [event["status"] for event in body] == ["unauthorized", "ok", "forbidden"]
    assert body[1]["actor_id"] == employer.id
    assert body[2]["actor_id"] == seeker.id
    assert body[2]["path"] == "/companies"
    assert body[0]["actor_id"] is None

    limited = client.get(
        "/admin/audit-events",
        headers=admin.headers,
        params={"limit": 1, "status": "forbidden"},
    )
    assert [event["id"] for event in limited.json()] == [int(denied.headers["x-audit-event-id"])]


def test_audit_event_limit_is_bounded(client: TestClient, admin) -> None:
    response = client.get("/admin/audit-events", headers=admin.headers, params={"limit": 0})
    assert response.status_code == 400
