from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from jobboard.models import Role

pytestmark = pytest.mark.integration


@pytest.fixture
def board(account, create_company, create_job) -> dict:
    employer = account("olivia", Role.EMPLOYER)
    company = create_company(employer.headers)
    job = create_job(employer.headers, company["id"])
    return {
        "employer": employer,
        "seeker": account("sam"),
        "other_seeker": account("tina"),
        "rival": account("rival", Role.EMPLOYER),
        "admin": account("root", Role.ADMIN),
        "company": company,
        "job": job,
    }


def apply(client: TestClient, board: dict, **fields) -> dict:
    response = client.post(
        "/applications",
        headers=board["seeker"].headers,
        json={"job_id": board["job"]["id"], **fields},
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_apply_creates_pending_application(client: TestClient, board: dict) -> None:
    application = apply(client, board, cover_letter="Hello")

    assert application["status"] == "pending"
    assert application["user_id"] == board["seeker"].id
    assert application["job"]["id"] == board["job"]["id"]
    assert application["user"]["username"] == "sam"
    assert "password" not in application["user"]


def test_duplicate_application_is_rejected(client: TestClient, board: dict) -> None:
    apply(client, board)

    duplicate = client.post(
        "/applications",
        headers=board["seeker"].headers,
        json={"job_id": board["job"]["id"]},
    )
    assert duplicate.status_code == 400
    assert duplicate.json() == {"detail": "You have already applied for this job"}


def test_only_job_seekers_apply_to_open_jobs(client: TestClient, board: dict) -> None:
    by_employer = client.post(
        "/applications",
        headers=board["employer"].headers,
        json={"job_id": board["job"]["id"]},
    )
    assert by_employer.status_code == 403

    missing = client.post(
        "/applications",
        headers=board["seeker"].headers,
        json={"job_id": 999},
    )
    assert missing.status_code == 404

    client.put(
        f"/jobs/{board['job']['id']}",
        headers=board["employer"].headers,
        json={"status": "closed"},
    )
    closed = client.post(
        "/applications",
        headers=board["seeker"].headers,
        json={"job_id": board["job"]["id"]},
    )
    assert closed.status_code == 404


def test_listing_is_scoped_by_role(client: TestClient, board: dict) -> None:
    application = apply(client, board)

    def ids(headers: dict[str, str], **params) -> list[int]:
        response = client.get("/applications", headers=headers, params=params)
        assert response.status_code == 200
        return [item["id"] for item in response.json()]

    assert ids(board["seeker"].headers) == [application["id"]]
    assert ids(board["other_seeker"].headers) == []
    assert ids(board["employer"].headers) == [application["id"]]
    assert ids(board["rival"].headers) == []
    assert ids(board["admin"].headers) == [application["id"]]
    assert ids(board["employer"].headers, status="reviewed") == []
    assert ids(board["admin"].headers, job_id=board["job"]["id"]) == [application["id"]]
    assert client.get("/applications").status_code == 401


def test_single_application_visibility(client: TestClient, board: dict) -> None:
    application = apply(client, board)
    path = f"/applications/{application['id']}"

    assert client.get(path, headers=board["seeker"].headers).status_code == 200
    assert client.get(path, headers=board["employer"].headers).status_code == 200
    assert client.get(path, headers=board["admin"].headers).status_code == 200
    assert client.get(path, headers=board["other_seeker"].headers).status_code == 403
    assert client.get(path, headers=board["rival"].headers).status_code == 403
    assert client.get("/applications/999", headers=board["admin"].headers).status_code == 404


def test_employer_moves_application_through_pipeline(client: TestClient, board: dict) -> None:
    application = apply(client, board)
    path = f"/applications/{application['id']}"
    headers = board["employer"].headers

    for status in ("reviewed", "interview", "accepted"):
        response = client.put(path, headers=headers, json={"status": status})
        assert response.status_code == 200, response.text
        assert response.json()["status"] == status

    backwards = client.put(path, headers=headers, json={"status": "pending"})
    assert backwards.status_code == 400
    assert client.get(path, headers=headers).json()["status"] == "accepted"


def test_terminal_application_cannot_change(client: TestClient, board: dict) -> None:
    application = apply(client, board)
    path = f"/applications/{application['id']}"
    headers = board["employer"].headers

    assert client.put(path, headers=headers, json={"status": "rejected"}).status_code == 200
    assert client.put(path, headers=headers, json={"status": "rejected"}).status_code == 400
    assert client.put(path, headers=headers, json={"status": "accepted"}).status_code == 400


def test_employer_may_only_touch_status(client: TestClient, board: dict) -> None:
    application = apply(client, board)
    path = f"/applications/{application['id']}"

    mixed = client.put(
        path,
        headers=board["employer"].headers,
        json={"status": "reviewed", "cover_letter": "rewritten"},
    )
    assert mixed.status_code == 400

    rival = client.put(path, headers=board["rival"].headers, json={"status": "reviewed"})
    assert rival.status_code == 403
    assert client.get(path, headers=board["seeker"].headers).json()["status"] == "pending"


def test_applicant_edits_documents_but_not_status(client: TestClient, board: dict) -> None:
    application = apply(client, board)
    path = f"/applications/{application['id']}"

    edited = client.put(
        path,
        headers=board["seeker"].headers,
        json={"cover_letter": "Updated letter", "resume_url": "https://cv.example.com/sam"},
    )
    assert edited.status_code == 200
    assert edited.json()["cover_letter"] == "Updated letter"

    self_accept = client.put(path, headers=board["seeker"].headers, json={"status": "accepted"})
    assert self_accept.status_code == 403

    stranger = client.put(
        path,
        headers=board["other_seeker"].headers,
        json={"cover_letter": "Mine now"},
    )
    assert stranger.status_code == 403
    assert client.put(path, headers=board["seeker"].headers, json={}).status_code == 400


def test_withdraw_only_while_pending(client: TestClient, board: dict) -> None:
    application = apply(client, board)
    path = f"/applications/{application['id']}"

    assert client.delete(path, headers=board["other_seeker"].headers).status_code == 403
    assert client.delete(path, headers=board["employer"].headers).status_code == 403

    client.put(path, headers=board["employer"].headers, json={"status": "interview"})
    blocked = client.delete(path, headers=board["seeker"].headers)
    assert blocked.status_code == 400
    assert blocked.json() == {"detail": "Only pending applications can be withdrawn"}

    assert client.delete(path, headers=board["admin"].headers).status_code == 204
    assert client.get(path, headers=board["admin"].headers).status_code == 404


def test_pending_application_withdrawal(client: TestClient, board: dict) -> None:
    application = apply(client, board)
    path = f"/applications/{application['id']}"

    withdrawn = client.delete(path, headers=board["seeker"].headers)
    assert withdrawn.status_code == 204
    assert withdrawn.headers.get("x-audit-event-id")
    assert client.get("/applications", headers=board["seeker"].headers).json() == []
    again = client.post(
        "/applications",
        headers=board["seeker"].headers,
        json={"job_id": board["job"]["id"]},
    )
    assert again.status_code == 201
