from __future__ import annotations

from typing import Any, NamedTuple

import pytest
from fastapi.testclient import TestClient
from jobboard.main import create_app
from jobboard.models import Role
from jobboard.security import hash_password
from jobboard.store import JobBoardStore

DEFAULT_PASSWORD = "correct-horse-battery"


class Account(NamedTuple):
    id: int
    headers: dict[str, str]


@pytest.fixture
def store() -> JobBoardStore:
    return JobBoardStore()


@pytest.fixture
def client(store: JobBoardStore):
    app = create_app(store=store, require_job_approval=False, session_ttl_seconds=3600)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def account(store: JobBoardStore):
    def _account(username: str, role: Role = Role.JOB_SEEKER, *, active: bool = True) -> Account:
        user = store.create_user(
            {
                "username": username,
                "password": hash_password(DEFAULT_PASSWORD),
                "email": f"{username}@example.com",
                "first_name": username.title(),
                "last_name": "Tester",
                "role": role,
                "active": active,
            }
        )
        token, _ = store.create_session(user.id, ttl_seconds=3600)
        return Account(user.id, {"Authorization": f"Bearer {token}"})

    return _account


@pytest.fixture
def create_company(client: TestClient):
    def _create(headers: dict[str, str], **fields: Any) -> dict[str, Any]:
        response = client.post("/companies", headers=headers, json={"name": "Acme", **fields})
        assert response.status_code == 201, response.text
        return response.json()

    return _create


@pytest.fixture
def create_job(client: TestClient):
    def _create(headers: dict[str, str], company_id: int, **fields: Any) -> dict[str, Any]:
        payload = {
            "title": "Backend Engineer",
            "description": "Build Python APIs",
            "location": "Berlin",
            "type": "full-time",
            "company_id": company_id,
            **fields,
        }
        response = client.post("/jobs", headers=headers, json=payload)
        assert response.status_code == 201, response.text
        return response.json()

    return _create
