"""Denormalised response views built from the store's foreign keys.

Missing references resolve to ``None``: deleting a company, job or user never
cascades, so orphaned rows are expected.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from jobboard.models import (
    Application,
    ApplicationView,
    Company,
    EntityKind,
    Job,
    JobView,
    PublicUser,
    SavedJob,
    SavedJobView,
    User,
)
from jobboard.store import JobBoardStore


def _public(user: User | None) -> PublicUser | None:
    return user.to_public() if user is not None else None


def attach_company(store: JobBoardStore, job: Job) -> JobView:
    return JobView(**job.model_dump(), company=store.get_company(job.company_id))


def attach_job_and_user(store: JobBoardStore, application: Application) -> ApplicationView:
    return ApplicationView(
        **application.model_dump(),
        job=store.get_job(application.job_id),
        user=_public(store.get_user(application.user_id)),
    )


def attach_job_and_company(store: JobBoardStore, saved_job: SavedJob) -> SavedJobView:
    job = store.get_job(saved_job.job_id)
    company = store.get_company(job.company_id) if job is not None else None
    return SavedJobView(**saved_job.model_dump(), job=job, company=company)


def _index(store: JobBoardStore, kind: EntityKind) -> dict[int, Any]:
    return {entity.id: entity for entity in store.find(kind)}


def attach_companies(store: JobBoardStore, jobs: Iterable[Job]) -> list[JobView]:
    companies: dict[int, Company] = _index(store, EntityKind.COMPANIES)
    return [JobView(**job.model_dump(), company=companies.get(job.company_id)) for job in jobs]


def attach_jobs_and_users(
    store: JobBoardStore,
    applications: Iterable[Application],
) -> list[ApplicationView]:
    jobs: dict[int, Job] = _index(store, EntityKind.JOBS)
    users: dict[int, User] = _index(store, EntityKind.USERS)
    return [
        ApplicationView(
            **application.model_dump(),
            job=jobs.get(application.job_id),
            user=_public(users.get(application.user_id)),
        )
        for application in applications
    ]


def attach_jobs_and_companies(
    store: JobBoardStore,
    saved_jobs: Iterable[SavedJob],
) -> list[SavedJobView]:
    jobs: dict[int, Job] = _index(store, EntityKind.JOBS)
    companies: dict[int, Company] = _index(store, EntityKind.COMPANIES)
    views = []
    for saved_job in saved_jobs:
        job = jobs.get(saved_job.job_id)
        company = companies.get(job.company_id) if job is not None else None
        views.append(SavedJobView(**saved_job.model_dump(), job=job, company=company))
    return views
