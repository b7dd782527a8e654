"""Authorization gate, ownership predicates and status state machines.

The gate functions raise :class:`~jobboard.errors.Unauthorized` or
:class:`~jobboard.errors.Forbidden`. The ``can_*`` predicates never raise;
callers turn a ``False`` into a ``Forbidden`` before touching the store.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from enum import StrEnum
from typing import Any

from jobboard.errors import Forbidden, InvalidTransition, Unauthorized, ValidationError
from jobboard.models import (
    Application,
    ApplicationStatus,
    Company,
    Job,
    JobStatus,
    Role,
    User,
)
from jobboard.store import JobBoardStore

APPLICATION_TRANSITIONS: dict[ApplicationStatus, frozenset[ApplicationStatus]] = {
    ApplicationStatus.PENDING: frozenset(
        {
            ApplicationStatus.REVIEWED,
            ApplicationStatus.INTERVIEW,
            ApplicationStatus.REJECTED,
            ApplicationStatus.ACCEPTED,
        }
    ),
    ApplicationStatus.REVIEWED: frozenset(
        {ApplicationStatus.INTERVIEW, ApplicationStatus.REJECTED, ApplicationStatus.ACCEPTED}
    ),
    ApplicationStatus.INTERVIEW: frozenset(
        {ApplicationStatus.REJECTED, ApplicationStatus.ACCEPTED}
    ),
    ApplicationStatus.REJECTED: frozenset(),
    ApplicationStatus.ACCEPTED: frozenset(),
}
TERMINAL_APPLICATION_STATUSES = frozenset(
    status for status, targets in APPLICATION_TRANSITIONS.items() if not targets
)

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.DRAFT: frozenset({JobStatus.ACTIVE, JobStatus.CLOSED}),
    JobStatus.ACTIVE: frozenset({JobStatus.DRAFT, JobStatus.CLOSED}),
    JobStatus.CLOSED: frozenset(),
}

EMPLOYER_APPLICATION_FIELDS = frozenset({"status"})
APPLICANT_APPLICATION_FIELDS = frozenset({"resume_url", "cover_letter"})


class ApplicationAction(StrEnum):
    WITHDRAW = "withdraw"
    EDIT = "edit"
    UPDATE_STATUS = "update_status"


# Authorization gate


def require_authenticated(principal: User | None) -> User:
    if principal is None:
        raise Unauthorized("Unauthorized")
    if not principal.active:
        raise Forbidden("Account is deactivated")
    return principal


def require_role(allowed_roles: Iterable[Role | str]) -> Callable[[User | None], User]:
    allowed = frozenset(Role(role) for role in allowed_roles)

    def check(principal: User | None) -> User:
        user = require_authenticated(principal)
        if user.role not in allowed:
            raise Forbidden("Forbidden")
        return user

    return check


# Ownership


def can_mutate_company(user: User, company: Company) -> bool:
    return user.role == Role.ADMIN or company.owner_id == user.id


def can_mutate_job(user: User, job: Job, store: JobBoardStore) -> bool:
    if user.role == Role.ADMIN:
        return True
    company = store.get_company(job.company_id)
    if company is None:
        return False
    return can_mutate_company(user, company)


def can_mutate_application(
    user: User,
    application: Application,
    action: ApplicationAction | str,
    store: JobBoardStore,
) -> bool:
    if user.role == Role.ADMIN:
        return True
    action = ApplicationAction(action)
    if action in (ApplicationAction.WITHDRAW, ApplicationAction.EDIT):
        return user.role == Role.JOB_SEEKER and application.user_id == user.id
    if user.role != Role.EMPLOYER:
        return False
    job = store.get_job(application.job_id)
    if job is None:
        return False
    return can_mutate_job(user, job, store)


def can_view_application(user: User, application: Application, store: JobBoardStore) -> bool:
    if application.user_id == user.id:
        return True
    return can_mutate_application(user, application, ApplicationAction.UPDATE_STATUS, store)


def is_job_open(job: Job, *, require_approval: bool) -> bool:
    return job.status == JobStatus.ACTIVE and (job.is_approved or not require_approval)


def can_view_job(
    user: User | None,
    job: Job,
    store: JobBoardStore,
    *,
    require_approval: bool,
) -> bool:
    if is_job_open(job, require_approval=require_approval):
        return True
    if user is None:
        return False
    return can_mutate_job(user, job, store)


# Field whitelists


def ensure_employer_fields(changes: dict[str, Any]) -> None:
    if set(changes) - EMPLOYER_APPLICATION_FIELDS:
        raise ValidationError("Employers can only update the application status")


def ensure_applicant_fields(changes: dict[str, Any]) -> None:
    if "status" in changes:
        raise Forbidden("Applicants cannot change the application status")
    if set(changes) - APPLICANT_APPLICATION_FIELDS:
        raise ValidationError("Applicants can only update the resume and cover letter")


# State machines


def can_transition_application(current: ApplicationStatus, target: ApplicationStatus) -> bool:
    if current in TERMINAL_APPLICATION_STATUSES:
        return False
    return current == target or target in APPLICATION_TRANSITIONS[current]


def ensure_application_transition(current: ApplicationStatus, target: ApplicationStatus) -> None:
    if not can_transition_application(current, target):
        raise InvalidTransition(f"Cannot move application from {current} to {target}")


def ensure_withdrawable(application: Application) -> None:
    if application.status != ApplicationStatus.PENDING:
        raise InvalidTransition("Only pending applications can be withdrawn")


def can_transition_job(current: JobStatus, target: JobStatus) -> bool:
    return current == target or target in JOB_TRANSITIONS[current]


def ensure_job_transition(current: JobStatus, target: JobStatus) -> None:
    if not can_transition_job(current, target):
        raise InvalidTransition(f"Cannot move job from {current} to {target}")
