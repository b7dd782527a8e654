from __future__ import annotations

import re
import threading
from collections import deque
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from common.utils import normalize_whitespace, now_utc_iso, parse_iso_datetime
from pydantic import ValidationError as PydanticValidationError

from jobboard.errors import Conflict, NotFound, ValidationError
from jobboard.models import (
    ENTITY_TYPES,
    Application,
    AuditEvent,
    Company,
    Entity,
    EntityKind,
    Job,
    Profile,
    SavedJob,
    Session,
    User,
)
from jobboard.security import generate_session_token, hash_token

PROTECTED_FIELDS = frozenset({"id", "created_at", "updated_at"})
ENTITY_LABELS = {
    EntityKind.USERS: "User",
    EntityKind.COMPANIES: "Company",
    EntityKind.JOBS: "Job",
    EntityKind.APPLICATIONS: "Application",
    EntityKind.SAVED_JOBS: "Saved job",
    EntityKind.PROFILES: "Profile",
}
DEFAULT_AUDIT_LOG_SIZE = 10_000
SALARY_AMOUNT_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*([kK])?")


def describe_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "payload"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)


def matches_filters(entity: Entity, filters: dict[str, Any]) -> bool:
    for field_name, expected in filters.items():
        if expected is None:
            continue
        actual = getattr(entity, field_name)
        if field_name == "skills":
            wanted = {str(skill).strip().lower() for skill in expected if str(skill).strip()}
            if not wanted:
                continue
            if not wanted & {skill.lower() for skill in actual}:
                return False
        elif actual != expected:
            return False
    return True


def salary_ceiling(job: Job) -> int | None:
    known = [value for value in (job.salary_min, job.salary_max) if value is not None]
    if known:
        return max(known)
    if not job.salary:
        return None
    amounts = []
    for number, thousands in SALARY_AMOUNT_PATTERN.findall(job.salary.replace(",", "")):
        amount = float(number)
        if thousands:
            amount *= 1000
        amounts.append(int(amount))
    return max(amounts) if amounts else None


def meets_min_salary(job: Job, min_salary: int) -> bool:
    # Postings without any salary data stay listed.
    ceiling = salary_ceiling(job)
    return ceiling is None or ceiling >= min_salary


def matches_search(job: Job, search: str) -> bool:
    needle = normalize_whitespace(search).lower()
    if not needle:
        return True
    return any(needle in value.lower() for value in (job.title, job.description, job.location))


class JobBoardStore:
    """In-memory entity store shared by every request handler.

    Each collection is a dict keyed by id with its own counter; ids start at 1
    and are never handed out twice, even after deletes. All public methods take
    the store lock, so compound checks such as "no application for this
    (user, job) pair yet, then insert" are atomic.
    """

    def __init__(self, *, audit_log_size: int = DEFAULT_AUDIT_LOG_SIZE) -> None:
        self._lock = threading.RLock()
        self._collections: dict[EntityKind, dict[int, Entity]] = {kind: {} for kind in EntityKind}
        self._counters: dict[EntityKind, int] = {kind: 0 for kind in EntityKind}
        self._sessions: dict[str, Session] = {}
        self._audit_events: deque[AuditEvent] = deque(maxlen=audit_log_size)
        self._audit_counter = 0

    # Generic CRUD

    def get(self, kind: EntityKind, entity_id: int) -> Entity | None:
        with self._lock:
            return self._collections[kind].get(entity_id)

    def get_or_raise(self, kind: EntityKind, entity_id: int) -> Entity:
        entity = self.get(kind, entity_id)
        if entity is None:
            raise NotFound(f"{ENTITY_LABELS[kind]} not found")
        return entity

    def find(self, kind: EntityKind, **filters: Any) -> list[Entity]:
        model_type = ENTITY_TYPES[kind]
        unknown = sorted(set(filters) - set(model_type.model_fields))
        if unknown:
            raise ValidationError(f"Unknown filter field(s): {', '.join(unknown)}")
        with self._lock:
            entities = list(self._collections[kind].values())
        return [entity for entity in entities if matches_filters(entity, filters)]

    def create(self, kind: EntityKind, fields: dict[str, Any]) -> Entity:
        with self._lock:
            now = now_utc_iso()
            data = {key: value for key, value in fields.items() if key not in PROTECTED_FIELDS}
            data["id"] = self._counters[kind] + 1
            data["created_at"] = now
            if "updated_at" in ENTITY_TYPES[kind].model_fields:
                data["updated_at"] = now
            entity = self._build(kind, data)
            self._counters[kind] = entity.id
            self._collections[kind][entity.id] = entity
            return entity

    def update(self, kind: EntityKind, entity_id: int, changes: dict[str, Any]) -> Entity:
        with self._lock:
            current = self.get_or_raise(kind, entity_id)
            data = current.model_dump()
            data.update(
                {key: value for key, value in changes.items() if key not in PROTECTED_FIELDS}
            )
            if "updated_at" in ENTITY_TYPES[kind].model_fields:
                data["updated_at"] = now_utc_iso()
            entity = self._build(kind, data)
            self._collections[kind][entity_id] = entity
            return entity

    def delete(self, kind: EntityKind, entity_id: int) -> bool:
        with self._lock:
            return self._collections[kind].pop(entity_id, None) is not None

    def _build(self, kind: EntityKind, data: dict[str, Any]) -> Entity:
        try:
            return ENTITY_TYPES[kind].model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(describe_validation_error(exc)) from exc

    # Users

    def get_user(self, user_id: int) -> User | None:
        return self.get(EntityKind.USERS, user_id)

    def get_user_by_username(self, username: str) -> User | None:
        wanted = username.strip().lower()
        with self._lock:
            return next(
                (
                    user
                    for user in self._collections[EntityKind.USERS].values()
                    if user.username.lower() == wanted
                ),
                None,
            )

    def get_user_by_email(self, email: str) -> User | None:
        wanted = email.strip().lower()
        with self._lock:
            return next(
                (
                    user
                    for user in self._collections[EntityKind.USERS].values()
                    if user.email.lower() == wanted
                ),
                None,
            )

    def list_users(self, *, role: str | None = None, active: bool | None = None) -> list[User]:
        return self.find(EntityKind.USERS, role=role, active=active)

    def create_user(self, fields: dict[str, Any]) -> User:
        with self._lock:
            if self.get_user_by_username(str(fields.get("username", ""))) is not None:
                raise Conflict("Username already exists")
            if self.get_user_by_email(str(fields.get("email", ""))) is not None:
                raise Conflict("Email already registered")
            return self.create(EntityKind.USERS, fields)

    def update_user(self, user_id: int, changes: dict[str, Any]) -> User:
        with self._lock:
            if changes.get("email"):
                existing = self.get_user_by_email(str(changes["email"]))
                if existing is not None and existing.id != user_id:
                    raise Conflict("Email already registered")
            if changes.get("username"):
                existing = self.get_user_by_username(str(changes["username"]))
                if existing is not None and existing.id != user_id:
                    raise Conflict("Username already exists")
            return self.update(EntityKind.USERS, user_id, changes)

    def delete_user(self, user_id: int) -> bool:
        with self._lock:
            deleted = self.delete(EntityKind.USERS, user_id)
            if deleted:
                self.revoke_user_sessions(user_id)
            return deleted

    # Companies

    def get_company(self, company_id: int) -> Company | None:
        return self.get(EntityKind.COMPANIES, company_id)

    def list_companies(self) -> list[Company]:
        return self.find(EntityKind.COMPANIES)

    def companies_owned_by(self, user_id: int) -> list[Company]:
        return self.find(EntityKind.COMPANIES, owner_id=user_id)

    # Jobs

    def get_job(self, job_id: int) -> Job | None:
        return self.get(EntityKind.JOBS, job_id)

    def search_jobs(
        self,
        *,
        search: str | None = None,
        min_salary: int | None = None,
        **filters: Any,
    ) -> list[Job]:
        jobs = self.find(EntityKind.JOBS, **filters)
        if search:
            jobs = [job for job in jobs if matches_search(job, search)]
        if min_salary is not None:
            jobs = [job for job in jobs if meets_min_salary(job, min_salary)]
        return jobs

    def jobs_for_companies(self, company_ids: Iterable[int]) -> list[Job]:
        wanted = set(company_ids)
        with self._lock:
            return [
                job
                for job in self._collections[EntityKind.JOBS].values()
                if job.company_id in wanted
            ]

    # Applications

    def get_application(self, application_id: int) -> Application | None:
        return self.get(EntityKind.APPLICATIONS, application_id)

    def create_application(self, fields: dict[str, Any]) -> Application:
        with self._lock:
            duplicates = self.find(
                EntityKind.APPLICATIONS,
                user_id=fields.get("user_id"),
                job_id=fields.get("job_id"),
            )
            if duplicates:
                raise Conflict("You have already applied for this job")
            return self.create(EntityKind.APPLICATIONS, fields)

    def list_applications(self, **filters: Any) -> list[Application]:
        return self.find(EntityKind.APPLICATIONS, **filters)

    def applications_for_user(self, user_id: int) -> list[Application]:
        return self.find(EntityKind.APPLICATIONS, user_id=user_id)

    def applications_for_jobs(self, job_ids: Iterable[int]) -> list[Application]:
        wanted = set(job_ids)
        with self._lock:
            return [
                application
                for application in self._collections[EntityKind.APPLICATIONS].values()
                if application.job_id in wanted
            ]

    # Saved jobs

    def get_saved_job(self, saved_job_id: int) -> SavedJob | None:
        return self.get(EntityKind.SAVED_JOBS, saved_job_id)

    def find_saved_job(self, user_id: int, job_id: int) -> SavedJob | None:
        matches = self.find(EntityKind.SAVED_JOBS, user_id=user_id, job_id=job_id)
        return matches[0] if matches else None

    def create_saved_job(self, fields: dict[str, Any]) -> SavedJob:
        with self._lock:
            if self.find(
                EntityKind.SAVED_JOBS,
                user_id=fields.get("user_id"),
                job_id=fields.get("job_id"),
            ):
                raise Conflict("Job already saved")
            return self.create(EntityKind.SAVED_JOBS, fields)

    def saved_jobs_for_user(self, user_id: int) -> list[SavedJob]:
        return self.find(EntityKind.SAVED_JOBS, user_id=user_id)

    # Profiles

    def get_profile(self, user_id: int) -> Profile | None:
        matches = self.find(EntityKind.PROFILES, user_id=user_id)
        return matches[0] if matches else None

    def create_profile(self, user_id: int, fields: dict[str, Any]) -> Profile:
        with self._lock:
            if self.get_profile(user_id) is not None:
                raise Conflict("Profile already exists")
            return self.create(EntityKind.PROFILES, {**fields, "user_id": user_id})

    def upsert_profile(self, user_id: int, changes: dict[str, Any]) -> tuple[Profile, bool]:
        with self._lock:
            profile = self.get_profile(user_id)
            if profile is None:
                return self.create_profile(user_id, changes), True
            changes = {key: value for key, value in changes.items() if key != "user_id"}
            return self.update(EntityKind.PROFILES, profile.id, changes), False

    # Sessions

    def create_session(self, user_id: int, *, ttl_seconds: int) -> tuple[str, Session]:
        with self._lock:
            now = datetime.now(UTC)
            self._prune_expired_sessions(now)
            token = generate_session_token()
            session = Session(
                token_hash=hash_token(token),
                user_id=user_id,
                created_at=now.isoformat(),
                expires_at=(now + timedelta(seconds=ttl_seconds)).isoformat(),
            )
            self._sessions[session.token_hash] = session
            return token, session

    def resolve_session(self, token: str) -> User | None:
        with self._lock:
            token_hash = hash_token(token)
            session = self._sessions.get(token_hash)
            if session is None:
                return None
            expires_at = parse_iso_datetime(session.expires_at)
            if expires_at is None or expires_at <= datetime.now(UTC):
                del self._sessions[token_hash]
                return None
            user = self.get_user(session.user_id)
            if user is None:
                del self._sessions[token_hash]
            return user

    def active_session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _prune_expired_sessions(self, now: datetime) -> None:
        expired = [
            key
            for key, session in self._sessions.items()
            if (parse_iso_datetime(session.expires_at) or now) <= now
        ]
        for key in expired:
            del self._sessions[key]

    def revoke_session(self, token: str) -> bool:
        with self._lock:
            return self._sessions.pop(hash_token(token), None) is not None

    def revoke_user_sessions(self, user_id: int) -> int:
        with self._lock:
            stale = [key for key, session in self._sessions.items() if session.user_id == user_id]
            for key in stale:
                del self._sessions[key]
            return len(stale)

    # Audit log

    def record_audit_event(
        self,
        *,
        request_id: str | None,
        method: str,
        path: str,
        action: str,
        actor_id: int | None,
        status: str,
        message: str | None,
        source_ip: str | None,
    ) -> int:
        with self._lock:
            self._audit_counter += 1
            self._audit_events.append(
                AuditEvent(
                    id=self._audit_counter,
                    occurred_at=now_utc_iso(),
                    request_id=request_id,
                    method=method,
                    path=path,
                    action=action,
                    actor_id=actor_id,
                    status=status,
                    message=message,
                    source_ip=source_ip,
                )
            )
            return self._audit_counter

    def list_audit_events(
        self,
        *,
        limit: int,
        action: str | None = None,
        status: str | None = None,
    ) -> list[AuditEvent]:
        with self._lock:
            events = [
                event
                for event in reversed(self._audit_events)
                if (action is None or event.action == action)
                and (status is None or event.status == status)
            ]
        return events[:limit]
