from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from collections import Counter, defaultdict
from contextlib import asynccontextmanager
from typing import Any

from common.utils import as_bool, now_utc_iso, split_csv
from fastapi import FastAPI, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from jobboard.errors import (
    Forbidden,
    JobBoardError,
    NotFound,
    Unauthorized,
    ValidationError,
)
from jobboard.models import (
    AdminUserUpdate,
    Application,
    ApplicationCreate,
    ApplicationStatus,
    ApplicationUpdate,
    ApplicationView,
    AuditEvent,
    AuthResponse,
    Company,
    CompanyCreate,
    CompanyUpdate,
    EntityKind,
    JobCreate,
    JobStatus,
    JobUpdate,
    JobView,
    LoginRequest,
    MetricsSnapshot,
    Profile,
    ProfileUpsert,
    PublicUser,
    RegisterRequest,
    Role,
    SavedJob,
    SavedJobCreate,
    SavedJobView,
    User,
    UserSelfUpdate,
)
from jobboard.policy import (
    ApplicationAction,
    can_mutate_application,
    can_mutate_company,
    can_mutate_job,
    can_view_application,
    can_view_job,
    ensure_applicant_fields,
    ensure_application_transition,
    ensure_employer_fields,
    ensure_job_transition,
    ensure_withdrawable,
    is_job_open,
    require_authenticated,
    require_role,
)
from jobboard.security import hash_password, parse_bearer_token, verify_password
from jobboard.store import JobBoardStore, matches_filters
from jobboard.views import (
    attach_companies,
    attach_company,
    attach_job_and_company,
    attach_job_and_user,
    attach_jobs_and_companies,
    attach_jobs_and_users,
)

LOGGER = logging.getLogger("jobboard.api")
DEFAULT_SESSION_TTL_SECONDS = 86_400
DEFAULT_ADMIN_EMAIL = "admin@example.com"
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
EMPLOYER_ROLES = (Role.EMPLOYER, Role.ADMIN)
STATUS_CLASSES = ("2xx", "3xx", "4xx", "5xx")


class MetricsStore:
    """Request counters keyed by route template, plus audit outcomes per action.

    Routes record status classes and latency; ``record_outcome`` is fed by the
    audit trail so ``/metrics`` shows e.g. how many ``job_create`` calls were
    forbidden versus accepted.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._routes: dict[str, Counter[str]] = defaultdict(Counter)
        self._latency_ms: dict[str, tuple[float, float]] = {}
        self._outcomes: dict[str, Counter[str]] = defaultdict(Counter)

    def observe(self, *, route: str, status_code: int, duration_ms: float) -> None:
        with self._lock:
            counts = self._routes[route]
            counts["count"] += 1
            counts[f"{status_code // 100}xx"] += 1
            total, worst = self._latency_ms.get(route, (0.0, 0.0))
            self._latency_ms[route] = (total + duration_ms, max(worst, duration_ms))

    def record_outcome(self, action: str, status: str) -> None:
        with self._lock:
            self._outcomes[action][status] += 1

    def snapshot(self, *, active_sessions: int) -> MetricsSnapshot:
        with self._lock:
            endpoints: dict[str, dict[str, float | int]] = {}
            for route, counts in self._routes.items():
                total, worst = self._latency_ms[route]
                endpoints[route] = {
                    "count": counts["count"],
                    **{status_class: counts[status_class] for status_class in STATUS_CLASSES},
                    "latency_ms_avg": round(total / counts["count"], 3),
                    "latency_ms_max": round(worst, 3),
                }
            requests = sum(counts["count"] for counts in self._routes.values())
            errors = sum(counts["4xx"] + counts["5xx"] for counts in self._routes.values())
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals={"requests": requests, "errors": errors},
                endpoints=endpoints,
                actions={action: dict(counts) for action, counts in self._outcomes.items()},
                active_sessions=active_sessions,
            )


def endpoint_path(request: Request) -> str:
    # Route templates keep /jobs/1 and /jobs/2 in one metrics bucket.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def bootstrap_admin(
    store: JobBoardStore,
    *,
    username: str,
    password: str,
    email: str,
) -> User | None:
    if store.get_user_by_username(username) is not None:
        return None
    user = store.create_user(
        {
            "username": username,
            "password": hash_password(password),
            "email": email,
            "first_name": "Site",
            "last_name": "Admin",
            "role": Role.ADMIN,
        }
    )
    LOGGER.info(json.dumps({"event": "admin_bootstrapped", "user_id": user.id}))
    return user


def create_app(
    *,
    store: JobBoardStore | None = None,
    session_ttl_seconds: int | None = None,
    require_job_approval: bool | None = None,
    admin_username: str | None = None,
    admin_password: str | None = None,
    admin_email: str | None = None,
) -> FastAPI:
    resolved_store = store if store is not None else JobBoardStore()
    resolved_ttl = (
        session_ttl_seconds
        if session_ttl_seconds is not None
        else int(os.getenv("JOBBOARD_SESSION_TTL_SECONDS", str(DEFAULT_SESSION_TTL_SECONDS)))
    )
    resolved_require_approval = (
        require_job_approval
        if require_job_approval is not None
        else as_bool(os.getenv("JOBBOARD_REQUIRE_JOB_APPROVAL"), default=True)
    )
    resolved_admin_username = (
        admin_username or os.getenv("JOBBOARD_ADMIN_USERNAME", "")
    ).strip() or None
    resolved_admin_password = admin_password or os.getenv("JOBBOARD_ADMIN_PASSWORD") or None
    resolved_admin_email = (
        admin_email or os.getenv("JOBBOARD_ADMIN_EMAIL", "")
    ).strip() or DEFAULT_ADMIN_EMAIL

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if resolved_admin_username and resolved_admin_password:
            await run_in_threadpool(
                bootstrap_admin,
                app.state.store,
                username=resolved_admin_username,
                password=resolved_admin_password,
                email=resolved_admin_email,
            )
        yield

    app = FastAPI(title="Job Board API", version="0.1.0", lifespan=lifespan)
    app.state.store = resolved_store
    app.state.metrics = MetricsStore()
    app.state.session_ttl_seconds = resolved_ttl
    app.state.require_job_approval = resolved_require_approval

    async def write_audit_event(
        request: Request,
        *,
        status: str,
        message: str | None = None,
    ) -> int | None:
        action = getattr(request.state, "audit_action", None)
        if action is None:
            return None
        request.app.state.metrics.record_outcome(action, status)
        return await run_in_threadpool(
            request.app.state.store.record_audit_event,
            request_id=getattr(request.state, "request_id", None),
            method=request.method,
            path=request.url.path,
            action=action,
            actor_id=getattr(request.state, "actor_id", None),
            status=status,
            message=message,
            source_ip=request.client.host if request.client else None,
        )

    async def audit_ok(request: Request, response: Response, message: str) -> None:
        event_id = await write_audit_event(request, status="ok", message=message)
        if event_id is not None:
            response.headers["x-audit-event-id"] = str(event_id)

    async def resolve_principal(request: Request) -> User | None:
        token = parse_bearer_token(request.headers.get("authorization"))
        if token is None:
            return None
        return await run_in_threadpool(request.app.state.store.resolve_session, token)

    async def authorize(
        request: Request,
        *,
        action: str,
        roles: tuple[Role, ...] | None = None,
    ) -> User:
        request.state.audit_action = action
        principal = await resolve_principal(request)
        if principal is not None:
            request.state.actor_id = principal.id
        if roles is None:
            return require_authenticated(principal)
        return require_role(roles)(principal)

    async def viewer(request: Request) -> User | None:
        principal = await resolve_principal(request)
        if principal is None or not principal.active:
            return None
        return principal

    @app.exception_handler(JobBoardError)
    async def handle_job_board_error(request: Request, exc: JobBoardError) -> JSONResponse:
        headers: dict[str, str] = {}
        if request.method in MUTATING_METHODS or isinstance(exc, (Unauthorized, Forbidden)):
            event_id = await write_audit_event(
                request,
                status=exc.audit_status,
                message=exc.message,
            )
            if event_id is not None:
                headers["x-audit-event-id"] = str(event_id)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message},
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "detail": "Invalid request payload",
                "errors": jsonable_encoder(exc.errors()),
            },
        )

    def finish_request(
        request: Request,
        *,
        status_code: int,
        started: float,
        error: Exception | None = None,
    ) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        request.app.state.metrics.observe(
            route=f"{request.method} {endpoint_path(request)}",
            status_code=status_code,
            duration_ms=duration_ms,
        )
        record: dict[str, Any] = {
            "event": "request_complete",
            "request_id": request.state.request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 3),
            "source_ip": request.client.host if request.client else None,
            "actor_id": getattr(request.state, "actor_id", None),
        }
        if error is None:
            LOGGER.info(json.dumps(record))
        else:
            record["error"] = str(error)
            LOGGER.exception(json.dumps(record))

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            finish_request(request, status_code=500, started=started, error=exc)
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        response.headers["x-request-id"] = request_id
        finish_request(request, status_code=response.status_code, started=started)
        return response

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "jobboard"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        active_sessions = await run_in_threadpool(request.app.state.store.active_session_count)
        return request.app.state.metrics.snapshot(active_sessions=active_sessions)

    # Auth

    @app.post("/auth/register", response_model=AuthResponse, status_code=201)
    async def register(
        payload: RegisterRequest,
        request: Request,
        response: Response,
    ) -> AuthResponse:
        request.state.audit_action = "user_register"
        if payload.role == Role.ADMIN:
            raise Forbidden("Admin accounts cannot be self-registered")
        store: JobBoardStore = request.app.state.store
        fields = payload.model_dump(exclude={"password"})
        fields["password"] = await run_in_threadpool(hash_password, payload.password)
        user = await run_in_threadpool(store.create_user, fields)
        request.state.actor_id = user.id
        token, session = await run_in_threadpool(
            store.create_session,
            user.id,
            ttl_seconds=request.app.state.session_ttl_seconds,
        )
        await audit_ok(request, response, f"user_id={user.id}; role={user.role}")
        return AuthResponse(token=token, expires_at=session.expires_at, user=user.to_public())

    @app.post("/auth/login", response_model=AuthResponse)
    async def login(payload: LoginRequest, request: Request, response: Response) -> AuthResponse:
        request.state.audit_action = "user_login"
        store: JobBoardStore = request.app.state.store
        user = await run_in_threadpool(store.get_user_by_username, payload.username)
        if user is None or not await run_in_threadpool(
            verify_password,
            payload.password,
            user.password,
        ):
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "login_rejected",
                        "request_id": getattr(request.state, "request_id", None),
                        "username": payload.username,
                    }
                )
            )
            raise Unauthorized("Invalid username or password")
        request.state.actor_id = user.id
        if not user.active:
            raise Forbidden("Account is deactivated")
        token, session = await run_in_threadpool(
            store.create_session,
            user.id,
            ttl_seconds=request.app.state.session_ttl_seconds,
        )
        await audit_ok(request, response, f"user_id={user.id}")
        return AuthResponse(token=token, expires_at=session.expires_at, user=user.to_public())

    @app.post("/auth/logout", status_code=204)
    async def logout(request: Request, response: Response) -> None:
        await authorize(request, action="user_logout")
        token = parse_bearer_token(request.headers.get("authorization"))
        await run_in_threadpool(request.app.state.store.revoke_session, token)
        await audit_ok(request, response, "session revoked")

    @app.get("/auth/user", response_model=PublicUser)
    async def current_user(request: Request) -> PublicUser:
        user = await authorize(request, action="current_user")
        return user.to_public()

    @app.put("/auth/user", response_model=PublicUser)
    async def update_current_user(
        payload: UserSelfUpdate,
        request: Request,
        response: Response,
    ) -> PublicUser:
        user = await authorize(request, action="user_self_update")
        changes = payload.changes()
        updated = await run_in_threadpool(request.app.state.store.update_user, user.id, changes)
        await audit_ok(request, response, f"user_id={user.id}; fields={','.join(changes)}")
        return updated.to_public()

    # Jobs

    @app.get("/jobs", response_model=list[JobView])
    async def list_jobs(
        request: Request,
        search: str | None = None,
        job_type: str | None = Query(default=None, alias="type"),
        experience_level: str | None = None,
        is_remote: bool | None = None,
        location: str | None = None,
        skills: str | None = None,
        company_id: int | None = None,
        status: JobStatus | None = None,
        min_salary: int | None = Query(default=None, ge=0),
    ) -> list[JobView]:
        return await run_in_threadpool(
            visible_jobs,
            request.app.state.store,
            await viewer(request),
            require_approval=request.app.state.require_job_approval,
            search=search,
            min_salary=min_salary,
            type=job_type,
            experience_level=experience_level,
            is_remote=is_remote,
            location=location,
            skills=split_csv(skills) or None,
            company_id=company_id,
            status=status,
        )

    @app.get("/jobs/{job_id}", response_model=JobView)
    async def get_job(job_id: int, request: Request) -> JobView:
        return await run_in_threadpool(
            visible_job,
            request.app.state.store,
            await viewer(request),
            job_id,
            require_approval=request.app.state.require_job_approval,
        )

    @app.post("/jobs", response_model=JobView, status_code=201)
    async def create_job(payload: JobCreate, request: Request, response: Response) -> JobView:
        user = await authorize(request, action="job_create", roles=EMPLOYER_ROLES)
        view = await run_in_threadpool(
            post_job,
            request.app.state.store,
            user,
            payload.model_dump(),
            require_approval=request.app.state.require_job_approval,
        )
        await audit_ok(request, response, f"job_id={view.id}; company_id={view.company_id}")
        return view

    @app.put("/jobs/{job_id}", response_model=JobView)
    async def update_job(
        job_id: int,
        payload: JobUpdate,
        request: Request,
        response: Response,
    ) -> JobView:
        user = await authorize(request, action="job_update", roles=EMPLOYER_ROLES)
        changes = payload.changes()
        view = await run_in_threadpool(edit_job, request.app.state.store, user, job_id, changes)
        await audit_ok(request, response, f"job_id={job_id}; fields={','.join(changes)}")
        return view

    @app.delete("/jobs/{job_id}", status_code=204)
    async def delete_job(job_id: int, request: Request, response: Response) -> None:
        user = await authorize(request, action="job_delete", roles=EMPLOYER_ROLES)
        await run_in_threadpool(remove_job, request.app.state.store, user, job_id)
        await audit_ok(request, response, f"job_id={job_id}")

    @app.get("/jobs/{job_id}/applications", response_model=list[ApplicationView])
    async def list_job_applications(job_id: int, request: Request) -> list[ApplicationView]:
        user = await authorize(request, action="job_applications_list", roles=EMPLOYER_ROLES)
        return await run_in_threadpool(
            applications_for_job,
            request.app.state.store,
            user,
            job_id,
        )

    # Companies

    @app.get("/companies", response_model=list[Company])
    async def list_companies(request: Request) -> list[Company]:
        return await run_in_threadpool(request.app.state.store.list_companies)

    @app.get("/companies/owner", response_model=list[Company])
    async def list_owned_companies(request: Request) -> list[Company]:
        user = await authorize(request, action="companies_owned")
        return await run_in_threadpool(request.app.state.store.companies_owned_by, user.id)

    @app.get("/companies/{company_id}", response_model=Company)
    async def get_company(company_id: int, request: Request) -> Company:
        return await run_in_threadpool(
            request.app.state.store.get_or_raise,
            EntityKind.COMPANIES,
            company_id,
        )

    @app.post("/companies", response_model=Company, status_code=201)
    async def create_company(
        payload: CompanyCreate,
        request: Request,
        response: Response,
    ) -> Company:
        user = await authorize(request, action="company_create", roles=EMPLOYER_ROLES)
        company = await run_in_threadpool(
            register_company,
            request.app.state.store,
            user,
            payload.model_dump(),
        )
        await audit_ok(
            request,
            response,
            f"company_id={company.id}; owner_id={company.owner_id}",
        )
        return company

    @app.put("/companies/{company_id}", response_model=Company)
    async def update_company(
        company_id: int,
        payload: CompanyUpdate,
        request: Request,
        response: Response,
    ) -> Company:
        user = await authorize(request, action="company_update", roles=EMPLOYER_ROLES)
        changes = payload.changes()
        company = await run_in_threadpool(
            edit_company,
            request.app.state.store,
            user,
            company_id,
            changes,
        )
        await audit_ok(request, response, f"company_id={company_id}; fields={','.join(changes)}")
        return company

    @app.delete("/companies/{company_id}", status_code=204)
    async def delete_company(company_id: int, request: Request, response: Response) -> None:
        user = await authorize(request, action="company_delete", roles=EMPLOYER_ROLES)
        await run_in_threadpool(remove_company, request.app.state.store, user, company_id)
        await audit_ok(request, response, f"company_id={company_id}")

    # Applications

    @app.get("/applications", response_model=list[ApplicationView])
    async def list_applications(
        request: Request,
        job_id: int | None = None,
        status: ApplicationStatus | None = None,
    ) -> list[ApplicationView]:
        user = await authorize(request, action="applications_list")
        return await run_in_threadpool(
            applications_visible_to,
            request.app.state.store,
            user,
            {"job_id": job_id, "status": status},
        )

    @app.get("/applications/{application_id}", response_model=ApplicationView)
    async def get_application(application_id: int, request: Request) -> ApplicationView:
        user = await authorize(request, action="application_read")
        return await run_in_threadpool(
            readable_application,
            request.app.state.store,
            user,
            application_id,
        )

    @app.post("/applications", response_model=ApplicationView, status_code=201)
    async def create_application(
        payload: ApplicationCreate,
        request: Request,
        response: Response,
    ) -> ApplicationView:
        user = await authorize(request, action="application_create", roles=(Role.JOB_SEEKER,))
        view = await run_in_threadpool(
            submit_application,
            request.app.state.store,
            user,
            payload.model_dump(),
            require_approval=request.app.state.require_job_approval,
        )
        await audit_ok(request, response, f"application_id={view.id}; job_id={view.job_id}")
        return view

    @app.put("/applications/{application_id}", response_model=ApplicationView)
    async def update_application(
        application_id: int,
        payload: ApplicationUpdate,
        request: Request,
        response: Response,
    ) -> ApplicationView:
        user = await authorize(request, action="application_update")
        view = await run_in_threadpool(
            edit_application,
            request.app.state.store,
            user,
            application_id,
            payload.changes(),
        )
        await audit_ok(
            request,
            response,
            f"application_id={application_id}; status={view.status}",
        )
        return view

    @app.delete("/applications/{application_id}", status_code=204)
    async def withdraw_application(
        application_id: int,
        request: Request,
        response: Response,
    ) -> None:
        user = await authorize(request, action="application_withdraw")
        await run_in_threadpool(
            remove_application,
            request.app.state.store,
            user,
            application_id,
        )
        await audit_ok(request, response, f"application_id={application_id}")

    # Profile

    @app.get("/profile", response_model=Profile)
    async def get_profile(request: Request) -> Profile:
        user = await authorize(request, action="profile_read")
        profile = await run_in_threadpool(request.app.state.store.get_profile, user.id)
        if profile is None:
            raise NotFound("Profile not found")
        return profile

    @app.post("/profile", response_model=Profile, status_code=201)
    async def create_profile(
        payload: ProfileUpsert,
        request: Request,
        response: Response,
    ) -> Profile:
        user = await authorize(request, action="profile_create", roles=(Role.JOB_SEEKER,))
        profile = await run_in_threadpool(
            request.app.state.store.create_profile,
            user.id,
            payload.changes(),
        )
        await audit_ok(request, response, f"profile_id={profile.id}")
        return profile

    @app.put("/profile", response_model=Profile)
    async def upsert_profile(
        payload: ProfileUpsert,
        request: Request,
        response: Response,
    ) -> Profile:
        user = await authorize(request, action="profile_upsert", roles=(Role.JOB_SEEKER,))
        profile, created = await run_in_threadpool(
            request.app.state.store.upsert_profile,
            user.id,
            payload.changes(),
        )
        if created:
            response.status_code = 201
        await audit_ok(request, response, f"profile_id={profile.id}; created={created}")
        return profile

    # Saved jobs

    @app.get("/saved-jobs", response_model=list[SavedJobView])
    async def list_saved_jobs(request: Request) -> list[SavedJobView]:
        user = await authorize(request, action="saved_jobs_list", roles=(Role.JOB_SEEKER,))
        return await run_in_threadpool(saved_jobs_of, request.app.state.store, user)

    @app.get("/saved-jobs/{saved_job_id}", response_model=SavedJobView)
    async def get_saved_job(saved_job_id: int, request: Request) -> SavedJobView:
        user = await authorize(request, action="saved_job_read", roles=(Role.JOB_SEEKER,))
        return await run_in_threadpool(
            readable_saved_job,
            request.app.state.store,
            user,
            saved_job_id,
        )

    @app.post("/saved-jobs", response_model=SavedJobView, status_code=201)
    async def save_job(
        payload: SavedJobCreate,
        request: Request,
        response: Response,
    ) -> SavedJobView:
        user = await authorize(request, action="saved_job_create", roles=(Role.JOB_SEEKER,))
        view = await run_in_threadpool(
            bookmark_job,
            request.app.state.store,
            user,
            payload.job_id,
        )
        await audit_ok(request, response, f"saved_job_id={view.id}; job_id={payload.job_id}")
        return view

    @app.delete("/saved-jobs/{saved_job_id}", status_code=204)
    async def delete_saved_job(saved_job_id: int, request: Request, response: Response) -> None:
        user = await authorize(request, action="saved_job_delete", roles=(Role.JOB_SEEKER,))
        await run_in_threadpool(
            remove_saved_job,
            request.app.state.store,
            user,
            saved_job_id,
        )
        await audit_ok(request, response, f"saved_job_id={saved_job_id}")

    # Admin

    @app.get("/admin/users", response_model=list[PublicUser])
    async def admin_list_users(
        request: Request,
        role: Role | None = None,
        active: bool | None = None,
    ) -> list[PublicUser]:
        await authorize(request, action="admin_users_list", roles=(Role.ADMIN,))
        users = await run_in_threadpool(
            request.app.state.store.list_users,
            role=role,
            active=active,
        )
        return [user.to_public() for user in users]

    @app.get("/admin/users/{user_id}", response_model=PublicUser)
    async def admin_get_user(user_id: int, request: Request) -> PublicUser:
        await authorize(request, action="admin_user_read", roles=(Role.ADMIN,))
        user = await run_in_threadpool(
            request.app.state.store.get_or_raise,
            EntityKind.USERS,
            user_id,
        )
        return user.to_public()

    @app.put("/admin/users/{user_id}", response_model=PublicUser)
    async def admin_update_user(
        user_id: int,
        payload: AdminUserUpdate,
        request: Request,
        response: Response,
    ) -> PublicUser:
        await authorize(request, action="admin_user_update", roles=(Role.ADMIN,))
        changes = payload.changes()
        updated, revoked = await run_in_threadpool(
            administer_user,
            request.app.state.store,
            user_id,
            changes,
        )
        await audit_ok(
            request,
            response,
            f"user_id={user_id}; fields={','.join(changes)}; sessions_revoked={revoked}",
        )
        return updated.to_public()

    @app.delete("/admin/users/{user_id}", status_code=204)
    async def admin_delete_user(user_id: int, request: Request, response: Response) -> None:
        await authorize(request, action="admin_user_delete", roles=(Role.ADMIN,))
        if not await run_in_threadpool(request.app.state.store.delete_user, user_id):
            raise NotFound("User not found")
        await audit_ok(request, response, f"user_id={user_id}")

    @app.put("/admin/jobs/{job_id}/approve", response_model=JobView)
    async def admin_approve_job(job_id: int, request: Request, response: Response) -> JobView:
        await authorize(request, action="admin_job_approve", roles=(Role.ADMIN,))
        view = await run_in_threadpool(approve_job, request.app.state.store, job_id)
        await audit_ok(request, response, f"job_id={job_id}")
        return view

    @app.get("/admin/audit-events", response_model=list[AuditEvent])
    async def admin_list_audit_events(
        request: Request,
        limit: int = Query(default=100, ge=1, le=500),
        action: str | None = None,
        status: str | None = None,
    ) -> list[AuditEvent]:
        await authorize(request, action="audit_events_list", roles=(Role.ADMIN,))
        return await run_in_threadpool(
            request.app.state.store.list_audit_events,
            limit=limit,
            action=action,
            status=status,
        )

    return app


# Blocking store work below runs in the threadpool; handlers only await it.


def ensure_company_owner(store: JobBoardStore, owner_id: int) -> User:
    owner = store.get_user(owner_id)
    if owner is None or owner.role not in EMPLOYER_ROLES:
        raise ValidationError("owner_id must reference an existing employer or admin")
    return owner


def visible_jobs(
    store: JobBoardStore,
    principal: User | None,
    *,
    require_approval: bool,
    search: str | None = None,
    min_salary: int | None = None,
    **filters: Any,
) -> list[JobView]:
    jobs = store.search_jobs(search=search, min_salary=min_salary, **filters)
    visible = [
        job
        for job in jobs
        if can_view_job(principal, job, store, require_approval=require_approval)
    ]
    return attach_companies(store, visible)


def visible_job(
    store: JobBoardStore,
    principal: User | None,
    job_id: int,
    *,
    require_approval: bool,
) -> JobView:
    job = store.get_job(job_id)
    if job is None or not can_view_job(principal, job, store, require_approval=require_approval):
        raise NotFound("Job not found")
    return attach_company(store, job)


def post_job(
    store: JobBoardStore,
    user: User,
    fields: dict[str, Any],
    *,
    require_approval: bool,
) -> JobView:
    company_id = fields.pop("company_id")
    if company_id is None:
        if user.role == Role.ADMIN:
            raise ValidationError("company_id is required")
        owned = store.companies_owned_by(user.id)
        if not owned:
            raise NotFound("Company not found")
        company = owned[0]
    else:
        company = store.get_or_raise(EntityKind.COMPANIES, company_id)
    if not can_mutate_company(user, company):
        raise Forbidden("Not authorized to post jobs for this company")
    fields["company_id"] = company.id
    fields["is_approved"] = user.role == Role.ADMIN or not require_approval
    job = store.create(EntityKind.JOBS, fields)
    return attach_company(store, job)


def edit_job(
    store: JobBoardStore,
    user: User,
    job_id: int,
    changes: dict[str, Any],
) -> JobView:
    job = store.get_or_raise(EntityKind.JOBS, job_id)
    if not can_mutate_job(user, job, store):
        raise Forbidden("Not authorized to edit this job")
    if changes.get("status") is not None:
        ensure_job_transition(job.status, changes["status"])
    target_company_id = changes.get("company_id")
    if target_company_id is not None and target_company_id != job.company_id:
        target = store.get_or_raise(EntityKind.COMPANIES, target_company_id)
        if not can_mutate_company(user, target):
            raise Forbidden("Not authorized to move this job to that company")
    return attach_company(store, store.update(EntityKind.JOBS, job_id, changes))


def remove_job(store: JobBoardStore, user: User, job_id: int) -> None:
    job = store.get_or_raise(EntityKind.JOBS, job_id)
    if not can_mutate_job(user, job, store):
        raise Forbidden("Not authorized to delete this job")
    store.delete(EntityKind.JOBS, job_id)


def applications_for_job(store: JobBoardStore, user: User, job_id: int) -> list[ApplicationView]:
    job = store.get_or_raise(EntityKind.JOBS, job_id)
    if not can_mutate_job(user, job, store):
        raise Forbidden("Not authorized to review applications for this job")
    return attach_jobs_and_users(store, store.list_applications(job_id=job_id))


def approve_job(store: JobBoardStore, job_id: int) -> JobView:
    return attach_company(store, store.update(EntityKind.JOBS, job_id, {"is_approved": True}))


def register_company(store: JobBoardStore, user: User, fields: dict[str, Any]) -> Company:
    owner_id = fields.pop("owner_id")
    if owner_id is None:
        owner_id = user.id
    if owner_id != user.id:
        if user.role != Role.ADMIN:
            raise Forbidden("Only admins can assign another owner")
        ensure_company_owner(store, owner_id)
    return store.create(EntityKind.COMPANIES, {**fields, "owner_id": owner_id})


def edit_company(
    store: JobBoardStore,
    user: User,
    company_id: int,
    changes: dict[str, Any],
) -> Company:
    company = store.get_or_raise(EntityKind.COMPANIES, company_id)
    if not can_mutate_company(user, company):
        raise Forbidden("Not authorized to edit this company")
    new_owner_id = changes.get("owner_id")
    if new_owner_id is not None and new_owner_id != company.owner_id:
        if user.role != Role.ADMIN:
            raise Forbidden("Only admins can transfer company ownership")
        ensure_company_owner(store, new_owner_id)
    return store.update(EntityKind.COMPANIES, company_id, changes)


def remove_company(store: JobBoardStore, user: User, company_id: int) -> None:
    company = store.get_or_raise(EntityKind.COMPANIES, company_id)
    if not can_mutate_company(user, company):
        raise Forbidden("Not authorized to delete this company")
    store.delete(EntityKind.COMPANIES, company_id)


def applications_visible_to(
    store: JobBoardStore,
    user: User,
    filters: dict[str, Any],
) -> list[ApplicationView]:
    applications: list[Application]
    if user.role == Role.ADMIN:
        applications = store.list_applications(**filters)
    elif user.role == Role.EMPLOYER:
        company_ids = [company.id for company in store.companies_owned_by(user.id)]
        job_ids = [job.id for job in store.jobs_for_companies(company_ids)]
        applications = [
            application
            for application in store.applications_for_jobs(job_ids)
            if matches_filters(application, filters)
        ]
    else:
        applications = [
            application
            for application in store.applications_for_user(user.id)
            if matches_filters(application, filters)
        ]
    return attach_jobs_and_users(store, applications)


def readable_application(store: JobBoardStore, user: User, application_id: int) -> ApplicationView:
    application = store.get_or_raise(EntityKind.APPLICATIONS, application_id)
    if not can_view_application(user, application, store):
        raise Forbidden("Not authorized to view this application")
    return attach_job_and_user(store, application)


def submit_application(
    store: JobBoardStore,
    user: User,
    fields: dict[str, Any],
    *,
    require_approval: bool,
) -> ApplicationView:
    job = store.get_job(fields["job_id"])
    if job is None or not is_job_open(job, require_approval=require_approval):
        raise NotFound("Job not found or inactive")
    application = store.create_application({**fields, "user_id": user.id})
    return attach_job_and_user(store, application)


def edit_application(
    store: JobBoardStore,
    user: User,
    application_id: int,
    changes: dict[str, Any],
) -> ApplicationView:
    application = store.get_or_raise(EntityKind.APPLICATIONS, application_id)
    if not changes:
        raise ValidationError("No changes supplied")
    if user.role == Role.JOB_SEEKER:
        if not can_mutate_application(user, application, ApplicationAction.EDIT, store):
            raise Forbidden("Not authorized to update this application")
        ensure_applicant_fields(changes)
        if application.status != ApplicationStatus.PENDING:
            raise ValidationError("Only pending applications can be edited")
    else:
        if not can_mutate_application(user, application, ApplicationAction.UPDATE_STATUS, store):
            raise Forbidden("Not authorized to update this application")
        if user.role == Role.EMPLOYER:
            ensure_employer_fields(changes)
    if "status" in changes:
        if changes["status"] is None:
            raise ValidationError("status cannot be empty")
        ensure_application_transition(application.status, changes["status"])
    updated = store.update(EntityKind.APPLICATIONS, application_id, changes)
    return attach_job_and_user(store, updated)


def remove_application(store: JobBoardStore, user: User, application_id: int) -> None:
    application = store.get_or_raise(EntityKind.APPLICATIONS, application_id)
    if not can_mutate_application(user, application, ApplicationAction.WITHDRAW, store):
        raise Forbidden("Not authorized to withdraw this application")
    if user.role != Role.ADMIN:
        ensure_withdrawable(application)
    store.delete(EntityKind.APPLICATIONS, application_id)


def saved_jobs_of(store: JobBoardStore, user: User) -> list[SavedJobView]:
    return attach_jobs_and_companies(store, store.saved_jobs_for_user(user.id))


def owned_saved_job(store: JobBoardStore, user: User, saved_job_id: int, verb: str) -> SavedJob:
    saved_job = store.get_or_raise(EntityKind.SAVED_JOBS, saved_job_id)
    if saved_job.user_id != user.id:
        raise Forbidden(f"Not authorized to {verb} this saved job")
    return saved_job


def readable_saved_job(store: JobBoardStore, user: User, saved_job_id: int) -> SavedJobView:
    return attach_job_and_company(store, owned_saved_job(store, user, saved_job_id, "view"))


def bookmark_job(store: JobBoardStore, user: User, job_id: int) -> SavedJobView:
    store.get_or_raise(EntityKind.JOBS, job_id)
    saved_job = store.create_saved_job({"job_id": job_id, "user_id": user.id})
    return attach_job_and_company(store, saved_job)


def remove_saved_job(store: JobBoardStore, user: User, saved_job_id: int) -> None:
    owned_saved_job(store, user, saved_job_id, "delete")
    store.delete(EntityKind.SAVED_JOBS, saved_job_id)


def administer_user(
    store: JobBoardStore,
    user_id: int,
    changes: dict[str, Any],
) -> tuple[User, int]:
    updated = store.update_user(user_id, changes)
    revoked = 0
    if changes.get("active") is False:
        revoked = store.revoke_user_sessions(user_id)
    return updated, revoked


app = create_app()
