from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


class Role(StrEnum):
    JOB_SEEKER = "job_seeker"
    EMPLOYER = "employer"
    ADMIN = "admin"


class JobStatus(StrEnum):
    ACTIVE = "active"
    DRAFT = "draft"
    CLOSED = "closed"


class ApplicationStatus(StrEnum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    INTERVIEW = "interview"
    REJECTED = "rejected"
    ACCEPTED = "accepted"


class EntityKind(StrEnum):
    USERS = "users"
    COMPANIES = "companies"
    JOBS = "jobs"
    APPLICATIONS = "applications"
    SAVED_JOBS = "saved_jobs"
    PROFILES = "profiles"


def _check_salary_range(salary_min: int | None, salary_max: int | None) -> None:
    if salary_min is not None and salary_max is not None and salary_min > salary_max:
        raise ValueError("salary_min must be less than or equal to salary_max")


# Stored entities


class Entity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    created_at: str


class PublicUser(Entity):
    username: str
    email: str
    first_name: str
    last_name: str
    role: Role
    active: bool = True
    phone: str | None = None
    location: str | None = None
    avatar: str | None = None
    bio: str | None = None


class User(PublicUser):
    password: str

    def to_public(self) -> PublicUser:
        return PublicUser.model_validate(self.model_dump(exclude={"password"}))


class Company(Entity):
    name: str
    owner_id: int
    description: str | None = None
    website: str | None = None
    logo: str | None = None
    location: str | None = None
    size: str | None = None
    industry: str | None = None


class Job(Entity):
    title: str
    company_id: int
    description: str
    location: str
    type: str
    salary: str | None = None
    salary_min: int | None = None
    salary_max: int | None = None
    is_remote: bool = False
    skills: list[str] = Field(default_factory=list)
    experience_level: str | None = None
    status: JobStatus = JobStatus.ACTIVE
    is_approved: bool = False
    updated_at: str | None = None

    @model_validator(mode="after")
    def validate_salary(self) -> Job:
        _check_salary_range(self.salary_min, self.salary_max)
        return self


class Application(Entity):
    job_id: int
    user_id: int
    resume_url: str | None = None
    cover_letter: str | None = None
    status: ApplicationStatus = ApplicationStatus.PENDING
    updated_at: str | None = None


class SavedJob(Entity):
    job_id: int
    user_id: int


class EducationEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    institution: str = Field(..., min_length=1)
    degree: str | None = None
    field_of_study: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    description: str | None = None


class ExperienceEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    company: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    location: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    current: bool = False
    description: str | None = None


class Profile(Entity):
    user_id: int
    title: str | None = None
    bio: str | None = None
    location: str | None = None
    skills: list[str] = Field(default_factory=list)
    resume_url: str | None = None
    portfolio_url: str | None = None
    social_links: dict[str, str] = Field(default_factory=dict)
    education: list[EducationEntry] = Field(default_factory=list)
    experience: list[ExperienceEntry] = Field(default_factory=list)
    updated_at: str | None = None


class Session(BaseModel):
    token_hash: str
    user_id: int
    created_at: str
    expires_at: str


class AuditEvent(BaseModel):
    id: int
    occurred_at: str
    request_id: str | None = None
    method: str
    path: str
    action: str
    actor_id: int | None = None
    status: str
    message: str | None = None
    source_ip: str | None = None


ENTITY_TYPES: dict[EntityKind, type[Entity]] = {
    EntityKind.USERS: User,
    EntityKind.COMPANIES: Company,
    EntityKind.JOBS: Job,
    EntityKind.APPLICATIONS: Application,
    EntityKind.SAVED_JOBS: SavedJob,
    EntityKind.PROFILES: Profile,
}


# Enriched views


class JobView(Job):
    company: Company | None = None


class ApplicationView(Application):
    job: Job | None = None
    user: PublicUser | None = None


class SavedJobView(SavedJob):
    job: Job | None = None
    company: Company | None = None


# Request payloads. Unknown fields are rejected so partial updates can only
# touch the fields listed here.


class RequestModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class RegisterRequest(RequestModel):
    username: str = Field(..., min_length=3, max_length=64, pattern=r"^[a-zA-Z0-9_.-]+$")
    password: str = Field(..., min_length=8, max_length=128)
    email: EmailStr
    first_name: str = Field(..., min_length=1, max_length=120)
    last_name: str = Field(..., min_length=1, max_length=120)
    role: Role = Role.JOB_SEEKER
    phone: str | None = None
    location: str | None = None


class LoginRequest(RequestModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class AuthResponse(BaseModel):
    token: str
    expires_at: str
    user: PublicUser


class UserSelfUpdate(RequestModel):
    email: EmailStr | None = None
    first_name: str | None = Field(default=None, min_length=1, max_length=120)
    last_name: str | None = Field(default=None, min_length=1, max_length=120)
    phone: str | None = None
    location: str | None = None
    avatar: str | None = None
    bio: str | None = None


class AdminUserUpdate(RequestModel):
    role: Role | None = None
    active: bool | None = None
    email: EmailStr | None = None
    first_name: str | None = Field(default=None, min_length=1, max_length=120)
    last_name: str | None = Field(default=None, min_length=1, max_length=120)


class CompanyCreate(RequestModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    website: str | None = None
    logo: str | None = None
    location: str | None = None
    size: str | None = None
    industry: str | None = None
    owner_id: int | None = None


class CompanyUpdate(RequestModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    website: str | None = None
    logo: str | None = None
    location: str | None = None
    size: str | None = None
    industry: str | None = None
    owner_id: int | None = None


class JobCreate(RequestModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    company_id: int | None = None
    salary: str | None = None
    salary_min: int | None = Field(default=None, ge=0)
    salary_max: int | None = Field(default=None, ge=0)
    is_remote: bool = False
    skills: list[str] = Field(default_factory=list)
    experience_level: str | None = None
    status: JobStatus = JobStatus.ACTIVE

    @model_validator(mode="after")
    def validate_job(self) -> JobCreate:
        _check_salary_range(self.salary_min, self.salary_max)
        if self.status == JobStatus.CLOSED:
            raise ValueError("new jobs must start as active or draft")
        return self


class JobUpdate(RequestModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, min_length=1)
    location: str | None = Field(default=None, min_length=1)
    type: str | None = Field(default=None, min_length=1)
    company_id: int | None = None
    salary: str | None = None
    salary_min: int | None = Field(default=None, ge=0)
    salary_max: int | None = Field(default=None, ge=0)
    is_remote: bool | None = None
    skills: list[str] | None = None
    experience_level: str | None = None
    status: JobStatus | None = None

    @model_validator(mode="after")
    def validate_salary(self) -> JobUpdate:
        _check_salary_range(self.salary_min, self.salary_max)
        return self


class ApplicationCreate(RequestModel):
    job_id: int
    resume_url: str | None = None
    cover_letter: str | None = None


class ApplicationUpdate(RequestModel):
    status: ApplicationStatus | None = None
    resume_url: str | None = None
    cover_letter: str | None = None


class SavedJobCreate(RequestModel):
    job_id: int


class ProfileUpsert(RequestModel):
    title: str | None = None
    bio: str | None = None
    location: str | None = None
    skills: list[str] | None = None
    resume_url: str | None = None
    portfolio_url: str | None = None
    social_links: dict[str, str] | None = None
    education: list[EducationEntry] | None = None
    experience: list[ExperienceEntry] | None = None


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]
    actions: dict[str, dict[str, int]]
    active_sessions: int
