from datetime import datetime, timezone
from typing import Annotated, Any, ClassVar, List, Literal, Optional, Tuple

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

UserType = Literal["job_seeker", "employer", "admin"]
JobType = Literal["full-time", "part-time", "contract", "remote"]
ApplicationStatus = Literal["applied", "under_review", "interview", "offered", "rejected"]

# Values the job search UI sends when a dropdown is left on its default entry
ALL_LOCATIONS = "All Locations"
ALL_JOB_TYPES = "All Jobs"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands DateTime(timezone=True) columns back naive; they were written as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class CamelModel(BaseModel):
    """Base for every API model: snake_case in Python, camelCase in JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class PartialUpdate(CamelModel):
    """Update body: omitted fields stay untouched, required columns cannot be nulled."""

    non_nullable: ClassVar[Tuple[str, ...]] = ()

    @model_validator(mode="after")
    def _reject_nulled_required_fields(self):
        nulled = [
            name
            for name in self.non_nullable
            if name in self.model_fields_set and getattr(self, name) is None
        ]
        if nulled:
            raise ValueError(f"Fields cannot be null: {', '.join(nulled)}")
        return self


# --- Users ---
class UserBase(CamelModel):
    email: EmailStr
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    user_type: UserType
    location: Optional[str] = None
    title: Optional[str] = None
    bio: Optional[str] = None
    skills: List[str] = Field(default_factory=list)
    profile_photo: Optional[str] = None


class UserCreate(UserBase):
    password: str = Field(min_length=6)


class RegisterRequest(UserCreate):
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("Passwords don't match")
        return self


class UserUpdate(PartialUpdate):
    non_nullable = ("email", "password", "first_name", "last_name", "user_type", "skills")

    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=6)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    user_type: Optional[UserType] = None
    location: Optional[str] = None
    title: Optional[str] = None
    bio: Optional[str] = None
    skills: Optional[List[str]] = None
    profile_photo: Optional[str] = None


class PublicUser(UserBase):
    """A user as it may leave the server: no password field exists on this type."""

    id: str
    # Stored emails were validated on the way in
    email: str
    created_at: Optional[UtcDatetime] = None


class User(PublicUser):
    """Full stored user record, including the password hash."""

    password: str

    def public(self) -> PublicUser:
        # model_validate(self) would hand back this subclass instance untouched
        return PublicUser.model_validate(self.model_dump(exclude={"password"}))


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(min_length=6)


class AuthResponse(CamelModel):
    user: PublicUser


# --- Companies ---
class CompanyCreate(CamelModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    website: Optional[str] = None
    location: Optional[str] = None
    size: Optional[str] = None
    industry: Optional[str] = None
    logo: Optional[str] = None
    owner_id: Optional[str] = None


class CompanyUpdate(PartialUpdate):
    non_nullable = ("name",)

    name: Optional[str] = None
    description: Optional[str] = None
    website: Optional[str] = None
    location: Optional[str] = None
    size: Optional[str] = None
    industry: Optional[str] = None
    logo: Optional[str] = None
    owner_id: Optional[str] = None


class Company(CompanyCreate):
    id: str
    created_at: Optional[UtcDatetime] = None


# --- Jobs ---
class JobCreate(CamelModel):
    title: str = Field(min_length=1)
    description: str
    requirements: str
    location: str
    job_type: JobType
    salary_min: Optional[int] = None
    salary_max: Optional[int] = None
    skills: List[str] = Field(default_factory=list)
    company_id: Optional[str] = None
    employer_id: Optional[str] = None
    is_active: bool = True


class JobUpdate(PartialUpdate):
    non_nullable = ("title", "description", "requirements", "location", "job_type", "skills", "is_active")

    title: Optional[str] = None
    description: Optional[str] = None
    requirements: Optional[str] = None
    location: Optional[str] = None
    job_type: Optional[JobType] = None
    salary_min: Optional[int] = None
    salary_max: Optional[int] = None
    skills: Optional[List[str]] = None
    company_id: Optional[str] = None
    employer_id: Optional[str] = None
    is_active: Optional[bool] = None


class Job(JobCreate):
    id: str
    created_at: UtcDatetime


class JobWithRelations(Job):
    company: Optional[Company] = None
    employer: Optional[PublicUser] = None


class JobFilters(BaseModel):
    """Normalized job search filters.

    Blank values and the UI's "All Locations" / "All Jobs" entries are turned
    into ``None`` here, so a filter that reaches the storage layer is always a
    real constraint.
    """

    location: Optional[str] = None
    skills: Optional[List[str]] = None
    job_type: Optional[str] = None
    search: Optional[str] = None

    @field_validator("location", "job_type", "search", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            if not value or value in (ALL_LOCATIONS, ALL_JOB_TYPES):
                return None
        return value

    @field_validator("skills", mode="before")
    @classmethod
    def _clean_skills(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            value = [value]
        # Accepts "a,b" as well as repeated query params
        cleaned = [
            part.strip()
            for item in value
            if item
            for part in item.split(",")
            if part.strip()
        ]
        return cleaned or None


# --- Applications ---
class ApplicationCreate(CamelModel):
    job_id: str
    applicant_id: str
    cover_letter: Optional[str] = None
    resume: Optional[str] = None
    notes: Optional[str] = None


class ApplicationUpdate(PartialUpdate):
    non_nullable = ("status",)

    status: Optional[ApplicationStatus] = None
    cover_letter: Optional[str] = None
    resume: Optional[str] = None
    notes: Optional[str] = None


class Application(ApplicationCreate):
    id: str
    status: ApplicationStatus = "applied"
    applied_at: UtcDatetime
    updated_at: UtcDatetime


class ApplicationWithRelations(Application):
    job: Optional[Job] = None
    applicant: Optional[PublicUser] = None
    company: Optional[Company] = None


# --- Messages ---
class MessageCreate(CamelModel):
    sender_id: str
    receiver_id: str
    application_id: Optional[str] = None
    content: str = Field(min_length=1)


class Message(MessageCreate):
    id: str
    is_read: bool = False
    created_at: UtcDatetime


class ConversationSummary(CamelModel):
    other_user_id: str
    other_user: Optional[PublicUser] = None
    last_message: Message
    unread_count: int = 0


# --- Experiences ---
class ExperienceCreate(CamelModel):
    user_id: str
    title: str = Field(min_length=1)
    company: str = Field(min_length=1)
    description: Optional[str] = None
    start_date: str
    end_date: Optional[str] = None
    is_current: bool = False


class ExperienceUpdate(PartialUpdate):
    non_nullable = ("title", "company", "start_date", "is_current")

    title: Optional[str] = None
    company: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    is_current: Optional[bool] = None


class Experience(ExperienceCreate):
    id: str


# --- Stories ---
class StorySubmission(CamelModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=1)
    role: str = Field(min_length=1)
    title: str = Field(min_length=1)
    story: str = Field(min_length=1)


class Story(CamelModel):
    id: str
    name: str
    email: str
    role: str
    title: str
    content: str
    created_at: UtcDatetime


# --- Admin / misc ---
class MarketplaceStats(CamelModel):
    total_users: int = 0
    active_jobs: int = 0
    total_companies: int = 0
    total_applications: int = 0
    new_users_this_week: int = 0
    new_jobs_this_week: int = 0
    new_companies_this_week: int = 0
    new_applications_this_week: int = 0


class MessageResponse(CamelModel):
    message: str


class ErrorResponse(CamelModel):
    message: str
    errors: Optional[List[Any]] = None
