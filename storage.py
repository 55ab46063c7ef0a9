"""Storage adapters.

``Storage`` is the contract the HTTP layer talks to. ``DatabaseStorage`` runs
it over a SQLAlchemy session, ``MemoryStorage`` over plain dicts; both hand
back pydantic records from ``schemas`` so callers never see ORM rows and the
two are interchangeable (the test suite runs the same cases against each).
"""
from __future__ import annotations

import abc
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Type, TypeVar

import structlog
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import crud
import logic
import models
import schemas
from errors import ConflictError, DuplicateApplicationError, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]
RecordT = TypeVar("RecordT", bound=BaseModel)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Storage(abc.ABC):
    """Persistence contract shared by every backend."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock: Clock = clock or utcnow

    # Users
    @abc.abstractmethod
    def get_user(self, user_id: str) -> Optional[schemas.User]: ...

    @abc.abstractmethod
    def get_user_by_email(self, email: str) -> Optional[schemas.User]: ...

    @abc.abstractmethod
    def create_user(self, data: schemas.UserCreate) -> schemas.User:
        """Store a user; ``data.password`` must already be hashed."""

    @abc.abstractmethod
    def update_user(self, user_id: str, updates: schemas.UserUpdate) -> schemas.User: ...

    @abc.abstractmethod
    def list_users(self) -> List[schemas.User]: ...

    # Companies
    @abc.abstractmethod
    def get_company(self, company_id: str) -> Optional[schemas.Company]: ...

    @abc.abstractmethod
    def get_companies_by_owner(self, owner_id: str) -> List[schemas.Company]: ...

    @abc.abstractmethod
    def create_company(self, data: schemas.CompanyCreate) -> schemas.Company: ...

    @abc.abstractmethod
    def update_company(self, company_id: str, updates: schemas.CompanyUpdate) -> schemas.Company: ...

    @abc.abstractmethod
    def list_companies(self) -> List[schemas.Company]: ...

    # Jobs
    @abc.abstractmethod
    def get_job(self, job_id: str) -> Optional[schemas.Job]: ...

    @abc.abstractmethod
    def get_jobs(self, filters: Optional[schemas.JobFilters] = None) -> List[schemas.Job]:
        """Active jobs matching ``filters``, newest first (ties by id)."""

    @abc.abstractmethod
    def get_jobs_by_employer(self, employer_id: str) -> List[schemas.Job]: ...

    @abc.abstractmethod
    def get_jobs_by_company(self, company_id: str) -> List[schemas.Job]: ...

    @abc.abstractmethod
    def create_job(self, data: schemas.JobCreate) -> schemas.Job: ...

    @abc.abstractmethod
    def update_job(self, job_id: str, updates: schemas.JobUpdate) -> schemas.Job: ...

    # Applications
    @abc.abstractmethod
    def get_application(self, application_id: str) -> Optional[schemas.Application]: ...

    @abc.abstractmethod
    def get_applications_by_job(self, job_id: str) -> List[schemas.Application]: ...

    @abc.abstractmethod
    def get_applications_by_applicant(self, applicant_id: str) -> List[schemas.Application]: ...

    @abc.abstractmethod
    def create_application(self, data: schemas.ApplicationCreate) -> schemas.Application: ...

    @abc.abstractmethod
    def update_application(
        self, application_id: str, updates: schemas.ApplicationUpdate
    ) -> schemas.Application: ...

    # Messages
    @abc.abstractmethod
    def get_message(self, message_id: str) -> Optional[schemas.Message]: ...

    @abc.abstractmethod
    def get_messages_by_user(self, user_id: str) -> List[schemas.Message]:
        """Messages sent or received by ``user_id``, newest first."""

    @abc.abstractmethod
    def get_conversation(self, user1_id: str, user2_id: str) -> List[schemas.Message]:
        """Messages between the two users in either direction, oldest first."""

    @abc.abstractmethod
    def create_message(self, data: schemas.MessageCreate) -> schemas.Message: ...

    @abc.abstractmethod
    def mark_message_as_read(self, message_id: str) -> schemas.Message: ...

    # Experiences
    @abc.abstractmethod
    def get_experience(self, experience_id: str) -> Optional[schemas.Experience]: ...

    @abc.abstractmethod
    def get_experiences_by_user(self, user_id: str) -> List[schemas.Experience]: ...

    @abc.abstractmethod
    def create_experience(self, data: schemas.ExperienceCreate) -> schemas.Experience: ...

    @abc.abstractmethod
    def update_experience(
        self, experience_id: str, updates: schemas.ExperienceUpdate
    ) -> schemas.Experience: ...

    @abc.abstractmethod
    def delete_experience(self, experience_id: str) -> None: ...

    # Stories
    @abc.abstractmethod
    def create_story(self, data: schemas.StorySubmission) -> schemas.Story: ...

    @abc.abstractmethod
    def list_stories(self) -> List[schemas.Story]: ...

    # Admin
    @abc.abstractmethod
    def get_stats(self, since: datetime) -> schemas.MarketplaceStats: ...


# ---------------------------------------------------------------------------
# Relational backend
# ---------------------------------------------------------------------------
def _one(schema: Type[RecordT], row) -> Optional[RecordT]:
    return schema.model_validate(row) if row is not None else None


def _many(schema: Type[RecordT], rows) -> List[RecordT]:
    return [schema.model_validate(row) for row in rows]


class DatabaseStorage(Storage):
    def __init__(self, db: Session, clock: Optional[Clock] = None):
        super().__init__(clock)
        self.db = db

    def _write(self, write, *args, **kwargs):
        """Run a crud write; a foreign key failure leaves the session usable."""
        try:
            return write(self.db, *args, **kwargs)
        except IntegrityError:
            self.db.rollback()
            logger.warning("Write rejected by database constraint", write=write.__name__)
            raise ValidationError("Referenced record does not exist")

    # --- Users ---
    def get_user(self, user_id):
        return _one(schemas.User, crud.get_user_by_id(self.db, user_id))

    def get_user_by_email(self, email):
        return _one(schemas.User, crud.get_user_by_email(self.db, email))

    def create_user(self, data):
        try:
            row = crud.create_user(self.db, data, created_at=self.clock())
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("User already exists")
        return schemas.User.model_validate(row)

    def update_user(self, user_id, updates):
        try:
            row = crud.update_user(self.db, user_id, updates.model_dump(exclude_unset=True))
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("User already exists")
        if row is None:
            raise NotFoundError.for_entity("User", user_id)
        return schemas.User.model_validate(row)

    def list_users(self):
        return _many(schemas.User, crud.list_users(self.db))

    # --- Companies ---
    def get_company(self, company_id):
        return _one(schemas.Company, crud.get_company(self.db, company_id))

    def get_companies_by_owner(self, owner_id):
        return _many(schemas.Company, crud.get_companies_by_owner(self.db, owner_id))

    def create_company(self, data):
        return schemas.Company.model_validate(
            self._write(crud.create_company, data, created_at=self.clock())
        )

    def update_company(self, company_id, updates):
        row = crud.update_company(self.db, company_id, updates.model_dump(exclude_unset=True))
        if row is None:
            raise NotFoundError.for_entity("Company", company_id)
        return schemas.Company.model_validate(row)

    def list_companies(self):
        return _many(schemas.Company, crud.list_companies(self.db))

    # --- Jobs ---
    def get_job(self, job_id):
        return _one(schemas.Job, crud.get_job(self.db, job_id))

    def get_jobs(self, filters=None):
        filters = filters or schemas.JobFilters()
        jobs = _many(
            schemas.Job,
            crud.get_active_jobs(self.db, location=filters.location, job_type=filters.job_type),
        )
        return [
            job
            for job in jobs
            if logic.matches_search(job, filters.search)
            and logic.matches_skills(job.skills, filters.skills)
        ]

    def get_jobs_by_employer(self, employer_id):
        return _many(schemas.Job, crud.get_jobs_by_employer(self.db, employer_id))

    def get_jobs_by_company(self, company_id):
        return _many(schemas.Job, crud.get_jobs_by_company(self.db, company_id))

    def create_job(self, data):
        return schemas.Job.model_validate(self._write(crud.create_job, data, created_at=self.clock()))

    def update_job(self, job_id, updates):
        row = self._write(crud.update_job, job_id, updates.model_dump(exclude_unset=True))
        if row is None:
            raise NotFoundError.for_entity("Job", job_id)
        return schemas.Job.model_validate(row)

    # --- Applications ---
    def get_application(self, application_id):
        return _one(schemas.Application, crud.get_application(self.db, application_id))

    def get_applications_by_job(self, job_id):
        return _many(schemas.Application, crud.get_applications_by_job(self.db, job_id))

    def get_applications_by_applicant(self, applicant_id):
        return _many(schemas.Application, crud.get_applications_by_applicant(self.db, applicant_id))

    def create_application(self, data):
        try:
            row = crud.create_application(self.db, data, now=self.clock())
        except IntegrityError:
            self.db.rollback()
            # Constraint names are not in every driver's message, so look for the pair instead
            if crud.get_application_for_pair(self.db, data.job_id, data.applicant_id) is None:
                logger.warning(
                    "Application insert rejected by database constraint",
                    job_id=data.job_id,
                    applicant_id=data.applicant_id,
                )
                raise ValidationError("Referenced record does not exist")
            # A concurrent submission won the race past the pre-check
            logger.warning(
                "Application insert hit unique constraint",
                job_id=data.job_id,
                applicant_id=data.applicant_id,
            )
            raise DuplicateApplicationError()
        return schemas.Application.model_validate(row)

    def update_application(self, application_id, updates):
        row = crud.update_application(
            self.db, application_id, updates.model_dump(exclude_unset=True), now=self.clock()
        )
        if row is None:
            raise NotFoundError.for_entity("Application", application_id)
        return schemas.Application.model_validate(row)

    # --- Messages ---
    def get_message(self, message_id):
        return _one(schemas.Message, crud.get_message(self.db, message_id))

    def get_messages_by_user(self, user_id):
        return _many(schemas.Message, crud.get_messages_by_user(self.db, user_id))

    def get_conversation(self, user1_id, user2_id):
        return _many(schemas.Message, crud.get_conversation(self.db, user1_id, user2_id))

    def create_message(self, data):
        return schemas.Message.model_validate(
            self._write(crud.create_message, data, created_at=self.clock())
        )

    def mark_message_as_read(self, message_id):
        row = crud.mark_message_as_read(self.db, message_id)
        if row is None:
            raise NotFoundError.for_entity("Message", message_id)
        return schemas.Message.model_validate(row)

    # --- Experiences ---
    def get_experience(self, experience_id):
        return _one(schemas.Experience, crud.get_experience(self.db, experience_id))

    def get_experiences_by_user(self, user_id):
        return _many(schemas.Experience, crud.get_experiences_by_user(self.db, user_id))

    def create_experience(self, data):
        return schemas.Experience.model_validate(self._write(crud.create_experience, data))

    def update_experience(self, experience_id, updates):
        row = crud.update_experience(self.db, experience_id, updates.model_dump(exclude_unset=True))
        if row is None:
            raise NotFoundError.for_entity("Experience", experience_id)
        return schemas.Experience.model_validate(row)

    def delete_experience(self, experience_id):
        if not crud.delete_experience(self.db, experience_id):
            raise NotFoundError.for_entity("Experience", experience_id)

    # --- Stories ---
    def create_story(self, data):
        return schemas.Story.model_validate(crud.create_story(self.db, data, created_at=self.clock()))

    def list_stories(self):
        return _many(schemas.Story, crud.list_stories(self.db))

    # --- Admin ---
    def get_stats(self, since):
        db = self.db
        return schemas.MarketplaceStats(
            total_users=crud.count_rows(db, models.User),
            active_jobs=crud.count_rows(db, models.Job, models.Job.is_active.is_(True)),
            total_companies=crud.count_rows(db, models.Company),
            total_applications=crud.count_rows(db, models.Application),
            new_users_this_week=crud.count_rows(db, models.User, models.User.created_at >= since),
            new_jobs_this_week=crud.count_rows(db, models.Job, models.Job.created_at >= since),
            new_companies_this_week=crud.count_rows(
                db, models.Company, models.Company.created_at >= since
            ),
            new_applications_this_week=crud.count_rows(
                db, models.Application, models.Application.applied_at >= since
            ),
        )


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------
def _new_id() -> str:
    return str(uuid.uuid4())


class MemoryStorage(Storage):
    """Process-local store. Build one per app (or per test) and inject it."""

    def __init__(self, clock: Optional[Clock] = None):
        super().__init__(clock)
        self.users: Dict[str, schemas.User] = {}
        self.companies: Dict[str, schemas.Company] = {}
        self.jobs: Dict[str, schemas.Job] = {}
        self.applications: Dict[str, schemas.Application] = {}
        self.messages: Dict[str, schemas.Message] = {}
        self.experiences: Dict[str, schemas.Experience] = {}
        self.stories: Dict[str, schemas.Story] = {}

    # Records leave the store as copies so callers cannot mutate stored state
    @staticmethod
    def _copy(record: Optional[RecordT]) -> Optional[RecordT]:
        return record.model_copy(deep=True) if record is not None else None

    def _copies(self, records) -> list:
        return [self._copy(record) for record in records]

    @staticmethod
    def _check_references(*references) -> None:
        """Each reference is (table, id); a set id must exist, like a foreign key."""
        for table, record_id in references:
            if record_id is not None and record_id not in table:
                raise ValidationError("Referenced record does not exist")

    def _update(self, table: Dict[str, RecordT], entity: str, record_id: str, changes: dict) -> RecordT:
        record = table.get(record_id)
        if record is None:
            raise NotFoundError.for_entity(entity, record_id)
        table[record_id] = record.model_copy(update=changes)
        return self._copy(table[record_id])

    # --- Users ---
    def get_user(self, user_id):
        return self._copy(self.users.get(user_id))

    def get_user_by_email(self, email):
        return self._copy(next((u for u in self.users.values() if u.email == email), None))

    def create_user(self, data):
        if any(user.email == data.email for user in self.users.values()):
            raise ConflictError("User already exists")
        user = schemas.User(id=_new_id(), created_at=self.clock(), **data.model_dump())
        self.users[user.id] = user
        return self._copy(user)

    def update_user(self, user_id, updates):
        changes = updates.model_dump(exclude_unset=True)
        email = changes.get("email")
        if email and any(u.email == email and u.id != user_id for u in self.users.values()):
            raise ConflictError("User already exists")
        return self._update(self.users, "User", user_id, changes)

    def list_users(self):
        return self._copies(logic.sort_newest_first(self.users.values()))

    # --- Companies ---
    def get_company(self, company_id):
        return self._copy(self.companies.get(company_id))

    def get_companies_by_owner(self, owner_id):
        owned = [c for c in self.companies.values() if c.owner_id == owner_id]
        return self._copies(logic.sort_newest_first(owned))

    def create_company(self, data):
        self._check_references((self.users, data.owner_id))
        company = schemas.Company(id=_new_id(), created_at=self.clock(), **data.model_dump())
        self.companies[company.id] = company
        return self._copy(company)

    def update_company(self, company_id, updates):
        return self._update(
            self.companies, "Company", company_id, updates.model_dump(exclude_unset=True)
        )

    def list_companies(self):
        return self._copies(logic.sort_newest_first(self.companies.values()))

    # --- Jobs ---
    def get_job(self, job_id):
        return self._copy(self.jobs.get(job_id))

    def get_jobs(self, filters=None):
        filters = filters or schemas.JobFilters()
        matching = [job for job in self.jobs.values() if logic.job_matches(job, filters)]
        return self._copies(logic.sort_newest_first(matching))

    def get_jobs_by_employer(self, employer_id):
        jobs = [job for job in self.jobs.values() if job.employer_id == employer_id]
        return self._copies(logic.sort_newest_first(jobs))

    def get_jobs_by_company(self, company_id):
        jobs = [job for job in self.jobs.values() if job.company_id == company_id]
        return self._copies(logic.sort_newest_first(jobs))

    def create_job(self, data):
        self._check_references((self.companies, data.company_id), (self.users, data.employer_id))
        job = schemas.Job(id=_new_id(), created_at=self.clock(), **data.model_dump())
        self.jobs[job.id] = job
        return self._copy(job)

    def update_job(self, job_id, updates):
        changes = updates.model_dump(exclude_unset=True)
        self._check_references(
            (self.companies, changes.get("company_id")), (self.users, changes.get("employer_id"))
        )
        return self._update(self.jobs, "Job", job_id, changes)

    # --- Applications ---
    def get_application(self, application_id):
        return self._copy(self.applications.get(application_id))

    def get_applications_by_job(self, job_id):
        found = [a for a in self.applications.values() if a.job_id == job_id]
        return self._copies(logic.sort_newest_first(found, attr="applied_at"))

    def get_applications_by_applicant(self, applicant_id):
        found = [a for a in self.applications.values() if a.applicant_id == applicant_id]
        return self._copies(logic.sort_newest_first(found, attr="applied_at"))

    def create_application(self, data):
        self._check_references((self.jobs, data.job_id), (self.users, data.applicant_id))
        if any(
            a.job_id == data.job_id and a.applicant_id == data.applicant_id
            for a in self.applications.values()
        ):
            raise DuplicateApplicationError()
        now = self.clock()
        application = schemas.Application(
            id=_new_id(), status="applied", applied_at=now, updated_at=now, **data.model_dump()
        )
        self.applications[application.id] = application
        return self._copy(application)

    def update_application(self, application_id, updates):
        changes = updates.model_dump(exclude_unset=True)
        changes["updated_at"] = self.clock()
        return self._update(self.applications, "Application", application_id, changes)

    # --- Messages ---
    def get_message(self, message_id):
        return self._copy(self.messages.get(message_id))

    def get_messages_by_user(self, user_id):
        found = [
            m for m in self.messages.values() if user_id in (m.sender_id, m.receiver_id)
        ]
        return self._copies(logic.sort_newest_first(found))

    def get_conversation(self, user1_id, user2_id):
        found = [
            m
            for m in self.messages.values()
            if (m.sender_id, m.receiver_id) in ((user1_id, user2_id), (user2_id, user1_id))
        ]
        return self._copies(logic.sort_oldest_first(found))

    def create_message(self, data):
        self._check_references(
            (self.users, data.sender_id),
            (self.users, data.receiver_id),
            (self.applications, data.application_id),
        )
        message = schemas.Message(
            id=_new_id(), is_read=False, created_at=self.clock(), **data.model_dump()
        )
        self.messages[message.id] = message
        return self._copy(message)

    def mark_message_as_read(self, message_id):
        return self._update(self.messages, "Message", message_id, {"is_read": True})

    # --- Experiences ---
    def get_experience(self, experience_id):
        return self._copy(self.experiences.get(experience_id))

    def get_experiences_by_user(self, user_id):
        found = sorted(
            (e for e in self.experiences.values() if e.user_id == user_id),
            key=lambda e: e.id,
        )
        found.sort(key=lambda e: e.start_date, reverse=True)
        return self._copies(found)

    def create_experience(self, data):
        self._check_references((self.users, data.user_id))
        experience = schemas.Experience(id=_new_id(), **data.model_dump())
        self.experiences[experience.id] = experience
        return self._copy(experience)

    def update_experience(self, experience_id, updates):
        return self._update(
            self.experiences, "Experience", experience_id, updates.model_dump(exclude_unset=True)
        )

    def delete_experience(self, experience_id):
        if self.experiences.pop(experience_id, None) is None:
            raise NotFoundError.for_entity("Experience", experience_id)

    # --- Stories ---
    def create_story(self, data):
        story = schemas.Story(
            id=_new_id(),
            name=data.name,
            email=data.email,
            role=data.role,
            title=data.title,
            content=data.story,
            created_at=self.clock(),
        )
        self.stories[story.id] = story
        return self._copy(story)

    def list_stories(self):
        return self._copies(logic.sort_newest_first(self.stories.values()))

    # --- Admin ---
    def get_stats(self, since):
        def newer(records, attr="created_at"):
            return sum(1 for r in records if getattr(r, attr) and getattr(r, attr) >= since)

        return schemas.MarketplaceStats(
            total_users=len(self.users),
            active_jobs=sum(1 for job in self.jobs.values() if job.is_active),
            total_companies=len(self.companies),
            total_applications=len(self.applications),
            new_users_this_week=newer(self.users.values()),
            new_jobs_this_week=newer(self.jobs.values()),
            new_companies_this_week=newer(self.companies.values()),
            new_applications_this_week=newer(self.applications.values(), attr="applied_at"),
        )
