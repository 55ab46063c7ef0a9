from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

import structlog

import schemas
from errors import DuplicateApplicationError, NotFoundError

if TYPE_CHECKING:
    from storage import Storage

# Set up logging
logger = structlog.get_logger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Job filtering
#
# Filters AND together across categories. Inside the skills list a job matches
# when ANY requested skill is a case-insensitive substring of ANY job skill.
# ---------------------------------------------------------------------------
def contains_ci(haystack: Optional[str], needle: str) -> bool:
    """Case-insensitive substring test; a missing haystack never matches."""
    if haystack is None:
        return False
    return needle.casefold() in haystack.casefold()


def matches_location(job: schemas.Job, location: Optional[str]) -> bool:
    return location is None or contains_ci(job.location, location)


def matches_job_type(job: schemas.Job, job_type: Optional[str]) -> bool:
    # Exact and case-sensitive: job types are a closed vocabulary
    return job_type is None or job.job_type == job_type


def matches_search(job: schemas.Job, search: Optional[str]) -> bool:
    if search is None:
        return True
    return (
        contains_ci(job.title, search)
        or contains_ci(job.description, search)
        or any(contains_ci(skill, search) for skill in job.skills or [])
    )


def matches_skills(job_skills: Optional[Sequence[str]], wanted: Optional[Sequence[str]]) -> bool:
    if not wanted:
        return True
    if not job_skills:
        return False
    return any(
        contains_ci(job_skill, skill) for skill in wanted for job_skill in job_skills
    )


def job_matches(job: schemas.Job, filters: schemas.JobFilters) -> bool:
    """Full predicate used by the in-memory adapter, active flag included."""
    return (
        job.is_active
        and matches_location(job, filters.location)
        and matches_job_type(job, filters.job_type)
        and matches_search(job, filters.search)
        and matches_skills(job.skills, filters.skills)
    )


def sort_newest_first(records: Iterable[T], attr: str = "created_at") -> List[T]:
    """Sort by ``attr`` descending, ties broken by ascending id."""
    ordered = sorted(records, key=lambda record: record.id)
    ordered.sort(key=lambda record: getattr(record, attr), reverse=True)
    return ordered


def sort_oldest_first(records: Iterable[T], attr: str = "created_at") -> List[T]:
    return sorted(records, key=lambda record: (getattr(record, attr), record.id))


# ---------------------------------------------------------------------------
# Enrichment: independent point lookups, missing references become None
# ---------------------------------------------------------------------------
def enrich_job(storage: Storage, job: schemas.Job) -> schemas.JobWithRelations:
    company = storage.get_company(job.company_id) if job.company_id else None
    employer = storage.get_user(job.employer_id) if job.employer_id else None
    return schemas.JobWithRelations(
        **job.model_dump(),
        company=company,
        employer=employer.public() if employer else None,
    )


def enrich_application(
    storage: Storage, application: schemas.Application
) -> schemas.ApplicationWithRelations:
    job = storage.get_job(application.job_id) if application.job_id else None
    applicant = storage.get_user(application.applicant_id) if application.applicant_id else None
    company = storage.get_company(job.company_id) if job and job.company_id else None
    return schemas.ApplicationWithRelations(
        **application.model_dump(),
        job=job,
        applicant=applicant.public() if applicant else None,
        company=company,
    )


# ---------------------------------------------------------------------------
# Writes that point at other records
# ---------------------------------------------------------------------------
def require_existing(lookup: Callable[[str], Any], entity: str, record_id: Optional[str]) -> None:
    """Raise NotFoundError when an id is set but ``lookup`` cannot find it."""
    if record_id is not None and lookup(record_id) is None:
        raise NotFoundError.for_entity(entity, record_id)


def create_company(storage: Storage, data: schemas.CompanyCreate) -> schemas.Company:
    require_existing(storage.get_user, "User", data.owner_id)
    company = storage.create_company(data)
    logger.info("Company created", company_id=company.id, owner_id=company.owner_id)
    return company


def _require_job_references(
    storage: Storage, company_id: Optional[str], employer_id: Optional[str]
) -> None:
    require_existing(storage.get_company, "Company", company_id)
    require_existing(storage.get_user, "User", employer_id)


def post_job(storage: Storage, data: schemas.JobCreate) -> schemas.Job:
    _require_job_references(storage, data.company_id, data.employer_id)
    job = storage.create_job(data)
    logger.info("Job posted", job_id=job.id, employer_id=job.employer_id)
    return job


def update_job(storage: Storage, job_id: str, updates: schemas.JobUpdate) -> schemas.Job:
    require_existing(storage.get_job, "Job", job_id)
    _require_job_references(storage, updates.company_id, updates.employer_id)
    return storage.update_job(job_id, updates)


def add_experience(storage: Storage, data: schemas.ExperienceCreate) -> schemas.Experience:
    require_existing(storage.get_user, "User", data.user_id)
    return storage.create_experience(data)


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------
def submit_application(storage: Storage, data: schemas.ApplicationCreate) -> schemas.Application:
    """Create an application, refusing a second one for the same job and applicant.

    The check-then-insert is not atomic; the relational schema backs it with a
    unique constraint that the database adapter reports as the same error.
    """
    require_existing(storage.get_job, "Job", data.job_id)
    require_existing(storage.get_user, "User", data.applicant_id)

    existing = storage.get_applications_by_job(data.job_id)
    if any(application.applicant_id == data.applicant_id for application in existing):
        logger.info(
            "Duplicate application rejected",
            job_id=data.job_id,
            applicant_id=data.applicant_id,
        )
        raise DuplicateApplicationError()

    application = storage.create_application(data)
    logger.info(
        "Application submitted",
        application_id=application.id,
        job_id=application.job_id,
        applicant_id=application.applicant_id,
    )
    return application


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------
def send_message(storage: Storage, data: schemas.MessageCreate) -> schemas.Message:
    for user_id in (data.sender_id, data.receiver_id):
        require_existing(storage.get_user, "User", user_id)
    require_existing(storage.get_application, "Application", data.application_id)
    message = storage.create_message(data)
    logger.info(
        "Message sent",
        message_id=message.id,
        sender_id=message.sender_id,
        receiver_id=message.receiver_id,
    )
    return message


def other_participant(message: schemas.Message, user_id: str) -> str:
    return message.receiver_id if message.sender_id == user_id else message.sender_id


def group_conversations(
    messages: Iterable[schemas.Message], user_id: str
) -> Dict[str, schemas.ConversationSummary]:
    """Reduce a flat message list into one summary per conversation partner.

    The input order is irrelevant: the kept preview is the message with the
    greatest ``created_at`` (the first one seen wins a tie), and the unread
    count only includes messages addressed to ``user_id``.
    """
    conversations: Dict[str, schemas.ConversationSummary] = {}
    for message in messages:
        other_id = other_participant(message, user_id)
        summary = conversations.get(other_id)
        if summary is None:
            summary = schemas.ConversationSummary(other_user_id=other_id, last_message=message)
            conversations[other_id] = summary
        elif message.created_at > summary.last_message.created_at:
            summary.last_message = message

        if not message.is_read and message.receiver_id == user_id:
            summary.unread_count += 1
    return conversations


def list_conversations(storage: Storage, user_id: str) -> List[schemas.ConversationSummary]:
    """Grouped conversations for ``user_id``, most recently active first."""
    conversations = group_conversations(storage.get_messages_by_user(user_id), user_id)
    for summary in conversations.values():
        other_user = storage.get_user(summary.other_user_id)
        summary.other_user = other_user.public() if other_user else None
    return sorted(
        conversations.values(),
        key=lambda summary: (summary.last_message.created_at, summary.last_message.id),
        reverse=True,
    )
