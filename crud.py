from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

import models
import schemas


def _apply_updates(row, updates: Dict[str, Any]) -> None:
    for field, value in updates.items():
        setattr(row, field, value)


def _save(db: Session, row):
    db.add(row)  # add works for updates too
    db.commit()
    db.refresh(row)
    return row


# --- User CRUD ---
def get_user_by_id(db: Session, user_id: str):
    """Get a user by their primary key ID."""
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_user_by_email(db: Session, email: str):
    return db.query(models.User).filter(models.User.email == email).first()


def create_user(db: Session, user: schemas.UserCreate, created_at: datetime):
    # The caller hands over an already hashed password
    fields = user.model_dump(include=set(schemas.UserCreate.model_fields))
    db_user = models.User(**fields, created_at=created_at)
    return _save(db, db_user)


def update_user(db: Session, user_id: str, updates: Dict[str, Any]):
    db_user = get_user_by_id(db, user_id)
    if not db_user:
        return None
    _apply_updates(db_user, updates)
    return _save(db, db_user)


def list_users(db: Session):
    return db.query(models.User).order_by(models.User.created_at.desc(), models.User.id).all()


# --- Company CRUD ---
def get_company(db: Session, company_id: str):
    return db.query(models.Company).filter(models.Company.id == company_id).first()


def get_companies_by_owner(db: Session, owner_id: str):
    return (
        db.query(models.Company)
        .filter(models.Company.owner_id == owner_id)
        .order_by(models.Company.created_at.desc(), models.Company.id)
        .all()
    )


def create_company(db: Session, company: schemas.CompanyCreate, created_at: datetime):
    return _save(db, models.Company(**company.model_dump(), created_at=created_at))


def update_company(db: Session, company_id: str, updates: Dict[str, Any]):
    db_company = get_company(db, company_id)
    if not db_company:
        return None
    _apply_updates(db_company, updates)
    return _save(db, db_company)


def list_companies(db: Session):
    return db.query(models.Company).order_by(models.Company.created_at.desc(), models.Company.id).all()


# --- Job CRUD ---
def get_job(db: Session, job_id: str):
    return db.query(models.Job).filter(models.Job.id == job_id).first()


def get_active_jobs(db: Session, location: Optional[str] = None, job_type: Optional[str] = None):
    """Active jobs narrowed by the filters SQL handles directly, newest first.

    Search and skills matching run in Python on the result: skills live in a
    JSON column whose array operators differ between SQLite and Postgres.
    """
    query = db.query(models.Job).filter(models.Job.is_active.is_(True))
    if location:
        query = query.filter(models.Job.location.icontains(location, autoescape=True))
    if job_type:
        query = query.filter(models.Job.job_type == job_type)
    return query.order_by(models.Job.created_at.desc(), models.Job.id).all()


def get_jobs_by_employer(db: Session, employer_id: str):
    return (
        db.query(models.Job)
        .filter(models.Job.employer_id == employer_id)
        .order_by(models.Job.created_at.desc(), models.Job.id)
        .all()
    )


def get_jobs_by_company(db: Session, company_id: str):
    return (
        db.query(models.Job)
        .filter(models.Job.company_id == company_id)
        .order_by(models.Job.created_at.desc(), models.Job.id)
        .all()
    )


def create_job(db: Session, job: schemas.JobCreate, created_at: datetime):
    return _save(db, models.Job(**job.model_dump(), created_at=created_at))


def update_job(db: Session, job_id: str, updates: Dict[str, Any]):
    db_job = get_job(db, job_id)
    if not db_job:
        return None
    _apply_updates(db_job, updates)
    return _save(db, db_job)


# --- Application CRUD ---
def get_application(db: Session, application_id: str):
    return db.query(models.Application).filter(models.Application.id == application_id).first()


def get_applications_by_job(db: Session, job_id: str):
    return (
        db.query(models.Application)
        .filter(models.Application.job_id == job_id)
        .order_by(models.Application.applied_at.desc(), models.Application.id)
        .all()
    )


def get_applications_by_applicant(db: Session, applicant_id: str):
    return (
        db.query(models.Application)
        .filter(models.Application.applicant_id == applicant_id)
        .order_by(models.Application.applied_at.desc(), models.Application.id)
        .all()
    )


def get_application_for_pair(db: Session, job_id: str, applicant_id: str):
    return (
        db.query(models.Application)
        .filter(
            models.Application.job_id == job_id,
            models.Application.applicant_id == applicant_id,
        )
        .first()
    )


def create_application(db: Session, application: schemas.ApplicationCreate, now: datetime):
    db_application = models.Application(
        **application.model_dump(),
        status="applied",
        applied_at=now,
        updated_at=now,
    )
    return _save(db, db_application)


def update_application(db: Session, application_id: str, updates: Dict[str, Any], now: datetime):
    db_application = get_application(db, application_id)
    if not db_application:
        return None
    _apply_updates(db_application, updates)
    db_application.updated_at = now
    return _save(db, db_application)


# --- Message CRUD ---
def get_message(db: Session, message_id: str):
    return db.query(models.Message).filter(models.Message.id == message_id).first()


def get_messages_by_user(db: Session, user_id: str):
    """Everything the user sent or received, newest first (inbox order)."""
    return (
        db.query(models.Message)
        .filter(or_(models.Message.sender_id == user_id, models.Message.receiver_id == user_id))
        .order_by(models.Message.created_at.desc(), models.Message.id)
        .all()
    )


def get_conversation(db: Session, user1_id: str, user2_id: str):
    """Messages exchanged between two users, oldest first (reading order)."""
    return (
        db.query(models.Message)
        .filter(
            or_(
                and_(models.Message.sender_id == user1_id, models.Message.receiver_id == user2_id),
                and_(models.Message.sender_id == user2_id, models.Message.receiver_id == user1_id),
            )
        )
        .order_by(models.Message.created_at.asc(), models.Message.id)
        .all()
    )


def create_message(db: Session, message: schemas.MessageCreate, created_at: datetime):
    return _save(db, models.Message(**message.model_dump(), is_read=False, created_at=created_at))


def mark_message_as_read(db: Session, message_id: str):
    db_message = get_message(db, message_id)
    if not db_message:
        return None
    db_message.is_read = True
    return _save(db, db_message)


# --- Experience CRUD ---
def get_experience(db: Session, experience_id: str):
    return db.query(models.Experience).filter(models.Experience.id == experience_id).first()


def get_experiences_by_user(db: Session, user_id: str):
    return (
        db.query(models.Experience)
        .filter(models.Experience.user_id == user_id)
        .order_by(models.Experience.start_date.desc(), models.Experience.id)
        .all()
    )


def create_experience(db: Session, experience: schemas.ExperienceCreate):
    return _save(db, models.Experience(**experience.model_dump()))


def update_experience(db: Session, experience_id: str, updates: Dict[str, Any]):
    db_experience = get_experience(db, experience_id)
    if not db_experience:
        return None
    _apply_updates(db_experience, updates)
    return _save(db, db_experience)


def delete_experience(db: Session, experience_id: str) -> bool:
    db_experience = get_experience(db, experience_id)
    if not db_experience:
        return False
    db.delete(db_experience)
    db.commit()
    return True


# --- Story CRUD ---
def create_story(db: Session, submission: schemas.StorySubmission, created_at: datetime):
    db_story = models.Story(
        name=submission.name,
        email=submission.email,
        role=submission.role,
        title=submission.title,
        content=submission.story,
        created_at=created_at,
    )
    return _save(db, db_story)


def list_stories(db: Session):
    return db.query(models.Story).order_by(models.Story.created_at.desc(), models.Story.id).all()


# --- Aggregates ---
def count_rows(db: Session, model, *criteria) -> int:
    return db.query(func.count(model.id)).filter(*criteria).scalar() or 0
