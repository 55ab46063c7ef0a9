import uuid

from sqlalchemy.orm import relationship
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    email = Column(String, unique=True, index=True, nullable=False)
    password = Column(String, nullable=False)  # werkzeug password hash, never the raw value
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    user_type = Column(String, nullable=False)  # job_seeker | employer | admin
    location = Column(String, nullable=True)
    profile_photo = Column(String, nullable=True)
    title = Column(String, nullable=True)
    bio = Column(Text, nullable=True)
    skills = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    companies = relationship("Company", back_populates="owner")
    experiences = relationship("Experience", back_populates="user")


class Company(Base):
    __tablename__ = "companies"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    website = Column(String, nullable=True)
    location = Column(String, nullable=True)
    size = Column(String, nullable=True)
    industry = Column(String, nullable=True)
    logo = Column(String, nullable=True)
    owner_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    owner = relationship("User", back_populates="companies")
    jobs = relationship("Job", back_populates="company")


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    requirements = Column(Text, nullable=False)
    location = Column(String, nullable=False)
    job_type = Column(String, nullable=False)  # full-time | part-time | contract | remote
    salary_min = Column(Integer, nullable=True)
    salary_max = Column(Integer, nullable=True)
    skills = Column(JSON, nullable=False, default=list)
    company_id = Column(String(36), ForeignKey("companies.id"), index=True, nullable=True)
    employer_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    company = relationship("Company", back_populates="jobs")


class Application(Base):
    __tablename__ = "applications"
    __table_args__ = (
        UniqueConstraint("job_id", "applicant_id", name="uq_applications_job_applicant"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    job_id = Column(String(36), ForeignKey("jobs.id"), index=True, nullable=False)
    applicant_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    status = Column(String, nullable=False, default="applied")
    cover_letter = Column(Text, nullable=True)
    resume = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    applied_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=_new_id)
    sender_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    receiver_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    application_id = Column(String(36), ForeignKey("applications.id"), nullable=True)
    content = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


class Experience(Base):
    __tablename__ = "experiences"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    title = Column(String, nullable=False)
    company = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    start_date = Column(String, nullable=False)
    end_date = Column(String, nullable=True)
    is_current = Column(Boolean, nullable=False, default=False)

    user = relationship("User", back_populates="experiences")


class Story(Base):
    __tablename__ = "stories"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    role = Column(String(255), nullable=False)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
