import pytest

import logic
import schemas
from errors import DuplicateApplicationError, NotFoundError, ValidationError


@pytest.fixture
def posting(storage, make_user, make_job):
    """An employer, their company and one job posted under it."""
    employer = make_user(user_type="employer")
    company = storage.create_company(
        schemas.CompanyCreate(name="Voltworks", location="Pune", owner_id=employer.id)
    )
    job = make_job(company_id=company.id, employer_id=employer.id)
    return {"employer": employer, "company": company, "job": job}


def apply(storage, job_id, applicant_id, **extra):
    data = schemas.ApplicationCreate(job_id=job_id, applicant_id=applicant_id, **extra)
    return logic.submit_application(storage, data)


# --- Dedup guard ---

def test_second_application_for_same_pair_is_rejected(storage, make_user, posting):
    # 1. Arrange
    job = posting["job"]
    applicant_p = make_user()
    applicant_q = make_user()

    # 2. Act / Assert
    first = apply(storage, job.id, applicant_p.id, cover_letter="Hire me")
    assert first.status == "applied"
    assert first.applied_at == first.updated_at

    with pytest.raises(DuplicateApplicationError) as exc_info:
        apply(storage, job.id, applicant_p.id, cover_letter="Hire me")
    assert exc_info.value.status_code == 400

    apply(storage, job.id, applicant_q.id)

    # 3. Assert
    applications = storage.get_applications_by_job(job.id)
    assert len(applications) == 2
    assert {a.applicant_id for a in applications} == {applicant_p.id, applicant_q.id}


def test_same_applicant_may_apply_to_different_jobs(storage, make_user, make_job, posting):
    applicant = make_user()
    other_job = make_job(title="Wiring Inspector")

    apply(storage, posting["job"].id, applicant.id)
    apply(storage, other_job.id, applicant.id)

    mine = storage.get_applications_by_applicant(applicant.id)
    assert [a.job_id for a in mine] == [other_job.id, posting["job"].id]


def test_application_to_unknown_job_is_not_found(storage, make_user):
    applicant = make_user()
    with pytest.raises(NotFoundError):
        apply(storage, "no-such-job", applicant.id)
    assert storage.get_applications_by_applicant(applicant.id) == []


def test_application_by_unknown_applicant_is_not_found(storage, posting):
    with pytest.raises(NotFoundError):
        apply(storage, posting["job"].id, "no-such-user")


def test_store_itself_rejects_a_duplicate_pair(storage, make_user, posting):
    """Two inserts that both got past the submission check still cannot create a duplicate."""
    applicant = make_user()
    data = schemas.ApplicationCreate(job_id=posting["job"].id, applicant_id=applicant.id)
    storage.create_application(data)

    with pytest.raises(DuplicateApplicationError):
        storage.create_application(data)
    assert len(storage.get_applications_by_job(posting["job"].id)) == 1


@pytest.mark.parametrize("storage", ["database"], indirect=True)
def test_session_usable_after_duplicate_insert(storage, make_user, posting):
    applicant = make_user()
    data = schemas.ApplicationCreate(job_id=posting["job"].id, applicant_id=applicant.id)
    storage.create_application(data)
    with pytest.raises(DuplicateApplicationError):
        storage.create_application(data)

    # The failed insert was rolled back, later work goes through
    assert storage.get_user(applicant.id) is not None
    storage.create_company(schemas.CompanyCreate(name="After"))


def test_store_reports_dangling_references_not_duplicates(storage, make_user, posting):
    applicant = make_user()

    with pytest.raises(ValidationError):
        storage.create_application(
            schemas.ApplicationCreate(job_id="no-such-job", applicant_id=applicant.id)
        )
    with pytest.raises(ValidationError):
        storage.create_application(
            schemas.ApplicationCreate(job_id=posting["job"].id, applicant_id="no-such-user")
        )

    # Nothing was stored and the pair can still apply
    assert storage.get_applications_by_job(posting["job"].id) == []
    apply(storage, posting["job"].id, applicant.id)


# --- Updates ---

def test_update_changes_status_and_bumps_updated_at(storage, make_user, posting):
    applicant = make_user()
    application = apply(storage, posting["job"].id, applicant.id)

    updated = storage.update_application(
        application.id, schemas.ApplicationUpdate(status="interview", notes="Call Tuesday")
    )

    assert updated.status == "interview"
    assert updated.notes == "Call Tuesday"
    assert updated.updated_at > application.updated_at
    assert updated.applied_at == application.applied_at


def test_update_unknown_application_is_not_found(storage):
    with pytest.raises(NotFoundError):
        storage.update_application("missing", schemas.ApplicationUpdate(status="rejected"))


def test_status_must_be_known():
    with pytest.raises(ValueError):
        schemas.ApplicationUpdate(status="hired")
    with pytest.raises(ValueError):
        schemas.ApplicationUpdate(status=None)


# --- Enrichment ---

def test_enriched_application_carries_job_company_and_public_applicant(storage, make_user, posting):
    applicant = make_user(location="Pune", skills=["Wiring"])
    application = apply(storage, posting["job"].id, applicant.id)

    enriched = logic.enrich_application(storage, application)

    assert enriched.job.id == posting["job"].id
    assert enriched.company.id == posting["company"].id
    assert enriched.applicant.id == applicant.id
    assert isinstance(enriched.applicant, schemas.PublicUser)
    assert not isinstance(enriched.applicant, schemas.User)
    assert "password" not in enriched.model_dump(by_alias=True)["applicant"]


def test_enriched_job_resolves_missing_references_to_none(storage, clock):
    # Built by hand: the store itself refuses dangling ids
    job = schemas.Job(
        id="orphan",
        title="Site Electrician",
        description="d",
        requirements="r",
        location="Pune",
        job_type="full-time",
        company_id="gone",
        employer_id="gone",
        created_at=clock(),
    )
    enriched = logic.enrich_job(storage, job)
    assert enriched.company is None
    assert enriched.employer is None


def test_enriched_job_never_exposes_employer_password(storage, posting):
    enriched = logic.enrich_job(storage, posting["job"])
    dumped = enriched.model_dump(by_alias=True)
    assert dumped["employer"]["id"] == posting["employer"].id
    assert "password" not in dumped["employer"]
    assert dumped["company"]["name"] == "Voltworks"
