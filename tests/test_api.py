import asyncio

import pytest

import auth
import logic
from conftest import TEST_PASSWORD


def register(client, email="worker@example.com", **overrides):
    payload = {
        "email": email,
        "password": "secret123",
        "confirmPassword": "secret123",
        "firstName": "Ravi",
        "lastName": "Kumar",
        "userType": "job_seeker",
        "location": "Pune",
    }
    payload.update(overrides)
    return client.post("/api/auth/register", json=payload)


@pytest.fixture
def employer_with_job(test_client, make_user, make_job):
    employer = make_user(user_type="employer")
    response = test_client.post(
        "/api/companies",
        json={"name": "Voltworks", "location": "Pune", "ownerId": employer.id},
    )
    company_id = response.json()["id"]
    job = make_job(company_id=company_id, employer_id=employer.id)
    return employer, company_id, job


# --- Health / plumbing ---

def test_health(test_client):
    response = test_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_unknown_route_uses_error_envelope(test_client):
    response = test_client.get("/api/nothing-here")
    assert response.status_code == 404
    assert "message" in response.json()


def test_request_id_is_echoed(test_client):
    response = test_client.get("/health", headers={"X-Request-ID": "abc123"})
    assert response.headers["X-Request-ID"] == "abc123"
    assert test_client.get("/health").headers["X-Request-ID"]


# --- Auth ---

def test_register_and_login_never_return_password(test_client):
    response = register(test_client)
    assert response.status_code == 200
    user = response.json()["user"]
    assert user["email"] == "worker@example.com"
    assert user["userType"] == "job_seeker"
    assert "password" not in user

    response = test_client.post(
        "/api/auth/login", json={"email": "worker@example.com", "password": "secret123"}
    )
    assert response.status_code == 200
    assert response.json()["user"]["id"] == user["id"]
    assert "password" not in response.json()["user"]


def test_register_duplicate_email_is_rejected(test_client):
    register(test_client)
    response = register(test_client)
    assert response.status_code == 400
    assert response.json()["message"] == "User already exists"


def test_register_password_mismatch_is_rejected(test_client):
    response = register(test_client, confirmPassword="different")
    assert response.status_code == 400
    assert response.json()["message"] == "Validation error"


def test_register_short_password_is_rejected(test_client):
    response = register(test_client, password="abc", confirmPassword="abc")
    assert response.status_code == 400


def test_login_wrong_password_and_unknown_email(test_client, make_user):
    user = make_user()
    bad_password = test_client.post(
        "/api/auth/login", json={"email": user.email, "password": "not-it"}
    )
    unknown = test_client.post(
        "/api/auth/login", json={"email": "nobody@example.com", "password": TEST_PASSWORD}
    )
    assert bad_password.status_code == 401
    assert unknown.status_code == 401
    assert bad_password.json() == unknown.json() == {"message": "Invalid credentials"}


def test_login_with_factory_password(test_client, make_user):
    user = make_user()
    response = test_client.post("/api/auth/login", json={"email": user.email, "password": TEST_PASSWORD})
    assert response.status_code == 200


# --- Users ---

def test_get_and_update_user_profile(test_client, make_user):
    user = make_user()

    response = test_client.put(
        f"/api/users/{user.id}", json={"title": "Electrician", "skills": ["Wiring"]}
    )
    assert response.status_code == 200
    assert response.json()["title"] == "Electrician"

    fetched = test_client.get(f"/api/users/{user.id}").json()
    assert fetched["skills"] == ["Wiring"]
    assert fetched["firstName"] == user.first_name
    assert "password" not in fetched


def test_password_change_is_hashed(test_client, make_user):
    user = make_user()
    test_client.put(f"/api/users/{user.id}", json={"password": "brand-new-pass"})
    response = test_client.post(
        "/api/auth/login", json={"email": user.email, "password": "brand-new-pass"}
    )
    assert response.status_code == 200


def test_update_user_cannot_null_required_fields(test_client, make_user):
    user = make_user()
    response = test_client.put(f"/api/users/{user.id}", json={"firstName": None})
    assert response.status_code == 400


def test_update_user_cannot_take_another_email(test_client, make_user):
    first = make_user()
    second = make_user()
    response = test_client.put(f"/api/users/{second.id}", json={"email": first.email})
    assert response.status_code == 400


def test_unknown_user_is_404(test_client):
    response = test_client.get("/api/users/missing")
    assert response.status_code == 404
    assert response.json()["message"] == "User not found"


# --- Companies ---

def test_companies_by_owner(test_client, employer_with_job):
    employer, company_id, job = employer_with_job

    assert test_client.get("/api/companies").json() == []
    owned = test_client.get("/api/companies", params={"ownerId": employer.id}).json()
    assert [c["id"] for c in owned] == [company_id]

    jobs = test_client.get(f"/api/companies/{company_id}/jobs").json()
    assert [j["id"] for j in jobs] == [job.id]


def test_update_company(test_client, employer_with_job):
    _, company_id, _ = employer_with_job
    response = test_client.put(f"/api/companies/{company_id}", json={"industry": "Construction"})
    assert response.json()["industry"] == "Construction"
    assert response.json()["name"] == "Voltworks"
    assert test_client.put("/api/companies/missing", json={"industry": "x"}).status_code == 404


# --- Jobs ---

def test_job_listing_is_enriched_without_password(test_client, employer_with_job):
    employer, company_id, job = employer_with_job

    listing = test_client.get("/api/jobs").json()

    assert len(listing) == 1
    assert listing[0]["id"] == job.id
    assert listing[0]["company"]["id"] == company_id
    assert listing[0]["employer"]["id"] == employer.id
    assert "password" not in listing[0]["employer"]
    assert listing[0]["jobType"] == "full-time"


def test_job_filters_via_query_string(test_client, make_job):
    pune = make_job()
    mumbai = make_job(location="Mumbai", job_type="part-time", skills=["Design"], title="Designer")

    def listed(**params):
        return [j["id"] for j in test_client.get("/api/jobs", params=params).json()]

    assert listed() == [mumbai.id, pune.id]
    assert listed(location="pune") == [pune.id]
    assert listed(location="All Locations") == [mumbai.id, pune.id]
    assert listed(skills="elect") == [pune.id]
    assert listed(skills="design,elect") == [mumbai.id, pune.id]
    assert listed(skills=["design", "plumbing"]) == [mumbai.id]
    assert listed(jobType="part-time") == [mumbai.id]
    assert listed(jobType="All Jobs") == [mumbai.id, pune.id]
    assert listed(search="designer") == [mumbai.id]


def test_create_and_update_job(test_client, employer_with_job):
    employer, company_id, _ = employer_with_job
    payload = {
        "title": "Plumber",
        "description": "Fix pipes.",
        "requirements": "Own tools",
        "location": "Nashik",
        "jobType": "contract",
        "skills": ["Plumbing"],
        "companyId": company_id,
        "employerId": employer.id,
    }

    created = test_client.post("/api/jobs", json=payload)
    assert created.status_code == 200
    job_id = created.json()["id"]
    assert created.json()["isActive"] is True

    closed = test_client.put(f"/api/jobs/{job_id}", json={"isActive": False})
    assert closed.json()["isActive"] is False
    assert job_id not in [j["id"] for j in test_client.get("/api/jobs").json()]

    by_employer = test_client.get(f"/api/employers/{employer.id}/jobs").json()
    assert job_id in [j["id"] for j in by_employer]


def test_create_job_rejects_unknown_job_type(test_client):
    response = test_client.post(
        "/api/jobs",
        json={
            "title": "x",
            "description": "x",
            "requirements": "x",
            "location": "x",
            "jobType": "gig",
        },
    )
    assert response.status_code == 400
    assert response.json()["errors"]


def test_unknown_job_is_404(test_client):
    response = test_client.get("/api/jobs/missing")
    assert response.status_code == 404
    assert response.json() == {"message": "Job not found"}


# --- Applications ---

def test_apply_then_duplicate_is_rejected(test_client, make_user, employer_with_job):
    _, _, job = employer_with_job
    applicant = make_user()
    payload = {"jobId": job.id, "applicantId": applicant.id, "coverLetter": "Hire me"}

    first = test_client.post("/api/applications", json=payload)
    assert first.status_code == 200
    assert first.json()["status"] == "applied"

    second = test_client.post("/api/applications", json=payload)
    assert second.status_code == 400
    assert second.json()["message"] == "You have already applied to this job"

    listed = test_client.get("/api/applications", params={"jobId": job.id}).json()
    assert len(listed) == 1
    assert listed[0]["applicant"]["id"] == applicant.id
    assert "password" not in listed[0]["applicant"]
    assert listed[0]["job"]["id"] == job.id


def test_apply_to_unknown_job_is_404(test_client, make_user):
    applicant = make_user()
    response = test_client.post(
        "/api/applications", json={"jobId": "missing", "applicantId": applicant.id}
    )
    assert response.status_code == 404


def test_list_applications_requires_exactly_one_key(test_client):
    for params in ({}, {"jobId": "a", "applicantId": "b"}):
        response = test_client.get("/api/applications", params=params)
        assert response.status_code == 400
        assert response.json()["message"] == "Either applicantId or jobId is required"


def test_application_detail_and_status_update(test_client, make_user, employer_with_job):
    _, company_id, job = employer_with_job
    applicant = make_user()
    created = test_client.post(
        "/api/applications", json={"jobId": job.id, "applicantId": applicant.id}
    ).json()

    updated = test_client.put(f"/api/applications/{created['id']}", json={"status": "interview"})
    assert updated.status_code == 200
    assert updated.json()["status"] == "interview"

    detail = test_client.get(f"/api/applications/{created['id']}").json()
    assert detail["status"] == "interview"
    assert detail["company"]["id"] == company_id

    mine = test_client.get("/api/applications", params={"applicantId": applicant.id}).json()
    assert [a["id"] for a in mine] == [created["id"]]

    assert test_client.get("/api/applications/missing").status_code == 404


# --- Messages ---

def test_messages_flow(test_client, make_user):
    a = make_user()
    b = make_user()

    sent = test_client.post(
        "/api/messages", json={"senderId": a.id, "receiverId": b.id, "content": "Hello"}
    )
    assert sent.status_code == 200
    assert sent.json()["isRead"] is False
    test_client.post("/api/messages", json={"senderId": b.id, "receiverId": a.id, "content": "Hi"})

    thread = test_client.get("/api/messages", params={"userId": a.id, "otherUserId": b.id}).json()
    assert [m["content"] for m in thread] == ["Hello", "Hi"]

    inbox = test_client.get("/api/messages", params={"userId": b.id}).json()
    assert [m["content"] for m in inbox] == ["Hi", "Hello"]

    conversations = test_client.get("/api/messages/conversations", params={"userId": b.id}).json()
    assert len(conversations) == 1
    assert conversations[0]["otherUserId"] == a.id
    assert conversations[0]["unreadCount"] == 1
    assert conversations[0]["lastMessage"]["content"] == "Hi"

    read = test_client.put(f"/api/messages/{sent.json()['id']}/read")
    assert read.json()["isRead"] is True
    conversations = test_client.get("/api/messages/conversations", params={"userId": b.id}).json()
    assert conversations[0]["unreadCount"] == 0


def test_messages_require_user_id(test_client):
    for path in ("/api/messages", "/api/messages/conversations"):
        response = test_client.get(path)
        assert response.status_code == 400
        assert response.json()["message"] == "userId is required"


def test_empty_message_is_rejected(test_client, make_user):
    a = make_user()
    response = test_client.post(
        "/api/messages", json={"senderId": a.id, "receiverId": a.id, "content": ""}
    )
    assert response.status_code == 400


def test_mark_unknown_message_read_is_404(test_client):
    assert test_client.put("/api/messages/missing/read").status_code == 404


# --- Experiences ---

def test_experience_crud(test_client, make_user):
    user = make_user()
    older = test_client.post(
        "/api/experiences",
        json={"userId": user.id, "title": "Helper", "company": "A", "startDate": "2019-01"},
    ).json()
    newer = test_client.post(
        "/api/experiences",
        json={
            "userId": user.id,
            "title": "Electrician",
            "company": "B",
            "startDate": "2022-06",
            "isCurrent": True,
        },
    ).json()

    listed = test_client.get("/api/experiences", params={"userId": user.id}).json()
    assert [e["id"] for e in listed] == [newer["id"], older["id"]]

    updated = test_client.put(f"/api/experiences/{older['id']}", json={"endDate": "2022-05"})
    assert updated.json()["endDate"] == "2022-05"

    deleted = test_client.delete(f"/api/experiences/{older['id']}")
    assert deleted.json() == {"message": "Experience deleted successfully"}
    assert test_client.delete(f"/api/experiences/{older['id']}").status_code == 404
    assert test_client.put(f"/api/experiences/{older['id']}", json={"title": "x"}).status_code == 404

    assert test_client.get("/api/experiences").status_code == 400


# --- Stories ---

def test_submit_and_list_stories(test_client):
    payload = {
        "name": "Meera",
        "email": "meera@example.com",
        "role": "Job seeker",
        "title": "Found work in a week",
        "story": "I applied to three jobs and got two interviews.",
    }

    response = test_client.post("/api/submit-story", json=payload)
    assert response.status_code == 201
    assert response.json() == {"message": "Story submitted successfully"}

    stories = test_client.get("/api/stories").json()
    assert stories[0]["content"] == payload["story"]
    assert stories[0]["title"] == payload["title"]


def test_story_requires_every_field(test_client):
    response = test_client.post("/api/submit-story", json={"name": "Meera", "story": ""})
    assert response.status_code == 400
    assert response.json()["message"] == "Validation error"


# --- Admin ---

def test_admin_stats_counts_recent_items(test_client, make_user, make_job, clock):
    make_user()
    make_job()
    clock.advance(days=10)
    make_user()
    make_user(user_type="employer")
    make_job(is_active=False)

    stats = test_client.get("/api/admin/stats").json()

    assert stats["totalUsers"] == 3
    assert stats["newUsersThisWeek"] == 2
    assert stats["activeJobs"] == 1
    assert stats["newJobsThisWeek"] == 1
    assert stats["totalApplications"] == 0


def test_admin_users_are_public(test_client, make_user):
    make_user()
    users = test_client.get("/api/admin/users").json()
    assert len(users) == 1
    assert "password" not in users[0]


# --- References and timestamps ---

def test_writes_with_unknown_references_are_404(test_client, make_user, make_job):
    user = make_user()
    job = make_job()

    responses = {
        "company": test_client.post("/api/companies", json={"name": "X", "ownerId": "ghost"}),
        "job": test_client.post(
            "/api/jobs",
            json={
                "title": "Plumber",
                "description": "Fix pipes.",
                "requirements": "Own tools",
                "location": "Nashik",
                "jobType": "contract",
                "companyId": "ghost",
            },
        ),
        "job update": test_client.put(f"/api/jobs/{job.id}", json={"employerId": "ghost"}),
        "message": test_client.post(
            "/api/messages",
            json={"senderId": user.id, "receiverId": user.id, "applicationId": "ghost", "content": "hi"},
        ),
        "experience": test_client.post(
            "/api/experiences",
            json={"userId": "ghost", "title": "Helper", "company": "A", "startDate": "2020-01"},
        ),
    }

    assert {name: r.status_code for name, r in responses.items()} == {
        name: 404 for name in responses
    }
    assert test_client.get("/api/companies", params={"ownerId": "ghost"}).json() == []


def test_timestamps_are_serialized_as_utc(test_client, make_user, make_job):
    make_user()
    make_job()
    job = test_client.get("/api/jobs").json()[0]
    user = test_client.get("/api/admin/users").json()[0]

    assert job["createdAt"] == "2026-01-05T09:00:02Z"
    assert user["createdAt"].endswith("Z")


def test_async_write_endpoints_do_blocking_work_in_worker_threads(
    test_client, monkeypatch, make_user, make_job
):
    seen = {}

    def spying(module, name):
        real = getattr(module, name)

        def wrapper(*args, **kwargs):
            try:
                asyncio.get_running_loop()
                seen[name] = "event loop"
            except RuntimeError:
                seen[name] = "worker thread"
            return real(*args, **kwargs)

        monkeypatch.setattr(module, name, wrapper)

    for module, name in (
        (auth, "register_user"),
        (logic, "post_job"),
        (logic, "submit_application"),
        (logic, "send_message"),
    ):
        spying(module, name)

    user = make_user()
    job = make_job()
    register(test_client)
    test_client.post(
        "/api/jobs",
        json={
            "title": "Plumber",
            "description": "Fix pipes.",
            "requirements": "Own tools",
            "location": "Nashik",
            "jobType": "contract",
        },
    )
    test_client.post("/api/applications", json={"jobId": job.id, "applicantId": user.id})
    test_client.post(
        "/api/messages", json={"senderId": user.id, "receiverId": user.id, "content": "hi"}
    )

    assert seen == {
        "register_user": "worker thread",
        "post_job": "worker thread",
        "submit_application": "worker thread",
        "send_message": "worker thread",
    }
