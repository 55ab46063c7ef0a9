from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Iterator, List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

import auth
import logic
import schemas
from database import SessionLocal, create_db_and_tables
from errors import (
    DuplicateApplicationError,
    MarketplaceError,
    NotFoundError,
    ValidationError,
)
from observability import init_observability, record_event
from request_id_middleware import RequestIdMiddleware
from settings import Settings, get_settings
from storage import DatabaseStorage, MemoryStorage, Storage


# Initialise observability before creating app
init_observability()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.storage_backend == "memory":
        # One store for the life of the process, handed to requests via get_storage
        app.state.memory_storage = MemoryStorage()
    else:
        create_db_and_tables()
    logger.info("Application started", storage_backend=settings.storage_backend)
    yield
    logger.info("Application stopped")


app = FastAPI(
    title="Job Marketplace",
    description="Backend API for the job marketplace: jobs, applications, messages and profiles",
    version="0.1.0",
    lifespan=lifespan,
)

# --- CORS Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestIdMiddleware)


# --- Storage dependency ---
def get_storage(request: Request) -> Iterator[Storage]:
    """Yield the configured storage backend for one request."""
    if get_settings().storage_backend == "memory":
        yield request.app.state.memory_storage
        return

    db = SessionLocal()
    try:
        yield DatabaseStorage(db)
    finally:
        db.close()


# --- Error handlers: every failure leaves as {"message", "errors"?} ---
def _error_response(status_code: int, message: str, errors: Optional[list] = None) -> JSONResponse:
    content = {"message": message}
    if errors is not None:
        content["errors"] = jsonable_encoder(errors)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error("Request failed", error=exc.message, exc_info=exc)
    else:
        logger.info("Request rejected", status_code=exc.status_code, error=exc.message)
    return _error_response(exc.status_code, exc.message, exc.errors)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    # ctx can hold the raw exception object, which is not JSON material
    errors = [{k: v for k, v in error.items() if k != "ctx"} for error in exc.errors()]
    logger.info("Request validation failed", error_count=len(errors))
    return _error_response(status.HTTP_400_BAD_REQUEST, "Validation error", errors)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", exc_info=exc)
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


def _require(value: Optional[str], message: str) -> str:
    if not value:
        raise ValidationError(message)
    return value


# --- Health ---
@app.get("/health", tags=["Health"])
def health(settings: Settings = Depends(get_settings)):
    return {"status": "ok", "storageBackend": settings.storage_backend}


# --- Auth Endpoints ---
@app.post("/api/auth/register", response_model=schemas.AuthResponse, tags=["Auth"])
async def register_endpoint(data: schemas.RegisterRequest, storage: Storage = Depends(get_storage)):
    # Hashing and the insert block, so they run off the event loop
    user = await run_in_threadpool(auth.register_user, storage, data)
    await record_event("users_registered", user_type=user.user_type)
    return schemas.AuthResponse(user=user)


@app.post("/api/auth/login", response_model=schemas.AuthResponse, tags=["Auth"])
def login_endpoint(credentials: schemas.LoginRequest, storage: Storage = Depends(get_storage)):
    return schemas.AuthResponse(user=auth.authenticate_user(storage, credentials))


# --- User Endpoints ---
@app.get("/api/users/{user_id}", response_model=schemas.PublicUser, tags=["Users"])
def get_user_endpoint(user_id: str, storage: Storage = Depends(get_storage)):
    user = storage.get_user(user_id)
    if not user:
        raise NotFoundError("User not found")
    return user.public()


@app.put("/api/users/{user_id}", response_model=schemas.PublicUser, tags=["Users"])
def update_user_endpoint(
    user_id: str, updates: schemas.UserUpdate, storage: Storage = Depends(get_storage)
):
    return auth.update_profile(storage, user_id, updates)


# --- Company Endpoints ---
@app.get("/api/companies", response_model=List[schemas.Company], tags=["Companies"])
def list_companies_endpoint(
    owner_id: Optional[str] = Query(None, alias="ownerId"),
    storage: Storage = Depends(get_storage),
):
    if not owner_id:
        return []
    return storage.get_companies_by_owner(owner_id)


@app.post("/api/companies", response_model=schemas.Company, tags=["Companies"])
def create_company_endpoint(data: schemas.CompanyCreate, storage: Storage = Depends(get_storage)):
    return logic.create_company(storage, data)


@app.get("/api/companies/{company_id}", response_model=schemas.Company, tags=["Companies"])
def get_company_endpoint(company_id: str, storage: Storage = Depends(get_storage)):
    company = storage.get_company(company_id)
    if not company:
        raise NotFoundError("Company not found")
    return company


@app.put("/api/companies/{company_id}", response_model=schemas.Company, tags=["Companies"])
def update_company_endpoint(
    company_id: str, updates: schemas.CompanyUpdate, storage: Storage = Depends(get_storage)
):
    return storage.update_company(company_id, updates)


@app.get(
    "/api/companies/{company_id}/jobs",
    response_model=List[schemas.JobWithRelations],
    tags=["Companies"],
)
def list_company_jobs_endpoint(company_id: str, storage: Storage = Depends(get_storage)):
    return [logic.enrich_job(storage, job) for job in storage.get_jobs_by_company(company_id)]


# --- Job Endpoints ---
@app.get("/api/jobs", response_model=List[schemas.JobWithRelations], tags=["Jobs"])
def list_jobs_endpoint(
    location: Optional[str] = None,
    skills: Optional[List[str]] = Query(None),
    job_type: Optional[str] = Query(None, alias="jobType"),
    search: Optional[str] = None,
    storage: Storage = Depends(get_storage),
):
    filters = schemas.JobFilters(location=location, skills=skills, job_type=job_type, search=search)
    jobs = storage.get_jobs(filters)
    logger.info("Jobs listed", filters=filters.model_dump(exclude_none=True), result_count=len(jobs))
    return [logic.enrich_job(storage, job) for job in jobs]


@app.get("/api/jobs/{job_id}", response_model=schemas.JobWithRelations, tags=["Jobs"])
def get_job_endpoint(job_id: str, storage: Storage = Depends(get_storage)):
    job = storage.get_job(job_id)
    if not job:
        raise NotFoundError("Job not found")
    return logic.enrich_job(storage, job)


@app.post("/api/jobs", response_model=schemas.Job, tags=["Jobs"])
async def create_job_endpoint(data: schemas.JobCreate, storage: Storage = Depends(get_storage)):
    job = await run_in_threadpool(logic.post_job, storage, data)
    await record_event("jobs_posted", job_type=job.job_type)
    return job


@app.put("/api/jobs/{job_id}", response_model=schemas.Job, tags=["Jobs"])
def update_job_endpoint(job_id: str, updates: schemas.JobUpdate, storage: Storage = Depends(get_storage)):
    return logic.update_job(storage, job_id, updates)


@app.get(
    "/api/employers/{employer_id}/jobs",
    response_model=List[schemas.JobWithRelations],
    tags=["Jobs"],
)
def list_employer_jobs_endpoint(employer_id: str, storage: Storage = Depends(get_storage)):
    return [logic.enrich_job(storage, job) for job in storage.get_jobs_by_employer(employer_id)]


# --- Application Endpoints ---
@app.get(
    "/api/applications",
    response_model=List[schemas.ApplicationWithRelations],
    tags=["Applications"],
)
def list_applications_endpoint(
    applicant_id: Optional[str] = Query(None, alias="applicantId"),
    job_id: Optional[str] = Query(None, alias="jobId"),
    storage: Storage = Depends(get_storage),
):
    if bool(applicant_id) == bool(job_id):
        raise ValidationError("Either applicantId or jobId is required")
    if applicant_id:
        applications = storage.get_applications_by_applicant(applicant_id)
    else:
        applications = storage.get_applications_by_job(job_id)
    return [logic.enrich_application(storage, application) for application in applications]


@app.get(
    "/api/applications/{application_id}",
    response_model=schemas.ApplicationWithRelations,
    tags=["Applications"],
)
def get_application_endpoint(application_id: str, storage: Storage = Depends(get_storage)):
    application = storage.get_application(application_id)
    if not application:
        raise NotFoundError("Application not found")
    return logic.enrich_application(storage, application)


@app.post("/api/applications", response_model=schemas.Application, tags=["Applications"])
async def create_application_endpoint(
    data: schemas.ApplicationCreate, storage: Storage = Depends(get_storage)
):
    try:
        application = await run_in_threadpool(logic.submit_application, storage, data)
    except DuplicateApplicationError:
        await record_event("applications_rejected_duplicate", job_id=data.job_id)
        raise
    await record_event("applications_submitted", job_id=application.job_id)
    return application


@app.put(
    "/api/applications/{application_id}",
    response_model=schemas.Application,
    tags=["Applications"],
)
def update_application_endpoint(
    application_id: str,
    updates: schemas.ApplicationUpdate,
    storage: Storage = Depends(get_storage),
):
    application = storage.update_application(application_id, updates)
    logger.info("Application updated", application_id=application_id, status=application.status)
    return application


# --- Message Endpoints ---
@app.get("/api/messages", response_model=List[schemas.Message], tags=["Messages"])
def list_messages_endpoint(
    user_id: Optional[str] = Query(None, alias="userId"),
    other_user_id: Optional[str] = Query(None, alias="otherUserId"),
    storage: Storage = Depends(get_storage),
):
    user_id = _require(user_id, "userId is required")
    if other_user_id:
        return storage.get_conversation(user_id, other_user_id)
    return storage.get_messages_by_user(user_id)


@app.get(
    "/api/messages/conversations",
    response_model=List[schemas.ConversationSummary],
    tags=["Messages"],
)
def list_conversations_endpoint(
    user_id: Optional[str] = Query(None, alias="userId"),
    storage: Storage = Depends(get_storage),
):
    return logic.list_conversations(storage, _require(user_id, "userId is required"))


@app.post("/api/messages", response_model=schemas.Message, tags=["Messages"])
async def create_message_endpoint(data: schemas.MessageCreate, storage: Storage = Depends(get_storage)):
    message = await run_in_threadpool(logic.send_message, storage, data)
    await record_event("messages_sent")
    return message


@app.put("/api/messages/{message_id}/read", response_model=schemas.Message, tags=["Messages"])
def mark_message_read_endpoint(message_id: str, storage: Storage = Depends(get_storage)):
    return storage.mark_message_as_read(message_id)


# --- Experience Endpoints ---
@app.get("/api/experiences", response_model=List[schemas.Experience], tags=["Experiences"])
def list_experiences_endpoint(
    user_id: Optional[str] = Query(None, alias="userId"),
    storage: Storage = Depends(get_storage),
):
    return storage.get_experiences_by_user(_require(user_id, "userId is required"))


@app.post("/api/experiences", response_model=schemas.Experience, tags=["Experiences"])
def create_experience_endpoint(data: schemas.ExperienceCreate, storage: Storage = Depends(get_storage)):
    return logic.add_experience(storage, data)


@app.put("/api/experiences/{experience_id}", response_model=schemas.Experience, tags=["Experiences"])
def update_experience_endpoint(
    experience_id: str,
    updates: schemas.ExperienceUpdate,
    storage: Storage = Depends(get_storage),
):
    return storage.update_experience(experience_id, updates)


@app.delete("/api/experiences/{experience_id}", response_model=schemas.MessageResponse, tags=["Experiences"])
def delete_experience_endpoint(experience_id: str, storage: Storage = Depends(get_storage)):
    storage.delete_experience(experience_id)
    logger.info("Experience deleted", experience_id=experience_id)
    return schemas.MessageResponse(message="Experience deleted successfully")


# --- Story Endpoints ---
@app.post(
    "/api/submit-story",
    response_model=schemas.MessageResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Stories"],
)
def submit_story_endpoint(data: schemas.StorySubmission, storage: Storage = Depends(get_storage)):
    story = storage.create_story(data)
    logger.info("Story submitted", story_id=story.id, role=story.role)
    return schemas.MessageResponse(message="Story submitted successfully")


@app.get("/api/stories", response_model=List[schemas.Story], tags=["Stories"])
def list_stories_endpoint(storage: Storage = Depends(get_storage)):
    return storage.list_stories()


# --- Admin Endpoints ---
@app.get("/api/admin/stats", response_model=schemas.MarketplaceStats, tags=["Admin"])
def admin_stats_endpoint(
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    since = storage.clock() - timedelta(days=settings.new_item_window_days)
    return storage.get_stats(since)


@app.get("/api/admin/users", response_model=List[schemas.PublicUser], tags=["Admin"])
def admin_users_endpoint(storage: Storage = Depends(get_storage)):
    return [user.public() for user in storage.list_users()]


@app.get("/api/admin/jobs", response_model=List[schemas.Job], tags=["Admin"])
def admin_jobs_endpoint(storage: Storage = Depends(get_storage)):
    return storage.get_jobs()


@app.get("/api/admin/companies", response_model=List[schemas.Company], tags=["Admin"])
def admin_companies_endpoint(storage: Storage = Depends(get_storage)):
    return storage.list_companies()


# --- Main execution --- (for running with uvicorn)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
