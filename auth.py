"""Credential handling for the marketplace.

This module owns every touch of a password:
1. Hashing on registration and on profile updates (werkzeug scrypt/pbkdf2).
2. Verifying a login attempt against the stored hash.
3. Projecting users to ``schemas.PublicUser`` before they are returned.

There is no session or token issuance; the web client keeps the returned
user object and sends ids with each request.
"""
from __future__ import annotations

import structlog
from werkzeug.security import check_password_hash, generate_password_hash

import schemas
from errors import AuthError, ValidationError
from settings import get_settings
from storage import Storage

logger = structlog.get_logger(__name__)


def hash_password(password: str) -> str:
    return generate_password_hash(password, method=get_settings().password_hash_method)


def verify_password(password: str, password_hash: str) -> bool:
    return check_password_hash(password_hash, password)


def register_user(storage: Storage, request: schemas.RegisterRequest) -> schemas.PublicUser:
    """Create a user from a registration form. Raises ValidationError if the email is taken."""
    if storage.get_user_by_email(request.email):
        logger.info("Registration rejected, email in use", email=request.email)
        raise ValidationError("User already exists")

    user_create = schemas.UserCreate(
        **request.model_dump(exclude={"password", "confirm_password"}),
        password=hash_password(request.password),
    )
    user = storage.create_user(user_create)
    logger.info("User registered", user_id=user.id, user_type=user.user_type)
    return user.public()


def authenticate_user(storage: Storage, credentials: schemas.LoginRequest) -> schemas.PublicUser:
    """Return the public profile for valid credentials, AuthError otherwise."""
    user = storage.get_user_by_email(credentials.email)
    # Same message for unknown email and wrong password
    if not user or not verify_password(credentials.password, user.password):
        logger.warning("Login failed", email=credentials.email)
        raise AuthError()
    logger.info("Login succeeded", user_id=user.id)
    return user.public()


def update_profile(
    storage: Storage, user_id: str, updates: schemas.UserUpdate
) -> schemas.PublicUser:
    """Apply a partial profile update, re-hashing a new password and keeping emails unique."""
    if "email" in updates.model_fields_set and updates.email:
        owner = storage.get_user_by_email(updates.email)
        if owner and owner.id != user_id:
            raise ValidationError("User already exists")
    if "password" in updates.model_fields_set and updates.password:
        updates = updates.model_copy(update={"password": hash_password(updates.password)})
    return storage.update_user(user_id, updates).public()
