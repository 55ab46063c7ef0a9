"""Error taxonomy shared by the storage adapters and the HTTP layer.

Every error carries the HTTP status it maps to; ``main.py`` turns them into
``{"message": ..., "errors": [...]}`` responses.
"""
from typing import Any, List, Optional


class MarketplaceError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Any]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class ValidationError(MarketplaceError):
    status_code = 400
    default_message = "Validation error"


class NotFoundError(MarketplaceError):
    status_code = 404
    default_message = "Not found"

    @classmethod
    def for_entity(cls, entity: str, entity_id: str) -> "NotFoundError":
        return cls(f"{entity} not found", errors=[{"entity": entity, "id": entity_id}])


class ConflictError(MarketplaceError):
    status_code = 409
    default_message = "Conflict"


class DuplicateApplicationError(ConflictError):
    # The web client treats any 400 on submit as "show the message"
    status_code = 400
    default_message = "You have already applied to this job"


class AuthError(MarketplaceError):
    status_code = 401
    default_message = "Invalid credentials"


class InternalError(MarketplaceError):
    status_code = 500
