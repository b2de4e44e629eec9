"""
Structured errors raised by the lifecycle core.

Every error carries a stable ``kind`` (the category the caller branches on),
a machine-readable ``reason`` and an optional ``detail`` payload. The FastAPI
handlers registered by ``register_exception_handlers`` turn them into

    {"error": {"kind": ..., "reason": ..., "detail": ...}}

with an HTTP status derived from the kind.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)


class CoreError(Exception):
    kind = "Internal"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False

    def __init__(self, reason: str, detail: Optional[Any] = None):
        self.reason = reason
        self.detail = detail
        super().__init__(reason)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "reason": self.reason, "detail": self.detail}


class ValidationError(CoreError):
    kind = "ValidationError"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFound(CoreError):
    kind = "NotFound"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, entity: str, identifier: Any = None):
        super().__init__(f"{entity}_not_found", {"entity": entity, "id": identifier})


class OwnershipDenied(CoreError):
    kind = "OwnershipDenied"
    status_code = status.HTTP_403_FORBIDDEN


class PreconditionViolated(CoreError):
    kind = "PreconditionViolated"
    status_code = status.HTTP_400_BAD_REQUEST


class DocumentsIncomplete(PreconditionViolated):
    def __init__(self, missing: List[str]):
        super().__init__("documents_incomplete", {"missing": list(missing)})
        self.missing = list(missing)


class InvalidState(PreconditionViolated):
    def __init__(self, expected: Any, actual: Any):
        super().__init__("invalid_state", {"expected": expected, "actual": actual})


class CoApplicantRequired(PreconditionViolated):
    def __init__(self):
        super().__init__("co_applicant_required")


class ForbiddenTransition(PreconditionViolated):
    def __init__(self, current: Any, target: Any):
        super().__init__("forbidden_transition", {"from": current, "to": target})


class RejectionReasonRequired(PreconditionViolated):
    def __init__(self, target: Any = None):
        super().__init__("rejection_reason_required", {"status": target} if target else None)


class OverPaid(PreconditionViolated):
    def __init__(self, limit: float, attempted: float):
        super().__init__("over_paid", {"limit": limit, "attempted": attempted})


class MissingRequiredField(PreconditionViolated):
    def __init__(self, field: str):
        super().__init__("missing_required_field", {"field": field})
        self.field = field


class ProtectedRecord(CoreError):
    kind = "ProtectedRecord"
    status_code = status.HTTP_403_FORBIDDEN


class NotTestData(ProtectedRecord):
    def __init__(self, subject: Any = None):
        super().__init__("not_test_data", {"subject": subject} if subject is not None else None)


class Conflict(CoreError):
    kind = "Conflict"
    status_code = status.HTTP_409_CONFLICT


class DuplicateEmail(Conflict):
    def __init__(self, email: str, found_in: str):
        super().__init__("duplicate_email", {"email": email, "found_in": found_in})


class StoreUnavailable(CoreError):
    kind = "StoreUnavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class NotifierUnavailable(CoreError):
    kind = "NotifierUnavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class BlobUnavailable(CoreError):
    kind = "BlobUnavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


def _error_response(exc: CoreError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def register_exception_handlers(app: FastAPI) -> None:
    """Attach JSON handlers for core errors and the store faults they wrap."""

    @app.exception_handler(CoreError)
    async def core_error_handler(request: Request, exc: CoreError) -> JSONResponse:
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(level, "%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.reason)
        return _error_response(exc)

    @app.exception_handler(OperationalError)
    async def store_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
        return _error_response(StoreUnavailable("store_unavailable"))

    @app.exception_handler(StaleDataError)
    async def stale_data_handler(request: Request, exc: StaleDataError) -> JSONResponse:
        logger.warning("Concurrent update lost on %s %s: %s", request.method, request.url.path, exc)
        return _error_response(Conflict("concurrent_update"))
