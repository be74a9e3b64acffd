from __future__ import annotations

"""API error envelope and FastAPI exception handlers.

Every error response has the shape {"error": {"code", "message", ...}}. Stack
traces are attached only outside production, and unclassified errors never
leak their message in production.
"""

from typing import Any, Dict, Optional
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from src.backend.logging_utils import get_logger, is_prod_env
from src.ingest.commit import CommitEligibilityError, DuplicateCommitError
from src.ingest.state import InvalidTransitionError

logger = get_logger("backend.errors")

VALIDATION_ERROR = "VALIDATION_ERROR"
NOT_FOUND = "NOT_FOUND"
INVALID_STATE = "INVALID_STATE"
UNAUTHORIZED = "UNAUTHORIZED"
FORBIDDEN = "FORBIDDEN"
CONFLICT = "CONFLICT"
PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
INTERNAL_ERROR = "INTERNAL_ERROR"

_HTTP_STATUS_CODES = {
    400: VALIDATION_ERROR,
    401: UNAUTHORIZED,
    403: FORBIDDEN,
    404: NOT_FOUND,
    409: CONFLICT,
    413: PAYLOAD_TOO_LARGE,
}


class ApiError(Exception):
    """An error with a stable machine code that is safe to show to clients."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details


def error_body(
    code: str,
    message: str,
    *,
    details: Optional[Dict[str, Any]] = None,
    exc: Optional[BaseException] = None,
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    if exc is not None and not is_prod_env():
        error["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return {"error": error}


def _respond(status_code: int, body: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body)


async def _api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return _respond(exc.status_code, error_body(exc.code, exc.message, details=exc.details, exc=exc))


async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code = _HTTP_STATUS_CODES.get(exc.status_code, INTERNAL_ERROR)
    return _respond(exc.status_code, error_body(code, str(exc.detail)))


async def _validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = {"errors": [dict(loc=list(e.get("loc", ())), msg=e.get("msg")) for e in exc.errors()]}
    return _respond(422, error_body(VALIDATION_ERROR, "Request validation failed.", details=details))


async def _transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
    details = {
        "dimension": exc.dimension,
        "from": exc.from_state,
        "to": exc.to_state,
        "allowed": sorted(exc.allowed),
    }
    return _respond(409, error_body(INVALID_STATE, str(exc), details=details, exc=exc))


async def _eligibility_handler(request: Request, exc: CommitEligibilityError) -> JSONResponse:
    details = {"status": exc.status.value if exc.status is not None else None}
    return _respond(409, error_body(INVALID_STATE, str(exc), details=details, exc=exc))


async def _duplicate_handler(request: Request, exc: DuplicateCommitError) -> JSONResponse:
    return _respond(409, error_body(exc.code.value, str(exc), exc=exc))


async def _unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error path=%s error=%s", request.url.path, exc)
    message = "Internal server error" if is_prod_env() else str(exc) or type(exc).__name__
    return _respond(500, error_body(INTERNAL_ERROR, message, exc=exc))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, _api_error_handler)
    app.add_exception_handler(HTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_handler)
    app.add_exception_handler(InvalidTransitionError, _transition_handler)
    app.add_exception_handler(CommitEligibilityError, _eligibility_handler)
    app.add_exception_handler(DuplicateCommitError, _duplicate_handler)
    app.add_exception_handler(Exception, _unhandled_handler)
