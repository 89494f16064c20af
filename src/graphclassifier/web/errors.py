"""FastAPI exception handlers producing the JSON response envelope.

Every API response has the shape {"success": bool, "data": ..., "error": str|null}.
Domain exceptions map to HTTP status codes here so route handlers can let
them propagate.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from graphclassifier.core.errors import (
    DatabaseError,
    EngineUnavailableError,
    InvalidRuleError,
    RuleNotFoundError,
    ThreadClassificationError,
    ThreadErrorKind,
)
from graphclassifier.core.logging import get_logger

logger = get_logger(__name__)

_THREAD_ERROR_STATUS = {
    ThreadErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ThreadErrorKind.MALFORMED_THREAD: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ThreadErrorKind.CANCELLED: status.HTTP_503_SERVICE_UNAVAILABLE,
    ThreadErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def envelope(data: Any = None, error: str | None = None) -> dict[str, Any]:
    """Wrap a payload in the API response envelope."""
    return {"success": error is None, "data": data, "error": error}


def error_response(status_code: int, message: str, data: Any = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope(data=data, error=message))


async def invalid_rule_handler(request: Request, exc: InvalidRuleError) -> JSONResponse:
    logger.info("rule_rejected", path=request.url.path, field=exc.field, reason=exc.reason)
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        str(exc),
        data={"field": exc.field, "reason": exc.reason},
    )


async def rule_not_found_handler(request: Request, exc: RuleNotFoundError) -> JSONResponse:
    return error_response(status.HTTP_404_NOT_FOUND, str(exc), data={"rule_id": exc.rule_id})


async def engine_unavailable_handler(
    request: Request, exc: EngineUnavailableError
) -> JSONResponse:
    logger.error("engine_unavailable", path=request.url.path, error=str(exc))
    return error_response(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc))


async def thread_error_handler(
    request: Request, exc: ThreadClassificationError
) -> JSONResponse:
    return error_response(_THREAD_ERROR_STATUS[exc.kind], str(exc), data=exc.to_dict())


async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    logger.error("database_error", path=request.url.path, error=str(exc))
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies (before any domain validation runs)."""
    errors = []
    for err in exc.errors():
        loc = " -> ".join(str(part) for part in err["loc"])
        errors.append(f"{loc}: {err['msg']}")
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "; ".join(errors) or "Invalid request",
    )


# Exception handler mapping for FastAPI app.add_exception_handler()
EXCEPTION_HANDLERS = {
    InvalidRuleError: invalid_rule_handler,
    RuleNotFoundError: rule_not_found_handler,
    EngineUnavailableError: engine_unavailable_handler,
    ThreadClassificationError: thread_error_handler,
    DatabaseError: database_error_handler,
    RequestValidationError: request_validation_handler,
}
