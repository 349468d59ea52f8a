"""FastAPI exception handlers producing ``{error, message, detail}`` bodies."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from knowledge_search.errors import (
    ConversationNotFound,
    ConversationWriteConflict,
    EmptyQuery,
    KnowledgeSearchError,
    SynthesisUnavailable,
)

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 1

DEFAULT_ERRORS: dict[int, tuple[str, str]] = {
    status.HTTP_400_BAD_REQUEST: ("validation_error", "Invalid request payload"),
    status.HTTP_401_UNAUTHORIZED: ("unauthorized", "Caller identity required"),
    status.HTTP_403_FORBIDDEN: ("forbidden", "Outside the caller's scope"),
    status.HTTP_404_NOT_FOUND: ("not_found", "Resource not found"),
    status.HTTP_409_CONFLICT: ("conflict", "Concurrent write conflict"),
    status.HTTP_503_SERVICE_UNAVAILABLE: ("unavailable", "Service temporarily unavailable"),
    status.HTTP_500_INTERNAL_SERVER_ERROR: ("internal_error", "Internal server error"),
}

_STATUS_BY_ERROR: dict[type[KnowledgeSearchError], int] = {
    EmptyQuery: status.HTTP_400_BAD_REQUEST,
    ConversationNotFound: status.HTTP_404_NOT_FOUND,
    ConversationWriteConflict: status.HTTP_409_CONFLICT,
    SynthesisUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _normalize_error(status_code: int, detail: Any) -> tuple[str, str, dict[str, Any] | None]:
    default_error, default_message = DEFAULT_ERRORS.get(
        status_code, DEFAULT_ERRORS[status.HTTP_500_INTERNAL_SERVER_ERROR]
    )
    if isinstance(detail, dict):
        error = detail.get("error", default_error)
        message = detail.get("message", default_message)
        detail_payload = detail.get("detail")
        if detail_payload is None:
            remainder = {k: v for k, v in detail.items() if k not in {"error", "message", "detail"}}
            detail_payload = remainder or None
        return error, message, detail_payload
    if isinstance(detail, str) and detail:
        return default_error, detail, None
    return default_error, default_message, None


def _response(status_code: int, detail: Any, headers: dict[str, str] | None = None) -> JSONResponse:
    error, message, extra = _normalize_error(status_code, detail)
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "detail": extra},
        headers=headers,
    )


def status_for(exc: KnowledgeSearchError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def knowledge_search_exception_handler(
    request: Request, exc: KnowledgeSearchError
) -> JSONResponse:
    status_code = status_for(exc)
    headers = None
    if exc.retryable and status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}
    if status_code >= 500:
        logger.warning("%s on %s: %s", exc.error_code, request.url.path, exc)
    return _response(
        status_code,
        {"error": exc.error_code, "message": str(exc), "detail": {"retryable": exc.retryable}},
        headers,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return _response(status.HTTP_400_BAD_REQUEST, {"detail": {"errors": exc.errors()}})


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _response(exc.status_code, exc.detail, getattr(exc, "headers", None))


async def internal_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception: %s", exc)
    return _response(status.HTTP_500_INTERNAL_SERVER_ERROR, None)


def register_error_handlers(app: FastAPI) -> None:
    """Attach shared exception handlers to the FastAPI application."""
    app.add_exception_handler(KnowledgeSearchError, knowledge_search_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, internal_exception_handler)
