"""RFC 7807 error bodies and the exception handlers that produce them."""

import logging
import uuid
from http import HTTPStatus
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from taskhub.domain.errors import DomainError, ErrorKind, PaymentProcessorError
from taskhub.infra.logging import update_log_context

logger = logging.getLogger(__name__)

PROBLEM_TYPE_VALIDATION = "https://example.com/problems/validation-error"
PROBLEM_TYPE_DOMAIN = "https://example.com/problems/domain-error"
PROBLEM_TYPE_SERVER = "https://example.com/problems/server-error"

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.AUTHORIZATION: status.HTTP_403_FORBIDDEN,
    ErrorKind.STATE_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.UPSTREAM_FAILURE: status.HTTP_502_BAD_GATEWAY,
}

_LOCATION_PREFIXES = {"body", "query", "path"}


def _request_id_for(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
    request.state.request_id = request_id or str(uuid.uuid4())
    return request.state.request_id


def _default_type(status_code: int) -> str:
    if status_code == status.HTTP_422_UNPROCESSABLE_ENTITY:
        return PROBLEM_TYPE_VALIDATION
    return PROBLEM_TYPE_SERVER if status_code >= 500 else PROBLEM_TYPE_DOMAIN


def _phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def problem_details(
    request: Request,
    *,
    status: int,
    title: str | None,
    detail: str,
    errors: list[dict[str, Any]] | None = None,
    type_: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    request_id = _request_id_for(request)
    response = JSONResponse(
        status_code=status,
        media_type="application/problem+json",
        headers=headers,
        content={
            "type": type_ or _default_type(status),
            "title": title or _phrase(status),
            "status": status,
            "detail": detail,
            "request_id": request_id,
            "errors": errors or [],
        },
    )
    response.headers.setdefault("X-Request-ID", request_id)
    return response


def domain_error_response(request: Request, exc: DomainError) -> JSONResponse:
    errors = list(exc.errors or [])
    if isinstance(exc, PaymentProcessorError) and exc.processor_code:
        errors.append({"field": "processor", "message": exc.processor_code})
    return problem_details(
        request,
        status=STATUS_BY_KIND.get(exc.kind, status.HTTP_400_BAD_REQUEST),
        title=exc.title,
        detail=exc.detail,
        errors=errors,
        type_=exc.type or PROBLEM_TYPE_DOMAIN,
    )


def _field_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    fields = []
    for error in exc.errors():
        parts = [str(part) for part in error.get("loc", ()) if part not in _LOCATION_PREFIXES]
        fields.append({"field": ".".join(parts) or "body", "message": error.get("msg", "Invalid value")})
    return fields


def register_problem_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def on_request_validation(request: Request, exc: RequestValidationError):
        return problem_details(
            request,
            status=status.HTTP_422_UNPROCESSABLE_ENTITY,
            title="Validation Error",
            detail="Request validation failed",
            errors=_field_errors(exc),
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(DomainError)
    async def on_domain_error(request: Request, exc: DomainError):
        return domain_error_response(request, exc)

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else None
        return problem_details(
            request,
            status=exc.status_code,
            title=message or "HTTP Error",
            detail=message or "Request failed",
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        update_log_context(
            request_id=getattr(request.state, "request_id", None),
            path=request.url.path,
            status_code=500,
            error_type=type(exc).__name__,
        )
        logger.exception("unhandled_exception")
        return problem_details(
            request,
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )
