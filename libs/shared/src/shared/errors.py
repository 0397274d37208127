from __future__ import annotations

from enum import Enum

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .request_context import REQUEST_ID_HEADER
from .schemas import ErrorResponse


class ErrorKind(str, Enum):
    validation = "validation"
    authentication = "authentication"
    conflict = "conflict"
    not_found = "not_found"
    upstream = "upstream"
    transient_network = "transient_network"
    internal = "internal"


STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.validation: 400,
    ErrorKind.authentication: 401,
    ErrorKind.not_found: 404,
    ErrorKind.conflict: 409,
    ErrorKind.upstream: 502,
    ErrorKind.transient_network: 503,
    ErrorKind.internal: 500,
}


class ServiceError(Exception):
    """Base for every error a component reports to the HTTP boundary.

    The ``kind`` decides the response status; components never pick status
    codes themselves.
    """

    kind: ErrorKind = ErrorKind.internal

    def __init__(self, message: str, *, detail: str | dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]


class ValidationError(ServiceError):
    kind = ErrorKind.validation


class AuthenticationError(ServiceError):
    kind = ErrorKind.authentication


class ConflictError(ServiceError):
    kind = ErrorKind.conflict


class NotFoundError(ServiceError):
    kind = ErrorKind.not_found


class InternalError(ServiceError):
    kind = ErrorKind.internal


class UpstreamError(ServiceError):
    """Non-2xx (or ``result: error``) answer from the upstream chat service."""

    kind = ErrorKind.upstream

    def __init__(self, message: str, *, upstream_status: int | None = None, code: str | None = None) -> None:
        super().__init__(message, detail=code)
        self.upstream_status = upstream_status
        self.code = code

    @property
    def status_code(self) -> int:
        # Client errors from upstream are relayed as-is; anything else is a bad gateway.
        if self.upstream_status is not None and 400 <= self.upstream_status < 500:
            return self.upstream_status
        return STATUS_BY_KIND[self.kind]


class TransientNetworkError(ServiceError):
    kind = ErrorKind.transient_network


class CircuitOpenError(TransientNetworkError):
    pass


def _serialize_detail(detail: str | dict | list | None) -> str | None:
    if detail is None:
        return None
    if isinstance(detail, (str, int, float)):
        return str(detail)
    return str(detail)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER)


def error_response(status_code: int, error: str, detail: str | dict | list | None, request_id: str | None) -> JSONResponse:
    payload = ErrorResponse(error=error, detail=_serialize_detail(detail), request_id=request_id)
    return JSONResponse(status_code=status_code, content=payload.model_dump())


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return error_response(exc.status_code, error=exc.message, detail=exc.detail, request_id=_request_id(request))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return error_response(
        exc.status_code,
        error=str(exc.detail) if exc.detail else exc.__class__.__name__,
        detail=exc.detail,
        request_id=_request_id(request),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    return error_response(400, error="Validation failed", detail=", ".join(fields) or None, request_id=_request_id(request))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return error_response(500, error="Internal Server Error", detail=str(exc), request_id=_request_id(request))
