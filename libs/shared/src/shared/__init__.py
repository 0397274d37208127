from .errors import (
    AuthenticationError,
    CircuitOpenError,
    ConflictError,
    ErrorKind,
    InternalError,
    NotFoundError,
    ServiceError,
    TransientNetworkError,
    UpstreamError,
    ValidationError,
)
from .schemas import ErrorResponse

__all__ = [
    "AuthenticationError",
    "CircuitOpenError",
    "ConflictError",
    "ErrorKind",
    "ErrorResponse",
    "InternalError",
    "NotFoundError",
    "ServiceError",
    "TransientNetworkError",
    "UpstreamError",
    "ValidationError",
]
