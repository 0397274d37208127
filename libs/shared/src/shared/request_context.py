from __future__ import annotations

from uuid import uuid4

from fastapi import Request

REQUEST_ID_HEADER = "x-request-id"


def ensure_request_id(request: Request) -> str:
    """Return the caller's ``x-request-id`` or mint one, and pin it on ``request.state``."""
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
    request.state.request_id = request_id
    return request_id
