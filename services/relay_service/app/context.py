from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from shared.errors import AuthenticationError


async def _never_disconnected() -> bool:
    return False


@dataclass(frozen=True)
class RequestContext:
    """Identity and cancellation for one request, passed explicitly to core components."""

    user_id: int | None
    email: str | None = None
    request_id: str | None = None
    is_disconnected: Callable[[], Awaitable[bool]] = _never_disconnected

    def require_user_id(self) -> int:
        if self.user_id is None:
            raise AuthenticationError("User not authenticated")
        return self.user_id
