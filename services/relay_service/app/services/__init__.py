"""Service-layer components for the relay."""

from .credentials import CredentialResolver
from .event_relay import EventRelay, PollOutcome, PollResult, RelayState
from .refresh_tokens import RefreshTokenManager, Rotation, generate_token, hash_token
from .upstream import CircuitBreaker, CircuitState, UpstreamClient, UpstreamIdentity

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "CredentialResolver",
    "EventRelay",
    "PollOutcome",
    "PollResult",
    "RefreshTokenManager",
    "RelayState",
    "Rotation",
    "UpstreamClient",
    "UpstreamIdentity",
    "generate_token",
    "hash_token",
]
