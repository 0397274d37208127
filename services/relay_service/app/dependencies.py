from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import AuthenticationError
from shared.request_context import ensure_request_id

from .context import RequestContext
from .core.security import AccessTokenClaims, AccessTokenIssuer
from .core.vault import SecretVault
from .db.session import async_session_factory
from .services.credentials import CredentialResolver
from .services.refresh_tokens import RefreshTokenManager
from .services.upstream import CircuitBreaker, UpstreamClient, build_http_client
from .settings import RelaySettings


@dataclass(frozen=True)
class ServiceComponents:
    """Process-wide collaborators built once from settings and shared by all requests."""

    settings: RelaySettings
    vault: SecretVault
    token_issuer: AccessTokenIssuer
    refresh_tokens: RefreshTokenManager
    credentials: CredentialResolver
    upstream: UpstreamClient


def build_components(settings: RelaySettings) -> ServiceComponents:
    vault = SecretVault(settings.encryption_key)
    breaker = CircuitBreaker(
        failure_threshold=settings.circuit_failure_threshold,
        reset_timeout=settings.circuit_reset_seconds,
    )
    upstream = UpstreamClient(
        build_http_client(settings),
        breaker=breaker,
        max_retries=settings.upstream_max_retries,
        backoff_base=settings.upstream_backoff_base_seconds,
    )
    return ServiceComponents(
        settings=settings,
        vault=vault,
        token_issuer=AccessTokenIssuer.from_settings(settings),
        refresh_tokens=RefreshTokenManager.from_settings(settings),
        credentials=CredentialResolver(vault),
        upstream=upstream,
    )


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        yield session


def get_components(request: Request) -> ServiceComponents:
    return request.app.state.components


def get_settings(components: ServiceComponents = Depends(get_components)) -> RelaySettings:
    return components.settings


def get_token_issuer(components: ServiceComponents = Depends(get_components)) -> AccessTokenIssuer:
    return components.token_issuer


def get_refresh_tokens(components: ServiceComponents = Depends(get_components)) -> RefreshTokenManager:
    return components.refresh_tokens


def get_credential_resolver(components: ServiceComponents = Depends(get_components)) -> CredentialResolver:
    return components.credentials


def get_upstream_client(components: ServiceComponents = Depends(get_components)) -> UpstreamClient:
    return components.upstream


def bearer_token(request: Request) -> str:
    auth = request.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise AuthenticationError("Missing bearer token")
    return auth.split(" ", 1)[1].strip()


def get_current_claims(
    request: Request,
    issuer: AccessTokenIssuer = Depends(get_token_issuer),
) -> AccessTokenClaims:
    return issuer.verify(bearer_token(request))


def get_request_context(
    request: Request,
    claims: AccessTokenClaims = Depends(get_current_claims),
) -> RequestContext:
    return RequestContext(
        user_id=claims.user_id,
        email=claims.email,
        request_id=ensure_request_id(request),
        is_disconnected=request.is_disconnected,
    )
