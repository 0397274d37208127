from fastapi import APIRouter, Depends, Response, status
from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import AuthenticationError, ConflictError, ServiceError, ValidationError

from ..context import RequestContext
from ..core.security import AccessTokenIssuer, hash_password, verify_password
from ..dependencies import (
    get_credential_resolver,
    get_refresh_tokens,
    get_request_context,
    get_session,
    get_settings,
    get_token_issuer,
)
from ..metrics import login_attempt_total, registration_total, token_refresh_total
from ..models import User
from ..schemas import (
    LoginRequest,
    MeResponse,
    OkResponse,
    RefreshRequest,
    RegisterRequest,
    TokenPair,
    UpdateCredentialRequest,
)
from ..services.credentials import CredentialResolver
from ..services.refresh_tokens import RefreshTokenManager
from ..settings import RelaySettings

router = APIRouter(prefix="/auth")


@router.post("/register", response_model=OkResponse)
async def register_user(
    payload: RegisterRequest,
    session: AsyncSession = Depends(get_session),
    settings: RelaySettings = Depends(get_settings),
    credentials: CredentialResolver = Depends(get_credential_resolver),
) -> OkResponse:
    if payload.invite_code != settings.invite_code:
        registration_total.labels(outcome="invalid_invite").inc()
        raise ValidationError("Invalid invite code")

    email = payload.email.lower()
    existing = await session.scalar(select(User).where(User.email == email))
    if existing:
        registration_total.labels(outcome="conflict").inc()
        raise ConflictError("User already exists")

    user = User(email=email, hashed_password=hash_password(payload.password))
    session.add(user)
    try:
        await session.flush()
        session.add(credentials.build(user.id, payload.upstream_email, payload.upstream_token))
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        registration_total.labels(outcome="conflict").inc()
        raise ConflictError("User already exists") from exc

    registration_total.labels(outcome="success").inc()
    logger.info(f"Registered user_id={user.id}")
    return OkResponse()


async def _issue_pair(
    session: AsyncSession,
    user: User,
    issuer: AccessTokenIssuer,
    refresh_tokens: RefreshTokenManager,
) -> TokenPair:
    user_id, email = user.id, user.email
    refresh_token = await refresh_tokens.issue(session, user_id)
    await session.commit()
    return TokenPair(
        token=issuer.issue(user_id, email),
        refresh_token=refresh_token,
        expires_in=issuer.expires_in,
    )


@router.post("/login", response_model=TokenPair)
async def login(
    payload: LoginRequest,
    session: AsyncSession = Depends(get_session),
    issuer: AccessTokenIssuer = Depends(get_token_issuer),
    refresh_tokens: RefreshTokenManager = Depends(get_refresh_tokens),
) -> TokenPair:
    user = await session.scalar(select(User).where(User.email == payload.email.lower()))
    # Same answer for unknown email and wrong password
    if not user or not verify_password(payload.password, user.hashed_password):
        login_attempt_total.labels(outcome="invalid_credentials").inc()
        raise AuthenticationError("Invalid credentials")

    pair = await _issue_pair(session, user, issuer, refresh_tokens)
    login_attempt_total.labels(outcome="success").inc()
    return pair


@router.post("/refresh", response_model=TokenPair)
async def refresh(
    payload: RefreshRequest,
    session: AsyncSession = Depends(get_session),
    issuer: AccessTokenIssuer = Depends(get_token_issuer),
    refresh_tokens: RefreshTokenManager = Depends(get_refresh_tokens),
) -> TokenPair:
    try:
        rotation = await refresh_tokens.rotate(session, payload.refresh_token)
    except ServiceError:
        token_refresh_total.labels(outcome="rejected").inc()
        raise
    token_refresh_total.labels(outcome="success").inc()
    return TokenPair(
        token=issuer.issue(rotation.user_id, rotation.email),
        refresh_token=rotation.refresh_token,
        expires_in=issuer.expires_in,
    )


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    payload: RefreshRequest,
    session: AsyncSession = Depends(get_session),
    refresh_tokens: RefreshTokenManager = Depends(get_refresh_tokens),
) -> Response:
    await refresh_tokens.revoke(session, payload.refresh_token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/me", response_model=MeResponse)
async def me(ctx: RequestContext = Depends(get_request_context)) -> MeResponse:
    return MeResponse(id=ctx.require_user_id(), email=ctx.email or "")


@router.put("/zulip", response_model=OkResponse)
@router.put("/upstream", response_model=OkResponse, include_in_schema=False)
async def update_upstream_credential(
    payload: UpdateCredentialRequest,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
    credentials: CredentialResolver = Depends(get_credential_resolver),
) -> OkResponse:
    await credentials.replace(session, ctx, payload.upstream_email, payload.upstream_token)
    await session.commit()
    return OkResponse()
