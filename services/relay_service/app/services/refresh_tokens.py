from __future__ import annotations

import hashlib
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import AuthenticationError

from ..models import RefreshToken, User
from ..settings import RelaySettings

TOKEN_BYTES = 64


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def is_active(record: RefreshToken, now: datetime) -> bool:
    return record.revoked_at is None and _as_utc(record.expires_at) > now


@dataclass(frozen=True)
class Rotation:
    user_id: int
    email: str
    refresh_token: str


class RefreshTokenManager:
    """Issue, rotate and revoke one-time-use refresh tokens.

    Each successful rotation revokes the presented row and links it to its
    successor through ``replaced_by_hash``. Presenting a token that was revoked
    longer than ``reuse_grace`` ago is treated as theft: the whole chain of
    successors is revoked.
    """

    def __init__(
        self,
        *,
        ttl: timedelta = timedelta(days=7),
        reuse_grace: timedelta = timedelta(seconds=10),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ttl = ttl
        self.reuse_grace = reuse_grace
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: RelaySettings) -> RefreshTokenManager:
        return cls(
            ttl=timedelta(days=settings.refresh_token_expires_days),
            reuse_grace=timedelta(seconds=settings.refresh_token_reuse_grace_seconds),
        )

    def create_record(self, user_id: int, token_hash: str, ttl: timedelta | None = None) -> RefreshToken:
        now = self._clock()
        return RefreshToken(
            user_id=user_id,
            token_hash=token_hash,
            created_at=now,
            expires_at=now + (ttl or self.ttl),
        )

    async def issue(self, session: AsyncSession, user_id: int) -> str:
        """Persist a fresh token for ``user_id`` and return the raw value. Caller commits."""
        raw = generate_token()
        session.add(self.create_record(user_id, hash_token(raw)))
        await session.flush()
        return raw

    async def find(self, session: AsyncSession, raw_token: str) -> RefreshToken | None:
        return await session.scalar(
            select(RefreshToken)
            .where(RefreshToken.token_hash == hash_token(raw_token))
            .order_by(RefreshToken.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )

    async def rotate(self, session: AsyncSession, raw_token: str) -> Rotation:
        """Exchange ``raw_token`` for a new one inside a single unit of work.

        The revoke is a conditional update on ``revoked_at IS NULL`` so that two
        concurrent exchanges of the same token cannot both succeed.
        """
        now = self._clock()
        try:
            record = await self.find(session, raw_token)
            if record is None:
                raise AuthenticationError("Invalid refresh token")
            if record.revoked_at is not None:
                await self._handle_reuse(session, record, now)
                raise AuthenticationError("Refresh token has been revoked")
            if _as_utc(record.expires_at) <= now:
                raise AuthenticationError("Refresh token has expired")

            user = await session.get(User, record.user_id)
            if user is None:
                raise AuthenticationError("Invalid refresh token")

            new_raw = generate_token()
            new_hash = hash_token(new_raw)
            result = await session.execute(
                update(RefreshToken)
                .where(RefreshToken.id == record.id, RefreshToken.revoked_at.is_(None))
                .values(revoked_at=now, replaced_by_hash=new_hash)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise AuthenticationError("Refresh token has been revoked")

            user_id, email = user.id, user.email
            session.add(self.create_record(user_id, new_hash))
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.info(f"Rotated refresh token for user_id={user_id}")
        return Rotation(user_id=user_id, email=email, refresh_token=new_raw)

    async def revoke(self, session: AsyncSession, raw_token: str) -> bool:
        """Revoke ``raw_token`` if it is still active. Returns whether anything changed."""
        now = self._clock()
        record = await self.find(session, raw_token)
        if record is None or not is_active(record, now):
            return False
        record.revoked_at = now
        session.add(record)
        await session.commit()
        return True

    async def revoke_chain(self, session: AsyncSession, record: RefreshToken, now: datetime) -> int:
        """Revoke every successor of ``record``. Caller commits."""
        revoked = 0
        seen: set[str] = set()
        next_hash = record.replaced_by_hash
        while next_hash and next_hash not in seen:
            seen.add(next_hash)
            successor = await session.scalar(
                select(RefreshToken)
                .where(RefreshToken.token_hash == next_hash, RefreshToken.user_id == record.user_id)
                .order_by(RefreshToken.created_at.desc())
                .limit(1)
                .execution_options(populate_existing=True)
            )
            if successor is None:
                break
            if successor.revoked_at is None:
                successor.revoked_at = now
                session.add(successor)
                revoked += 1
            next_hash = successor.replaced_by_hash
        return revoked

    async def _handle_reuse(self, session: AsyncSession, record: RefreshToken, now: datetime) -> None:
        revoked_at = _as_utc(record.revoked_at)
        if now - revoked_at <= self.reuse_grace:
            # Lost a race with a concurrent exchange of the same token.
            return
        user_id = record.user_id
        revoked = await self.revoke_chain(session, record, now)
        await session.commit()
        logger.warning(
            f"Refresh token reuse detected for user_id={user_id}; revoked {revoked} descendant token(s)"
        )
