from __future__ import annotations

from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import NotFoundError

from ..context import RequestContext
from ..core.vault import SecretVault
from ..models import UpstreamCredential
from .upstream import UpstreamIdentity


class CredentialResolver:
    """Bridge between a session's user id and that user's upstream identity.

    Plaintext API keys exist only in the returned ``UpstreamIdentity`` and are
    never logged or written anywhere but the encrypted columns.
    """

    def __init__(self, vault: SecretVault) -> None:
        self._vault = vault

    async def resolve(self, session: AsyncSession, ctx: RequestContext) -> UpstreamIdentity:
        user_id = ctx.require_user_id()
        record = await self._load(session, user_id)
        if record is None:
            raise NotFoundError("Upstream credentials not found")
        return UpstreamIdentity(
            email=record.upstream_email,
            api_key=self._vault.unseal(record.cipher_text, record.nonce),
        )

    def build(self, user_id: int, upstream_email: str, api_key: str) -> UpstreamCredential:
        sealed = self._vault.seal(api_key)
        return UpstreamCredential(
            user_id=user_id,
            upstream_email=upstream_email,
            cipher_text=sealed.cipher_text,
            nonce=sealed.nonce,
        )

    async def replace(self, session: AsyncSession, ctx: RequestContext, upstream_email: str, api_key: str) -> None:
        """Swap the stored credential wholesale for a new one. Caller commits."""
        user_id = ctx.require_user_id()
        record = await self._load(session, user_id)
        if record is None:
            raise NotFoundError("Upstream credentials not found")
        sealed = self._vault.seal(api_key)
        record.upstream_email = upstream_email
        record.cipher_text = sealed.cipher_text
        record.nonce = sealed.nonce
        record.updated_at = datetime.now(tz=timezone.utc)
        session.add(record)
        await session.flush()
        logger.info(f"Upstream credentials replaced for user_id={user_id}")

    @staticmethod
    async def _load(session: AsyncSession, user_id: int) -> UpstreamCredential | None:
        return await session.scalar(select(UpstreamCredential).where(UpstreamCredential.user_id == user_id))
