from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from loguru import logger
from passlib.context import CryptContext

from shared.errors import AuthenticationError

from ..settings import RelaySettings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ALGORITHM = "HS256"
ACCESS_SCOPE = "access"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


@dataclass(frozen=True)
class AccessTokenClaims:
    user_id: int
    email: str
    expires_at: datetime


class AccessTokenIssuer:
    """Mint and verify short-lived HS256 access tokens.

    Stateless apart from the signing key, so one instance is shared by every request.
    """

    def __init__(self, *, signing_key: str, issuer: str, audience: str, lifetime: timedelta) -> None:
        self._signing_key = signing_key
        self.issuer = issuer
        self.audience = audience
        self.lifetime = lifetime

    @classmethod
    def from_settings(cls, settings: RelaySettings) -> AccessTokenIssuer:
        return cls(
            signing_key=settings.signing_key,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            lifetime=timedelta(minutes=settings.access_token_expires_minutes),
        )

    @property
    def expires_in(self) -> int:
        return int(self.lifetime.total_seconds())

    def issue(self, user_id: int, email: str, *, now: datetime | None = None) -> str:
        issued_at = now or datetime.now(tz=timezone.utc)
        payload: dict[str, Any] = {
            "sub": str(user_id),
            "email": email,
            "scope": ACCESS_SCOPE,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self.lifetime).timestamp()),
        }
        return jwt.encode(payload, self._signing_key, algorithm=ALGORITHM)

    def verify(self, token: str) -> AccessTokenClaims:
        """Check signature, issuer, audience and expiry; any failure is an authentication error."""
        try:
            decoded = jwt.decode(
                token,
                self._signing_key,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
            )
        except JWTError as exc:
            logger.debug(f"Access token rejected: {exc}")
            raise AuthenticationError("Invalid token") from exc

        if decoded.get("scope") != ACCESS_SCOPE:
            raise AuthenticationError("Invalid token scope")
        sub = decoded.get("sub")
        if not isinstance(sub, str) or not sub.isdigit():
            raise AuthenticationError("Invalid token subject")
        return AccessTokenClaims(
            user_id=int(sub),
            email=decoded.get("email") or "",
            expires_at=datetime.fromtimestamp(decoded["exp"], tz=timezone.utc),
        )
