"""Bearer token authentication for user-facing billing endpoints."""
from __future__ import annotations

from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict

from .errors import Unauthenticated

JWT_ALGORITHM = "HS256"
_BEARER_PREFIX = "bearer "


class AuthenticatedUser(BaseModel):
    id: str
    email: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class BearerAuthenticator:
    """Validates session tokens issued by the identity provider."""

    def __init__(self, secret: str, *, audience: Optional[str] = "authenticated") -> None:
        if not secret:
            raise ValueError("JWT secret must be provided")
        self._secret = secret
        self._audience = audience

    def authenticate(self, authorization: Optional[str]) -> AuthenticatedUser:
        token = _bearer_token(authorization)
        if not token:
            raise Unauthenticated("Missing Authorization Bearer token")

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                audience=self._audience,
                options={"verify_aud": self._audience is not None},
            )
        except JWTError as exc:
            raise Unauthenticated("Invalid session") from exc

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            raise Unauthenticated("Invalid session")
        email = payload.get("email")
        return AuthenticatedUser(id=subject.strip(), email=email if isinstance(email, str) else None)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    if authorization[: len(_BEARER_PREFIX)].lower() != _BEARER_PREFIX:
        return None
    return authorization[len(_BEARER_PREFIX):].strip() or None


__all__ = ["AuthenticatedUser", "BearerAuthenticator", "JWT_ALGORITHM"]
