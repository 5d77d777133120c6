"""Bearer-token verification for sockets and REST calls."""

from __future__ import annotations

import logging
import time
from typing import Protocol

import jwt

from .errors import AuthError
from .models import is_user_id

logger = logging.getLogger(__name__)

_ID_CLAIMS = ("id", "_id", "userId", "sub")


class TokenVerifier(Protocol):
    def verify(self, token: str) -> str:
        """Return the user id bound to ``token`` or raise ``AuthError``."""


class JWTVerifier:
    """Validates HMAC-signed JWTs issued by the auth service."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        self._secret = secret
        self._algorithm = algorithm
        if not secret:
            logger.warning("JWT secret is not configured; every token will be rejected")

    def verify(self, token: str) -> str:
        if not self._secret:
            raise AuthError("authentication is not configured")
        if not isinstance(token, str) or not token:
            raise AuthError("token required")
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise AuthError("token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthError("invalid token") from exc

        for claim in _ID_CLAIMS:
            value = claims.get(claim)
            if value is not None:
                user_id = str(value)
                if is_user_id(user_id):
                    return user_id
                break
        raise AuthError("token carries no valid user id")


class TrustedVerifier:
    """Treats the token as the user id. Only for local simulation."""

    def verify(self, token: str) -> str:
        if not is_user_id(token):
            raise AuthError("invalid token")
        return token


def issue_token(secret: str, user_id: str, *, ttl_seconds: int = 3600, algorithm: str = "HS256") -> str:
    """Mint a development token compatible with ``JWTVerifier``."""

    now = int(time.time())
    return jwt.encode({"id": user_id, "iat": now, "exp": now + ttl_seconds}, secret, algorithm=algorithm)


def bearer_token(header: str | None) -> str | None:
    if not header or not header.startswith("Bearer "):
        return None
    token = header[len("Bearer ") :].strip()
    return token or None
