"""Bearer-token verification for REST calls and WebSocket connections.

Tokens are HS256 JWTs issued by the external auth service. The claims this
core relies on are ``sub`` (user id), ``exp`` and an optional ``email``.
``create_access_token`` exists for the issuer side, tooling and tests.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel

from chatrelay.config import AppSettings, get_config
from chatrelay.errors import Unauthenticated

logger = logging.getLogger(__name__)


class Identity(BaseModel):
    """Verified user identity bound to a request or connection."""
    userId: str
    email: Optional[str] = None


class TokenService:
    """Issues and verifies bearer tokens with the configured JWT secret."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", expire_minutes: int = 60):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expire_minutes = expire_minutes

    @classmethod
    def from_config(cls, config: Optional[AppSettings] = None) -> "TokenService":
        config = config or get_config()
        return cls(
            secret_key=config.secrets.jwt.secret_key,
            algorithm=config.secrets.jwt.algorithm,
            expire_minutes=config.auth.token_expire_minutes,
        )

    def create_access_token(
        self,
        user_id: str,
        email: Optional[str] = None,
        expires_delta: Optional[timedelta] = None,
    ) -> str:
        expire = datetime.now(timezone.utc) + (
            expires_delta if expires_delta is not None
            else timedelta(minutes=self.expire_minutes)
        )
        claims = {"sub": user_id, "exp": expire}
        if email:
            claims["email"] = email
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def verify(self, token: Optional[str]) -> Identity:
        """Verify a bearer token and return the identity it carries.

        Accepts the raw token or a full ``Bearer <token>`` header value.

        Raises:
            Unauthenticated: Missing, malformed, expired or unverifiable token.
        """
        if not token:
            raise Unauthenticated("Access token required")
        if token.startswith("Bearer "):
            token = token[7:]

        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            logger.warning("[Auth] Rejected expired token")
            raise Unauthenticated("Token expired")
        except JWTError as e:
            logger.warning(f"[Auth] Rejected invalid token: {e}")
            raise Unauthenticated("Invalid token")

        user_id = payload.get("sub")
        if not user_id:
            raise Unauthenticated("Invalid token: missing user ID")
        return Identity(userId=str(user_id), email=payload.get("email"))
