# api/auth.py
# ============================================================================
# COURSE PAYMENTS SERVICE - SESSION AUTH
# ============================================================================
# Resolves the signed-in user from the Supabase session cookie.
# ============================================================================

import os
from dataclasses import dataclass
from typing import Optional

import jwt
import structlog
from fastapi import Request

from errors import Unauthorized
from schemas.payment_definitions import AuthenticatedUser

logger = structlog.get_logger().bind(component="auth")

SESSION_COOKIE = "sb_access_token"
AUDIENCE = "authenticated"


@dataclass
class AuthConfig:
    supabase_url: str = ""
    jwt_secret: str = ""

    @property
    def issuer(self) -> Optional[str]:
        if not self.supabase_url:
            return None
        return self.supabase_url.rstrip("/") + "/auth/v1"

    @classmethod
    def from_env(cls) -> "AuthConfig":
        return cls(
            supabase_url=os.getenv("SUPABASE_URL", ""),
            jwt_secret=os.getenv("SUPABASE_JWT_SECRET", ""),
        )


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def decode_session(token: str, config: AuthConfig) -> AuthenticatedUser:
    if not config.jwt_secret:
        logger.error("auth_not_configured")
        raise Unauthorized()

    try:
        claims = jwt.decode(
            token,
            config.jwt_secret,
            algorithms=["HS256"],
            audience=AUDIENCE,
            issuer=config.issuer,
            options={"require": ["sub", "exp"]},
        )
    except jwt.PyJWTError as e:
        logger.info("session_rejected", reason=type(e).__name__)
        raise Unauthorized() from e

    return AuthenticatedUser(id=str(claims["sub"]), email=claims.get("email"))


async def require_user(request: Request) -> AuthenticatedUser:
    """FastAPI dependency: the authenticated user, or 401."""
    token = request.cookies.get(SESSION_COOKIE) or _bearer_token(request)
    if not token:
        raise Unauthorized()

    config = getattr(request.app.state, "auth_config", None) or AuthConfig.from_env()
    return decode_session(token, config)
