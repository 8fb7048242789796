"""
Bearer token authentication for store and admin routes.

Tokens are HS256 JWTs signed with AUTH_JWT_SECRET:
- sub: user id (required)
- store_id: store the user acts for (optional for operators)
- roles: list of role names; "admin" or "owner" may run admin commands

SECURITY: store_id is ONLY taken from the verified token, never from input,
when deciding what a non-admin caller may read. Missing configuration fails
closed with 503.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
ADMIN_ROLES = {"admin", "owner"}


@dataclass
class AuthContext:
    user_id: str
    store_id: Optional[str] = None
    roles: List[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return bool(ADMIN_ROLES.intersection(self.roles))

    def can_access_store(self, store_id: str) -> bool:
        return self.is_admin or self.store_id == store_id


def _get_secret() -> Optional[str]:
    return os.getenv("AUTH_JWT_SECRET")


def decode_token(token: str, secret: str) -> AuthContext:
    """
    Verify and decode a bearer token.

    Raises:
        jwt.InvalidTokenError: Bad signature, expired, or missing claims
    """
    claims = jwt.decode(
        token,
        secret,
        algorithms=[JWT_ALGORITHM],
        options={"require": ["sub", "exp"]},
    )
    roles = claims.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    return AuthContext(
        user_id=str(claims["sub"]),
        store_id=claims.get("store_id"),
        roles=[str(r).lower() for r in roles],
    )


def issue_token(
    user_id: str,
    secret: str,
    store_id: Optional[str] = None,
    roles: Optional[List[str]] = None,
    ttl: timedelta = timedelta(hours=1),
) -> str:
    """Sign a token. Used by operator tooling and tests."""
    now = datetime.now(timezone.utc)
    claims = {"sub": user_id, "iat": now, "exp": now + ttl, "roles": roles or []}
    if store_id:
        claims["store_id"] = store_id
    return jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)


async def get_auth_context(request: Request) -> AuthContext:
    """FastAPI dependency: authenticated caller from the Authorization header."""
    secret = _get_secret()
    if not secret:
        logger.error("AUTH_JWT_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication not configured",
        )

    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
        )

    try:
        return decode_token(token, secret)
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid bearer token", extra={"error": str(e), "path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )


def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """FastAPI dependency: caller must hold an admin role."""
    if not auth.is_admin:
        logger.warning("Admin access denied", extra={"user_id": auth.user_id, "roles": auth.roles})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return auth


def ensure_store_access(auth: AuthContext, store_id: str) -> None:
    """Raise 403 unless the caller may read this store."""
    if not auth.can_access_store(store_id):
        logger.warning(
            "Cross-store access denied",
            extra={"user_id": auth.user_id, "token_store_id": auth.store_id, "store_id": store_id},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to access this store",
        )
