from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Iterable, Optional

import jwt
import structlog

from .config import AUTH_JWT_ALGORITHM, AUTH_JWT_AUDIENCE, AUTH_JWT_SECRET
from .errors import AuthError, Forbidden

logger = structlog.get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    org_id: Optional[str] = None
    role: Optional[str] = None


def decode_bearer(authorization: Optional[str]) -> Optional[AuthContext]:
    """Resolve an ``Authorization: Bearer <jwt>`` header.

    Returns None for a missing, malformed or invalid credential. Callers
    that need an identity use require_role().
    """
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    options = {"require": ["sub", "exp"]}
    kw = {}
    if AUTH_JWT_AUDIENCE:
        kw["audience"] = AUTH_JWT_AUDIENCE
    else:
        options["verify_aud"] = False
    try:
        claims = jwt.decode(
            token, AUTH_JWT_SECRET, algorithms=[AUTH_JWT_ALGORITHM],
            options=options, **kw,
        )
    except jwt.PyJWTError as e:
        logger.info("bearer_rejected", reason=type(e).__name__)
        return None
    return AuthContext(
        user_id=str(claims["sub"]),
        org_id=claims.get("org_id"),
        role=claims.get("role"),
    )


def require_role(
    auth: Optional[AuthContext], roles: Iterable[str],
    org_id: Optional[str] = None,
) -> AuthContext:
    """Staff endpoints: the caller must hold one of ``roles`` in an
    organization (``org_id`` when given, otherwise their own).
    """
    if auth is None:
        raise AuthError("authentication required")
    if not auth.org_id or auth.role not in tuple(roles):
        raise Forbidden("not allowed")
    if org_id is not None and auth.org_id != org_id:
        raise Forbidden("not allowed for this organization")
    return auth


def issue_token(
    user_id: str, *, org_id: Optional[str] = None,
    role: Optional[str] = None, ttl_seconds: int = 3600,
) -> str:
    """Mint a bearer token. Real deployments get these from the identity
    provider; this is for the CLI and tests.
    """
    now = int(time.time())
    claims = {"sub": user_id, "iat": now, "exp": now + ttl_seconds}
    if org_id is not None:
        claims["org_id"] = org_id
    if role is not None:
        claims["role"] = role
    if AUTH_JWT_AUDIENCE:
        claims["aud"] = AUTH_JWT_AUDIENCE
    return jwt.encode(claims, AUTH_JWT_SECRET, algorithm=AUTH_JWT_ALGORITHM)
