"""Bearer-token verification.

Tokens are issued by the external auth service and carry ``{id, email, name,
roles}``. The decoded identity is trusted as-is; roles are validated into the
closed :class:`~openproposal.roles.Role` set here, at the boundary.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from typing import Any

import jwt
from fastapi import Cookie, Depends, Header

from openproposal.config import Settings, get_settings
from openproposal.errors import AuthenticationRequired
from openproposal.roles import Role, parse_roles

log = logging.getLogger(__name__)

TOKEN_COOKIE = "auth-token"


@dataclass(frozen=True)
class Identity:
    id: int
    email: str
    name: str = ""
    roles: frozenset[Role] = field(default_factory=frozenset)


def issue_token(identity: Identity, settings: Settings, *, now: datetime | None = None) -> str:
    """Mint a signed token. Used by development tooling and tests."""
    now = now or datetime.now(UTC)
    payload = {
        "id": identity.id,
        "email": identity.email,
        "name": identity.name,
        "roles": sorted(r.value for r in identity.roles),
        "iat": now,
        "exp": now + timedelta(hours=settings.jwt_expiry_hours),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> Identity:
    try:
        claims: dict[str, Any] = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationRequired("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        log.info("Rejected bearer token: %s", exc)
        raise AuthenticationRequired("Invalid token") from exc

    try:
        user_id = int(claims["id"])
        email = str(claims["email"])
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthenticationRequired("Token is missing identity claims") from exc
    return Identity(
        id=user_id, email=email, name=str(claims.get("name") or ""),
        roles=parse_roles(claims.get("roles") or []),
    )


def _extract_token(authorization: str | None, cookie_token: str | None) -> str | None:
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return cookie_token or None


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def optional_identity(
    authorization: str | None = Header(None),
    auth_token: str | None = Cookie(None, alias=TOKEN_COOKIE),
    settings: Settings = Depends(get_settings),
) -> Identity | None:
    """Identity for endpoints that also serve anonymous callers.

    A present but invalid token is still rejected.
    """
    token = _extract_token(authorization, auth_token)
    if token is None:
        return None
    return decode_token(token, settings)


def require_identity(identity: Identity | None = Depends(optional_identity)) -> Identity:
    if identity is None:
        raise AuthenticationRequired("Unauthorized")
    return identity
