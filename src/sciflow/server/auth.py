# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Bearer JWT authentication for REST endpoints.

Tokens are issued by the identity provider (or ``sciflow issue-token`` for
operators) and carry the principal id in ``sub`` and its capabilities in
``roles``. The server only verifies them; ownership is always checked
against the ledger.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Any

import jwt
from starlette.requests import Request
from starlette.responses import JSONResponse

from ..core.identity import Capability, Principal
from .config import ServerSettings, get_settings
from .errors import AUTH_INVALID_TOKEN, AUTH_MISSING_TOKEN, auth_error

logger = logging.getLogger(__name__)


def create_access_token(
    principal_id: str,
    roles: list[str],
    settings: ServerSettings | None = None,
    expires_in: int | None = None,
) -> str:
    """Create a signed access token for ``principal_id``."""
    settings = settings or get_settings()
    for role in roles:
        Capability(role)
    now = time.time()
    payload = {
        "iss": settings.jwt_issuer,
        "sub": principal_id,
        "roles": sorted(set(roles)),
        "iat": int(now),
        "exp": int(now + (expires_in or settings.jwt_expiry_seconds)),
        "jti": secrets.token_urlsafe(16),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_access_token(token: str, settings: ServerSettings | None = None) -> dict[str, Any] | None:
    """Verify a JWT access token. Returns the payload if valid, None otherwise."""
    settings = settings or get_settings()
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        logger.debug("Token expired")
        return None
    except jwt.InvalidIssuerError:
        logger.debug("Invalid issuer")
        return None
    except jwt.PyJWTError as e:
        logger.debug(f"JWT verification failed: {e}")
        return None


def principal_from_claims(claims: dict[str, Any]) -> Principal:
    """Build a Principal, dropping roles this service does not know."""
    capabilities = []
    for role in claims.get("roles") or []:
        try:
            capabilities.append(Capability(role))
        except ValueError:
            logger.debug(f"Ignoring unknown role claim {role!r}")
    return Principal(str(claims["sub"]), frozenset(capabilities))


def authenticate(request: Request, settings: ServerSettings | None = None) -> Principal | JSONResponse:
    """Authenticate a request. Returns the principal, or a 401 JSONResponse.

    Usage in endpoints::

        principal = authenticate(request)
        if isinstance(principal, JSONResponse):
            return principal
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return auth_error("Missing or invalid authentication token", code=AUTH_MISSING_TOKEN)

    claims = verify_access_token(auth_header[len("Bearer ") :].strip(), settings)
    if claims is None:
        return auth_error("Invalid authentication token", code=AUTH_INVALID_TOKEN)
    return principal_from_claims(claims)
