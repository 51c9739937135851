"""
kudos.api.deps — FastAPI dependency injection
==============================================
"""

from __future__ import annotations

import hmac
import os
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, Query, Request, status
from jwt.exceptions import InvalidTokenError

from kudos.engine.signatures import read_bearer
from kudos.services.bootstrap import Services

_WEAK_SECRETS = frozenset({
    "kudos-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Service not ready")
    return services


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return admin user payload. Raises 401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not payload.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return payload


def token_matches(candidate: str | None, allowed: tuple[str, ...] | list[str]) -> bool:
    """Constant-time membership test of *candidate* in *allowed*."""
    if not candidate:
        return False
    return any(hmac.compare_digest(candidate, t) for t in allowed if t)


def require_import_token(
    request: Request,
    services: Annotated[Services, Depends(get_services)],
    token: Annotated[str | None, Query()] = None,
) -> str:
    """Accept the upload token from ``Authorization: Bearer``, ``x-auth-token``
    or ``?token=``.  Checked against ``IMPORT_UPLOAD_TOKENS`` (or ``AUTH_TOKEN``
    when that list is empty).
    """
    secrets = services.secrets
    allowed = secrets.import_tokens or ((secrets.auth_token,) if secrets.auth_token else ())
    if not allowed:
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Import token not configured")
    candidate = read_bearer(request.headers) or request.headers.get("x-auth-token") or token
    if not token_matches(candidate, allowed):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    return candidate
