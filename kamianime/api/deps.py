"""
kamianime.api.deps — FastAPI dependency injection
==================================================

Secrets are validated when this module is imported so a misconfigured
deployment fails at startup rather than on the first request.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from kamianime.config import KamiConfig, load_config
from kamianime.database.engine import create_db_engine
from kamianime.services.sync_service import SyncBridge

_WEAK_SECRETS = frozenset({
    "kamianime-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _validate_secret(name: str, secret: str) -> str:
    """Raise RuntimeError if *secret* is missing, a weak default, or short."""
    if not secret:
        raise RuntimeError(
            f"{name} environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"{name} is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"{name} is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


def _load_jwt_secret() -> str:
    return _validate_secret("JWT_SECRET", os.getenv("JWT_SECRET", ""))


def load_webhook_secret() -> str:
    """The shared key website webhooks authenticate with."""
    return _validate_secret("WEBHOOK_API_KEY", os.getenv("WEBHOOK_API_KEY", ""))


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> KamiConfig:
    return load_config()


def get_bridge(request: Request) -> SyncBridge:
    bridge = getattr(request.app.state, "bridge", None)
    if bridge is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Sync bridge not ready")
    return bridge


def _decode_bearer(authorization: str | None) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    return payload


def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate the website-issued JWT and return its payload (``sub`` = user id)."""
    return _decode_bearer(authorization)


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return admin user payload. Raises 401/403."""
    payload = _decode_bearer(authorization)
    if not payload.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return payload


CurrentUser = Annotated[dict, Depends(get_current_user)]
Bridge = Annotated[SyncBridge, Depends(get_bridge)]
