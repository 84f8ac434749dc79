"""
mahber.api.deps — FastAPI dependency injection
===============================================
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from mahber.config import MahberConfig, load_config
from mahber.context import ServiceContext, build_context
from mahber.database.engine import create_db_engine
from mahber.errors import OperationResult

_WEAK_SECRETS = frozenset({
    "mahber-dev-secret-change-me",
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


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> MahberConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_context() -> ServiceContext:
    """Process-wide services (rate gate cache, security monitor)."""
    return build_context(get_engine(), get_config())


def _decode_subject(authorization: str | None) -> int:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return int(payload["sub"])
    except (InvalidTokenError, KeyError, TypeError, ValueError):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")


def get_current_user_id(
    authorization: Annotated[str | None, Header()] = None,
) -> int:
    """Validate the bearer JWT and return the member id in ``sub``."""
    return _decode_subject(authorization)


def get_optional_user_id(
    authorization: Annotated[str | None, Header()] = None,
) -> int | None:
    """Like :func:`get_current_user_id` but anonymous readers get ``None``."""
    if not authorization:
        return None
    return _decode_subject(authorization)


def issue_token(user_id: int, **claims) -> str:
    return jwt.encode({"sub": str(user_id), **claims}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def respond(result: OperationResult) -> JSONResponse:
    """Envelope → HTTP response; the status mirrors the error kind."""
    return JSONResponse(result.to_dict(), status_code=result.status)


CurrentUser = Annotated[int, Depends(get_current_user_id)]
OptionalUser = Annotated[int | None, Depends(get_optional_user_id)]
Context = Annotated[ServiceContext, Depends(get_context)]
