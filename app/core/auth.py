"""Staff access tokens for the attendant inbox and channel administration."""

from __future__ import annotations

import datetime as dt
import os
import uuid
from collections.abc import Sequence
from typing import cast

import jwt
from fastapi import HTTPException, Request, status
from jwt import ExpiredSignatureError, InvalidTokenError
from typing_extensions import TypedDict

__all__ = [
    "StaffTokenConfigurationError",
    "StaffTokenPayload",
    "StaffTokenValidationError",
    "create_staff_token",
    "decode_staff_token",
    "get_staff_context",
]


class StaffTokenConfigurationError(RuntimeError):
    """Raised when staff token configuration is invalid."""


class StaffTokenValidationError(ValueError):
    """Raised when the provided staff token cannot be validated."""


class _StaffTokenRequiredClaims(TypedDict):
    clinic_id: str
    user_id: str


class StaffTokenPayload(_StaffTokenRequiredClaims, total=False):
    """Decoded JWT payload for clinic staff."""

    aud: str | list[str]
    exp: int
    iat: int
    iss: str
    name: str
    roles: list[str]
    type: str


def _get_env(name: str, *, required: bool = True, default: str | None = None) -> str:
    """Fetch an environment variable with optional requirement enforcement.

    Raises:
        StaffTokenConfigurationError: If ``required`` is ``True`` and the
            variable is missing or blank.
    """

    value = os.getenv(name, default)
    if required and (value is None or not value.strip()):
        raise StaffTokenConfigurationError(
            f"Environment variable '{name}' must be set for staff token validation.",
        )
    if value is None:
        return ""
    return value.strip()


def create_staff_token(
    clinic_id: uuid.UUID,
    user_id: uuid.UUID,
    roles: Sequence[str],
    *,
    expires_in: dt.timedelta = dt.timedelta(hours=8),
) -> str:
    """Issue an access token; used by the clinic backend and in tests."""

    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "clinic_id": str(clinic_id),
        "user_id": str(user_id),
        "roles": list(roles),
        "type": "access",
        "aud": _get_env("STAFF_TOKEN_AUDIENCE"),
        "iss": _get_env("STAFF_TOKEN_ISSUER"),
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
    }
    algorithm = _get_env("STAFF_TOKEN_ALGORITHM", required=False, default="HS256")
    return jwt.encode(payload, _get_env("STAFF_TOKEN_SECRET"), algorithm=algorithm)


def decode_staff_token(token: str) -> StaffTokenPayload:
    """Decode and validate a staff access token.

    Raises:
        StaffTokenConfigurationError: If mandatory environment configuration is missing.
        StaffTokenValidationError: If token signature, claims, or expiry are invalid.
    """

    secret_key = _get_env("STAFF_TOKEN_SECRET")
    audience = _get_env("STAFF_TOKEN_AUDIENCE")
    issuer = _get_env("STAFF_TOKEN_ISSUER")
    algorithm = _get_env("STAFF_TOKEN_ALGORITHM", required=False, default="HS256")

    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[algorithm],
            audience=audience,
            issuer=issuer,
            options={"require": ["exp", "aud", "iss"]},
        )
    except ExpiredSignatureError as exc:
        raise StaffTokenValidationError("Staff token has expired.") from exc
    except InvalidTokenError as exc:
        raise StaffTokenValidationError("Staff token is invalid.") from exc

    if "clinic_id" not in payload or "user_id" not in payload:
        raise StaffTokenValidationError(
            "Staff token payload must include 'clinic_id' and 'user_id'.",
        )
    type_claim = payload.get("type")
    if type_claim and type_claim != "access":
        raise StaffTokenValidationError("Staff token must be an access token.")

    return cast(StaffTokenPayload, payload)


async def get_staff_context(request: Request) -> StaffTokenPayload:
    """Extract the staff token payload from the ``Authorization`` header."""

    authorization = request.headers.get("Authorization")
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header.",
        )

    scheme, _, credentials = authorization.partition(" ")
    if not credentials or scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must use Bearer scheme.",
        )

    try:
        return decode_staff_token(credentials)
    except StaffTokenConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    except StaffTokenValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
