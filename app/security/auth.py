"""Authentication dependencies for FastAPI routers."""

from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass
from typing import Callable

from fastapi import Depends, HTTPException, Request, status

from app.core.auth import StaffTokenPayload, get_staff_context
from app.core.settings import get_settings


_ROLE_LEVELS = {"attendant": 0, "admin": 1}


@dataclass(frozen=True)
class StaffPrincipal:
    clinic_id: uuid.UUID
    user_id: uuid.UUID
    role: str


def _highest_role(roles: list[str]) -> str | None:
    ranked = sorted({role for role in roles if role in _ROLE_LEVELS}, key=_ROLE_LEVELS.get)
    return ranked[-1] if ranked else None


def require_role(min_role: str) -> Callable[..., StaffPrincipal]:
    """Create a dependency ensuring the caller has at least ``min_role`` privileges."""

    if min_role not in _ROLE_LEVELS:
        raise ValueError(f"Unknown role: {min_role}")

    async def dependency(
        payload: StaffTokenPayload = Depends(get_staff_context),
    ) -> StaffPrincipal:
        roles = payload.get("roles") or []
        if isinstance(roles, str):
            roles = [roles]
        highest = _highest_role(list(roles))
        if highest is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="No roles assigned to user.",
            )
        if _ROLE_LEVELS[highest] < _ROLE_LEVELS[min_role]:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role.",
            )
        try:
            clinic_id = uuid.UUID(payload["clinic_id"])
            user_id = uuid.UUID(payload["user_id"])
        except (KeyError, ValueError) as exc:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid identifiers in token.",
            ) from exc
        return StaffPrincipal(clinic_id=clinic_id, user_id=user_id, role=highest)

    return dependency


async def require_service_key(request: Request) -> None:
    """Guard internal endpoints with the shared ``INTERNAL_SERVICE_KEY``."""

    expected = get_settings().internal_service_key
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal service key is not configured.",
        )
    scheme, _, credentials = (request.headers.get("Authorization") or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        credentials.encode("utf-8"), expected.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid service credentials.",
        )


__all__ = ["StaffPrincipal", "require_role", "require_service_key"]
