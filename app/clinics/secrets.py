"""Storage for per-clinic channel access tokens.

Tokens are write-only from the API's perspective: they are read solely by the
message dispatcher and never serialised into responses or log records.
"""

from __future__ import annotations

import uuid
from typing import Protocol

from sqlalchemy.orm import Session

from ..models import ChannelSecret, Clinic


class SecretStore(Protocol):
    def get_token(self, clinic_id: uuid.UUID) -> str | None: ...

    def store_token(self, clinic_id: uuid.UUID, token: str) -> None: ...


class DatabaseSecretStore:
    """Keep channel tokens in the ``channel_secrets`` table."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_token(self, clinic_id: uuid.UUID) -> str | None:
        secret = self._session.get(ChannelSecret, clinic_id)
        return secret.access_token if secret else None

    def store_token(self, clinic_id: uuid.UUID, token: str) -> None:
        """Insert or rotate the token and switch the clinic's channel on."""

        secret = self._session.get(ChannelSecret, clinic_id)
        if secret is None:
            self._session.add(ChannelSecret(clinic_id=clinic_id, access_token=token))
        else:
            secret.access_token = token
        clinic = self._session.get(Clinic, clinic_id)
        if clinic is not None:
            clinic.whatsapp_enabled = True
        self._session.flush()


__all__ = ["DatabaseSecretStore", "SecretStore"]
