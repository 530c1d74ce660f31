"""Single point of outbound WhatsApp I/O."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..channels.base import ChannelConfigurationError, DispatchError
from ..channels.phone import PhoneNormalizationError, normalize_phone
from ..channels.whatsapp import GraphApiClient, WhatsAppAdapter
from ..clinics.secrets import DatabaseSecretStore, SecretStore
from ..models import Clinic
from .repository import SessionRepository, SqlSessionRepository
from .schemas import PAYLOAD_MODELS

logger = logging.getLogger(__name__)


class MessageDispatcher:
    """Send one message through the clinic's channel and record it."""

    def __init__(
        self,
        session: Session,
        *,
        client: GraphApiClient,
        adapter: WhatsAppAdapter | None = None,
        secrets: SecretStore | None = None,
        sessions: SessionRepository | None = None,
    ) -> None:
        self._session = session
        self._client = client
        self._adapter = adapter or WhatsAppAdapter()
        self._secrets = secrets or DatabaseSecretStore(session)
        self._sessions = sessions or SqlSessionRepository(session)

    def send(
        self,
        clinic_id: uuid.UUID,
        session_id: uuid.UUID | None,
        originator: str,
        to_phone: str,
        kind: str,
        payload: Mapping[str, Any],
    ) -> str | None:
        """Send and return the provider message id.

        Raises:
            ChannelConfigurationError: Unknown clinic (404), disabled channel
                (403), or missing phone number id or access token (422).
            DispatchError: Invalid recipient phone or payload (422).
            ProviderError: The Graph API rejected the request (502).
        """

        clinic = self._session.get(Clinic, clinic_id)
        if clinic is None:
            raise ChannelConfigurationError("Clinic not found", status_code=404)
        if not clinic.whatsapp_enabled:
            raise ChannelConfigurationError(
                "WhatsApp is not enabled for this clinic", status_code=403
            )
        if not clinic.whatsapp_phone_number_id:
            raise ChannelConfigurationError("WhatsApp phone number id is not configured")
        token = self._secrets.get_token(clinic_id)
        if not token:
            raise ChannelConfigurationError("WhatsApp access token is not configured")

        try:
            recipient = normalize_phone(to_phone)
        except PhoneNormalizationError as exc:
            raise DispatchError(f"Invalid recipient phone: {exc}", status_code=422) from exc

        model = PAYLOAD_MODELS.get(kind)
        if model is None:
            raise DispatchError(f"Unsupported message kind: {kind}", status_code=422)
        try:
            content = model.model_validate(dict(payload)).model_dump()
        except ValidationError as exc:
            raise DispatchError(
                f"Invalid {kind} payload: {exc.errors()[0]['msg']}", status_code=422
            ) from exc

        message = self._adapter.build_outgoing_payload(recipient, kind, content)
        provider_message_id = self._client.send_message(
            clinic.whatsapp_phone_number_id, token, message
        )
        logger.info(
            "WhatsApp %s sent clinic=%s session=%s wa_message_id=%s",
            kind,
            clinic_id,
            session_id,
            provider_message_id,
        )

        if session_id is not None:
            self._record(clinic_id, session_id, originator, kind, content, provider_message_id)
        return provider_message_id

    def _record(
        self,
        clinic_id: uuid.UUID,
        session_id: uuid.UUID,
        originator: str,
        kind: str,
        content: Mapping[str, Any],
        provider_message_id: str | None,
    ) -> None:
        # The message already left; a logging failure must not surface as a send failure.
        try:
            with self._session.begin_nested():
                self._sessions.add_message(
                    session_id=session_id,
                    clinic_id=clinic_id,
                    direction="outbound",
                    body=WhatsAppAdapter.preview_text(kind, content),
                    message_type=kind,
                    sent_by=originator,
                    wa_message_id=provider_message_id,
                    delivery_status="sent",
                )
                self._sessions.touch(session_id)
        except (SQLAlchemyError, LookupError):
            logger.exception(
                "Failed to record outbound message session=%s wa_message_id=%s",
                session_id,
                provider_message_id,
            )


__all__ = ["MessageDispatcher"]
