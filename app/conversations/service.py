"""High-level conversation flow orchestration for inbound WhatsApp messages."""

from __future__ import annotations

import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..agents.providers import CompletionClient
from ..agents.schemas import AIAction
from ..agents.service import DecisionEngine
from ..channels.base import DispatchError
from ..channels.whatsapp import GraphApiClient
from ..clinics.repository import ClinicRepository
from ..core.settings import MessagingSettings
from ..models import Clinic, Patient
from .dispatcher import MessageDispatcher
from .models import InboundMessage, InboundOutcome
from .repository import STATUS_HUMAN, SessionNotFoundError, SqlSessionRepository

logger = logging.getLogger(__name__)

_APPOINTMENT_STATUS_FOR_ACTION = {
    "confirm_appointment": "confirmed",
    "cancel_appointment": "cancelled",
}


class ConversationService:
    """Coordinates session state, the decision engine and outbound replies."""

    def __init__(
        self,
        db: Session,
        clinics: ClinicRepository,
        sessions: SqlSessionRepository,
        engine: DecisionEngine,
        dispatcher: MessageDispatcher,
    ) -> None:
        self._db = db
        self._clinics = clinics
        self._sessions = sessions
        self._engine = engine
        self._dispatcher = dispatcher

    @classmethod
    def from_session(
        cls,
        db: Session,
        *,
        graph_client: GraphApiClient,
        completion_client: CompletionClient,
        settings: MessagingSettings,
    ) -> "ConversationService":
        clinics = ClinicRepository(db)
        sessions = SqlSessionRepository(db, context_window=settings.context_window)
        engine = DecisionEngine(completion_client, clinics, sessions, settings=settings)
        dispatcher = MessageDispatcher(db, client=graph_client, sessions=sessions)
        return cls(db, clinics, sessions, engine, dispatcher)

    @property
    def sessions(self) -> SqlSessionRepository:
        return self._sessions

    @property
    def engine(self) -> DecisionEngine:
        return self._engine

    @property
    def dispatcher(self) -> MessageDispatcher:
        return self._dispatcher

    # ------------------------------------------------------------------
    # Inbound processing

    def handle_inbound(self, clinic: Clinic, message: InboundMessage) -> InboundOutcome:
        """Run the inbound procedure for one message of ``clinic``."""

        if not message.is_supported:
            logger.info(
                "Ignoring unsupported WhatsApp content type=%s wa_message_id=%s clinic=%s",
                message.raw_type,
                message.provider_message_id,
                clinic.id,
            )
            return InboundOutcome(status="ignored", detail="unsupported_content")

        if self._sessions.has_inbound_message(clinic.id, message.provider_message_id):
            logger.info(
                "Duplicate delivery wa_message_id=%s clinic=%s",
                message.provider_message_id,
                clinic.id,
            )
            return InboundOutcome(status="duplicate")

        patient = self._clinics.find_patient_by_phone(clinic.id, message.sender_phone)
        session = self._sessions.find_or_create(
            clinic.id, message.sender_phone, patient.id if patient else None
        )

        try:
            with self._db.begin_nested():
                self._sessions.add_message(
                    session_id=session.id,
                    clinic_id=clinic.id,
                    direction="inbound",
                    body=message.text,
                    message_type=message.message_type,
                    sent_by="patient",
                    wa_message_id=message.provider_message_id,
                )
        except IntegrityError:
            logger.info(
                "Concurrent duplicate delivery wa_message_id=%s clinic=%s",
                message.provider_message_id,
                clinic.id,
            )
            return InboundOutcome(status="duplicate", session_id=session.id)
        self._sessions.touch(session.id, message.sent_at)

        if session.status == STATUS_HUMAN:
            logger.info("Session %s is attendant-owned; skipping AI", session.id)
            return InboundOutcome(status="human_handled", session_id=session.id)

        if patient is None and session.patient_id is not None:
            patient = self._db.get(Patient, session.patient_id)

        try:
            action = self._engine.decide(clinic, session, patient, message.text or "")
        except Exception:
            logger.exception("AI decision failed session=%s", session.id)
            return InboundOutcome(status="ai_failed", session_id=session.id)

        self._execute(clinic, session.id, message, action)
        self._sessions.append_context(
            session.id,
            [
                {"role": "user", "content": message.text or ""},
                {"role": "assistant", "content": action.reply_text or ""},
            ],
        )
        return InboundOutcome(
            status="processed", session_id=session.id, action=action.action
        )

    # ------------------------------------------------------------------
    # Helpers

    def _execute(
        self,
        clinic: Clinic,
        session_id: uuid.UUID,
        message: InboundMessage,
        action: AIAction,
    ) -> None:
        new_status = _APPOINTMENT_STATUS_FOR_ACTION.get(action.action)
        if new_status is not None and action.appointment_id is not None:
            updated = self._clinics.update_appointment_status(
                clinic.id, uuid.UUID(action.appointment_id), new_status
            )
            logger.info(
                "Appointment %s -> %s via WhatsApp (updated=%s) session=%s",
                action.appointment_id,
                new_status,
                updated,
                session_id,
            )
        elif action.action == "escalate":
            try:
                self._sessions.set_status(session_id, STATUS_HUMAN)
            except SessionNotFoundError:
                logger.exception("Session %s vanished before escalation", session_id)

        if not action.reply_text:
            return
        try:
            self._dispatcher.send(
                clinic.id,
                session_id,
                "ai",
                message.sender_phone,
                "text",
                {"body": action.reply_text},
            )
        except DispatchError as exc:
            logger.error(
                "Dropping AI reply session=%s clinic=%s: %s", session_id, clinic.id, exc
            )


__all__ = ["ConversationService"]
