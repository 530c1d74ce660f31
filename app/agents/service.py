"""AI decision engine turning a patient message into one structured action."""

from __future__ import annotations

import json
import logging
import re
import uuid
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from ..clinics.repository import ClinicReader
from ..conversations.repository import SessionRepository
from ..core.settings import MessagingSettings
from ..models import Clinic, Patient, WhatsAppSession
from .prompts import render_system_prompt
from .providers import CompletionClient
from .responses import ResponseParameterStore
from .schemas import AIAction, AppointmentOption, DecisionContext

logger = logging.getLogger(__name__)

PROVIDER_FAILURE_REPLY = (
    "Desculpe, estou com dificuldades no momento. "
    "Um atendente irá te responder em breve! 😊"
)
UNPARSEABLE_REPLY = "Não entendi sua mensagem. Um atendente irá te ajudar! 😊"
APPOINTMENT_NOT_FOUND_REPLY = (
    "Não encontrei sua consulta. Um atendente irá verificar! 😊"
)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class AIEngineError(RuntimeError):
    """Internal decision failure carrying the apology sent to the patient."""

    def __init__(self, reply_text: str, reason: str) -> None:
        super().__init__(reason)
        self.reply_text = reply_text


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DecisionEngine:
    """Wrap the language model with validation and a safe escalate default.

    :meth:`decide` never raises for provider or parsing problems; every such
    failure degrades to an ``escalate`` action carrying a fixed apology.
    """

    def __init__(
        self,
        completion_client: CompletionClient,
        clinics: ClinicReader,
        sessions: SessionRepository,
        *,
        settings: MessagingSettings,
        response_store: ResponseParameterStore | None = None,
    ) -> None:
        self._client = completion_client
        self._clinics = clinics
        self._sessions = sessions
        self._settings = settings
        self._responses = response_store or ResponseParameterStore()

    # ------------------------------------------------------------------
    # Context

    def build_context(
        self,
        clinic: Clinic,
        patient: Patient | None,
        *,
        now: datetime | None = None,
    ) -> DecisionContext:
        options: list[AppointmentOption] = []
        if patient is not None:
            for appointment in self._clinics.upcoming_appointments(
                clinic.id,
                patient.id,
                now=now,
                limit=self._settings.max_upcoming_appointments,
            ):
                options.append(
                    AppointmentOption(
                        id=appointment.id,
                        starts_at=_as_utc(appointment.starts_at),
                        professional=(
                            appointment.professional.name
                            if appointment.professional
                            else None
                        ),
                        status=appointment.status,
                    )
                )
        return DecisionContext(
            clinic_name=clinic.name,
            clinic_address=clinic.address,
            clinic_phone=clinic.phone,
            patient_name=patient.name if patient else None,
            appointments=options,
            timezone=self._settings.clinic_timezone,
        )

    # ------------------------------------------------------------------
    # Decision

    def decide(
        self,
        clinic: Clinic,
        session: WhatsAppSession,
        patient: Patient | None,
        message_text: str,
        history: Sequence[dict[str, Any]] | None = None,
    ) -> AIAction:
        """Return the action for ``message_text``; escalates on any failure."""

        try:
            action = self._decide(clinic, session, patient, message_text, history)
        except AIEngineError as exc:
            logger.warning("AI decision escalated session=%s: %s", session.id, exc)
            action = AIAction(action="escalate", reply_text=exc.reply_text)
        if action.action == "escalate" and action.reply_text:
            self._sessions.set_draft(session.id, action.reply_text)
        logger.info(
            "AI decision session=%s action=%s appointment=%s",
            session.id,
            action.action,
            action.appointment_id,
            extra={"clinic_id": clinic.id, "session_id": session.id},
        )
        return action

    def _decide(
        self,
        clinic: Clinic,
        session: WhatsAppSession,
        patient: Patient | None,
        message_text: str,
        history: Sequence[dict[str, Any]] | None,
    ) -> AIAction:
        context = self.build_context(clinic, patient)
        turns = list(session.context_snapshot or []) if history is None else list(history)
        messages = [{"role": "system", "content": render_system_prompt(context)}]
        for turn in turns[-self._settings.ai_history_turns :]:
            role = turn.get("role")
            content = turn.get("content")
            if role in ("user", "assistant") and content:
                messages.append({"role": role, "content": str(content)})
        messages.append({"role": "user", "content": message_text})

        model = clinic.wa_ai_model or self._settings.default_ai_model
        try:
            raw = self._client.complete(
                model, messages, **self._responses.defaults_for_model(model)
            )
        except Exception as exc:
            raise AIEngineError(
                PROVIDER_FAILURE_REPLY, f"provider call failed model={model}: {exc}"
            ) from exc

        try:
            action = AIAction.model_validate(json.loads(_CODE_FENCE.sub("", raw.strip())))
        except (ValueError, ValidationError) as exc:
            raise AIEngineError(UNPARSEABLE_REPLY, f"unparseable response: {exc}") from exc

        return self._verify(context, action)

    def _verify(self, context: DecisionContext, action: AIAction) -> AIAction:
        if not action.touches_appointment and action.appointment_id is None:
            return action
        if action.appointment_id is None or context.patient_name is None:
            raise AIEngineError(
                APPOINTMENT_NOT_FOUND_REPLY,
                f"{action.action} without a verifiable appointment",
            )
        try:
            appointment_id = uuid.UUID(action.appointment_id)
        except ValueError:
            appointment_id = None
        if appointment_id not in {option.id for option in context.appointments}:
            raise AIEngineError(
                APPOINTMENT_NOT_FOUND_REPLY,
                "appointment outside the patient's upcoming list",
            )
        return action


__all__ = [
    "AIEngineError",
    "APPOINTMENT_NOT_FOUND_REPLY",
    "DecisionEngine",
    "PROVIDER_FAILURE_REPLY",
    "UNPARSEABLE_REPLY",
]
