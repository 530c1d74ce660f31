"""Pydantic schemas for the AI decision engine."""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

ActionKind = Literal["reply", "confirm_appointment", "cancel_appointment", "escalate"]


class AIAction(BaseModel):
    """Structured decision returned by the language model.

    Accepts both the snake_case field names and the camelCase keys the model
    is prompted to emit (``replyText``, ``appointmentId``).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: ActionKind
    reply_text: str | None = Field(default=None, alias="replyText")
    appointment_id: str | None = Field(default=None, alias="appointmentId")

    @model_validator(mode="after")
    def _reply_needs_text(self) -> "AIAction":
        if self.reply_text is not None:
            self.reply_text = self.reply_text.strip() or None
        if self.appointment_id is not None:
            cleaned = self.appointment_id.strip()
            self.appointment_id = None if cleaned.lower() in ("", "null", "none") else cleaned
        if self.action == "reply" and not self.reply_text:
            raise ValueError("reply actions must carry replyText")
        return self

    @property
    def touches_appointment(self) -> bool:
        return self.action in ("confirm_appointment", "cancel_appointment")


class AppointmentOption(BaseModel):
    """An appointment the model may reference, exposed by opaque id."""

    id: UUID
    starts_at: datetime
    professional: str | None = None
    status: str


class DecisionContext(BaseModel):
    clinic_name: str
    clinic_address: str | None = None
    clinic_phone: str | None = None
    patient_name: str | None = None
    appointments: list[AppointmentOption] = Field(default_factory=list)
    timezone: str = "America/Sao_Paulo"


class HistoryTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class AIAgentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    clinic_id: UUID = Field(alias="clinicId")
    session_id: UUID = Field(alias="sessionId")
    patient_id: UUID | None = Field(default=None, alias="patientId")
    message_text: str = Field(alias="messageText", min_length=1)
    history: list[HistoryTurn] | None = None


class AIActionOut(BaseModel):
    action: ActionKind
    reply_text: str | None = Field(default=None, serialization_alias="replyText")
    appointment_id: str | None = Field(default=None, serialization_alias="appointmentId")


__all__ = [
    "AIAction",
    "AIActionOut",
    "AIAgentRequest",
    "ActionKind",
    "AppointmentOption",
    "DecisionContext",
    "HistoryTurn",
]
