"""Pydantic schemas for the WhatsApp messaging API."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

MessageKind = Literal["text", "template", "interactive"]
Originator = Literal["patient", "ai", "attendant", "system"]


# Outbound payloads ----------------------------------------------------------


class TextContent(BaseModel):
    body: str = Field(min_length=1, max_length=4096)


class TemplateContent(BaseModel):
    name: str = Field(min_length=1)
    language: str = "pt_BR"
    parameters: list[str] = Field(default_factory=list)


class ReplyButton(BaseModel):
    id: str = Field(min_length=1, max_length=256)
    title: str = Field(min_length=1, max_length=20)


class InteractiveContent(BaseModel):
    body: str = Field(min_length=1, max_length=1024)
    buttons: list[ReplyButton] = Field(min_length=1, max_length=3)


PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    "text": TextContent,
    "template": TemplateContent,
    "interactive": InteractiveContent,
}


class SendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    clinic_id: uuid.UUID = Field(alias="clinicId")
    session_id: uuid.UUID | None = Field(default=None, alias="sessionId")
    originator: Originator = Field(default="system", alias="sentBy")
    to_phone: str = Field(alias="to")
    kind: MessageKind = Field(default="text", alias="type")
    payload: dict[str, Any]


class SendResponse(BaseModel):
    success: bool = True
    provider_message_id: str | None = Field(default=None, serialization_alias="providerMessageId")


# Sessions and messages -------------------------------------------------------


class ContextTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class SessionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    clinic_id: uuid.UUID
    patient_id: uuid.UUID | None = None
    patient_name: str | None = None
    wa_phone: str
    status: str
    ai_draft: str | None = None
    last_message_at: datetime
    created_at: datetime


class SessionList(BaseModel):
    items: list[SessionSummary]
    total: int


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    session_id: uuid.UUID
    direction: str
    wa_message_id: str | None = None
    body: str | None = None
    message_type: str
    sent_by: str
    delivery_status: str | None = None
    created_at: datetime


class MessageList(BaseModel):
    items: list[MessageOut]
    total: int


class AttendantReply(BaseModel):
    text: str = Field(min_length=1, max_length=4096)


# Channel administration -----------------------------------------------------


class TokenUpdate(BaseModel):
    access_token: str = Field(min_length=20)


class TemplateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    template_key: str
    meta_template_name: str
    language: str
    body_preview: str
    enabled: bool


class TemplateUpdate(BaseModel):
    meta_template_name: str | None = Field(default=None, min_length=1)
    language: str | None = Field(default=None, min_length=2)
    enabled: bool | None = None


# Webhook acknowledgement -------------------------------------------------------


class WebhookSummary(BaseModel):
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    status_updates: int = 0
