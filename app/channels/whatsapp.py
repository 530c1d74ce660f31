"""WhatsApp Cloud API channel adapter and Graph API client."""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..conversations.models import ChannelChange, DeliveryStatusUpdate, InboundMessage
from .base import ChannelAdapter, EnvelopeError, ProviderError
from .phone import digits_only

DELIVERY_STATUSES = {"sent", "delivered", "read", "failed"}


# ---------------------------------------------------------------------------
# Provider envelope (boundary validation)


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _TextContent(_Envelope):
    body: str


class _ButtonContent(_Envelope):
    text: str | None = None
    payload: str | None = None


class _ButtonReply(_Envelope):
    id: str | None = None
    title: str | None = None


class _InteractiveContent(_Envelope):
    type: str | None = None
    button_reply: _ButtonReply | None = None


class ProviderMessage(_Envelope):
    id: str
    sender: str = Field(alias="from")
    type: str
    timestamp: str | None = None
    text: _TextContent | None = None
    button: _ButtonContent | None = None
    interactive: _InteractiveContent | None = None


class ProviderStatus(_Envelope):
    id: str
    status: str
    recipient_id: str | None = None


class _ContactProfile(_Envelope):
    name: str | None = None


class ProviderContact(_Envelope):
    wa_id: str | None = None
    profile: _ContactProfile | None = None


class _ChangeMetadata(_Envelope):
    phone_number_id: str | None = None
    display_phone_number: str | None = None


class ChangeValue(_Envelope):
    metadata: _ChangeMetadata | None = None
    contacts: list[ProviderContact] = Field(default_factory=list)
    messages: list[ProviderMessage] = Field(default_factory=list)
    statuses: list[ProviderStatus] = Field(default_factory=list)


class EnvelopeChange(_Envelope):
    field: str
    value: ChangeValue = Field(default_factory=ChangeValue)


class EnvelopeEntry(_Envelope):
    id: str | None = None
    changes: list[EnvelopeChange] = Field(default_factory=list)


class WebhookEnvelope(_Envelope):
    object: str | None = None
    entry: list[EnvelopeEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Adapter


class WhatsAppAdapter(ChannelAdapter):
    channel_name = "whatsapp"
    signature_header = "X-Hub-Signature-256"

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        config: Mapping[str, Any],
    ) -> bool:
        secret = (config or {}).get("app_secret")
        if not secret:
            return True
        received = headers.get(self.signature_header)
        if not received:
            return False
        digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        expected = f"sha256={digest}"
        return hmac.compare_digest(received, expected)

    def parse_incoming(self, payload: Mapping[str, Any]) -> list[ChannelChange]:
        try:
            envelope = WebhookEnvelope.model_validate(payload)
        except ValidationError as exc:
            raise EnvelopeError(f"Malformed WhatsApp envelope: {exc}") from exc

        changes: list[ChannelChange] = []
        for entry in envelope.entry:
            for change in entry.changes:
                if change.field != "messages":
                    continue
                value = change.value
                phone_number_id = value.metadata.phone_number_id if value.metadata else None
                if not phone_number_id:
                    continue
                contacts = {
                    c.wa_id: c.profile.name if c.profile else None
                    for c in value.contacts
                    if c.wa_id
                }
                statuses = [
                    DeliveryStatusUpdate(
                        provider_message_id=s.id,
                        status=s.status,
                        recipient_phone=s.recipient_id,
                    )
                    for s in value.statuses
                    if s.status in DELIVERY_STATUSES
                ]
                messages = [
                    self._to_inbound(message, contacts.get(message.sender))
                    for message in value.messages
                ]
                changes.append(
                    ChannelChange(
                        phone_number_id=phone_number_id,
                        messages=messages,
                        statuses=statuses,
                        metadata={"entry_id": entry.id},
                    )
                )
        return changes

    def _to_inbound(self, message: ProviderMessage, sender_name: str | None) -> InboundMessage:
        message_type = "unsupported"
        text: str | None = None
        if message.type == "text" and message.text is not None:
            message_type, text = "text", message.text.body
        elif message.type == "button" and message.button is not None:
            message_type, text = "interactive", message.button.text or message.button.payload
        elif message.type == "interactive" and message.interactive is not None:
            reply = message.interactive.button_reply
            if reply is not None and reply.title:
                message_type, text = "interactive", reply.title
        if text is None:
            message_type = "unsupported"

        sent_at = datetime.now(timezone.utc)
        if message.timestamp:
            try:
                sent_at = datetime.fromtimestamp(int(message.timestamp), tz=timezone.utc)
            except (ValueError, TypeError, OverflowError):
                pass
        return InboundMessage(
            provider_message_id=message.id,
            sender_phone=digits_only(message.sender),
            message_type=message_type,
            text=text,
            sender_name=sender_name,
            sent_at=sent_at,
            raw_type=message.type,
        )

    def build_outgoing_payload(
        self, to: str, kind: str, payload: Mapping[str, Any]
    ) -> dict[str, Any]:
        message: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": kind,
        }
        if kind == "text":
            message["text"] = {"body": payload["body"]}
        elif kind == "template":
            parameters = [
                {"type": "text", "text": str(value)}
                for value in payload.get("parameters") or []
            ]
            template: dict[str, Any] = {
                "name": payload["name"],
                "language": {"code": payload.get("language") or "pt_BR"},
            }
            if parameters:
                template["components"] = [{"type": "body", "parameters": parameters}]
            message["template"] = template
        elif kind == "interactive":
            message["interactive"] = {
                "type": "button",
                "body": {"text": payload["body"]},
                "action": {
                    "buttons": [
                        {
                            "type": "reply",
                            "reply": {"id": button["id"], "title": button["title"]},
                        }
                        for button in payload.get("buttons") or []
                    ]
                },
            }
        else:
            raise ValueError(f"Unsupported message kind: {kind}")
        return message

    @staticmethod
    def preview_text(kind: str, payload: Mapping[str, Any]) -> str | None:
        """Human-readable body stored in the message log for an outbound send."""

        if kind == "text":
            return payload.get("body")
        if kind == "template":
            return f"[template: {payload.get('name')}]"
        if kind == "interactive":
            return payload.get("body")
        return None


# ---------------------------------------------------------------------------
# Graph API transport


class GraphApiClient:
    """Thin wrapper over the Graph API ``/{phone_number_id}/messages`` endpoint."""

    def __init__(
        self,
        url_template: str,
        *,
        timeout: float = 15.0,
        session: requests.Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.url_template = url_template
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)

    def send_message(
        self, phone_number_id: str, access_token: str, payload: dict[str, Any]
    ) -> str | None:
        """POST ``payload`` and return the provider message id."""

        url = self.url_template.format(phone_number_id=phone_number_id)
        try:
            response = self.session.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self.logger.error(
                "WhatsApp API unreachable phone_number_id=%s: %s", phone_number_id, exc
            )
            raise ProviderError(f"WhatsApp API unreachable: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if not response.ok:
            error = body.get("error") or {}
            description = error.get("message") if isinstance(error, dict) else None
            self.logger.error(
                "WhatsApp API error status=%s phone_number_id=%s: %s",
                response.status_code,
                phone_number_id,
                description or "unknown",
            )
            raise ProviderError(f"WhatsApp API error: {description or 'unknown'}")

        messages = body.get("messages") or []
        if messages and isinstance(messages[0], dict):
            return messages[0].get("id")
        return None


__all__ = [
    "DELIVERY_STATUSES",
    "GraphApiClient",
    "WebhookEnvelope",
    "WhatsAppAdapter",
]
