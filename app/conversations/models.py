"""Domain models used by the conversation service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass
class InboundMessage:
    """Uniform representation of an inbound channel message.

    ``text`` is ``None`` for content kinds the conversation flow does not
    handle (media, reactions, locations...); ``message_type`` is then
    ``"unsupported"``.
    """

    provider_message_id: str
    sender_phone: str
    message_type: str
    text: str | None
    sender_name: str | None = None
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    raw_type: str | None = None

    @property
    def is_supported(self) -> bool:
        return self.text is not None and self.message_type != "unsupported"


@dataclass
class DeliveryStatusUpdate:
    provider_message_id: str
    status: str
    recipient_phone: str | None = None


@dataclass
class ChannelChange:
    """One ``messages`` change of a provider delivery, addressed to one channel."""

    phone_number_id: str
    messages: list[InboundMessage] = field(default_factory=list)
    statuses: list[DeliveryStatusUpdate] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class InboundOutcome:
    """What happened to a single inbound message."""

    status: str
    session_id: Any = None
    action: str | None = None
    detail: str | None = None


@dataclass
class WebhookReport:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    status_updates: int = 0
    outcomes: list[InboundOutcome] = field(default_factory=list)
