"""WhatsApp conversation, template and notification models.

The partial unique indexes declared here carry the concurrency guarantees of
the messaging core:

- ``uq_wa_sessions_open_phone`` allows a single non-resolved session per
  ``(clinic_id, wa_phone)`` so concurrent inbound deliveries coalesce.
- ``uq_wa_messages_inbound_provider_id`` rejects a second inbound row with the
  same provider message id, which makes webhook redelivery idempotent.
- ``uq_notification_log_dedup`` blocks a second non-failed reminder for the
  same appointment, channel and reminder kind.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from . import Base


_JSON = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class WhatsAppSession(Base):
    """One conversation thread between a clinic and a counterparty phone."""

    __tablename__ = "whatsapp_sessions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('ai', 'human', 'resolved')", name="ck_wa_sessions_status"
        ),
        Index(
            "uq_wa_sessions_open_phone",
            "clinic_id",
            "wa_phone",
            unique=True,
            sqlite_where=text("status != 'resolved'"),
            postgresql_where=text("status <> 'resolved'"),
        ),
        Index("ix_wa_sessions_clinic_status", "clinic_id", "status"),
        Index("ix_wa_sessions_last_message_at", "last_message_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), primary_key=True, default=uuid.uuid4
    )
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    patient_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(), ForeignKey("patients.id", ondelete="SET NULL")
    )
    wa_phone: Mapped[str] = mapped_column(String(length=32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(length=16), nullable=False, default="ai", server_default=text("'ai'")
    )
    ai_draft: Mapped[str | None] = mapped_column(Text())
    context_snapshot: Mapped[list[dict[str, Any]]] = mapped_column(
        _JSON, nullable=False, default=list
    )
    last_message_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class WhatsAppMessage(Base):
    """Single inbound or outbound message; only ``delivery_status`` mutates."""

    __tablename__ = "whatsapp_messages"
    __table_args__ = (
        CheckConstraint(
            "direction IN ('inbound', 'outbound')", name="ck_wa_messages_direction"
        ),
        CheckConstraint(
            "message_type IN ('text', 'template', 'interactive')",
            name="ck_wa_messages_type",
        ),
        CheckConstraint(
            "sent_by IN ('patient', 'ai', 'attendant', 'system')",
            name="ck_wa_messages_sent_by",
        ),
        Index("ix_wa_messages_session_created", "session_id", "created_at"),
        Index("ix_wa_messages_wa_message_id", "wa_message_id"),
        Index(
            "uq_wa_messages_inbound_provider_id",
            "clinic_id",
            "wa_message_id",
            unique=True,
            sqlite_where=text(
                "direction = 'inbound' AND wa_message_id IS NOT NULL"
            ),
            postgresql_where=text(
                "direction = 'inbound' AND wa_message_id IS NOT NULL"
            ),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), primary_key=True, default=uuid.uuid4
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("whatsapp_sessions.id", ondelete="CASCADE"), nullable=False
    )
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    direction: Mapped[str] = mapped_column(String(length=16), nullable=False)
    wa_message_id: Mapped[str | None] = mapped_column(String(length=255))
    body: Mapped[str | None] = mapped_column(Text())
    message_type: Mapped[str] = mapped_column(
        String(length=16), nullable=False, default="text"
    )
    sent_by: Mapped[str] = mapped_column(
        String(length=16), nullable=False, default="system"
    )
    delivery_status: Mapped[str | None] = mapped_column(String(length=16))
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class WhatsAppTemplate(Base):
    """Provider-approved message template configured per clinic."""

    __tablename__ = "whatsapp_templates"
    __table_args__ = (
        UniqueConstraint(
            "clinic_id", "template_key", name="uq_wa_templates_clinic_key"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), primary_key=True, default=uuid.uuid4
    )
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    template_key: Mapped[str] = mapped_column(String(length=64), nullable=False)
    meta_template_name: Mapped[str] = mapped_column(
        String(length=255), nullable=False
    )
    language: Mapped[str] = mapped_column(
        String(length=16), nullable=False, default="pt_BR"
    )
    body_preview: Mapped[str] = mapped_column(Text(), nullable=False, default="")
    enabled: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class NotificationLog(Base):
    """Idempotency and audit record for reminder send attempts."""

    __tablename__ = "notification_log"
    __table_args__ = (
        CheckConstraint(
            "channel IN ('whatsapp', 'email', 'sms')", name="ck_notification_channel"
        ),
        CheckConstraint(
            "status IN ('sent', 'delivered', 'read', 'failed', 'skipped')",
            name="ck_notification_status",
        ),
        Index("ix_notification_log_clinic_sent", "clinic_id", "sent_at"),
        Index(
            "uq_notification_log_dedup",
            "appointment_id",
            "channel",
            "type",
            unique=True,
            sqlite_where=text("status != 'failed'"),
            postgresql_where=text("status <> 'failed'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), primary_key=True, default=uuid.uuid4
    )
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    appointment_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(), ForeignKey("appointments.id", ondelete="SET NULL")
    )
    patient_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(), ForeignKey("patients.id", ondelete="SET NULL")
    )
    channel: Mapped[str] = mapped_column(String(length=16), nullable=False)
    type: Mapped[str] = mapped_column(String(length=64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(length=16), nullable=False, default="sent"
    )
    error_message: Mapped[str | None] = mapped_column(Text())
    sent_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    wa_message_id: Mapped[str | None] = mapped_column(String(length=255))


class ChannelSecret(Base):
    """Provider access token for a clinic's channel; never exposed by the API."""

    __tablename__ = "channel_secrets"

    clinic_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("clinics.id", ondelete="CASCADE"), primary_key=True
    )
    access_token: Mapped[str] = mapped_column(Text(), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


__all__ = [
    "ChannelSecret",
    "NotificationLog",
    "WhatsAppMessage",
    "WhatsAppSession",
    "WhatsAppTemplate",
]
