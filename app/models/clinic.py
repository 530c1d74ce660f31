"""Clinic collaborator models read by the messaging core.

Clinics, patients, professionals and appointments are owned by the wider
clinic-management application.  Only the columns the WhatsApp subsystem
depends on are mapped here; the messaging code treats these tables as
read-only except for the appointment status written when a patient confirms
or cancels over WhatsApp.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import List

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base


APPOINTMENT_STATUSES = ("scheduled", "confirmed", "completed", "cancelled", "no_show")


def _utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


class Clinic(Base):
    """A tenant clinic together with its WhatsApp channel configuration.

    Attributes:
        whatsapp_enabled: Master switch for the messaging channel.
        whatsapp_phone_number_id: Provider phone-number identifier used to
            route inbound webhooks and to address outbound sends.
        whatsapp_verify_token: Secret echoed by the provider during the
            webhook verification handshake.
        wa_reminders_d1: Send day-before appointment reminders.
        wa_reminders_d0: Send same-day appointment reminders.
        wa_ai_model: Model identifier used by the AI decision engine.
    """

    __tablename__ = "clinics"
    __table_args__ = (
        Index("ix_clinics_wa_phone_number_id", "whatsapp_phone_number_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(length=64))
    address: Mapped[str | None] = mapped_column(Text())
    city: Mapped[str | None] = mapped_column(String(length=128))
    state: Mapped[str | None] = mapped_column(String(length=64))

    whatsapp_enabled: Mapped[bool] = mapped_column(
        Boolean(), nullable=False, default=False, server_default=text("false")
    )
    whatsapp_phone_number_id: Mapped[str | None] = mapped_column(String(length=64))
    whatsapp_phone_display: Mapped[str | None] = mapped_column(String(length=64))
    whatsapp_waba_id: Mapped[str | None] = mapped_column(String(length=64))
    whatsapp_verify_token: Mapped[str | None] = mapped_column(String(length=255))
    wa_reminders_d1: Mapped[bool] = mapped_column(
        Boolean(), nullable=False, default=True, server_default=text("true")
    )
    wa_reminders_d0: Mapped[bool] = mapped_column(
        Boolean(), nullable=False, default=True, server_default=text("true")
    )
    wa_attendant_inbox: Mapped[bool] = mapped_column(
        Boolean(), nullable=False, default=True, server_default=text("true")
    )
    wa_ai_model: Mapped[str] = mapped_column(
        String(length=128),
        nullable=False,
        default="openai/gpt-4o-mini",
        server_default=text("'openai/gpt-4o-mini'"),
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    patients: Mapped[List["Patient"]] = relationship(
        back_populates="clinic", passive_deletes=True
    )


class Patient(Base):
    """Patient row; the phone column is free-form as typed by clinic staff."""

    __tablename__ = "patients"
    __table_args__ = (Index("ix_patients_clinic_id", "clinic_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), primary_key=True, default=uuid.uuid4
    )
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(length=64))
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    clinic: Mapped[Clinic] = relationship(back_populates="patients")


class Professional(Base):
    """Health professional attending appointments."""

    __tablename__ = "professionals"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), primary_key=True, default=uuid.uuid4
    )
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)


class Appointment(Base):
    """Scheduled appointment between a patient and a professional."""

    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint(
            "status IN ('scheduled', 'confirmed', 'completed', 'cancelled', 'no_show')",
            name="ck_appointments_status",
        ),
        Index("ix_appointments_starts_at", "starts_at"),
        Index("ix_appointments_patient_id", "patient_id"),
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
    professional_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(), ForeignKey("professionals.id", ondelete="SET NULL")
    )
    starts_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    ends_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default="scheduled",
        server_default=text("'scheduled'"),
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    patient: Mapped[Patient | None] = relationship(lazy="joined")
    professional: Mapped[Professional | None] = relationship(lazy="joined")


__all__ = [
    "APPOINTMENT_STATUSES",
    "Appointment",
    "Clinic",
    "Patient",
    "Professional",
]
