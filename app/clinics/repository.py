"""Read/write contracts over the clinic collaborator tables."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..channels.phone import match_suffix
from ..models import Appointment, Clinic, Patient, WhatsAppTemplate

logger = logging.getLogger(__name__)

ACTIVE_APPOINTMENT_STATUSES = ("scheduled", "confirmed")

# Formatting characters clinic staff type into patient phone fields.
_PHONE_FORMATTING = (" ", "-", "(", ")", "+", ".")

DEFAULT_TEMPLATES: dict[str, dict[str, str]] = {
    "reminder_d1": {
        "meta_template_name": "lembrete_consulta_d1",
        "body_preview": (
            "Olá {{1}}! Lembramos da sua consulta amanhã, {{2}} às {{3}}, "
            "com {{4}}. Responda SIM para confirmar ou NÃO para cancelar."
        ),
    },
    "reminder_d0": {
        "meta_template_name": "lembrete_consulta_d0",
        "body_preview": (
            "Olá {{1}}! Sua consulta é hoje às {{2}} com {{3}}. "
            "Responda SIM para confirmar ou NÃO para cancelar."
        ),
    },
    "booking_confirmation": {
        "meta_template_name": "confirmacao_agendamento",
        "body_preview": "Olá {{1}}! Sua consulta foi agendada para {{2}} às {{3}} com {{4}}.",
    },
    "booking_cancellation": {
        "meta_template_name": "cancelamento_agendamento",
        "body_preview": "Olá {{1}}, sua consulta de {{2}} às {{3}} foi cancelada.",
    },
}


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _phone_digits(column: Any) -> Any:
    expr = column
    for char in _PHONE_FORMATTING:
        expr = func.replace(expr, char, "")
    return expr


class ClinicReader(Protocol):
    """Subset of :class:`ClinicRepository` the conversation flow depends on."""

    def find_patient_by_phone(
        self, clinic_id: uuid.UUID, phone: str
    ) -> Patient | None: ...

    def upcoming_appointments(
        self,
        clinic_id: uuid.UUID,
        patient_id: uuid.UUID,
        *,
        now: dt.datetime | None = None,
        limit: int = 3,
    ) -> list[Appointment]: ...

    def update_appointment_status(
        self, clinic_id: uuid.UUID, appointment_id: uuid.UUID, status: str
    ) -> bool: ...


class ClinicRepository:
    """SQLAlchemy access to clinics, patients, appointments and templates."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # Clinics -----------------------------------------------------------------
    def get_clinic(self, clinic_id: uuid.UUID) -> Clinic | None:
        return self._session.get(Clinic, clinic_id)

    def find_enabled_by_phone_number_id(self, phone_number_id: str) -> Clinic | None:
        return self._session.execute(
            select(Clinic)
            .where(
                Clinic.whatsapp_phone_number_id == phone_number_id,
                Clinic.whatsapp_enabled.is_(True),
            )
            .limit(1)
        ).scalar_one_or_none()

    def find_enabled_by_verify_token(self, verify_token: str) -> Clinic | None:
        if not verify_token:
            return None
        return self._session.execute(
            select(Clinic)
            .where(
                Clinic.whatsapp_verify_token == verify_token,
                Clinic.whatsapp_enabled.is_(True),
            )
            .limit(1)
        ).scalar_one_or_none()

    def list_clinic_ids(self) -> list[uuid.UUID]:
        return list(self._session.execute(select(Clinic.id)).scalars())

    # Patients ------------------------------------------------------------------
    def find_patient_by_phone(self, clinic_id: uuid.UUID, phone: str) -> Patient | None:
        """Match a sender against stored patient phones by trailing digits.

        Stored phones are free-form, so formatting characters are stripped in
        SQL before comparing the last nine digits.  More than one hit is
        treated as no match: guessing between two patients would let one of
        them confirm or cancel the other's appointment.
        """

        suffix = match_suffix(phone)
        if not suffix:
            return None
        matches = list(
            self._session.execute(
                select(Patient)
                .where(
                    Patient.clinic_id == clinic_id,
                    Patient.phone.is_not(None),
                    _phone_digits(Patient.phone).like(f"%{suffix}"),
                )
                .limit(2)
            ).scalars()
        )
        if len(matches) > 1:
            logger.warning(
                "Ambiguous patient phone match clinic=%s suffix=***%s; continuing without patient",
                clinic_id,
                suffix[-4:],
            )
            return None
        return matches[0] if matches else None

    # Appointments ------------------------------------------------------------
    def upcoming_appointments(
        self,
        clinic_id: uuid.UUID,
        patient_id: uuid.UUID,
        *,
        now: dt.datetime | None = None,
        limit: int = 3,
    ) -> list[Appointment]:
        reference = _as_utc(now or dt.datetime.now(dt.timezone.utc))
        return list(
            self._session.execute(
                select(Appointment)
                .where(
                    Appointment.clinic_id == clinic_id,
                    Appointment.patient_id == patient_id,
                    Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
                    Appointment.starts_at >= reference,
                )
                .order_by(Appointment.starts_at.asc())
                .limit(limit)
            )
            .unique()
            .scalars()
        )

    def update_appointment_status(
        self, clinic_id: uuid.UUID, appointment_id: uuid.UUID, status: str
    ) -> bool:
        appointment = self._session.execute(
            select(Appointment).where(
                Appointment.id == appointment_id, Appointment.clinic_id == clinic_id
            )
        ).unique().scalar_one_or_none()
        if appointment is None:
            return False
        appointment.status = status
        self._session.flush()
        return True

    def reminder_candidates(
        self, start: dt.datetime, end: dt.datetime
    ) -> list[Appointment]:
        """Active appointments across all clinics starting in ``[start, end)``."""

        return list(
            self._session.execute(
                select(Appointment)
                .join(Patient, Appointment.patient_id == Patient.id)
                .where(
                    Appointment.starts_at >= _as_utc(start),
                    Appointment.starts_at < _as_utc(end),
                    Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
                    Patient.phone.is_not(None),
                    Patient.phone != "",
                )
                .order_by(Appointment.starts_at.asc())
            )
            .unique()
            .scalars()
        )

    # Templates ---------------------------------------------------------------
    def get_enabled_template(
        self, clinic_id: uuid.UUID, template_key: str
    ) -> WhatsAppTemplate | None:
        return self._session.execute(
            select(WhatsAppTemplate).where(
                WhatsAppTemplate.clinic_id == clinic_id,
                WhatsAppTemplate.template_key == template_key,
                WhatsAppTemplate.enabled.is_(True),
            )
        ).scalar_one_or_none()

    def list_templates(self, clinic_id: uuid.UUID) -> list[WhatsAppTemplate]:
        return list(
            self._session.execute(
                select(WhatsAppTemplate)
                .where(WhatsAppTemplate.clinic_id == clinic_id)
                .order_by(WhatsAppTemplate.template_key.asc())
            ).scalars()
        )

    def get_template(
        self, clinic_id: uuid.UUID, template_id: uuid.UUID
    ) -> WhatsAppTemplate | None:
        template = self._session.get(WhatsAppTemplate, template_id)
        if template is None or template.clinic_id != clinic_id:
            return None
        return template

    def update_template(
        self,
        template: WhatsAppTemplate,
        *,
        meta_template_name: str | None = None,
        language: str | None = None,
        enabled: bool | None = None,
    ) -> WhatsAppTemplate:
        if meta_template_name is not None:
            template.meta_template_name = meta_template_name
        if language is not None:
            template.language = language
        if enabled is not None:
            template.enabled = enabled
        self._session.flush()
        return template

    def seed_default_templates(self, clinic_id: uuid.UUID) -> int:
        """Insert any missing default templates for ``clinic_id``."""

        existing = {t.template_key for t in self.list_templates(clinic_id)}
        created = 0
        for key, defaults in DEFAULT_TEMPLATES.items():
            if key in existing:
                continue
            self._session.add(
                WhatsAppTemplate(
                    clinic_id=clinic_id,
                    template_key=key,
                    meta_template_name=defaults["meta_template_name"],
                    body_preview=defaults["body_preview"],
                    language="pt_BR",
                    enabled=True,
                )
            )
            created += 1
        self._session.flush()
        return created


__all__ = [
    "ACTIVE_APPOINTMENT_STATUSES",
    "ClinicReader",
    "ClinicRepository",
    "DEFAULT_TEMPLATES",
]
