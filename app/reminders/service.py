"""Batch job sending day-before and same-day appointment reminders."""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import uuid
from collections.abc import Callable
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..channels.base import DispatchError
from ..channels.phone import try_normalize_phone
from ..clinics.repository import ClinicRepository
from ..conversations.dispatcher import MessageDispatcher
from ..models import Appointment, Clinic, NotificationLog
from ..models.session import session_scope

logger = logging.getLogger(__name__)

CHANNEL = "whatsapp"
DEFAULT_PROFESSIONAL = "o profissional"


@dataclasses.dataclass(frozen=True)
class LeadTime:
    name: str
    days_ahead: int
    template_key: str
    log_type: str
    clinic_flag: str
    include_date: bool


DAY_BEFORE = LeadTime(
    name="day-before",
    days_ahead=1,
    template_key="reminder_d1",
    log_type="whatsapp_reminder_d1",
    clinic_flag="wa_reminders_d1",
    include_date=True,
)
SAME_DAY = LeadTime(
    name="same-day",
    days_ahead=0,
    template_key="reminder_d0",
    log_type="whatsapp_reminder_d0",
    clinic_flag="wa_reminders_d0",
    include_date=False,
)

LEAD_TIMES: dict[str, LeadTime] = {
    "day-before": DAY_BEFORE,
    "d1": DAY_BEFORE,
    "same-day": SAME_DAY,
    "d0": SAME_DAY,
}


def resolve_lead_time(value: str) -> LeadTime:
    try:
        return LEAD_TIMES[value.strip().lower()]
    except KeyError as exc:
        raise ValueError(
            f"Unknown lead time {value!r}; expected day-before or same-day"
        ) from exc


@dataclasses.dataclass
class ReminderReport:
    lead_time: str
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = dataclasses.field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return dataclasses.asdict(self)


def target_window(
    lead_time: LeadTime, timezone_name: str, now: dt.datetime | None = None
) -> tuple[dt.datetime, dt.datetime]:
    """Return the UTC ``[start, end)`` bounds of the target local calendar day."""

    zone = ZoneInfo(timezone_name)
    current = now or dt.datetime.now(dt.timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=dt.timezone.utc)
    local_date = current.astimezone(zone).date() + dt.timedelta(days=lead_time.days_ahead)
    start_local = dt.datetime.combine(local_date, dt.time.min, tzinfo=zone)
    end_local = dt.datetime.combine(
        local_date + dt.timedelta(days=1), dt.time.min, tzinfo=zone
    )
    return (
        start_local.astimezone(dt.timezone.utc),
        end_local.astimezone(dt.timezone.utc),
    )


def template_parameters(
    lead_time: LeadTime, appointment: Appointment, zone: ZoneInfo
) -> list[str]:
    starts_at = appointment.starts_at
    if starts_at.tzinfo is None:
        starts_at = starts_at.replace(tzinfo=dt.timezone.utc)
    local = starts_at.astimezone(zone)
    patient_name = appointment.patient.name if appointment.patient else ""
    professional = (
        appointment.professional.name if appointment.professional else DEFAULT_PROFESSIONAL
    )
    parameters = [patient_name]
    if lead_time.include_date:
        parameters.append(local.strftime("%d/%m/%Y"))
    parameters.append(local.strftime("%H:%M"))
    parameters.append(professional)
    return parameters


DispatcherFactory = Callable[[Session], MessageDispatcher]


class ReminderDispatcher:
    """Find due appointments and send one template reminder per appointment.

    Appointments are processed sequentially, each in its own transaction, so a
    failing send is recorded and the loop moves on.
    """

    def __init__(
        self,
        factory: sessionmaker[Session],
        dispatcher_factory: DispatcherFactory,
        *,
        timezone_name: str = "America/Sao_Paulo",
    ) -> None:
        self._factory = factory
        self._dispatcher_factory = dispatcher_factory
        self._timezone_name = timezone_name

    def run(self, lead_time: str | LeadTime, *, now: dt.datetime | None = None) -> ReminderReport:
        lead = lead_time if isinstance(lead_time, LeadTime) else resolve_lead_time(lead_time)
        start, end = target_window(lead, self._timezone_name, now)
        report = ReminderReport(lead_time=lead.name)

        with session_scope(self._factory) as db:
            candidate_ids = [
                appointment.id
                for appointment in ClinicRepository(db).reminder_candidates(start, end)
            ]
        logger.info(
            "Reminder run lead_time=%s window=[%s, %s) candidates=%d",
            lead.name,
            start.isoformat(),
            end.isoformat(),
            len(candidate_ids),
        )

        for appointment_id in candidate_ids:
            try:
                outcome, error = self._process(appointment_id, lead)
            except Exception as exc:
                logger.exception(
                    "Reminder aborted appointment=%s lead_time=%s", appointment_id, lead.name
                )
                outcome, error = "failed", str(exc)
            if outcome == "sent":
                report.sent += 1
            elif outcome == "skipped":
                report.skipped += 1
            else:
                report.failed += 1
                report.errors.append(f"{appointment_id}: {error}")

        logger.info(
            "Reminder run finished lead_time=%s sent=%d skipped=%d failed=%d",
            lead.name,
            report.sent,
            report.skipped,
            report.failed,
        )
        return report

    def _process(self, appointment_id: uuid.UUID, lead: LeadTime) -> tuple[str, str | None]:
        """Send one reminder; the outcome only counts once its transaction commits."""

        with session_scope(self._factory) as db:
            appointment = db.get(Appointment, appointment_id)
            if appointment is None:
                return "skipped", None
            clinic = db.get(Clinic, appointment.clinic_id)
            skip_reason = self._skip_reason(db, clinic, appointment, lead)
            if skip_reason is not None:
                logger.info(
                    "Skipping reminder appointment=%s clinic=%s lead_time=%s: %s",
                    appointment.id,
                    appointment.clinic_id,
                    lead.name,
                    skip_reason,
                )
                return "skipped", None

            template = ClinicRepository(db).get_enabled_template(
                clinic.id, lead.template_key
            )
            if template is None:
                logger.warning(
                    "No enabled %s template for clinic=%s; skipping appointment=%s",
                    lead.template_key,
                    clinic.id,
                    appointment.id,
                )
                return "skipped", None

            # Claim the dedup slot before sending; a concurrent run holding it
            # makes the insert fail and this appointment is skipped unsent.
            entry = NotificationLog(
                clinic_id=clinic.id,
                appointment_id=appointment.id,
                patient_id=appointment.patient_id,
                channel=CHANNEL,
                type=lead.log_type,
                status="sent",
            )
            try:
                with db.begin_nested():
                    db.add(entry)
            except IntegrityError:
                logger.info(
                    "Reminder already claimed appointment=%s lead_time=%s",
                    appointment.id,
                    lead.name,
                )
                return "skipped", None

            phone = try_normalize_phone(appointment.patient.phone)
            zone = ZoneInfo(self._timezone_name)
            payload = {
                "name": template.meta_template_name,
                "language": template.language,
                "parameters": template_parameters(lead, appointment, zone),
            }
            try:
                entry.wa_message_id = self._dispatcher_factory(db).send(
                    clinic.id, None, "system", phone, "template", payload
                )
            except DispatchError as exc:
                entry.status = "failed"
                entry.error_message = str(exc)
                logger.error(
                    "Reminder failed appointment=%s clinic=%s lead_time=%s: %s",
                    appointment.id,
                    clinic.id,
                    lead.name,
                    exc,
                    extra={"clinic_id": clinic.id, "lead_time": lead.name},
                )
                return "failed", str(exc)
            return "sent", None

    def _skip_reason(
        self,
        db: Session,
        clinic: Clinic | None,
        appointment: Appointment,
        lead: LeadTime,
    ) -> str | None:
        if clinic is None or not clinic.whatsapp_enabled:
            return "whatsapp disabled"
        if not getattr(clinic, lead.clinic_flag):
            return f"{lead.name} reminders disabled"
        if appointment.patient is None or try_normalize_phone(appointment.patient.phone) is None:
            return "patient has no usable phone"
        already_sent = db.execute(
            select(NotificationLog.id)
            .where(
                NotificationLog.appointment_id == appointment.id,
                NotificationLog.channel == CHANNEL,
                NotificationLog.type == lead.log_type,
                NotificationLog.status != "failed",
            )
            .limit(1)
        ).first()
        if already_sent is not None:
            return "already notified"
        return None


__all__ = [
    "DAY_BEFORE",
    "LEAD_TIMES",
    "LeadTime",
    "ReminderDispatcher",
    "ReminderReport",
    "SAME_DAY",
    "resolve_lead_time",
    "target_window",
    "template_parameters",
]
