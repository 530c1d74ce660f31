"""Scheduled appointment reminders over WhatsApp."""

from .service import LEAD_TIMES, ReminderDispatcher, ReminderReport, resolve_lead_time

__all__ = ["LEAD_TIMES", "ReminderDispatcher", "ReminderReport", "resolve_lead_time"]
