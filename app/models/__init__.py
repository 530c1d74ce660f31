"""SQLAlchemy declarative base and messaging-facing models.

This package hosts the SQLAlchemy models used across the backend.  It exposes a
single declarative ``Base`` class that other modules can import when creating
tables or writing migrations in Python.  Clinic collaborator tables (clinics,
patients, professionals, appointments) live in :mod:`app.models.clinic`; the
WhatsApp conversation tables live in :mod:`app.models.messaging`.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export the models so callers can import them via ``from app.models import
# Clinic`` instead of touching private modules.
from .clinic import Appointment, Clinic, Patient, Professional
from .messaging import (
    ChannelSecret,
    NotificationLog,
    WhatsAppMessage,
    WhatsAppSession,
    WhatsAppTemplate,
)


__all__ = [
    "Appointment",
    "Base",
    "ChannelSecret",
    "Clinic",
    "NotificationLog",
    "Patient",
    "Professional",
    "WhatsAppMessage",
    "WhatsAppSession",
    "WhatsAppTemplate",
]
