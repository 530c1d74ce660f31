"""Clinic collaborator data access used by the messaging core."""

from .repository import ACTIVE_APPOINTMENT_STATUSES, ClinicRepository, DEFAULT_TEMPLATES
from .secrets import DatabaseSecretStore, SecretStore

__all__ = [
    "ACTIVE_APPOINTMENT_STATUSES",
    "ClinicRepository",
    "DEFAULT_TEMPLATES",
    "DatabaseSecretStore",
    "SecretStore",
]
