"""Fan a provider delivery out into per-change and per-message units of work."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from ..channels.whatsapp import WhatsAppAdapter
from ..clinics.repository import ClinicRepository
from ..models.session import session_scope
from .models import InboundOutcome, WebhookReport
from .repository import SqlSessionRepository
from .service import ConversationService

logger = logging.getLogger(__name__)

ServiceFactory = Callable[[Session], ConversationService]


class WebhookProcessor:
    """Process a decoded webhook delivery.

    Each message runs in its own transaction so one failing message neither
    rolls back nor blocks the others in the same delivery.
    """

    def __init__(
        self,
        factory: sessionmaker[Session],
        service_factory: ServiceFactory,
        *,
        adapter: WhatsAppAdapter | None = None,
    ) -> None:
        self._factory = factory
        self._service_factory = service_factory
        self._adapter = adapter or WhatsAppAdapter()

    def process(self, payload: Mapping[str, Any]) -> WebhookReport:
        """Handle ``payload``; raises :class:`EnvelopeError` before any write."""

        changes = self._adapter.parse_incoming(payload)
        report = WebhookReport()
        for change in changes:
            with session_scope(self._factory) as db:
                clinic = ClinicRepository(db).find_enabled_by_phone_number_id(
                    change.phone_number_id
                )
                if clinic is None:
                    logger.warning(
                        "No enabled clinic for phone_number_id=%s; skipping %d message(s)",
                        change.phone_number_id,
                        len(change.messages),
                    )
                    report.skipped += len(change.messages)
                    continue
                clinic_id = clinic.id
                sessions = SqlSessionRepository(db)
                for update in change.statuses:
                    report.status_updates += sessions.update_delivery_status(
                        clinic_id, update.provider_message_id, update.status
                    )

            for message in change.messages:
                try:
                    with session_scope(self._factory) as db:
                        clinic = ClinicRepository(db).get_clinic(clinic_id)
                        outcome = self._service_factory(db).handle_inbound(clinic, message)
                except Exception:
                    logger.exception(
                        "Failed to process inbound wa_message_id=%s clinic=%s",
                        message.provider_message_id,
                        clinic_id,
                        extra={
                            "clinic_id": clinic_id,
                            "wa_message_id": message.provider_message_id,
                        },
                    )
                    report.failed += 1
                    report.outcomes.append(InboundOutcome(status="failed"))
                    continue
                report.outcomes.append(outcome)
                if outcome.status in ("ignored", "duplicate"):
                    report.skipped += 1
                else:
                    report.processed += 1
        return report


__all__ = ["ServiceFactory", "WebhookProcessor"]
