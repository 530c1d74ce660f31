"""Database repository for WhatsApp conversation sessions and messages."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import Patient, WhatsAppMessage, WhatsAppSession

logger = logging.getLogger(__name__)

STATUS_AI = "ai"
STATUS_HUMAN = "human"
STATUS_RESOLVED = "resolved"
SESSION_STATUSES = (STATUS_AI, STATUS_HUMAN, STATUS_RESOLVED)

CONTEXT_WINDOW = 10

# Provider callbacks may arrive out of order; never move a message backwards.
_DELIVERY_RANK = {"sent": 0, "delivered": 1, "read": 2, "failed": 3}


class SessionNotFoundError(LookupError):
    """Raised when a session id does not exist within the clinic."""


class SessionTransitionError(ValueError):
    """Raised for status changes the session lifecycle does not allow."""


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class SessionRepository(Protocol):
    """Abstraction for persisting conversation sessions."""

    def find_or_create(
        self, clinic_id: uuid.UUID, phone: str, patient_id: uuid.UUID | None = None
    ) -> WhatsAppSession: ...

    def get_session(
        self, session_id: uuid.UUID, clinic_id: uuid.UUID | None = None
    ) -> WhatsAppSession: ...

    def append_context(
        self, session_id: uuid.UUID, turns: list[dict[str, str]]
    ) -> list[dict[str, str]]: ...

    def set_status(self, session_id: uuid.UUID, status: str) -> WhatsAppSession: ...

    def set_draft(self, session_id: uuid.UUID, text: str | None) -> None: ...

    def touch(self, session_id: uuid.UUID, at: dt.datetime | None = None) -> None: ...

    def add_message(
        self,
        *,
        session_id: uuid.UUID,
        clinic_id: uuid.UUID,
        direction: str,
        body: str | None,
        message_type: str,
        sent_by: str,
        wa_message_id: str | None = None,
        delivery_status: str | None = None,
    ) -> WhatsAppMessage: ...

    def has_inbound_message(self, clinic_id: uuid.UUID, wa_message_id: str) -> bool: ...


class SqlSessionRepository:
    """SQLAlchemy implementation of :class:`SessionRepository`."""

    def __init__(self, session: Session, *, context_window: int = CONTEXT_WINDOW) -> None:
        self._session = session
        self._context_window = context_window

    # Sessions ----------------------------------------------------------------
    def _open_session(self, clinic_id: uuid.UUID, phone: str) -> WhatsAppSession | None:
        return self._session.execute(
            select(WhatsAppSession)
            .where(
                WhatsAppSession.clinic_id == clinic_id,
                WhatsAppSession.wa_phone == phone,
                WhatsAppSession.status != STATUS_RESOLVED,
            )
            .order_by(WhatsAppSession.last_message_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def find_or_create(
        self, clinic_id: uuid.UUID, phone: str, patient_id: uuid.UUID | None = None
    ) -> WhatsAppSession:
        """Return the open session for ``(clinic_id, phone)``, creating it if needed.

        Creation runs inside a SAVEPOINT.  When a concurrent delivery wins the
        race the partial unique index rejects the insert and the winner's row
        is returned instead, so both deliveries land on one session.
        """

        existing = self._open_session(clinic_id, phone)
        if existing is None:
            created = WhatsAppSession(
                clinic_id=clinic_id,
                wa_phone=phone,
                patient_id=patient_id,
                status=STATUS_AI,
                context_snapshot=[],
            )
            try:
                with self._session.begin_nested():
                    self._session.add(created)
            except IntegrityError:
                logger.info(
                    "Open session already created concurrently clinic=%s; reusing it",
                    clinic_id,
                )
                existing = self._open_session(clinic_id, phone)
                if existing is None:
                    raise
            else:
                logger.info(
                    "Opened WhatsApp session %s clinic=%s", created.id, clinic_id
                )
                return created
        if patient_id is not None and existing.patient_id is None:
            existing.patient_id = patient_id
            self._session.flush()
        return existing

    def get_session(
        self, session_id: uuid.UUID, clinic_id: uuid.UUID | None = None
    ) -> WhatsAppSession:
        row = self._session.get(WhatsAppSession, session_id)
        if row is None or (clinic_id is not None and row.clinic_id != clinic_id):
            raise SessionNotFoundError(f"Session {session_id} not found")
        return row

    def append_context(
        self, session_id: uuid.UUID, turns: list[dict[str, str]]
    ) -> list[dict[str, str]]:
        row = self.get_session(session_id)
        window = list(row.context_snapshot or []) + [
            {"role": turn["role"], "content": turn["content"]} for turn in turns
        ]
        # Reassign rather than mutate so the JSON column is flagged dirty.
        row.context_snapshot = window[-self._context_window :]
        self._session.flush()
        return row.context_snapshot

    def set_status(self, session_id: uuid.UUID, status: str) -> WhatsAppSession:
        if status not in SESSION_STATUSES:
            raise SessionTransitionError(f"Unknown session status: {status}")
        row = self.get_session(session_id)
        if row.status == status:
            return row
        if row.status == STATUS_RESOLVED:
            raise SessionTransitionError("Resolved sessions cannot be reopened")
        if row.status == STATUS_HUMAN and status == STATUS_AI:
            raise SessionTransitionError(
                "Escalated sessions stay with attendants until resolved"
            )
        row.status = status
        self._session.flush()
        logger.info("Session %s status -> %s", session_id, status)
        return row

    def set_draft(self, session_id: uuid.UUID, text: str | None) -> None:
        row = self.get_session(session_id)
        row.ai_draft = text
        self._session.flush()

    def touch(self, session_id: uuid.UUID, at: dt.datetime | None = None) -> None:
        row = self.get_session(session_id)
        row.last_message_at = at or _utcnow()
        self._session.flush()

    def list_active(self, clinic_id: uuid.UUID, limit: int = 100) -> list[dict[str, Any]]:
        rows = self._session.execute(
            select(WhatsAppSession, Patient.name)
            .outerjoin(Patient, WhatsAppSession.patient_id == Patient.id)
            .where(
                WhatsAppSession.clinic_id == clinic_id,
                WhatsAppSession.status != STATUS_RESOLVED,
            )
            .order_by(WhatsAppSession.last_message_at.desc())
            .limit(limit)
        ).all()
        return [{"session": row, "patient_name": name} for row, name in rows]

    # Messages ----------------------------------------------------------------
    def add_message(
        self,
        *,
        session_id: uuid.UUID,
        clinic_id: uuid.UUID,
        direction: str,
        body: str | None,
        message_type: str,
        sent_by: str,
        wa_message_id: str | None = None,
        delivery_status: str | None = None,
    ) -> WhatsAppMessage:
        message = WhatsAppMessage(
            session_id=session_id,
            clinic_id=clinic_id,
            direction=direction,
            body=body,
            message_type=message_type,
            sent_by=sent_by,
            wa_message_id=wa_message_id,
            delivery_status=delivery_status,
        )
        self._session.add(message)
        self._session.flush()
        return message

    def has_inbound_message(self, clinic_id: uuid.UUID, wa_message_id: str) -> bool:
        found = self._session.execute(
            select(WhatsAppMessage.id)
            .where(
                WhatsAppMessage.clinic_id == clinic_id,
                WhatsAppMessage.wa_message_id == wa_message_id,
                WhatsAppMessage.direction == "inbound",
            )
            .limit(1)
        ).first()
        return found is not None

    def list_messages(self, session_id: uuid.UUID) -> list[WhatsAppMessage]:
        return list(
            self._session.execute(
                select(WhatsAppMessage)
                .where(WhatsAppMessage.session_id == session_id)
                .order_by(WhatsAppMessage.created_at.asc())
            ).scalars()
        )

    def update_delivery_status(
        self, clinic_id: uuid.UUID, wa_message_id: str, status: str
    ) -> int:
        """Apply a provider status callback; returns the number of rows changed."""

        messages = self._session.execute(
            select(WhatsAppMessage).where(
                WhatsAppMessage.clinic_id == clinic_id,
                WhatsAppMessage.wa_message_id == wa_message_id,
                WhatsAppMessage.direction == "outbound",
            )
        ).scalars()
        changed = 0
        for message in messages:
            current = _DELIVERY_RANK.get(message.delivery_status or "", -1)
            if _DELIVERY_RANK.get(status, -1) < current:
                continue
            message.delivery_status = status
            changed += 1
        self._session.flush()
        return changed

    def purge_message_bodies(self, older_than: dt.datetime) -> int:
        """Null message bodies created before ``older_than``; metadata stays."""

        result = self._session.execute(
            update(WhatsAppMessage)
            .where(
                WhatsAppMessage.created_at < older_than,
                WhatsAppMessage.body.is_not(None),
            )
            .values(body=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


__all__ = [
    "CONTEXT_WINDOW",
    "SESSION_STATUSES",
    "STATUS_AI",
    "STATUS_HUMAN",
    "STATUS_RESOLVED",
    "SessionNotFoundError",
    "SessionRepository",
    "SessionTransitionError",
    "SqlSessionRepository",
]
