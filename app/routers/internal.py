"""Internal service endpoints: outbound dispatch, AI decisions and reminders."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import Session

from ..agents.schemas import AIActionOut, AIAgentRequest
from ..agents.service import PROVIDER_FAILURE_REPLY
from ..channels.base import DispatchError
from ..conversations import schemas
from ..conversations.dispatcher import MessageDispatcher
from ..conversations.repository import SessionNotFoundError
from ..conversations.service import ConversationService
from ..core import clients
from ..core.settings import get_settings
from ..models import Clinic, Patient
from ..models.session import default_sessionmaker, session_scope
from ..reminders.service import LEAD_TIMES, ReminderDispatcher
from ..security import require_service_key

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/whatsapp",
    tags=["whatsapp-internal"],
    dependencies=[Depends(require_service_key)],
)


class ReminderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    lead_time: str = Field(alias="leadTime")

    @field_validator("lead_time")
    @classmethod
    def _known_lead_time(cls, value: str) -> str:
        if value.strip().lower() not in LEAD_TIMES:
            raise ValueError("leadTime must be day-before or same-day")
        return value.strip().lower()


class ReminderResponse(BaseModel):
    lead_time: str = Field(serialization_alias="leadTime")
    sent: int
    skipped: int
    failed: int
    errors: list[str]


@contextmanager
def _service_context() -> Iterator[tuple[Session, ConversationService]]:
    with session_scope(default_sessionmaker()) as db:
        yield db, ConversationService.from_session(
            db,
            graph_client=clients.get_graph_client(),
            completion_client=clients.get_completion_client(),
            settings=get_settings(),
        )


@router.post("/send", response_model=schemas.SendResponse)
def send_message(payload: schemas.SendRequest) -> schemas.SendResponse:
    try:
        with session_scope(default_sessionmaker()) as db:
            dispatcher = MessageDispatcher(db, client=clients.get_graph_client())
            provider_message_id = dispatcher.send(
                payload.clinic_id,
                payload.session_id,
                payload.originator,
                payload.to_phone,
                payload.kind,
                payload.payload,
            )
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return schemas.SendResponse(provider_message_id=provider_message_id)


@router.post("/ai-agent", response_model=AIActionOut)
def ai_agent(payload: AIAgentRequest) -> AIActionOut:
    """Run one decision; failures come back as an escalate action, not an error."""

    try:
        with _service_context() as (db, service):
            clinic = db.get(Clinic, payload.clinic_id)
            if clinic is None:
                raise HTTPException(status_code=404, detail="Clinic not found")
            try:
                session = service.sessions.get_session(payload.session_id, clinic.id)
            except SessionNotFoundError as exc:
                raise HTTPException(status_code=404, detail=str(exc)) from exc
            patient = db.get(Patient, payload.patient_id) if payload.patient_id else None
            if patient is not None and patient.clinic_id != clinic.id:
                patient = None
            history = (
                [turn.model_dump() for turn in payload.history]
                if payload.history is not None
                else None
            )
            action = service.engine.decide(
                clinic, session, patient, payload.message_text, history
            )
    except HTTPException:
        raise
    except Exception:
        logger.exception("AI agent endpoint failed session=%s", payload.session_id)
        return AIActionOut(action="escalate", reply_text=PROVIDER_FAILURE_REPLY)
    return AIActionOut(
        action=action.action,
        reply_text=action.reply_text,
        appointment_id=action.appointment_id,
    )


@router.post("/reminders", response_model=ReminderResponse)
def run_reminders(payload: ReminderRequest) -> ReminderResponse:
    settings = get_settings()
    graph_client = clients.get_graph_client()
    job = ReminderDispatcher(
        default_sessionmaker(),
        lambda db: MessageDispatcher(db, client=graph_client),
        timezone_name=settings.clinic_timezone,
    )
    report = job.run(payload.lead_time)
    return ReminderResponse(**report.as_dict())
