"""Attendant inbox and channel administration endpoints."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..channels.base import DispatchError
from ..clinics.repository import ClinicRepository
from ..clinics.secrets import DatabaseSecretStore
from ..conversations import schemas
from ..conversations.dispatcher import MessageDispatcher
from ..conversations.repository import (
    STATUS_HUMAN,
    STATUS_RESOLVED,
    SessionNotFoundError,
    SessionTransitionError,
    SqlSessionRepository,
)
from ..core import clients
from ..core.settings import get_settings
from ..models.session import default_sessionmaker, session_scope
from ..security import StaffPrincipal, require_role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp-inbox"])


@contextmanager
def _service_context() -> Iterator[tuple[Session, SqlSessionRepository]]:
    with session_scope(default_sessionmaker()) as db:
        try:
            yield db, SqlSessionRepository(db, context_window=get_settings().context_window)
        except SessionNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except SessionTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc


def _summary(row, patient_name: str | None = None) -> schemas.SessionSummary:
    summary = schemas.SessionSummary.model_validate(row)
    return summary.model_copy(update={"patient_name": patient_name})


# Inbox ---------------------------------------------------------------------


@router.get("/sessions", response_model=schemas.SessionList)
def list_sessions(
    limit: int = Query(default=100, ge=1, le=500),
    principal: StaffPrincipal = Depends(require_role("attendant")),
) -> schemas.SessionList:
    with _service_context() as (_db, sessions):
        items = [
            _summary(entry["session"], entry["patient_name"])
            for entry in sessions.list_active(principal.clinic_id, limit=limit)
        ]
    return schemas.SessionList(items=items, total=len(items))


@router.get("/sessions/{session_id}/messages", response_model=schemas.MessageList)
def list_session_messages(
    session_id: uuid.UUID,
    principal: StaffPrincipal = Depends(require_role("attendant")),
) -> schemas.MessageList:
    with _service_context() as (_db, sessions):
        sessions.get_session(session_id, principal.clinic_id)
        items = [
            schemas.MessageOut.model_validate(message)
            for message in sessions.list_messages(session_id)
        ]
    return schemas.MessageList(items=items, total=len(items))


@router.post("/sessions/{session_id}/escalate", response_model=schemas.SessionSummary)
def escalate_session(
    session_id: uuid.UUID,
    principal: StaffPrincipal = Depends(require_role("attendant")),
) -> schemas.SessionSummary:
    with _service_context() as (_db, sessions):
        sessions.get_session(session_id, principal.clinic_id)
        row = sessions.set_status(session_id, STATUS_HUMAN)
        logger.info("Attendant %s took over session %s", principal.user_id, session_id)
        return _summary(row)


@router.post("/sessions/{session_id}/resolve", response_model=schemas.SessionSummary)
def resolve_session(
    session_id: uuid.UUID,
    principal: StaffPrincipal = Depends(require_role("attendant")),
) -> schemas.SessionSummary:
    with _service_context() as (_db, sessions):
        sessions.get_session(session_id, principal.clinic_id)
        row = sessions.set_status(session_id, STATUS_RESOLVED)
        logger.info("Attendant %s resolved session %s", principal.user_id, session_id)
        return _summary(row)


@router.post("/sessions/{session_id}/reply", response_model=schemas.SendResponse)
def reply_to_session(
    session_id: uuid.UUID,
    payload: schemas.AttendantReply,
    principal: StaffPrincipal = Depends(require_role("attendant")),
) -> schemas.SendResponse:
    try:
        with _service_context() as (db, sessions):
            row = sessions.get_session(session_id, principal.clinic_id)
            if row.status == STATUS_RESOLVED:
                raise HTTPException(status_code=409, detail="Session is resolved")
            dispatcher = MessageDispatcher(
                db, client=clients.get_graph_client(), sessions=sessions
            )
            provider_message_id = dispatcher.send(
                principal.clinic_id,
                session_id,
                "attendant",
                row.wa_phone,
                "text",
                {"body": payload.text},
            )
            sessions.set_draft(session_id, None)
            sessions.append_context(
                session_id, [{"role": "assistant", "content": payload.text}]
            )
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return schemas.SendResponse(provider_message_id=provider_message_id)


# Channel administration ----------------------------------------------------


@router.put("/token", status_code=204)
def store_access_token(
    payload: schemas.TokenUpdate,
    principal: StaffPrincipal = Depends(require_role("admin")),
) -> None:
    with session_scope(default_sessionmaker()) as db:
        if ClinicRepository(db).get_clinic(principal.clinic_id) is None:
            raise HTTPException(status_code=404, detail="Clinic not found")
        DatabaseSecretStore(db).store_token(principal.clinic_id, payload.access_token)
    logger.info(
        "WhatsApp access token updated clinic=%s by user=%s",
        principal.clinic_id,
        principal.user_id,
    )


@router.get("/templates", response_model=list[schemas.TemplateOut])
def list_templates(
    principal: StaffPrincipal = Depends(require_role("admin")),
) -> list[schemas.TemplateOut]:
    with session_scope(default_sessionmaker()) as db:
        return [
            schemas.TemplateOut.model_validate(template)
            for template in ClinicRepository(db).list_templates(principal.clinic_id)
        ]


@router.patch("/templates/{template_id}", response_model=schemas.TemplateOut)
def update_template(
    template_id: uuid.UUID,
    payload: schemas.TemplateUpdate,
    principal: StaffPrincipal = Depends(require_role("admin")),
) -> schemas.TemplateOut:
    with session_scope(default_sessionmaker()) as db:
        repository = ClinicRepository(db)
        template = repository.get_template(principal.clinic_id, template_id)
        if template is None:
            raise HTTPException(status_code=404, detail="Template not found")
        updated = repository.update_template(
            template,
            meta_template_name=payload.meta_template_name,
            language=payload.language,
            enabled=payload.enabled,
        )
        return schemas.TemplateOut.model_validate(updated)
