"""Webhook routes for the WhatsApp Cloud API."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from ..channels.base import EnvelopeError
from ..channels.whatsapp import WhatsAppAdapter
from ..clinics.repository import ClinicRepository
from ..conversations.service import ConversationService
from ..conversations.webhook import WebhookProcessor
from ..core import clients
from ..core.settings import get_settings
from ..models.session import default_sessionmaker, session_scope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp-webhook"])


def _build_processor() -> WebhookProcessor:
    settings = get_settings()
    graph_client = clients.get_graph_client()
    completion_client = clients.get_completion_client()
    return WebhookProcessor(
        default_sessionmaker(),
        lambda db: ConversationService.from_session(
            db,
            graph_client=graph_client,
            completion_client=completion_client,
            settings=settings,
        ),
    )


@router.get("/webhook", response_class=PlainTextResponse)
def verify_webhook(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
) -> PlainTextResponse:
    """Answer the provider's subscription handshake."""

    if hub_mode != "subscribe" or not hub_verify_token or not hub_challenge:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    with session_scope(default_sessionmaker()) as db:
        clinic = ClinicRepository(db).find_enabled_by_verify_token(hub_verify_token)
        clinic_id = clinic.id if clinic else None
    if clinic_id is None:
        logger.warning("Webhook verification rejected: unknown verify token")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    logger.info("Webhook verified for clinic=%s", clinic_id)
    return PlainTextResponse(hub_challenge)


@router.post("/webhook", response_class=PlainTextResponse)
async def receive_webhook(request: Request) -> PlainTextResponse:
    """Receive messages and delivery statuses; acknowledges with ``OK``."""

    body_bytes = await request.body()
    adapter = WhatsAppAdapter()
    config = {"app_secret": get_settings().meta_app_secret}
    if not adapter.verify_signature(body_bytes, request.headers, config):
        logger.warning("Rejected webhook delivery with invalid signature")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature"
        )

    try:
        payload = json.loads(body_bytes.decode("utf-8")) if body_bytes else {}
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Rejected webhook delivery with invalid JSON: %s", exc)
        raise HTTPException(
            status_code=400, detail=f"Invalid JSON payload: {exc}"
        ) from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook payload must be an object")

    try:
        report = await run_in_threadpool(_build_processor().process, payload)
    except EnvelopeError as exc:
        logger.warning("Rejected malformed webhook envelope: %s", exc)
        raise HTTPException(status_code=400, detail="Malformed webhook envelope") from exc

    logger.info(
        "Webhook processed=%d skipped=%d failed=%d status_updates=%d",
        report.processed,
        report.skipped,
        report.failed,
        report.status_updates,
    )
    return PlainTextResponse("OK")
