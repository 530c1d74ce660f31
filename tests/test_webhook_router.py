import hashlib
import hmac
import json

import pytest
from sqlalchemy import select

from app.agents.service import PROVIDER_FAILURE_REPLY
from app.conversations.repository import SqlSessionRepository
from app.core.settings import reset_settings_cache
from app.models import Appointment, WhatsAppMessage, WhatsAppSession
from conftest import APP_SECRET, VERIFY_TOKEN, FakeResponse, wa_delivery, wa_text

WEBHOOK = "/api/whatsapp/webhook"


def _post(client, payload, **kwargs):
    return client.post(
        WEBHOOK,
        content=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", **kwargs.pop("headers", {})},
        **kwargs,
    )


def _messages(seed):
    with seed.factory() as db:
        return list(
            db.execute(select(WhatsAppMessage).order_by(WhatsAppMessage.created_at)).scalars()
        )


def _sessions(seed):
    with seed.factory() as db:
        return list(db.execute(select(WhatsAppSession)).scalars())


class TestVerification:
    def test_handshake_echoes_challenge(self, api_client):
        resp = api_client.get(
            WEBHOOK,
            params={
                "hub.mode": "subscribe",
                "hub.verify_token": VERIFY_TOKEN,
                "hub.challenge": "1158201444",
            },
        )
        assert resp.status_code == 200
        assert resp.text == "1158201444"

    def test_unknown_token_forbidden(self, api_client):
        resp = api_client.get(
            WEBHOOK,
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1"},
        )
        assert resp.status_code == 403

    def test_missing_challenge_forbidden(self, api_client):
        resp = api_client.get(
            WEBHOOK, params={"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN}
        )
        assert resp.status_code == 403

    def test_wrong_mode_forbidden(self, api_client):
        resp = api_client.get(
            WEBHOOK,
            params={"hub.mode": "unsubscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "1"},
        )
        assert resp.status_code == 403


class TestInboundFlow:
    def test_confirmation_updates_appointment_and_replies(
        self, api_client, seed, completion_client, graph_session
    ):
        completion_client.queue(
            {
                "action": "confirm_appointment",
                "replyText": "Sua consulta está confirmada!",
                "appointmentId": str(seed.appointment_id),
            }
        )

        resp = _post(api_client, wa_delivery(wa_text("Sim")))

        assert resp.status_code == 200
        assert resp.text == "OK"
        with seed.factory() as db:
            assert db.get(Appointment, seed.appointment_id).status == "confirmed"

        [session_row] = _sessions(seed)
        assert session_row.status == "ai"
        assert session_row.patient_id == seed.patient_id
        assert session_row.wa_phone == "5511991234567"
        assert session_row.context_snapshot == [
            {"role": "user", "content": "Sim"},
            {"role": "assistant", "content": "Sua consulta está confirmada!"},
        ]

        inbound, outbound = _messages(seed)
        assert (inbound.direction, inbound.sent_by, inbound.body) == ("inbound", "patient", "Sim")
        assert inbound.wa_message_id == "wamid.IN1"
        assert (outbound.direction, outbound.sent_by) == ("outbound", "ai")
        assert outbound.wa_message_id == "wamid.OUT1"

        [call] = graph_session.calls
        assert call["json"]["to"] == "5511991234567"
        assert call["json"]["text"]["body"] == "Sua consulta está confirmada!"

    def test_cancellation(self, api_client, seed, completion_client):
        completion_client.queue(
            {
                "action": "cancel_appointment",
                "replyText": "Consulta cancelada.",
                "appointmentId": str(seed.appointment_id),
            }
        )

        _post(api_client, wa_delivery(wa_text("Não vou poder ir, pode cancelar")))

        with seed.factory() as db:
            assert db.get(Appointment, seed.appointment_id).status == "cancelled"

    def test_escalation_hands_session_to_attendants(
        self, api_client, seed, completion_client, graph_session
    ):
        completion_client.queue(
            {
                "action": "escalate",
                "replyText": "Vou transferir para um atendente.",
                "appointmentId": None,
            }
        )

        _post(api_client, wa_delivery(wa_text("Quero remarcar para sexta")))

        [session_row] = _sessions(seed)
        assert session_row.status == "human"
        assert session_row.ai_draft == "Vou transferir para um atendente."
        assert len(graph_session.calls) == 1
        with seed.factory() as db:
            assert db.get(Appointment, seed.appointment_id).status == "scheduled"

    def test_silent_escalation_still_records_the_turn_pair(
        self, api_client, seed, completion_client, graph_session
    ):
        completion_client.queue({"action": "escalate"})

        _post(api_client, wa_delivery(wa_text("Preciso falar com alguém")))

        [session_row] = _sessions(seed)
        assert session_row.status == "human"
        assert session_row.context_snapshot == [
            {"role": "user", "content": "Preciso falar com alguém"},
            {"role": "assistant", "content": ""},
        ]
        assert graph_session.calls == []

    def test_confirming_a_cancelled_appointment_is_refused(
        self, api_client, seed, completion_client
    ):
        with seed.factory.begin() as db:
            db.get(Appointment, seed.appointment_id).status = "cancelled"
        completion_client.queue(
            {
                "action": "confirm_appointment",
                "replyText": "Confirmada!",
                "appointmentId": str(seed.appointment_id),
            }
        )

        _post(api_client, wa_delivery(wa_text("Confirmo")))

        with seed.factory() as db:
            assert db.get(Appointment, seed.appointment_id).status == "cancelled"
        [session_row] = _sessions(seed)
        assert session_row.status == "human"

    def test_provider_outage_escalates_with_apology(
        self, api_client, seed, completion_client, graph_session
    ):
        completion_client.queue(ConnectionError("openrouter down"))

        resp = _post(api_client, wa_delivery(wa_text("Olá")))

        assert resp.status_code == 200
        [session_row] = _sessions(seed)
        assert session_row.status == "human"
        assert session_row.ai_draft == PROVIDER_FAILURE_REPLY
        assert graph_session.calls[0]["json"]["text"]["body"] == PROVIDER_FAILURE_REPLY

    def test_human_owned_session_skips_ai(self, api_client, seed, completion_client, graph_session):
        with seed.factory.begin() as db:
            repo = SqlSessionRepository(db)
            row = repo.find_or_create(seed.clinic_id, "5511991234567", seed.patient_id)
            repo.set_status(row.id, "human")

        resp = _post(api_client, wa_delivery(wa_text("Alguém aí?")))

        assert resp.status_code == 200
        assert completion_client.calls == []
        assert graph_session.calls == []
        [message] = _messages(seed)
        assert message.body == "Alguém aí?"

    def test_duplicate_delivery_is_processed_once(self, api_client, seed, completion_client):
        completion_client.queue({"action": "reply", "replyText": "Olá, Maria!"})
        delivery = wa_delivery(wa_text("Oi", message_id="wamid.DUP"))

        assert _post(api_client, delivery).status_code == 200
        assert _post(api_client, delivery).status_code == 200

        assert len(completion_client.calls) == 1
        inbound = [m for m in _messages(seed) if m.direction == "inbound"]
        assert len(inbound) == 1

    def test_two_messages_share_one_session(self, api_client, seed, completion_client):
        completion_client.queue({"action": "reply", "replyText": "Um momento."})
        completion_client.queue({"action": "reply", "replyText": "Certo."})

        _post(
            api_client,
            wa_delivery(wa_text("Oi", message_id="wamid.A"), wa_text("Tudo bem?", message_id="wamid.B")),
        )

        assert len(_sessions(seed)) == 1
        assert len(_messages(seed)) == 4

    def test_unknown_sender_still_gets_a_session(self, api_client, seed, completion_client):
        completion_client.queue({"action": "reply", "replyText": "Olá! Como posso ajudar?"})

        _post(api_client, wa_delivery(wa_text("Oi", sender="5521977776666")))

        [session_row] = _sessions(seed)
        assert session_row.patient_id is None
        assert "não identificado" in completion_client.calls[0]["messages"][0]["content"]

    def test_unsupported_content_is_ignored(self, api_client, seed, completion_client):
        image = {"from": "5511991234567", "id": "wamid.IMG", "type": "image", "image": {"id": "m1"}}

        resp = _post(api_client, wa_delivery(image))

        assert resp.status_code == 200
        assert completion_client.calls == []
        assert _messages(seed) == []
        assert _sessions(seed) == []

    def test_unknown_phone_number_id_is_skipped(self, api_client, seed, completion_client):
        resp = _post(api_client, wa_delivery(wa_text("Oi"), phone_number_id="999"))

        assert resp.status_code == 200
        assert completion_client.calls == []
        assert _sessions(seed) == []

    def test_reply_send_failure_keeps_decision(self, api_client, seed, completion_client, graph_session):
        completion_client.queue(
            {
                "action": "confirm_appointment",
                "replyText": "Confirmado!",
                "appointmentId": str(seed.appointment_id),
            }
        )
        graph_session.queue(FakeResponse(500, {"error": {"message": "Service unavailable"}}))

        resp = _post(api_client, wa_delivery(wa_text("Sim")))

        assert resp.status_code == 200
        with seed.factory() as db:
            assert db.get(Appointment, seed.appointment_id).status == "confirmed"
        assert [m.direction for m in _messages(seed)] == ["inbound"]


class TestDeliveryStatuses:
    def test_status_callback_updates_outbound_message(self, api_client, seed):
        with seed.factory.begin() as db:
            repo = SqlSessionRepository(db)
            row = repo.find_or_create(seed.clinic_id, "5511991234567")
            repo.add_message(
                session_id=row.id,
                clinic_id=seed.clinic_id,
                direction="outbound",
                body="Lembrete",
                message_type="text",
                sent_by="system",
                wa_message_id="wamid.OUT9",
                delivery_status="sent",
            )

        statuses = [{"id": "wamid.OUT9", "status": "read", "recipient_id": "5511991234567"}]
        resp = _post(api_client, wa_delivery(statuses=statuses))

        assert resp.status_code == 200
        [message] = _messages(seed)
        assert message.delivery_status == "read"


class TestRejections:
    @pytest.fixture
    def signed(self, monkeypatch, api_client):
        monkeypatch.setenv("META_APP_SECRET", APP_SECRET)
        reset_settings_cache()
        yield api_client
        reset_settings_cache()

    def test_invalid_signature_is_rejected_before_any_write(self, signed, seed, completion_client):
        resp = _post(
            signed,
            wa_delivery(wa_text("Sim")),
            headers={"X-Hub-Signature-256": "sha256=" + "0" * 64},
        )

        assert resp.status_code == 403
        assert completion_client.calls == []
        assert _sessions(seed) == []

    def test_missing_signature_is_rejected(self, signed, seed):
        resp = _post(signed, wa_delivery(wa_text("Sim")))
        assert resp.status_code == 403

    def test_valid_signature_is_accepted(self, signed, seed, completion_client):
        completion_client.queue({"action": "reply", "replyText": "Olá!"})
        body = json.dumps(wa_delivery(wa_text("Oi"))).encode("utf-8")
        digest = hmac.new(APP_SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()

        resp = signed.post(
            WEBHOOK,
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": f"sha256={digest}"},
        )

        assert resp.status_code == 200
        assert len(_sessions(seed)) == 1

    def test_invalid_json_is_400(self, api_client, seed):
        resp = api_client.post(
            WEBHOOK, content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status_code == 400

    def test_non_object_payload_is_400(self, api_client):
        resp = _post(api_client, ["entry"])
        assert resp.status_code == 400

    def test_malformed_envelope_is_400(self, api_client, seed):
        resp = _post(api_client, {"entry": [{"changes": [{"value": {}}]}]})
        assert resp.status_code == 400
        assert _sessions(seed) == []
