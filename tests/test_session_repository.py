import datetime as dt

import pytest
from sqlalchemy import select

from app.conversations.repository import (
    STATUS_AI,
    STATUS_HUMAN,
    STATUS_RESOLVED,
    SessionNotFoundError,
    SessionTransitionError,
    SqlSessionRepository,
)
from app.models import WhatsAppMessage, WhatsAppSession

PHONE = "5511991234567"


def _outbound(repo, session_row, wa_message_id, status="sent"):
    return repo.add_message(
        session_id=session_row.id,
        clinic_id=session_row.clinic_id,
        direction="outbound",
        body="Olá",
        message_type="text",
        sent_by="ai",
        wa_message_id=wa_message_id,
        delivery_status=status,
    )


def test_find_or_create_returns_single_open_session(seed):
    with seed.factory.begin() as db:
        repo = SqlSessionRepository(db)
        first = repo.find_or_create(seed.clinic_id, PHONE)
        second = repo.find_or_create(seed.clinic_id, PHONE, seed.patient_id)

        assert first.id == second.id
        assert second.status == STATUS_AI
        assert second.patient_id == seed.patient_id

    with seed.factory() as db:
        rows = db.execute(select(WhatsAppSession)).scalars().all()
        assert len(rows) == 1


def test_resolved_session_is_not_reused(seed):
    with seed.factory.begin() as db:
        repo = SqlSessionRepository(db)
        first = repo.find_or_create(seed.clinic_id, PHONE)
        repo.set_status(first.id, STATUS_RESOLVED)
        fresh = repo.find_or_create(seed.clinic_id, PHONE)

        assert fresh.id != first.id
        assert fresh.status == STATUS_AI


class _RacingRepository(SqlSessionRepository):
    """Simulates a concurrent delivery creating the session first."""

    def __init__(self, session, factory, clinic_id):
        super().__init__(session)
        self._factory = factory
        self._clinic_id = clinic_id
        self._raced = False

    def _open_session(self, clinic_id, phone):
        if not self._raced:
            self._raced = True
            with self._factory.begin() as rival:
                rival.add(
                    WhatsAppSession(
                        clinic_id=self._clinic_id,
                        wa_phone=phone,
                        status=STATUS_AI,
                        context_snapshot=[],
                    )
                )
            return None
        return super()._open_session(clinic_id, phone)


def test_concurrent_create_coalesces_onto_winner(seed):
    with seed.factory.begin() as db:
        repo = _RacingRepository(db, seed.factory, seed.clinic_id)
        row = repo.find_or_create(seed.clinic_id, PHONE, seed.patient_id)
        session_id = row.id
        assert row.patient_id == seed.patient_id

    with seed.factory() as db:
        rows = db.execute(select(WhatsAppSession)).scalars().all()
        assert [r.id for r in rows] == [session_id]


def test_append_context_keeps_last_ten_turns(seed):
    with seed.factory.begin() as db:
        repo = SqlSessionRepository(db)
        row = repo.find_or_create(seed.clinic_id, PHONE)
        for i in range(7):
            repo.append_context(
                row.id,
                [
                    {"role": "user", "content": f"pergunta {i}"},
                    {"role": "assistant", "content": f"resposta {i}"},
                ],
            )
        session_id = row.id

    with seed.factory() as db:
        snapshot = db.get(WhatsAppSession, session_id).context_snapshot
    assert len(snapshot) == 10
    assert snapshot[0] == {"role": "user", "content": "pergunta 2"}
    assert snapshot[-1] == {"role": "assistant", "content": "resposta 6"}


def test_context_window_is_configurable(seed):
    with seed.factory.begin() as db:
        repo = SqlSessionRepository(db, context_window=3)
        row = repo.find_or_create(seed.clinic_id, PHONE)
        window = repo.append_context(
            row.id, [{"role": "user", "content": str(i)} for i in range(5)]
        )
    assert [turn["content"] for turn in window] == ["2", "3", "4"]


class TestStatusTransitions:
    def test_ai_to_human_to_resolved(self, seed):
        with seed.factory.begin() as db:
            repo = SqlSessionRepository(db)
            row = repo.find_or_create(seed.clinic_id, PHONE)
            assert repo.set_status(row.id, STATUS_HUMAN).status == STATUS_HUMAN
            assert repo.set_status(row.id, STATUS_RESOLVED).status == STATUS_RESOLVED

    def test_resolved_is_terminal(self, seed):
        with seed.factory.begin() as db:
            repo = SqlSessionRepository(db)
            row = repo.find_or_create(seed.clinic_id, PHONE)
            repo.set_status(row.id, STATUS_RESOLVED)
            with pytest.raises(SessionTransitionError):
                repo.set_status(row.id, STATUS_AI)

    def test_human_cannot_return_to_ai(self, seed):
        with seed.factory.begin() as db:
            repo = SqlSessionRepository(db)
            row = repo.find_or_create(seed.clinic_id, PHONE)
            repo.set_status(row.id, STATUS_HUMAN)
            with pytest.raises(SessionTransitionError):
                repo.set_status(row.id, STATUS_AI)

    def test_same_status_is_noop(self, seed):
        with seed.factory.begin() as db:
            repo = SqlSessionRepository(db)
            row = repo.find_or_create(seed.clinic_id, PHONE)
            assert repo.set_status(row.id, STATUS_AI).status == STATUS_AI

    def test_unknown_status(self, seed):
        with seed.factory.begin() as db:
            repo = SqlSessionRepository(db)
            row = repo.find_or_create(seed.clinic_id, PHONE)
            with pytest.raises(SessionTransitionError):
                repo.set_status(row.id, "closed")


def test_get_session_scoped_to_clinic(seed):
    import uuid

    with seed.factory.begin() as db:
        repo = SqlSessionRepository(db)
        row = repo.find_or_create(seed.clinic_id, PHONE)
        assert repo.get_session(row.id, seed.clinic_id).id == row.id
        with pytest.raises(SessionNotFoundError):
            repo.get_session(row.id, uuid.uuid4())
        with pytest.raises(SessionNotFoundError):
            repo.get_session(uuid.uuid4())


def test_draft_and_touch(seed):
    stamp = dt.datetime(2030, 1, 2, 3, 4, 5, tzinfo=dt.timezone.utc)
    with seed.factory.begin() as db:
        repo = SqlSessionRepository(db)
        row = repo.find_or_create(seed.clinic_id, PHONE)
        repo.set_draft(row.id, "Um atendente vai responder")
        repo.touch(row.id, stamp)
        session_id = row.id

    with seed.factory() as db:
        row = db.get(WhatsAppSession, session_id)
        assert row.ai_draft == "Um atendente vai responder"
        assert row.last_message_at.replace(tzinfo=dt.timezone.utc) == stamp


def test_list_active_includes_patient_name(seed):
    with seed.factory.begin() as db:
        repo = SqlSessionRepository(db)
        repo.find_or_create(seed.clinic_id, PHONE, seed.patient_id)
        closed = repo.find_or_create(seed.clinic_id, "5521988887777")
        repo.set_status(closed.id, STATUS_RESOLVED)
        active = repo.list_active(seed.clinic_id)

    assert len(active) == 1
    assert active[0]["patient_name"] == "Maria Silva"
    assert active[0]["session"].wa_phone == PHONE


def test_inbound_dedupe_lookup(seed):
    with seed.factory.begin() as db:
        repo = SqlSessionRepository(db)
        row = repo.find_or_create(seed.clinic_id, PHONE)
        repo.add_message(
            session_id=row.id,
            clinic_id=seed.clinic_id,
            direction="inbound",
            body="Oi",
            message_type="text",
            sent_by="patient",
            wa_message_id="wamid.IN1",
        )
        assert repo.has_inbound_message(seed.clinic_id, "wamid.IN1")
        assert not repo.has_inbound_message(seed.clinic_id, "wamid.IN2")


class TestDeliveryStatus:
    def test_status_moves_forward(self, seed):
        with seed.factory.begin() as db:
            repo = SqlSessionRepository(db)
            row = repo.find_or_create(seed.clinic_id, PHONE)
            _outbound(repo, row, "wamid.OUT1")
            assert repo.update_delivery_status(seed.clinic_id, "wamid.OUT1", "delivered") == 1
            assert repo.update_delivery_status(seed.clinic_id, "wamid.OUT1", "read") == 1

        with seed.factory() as db:
            message = db.execute(select(WhatsAppMessage)).scalar_one()
            assert message.delivery_status == "read"

    def test_out_of_order_callback_does_not_regress(self, seed):
        with seed.factory.begin() as db:
            repo = SqlSessionRepository(db)
            row = repo.find_or_create(seed.clinic_id, PHONE)
            _outbound(repo, row, "wamid.OUT1", status="read")
            assert repo.update_delivery_status(seed.clinic_id, "wamid.OUT1", "delivered") == 0

    def test_unknown_provider_id_is_ignored(self, seed):
        with seed.factory.begin() as db:
            repo = SqlSessionRepository(db)
            assert repo.update_delivery_status(seed.clinic_id, "wamid.NOPE", "read") == 0


def test_purge_message_bodies_keeps_metadata(seed):
    with seed.factory.begin() as db:
        repo = SqlSessionRepository(db)
        row = repo.find_or_create(seed.clinic_id, PHONE)
        old = _outbound(repo, row, "wamid.OLD")
        old.created_at = dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=800)
        _outbound(repo, row, "wamid.NEW")

    with seed.factory.begin() as db:
        cutoff = dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=730)
        assert SqlSessionRepository(db).purge_message_bodies(cutoff) == 1

    with seed.factory() as db:
        bodies = {
            m.wa_message_id: (m.body, m.delivery_status)
            for m in db.execute(select(WhatsAppMessage)).scalars()
        }
    assert bodies == {"wamid.OLD": (None, "sent"), "wamid.NEW": ("Olá", "sent")}
