import datetime as dt
import importlib
import json
import pathlib
import sys
import uuid
from dataclasses import dataclass, field
from typing import Any

import pytest
from fastapi import FastAPI, Request
from sqlalchemy.orm import Session, sessionmaker

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from app.app_logging import init_logging
from app.channels.whatsapp import GraphApiClient
from app.clinics.repository import ClinicRepository
from app.core import clients
from app.core.auth import create_staff_token
from app.core.settings import get_settings, reset_settings_cache
from app.models import (
    Appointment,
    Base,
    ChannelSecret,
    Clinic,
    Patient,
    Professional,
)
from app.models.session import get_sessionmaker, reset_default_sessionmaker

CLINIC_TOKEN = "EAAG-test-access-token-0123456789"
PHONE_NUMBER_ID = "109876543210"
VERIFY_TOKEN = "verify-me-please"
APP_SECRET = "meta-app-secret"
SERVICE_KEY = "internal-service-key"


# ---------------------------------------------------------------------------
# Fakes for the outbound I/O boundaries


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None) -> None:
        self.status_code = status_code
        self._body = body if body is not None else {}
        self.text = json.dumps(self._body)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        return self._body


class FakeGraphSession:
    """Stand-in for ``requests.Session`` recording Graph API calls."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.responses: list[FakeResponse] = []
        self._counter = 0

    def queue(self, response: FakeResponse) -> None:
        self.responses.append(response)

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.responses:
            return self.responses.pop(0)
        self._counter += 1
        return FakeResponse(200, {"messages": [{"id": f"wamid.OUT{self._counter}"}]})


class FakeCompletionClient:
    """Returns queued completions; exceptions in the queue are raised."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def queue(self, response: Any) -> None:
        self.responses.append(response)

    def complete(self, model, messages, **params):
        self.calls.append({"model": model, "messages": messages, "params": params})
        if not self.responses:
            raise RuntimeError("no completion queued")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, dict):
            return json.dumps(response)
        return response


def wa_delivery(
    *messages: dict[str, Any],
    statuses: list[dict[str, Any]] | None = None,
    phone_number_id: str = PHONE_NUMBER_ID,
) -> dict[str, Any]:
    """Build a WhatsApp Cloud API webhook delivery with one ``messages`` change."""

    value: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "551133334444", "phone_number_id": phone_number_id},
        "contacts": [{"wa_id": "5511991234567", "profile": {"name": "Maria"}}],
        "messages": list(messages),
    }
    if statuses:
        value["statuses"] = statuses
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA-1", "changes": [{"field": "messages", "value": value}]}],
    }


def wa_text(body: str, message_id: str = "wamid.IN1", sender: str = "5511991234567") -> dict[str, Any]:
    return {
        "from": sender,
        "id": message_id,
        "timestamp": str(int(dt.datetime.now(dt.timezone.utc).timestamp())),
        "type": "text",
        "text": {"body": body},
    }


# ---------------------------------------------------------------------------
# Store fixtures


@dataclass
class SeedData:
    factory: sessionmaker[Session]
    clinic_id: uuid.UUID
    patient_id: uuid.UUID
    professional_id: uuid.UUID
    appointment_id: uuid.UUID
    patient_phone: str = "(11) 99123-4567"
    sender_phone: str = "5511991234567"
    extra: dict[str, Any] = field(default_factory=dict)


@pytest.fixture
def env(monkeypatch, tmp_path):
    db_url = f"sqlite+pysqlite:///{tmp_path / 'messaging.db'}"
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("META_APP_SECRET", raising=False)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.setenv("INTERNAL_SERVICE_KEY", SERVICE_KEY)
    monkeypatch.setenv("STAFF_TOKEN_SECRET", "staff-secret-key")
    monkeypatch.setenv("STAFF_TOKEN_AUDIENCE", "clinic-app")
    monkeypatch.setenv("STAFF_TOKEN_ISSUER", "auth.clinic-app")
    monkeypatch.setenv("STAFF_TOKEN_ALGORITHM", "HS256")
    monkeypatch.setenv("CLINIC_TIMEZONE", "America/Sao_Paulo")
    reset_settings_cache()
    reset_default_sessionmaker()
    clients.reset_clients()
    yield db_url
    reset_default_sessionmaker()
    reset_settings_cache()


@pytest.fixture
def session_factory(env) -> sessionmaker[Session]:
    factory = get_sessionmaker(env)
    engine = factory.kw["bind"]
    Base.metadata.create_all(engine)
    yield factory
    engine.dispose()


def tomorrow_at(hour: int, minute: int = 0) -> dt.datetime:
    """UTC instant for ``hour:minute`` tomorrow in the clinic's timezone."""

    from zoneinfo import ZoneInfo

    zone = ZoneInfo("America/Sao_Paulo")
    local_tomorrow = dt.datetime.now(zone).date() + dt.timedelta(days=1)
    local = dt.datetime.combine(local_tomorrow, dt.time(hour, minute), tzinfo=zone)
    return local.astimezone(dt.timezone.utc)


@pytest.fixture
def seed(session_factory) -> SeedData:
    with session_factory.begin() as db:
        clinic = Clinic(
            name="Clínica Sorriso",
            phone="(11) 3333-4444",
            address="Rua das Flores, 100",
            whatsapp_enabled=True,
            whatsapp_phone_number_id=PHONE_NUMBER_ID,
            whatsapp_verify_token=VERIFY_TOKEN,
        )
        db.add(clinic)
        db.flush()
        db.add(ChannelSecret(clinic_id=clinic.id, access_token=CLINIC_TOKEN))
        patient = Patient(clinic_id=clinic.id, name="Maria Silva", phone="(11) 99123-4567")
        professional = Professional(clinic_id=clinic.id, name="Dra. Ana Souza")
        db.add_all([patient, professional])
        db.flush()
        appointment = Appointment(
            clinic_id=clinic.id,
            patient_id=patient.id,
            professional_id=professional.id,
            starts_at=tomorrow_at(14, 30),
            status="scheduled",
        )
        db.add(appointment)
        db.flush()
        ClinicRepository(db).seed_default_templates(clinic.id)
        data = SeedData(
            factory=session_factory,
            clinic_id=clinic.id,
            patient_id=patient.id,
            professional_id=professional.id,
            appointment_id=appointment.id,
        )
    return data


@pytest.fixture
def graph_session() -> FakeGraphSession:
    return FakeGraphSession()


@pytest.fixture
def graph_client(graph_session) -> GraphApiClient:
    return GraphApiClient(
        "https://graph.test/v19.0/{phone_number_id}/messages",
        timeout=5,
        session=graph_session,
    )


@pytest.fixture
def completion_client() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def settings(env):
    return get_settings()


# ---------------------------------------------------------------------------
# HTTP fixtures


@pytest.fixture
def api_client(env, seed, monkeypatch, graph_client, completion_client):
    from fastapi.testclient import TestClient

    monkeypatch.setattr(clients, "get_graph_client", lambda: graph_client)
    monkeypatch.setattr(clients, "get_completion_client", lambda: completion_client)

    import app.main as main

    importlib.reload(main)
    with TestClient(main.app) as client:
        yield client


@pytest.fixture
def staff_headers(seed):
    def _headers(role: str = "attendant", clinic_id: uuid.UUID | None = None) -> dict[str, str]:
        token = create_staff_token(clinic_id or seed.clinic_id, uuid.uuid4(), [role])
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def service_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {SERVICE_KEY}"}


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app
