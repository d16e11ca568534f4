"""Shared fixtures: an in-memory SQLite store per test."""

import copy
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

from intakeforms.api import create_app
from intakeforms.catalog import lookup
from intakeforms.config import Settings
from intakeforms.db import build_engine, build_session_factory, init_db
from intakeforms.events import EventEmitter
from intakeforms.gateway import FormGateway
from intakeforms.submission import SubmissionOrchestrator
from intakeforms.types import Actor

CLIENT_ID = "C-1001"
SIGNER = "Ann Lee"

SIGNED_PAYLOADS: Dict[str, Dict[str, Any]] = {
    "checkbox": {"checkboxes": {"clientRights": True}, "signature": SIGNER},
    "acknowledgement": {"acknowledged": True, "signature": SIGNER},
    "simple_consent": {"signature": SIGNER},
    "media_consent": {
        "releaseItems": [{"value": "photographs"}],
        "releasePurposes": [{"value": "newsletter"}],
        "releaseSignature": SIGNER,
        "effectiveDate": "2025-01-01",
        "expireDate": "2026-01-01",
    },
}


@pytest.fixture
def settings() -> Settings:
    return Settings(ENV="test", DATABASE_URL="sqlite://", LOG_LEVEL="DEBUG")


@pytest.fixture
def engine(settings):
    engine = build_engine(settings)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def gateway(engine, emitter) -> FormGateway:
    gateway = FormGateway(build_session_factory(engine), emitter=emitter)
    gateway.register_client(CLIENT_ID, "Test Client")
    return gateway


@pytest.fixture
def orchestrator(gateway) -> SubmissionOrchestrator:
    return SubmissionOrchestrator(gateway)


@pytest.fixture
def client_id() -> str:
    return CLIENT_ID


@pytest.fixture
def actor() -> Actor:
    return Actor(id="case.manager@clinic.org")


@pytest.fixture
def signed_payload():
    """Return a valid, signed payload for a form type."""
    def build(form_type: str) -> Dict[str, Any]:
        return copy.deepcopy(SIGNED_PAYLOADS[lookup(form_type).rule.value])

    return build


@pytest.fixture
def api(settings, gateway):
    app = create_app(settings=settings, gateway=gateway)
    with TestClient(app) as client:
        yield client
