"""FastAPI surface for the intake form engine.

``create_app`` wires a FormGateway and SubmissionOrchestrator into an
application. Engine errors are rendered by a single exception handler
using each error's own status code and ``to_dict()`` body; infra error
details are only included when running in development mode.

The acting user is taken from the ``X-User-Email`` header supplied by the
identity provider in front of this service; requests without it are
attributed to ``System``.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Body, Depends, FastAPI, Header, Request, Response, status
from fastapi.responses import JSONResponse

from intakeforms import __version__
from intakeforms.config import Settings, get_settings
from intakeforms.db import build_engine, build_session_factory, init_db
from intakeforms.errors import FormEngineError, InfraError, ValidationFailedError
from intakeforms.events import default_emitter
from intakeforms.gateway import FormGateway
from intakeforms.logs import configure_logging
from intakeforms.submission import SubmissionOrchestrator
from intakeforms.types import Actor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/clients", tags=["forms"])
review_router = APIRouter(prefix="/submissions", tags=["review"])


def get_gateway(request: Request) -> FormGateway:
    return request.app.state.gateway


def get_orchestrator(request: Request) -> SubmissionOrchestrator:
    return request.app.state.orchestrator


def get_actor(x_user_email: Optional[str] = Header(default=None, alias="X-User-Email")) -> Actor:
    """Actor from the identity provider header, System when absent."""
    if x_user_email and x_user_email.strip():
        return Actor(id=x_user_email.strip())
    return Actor.system()


# Bulk must be registered ahead of /forms/{form_type}
@router.post("/{client_id}/forms/bulk")
def bulk_save_forms(
    client_id: str,
    body: Union[List[Dict[str, Any]], Dict[str, Any]] = Body(...),
    gateway: FormGateway = Depends(get_gateway),
    actor: Actor = Depends(get_actor),
):
    """Save several forms in one transaction; unknown form types are skipped."""
    entries = body.get("forms", []) if isinstance(body, dict) else body
    if not isinstance(entries, list):
        raise ValidationFailedError([], message="Bulk body must be a list of {formType, payload}")
    saved = gateway.bulk_upsert(client_id, entries, actor=actor)
    return {"clientID": client_id, "saved": len(saved), "forms": [f.to_dict() for f in saved]}


@router.get("/{client_id}/forms")
def get_forms_overview(
    client_id: str,
    orchestrator: SubmissionOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.overview(client_id)


@router.get("/{client_id}/forms/{form_type}")
def get_form(client_id: str, form_type: str, gateway: FormGateway = Depends(get_gateway)):
    return gateway.get(client_id, form_type).to_dict()


@router.post("/{client_id}/forms/{form_type}")
def save_form(
    client_id: str,
    form_type: str,
    response: Response,
    payload: Dict[str, Any] = Body(default={}),
    gateway: FormGateway = Depends(get_gateway),
    actor: Actor = Depends(get_actor),
):
    """Validated save. 201 when the form was created, 200 otherwise."""
    result = gateway.save(client_id, form_type, payload, actor=actor)
    response.status_code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
    return result.instance.to_dict()


@router.post("/{client_id}/forms/{form_type}/autosave")
def autosave_form(
    client_id: str,
    form_type: str,
    payload: Dict[str, Any] = Body(default={}),
    gateway: FormGateway = Depends(get_gateway),
    actor: Actor = Depends(get_actor),
):
    gateway.autosave_upsert(client_id, form_type, payload, actor=actor)
    return {"ok": True}


@router.post("/{client_id}/submit", status_code=status.HTTP_201_CREATED)
def submit_forms(
    client_id: str,
    body: Dict[str, Any] = Body(default={}),
    orchestrator: SubmissionOrchestrator = Depends(get_orchestrator),
    actor: Actor = Depends(get_actor),
):
    notes = body.get("notes") or ""
    return orchestrator.submit(client_id, str(notes), actor=actor).to_dict()


@router.get("/{client_id}/submission-status")
def submission_status(client_id: str, orchestrator: SubmissionOrchestrator = Depends(get_orchestrator)):
    return orchestrator.status(client_id).to_dict()


@review_router.post("/{submission_id}/approve")
def approve_submission(
    submission_id: int,
    orchestrator: SubmissionOrchestrator = Depends(get_orchestrator),
    actor: Actor = Depends(get_actor),
):
    return orchestrator.approve(submission_id, actor=actor).to_dict()


def create_app(settings: Optional[Settings] = None, gateway: Optional[FormGateway] = None) -> FastAPI:
    """Build the application.

    Args:
        settings: Defaults to ``get_settings()``
        gateway: Pre-built gateway (tests); otherwise one is created from
            ``settings.DATABASE_URL`` and missing tables are created
    """
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    if gateway is None:
        engine = build_engine(settings)
        init_db(engine)
        gateway = FormGateway(build_session_factory(engine), emitter=default_emitter())

    app = FastAPI(title="Intake Forms API", version=__version__)
    app.state.settings = settings
    app.state.gateway = gateway
    app.state.orchestrator = SubmissionOrchestrator(gateway)

    @app.exception_handler(FormEngineError)
    async def engine_error_handler(request: Request, exc: FormEngineError):
        if isinstance(exc, InfraError):
            body = exc.to_dict(include_details=settings.is_dev)
        else:
            body = exc.to_dict()
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.get("/health")
    def health():
        return {"status": "ok", "env": settings.ENV}

    app.include_router(router)
    app.include_router(review_router)
    return app


__all__ = ["create_app", "get_actor", "router"]
