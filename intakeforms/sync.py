"""Client-side synchronization of one form being edited.

FormSyncClient keeps an in-memory draft of a single form. Edits update the
draft and recompute the completion percentage locally with the catalog
rule, without any I/O. Two write paths reach the server:

- ``save()``: the full validated upsert. On success the draft is replaced
  by the canonical record; on validation errors or a conflict the draft is
  kept as-is and the error is handed back in a SaveOutcome.
- ``autosave()``: a best-effort background write. It runs on a worker
  thread, never raises to the caller and only flips ``autosave_failed``.

Transports decouple the client from where the engine runs: GatewayTransport
calls a FormGateway in-process, HttpTransport talks to the REST surface.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx
from typing_extensions import Protocol

from intakeforms.catalog import compute_completion, lookup
from intakeforms.config import get_settings
from intakeforms.errors import (
    ConflictError,
    FieldError,
    FormEngineError,
    InfraError,
    InvalidFormTypeError,
    NotFoundError,
    SubmissionIncompleteError,
    ValidationFailedError,
)
from intakeforms.gateway import FormGateway
from intakeforms.logs import build_log_context
from intakeforms.sanitization import sanitize
from intakeforms.types import Actor, FormInstance, FormStatus, InfraCategory

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-User-Email"


class FormTransport(Protocol):
    """Where a FormSyncClient sends its reads and writes."""

    def fetch(self, client_id: str, form_type: str) -> FormInstance:
        ...

    def save(self, client_id: str, form_type: str, payload: Mapping[str, Any]) -> FormInstance:
        ...

    def autosave(self, client_id: str, form_type: str, payload: Mapping[str, Any]) -> None:
        ...


class GatewayTransport:
    """In-process transport over a FormGateway."""

    def __init__(self, gateway: FormGateway, actor: Optional[Actor] = None):
        self.gateway = gateway
        self.actor = actor or Actor.system()

    def fetch(self, client_id: str, form_type: str) -> FormInstance:
        return self.gateway.get(client_id, form_type)

    def save(self, client_id: str, form_type: str, payload: Mapping[str, Any]) -> FormInstance:
        return self.gateway.upsert(client_id, form_type, payload, actor=self.actor)

    def autosave(self, client_id: str, form_type: str, payload: Mapping[str, Any]) -> None:
        self.gateway.autosave_upsert(client_id, form_type, payload, actor=self.actor)


_STATUS_INFRA_CATEGORY = {
    503: InfraCategory.CONNECTION,
    408: InfraCategory.TIMEOUT,
    403: InfraCategory.PERMISSION,
}


class HttpTransport:
    """Transport against the REST surface using httpx.

    Error responses are mapped back onto the engine's error taxonomy so a
    FormSyncClient behaves the same whichever transport it uses.

    Args:
        base_url: Root URL of the API; defaults to ``API_BASE_URL`` from settings
        actor_email: Sent as ``X-User-Email``; omitted means System
        timeout: Per-request timeout in seconds; defaults to ``API_TIMEOUT_SECONDS``
        client: Pre-built httpx.Client (tests pass FastAPI's TestClient)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        actor_email: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        if client is None:
            settings = get_settings()
            client = httpx.Client(
                base_url=base_url or settings.API_BASE_URL,
                timeout=timeout if timeout is not None else settings.API_TIMEOUT_SECONDS,
            )
            self._owns_client = True
        else:
            self._owns_client = False
        self.client = client
        self.headers = {ACTOR_HEADER: actor_email} if actor_email else {}

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def fetch(self, client_id: str, form_type: str) -> FormInstance:
        data = self._request("GET", f"/clients/{client_id}/forms/{form_type}", "fetch")
        return FormInstance.from_dict(data)

    def save(self, client_id: str, form_type: str, payload: Mapping[str, Any]) -> FormInstance:
        data = self._request("POST", f"/clients/{client_id}/forms/{form_type}", "save", json=dict(payload))
        return FormInstance.from_dict(data)

    def autosave(self, client_id: str, form_type: str, payload: Mapping[str, Any]) -> None:
        self._request("POST", f"/clients/{client_id}/forms/{form_type}/autosave", "autosave", json=dict(payload))

    def _request(self, method: str, path: str, operation: str, json: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = self.client.request(method, path, json=json, headers=self.headers)
        except httpx.TimeoutException as exc:
            raise InfraError(InfraCategory.TIMEOUT, operation, cause=exc) from exc
        except httpx.TransportError as exc:
            raise InfraError(InfraCategory.CONNECTION, operation, cause=exc) from exc
        if response.status_code < 400:
            return response.json()
        raise error_from_response(response, operation)


def error_from_response(response: httpx.Response, operation: str) -> FormEngineError:
    """Rebuild the engine error carried by an API error response."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    status = response.status_code
    message = body.get("message") or response.reason_phrase

    if status == 400 and "validFormTypes" in body:
        return InvalidFormTypeError(body.get("formType"), body["validFormTypes"])
    if status == 400 and "remaining" in body:
        return SubmissionIncompleteError(body.get("totalForms", 0), body.get("completedForms", 0))
    if status == 404:
        return NotFoundError(message)
    if status == 409:
        return ConflictError(FormStatus(body.get("currentStatus", FormStatus.SUBMITTED.value)), message)
    if status in (400, 422):
        fields = [FieldError.from_dict(f) for f in body.get("fields", [])]
        return ValidationFailedError(fields, message)
    category = _STATUS_INFRA_CATEGORY.get(status, InfraCategory.STORAGE)
    return InfraError(category, operation, cause=RuntimeError(f"HTTP {status}: {message}"))


@dataclass(frozen=True)
class SaveOutcome:
    """Result of an explicit save.

    Attributes:
        ok: Whether the server accepted the save
        record: Canonical record returned by the server (on success)
        error: The engine error (on failure); the local draft is unchanged
    """
    ok: bool
    record: Optional[FormInstance] = None
    error: Optional[FormEngineError] = None

    @property
    def errors(self) -> Dict[str, str]:
        if isinstance(self.error, ValidationFailedError):
            return self.error.errors
        if self.error is not None:
            return {"_": self.error.message}
        return {}


class FormSyncClient:
    """Local draft of one form, synchronized through a transport.

    Examples:
        >>> sync = FormSyncClient(GatewayTransport(gateway), "C-1", "orientation")  # doctest: +SKIP
        >>> sync.edit(checkboxes={"rights": True})                                  # doctest: +SKIP
        >>> sync.completion_percentage                                              # doctest: +SKIP
        7
    """

    def __init__(
        self,
        transport: FormTransport,
        client_id: str,
        form_type: str,
        payload: Optional[Mapping[str, Any]] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.entry = lookup(form_type)
        self.transport = transport
        self.client_id = client_id
        self.form_type = form_type
        self.record: Optional[FormInstance] = None
        self.status = FormStatus.DRAFT
        self.pending = False
        self.autosave_failed = False
        self.last_error: Optional[FormEngineError] = None

        self._lock = threading.RLock()
        self._draft: Dict[str, Any] = sanitize(payload or {}, self.entry)
        self._draft.pop("completionPercentage", None)
        self.completion_percentage = compute_completion(self.entry, self._draft)
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="intake-autosave")
        self._timer: Optional[threading.Timer] = None
        self._interval: Optional[float] = None

    @property
    def draft(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._draft)

    def _context(self, operation: str) -> Dict[str, Any]:
        return build_log_context(client_id=self.client_id, form_type=self.form_type, operation=operation)

    def load(self) -> Optional[FormInstance]:
        """Replace the draft with the stored record, if there is one."""
        try:
            record = self.transport.fetch(self.client_id, self.form_type)
        except NotFoundError:
            return None
        self._adopt(record)
        return record

    def edit(self, **fields: Any) -> int:
        """Apply field edits to the draft; returns the new completion percentage."""
        return self.update(fields)

    def update(self, fields: Mapping[str, Any]) -> int:
        with self._lock:
            merged = dict(self._draft)
            merged.update(fields)
            self._draft = sanitize(merged, self.entry)
            # Computed locally, never part of the draft
            self._draft.pop("completionPercentage", None)
            self.completion_percentage = compute_completion(self.entry, self._draft)
            self.pending = True
            return self.completion_percentage

    def set_checkbox(self, name: str, checked: bool = True) -> int:
        with self._lock:
            checkboxes = dict(self._draft.get("checkboxes") or {})
        checkboxes[name] = checked
        return self.update({"checkboxes": checkboxes})

    def save(self) -> SaveOutcome:
        """Explicit validated save; never discards local edits on failure."""
        payload = self._outgoing()
        try:
            record = self.transport.save(self.client_id, self.form_type, payload)
        except (ValidationFailedError, ConflictError, NotFoundError, InfraError) as exc:
            self.last_error = exc
            logger.info("Save not accepted: %s", exc.error_type.value, extra=self._context("save"))
            return SaveOutcome(ok=False, error=exc)
        with self._lock:
            if self._unchanged_since(payload):
                self._adopt(record)
            else:
                # Edits made while the save was in flight stay pending
                self.record = record
                self.status = record.status
        self.last_error = None
        return SaveOutcome(ok=True, record=record)

    def autosave(self) -> "Future[bool]":
        """Schedule a background write of the draft; returns its Future.

        The Future resolves to True on success and False on failure; it
        never carries an exception.
        """
        payload = self._outgoing()
        return self._executor.submit(self._autosave_now, payload)

    def _autosave_now(self, payload: Dict[str, Any]) -> bool:
        try:
            self.transport.autosave(self.client_id, self.form_type, payload)
        except Exception:
            self.autosave_failed = True
            logger.warning("Autosave failed", exc_info=True, extra=self._context("autosave"))
            return False
        self.autosave_failed = False
        with self._lock:
            if self._unchanged_since(payload):
                self.pending = False
        return True

    def start_autosave(self, interval: Optional[float] = None) -> None:
        """Autosave every ``interval`` seconds while there are pending edits.

        The interval defaults to ``AUTOSAVE_INTERVAL_SECONDS`` from settings.
        """
        with self._lock:
            self._interval = interval if interval is not None else get_settings().AUTOSAVE_INTERVAL_SECONDS
            self._schedule()

    def _schedule(self) -> None:
        if self._interval is None:
            return
        self._timer = threading.Timer(self._interval, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def _tick(self) -> None:
        with self._lock:
            if self._interval is None:
                return
            if self.pending:
                self.autosave()
            self._schedule()

    def stop_autosave(self) -> None:
        with self._lock:
            self._interval = None
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def close(self) -> None:
        """Stop the timer and wait for in-flight autosaves."""
        self.stop_autosave()
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    def _outgoing(self) -> Dict[str, Any]:
        with self._lock:
            payload = dict(self._draft)
            payload["completionPercentage"] = self.completion_percentage
            return payload

    def _unchanged_since(self, payload: Mapping[str, Any]) -> bool:
        with self._lock:
            return self._draft == {k: v for k, v in payload.items() if k != "completionPercentage"}

    def _adopt(self, record: FormInstance) -> None:
        with self._lock:
            self.record = record
            self.status = record.status
            self._draft = dict(record.payload)
            self.completion_percentage = record.completion_percentage
            self.pending = False


__all__ = [
    "FormTransport",
    "GatewayTransport",
    "HttpTransport",
    "SaveOutcome",
    "FormSyncClient",
    "error_from_response",
]
