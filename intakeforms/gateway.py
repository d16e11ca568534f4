"""Persistence gateway: the only component that writes form state.

All reads and writes of form instances and submissions go through
FormGateway. Each write runs in a single transaction; the lifecycle guard
is evaluated against the row re-read (``SELECT ... FOR UPDATE``) inside
that same transaction, so a form cannot be finalized between the guard
check and the write. Saves of non-finalized forms are last-write-wins.

Storage failures surface as InfraError with a category; the original
exception is logged here and kept on the error as ``cause``.
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from intakeforms.catalog import CATALOG, CatalogEntry, compute_completion, is_registered, lookup
from intakeforms.errors import (
    ConflictError,
    FieldError,
    NotFoundError,
    SerializationError,
    ValidationFailedError,
    translate_db_error,
)
from intakeforms.events import EventEmitter, FormEvent
from intakeforms.lifecycle import (
    FormStateMachine,
    TransitionSource,
    cap_unvalidated,
    derive_status,
    never_downgrade,
    resolve_save_status,
)
from intakeforms.logs import build_log_context
from intakeforms.sanitization import sanitize
from intakeforms.types import (
    Actor,
    EventType,
    FormInstance,
    FormStatus,
    Priority,
    Submission,
    SubmissionStatus,
)
from intakeforms.db import ClientRow, FormSubmissionRow, IntakeFormRow
from intakeforms.validation import encode_field, validate

logger = logging.getLogger(__name__)

# Request keys that are never stored as form content
CONTROL_KEYS = ("clientID", "formType", "status", "completionPercentage")

COMPLETED_OR_LATER = (
    FormStatus.COMPLETED.value,
    FormStatus.SUBMITTED.value,
    FormStatus.APPROVED.value,
)
GATING_PRIORITIES = tuple(p.value for p in Priority if p.gates_submission)

_PRIORITY_ORDER = {Priority.HIGH.value: 0, Priority.MEDIUM.value: 1, Priority.LOW.value: 2}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SaveResult:
    """Outcome of an explicit save."""
    instance: FormInstance
    created: bool
    changed: bool = True


@dataclass(frozen=True)
class CompletionCounts:
    """Submission gating counts for one client."""
    total_forms: int
    completed_forms: int

    @property
    def remaining(self) -> int:
        return max(0, self.total_forms - self.completed_forms)


class FormGateway:
    """CRUD and transactional bulk operations over form instances.

    Attributes:
        emitter: EventEmitter notified after each committed write

    Examples:
        >>> gateway = FormGateway(session_factory)          # doctest: +SKIP
        >>> gateway.register_client("C-1")                   # doctest: +SKIP
        >>> gateway.upsert("C-1", "consentTreatment", {"signature": "Ann Lee"})  # doctest: +SKIP
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        emitter: Optional[EventEmitter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.emitter = emitter or EventEmitter()
        self._clock = clock

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self, operation: str) -> Iterator[Session]:
        """Run a block in one transaction; roll back on any exception.

        Raises:
            InfraError: For SQLAlchemy/driver failures
        """
        session = self._session_factory()
        try:
            with session.begin():
                yield session
        except SQLAlchemyError as exc:
            infra = translate_db_error(exc, operation)
            logger.error(
                "Form store failure (%s)", infra.category.value,
                exc_info=True,
                extra=build_log_context(operation=operation),
            )
            raise infra from exc
        finally:
            session.close()

    @contextmanager
    def _read(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as exc:
            infra = translate_db_error(exc, operation)
            logger.error(
                "Form store read failure (%s)", infra.category.value,
                exc_info=True,
                extra=build_log_context(operation=operation),
            )
            raise infra from exc
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def client_exists(self, client_id: str) -> bool:
        with self._read("client_exists") as session:
            return session.get(ClientRow, client_id) is not None

    def register_client(self, client_id: str, display_name: Optional[str] = None) -> bool:
        """Create a client record if missing. Returns True when one was created."""
        with self.transaction("register_client") as session:
            if session.get(ClientRow, client_id) is not None:
                return False
            session.add(ClientRow(client_id=client_id, display_name=display_name, created_at=self._clock()))
        return True

    def require_client(self, session: Session, client_id: str) -> None:
        if session.get(ClientRow, client_id) is None:
            raise NotFoundError("Client not found", clientID=client_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, client_id: str, form_type: str) -> FormInstance:
        """Return the form instance or raise NotFoundError."""
        entry = lookup(form_type)
        with self._read("get") as session:
            row = self._load_row(session, client_id, form_type, lock=False)
            if row is None:
                raise NotFoundError(
                    "Form not found for this client", clientID=client_id, formType=form_type
                )
            return self._to_instance(row, entry)

    def list_forms(self, client_id: str) -> List[FormInstance]:
        """All stored forms of a client, high priority first."""
        with self._read("list_forms") as session:
            rows = session.scalars(
                select(IntakeFormRow).where(IntakeFormRow.client_id == client_id)
            ).all()
            rows = sorted(rows, key=lambda r: (_PRIORITY_ORDER.get(r.priority, 3), r.created_at))
            return [self._to_instance(row, CATALOG[row.form_type]) for row in rows if row.form_type in CATALOG]

    def latest_submission(self, client_id: str) -> Optional[Submission]:
        with self._read("latest_submission") as session:
            row = self.latest_submission_row(session, client_id)
            return self._to_submission(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(
        self,
        client_id: str,
        form_type: str,
        payload: Mapping[str, Any],
        actor: Optional[Actor] = None,
        status: Optional[str] = None,
    ) -> FormInstance:
        """Validate, guard and write one form; returns the canonical record."""
        return self.save(client_id, form_type, payload, actor=actor, status=status).instance

    def save(
        self,
        client_id: str,
        form_type: str,
        payload: Mapping[str, Any],
        actor: Optional[Actor] = None,
        status: Optional[str] = None,
    ) -> SaveResult:
        """Explicit, fully validated save.

        Args:
            client_id: Client the form belongs to
            form_type: Catalog key
            payload: Raw request body
            actor: Identity from the identity provider (defaults to System)
            status: Status requested by the caller; defaults to ``payload["status"]``

        Raises:
            InvalidFormTypeError: Unknown form type
            ValidationFailedError: Payload failed validation
            NotFoundError: Unknown client
            ConflictError: The form is finalized and the save would change it
            InfraError: Storage failure
        """
        entry = lookup(form_type)
        actor = actor or Actor.system()
        context = build_log_context(client_id=client_id, form_type=form_type, actor=actor.id, operation="save")

        clean = sanitize(payload, entry)
        requested = status if status is not None else clean.get("status")
        clean["clientID"] = client_id
        result = validate(form_type, clean)
        if not result.is_valid:
            logger.info("Validation failed: %s", sorted(result.errors_by_field), extra=context)
            raise ValidationFailedError(result.errors)

        content = _content(clean)
        encoded = self._encode(entry, content, strict=True)
        computed = derive_status(entry, content)

        with self.transaction("upsert") as session:
            self.require_client(session, client_id)
            row = self._load_row(session, client_id, form_type)
            existing_status = FormStatus(row.status) if row is not None else None
            try:
                target = resolve_save_status(existing_status, computed, requested)
            except ConflictError as exc:
                logger.warning("Rejected change to %s form", exc.current_status.value, extra=context)
                self._emit(EventType.FORM_CONFLICT, client_id, actor, form_type, exc.current_status)
                raise

            if row is not None and existing_status.is_finalized:
                # Idempotent re-save of a finalized form: stored record is returned untouched
                instance = self._to_instance(row, entry)
                logger.info("Idempotent re-save of %s form", existing_status.value, extra=context)
                return SaveResult(instance=instance, created=False, changed=False)

            created = row is None
            row = self._write_row(session, row, entry, client_id, encoded, content, target, actor)
            session.flush()
            instance = self._to_instance(row, entry)

        logger.info(
            "Form %s (%s, %d%%)", "created" if created else "updated",
            instance.status.value, instance.completion_percentage, extra=context,
        )
        self._emit(EventType.FORM_SAVED, client_id, actor, form_type, instance.status,
                   {"created": created, "completionPercentage": instance.completion_percentage})
        return SaveResult(instance=instance, created=created)

    def autosave_upsert(
        self,
        client_id: str,
        form_type: str,
        partial_payload: Mapping[str, Any],
        actor: Optional[Actor] = None,
    ) -> None:
        """Best-effort partial write without full validation.

        The partial payload is merged over the stored one. An autosave never
        completes a form (that takes a validated save) and never moves one back
        from completed. Finalized forms are left untouched and fields that
        cannot be encoded are dropped.

        Raises:
            InvalidFormTypeError: Unknown form type
            InfraError: Storage failure
        """
        entry = lookup(form_type)
        actor = actor or Actor.system()
        context = build_log_context(client_id=client_id, form_type=form_type, actor=actor.id, operation="autosave")
        partial = _content(sanitize(partial_payload, entry))

        with self.transaction("autosave") as session:
            if session.get(ClientRow, client_id) is None:
                logger.warning("Autosave skipped for unknown client", extra=context)
                return
            row = self._load_row(session, client_id, form_type)
            existing_status = FormStatus(row.status) if row is not None else None
            if existing_status is not None and existing_status.is_finalized:
                logger.debug("Autosave ignored for %s form", existing_status.value, extra=context)
                return

            merged = dict(self._payload_of(row, entry)) if row is not None else {}
            merged.update(partial)
            encoded = self._encode(entry, merged, strict=False)
            merged = {k: v for k, v in merged.items() if k not in encoded["dropped"]}
            target = never_downgrade(existing_status, cap_unvalidated(derive_status(entry, merged)))

            row = self._write_row(
                session, row, entry, client_id, encoded, merged, target, actor, TransitionSource.AUTOSAVE
            )
            row.last_autosave_at = self._clock()
            status_after = row.status

        logger.debug("Autosaved (%s)", status_after, extra=context)
        self._emit(EventType.FORM_AUTOSAVED, client_id, actor, form_type, FormStatus(status_after))

    def bulk_upsert(
        self,
        client_id: str,
        entries: Iterable[Mapping[str, Any]],
        actor: Optional[Actor] = None,
    ) -> List[FormInstance]:
        """Save several forms in one transaction.

        Entries are ``{"formType": ..., "payload": {...}}`` (a flat
        ``{"formType": ..., <fields>}`` shape is accepted too). Entries with
        an unknown form type are dropped before the transaction starts and
        are simply absent from the result. Entries are not rejected for
        validation errors, but only an entry that passes validation can
        complete its form; the others stay at most in_progress. Any failure
        after that point, including a lifecycle conflict, rolls back the
        entire batch.
        """
        actor = actor or Actor.system()
        context = build_log_context(client_id=client_id, actor=actor.id, operation="bulk_upsert")

        accepted: List[Tuple[CatalogEntry, Dict[str, Any], bool]] = []
        skipped = 0
        for item in entries:
            form_type = item.get("formType") if isinstance(item, Mapping) else None
            if not is_registered(form_type):
                skipped += 1
                continue
            entry = CATALOG[form_type]
            raw = item.get("payload")
            if not isinstance(raw, Mapping):
                raw = {k: v for k, v in item.items() if k != "formType"}
            clean = sanitize(raw, entry)
            is_valid = validate(entry.key, dict(clean, clientID=client_id)).is_valid
            accepted.append((entry, clean, is_valid))
        if skipped:
            logger.info("Bulk save skipped %d entries with unknown form types", skipped, extra=context)
        if not accepted:
            return []

        saved: List[FormInstance] = []
        with self.transaction("bulk_upsert") as session:
            self.require_client(session, client_id)
            for entry, clean, is_valid in accepted:
                requested = clean.get("status")
                content = _content(clean)
                encoded = self._encode(entry, content, strict=True)
                row = self._load_row(session, client_id, entry.key)
                existing_status = FormStatus(row.status) if row is not None else None
                computed = derive_status(entry, content)
                if not is_valid:
                    computed = cap_unvalidated(computed)
                target = resolve_save_status(existing_status, computed, requested)
                if row is not None and existing_status.is_finalized:
                    saved.append(self._to_instance(row, entry))
                    continue
                row = self._write_row(session, row, entry, client_id, encoded, content, target, actor)
                session.flush()
                saved.append(self._to_instance(row, entry))

        logger.info("Bulk saved %d forms", len(saved), extra=context)
        self._emit(EventType.FORMS_BULK_SAVED, client_id, actor, None, None,
                   {"formTypes": [i.form_type for i in saved], "skipped": skipped})
        return saved

    # ------------------------------------------------------------------
    # Submission support (used by the submission orchestrator)
    # ------------------------------------------------------------------

    def completion_counts(self, session: Session, client_id: str) -> CompletionCounts:
        """Count gating (high/medium) forms and those completed or further along."""
        total, completed = session.execute(
            select(
                func.count(IntakeFormRow.form_id),
                func.coalesce(
                    func.sum(case((IntakeFormRow.status.in_(COMPLETED_OR_LATER), 1), else_=0)), 0
                ),
            ).where(
                IntakeFormRow.client_id == client_id,
                IntakeFormRow.priority.in_(GATING_PRIORITIES),
            )
        ).one()
        return CompletionCounts(total_forms=int(total or 0), completed_forms=int(completed or 0))

    def count_forms(self, session: Session, client_id: str) -> int:
        return session.scalar(
            select(func.count(IntakeFormRow.form_id)).where(IntakeFormRow.client_id == client_id)
        ) or 0

    def count_ready(self, session: Session, client_id: str) -> int:
        """Forms a submit would move: those in completed status, any priority."""
        return session.scalar(
            select(func.count(IntakeFormRow.form_id)).where(
                IntakeFormRow.client_id == client_id,
                IntakeFormRow.status == FormStatus.COMPLETED.value,
            )
        ) or 0

    def latest_submission_row(self, session: Session, client_id: str) -> Optional[FormSubmissionRow]:
        return session.scalars(
            select(FormSubmissionRow)
            .where(FormSubmissionRow.client_id == client_id)
            .order_by(FormSubmissionRow.submitted_at.desc(), FormSubmissionRow.submission_id.desc())
            .limit(1)
        ).first()

    def submitted_form_types(self, session: Session, submission_id: int) -> List[str]:
        return list(
            session.scalars(
                select(IntakeFormRow.form_type)
                .where(IntakeFormRow.submission_id == submission_id)
                .order_by(IntakeFormRow.form_id)
            )
        )

    def insert_submission(self, session: Session, client_id: str, notes: str, actor: Actor) -> FormSubmissionRow:
        row = FormSubmissionRow(
            client_id=client_id,
            status=SubmissionStatus.SUBMITTED.value,
            submission_notes=notes or "",
            submitted_by=actor.id,
            submitted_at=self._clock(),
        )
        session.add(row)
        session.flush()
        return row

    def mark_submitted(self, session: Session, client_id: str, submission_id: int, actor: Actor) -> List[str]:
        """Move every completed form of the client to submitted."""
        rows = session.scalars(
            select(IntakeFormRow)
            .where(
                IntakeFormRow.client_id == client_id,
                IntakeFormRow.status == FormStatus.COMPLETED.value,
            )
            .with_for_update()
        ).all()
        now = self._clock()
        moved = []
        for row in rows:
            machine = FormStateMachine(form_key=f"{client_id}/{row.form_type}", state=FormStatus(row.status))
            machine.transition_to(FormStatus.SUBMITTED, TransitionSource.SUBMISSION)
            row.status = machine.state.value
            row.submission_id = submission_id
            row.updated_at = now
            row.updated_by = actor.id
            moved.append(row.form_type)
        session.flush()
        return moved

    def load_submission(self, session: Session, submission_id: int) -> FormSubmissionRow:
        row = session.get(FormSubmissionRow, submission_id, with_for_update=True)
        if row is None:
            raise NotFoundError("Submission not found", submissionID=submission_id)
        return row

    def mark_approved(self, session: Session, submission: FormSubmissionRow, actor: Actor) -> List[str]:
        """Move the submission's forms to approved (external review action)."""
        rows = session.scalars(
            select(IntakeFormRow)
            .where(
                IntakeFormRow.submission_id == submission.submission_id,
                IntakeFormRow.status == FormStatus.SUBMITTED.value,
            )
            .with_for_update()
        ).all()
        now = self._clock()
        approved = []
        for row in rows:
            machine = FormStateMachine(form_key=f"{row.client_id}/{row.form_type}", state=FormStatus(row.status))
            machine.transition_to(FormStatus.APPROVED, TransitionSource.REVIEW)
            row.status = machine.state.value
            # submission_id is only carried while a form is submitted
            row.submission_id = None
            row.updated_at = now
            row.updated_by = actor.id
            approved.append(row.form_type)
        submission.status = SubmissionStatus.APPROVED.value
        submission.approved_by = actor.id
        submission.approved_at = now
        session.flush()
        return approved

    def to_submission(self, row: FormSubmissionRow, form_types: Iterable[str] = ()) -> Submission:
        return self._to_submission(row, form_types)

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    def _load_row(self, session: Session, client_id: str, form_type: str, lock: bool = True) -> Optional[IntakeFormRow]:
        stmt = select(IntakeFormRow).where(
            IntakeFormRow.client_id == client_id,
            IntakeFormRow.form_type == form_type,
        )
        if lock:
            stmt = stmt.with_for_update()
        return session.scalars(stmt).first()

    def _encode(self, entry: CatalogEntry, content: Mapping[str, Any], strict: bool) -> Dict[str, Any]:
        """Split content into stored columns, JSON-encoding structured parts.

        With ``strict`` a non-encodable field fails validation; otherwise it
        is dropped and listed under ``"dropped"``.
        """
        checkboxes = content.get("checkboxes") if isinstance(content.get("checkboxes"), Mapping) else {}
        signature = content.get(entry.signature_field)
        form_data: Dict[str, Any] = {}
        dropped: List[str] = []
        errors: List[FieldError] = []

        for name, value in content.items():
            if name in ("checkboxes", entry.signature_field):
                continue
            try:
                encode_field(name, value)
            except SerializationError as exc:
                errors.append(exc.as_field_error())
                dropped.append(name)
                continue
            form_data[name] = value
        try:
            checkbox_json = encode_field("checkboxes", checkboxes)
        except SerializationError as exc:
            errors.append(exc.as_field_error())
            dropped.append("checkboxes")
            checkbox_json = "{}"

        if errors and strict:
            raise ValidationFailedError(errors)
        if errors:
            logger.warning("Dropped non-encodable fields: %s", dropped)

        return {
            "checkbox_data": checkbox_json,
            "signature": signature if isinstance(signature, str) else None,
            "form_data": json.dumps(form_data),
            "dropped": dropped,
        }

    def _write_row(
        self,
        session: Session,
        row: Optional[IntakeFormRow],
        entry: CatalogEntry,
        client_id: str,
        encoded: Mapping[str, Any],
        content: Mapping[str, Any],
        target: FormStatus,
        actor: Actor,
        source: TransitionSource = TransitionSource.SAVE,
    ) -> IntakeFormRow:
        now = self._clock()
        if row is None:
            row = IntakeFormRow(
                client_id=client_id,
                form_type=entry.key,
                created_at=now,
                created_by=actor.id,
            )
            session.add(row)
        else:
            FormStateMachine(form_key=f"{client_id}/{entry.key}", state=FormStatus(row.status)).transition_to(
                target, source
            )

        row.status = target.value
        row.priority = entry.priority.value
        row.checkbox_data = encoded["checkbox_data"]
        row.signature = encoded["signature"]
        row.form_data = encoded["form_data"]
        row.completion_percentage = compute_completion(entry, content)
        row.submission_id = None
        row.updated_at = now
        row.updated_by = actor.id

        if target.rank >= FormStatus.COMPLETED.rank:
            if row.completed_at is None:
                row.completed_at = now
                row.completed_by = actor.id
        else:
            row.completed_at = None
            row.completed_by = None
        session.flush()
        return row

    def _payload_of(self, row: IntakeFormRow, entry: CatalogEntry) -> Dict[str, Any]:
        payload: Dict[str, Any] = json.loads(row.form_data or "{}")
        checkboxes = json.loads(row.checkbox_data or "{}")
        if checkboxes or "checkboxes" in entry.required_fields:
            payload["checkboxes"] = checkboxes
        if row.signature is not None:
            payload[entry.signature_field] = row.signature
        return payload

    def _to_instance(self, row: IntakeFormRow, entry: CatalogEntry) -> FormInstance:
        return FormInstance(
            form_id=row.form_id,
            client_id=row.client_id,
            form_type=row.form_type,
            status=FormStatus(row.status),
            payload=self._payload_of(row, entry),
            completion_percentage=row.completion_percentage,
            priority=Priority(row.priority),
            submission_id=row.submission_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
            completed_at=row.completed_at,
            last_autosave_at=row.last_autosave_at,
            created_by=row.created_by,
            updated_by=row.updated_by,
            completed_by=row.completed_by,
        )

    def _to_submission(self, row: FormSubmissionRow, form_types: Iterable[str] = ()) -> Submission:
        return Submission(
            submission_id=row.submission_id,
            client_id=row.client_id,
            status=SubmissionStatus(row.status),
            submission_notes=row.submission_notes,
            submitted_by=row.submitted_by,
            submitted_at=row.submitted_at,
            approved_by=row.approved_by,
            approved_at=row.approved_at,
            form_types=tuple(form_types),
        )

    def _emit(
        self,
        event_type: EventType,
        client_id: str,
        actor: Actor,
        form_type: Optional[str],
        status: Optional[FormStatus],
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.emitter.emit(
            FormEvent.create(event_type, client_id=client_id, actor=actor,
                             form_type=form_type, status=status, payload=payload)
        )


def _content(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Payload minus request-control keys."""
    return {k: v for k, v in payload.items() if k not in CONTROL_KEYS}


__all__ = [
    "FormGateway",
    "SaveResult",
    "CompletionCounts",
]
