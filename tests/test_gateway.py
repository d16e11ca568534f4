"""Tests for the persistence gateway against in-memory SQLite.

Tests cover:
- Explicit saves (create/update, validation, unknown client/type)
- Completion determinism and round trips
- Lifecycle conflicts on finalized forms
- Autosave semantics (partial merge, never completes, never downgrade, no-op when finalized)
- Bulk saves (type filtering, validation-gated completion, whole-batch rollback)
- Infra error translation
"""

import pytest

from intakeforms.catalog import FORM_TYPES
from intakeforms.config import Settings
from intakeforms.db import build_engine, build_session_factory
from intakeforms.errors import (
    ConflictError,
    InfraError,
    InvalidFormTypeError,
    NotFoundError,
    SubmissionIncompleteError,
    ValidationFailedError,
)
from intakeforms.gateway import FormGateway
from intakeforms.types import EventType, FormStatus, InfraCategory, Priority

THIRTEEN_OF_FIFTEEN = {f"item{i}": i < 13 for i in range(15)}


class TestClients:
    def test_register_is_idempotent(self, gateway):
        assert gateway.register_client("C-2") is True
        assert gateway.register_client("C-2") is False
        assert gateway.client_exists("C-2")

    def test_unknown_client(self, gateway):
        assert not gateway.client_exists("nobody")


class TestSave:
    def test_create_then_update(self, gateway, client_id, actor):
        first = gateway.save(client_id, "consentTreatment", {"signature": "Ann Lee"}, actor=actor)
        second = gateway.save(client_id, "consentTreatment", {"signature": "Ann B. Lee"}, actor=actor)

        assert first.created is True
        assert second.created is False
        assert second.instance.form_id == first.instance.form_id
        assert second.instance.payload["signature"] == "Ann B. Lee"

    def test_signed_save_completes(self, gateway, client_id, actor):
        instance = gateway.upsert(client_id, "consentTreatment", {"signature": "  Ann Lee "}, actor=actor)

        assert instance.status == FormStatus.COMPLETED
        assert instance.completion_percentage == 100
        assert instance.priority == Priority.HIGH
        assert instance.payload == {"signature": "Ann Lee"}
        assert instance.completed_by == actor.id
        assert instance.created_by == actor.id
        assert instance.completed_at is not None
        assert instance.submission_id is None

    def test_checkbox_completion_round_trip(self, gateway, client_id):
        payload = {"checkboxes": THIRTEEN_OF_FIFTEEN, "signature": "Ann Lee"}

        saved = gateway.upsert(client_id, "orientation", payload)
        reloaded = gateway.get(client_id, "orientation")

        assert saved.completion_percentage == 87
        assert reloaded.completion_percentage == 87
        assert reloaded.payload["checkboxes"] == THIRTEEN_OF_FIFTEEN
        assert reloaded.status == FormStatus.COMPLETED

    def test_reported_percentage_is_not_trusted(self, gateway, client_id):
        instance = gateway.upsert(
            client_id, "consentTreatment", {"signature": "Ann Lee", "completionPercentage": 3}
        )
        assert instance.completion_percentage == 100
        assert "completionPercentage" not in instance.payload

    def test_default_actor_is_system(self, gateway, client_id):
        instance = gateway.upsert(client_id, "lahmis", {"signature": "Ann Lee"})
        assert instance.created_by == "System"

    def test_structured_fields_round_trip(self, gateway, client_id, signed_payload):
        payload = signed_payload("consentPhoto")
        payload["effectiveDate"] = "01/01/2025"
        payload["notes"] = "No social media"

        gateway.upsert(client_id, "consentPhoto", payload)
        reloaded = gateway.get(client_id, "consentPhoto")

        assert reloaded.payload["effectiveDate"] == "2025-01-01"
        assert reloaded.payload["releaseItems"] == [{"value": "photographs"}]
        assert reloaded.payload["releasePhotoItems"] == []
        assert reloaded.payload["releaseSignature"] == "Ann Lee"
        assert reloaded.payload["notes"] == "No social media"
        assert reloaded.completion_percentage == 100

    def test_validation_failure(self, gateway, client_id):
        with pytest.raises(ValidationFailedError) as exc_info:
            gateway.upsert(client_id, "consentTreatment", {})

        assert exc_info.value.errors == {"signature": "Signature is required"}
        with pytest.raises(NotFoundError):
            gateway.get(client_id, "consentTreatment")

    def test_path_client_id_wins(self, gateway, client_id):
        instance = gateway.upsert(client_id, "lahmis", {"clientID": "other", "signature": "Ann Lee"})
        assert instance.client_id == client_id

    def test_non_encodable_field(self, gateway, client_id):
        with pytest.raises(ValidationFailedError) as exc_info:
            gateway.upsert(client_id, "lahmis", {"signature": "Ann Lee", "extra": {1, 2}})
        assert "extra" in exc_info.value.errors

    def test_unknown_client(self, gateway):
        with pytest.raises(NotFoundError) as exc_info:
            gateway.upsert("nobody", "lahmis", {"signature": "Ann Lee"})
        assert exc_info.value.to_dict()["clientID"] == "nobody"

    def test_unknown_form_type(self, gateway, client_id):
        with pytest.raises(InvalidFormTypeError) as exc_info:
            gateway.upsert(client_id, "bogus", {"signature": "Ann Lee"})
        assert exc_info.value.valid_types == list(FORM_TYPES)

    def test_get_missing_form(self, gateway, client_id):
        with pytest.raises(NotFoundError):
            gateway.get(client_id, "grievances")

    def test_emits_saved_event(self, gateway, emitter, client_id):
        events = []
        emitter.on(EventType.FORM_SAVED, events.append)

        gateway.upsert(client_id, "lahmis", {"signature": "Ann Lee"})

        assert len(events) == 1
        assert events[0].form_type == "lahmis"
        assert events[0].payload == {"created": True, "completionPercentage": 100}


class TestFinalizedForms:
    @pytest.fixture
    def submitted(self, gateway, orchestrator, client_id, signed_payload):
        for form_type in ("orientation", "clientRights", "consentTreatment", "housingAgreement"):
            gateway.upsert(client_id, form_type, signed_payload(form_type))
        orchestrator.submit(client_id, "ready")
        return gateway.get(client_id, "consentTreatment")

    def test_setup_is_submitted(self, submitted):
        assert submitted.status == FormStatus.SUBMITTED
        assert submitted.submission_id is not None

    def test_in_progress_request_conflicts(self, gateway, client_id, submitted, emitter):
        conflicts = []
        emitter.on(EventType.FORM_CONFLICT, conflicts.append)

        with pytest.raises(ConflictError) as exc_info:
            gateway.upsert(client_id, "consentTreatment", {"signature": "Changed", "status": "in_progress"})

        assert exc_info.value.current_status == FormStatus.SUBMITTED
        assert len(conflicts) == 1
        assert gateway.get(client_id, "consentTreatment").payload["signature"] == "Ann Lee"

    def test_plain_save_conflicts(self, gateway, client_id, submitted):
        with pytest.raises(ConflictError):
            gateway.upsert(client_id, "consentTreatment", {"signature": "Changed"})

    def test_same_status_is_idempotent(self, gateway, client_id, submitted):
        result = gateway.save(client_id, "consentTreatment", {"signature": "Changed", "status": "submitted"})

        assert result.changed is False
        assert result.instance.status == FormStatus.SUBMITTED
        assert result.instance.payload["signature"] == "Ann Lee"
        assert result.instance.submission_id == submitted.submission_id

    def test_autosave_is_ignored(self, gateway, client_id, submitted):
        gateway.autosave_upsert(client_id, "consentTreatment", {"signature": "Changed"})

        stored = gateway.get(client_id, "consentTreatment")
        assert stored.payload["signature"] == "Ann Lee"
        assert stored.status == FormStatus.SUBMITTED
        assert stored.last_autosave_at is None


class TestAutosave:
    def test_creates_without_validation(self, gateway, client_id):
        gateway.autosave_upsert(client_id, "orientation", {"checkboxes": {"a": True}})

        stored = gateway.get(client_id, "orientation")
        assert stored.status == FormStatus.IN_PROGRESS
        assert stored.completion_percentage == 7
        assert stored.last_autosave_at is not None

    def test_reported_percentage_is_clamped_then_recomputed(self, gateway, client_id):
        gateway.autosave_upsert(client_id, "lahmis", {"notes": "call back", "completionPercentage": 150})
        assert gateway.get(client_id, "lahmis").completion_percentage == 0

    def test_merges_partial_payload(self, gateway, client_id):
        gateway.autosave_upsert(client_id, "clientRights", {"acknowledged": True})
        gateway.autosave_upsert(client_id, "clientRights", {"signature": "Ann Lee"})

        stored = gateway.get(client_id, "clientRights")
        assert stored.payload == {"acknowledged": True, "signature": "Ann Lee"}
        assert stored.status == FormStatus.IN_PROGRESS
        assert stored.completion_percentage == 100
        assert stored.completed_at is None

    def test_signed_invalid_payload_does_not_complete(self, gateway, orchestrator, client_id):
        gateway.autosave_upsert(client_id, "clientRights", {"acknowledged": False, "signature": "A"})

        assert gateway.get(client_id, "clientRights").status == FormStatus.IN_PROGRESS
        with pytest.raises(SubmissionIncompleteError):
            orchestrator.submit(client_id)

    def test_validated_save_completes_autosaved_form(self, gateway, client_id):
        gateway.autosave_upsert(client_id, "clientRights", {"acknowledged": True, "signature": "Ann Lee"})
        gateway.upsert(client_id, "clientRights", {"acknowledged": True, "signature": "Ann Lee"})

        assert gateway.get(client_id, "clientRights").status == FormStatus.COMPLETED

    def test_never_downgrades_completed(self, gateway, client_id):
        gateway.upsert(client_id, "consentTreatment", {"signature": "Ann Lee"})
        gateway.autosave_upsert(client_id, "consentTreatment", {"signature": ""})

        stored = gateway.get(client_id, "consentTreatment")
        assert stored.status == FormStatus.COMPLETED
        assert stored.completed_at is not None

    def test_drops_non_encodable_fields(self, gateway, client_id):
        gateway.autosave_upsert(client_id, "lahmis", {"notes": "ok", "bad": {1, 2}})

        stored = gateway.get(client_id, "lahmis")
        assert stored.payload == {"notes": "ok"}

    def test_unknown_client_is_skipped(self, gateway):
        gateway.autosave_upsert("nobody", "lahmis", {"notes": "x"})
        assert not gateway.client_exists("nobody")

    def test_unknown_form_type_raises(self, gateway, client_id):
        with pytest.raises(InvalidFormTypeError):
            gateway.autosave_upsert(client_id, "bogus", {})

    def test_emits_autosaved_event(self, gateway, emitter, client_id):
        events = []
        emitter.on_any(events.append)

        gateway.autosave_upsert(client_id, "lahmis", {"notes": "x"})

        assert [e.type for e in events] == [EventType.FORM_AUTOSAVED]
        assert events[0].status == FormStatus.IN_PROGRESS


class TestBulkUpsert:
    def test_unknown_types_are_filtered(self, gateway, client_id):
        saved = gateway.bulk_upsert(
            client_id,
            [
                {"formType": "consentTreatment", "payload": {"signature": "Ann Lee"}},
                {"formType": "notAForm", "payload": {"signature": "Ann Lee"}},
                {"formType": "clientRights", "payload": {"acknowledged": True}},
            ],
        )

        assert [f.form_type for f in saved] == ["consentTreatment", "clientRights"]
        assert saved[0].status == FormStatus.COMPLETED
        assert saved[1].status == FormStatus.IN_PROGRESS
        assert len(gateway.list_forms(client_id)) == 2

    def test_flat_entries(self, gateway, client_id):
        saved = gateway.bulk_upsert(client_id, [{"formType": "lahmis", "signature": "Ann Lee"}])
        assert saved[0].payload == {"signature": "Ann Lee"}

    def test_nothing_to_save(self, gateway, client_id):
        assert gateway.bulk_upsert(client_id, [{"formType": "bogus"}]) == []

    def test_unknown_client(self, gateway):
        with pytest.raises(NotFoundError):
            gateway.bulk_upsert("nobody", [{"formType": "lahmis", "payload": {}}])

    def test_duplicate_type_last_wins(self, gateway, client_id):
        gateway.bulk_upsert(
            client_id,
            [
                {"formType": "lahmis", "payload": {"notes": "first"}},
                {"formType": "lahmis", "payload": {"notes": "second"}},
            ],
        )
        assert gateway.get(client_id, "lahmis").payload == {"notes": "second"}

    def test_conflict_rolls_back_whole_batch(self, gateway, orchestrator, client_id, signed_payload):
        for form_type in ("orientation", "clientRights", "consentTreatment", "housingAgreement"):
            gateway.upsert(client_id, form_type, signed_payload(form_type))
        orchestrator.submit(client_id)

        with pytest.raises(ConflictError):
            gateway.bulk_upsert(
                client_id,
                [
                    {"formType": "lahmis", "payload": {"signature": "Ann Lee"}},
                    {"formType": "consentTreatment", "payload": {"signature": "Changed"}},
                ],
            )

        with pytest.raises(NotFoundError):
            gateway.get(client_id, "lahmis")
        assert gateway.get(client_id, "consentTreatment").payload["signature"] == "Ann Lee"

    def test_invalid_signed_entry_does_not_complete(self, gateway, orchestrator, client_id):
        saved = gateway.bulk_upsert(
            client_id,
            [{"formType": "orientation", "payload": {"checkboxes": {}, "signature": "x"}}],
        )

        assert saved[0].status == FormStatus.IN_PROGRESS
        assert saved[0].completed_at is None
        with pytest.raises(SubmissionIncompleteError):
            orchestrator.submit(client_id)

    def test_invalid_entry_reopens_completed_form(self, gateway, client_id, signed_payload):
        gateway.upsert(client_id, "orientation", signed_payload("orientation"))
        saved = gateway.bulk_upsert(
            client_id,
            [{"formType": "orientation", "payload": {"checkboxes": {}, "signature": "x"}}],
        )

        assert saved[0].status == FormStatus.IN_PROGRESS

    def test_falling_below_completed_clears_stamp(self, gateway, client_id):
        gateway.upsert(client_id, "lahmis", {"signature": "Ann Lee"})
        saved = gateway.bulk_upsert(client_id, [{"formType": "lahmis", "payload": {"notes": "redo"}}])

        assert saved[0].status == FormStatus.IN_PROGRESS
        assert saved[0].completed_at is None
        assert saved[0].completed_by is None

    def test_emits_single_event(self, gateway, emitter, client_id):
        events = []
        emitter.on_any(events.append)

        gateway.bulk_upsert(
            client_id,
            [{"formType": "lahmis", "payload": {}}, {"formType": "bogus", "payload": {}}],
        )

        assert [e.type for e in events] == [EventType.FORMS_BULK_SAVED]
        assert events[0].payload == {"formTypes": ["lahmis"], "skipped": 1}


class TestListForms:
    def test_ordered_by_priority(self, gateway, client_id):
        gateway.autosave_upsert(client_id, "termination", {"acknowledged": True})
        gateway.autosave_upsert(client_id, "preScreen", {"notes": "x"})
        gateway.autosave_upsert(client_id, "orientation", {"checkboxes": {"a": True}})

        types = [f.form_type for f in gateway.list_forms(client_id)]
        assert types == ["orientation", "preScreen", "termination"]

    def test_latest_submission_none(self, gateway, client_id):
        assert gateway.latest_submission(client_id) is None


class TestInfraErrors:
    def test_missing_tables_surface_as_infra_error(self):
        engine = build_engine(Settings(DATABASE_URL="sqlite://"))
        gateway = FormGateway(build_session_factory(engine))

        with pytest.raises(InfraError) as exc_info:
            gateway.client_exists("C-1")

        error = exc_info.value
        assert error.category == InfraCategory.CONNECTION
        assert error.status_code == 503
        assert "details" not in error.to_dict()
        assert "no such table" in error.to_dict(include_details=True)["details"]

    def test_write_failure_rolls_back(self, gateway, client_id, monkeypatch):
        from sqlalchemy.exc import OperationalError

        def fail(*args, **kwargs):
            raise OperationalError("UPDATE intake_forms", {}, Exception("database is locked"))

        monkeypatch.setattr(gateway, "_write_row", fail)

        with pytest.raises(InfraError) as exc_info:
            gateway.upsert(client_id, "lahmis", {"signature": "Ann Lee"})

        assert exc_info.value.category == InfraCategory.TIMEOUT
        assert exc_info.value.status_code == 408
        with pytest.raises(NotFoundError):
            gateway.get(client_id, "lahmis")
