"""Unit tests for the validation engine.

Tests cover:
- Required fields per completion rule family
- Type mismatches and length constraints
- Media consent date parsing and ordering
- JSON-encodability of structured fields
- Error rendering (field -> message map)
"""

import pytest

from intakeforms.catalog import CATALOG
from intakeforms.errors import InvalidFormTypeError, SerializationError, ValidationFailedError
from intakeforms.types import FieldErrorCode
from intakeforms.validation import ValidationEngine, check_encodable, encode_field, engine_for, validate


def media_payload(**overrides):
    payload = {
        "clientID": "C-1",
        "releaseItems": [{"value": "photographs"}],
        "releasePurposes": [{"value": "newsletter"}],
        "releaseSignature": "Ann Lee",
        "effectiveDate": "2025-01-01",
        "expireDate": "2026-01-01",
    }
    payload.update(overrides)
    return payload


class TestEngines:
    def test_every_catalog_schema_is_valid(self):
        for entry in CATALOG.values():
            ValidationEngine(entry)

    def test_unknown_form_type(self):
        with pytest.raises(InvalidFormTypeError):
            engine_for("unknown")


class TestCommonRules:
    def test_client_id_required(self):
        result = validate("consentTreatment", {"signature": "Ann Lee"})

        assert not result.is_valid
        assert result.errors_by_field["clientID"] == "Client ID is required"

    def test_blank_client_id(self):
        result = validate("consentTreatment", {"clientID": "   ", "signature": "Ann Lee"})
        assert "clientID" in result.errors_by_field

    def test_signature_too_long(self):
        result = validate("consentTreatment", {"clientID": "C-1", "signature": "x" * 201})

        assert not result.is_valid
        error = result.errors[0]
        assert error.path == "signature"
        assert error.code == FieldErrorCode.TOO_LONG


class TestCheckboxRule:
    def test_valid(self):
        result = validate("orientation", {"clientID": "C-1", "checkboxes": {"a": True}, "signature": "Ann Lee"})
        assert result.is_valid

    def test_missing_fields(self):
        result = validate("orientation", {"clientID": "C-1"})

        assert result.errors_by_field == {
            "checkboxes": "At least one checkbox must be acknowledged",
            "signature": "Electronic signature is required",
        }

    def test_empty_checkbox_map(self):
        result = validate("orientation", {"clientID": "C-1", "checkboxes": {}, "signature": "Ann Lee"})
        assert result.errors_by_field["checkboxes"] == "At least one checkbox must be acknowledged"

    def test_non_boolean_checkbox(self):
        result = validate(
            "orientation", {"clientID": "C-1", "checkboxes": {"a": "maybe"}, "signature": "Ann Lee"}
        )
        assert "checkboxes" in result.errors_by_field

    def test_signature_minimum_length(self):
        result = validate("orientation", {"clientID": "C-1", "checkboxes": {"a": True}, "signature": "A"})
        assert result.errors_by_field["signature"] == "signature must be at least 2 characters"


class TestAcknowledgementRule:
    def test_must_be_acknowledged(self):
        result = validate("clientRights", {"clientID": "C-1", "acknowledged": False, "signature": "Ann Lee"})

        assert result.errors_by_field == {"acknowledged": "Client Rights must be acknowledged"}
        assert result.errors[0].code == FieldErrorCode.INVALID_VALUE

    def test_missing_signature(self):
        result = validate("grievances", {"clientID": "C-1", "acknowledged": True})
        assert result.errors_by_field == {"signature": "Signature is required"}


class TestSimpleConsentRule:
    def test_valid(self):
        assert validate("lahmis", {"clientID": "C-1", "signature": "Ann Lee"}).is_valid

    def test_missing_signature_message(self):
        result = validate("consentTreatment", {"clientID": "C-1"})
        assert result.errors_by_field == {"signature": "Signature is required"}

    def test_blank_signature(self):
        result = validate("consentTreatment", {"clientID": "C-1", "signature": ""})
        assert result.errors_by_field["signature"] == "Signature is required"


class TestMediaConsentRule:
    def test_valid(self):
        assert validate("consentPhoto", media_payload()).is_valid

    def test_release_lists_required(self):
        result = validate("consentPhoto", media_payload(releaseItems=[], releasePurposes=[]))

        assert result.errors_by_field["releaseItems"] == "At least one release item must be selected"
        assert result.errors_by_field["releasePurposes"] == "At least one release purpose must be selected"

    def test_release_entries_need_value(self):
        result = validate("consentPhoto", media_payload(releaseItems=[{"label": "x"}]))

        assert result.errors[0].path == "releaseItems"
        assert result.errors[0].code == FieldErrorCode.REQUIRED

    def test_expire_must_follow_effective(self):
        result = validate("consentPhoto", media_payload(expireDate="2024-12-31"))

        assert result.errors_by_field == {"expireDate": "Expiration date must be after effective date"}

    def test_same_day_expiry_rejected(self):
        result = validate("consentPhoto", media_payload(expireDate="2025-01-01"))
        assert "expireDate" in result.errors_by_field

    def test_invalid_date(self):
        result = validate("consentPhoto", media_payload(effectiveDate="someday"))

        assert result.errors_by_field["effectiveDate"].startswith("Invalid date for effectiveDate")
        assert result.errors[0].code == FieldErrorCode.INVALID_FORMAT

    def test_partial_date_is_invalid(self):
        result = validate("consentPhoto", media_payload(expireDate="2026"))

        assert result.errors_by_field["expireDate"].startswith("Invalid date for expireDate")

    def test_signature_field_is_release_signature(self):
        payload = media_payload()
        del payload["releaseSignature"]
        result = validate("consentPhoto", payload)
        assert result.errors_by_field == {"releaseSignature": "Signature is required"}


class TestEncoding:
    def test_encode_field(self):
        assert encode_field("releaseItems", [{"value": "a"}]) == '[{"value": "a"}]'

    def test_encode_field_rejects_sets(self):
        with pytest.raises(SerializationError) as exc_info:
            encode_field("releaseItems", {1, 2})
        assert exc_info.value.field == "releaseItems"

    def test_check_encodable_reports_field(self):
        errors = check_encodable({"releaseItems": {object()}, "other": 1}, ["releaseItems", "missing"])

        assert len(errors) == 1
        assert errors[0].code == FieldErrorCode.NOT_ENCODABLE

    def test_non_encodable_structured_field_fails_validation(self):
        result = validate("consentPhoto", media_payload(releasePhotoItems=[float("nan")]))
        assert result.errors_by_field["releasePhotoItems"] == "releasePhotoItems must be JSON-encodable"


class TestResultRendering:
    def test_raise_for_errors(self):
        result = validate("consentTreatment", {"clientID": "C-1"})

        with pytest.raises(ValidationFailedError) as exc_info:
            result.raise_for_errors()

        body = exc_info.value.to_dict()
        assert exc_info.value.status_code == 422
        assert body["errors"] == {"signature": "Signature is required"}
        assert body["fields"][0]["code"] == "required"

    def test_to_dict(self):
        data = validate("consentTreatment", {"clientID": "C-1", "signature": "A"}).to_dict()
        assert data == {"isValid": True, "errors": {}, "fields": []}
