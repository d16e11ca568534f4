"""Unit tests for the form catalog and completion rules."""

import pytest

from intakeforms.catalog import (
    CATALOG,
    FORM_TYPES,
    compute_completion,
    is_registered,
    lookup,
    percent,
)
from intakeforms.errors import InvalidFormTypeError
from intakeforms.types import CompletionRule, Priority


class TestRegistry:
    """Catalog contents and lookup."""

    def test_catalog_has_fifteen_form_types(self):
        assert len(CATALOG) == 15
        assert len(FORM_TYPES) == 15

    def test_priorities(self):
        assert lookup("orientation").priority == Priority.HIGH
        assert lookup("housingAgreement").priority == Priority.HIGH
        assert lookup("consentPhoto").priority == Priority.MEDIUM
        assert lookup("termination").priority == Priority.LOW
        assert lookup("advDirective").priority == Priority.LOW

    def test_lookup_unknown_type_lists_valid_types(self):
        with pytest.raises(InvalidFormTypeError) as exc_info:
            lookup("notAForm")

        error = exc_info.value
        assert error.status_code == 400
        assert set(error.to_dict()["validFormTypes"]) == set(FORM_TYPES)

    def test_lookup_rejects_non_string(self):
        with pytest.raises(InvalidFormTypeError):
            lookup(None)

    def test_is_registered(self):
        assert is_registered("clientRights")
        assert not is_registered("ClientRights")
        assert not is_registered(42)

    def test_catalog_is_read_only(self):
        with pytest.raises(TypeError):
            CATALOG["extra"] = CATALOG["orientation"]  # type: ignore[index]

    def test_media_consent_uses_release_signature(self):
        entry = lookup("consentPhoto")
        assert entry.rule == CompletionRule.MEDIA_CONSENT
        assert entry.signature_field == "releaseSignature"
        assert "expireDate" in entry.date_fields


class TestPercent:
    """Half-up whole-number rounding."""

    @pytest.mark.parametrize(
        "done,total,expected",
        [(13, 15, 87), (1, 2, 50), (1, 15, 7), (0, 15, 0), (15, 15, 100), (1, 8, 13), (20, 15, 100)],
    )
    def test_rounding(self, done, total, expected):
        assert percent(done, total) == expected

    def test_zero_total(self):
        assert percent(3, 0) == 0


class TestCompletionRules:
    """Each rule family derives completion from the payload only."""

    def test_checkbox_thirteen_of_fifteen(self):
        entry = lookup("orientation")
        checkboxes = {f"item{i}": True for i in range(13)}
        checkboxes.update({"item13": False, "item14": False})

        assert compute_completion(entry, {"checkboxes": checkboxes, "signature": "Ann Lee"}) == 87

    def test_checkbox_ignores_signature(self):
        entry = lookup("orientation")
        assert compute_completion(entry, {"checkboxes": {}, "signature": "Ann Lee"}) == 0

    def test_checkbox_counts_only_true(self):
        entry = lookup("orientation")
        assert compute_completion(entry, {"checkboxes": {"a": True, "b": "yes", "c": 1}}) == 7

    def test_acknowledgement_halves(self):
        entry = lookup("clientRights")
        assert compute_completion(entry, {}) == 0
        assert compute_completion(entry, {"acknowledged": True}) == 50
        assert compute_completion(entry, {"acknowledged": True, "signature": "Ann Lee"}) == 100

    def test_simple_consent_is_binary(self):
        entry = lookup("consentTreatment")
        assert compute_completion(entry, {"signature": "   "}) == 0
        assert compute_completion(entry, {"signature": "Ann Lee"}) == 100

    def test_media_consent_counts_required_fields(self):
        entry = lookup("consentPhoto")
        payload = {
            "releaseItems": [{"value": "photographs"}],
            "releasePurposes": [],
            "releaseSignature": "Ann Lee",
        }
        # 2 of 5 required fields filled
        assert compute_completion(entry, payload) == 40

    def test_missing_payload(self):
        assert compute_completion(lookup("grievances"), None) == 0
