"""Form catalog: the fixed registry of intake form types.

Each form type maps to a CatalogEntry carrying its priority, required
fields, completion rule and the JSON Schema its payload is validated
against. The catalog is built once at import time and exposed read-only;
every other component resolves a form type through ``lookup`` before
acting on it.

Usage:
    >>> entry = lookup("orientation")
    >>> entry.priority
    <Priority.HIGH: 'high'>
    >>> compute_completion(entry, {"checkboxes": {"rights": True}})
    7
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from intakeforms.errors import InvalidFormTypeError
from intakeforms.types import CompletionRule, Priority

SIGNATURE_MAX_LENGTH = 200
ACKNOWLEDGEMENT_SIGNATURE_MIN_LENGTH = 2
CHECKBOX_SIGNATURE_MIN_LENGTH = 2


@dataclass(frozen=True)
class CatalogEntry:
    """Static definition of one form type.

    Attributes:
        key: Form type key used on the wire (e.g. "orientation")
        title: Display title
        priority: Submission-gating priority
        rule: Completion rule family
        required_fields: Payload fields that must be present for a valid save
        signature_field: Field whose non-empty value marks the form completed
        checkbox_total: Number of acknowledgement items (checkbox forms only)
        date_fields: Fields normalized to YYYY-MM-DD
        array_fields: Fields defaulted to [] when missing
        messages: Field-specific overrides for validation messages
        schema: Draft 7 JSON Schema for the sanitized payload
    """
    key: str
    title: str
    priority: Priority
    rule: CompletionRule
    required_fields: Tuple[str, ...]
    signature_field: str = "signature"
    checkbox_total: int = 0
    date_fields: Tuple[str, ...] = ()
    array_fields: Tuple[str, ...] = ()
    messages: Mapping[str, str] = field(default_factory=dict)
    schema: Mapping[str, Any] = field(default_factory=dict)

    @property
    def structured_fields(self) -> Tuple[str, ...]:
        """Fields stored as an encoded sub-document."""
        return self.array_fields + self.date_fields

    def to_dict(self) -> Dict[str, Any]:
        return {
            "formType": self.key,
            "title": self.title,
            "priority": self.priority.value,
            "completionRule": self.rule.value,
            "requiredFields": list(self.required_fields),
            "signatureField": self.signature_field,
        }


_CLIENT_ID_SCHEMA = {"type": "string", "minLength": 1, "pattern": r"\S"}


def _signature_schema(min_length: int) -> Dict[str, Any]:
    return {"type": "string", "minLength": min_length, "maxLength": SIGNATURE_MAX_LENGTH}


def _checkbox_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "clientID": _CLIENT_ID_SCHEMA,
            "checkboxes": {
                "type": "object",
                "minProperties": 1,
                "additionalProperties": {"type": "boolean"},
            },
            "signature": _signature_schema(CHECKBOX_SIGNATURE_MIN_LENGTH),
        },
        "required": ["clientID", "checkboxes", "signature"],
    }


def _acknowledgement_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "clientID": _CLIENT_ID_SCHEMA,
            "acknowledged": {"type": "boolean", "const": True},
            "signature": _signature_schema(ACKNOWLEDGEMENT_SIGNATURE_MIN_LENGTH),
        },
        "required": ["clientID", "acknowledged", "signature"],
    }


def _release_list_schema() -> Dict[str, Any]:
    return {
        "type": "array",
        "minItems": 1,
        "items": {
            "type": "object",
            "properties": {"value": {"type": "string", "minLength": 1}},
            "required": ["value"],
        },
    }


def _media_consent_schema(signature_field: str) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "clientID": _CLIENT_ID_SCHEMA,
            "releaseItems": _release_list_schema(),
            "releasePurposes": _release_list_schema(),
            "releasePhotoItems": {"type": "array"},
            signature_field: _signature_schema(1),
            "effectiveDate": {"type": "string"},
            "expireDate": {"type": "string"},
        },
        "required": ["clientID", "releaseItems", "releasePurposes", signature_field],
    }


def _simple_consent_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "clientID": _CLIENT_ID_SCHEMA,
            "signature": _signature_schema(1),
        },
        "required": ["clientID", "signature"],
    }


def _checkbox(key: str, title: str, priority: Priority, total: int) -> CatalogEntry:
    return CatalogEntry(
        key=key,
        title=title,
        priority=priority,
        rule=CompletionRule.CHECKBOX,
        required_fields=("checkboxes", "signature"),
        checkbox_total=total,
        messages={
            "checkboxes": "At least one checkbox must be acknowledged",
            "signature": "Electronic signature is required",
        },
        schema=_checkbox_schema(),
    )


def _acknowledgement(key: str, title: str, priority: Priority) -> CatalogEntry:
    return CatalogEntry(
        key=key,
        title=title,
        priority=priority,
        rule=CompletionRule.ACKNOWLEDGEMENT,
        required_fields=("acknowledged", "signature"),
        messages={
            "acknowledged": f"{title} must be acknowledged",
            "signature": "Signature is required",
        },
        schema=_acknowledgement_schema(),
    )


def _simple(key: str, title: str, priority: Priority) -> CatalogEntry:
    return CatalogEntry(
        key=key,
        title=title,
        priority=priority,
        rule=CompletionRule.SIMPLE_CONSENT,
        required_fields=("signature",),
        messages={"signature": "Signature is required"},
        schema=_simple_consent_schema(),
    )


def _media_consent(key: str, title: str, priority: Priority) -> CatalogEntry:
    signature_field = "releaseSignature"
    return CatalogEntry(
        key=key,
        title=title,
        priority=priority,
        rule=CompletionRule.MEDIA_CONSENT,
        required_fields=(
            "releaseItems",
            "releasePurposes",
            signature_field,
            "effectiveDate",
            "expireDate",
        ),
        signature_field=signature_field,
        date_fields=("effectiveDate", "expireDate", "revokedDate"),
        array_fields=("releaseItems", "releasePurposes", "releasePhotoItems"),
        messages={
            "releaseItems": "At least one release item must be selected",
            "releasePurposes": "At least one release purpose must be selected",
            signature_field: "Signature is required",
        },
        schema=_media_consent_schema(signature_field),
    )


# 13 checklist documents plus the two authorization acknowledgements.
ORIENTATION_CHECKBOX_TOTAL = 15

_ENTRIES: List[CatalogEntry] = [
    _checkbox("orientation", "Client Orientation", Priority.HIGH, ORIENTATION_CHECKBOX_TOTAL),
    _acknowledgement("clientRights", "Client Rights", Priority.HIGH),
    _simple("consentTreatment", "Consent for Treatment", Priority.HIGH),
    _simple("preScreen", "Supportive Housing Pre-Screen", Priority.MEDIUM),
    _acknowledgement("privacyPractice", "Notice of Privacy Practices", Priority.MEDIUM),
    _simple("lahmis", "HMIS Consent", Priority.MEDIUM),
    _simple("phiRelease", "Release of Protected Health Information", Priority.MEDIUM),
    _acknowledgement("residencePolicy", "Residence Policy", Priority.MEDIUM),
    _simple("authDisclosure", "Authorization for Disclosure", Priority.MEDIUM),
    _acknowledgement("termination", "Termination Policy", Priority.LOW),
    _simple("advDirective", "Advance Directive", Priority.LOW),
    _acknowledgement("grievances", "Grievance Procedure", Priority.MEDIUM),
    _simple("healthDisclosure", "Health Information Disclosure", Priority.LOW),
    _media_consent("consentPhoto", "Photo and Media Consent", Priority.MEDIUM),
    _simple("housingAgreement", "Interim Housing Agreement", Priority.HIGH),
]

CATALOG: Mapping[str, CatalogEntry] = MappingProxyType({e.key: e for e in _ENTRIES})
FORM_TYPES: Tuple[str, ...] = tuple(CATALOG)


def lookup(form_type: Any) -> CatalogEntry:
    """Resolve a form type key or raise InvalidFormTypeError.

    Raises:
        InvalidFormTypeError: If the key is not registered; the error lists
            every valid key.
    """
    entry = CATALOG.get(form_type) if isinstance(form_type, str) else None
    if entry is None:
        raise InvalidFormTypeError(form_type, FORM_TYPES)
    return entry


def is_registered(form_type: Any) -> bool:
    return isinstance(form_type, str) and form_type in CATALOG


def percent(done: int, total: int) -> int:
    """Whole percentage rounded half-up, clamped to [0, 100].

    Examples:
        >>> percent(13, 15)
        87
        >>> percent(1, 2)
        50
    """
    if total <= 0:
        return 0
    value = (Decimal(min(done, total)) * 100 / Decimal(total)).quantize(
        Decimal(1), rounding=ROUND_HALF_UP
    )
    return max(0, min(100, int(value)))


def has_signature(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def is_filled(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return value is not None


def _checkbox_completion(entry: CatalogEntry, payload: Mapping[str, Any]) -> int:
    checkboxes = payload.get("checkboxes")
    if not isinstance(checkboxes, Mapping):
        return 0
    checked = sum(1 for value in checkboxes.values() if value is True)
    return percent(checked, entry.checkbox_total)


def _acknowledgement_completion(entry: CatalogEntry, payload: Mapping[str, Any]) -> int:
    units = int(payload.get("acknowledged") is True) + int(
        has_signature(payload.get(entry.signature_field))
    )
    return percent(units, 2)


def _media_consent_completion(entry: CatalogEntry, payload: Mapping[str, Any]) -> int:
    filled = sum(1 for name in entry.required_fields if is_filled(payload.get(name)))
    return percent(filled, len(entry.required_fields))


def _simple_consent_completion(entry: CatalogEntry, payload: Mapping[str, Any]) -> int:
    return 100 if has_signature(payload.get(entry.signature_field)) else 0


COMPLETION_RULES: Mapping[CompletionRule, Callable[[CatalogEntry, Mapping[str, Any]], int]] = (
    MappingProxyType(
        {
            CompletionRule.CHECKBOX: _checkbox_completion,
            CompletionRule.ACKNOWLEDGEMENT: _acknowledgement_completion,
            CompletionRule.MEDIA_CONSENT: _media_consent_completion,
            CompletionRule.SIMPLE_CONSENT: _simple_consent_completion,
        }
    )
)


def compute_completion(entry: CatalogEntry, payload: Optional[Mapping[str, Any]]) -> int:
    """Derive the completion percentage of a sanitized payload."""
    return COMPLETION_RULES[entry.rule](entry, payload or {})


__all__ = [
    "CatalogEntry",
    "CATALOG",
    "FORM_TYPES",
    "lookup",
    "is_registered",
    "compute_completion",
    "percent",
    "has_signature",
]
