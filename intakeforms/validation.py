"""Payload validation engine for intake forms.

Validates a sanitized payload against its form type's rules and produces
structured, field-level results. Validation is independent of storage.

Each completion rule family has its own validator, registered once in
``RULE_VALIDATORS``. Structural checks come from the catalog entry's JSON
Schema (jsonschema Draft 7), translated into FieldError records; checks
JSON Schema cannot express (trimmed lengths, date parsing and ordering,
JSON-encodability) run in Python afterwards.
"""

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import jsonschema
from jsonschema import Draft7Validator

from intakeforms.catalog import CATALOG, CatalogEntry, lookup
from intakeforms.errors import FieldError, SerializationError, ValidationFailedError, errors_by_field
from intakeforms.sanitization import parse_full_date
from intakeforms.types import CompletionRule, FieldErrorCode


@dataclass(frozen=True)
class ValidationResult:
    """Result of validating a payload.

    Attributes:
        is_valid: Whether the payload passed all checks
        errors: Field-level errors (empty if valid)
        data: The payload that was validated

    Examples:
        >>> result = validate("consentTreatment", {"clientID": "C-1", "signature": "Ann Lee"})
        >>> result.is_valid
        True
        >>> validate("consentTreatment", {"clientID": "C-1"}).errors_by_field
        {'signature': 'Signature is required'}
    """
    is_valid: bool
    errors: List[FieldError]
    data: Optional[Dict[str, Any]] = None

    @property
    def errors_by_field(self) -> Dict[str, str]:
        return errors_by_field(self.errors)

    def raise_for_errors(self) -> None:
        if not self.is_valid:
            raise ValidationFailedError(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        return {
            "isValid": self.is_valid,
            "errors": self.errors_by_field,
            "fields": [e.to_dict() for e in self.errors],
        }


class ValidationEngine:
    """Validator for one catalog entry.

    Wraps a Draft 7 validator built from the entry's schema and applies the
    rule family's additional checks.

    Attributes:
        entry: The catalog entry being validated against
        validator: The underlying jsonschema validator instance
    """

    def __init__(self, entry: CatalogEntry) -> None:
        """Initialize the engine.

        Raises:
            jsonschema.SchemaError: If the entry's schema is itself invalid
        """
        self.entry = entry
        Draft7Validator.check_schema(entry.schema)
        self.validator = Draft7Validator(entry.schema)

    def validate(self, data: Mapping[str, Any]) -> ValidationResult:
        """Validate a sanitized payload.

        Returns:
            ValidationResult with is_valid flag and the field errors found
        """
        payload = dict(data)
        field_errors: List[FieldError] = []

        client_id = payload.get("clientID")
        if not isinstance(client_id, str) or not client_id.strip():
            field_errors.append(
                FieldError(
                    path="clientID",
                    code=FieldErrorCode.REQUIRED,
                    message="Client ID is required",
                    received=client_id,
                )
            )

        for error in sorted(self.validator.iter_errors(payload), key=_error_sort_key):
            translated = self._translate_error(error)
            if translated.path == "clientID":
                continue
            field_errors.append(translated)

        rule_validator = RULE_VALIDATORS[self.entry.rule]
        field_errors.extend(rule_validator(self.entry, payload))
        field_errors.extend(check_encodable(payload, self.entry.structured_fields + ("checkboxes",)))

        return ValidationResult(
            is_valid=not field_errors,
            errors=_dedupe(field_errors),
            data=payload,
        )

    def _translate_error(self, error: jsonschema.ValidationError) -> FieldError:
        """Translate a jsonschema ValidationError into a FieldError.

        Error mapping:
            - 'required' property errors -> REQUIRED
            - 'type' errors -> INVALID_TYPE
            - 'const' / 'enum' errors -> INVALID_VALUE
            - 'minLength' / 'minItems' / 'minProperties' errors -> TOO_SHORT
            - 'maxLength' errors -> TOO_LONG
            - Other constraint errors -> CUSTOM
        """
        # Nested failures (e.g. releaseItems[0].value) are reported on the top-level field
        path = str(error.path[0]) if error.path else ""

        if error.validator == "required":
            missing_prop = error.message.split("'")[1] if "'" in error.message else "field"
            if path:
                return FieldError(
                    path=path,
                    code=FieldErrorCode.REQUIRED,
                    message=f"Every {path} entry must include '{missing_prop}'",
                    expected=f"objects with '{missing_prop}'",
                )
            return FieldError(
                path=missing_prop,
                code=FieldErrorCode.REQUIRED,
                message=self._message(missing_prop, f"{missing_prop} is required"),
                expected="required field",
            )

        if error.validator == "type":
            expected_type = error.validator_value
            received_type = type(error.instance).__name__
            return FieldError(
                path=path,
                code=FieldErrorCode.INVALID_TYPE,
                message=f"{path} has invalid type. Expected {expected_type}, got {received_type}",
                expected=expected_type,
                received=received_type,
            )

        if error.validator in ("enum", "const"):
            return FieldError(
                path=path,
                code=FieldErrorCode.INVALID_VALUE,
                message=self._message(path, f"{path} has invalid value"),
                expected=error.validator_value,
                received=error.instance,
            )

        if error.validator in ("minLength", "minItems", "minProperties"):
            minimum = error.validator_value
            if isinstance(error.instance, str) and minimum > 1:
                message = f"{path} must be at least {minimum} characters"
            else:
                message = self._message(path, f"{path} is too short. Minimum: {minimum}")
            return FieldError(
                path=path,
                code=FieldErrorCode.TOO_SHORT,
                message=message,
                expected=f"minimum {minimum}",
                received=error.instance,
            )

        if error.validator == "maxLength":
            maximum = error.validator_value
            return FieldError(
                path=path,
                code=FieldErrorCode.TOO_LONG,
                message=f"{path} must be a maximum {maximum} characters",
                expected=f"maximum {maximum} characters",
                received=f"{len(error.instance)} characters",
            )

        if error.validator == "pattern":
            return FieldError(
                path=path,
                code=FieldErrorCode.REQUIRED,
                message=self._message(path, f"{path} must not be blank"),
            )

        return FieldError(
            path=path,
            code=FieldErrorCode.CUSTOM,
            message=f"{path} validation failed: {error.message}",
            expected=error.validator_value,
            received=error.instance,
        )

    def _message(self, path: str, default: str) -> str:
        return self.entry.messages.get(path, default)


def _error_sort_key(error: jsonschema.ValidationError) -> str:
    return ".".join(str(p) for p in error.path)


def _dedupe(field_errors: List[FieldError]) -> List[FieldError]:
    seen = set()
    result: List[FieldError] = []
    for err in field_errors:
        key = (err.path, err.code)
        if key not in seen:
            seen.add(key)
            result.append(err)
    return result


def _checkbox_rules(entry: CatalogEntry, payload: Mapping[str, Any]) -> List[FieldError]:
    checkboxes = payload.get("checkboxes")
    if isinstance(checkboxes, Mapping) and any(not isinstance(v, bool) for v in checkboxes.values()):
        return [
            FieldError(
                path="checkboxes",
                code=FieldErrorCode.INVALID_TYPE,
                message="All checkbox values must be boolean",
                expected="boolean",
            )
        ]
    return []


def _acknowledgement_rules(entry: CatalogEntry, payload: Mapping[str, Any]) -> List[FieldError]:
    return []


def _media_consent_rules(entry: CatalogEntry, payload: Mapping[str, Any]) -> List[FieldError]:
    errors: List[FieldError] = []
    parsed = {}
    for name in entry.date_fields:
        if name not in payload or payload[name] in (None, ""):
            continue
        value = parse_full_date(payload[name])
        if value is None:
            errors.append(
                FieldError(
                    path=name,
                    code=FieldErrorCode.INVALID_FORMAT,
                    message=f"Invalid date for {name}. Expected YYYY-MM-DD",
                    expected="YYYY-MM-DD",
                    received=payload[name],
                )
            )
        else:
            parsed[name] = value

    effective = parsed.get("effectiveDate")
    expire = parsed.get("expireDate")
    if effective is not None and expire is not None and expire <= effective:
        errors.append(
            FieldError(
                path="expireDate",
                code=FieldErrorCode.INVALID_VALUE,
                message="Expiration date must be after effective date",
                expected=f"after {effective.isoformat()}",
                received=expire.isoformat(),
            )
        )
    return errors


def _simple_consent_rules(entry: CatalogEntry, payload: Mapping[str, Any]) -> List[FieldError]:
    signature = payload.get(entry.signature_field)
    if isinstance(signature, str) and signature.strip() == "":
        return [
            FieldError(
                path=entry.signature_field,
                code=FieldErrorCode.REQUIRED,
                message=entry.messages.get(entry.signature_field, "Signature is required"),
            )
        ]
    return []


RULE_VALIDATORS: Mapping[CompletionRule, Callable[[CatalogEntry, Mapping[str, Any]], List[FieldError]]] = {
    CompletionRule.CHECKBOX: _checkbox_rules,
    CompletionRule.ACKNOWLEDGEMENT: _acknowledgement_rules,
    CompletionRule.MEDIA_CONSENT: _media_consent_rules,
    CompletionRule.SIMPLE_CONSENT: _simple_consent_rules,
}


def encode_field(name: str, value: Any) -> str:
    """JSON-encode one structured field.

    Raises:
        SerializationError: If the value is not JSON-encodable
    """
    try:
        return json.dumps(value, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise SerializationError(name, str(exc)) from exc


def check_encodable(payload: Mapping[str, Any], names) -> List[FieldError]:
    errors: List[FieldError] = []
    for name in names:
        if name not in payload:
            continue
        try:
            encode_field(name, payload[name])
        except SerializationError as exc:
            errors.append(exc.as_field_error())
    return errors


_ENGINES: Dict[str, ValidationEngine] = {key: ValidationEngine(entry) for key, entry in CATALOG.items()}


def engine_for(form_type: str) -> ValidationEngine:
    """Return the prebuilt engine for a form type (InvalidFormTypeError if unknown)."""
    lookup(form_type)
    return _ENGINES[form_type]


def validate(form_type: str, payload: Mapping[str, Any]) -> ValidationResult:
    """Validate a sanitized payload for a form type."""
    return engine_for(form_type).validate(payload)


__all__ = [
    "ValidationEngine",
    "ValidationResult",
    "RULE_VALIDATORS",
    "validate",
    "engine_for",
    "encode_field",
    "check_encodable",
]
