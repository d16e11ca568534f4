"""Input sanitization for form payloads.

``sanitize`` normalizes a raw request body before validation or storage.
It never rejects input: fields it cannot normalize are coerced to a safe
default or dropped, and validation reports whatever is still wrong.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional

from dateutil import parser as date_parser

from intakeforms.catalog import CatalogEntry

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"

BOOLEAN_FIELDS = ("acknowledged",)
SIGNATURE_SUFFIXES = ("signature", "Signature", "Sign1", "SignRevoke")

_TRUE_STRINGS = {"true", "1", "yes", "on", "y"}
_FALSE_STRINGS = {"false", "0", "no", "off", "n", ""}

# Two fill-in defaults that differ in every date part
_FILL_DEFAULTS = (datetime(2000, 1, 1), datetime(2001, 2, 2))


def clamp_percentage(value: Any) -> int:
    """Clamp a reported completion percentage into [0, 100].

    Non-numeric input (including booleans and NaN) becomes 0.

    Examples:
        >>> clamp_percentage(150)
        100
        >>> clamp_percentage("abc")
        0
        >>> clamp_percentage("42.6")
        43
    """
    if isinstance(value, bool) or value is None:
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if number != number:  # NaN
        return 0
    return int(max(0.0, min(100.0, number)) + 0.5)


def coerce_bool(value: Any) -> Any:
    """Coerce common boolean spellings; unknown values pass through unchanged."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return value


def normalize_date(value: Any) -> Optional[str]:
    """Return ``YYYY-MM-DD`` for a parseable date, or None.

    Examples:
        >>> normalize_date("03/15/2025")
        '2025-03-15'
        >>> normalize_date("2025-02-30") is None
        True
        >>> normalize_date("2025") is None
        True
    """
    if isinstance(value, datetime):
        return value.strftime(DATE_FORMAT)
    if isinstance(value, date):
        return value.strftime(DATE_FORMAT)
    parsed = parse_full_date(value)
    return parsed.strftime(DATE_FORMAT) if parsed is not None else None


def parse_full_date(value: Any) -> Optional[date]:
    """Parse a string carrying a complete year, month and day.

    dateutil fills missing parts from its default, so the string is parsed
    against two different defaults; a partial date ("2025", "March") gives
    two different results and is rejected.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        first, second = (date_parser.parse(value.strip(), default=d).date() for d in _FILL_DEFAULTS)
    except (ValueError, OverflowError):
        return None
    return first if first == second else None


def is_signature_field(name: str, entry: Optional[CatalogEntry] = None) -> bool:
    if entry is not None and name == entry.signature_field:
        return True
    return name.endswith(SIGNATURE_SUFFIXES)


def sanitize(raw: Optional[Mapping[str, Any]], entry: Optional[CatalogEntry] = None) -> Dict[str, Any]:
    """Normalize a raw payload.

    - trims signature-like string fields
    - clamps ``completionPercentage`` into [0, 100]
    - coerces boolean fields and checkbox values
    - defaults the entry's array fields to empty lists
    - normalizes the entry's date fields to YYYY-MM-DD, dropping unparseable ones

    Args:
        raw: Request body (not modified)
        entry: Catalog entry; without one only type-independent rules apply

    Returns:
        A new sanitized dict
    """
    payload: Dict[str, Any] = dict(raw or {})

    for name, value in list(payload.items()):
        if isinstance(value, str) and is_signature_field(name, entry):
            payload[name] = value.strip()

    if "clientID" in payload and isinstance(payload["clientID"], str):
        payload["clientID"] = payload["clientID"].strip()

    if "completionPercentage" in payload:
        payload["completionPercentage"] = clamp_percentage(payload["completionPercentage"])

    for name in BOOLEAN_FIELDS:
        if name in payload:
            payload[name] = coerce_bool(payload[name])

    checkboxes = payload.get("checkboxes")
    if isinstance(checkboxes, Mapping):
        payload["checkboxes"] = {str(k): coerce_bool(v) for k, v in checkboxes.items()}

    if entry is not None:
        for name in entry.array_fields:
            if payload.get(name) is None:
                payload[name] = []
        for name in entry.date_fields:
            if name not in payload:
                continue
            normalized = normalize_date(payload[name])
            if normalized is None:
                if payload[name] not in (None, ""):
                    logger.debug("Dropping unparseable date field %s", name)
                del payload[name]
            else:
                payload[name] = normalized

    return payload


__all__ = [
    "sanitize",
    "clamp_percentage",
    "coerce_bool",
    "normalize_date",
    "parse_full_date",
]
