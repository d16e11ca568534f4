"""Structured error types for the intake form engine.

Every failure the engine reports to a caller is a FormEngineError subclass.
Each one knows its ErrorType, the HTTP status it maps to, and how to render
itself as a response body. Field-level validation failures are carried as
FieldError records so callers can show them next to the offending input.

Infra errors keep their underlying exception for server-side logging but
only expose a generic category message unless details are requested.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import exc as sa_exc

from intakeforms.types import ErrorType, FieldErrorCode, FormStatus, InfraCategory


@dataclass(frozen=True)
class FieldError:
    """Per-field validation error details.

    Attributes:
        path: Field name in the payload (e.g., "signature", "expireDate")
        code: Specific validation error code
        message: Human-readable error description
        expected: Optional - what was expected
        received: Optional - what was actually received

    Examples:
        >>> err = FieldError(
        ...     path="signature",
        ...     code=FieldErrorCode.TOO_SHORT,
        ...     message="Signature must be at least 2 characters",
        ... )
        >>> err.to_dict()["code"]
        'too_short'
    """
    path: str
    code: FieldErrorCode
    message: str
    expected: Optional[Any] = None
    received: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "path": self.path,
            "code": self.code.value if isinstance(self.code, FieldErrorCode) else self.code,
            "message": self.message,
        }
        if self.expected is not None:
            result["expected"] = self.expected
        if self.received is not None:
            result["received"] = _safe_received(self.received)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldError":
        """Create FieldError from dict."""
        code = data["code"]
        if isinstance(code, str):
            code = FieldErrorCode(code)
        return cls(
            path=data["path"],
            code=code,
            message=data["message"],
            expected=data.get("expected"),
            received=data.get("received"),
        )


def _safe_received(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return type(value).__name__


class FormEngineError(Exception):
    """Base class for every error the engine reports to callers."""

    error_type: ErrorType = ErrorType.INFRA
    status_code: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_type.value, "message": self.message}


class InvalidFormTypeError(FormEngineError):
    """Raised when a form type key is not in the catalog.

    The complete list of valid keys travels with the error so the caller
    can correct the request without another round trip.
    """

    error_type = ErrorType.INVALID_FORM_TYPE
    status_code = 400

    def __init__(self, form_type: Any, valid_types: Iterable[str]):
        self.form_type = form_type
        self.valid_types = list(valid_types)
        super().__init__(f"Invalid form type: {form_type}")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["formType"] = self.form_type
        result["validFormTypes"] = self.valid_types
        return result


class NotFoundError(FormEngineError):
    """Raised when a client, form or submission does not exist."""

    error_type = ErrorType.NOT_FOUND
    status_code = 404

    def __init__(self, message: str, **context: Any):
        self.context = context
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update(self.context)
        return result


class ValidationFailedError(FormEngineError):
    """Raised when a payload fails validation.

    Attributes:
        field_errors: FieldError records in the order they were found
        errors: Mapping of field name to the first message for that field
    """

    error_type = ErrorType.VALIDATION
    status_code = 422

    def __init__(self, field_errors: List[FieldError], message: str = "Validation failed"):
        self.field_errors = list(field_errors)
        super().__init__(message)

    @property
    def errors(self) -> Dict[str, str]:
        return errors_by_field(self.field_errors)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["errors"] = self.errors
        result["fields"] = [e.to_dict() for e in self.field_errors]
        return result


class SubmissionIncompleteError(ValidationFailedError):
    """Raised when a client's required forms are not all completed."""

    status_code = 400

    def __init__(self, total_forms: int, completed_forms: int):
        self.total_forms = total_forms
        self.completed_forms = completed_forms
        self.remaining = total_forms - completed_forms
        super().__init__(
            [],
            message="Cannot submit: Not all required forms are completed",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_type.value,
            "message": self.message,
            "totalForms": self.total_forms,
            "completedForms": self.completed_forms,
            "remaining": self.remaining,
        }


class ConflictError(FormEngineError):
    """Raised when a write would alter a finalized (submitted/approved) form."""

    error_type = ErrorType.CONFLICT
    status_code = 409

    def __init__(self, current_status: FormStatus, message: Optional[str] = None):
        self.current_status = FormStatus(current_status)
        super().__init__(
            message or f"Cannot modify form with status: {self.current_status.value}"
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["currentStatus"] = self.current_status.value
        return result


class SerializationError(FormEngineError):
    """Raised when a structured payload field cannot be JSON-encoded."""

    error_type = ErrorType.SERIALIZATION
    status_code = 422

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Field '{field}' could not be encoded: {reason}")

    def as_field_error(self) -> FieldError:
        return FieldError(
            path=self.field,
            code=FieldErrorCode.NOT_ENCODABLE,
            message=f"{self.field} must be JSON-encodable",
            received=self.reason,
        )


INFRA_STATUS_CODES: Dict[InfraCategory, int] = {
    InfraCategory.CONNECTION: 503,
    InfraCategory.TIMEOUT: 408,
    InfraCategory.PERMISSION: 403,
    InfraCategory.STORAGE: 500,
}

INFRA_MESSAGES: Dict[InfraCategory, str] = {
    InfraCategory.CONNECTION: "The form store is temporarily unavailable",
    InfraCategory.TIMEOUT: "The form store did not respond in time",
    InfraCategory.PERMISSION: "The form store refused the operation",
    InfraCategory.STORAGE: "An error occurred processing your request",
}


class InfraError(FormEngineError):
    """Connection, timeout, permission or storage failure.

    ``to_dict()`` only ever returns the generic category message; pass
    ``include_details=True`` (development mode) to add the raw cause.
    """

    error_type = ErrorType.INFRA

    def __init__(self, category: InfraCategory, operation: str, cause: Optional[BaseException] = None):
        self.category = InfraCategory(category)
        self.operation = operation
        self.cause = cause
        super().__init__(INFRA_MESSAGES[self.category])

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return INFRA_STATUS_CODES[self.category]

    def to_dict(self, include_details: bool = False) -> Dict[str, Any]:
        result = super().to_dict()
        result["category"] = self.category.value
        result["operation"] = self.operation
        if include_details and self.cause is not None:
            result["details"] = str(self.cause)
        return result


_PERMISSION_MARKERS = ("permission denied", "access denied", "not authorized", "readonly database")
_TIMEOUT_MARKERS = ("timeout", "timed out", "database is locked")


def translate_db_error(error: BaseException, operation: str) -> InfraError:
    """Map a SQLAlchemy (or driver) exception onto an InfraError category.

    Examples:
        >>> translate_db_error(sa_exc.TimeoutError("pool exhausted"), "upsert").category
        <InfraCategory.TIMEOUT: 'timeout'>
    """
    text = str(error).lower()
    if isinstance(error, (sa_exc.TimeoutError, TimeoutError)):
        category = InfraCategory.TIMEOUT
    elif any(marker in text for marker in _PERMISSION_MARKERS):
        category = InfraCategory.PERMISSION
    elif any(marker in text for marker in _TIMEOUT_MARKERS):
        category = InfraCategory.TIMEOUT
    elif isinstance(error, (sa_exc.OperationalError, sa_exc.InterfaceError, ConnectionError)):
        category = InfraCategory.CONNECTION
    elif isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        category = InfraCategory.CONNECTION
    else:
        category = InfraCategory.STORAGE
    return InfraError(category, operation, cause=error)


def errors_by_field(field_errors: Iterable[FieldError]) -> Dict[str, str]:
    """Collapse FieldError records into ``{field: message}`` (first wins)."""
    result: Dict[str, str] = {}
    for err in field_errors:
        result.setdefault(err.path, err.message)
    return result


__all__ = [
    "FieldError",
    "FormEngineError",
    "InvalidFormTypeError",
    "NotFoundError",
    "ValidationFailedError",
    "SubmissionIncompleteError",
    "ConflictError",
    "SerializationError",
    "InfraError",
    "INFRA_STATUS_CODES",
    "translate_db_error",
    "errors_by_field",
]
