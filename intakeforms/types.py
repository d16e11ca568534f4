"""Core type definitions for the intake form engine.

This module defines the fundamental types shared by every layer:
- FormStatus: Lifecycle states of a form instance
- Priority: Submission-gating priority of a form type
- CompletionRule: How a form type derives its completion percentage
- ErrorType / InfraCategory / FieldErrorCode: Error taxonomy
- EventType: Audit event types emitted on writes
- Actor: Identity supplied by the identity provider
- FormInstance / Submission: Persisted records as seen by callers

Records serialize to camelCase dicts, which is the wire shape consumed by
the rendering layer and the REST surface.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class FormStatus(str, Enum):
    """Form instance lifecycle states.

    Ordered: draft < in_progress < completed < submitted < approved.
    Finalized states: submitted, approved.
    """
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SUBMITTED = "submitted"
    APPROVED = "approved"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    @property
    def is_finalized(self) -> bool:
        return self in (FormStatus.SUBMITTED, FormStatus.APPROVED)


_STATUS_ORDER = [
    FormStatus.DRAFT,
    FormStatus.IN_PROGRESS,
    FormStatus.COMPLETED,
    FormStatus.SUBMITTED,
    FormStatus.APPROVED,
]


class SubmissionStatus(str, Enum):
    """Status of a Submission record."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"


class Priority(str, Enum):
    """Form priority. High and medium forms gate submission."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def gates_submission(self) -> bool:
        return self in (Priority.HIGH, Priority.MEDIUM)


class CompletionRule(str, Enum):
    """Completion rule families of the form catalog."""
    CHECKBOX = "checkbox"
    ACKNOWLEDGEMENT = "acknowledgement"
    MEDIA_CONSENT = "media_consent"
    SIMPLE_CONSENT = "simple_consent"


class ErrorType(str, Enum):
    """Error categories returned to callers."""
    INVALID_FORM_TYPE = "invalid_form_type"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    SERIALIZATION = "serialization"
    INFRA = "infra"


class InfraCategory(str, Enum):
    """Infrastructure failure categories, each with its own response code."""
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    PERMISSION = "permission"
    STORAGE = "storage"


class FieldErrorCode(str, Enum):
    """Validation error codes for individual field failures."""
    REQUIRED = "required"
    INVALID_TYPE = "invalid_type"
    INVALID_FORMAT = "invalid_format"
    INVALID_VALUE = "invalid_value"
    TOO_LONG = "too_long"
    TOO_SHORT = "too_short"
    NOT_ENCODABLE = "not_encodable"
    CUSTOM = "custom"


class EventType(str, Enum):
    """Audit event types emitted by the gateway and orchestrator."""
    FORM_SAVED = "form.saved"
    FORM_AUTOSAVED = "form.autosaved"
    FORM_CONFLICT = "form.conflict"
    FORMS_BULK_SAVED = "forms.bulk_saved"
    SUBMISSION_CREATED = "submission.created"
    SUBMISSION_APPROVED = "submission.approved"


SYSTEM_ACTOR_ID = "System"


@dataclass(frozen=True)
class Actor:
    """Authenticated actor performing an operation.

    The identity provider supplies an email or username; anything that
    reaches the engine without one is recorded as ``System``.

    Examples:
        >>> Actor(id="case.manager@clinic.org").id
        'case.manager@clinic.org'
        >>> Actor.system().id
        'System'
    """
    id: str
    name: Optional[str] = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(id=SYSTEM_ACTOR_ID)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"id": self.id}
        if self.name is not None:
            result["name"] = self.name
        return result


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass(frozen=True)
class FormInstance:
    """One persisted form for a (client, form type) pair.

    Attributes:
        client_id: Opaque client identifier
        form_type: Catalog key of the form
        status: Current lifecycle status
        payload: Sanitized payload (checkboxes, signature, structured fields)
        completion_percentage: Value derived from payload by the catalog rule
        priority: Priority copied from the catalog at write time
        submission_id: Back-reference set only while status is submitted
    """
    client_id: str
    form_type: str
    status: FormStatus
    payload: Dict[str, Any]
    completion_percentage: int
    priority: Priority
    form_id: Optional[int] = None
    submission_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_autosave_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    completed_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase wire shape."""
        return {
            "formID": self.form_id,
            "clientID": self.client_id,
            "formType": self.form_type,
            "status": self.status.value,
            "payload": dict(self.payload),
            "completionPercentage": self.completion_percentage,
            "priority": self.priority.value,
            "submissionID": self.submission_id,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "completedAt": _iso(self.completed_at),
            "lastAutoSaveAt": _iso(self.last_autosave_at),
            "createdBy": self.created_by,
            "updatedBy": self.updated_by,
            "completedBy": self.completed_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FormInstance":
        return cls(
            form_id=data.get("formID"),
            client_id=data["clientID"],
            form_type=data["formType"],
            status=FormStatus(data["status"]),
            payload=dict(data.get("payload") or {}),
            completion_percentage=int(data.get("completionPercentage") or 0),
            priority=Priority(data.get("priority", Priority.MEDIUM.value)),
            submission_id=data.get("submissionID"),
            created_at=_parse_ts(data.get("createdAt")),
            updated_at=_parse_ts(data.get("updatedAt")),
            completed_at=_parse_ts(data.get("completedAt")),
            last_autosave_at=_parse_ts(data.get("lastAutoSaveAt")),
            created_by=data.get("createdBy"),
            updated_by=data.get("updatedBy"),
            completed_by=data.get("completedBy"),
        )


@dataclass(frozen=True)
class Submission:
    """Aggregate record created by one submit action."""
    client_id: str
    status: SubmissionStatus
    submission_id: Optional[int] = None
    submission_notes: str = ""
    submitted_by: Optional[str] = None
    submitted_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    form_types: tuple = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "submissionID": self.submission_id,
            "clientID": self.client_id,
            "status": self.status.value,
            "submissionNotes": self.submission_notes,
            "submittedBy": self.submitted_by,
            "submittedAt": _iso(self.submitted_at),
            "approvedBy": self.approved_by,
            "approvedAt": _iso(self.approved_at),
        }
        if self.form_types:
            result["submittedForms"] = list(self.form_types)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Submission":
        return cls(
            submission_id=data.get("submissionID"),
            client_id=data["clientID"],
            status=SubmissionStatus(data.get("status", SubmissionStatus.SUBMITTED.value)),
            submission_notes=data.get("submissionNotes") or "",
            submitted_by=data.get("submittedBy"),
            submitted_at=_parse_ts(data.get("submittedAt")),
            approved_by=data.get("approvedBy"),
            approved_at=_parse_ts(data.get("approvedAt")),
            form_types=tuple(data.get("submittedForms") or ()),
        )

    @classmethod
    def placeholder(cls, client_id: str) -> "Submission":
        """Stand-in returned when a client has never submitted."""
        return cls(client_id=client_id, status=SubmissionStatus.DRAFT)


__all__ = [
    "FormStatus",
    "SubmissionStatus",
    "Priority",
    "CompletionRule",
    "ErrorType",
    "InfraCategory",
    "FieldErrorCode",
    "EventType",
    "Actor",
    "FormInstance",
    "Submission",
]
