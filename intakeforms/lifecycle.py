"""Lifecycle controller for form instances.

This module enforces the form status state machine and the lifecycle
guard that protects finalized forms.

The state machine:
- Derives the target status of an ordinary save from the payload
- Allows ``submitted`` only through a submission and ``approved`` only
  through a review action
- Rejects any change to a submitted/approved form except a save that
  keeps the same status (idempotent re-save)
- Never lets an autosave move a form backwards

Usage:
    >>> from intakeforms.catalog import lookup
    >>> derive_status(lookup("consentTreatment"), {"signature": "Ann Lee"})
    <FormStatus.COMPLETED: 'completed'>
    >>> sm = FormStateMachine(form_key="C-1/orientation")
    >>> sm.transition_to(FormStatus.IN_PROGRESS, TransitionSource.SAVE)
    >>> sm.state
    <FormStatus.IN_PROGRESS: 'in_progress'>
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Set

from intakeforms.catalog import CatalogEntry, has_signature, is_filled
from intakeforms.errors import ConflictError
from intakeforms.types import FormStatus

# Payload keys that carry bookkeeping rather than form content
NON_CONTENT_KEYS = frozenset({"clientID", "formType", "completionPercentage", "status"})


class TransitionSource(str, Enum):
    """Who is driving a status change."""
    SAVE = "save"
    AUTOSAVE = "autosave"
    SUBMISSION = "submission"
    REVIEW = "review"


# Valid state transitions; a state may always be re-saved onto itself.
VALID_TRANSITIONS: Dict[FormStatus, Set[FormStatus]] = {
    FormStatus.DRAFT: {
        FormStatus.DRAFT,
        FormStatus.IN_PROGRESS,
        FormStatus.COMPLETED,
    },
    FormStatus.IN_PROGRESS: {
        FormStatus.DRAFT,
        FormStatus.IN_PROGRESS,
        FormStatus.COMPLETED,
    },
    FormStatus.COMPLETED: {
        FormStatus.DRAFT,
        FormStatus.IN_PROGRESS,
        FormStatus.COMPLETED,
        FormStatus.SUBMITTED,
    },
    FormStatus.SUBMITTED: {
        FormStatus.SUBMITTED,
        FormStatus.APPROVED,
    },
    FormStatus.APPROVED: {
        FormStatus.APPROVED,
    },
}

# Sources allowed to move a form into a given state
REQUIRED_SOURCE: Dict[FormStatus, TransitionSource] = {
    FormStatus.SUBMITTED: TransitionSource.SUBMISSION,
    FormStatus.APPROVED: TransitionSource.REVIEW,
}


class InvalidStateTransitionError(ConflictError):
    """Raised when a status change violates the state machine.

    Attributes:
        current_state: The status before the attempted transition
        target_state: The status that was attempted
    """

    def __init__(self, current_state: FormStatus, target_state: FormStatus, message: str):
        self.target_state = target_state
        super().__init__(current_state, message)

    @property
    def current_state(self) -> FormStatus:
        return self.current_status


def has_content(payload: Mapping[str, Any]) -> bool:
    """True when any non-bookkeeping field carries a value."""
    for name, value in payload.items():
        if name in NON_CONTENT_KEYS:
            continue
        if isinstance(value, Mapping):
            if any(v is True or (not isinstance(v, bool) and is_filled(v)) for v in value.values()):
                return True
        elif is_filled(value):
            return True
    return False


def derive_status(entry: CatalogEntry, payload: Mapping[str, Any]) -> FormStatus:
    """Target status of an ordinary save of ``payload``.

    completed with a non-empty signature-equivalent field, draft for an
    empty payload, in_progress otherwise.
    """
    if has_signature(payload.get(entry.signature_field)):
        return FormStatus.COMPLETED
    if has_content(payload):
        return FormStatus.IN_PROGRESS
    return FormStatus.DRAFT


def guard(existing_status: Optional[FormStatus], new_status: FormStatus) -> None:
    """Reject changes to a finalized form.

    Raises:
        ConflictError: If the existing form is submitted/approved and the
            new status differs from it
    """
    if existing_status is None:
        return
    existing_status = FormStatus(existing_status)
    if existing_status.is_finalized and new_status != existing_status:
        raise ConflictError(existing_status)


def resolve_save_status(
    existing_status: Optional[FormStatus],
    computed: FormStatus,
    requested: Optional[Any] = None,
) -> FormStatus:
    """Status an explicit save will write, after applying the guard.

    ``requested`` is the status carried by the request, if any. Ordinary
    saves cannot request submitted/approved unless the form is already in
    that status, which makes the save an idempotent re-save. Any other
    requested status is ignored in favour of ``computed``.

    Raises:
        ConflictError: On any attempted change to a finalized form
        InvalidStateTransitionError: On a request to jump to submitted/approved
    """
    target = computed
    if requested not in (None, ""):
        try:
            requested_status = FormStatus(requested)
        except ValueError:
            requested_status = None
        if requested_status is not None and requested_status.is_finalized:
            if existing_status is None or FormStatus(existing_status) != requested_status:
                raise InvalidStateTransitionError(
                    FormStatus(existing_status) if existing_status else FormStatus.DRAFT,
                    requested_status,
                    f"Form cannot be moved to '{requested_status.value}' by a save",
                )
            target = requested_status

    guard(existing_status, target)
    return target


def never_downgrade(existing_status: Optional[FormStatus], computed: FormStatus) -> FormStatus:
    """Autosave target: the computed status, but never below completed once reached."""
    if existing_status is None:
        return computed
    existing_status = FormStatus(existing_status)
    if existing_status.rank >= FormStatus.COMPLETED.rank and computed.rank < existing_status.rank:
        return existing_status
    return computed


def cap_unvalidated(computed: FormStatus) -> FormStatus:
    """Highest status a write that skipped validation may set: in_progress."""
    if computed.rank > FormStatus.IN_PROGRESS.rank:
        return FormStatus.IN_PROGRESS
    return computed


@dataclass
class FormStateMachine:
    """State machine for one form instance.

    Attributes:
        form_key: Identifier used in error messages (e.g. "C-1/orientation")
        state: Current status

    Examples:
        >>> sm = FormStateMachine(form_key="C-1/consentPhoto", state=FormStatus.COMPLETED)
        >>> sm.can_transition_to(FormStatus.SUBMITTED, TransitionSource.SUBMISSION)
        True
        >>> sm.can_transition_to(FormStatus.SUBMITTED, TransitionSource.SAVE)
        False
    """

    form_key: str
    state: FormStatus = FormStatus.DRAFT

    def can_transition_to(self, target_state: FormStatus, source: TransitionSource) -> bool:
        """Check if transition to target state is valid for this source."""
        if target_state not in VALID_TRANSITIONS.get(self.state, set()):
            return False
        required = REQUIRED_SOURCE.get(target_state)
        if required is not None and target_state != self.state and source != required:
            return False
        return True

    def transition_to(self, target_state: FormStatus, source: TransitionSource) -> None:
        """Transition to a new state.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        if not self.can_transition_to(target_state, source):
            raise InvalidStateTransitionError(
                current_state=self.state,
                target_state=target_state,
                message=(
                    f"Invalid state transition for {self.form_key}: cannot move from "
                    f"'{self.state.value}' to '{target_state.value}' via {source.value}"
                ),
            )
        self.state = target_state


__all__ = [
    "TransitionSource",
    "VALID_TRANSITIONS",
    "InvalidStateTransitionError",
    "FormStateMachine",
    "derive_status",
    "guard",
    "resolve_save_status",
    "never_downgrade",
    "cap_unvalidated",
    "has_content",
]
