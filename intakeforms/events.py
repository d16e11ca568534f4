"""Event system for form writes.

Every write the gateway or the submission orchestrator performs emits a
typed FormEvent. Listeners receive them synchronously after the write has
committed; the default listener records an audit line in the log.

Events carry identifiers and outcome metadata only, never payload content.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .types import Actor, EventType, FormStatus

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("intakeforms.audit")


@dataclass(frozen=True)
class FormEvent:
    """A single audit event.

    Attributes:
        event_id: Unique event identifier (e.g., "evt_4f0c...")
        type: Event type from EventType enum
        client_id: Client the event relates to
        ts: UTC timestamp when the event occurred
        actor: Actor who triggered the event
        form_type: Form type, if the event concerns a single form
        status: Form status after the event, if applicable
        payload: Optional event-specific metadata (counts, ids)

    Examples:
        >>> event = FormEvent.create(
        ...     EventType.FORM_SAVED,
        ...     client_id="C-1",
        ...     actor=Actor(id="case.manager@clinic.org"),
        ...     form_type="orientation",
        ...     status=FormStatus.COMPLETED,
        ... )
        >>> event.to_dict()["type"]
        'form.saved'
    """
    event_id: str
    type: EventType
    client_id: str
    ts: datetime
    actor: Actor
    form_type: Optional[str] = None
    status: Optional[FormStatus] = None
    payload: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if isinstance(self.type, str):
            object.__setattr__(self, "type", EventType(self.type))
        if isinstance(self.status, str):
            object.__setattr__(self, "status", FormStatus(self.status))

    @classmethod
    def create(
        cls,
        type: EventType,
        client_id: str,
        actor: Actor,
        form_type: Optional[str] = None,
        status: Optional[FormStatus] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> "FormEvent":
        return cls(
            event_id=f"evt_{uuid.uuid4().hex[:16]}",
            type=type,
            client_id=client_id,
            ts=datetime.now(timezone.utc),
            actor=actor,
            form_type=form_type,
            status=status,
            payload=payload,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization."""
        result: Dict[str, Any] = {
            "eventId": self.event_id,
            "type": self.type.value,
            "clientID": self.client_id,
            "ts": self.ts.isoformat(),
            "actor": self.actor.to_dict(),
        }
        if self.form_type is not None:
            result["formType"] = self.form_type
        if self.status is not None:
            result["status"] = self.status.value
        if self.payload is not None:
            result["payload"] = self.payload
        return result

    def to_jsonl(self) -> str:
        """Single-line JSON suitable for an append-only event stream."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FormEvent":
        ts = datetime.fromisoformat(data["ts"].replace("Z", "+00:00"))
        actor_data = data["actor"]
        return cls(
            event_id=data["eventId"],
            type=EventType(data["type"]),
            client_id=data["clientID"],
            ts=ts,
            actor=Actor(id=actor_data["id"], name=actor_data.get("name")),
            form_type=data.get("formType"),
            status=FormStatus(data["status"]) if data.get("status") else None,
            payload=data.get("payload"),
        )


EventListener = Callable[[FormEvent], None]
"""Event listener callback.

Listeners are called synchronously after the write commits. They must not
perform long-running work.
"""


class EventEmitter:
    """Dispatches FormEvents to registered listeners.

    - Type-specific subscriptions (``on``)
    - Wildcard subscriptions (``on_any``)
    - Listeners run in registration order
    - A failing listener is logged and does not affect other listeners or
      the write that produced the event
    """

    def __init__(self):
        self._listeners: Dict[EventType, List[EventListener]] = {}
        self._any_listeners: List[EventListener] = []

    def on(self, event_type: EventType, listener: EventListener) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def on_any(self, listener: EventListener) -> None:
        self._any_listeners.append(listener)

    def off(self, event_type: EventType, listener: EventListener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def off_any(self, listener: EventListener) -> None:
        if listener in self._any_listeners:
            self._any_listeners.remove(listener)

    def emit(self, event: FormEvent) -> None:
        """Dispatch an event: type-specific listeners first, then wildcard ones."""
        for listener in list(self._listeners.get(event.type, [])) + list(self._any_listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Event listener failed for %s", event.type.value,
                    extra={"client_id": event.client_id, "form_type": event.form_type},
                )

    def clear(self) -> None:
        self._listeners.clear()
        self._any_listeners.clear()

    def listener_count(self, event_type: Optional[EventType] = None) -> int:
        if event_type is not None:
            return len(self._listeners.get(event_type, []))
        return len(self._any_listeners) + sum(len(v) for v in self._listeners.values())


def audit_log_listener(event: FormEvent) -> None:
    """Record an audit line for every event."""
    audit_logger.info(
        "%s", event.type.value,
        extra={
            "client_id": event.client_id,
            "form_type": event.form_type,
            "actor": event.actor.id,
            "operation": event.type.value,
        },
    )


def default_emitter() -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_any(audit_log_listener)
    return emitter


__all__ = [
    "FormEvent",
    "EventListener",
    "EventEmitter",
    "audit_log_listener",
    "default_emitter",
]
