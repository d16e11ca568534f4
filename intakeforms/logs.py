"""Logging setup and PHI-safe log context helpers.

Payload contents (signatures, acknowledgements, release details) are
never logged; only identifiers and outcome metadata are.
"""

import logging
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_CONTEXT_KEYS = ("client_id", "form_type", "actor", "operation", "submission_id")


class ContextFormatter(logging.Formatter):
    """Appends ``key=value`` pairs for any log context attached via ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        pairs = [
            f"{key}={getattr(record, key)}"
            for key in _CONTEXT_KEYS
            if getattr(record, key, None) is not None
        ]
        return f"{base} {' '.join(pairs)}" if pairs else base


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the ``intakeforms`` logger."""
    logger = logging.getLogger("intakeforms")
    logger.setLevel(level.upper())
    if not any(getattr(h, "_intakeforms", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(ContextFormatter(LOG_FORMAT))
        handler._intakeforms = True  # type: ignore[attr-defined]
        logger.addHandler(handler)


def build_log_context(
    *,
    client_id: Optional[str] = None,
    form_type: Optional[str] = None,
    actor: Optional[str] = None,
    operation: Optional[str] = None,
    submission_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Return a PHI-safe log context dict for ``logger.x(..., extra=...)``."""
    context: Dict[str, Any] = {}
    if client_id:
        context["client_id"] = client_id
    if form_type:
        context["form_type"] = form_type
    if actor:
        context["actor"] = actor
    if operation:
        context["operation"] = operation
    if submission_id is not None:
        context["submission_id"] = submission_id
    return context
