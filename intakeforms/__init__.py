"""Intake form lifecycle and synchronization engine.

intakeforms manages a fixed catalog of client intake forms:
- Form catalog with per-type completion rules and validation schemas
- Sanitization and structured field-level validation
- Lifecycle guard protecting submitted/approved forms
- Transactional persistence gateway (single save, autosave, bulk)
- Submission orchestration gated on high/medium priority forms
- Client-side synchronization with local drafts and background autosave

Basic usage:
    >>> from intakeforms.catalog import lookup, compute_completion
    >>> entry = lookup("orientation")
    >>> compute_completion(entry, {"checkboxes": {str(i): True for i in range(13)}})
    87

The REST surface is built with ``intakeforms.api.create_app()``.
"""

__version__ = "0.1.0"

# Version info
VERSION = (0, 1, 0)

# Core exports
from intakeforms.catalog import CATALOG, FORM_TYPES, lookup
from intakeforms.gateway import FormGateway
from intakeforms.submission import SubmissionOrchestrator
from intakeforms.sync import FormSyncClient, GatewayTransport, HttpTransport
from intakeforms.types import Actor, FormInstance, FormStatus, Priority, Submission

# Package metadata
__all__ = [
    "__version__",
    "VERSION",
    "CATALOG",
    "FORM_TYPES",
    "lookup",
    "FormGateway",
    "SubmissionOrchestrator",
    "FormSyncClient",
    "GatewayTransport",
    "HttpTransport",
    "Actor",
    "FormInstance",
    "FormStatus",
    "Priority",
    "Submission",
]
