"""Submission orchestration.

A submission gates on the client's high and medium priority forms: every
one of them must be completed (or further along) before the submit goes
through. Low priority forms never block, but a completed low priority form
is submitted along with the rest.

The Submission record and every status transition it causes are written
in one transaction through the gateway, so either all of them land or
none do.
"""

import logging
from typing import Any, Dict, Optional

from intakeforms.catalog import CATALOG, percent
from intakeforms.errors import NotFoundError, SubmissionIncompleteError
from intakeforms.events import FormEvent
from intakeforms.gateway import FormGateway
from intakeforms.logs import build_log_context
from intakeforms.types import Actor, EventType, FormStatus, Submission

logger = logging.getLogger(__name__)


class SubmissionOrchestrator:
    """Bundles a client's completed forms into a Submission.

    Examples:
        >>> orchestrator = SubmissionOrchestrator(gateway)        # doctest: +SKIP
        >>> orchestrator.submit("C-1", "All forms reviewed", Actor(id="cm@clinic.org"))  # doctest: +SKIP
    """

    def __init__(self, gateway: FormGateway):
        self.gateway = gateway

    def submit(self, client_id: str, notes: str = "", actor: Optional[Actor] = None) -> Submission:
        """Submit every completed form of a client.

        When every form is already submitted or approved, no new Submission
        is written and the latest one is returned.

        Raises:
            NotFoundError: Unknown client, or a client with no forms at all
            SubmissionIncompleteError: Some high/medium form is not completed yet
            InfraError: Storage failure (nothing is written)
        """
        actor = actor or Actor.system()
        context = build_log_context(client_id=client_id, actor=actor.id, operation="submit")

        with self.gateway.transaction("submit") as session:
            self.gateway.require_client(session, client_id)
            if self.gateway.count_forms(session, client_id) == 0:
                raise NotFoundError("No forms found for this client", clientID=client_id)

            counts = self.gateway.completion_counts(session, client_id)
            if counts.completed_forms < counts.total_forms:
                logger.info(
                    "Submission blocked: %d of %d required forms completed",
                    counts.completed_forms, counts.total_forms, extra=context,
                )
                raise SubmissionIncompleteError(counts.total_forms, counts.completed_forms)

            previous = None
            if self.gateway.count_ready(session, client_id) == 0:
                previous = self.gateway.latest_submission_row(session, client_id)
            if previous is not None:
                # Nothing left to move: repeat submits return the latest submission
                submission = self.gateway.to_submission(
                    previous, self.gateway.submitted_form_types(session, previous.submission_id)
                )
            else:
                row = self.gateway.insert_submission(session, client_id, notes, actor)
                moved = self.gateway.mark_submitted(session, client_id, row.submission_id, actor)
                submission = self.gateway.to_submission(row, moved)

        if previous is not None:
            logger.info(
                "Resubmission moved no forms; returning submission %d", submission.submission_id, extra=context
            )
            return submission

        logger.info(
            "Submitted %d forms", len(moved),
            extra=build_log_context(
                client_id=client_id, actor=actor.id, operation="submit",
                submission_id=submission.submission_id,
            ),
        )
        self.gateway.emitter.emit(
            FormEvent.create(
                EventType.SUBMISSION_CREATED,
                client_id=client_id,
                actor=actor,
                payload={"submissionID": submission.submission_id, "formTypes": list(moved)},
            )
        )
        return submission

    def status(self, client_id: str) -> Submission:
        """Latest submission of the client, or a draft placeholder."""
        latest = self.gateway.latest_submission(client_id)
        return latest if latest is not None else Submission.placeholder(client_id)

    def approve(self, submission_id: int, actor: Optional[Actor] = None) -> Submission:
        """Reviewer action: approve a submission and its submitted forms.

        Raises:
            NotFoundError: Unknown submission
        """
        actor = actor or Actor.system()
        with self.gateway.transaction("approve") as session:
            row = self.gateway.load_submission(session, submission_id)
            approved = self.gateway.mark_approved(session, row, actor)
            submission = self.gateway.to_submission(row, approved)

        logger.info(
            "Approved %d forms", len(approved),
            extra=build_log_context(
                client_id=submission.client_id, actor=actor.id, operation="approve",
                submission_id=submission_id,
            ),
        )
        self.gateway.emitter.emit(
            FormEvent.create(
                EventType.SUBMISSION_APPROVED,
                client_id=submission.client_id,
                actor=actor,
                payload={"submissionID": submission_id, "formTypes": list(approved)},
            )
        )
        return submission

    def overview(self, client_id: str) -> Dict[str, Any]:
        """Per-client dashboard: stored forms and overall completion.

        ``totalForms`` is the size of the catalog; ``overallCompletion`` is the
        share of catalog forms completed or further along.
        """
        if not self.gateway.client_exists(client_id):
            raise NotFoundError("Client not found", clientID=client_id)
        forms = self.gateway.list_forms(client_id)
        total = len(CATALOG)
        completed = sum(1 for f in forms if f.status.rank >= FormStatus.COMPLETED.rank)
        return {
            "clientID": client_id,
            "forms": [f.to_dict() for f in forms],
            "totalForms": total,
            "completedForms": completed,
            "overallCompletion": percent(completed, total),
        }


__all__ = ["SubmissionOrchestrator"]
