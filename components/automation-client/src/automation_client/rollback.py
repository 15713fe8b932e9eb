"""Rollback and re-apply of rules for a single processed patient."""

from __future__ import annotations

import asyncio
import logging

from automation_client.api_client import AutomationApiClient
from automation_client.errors import AutomationApiError, RollbackError
from automation_client.models import (
    Batch,
    ExecutionHandle,
    OutcomeStatus,
    ResultDetail,
    ResultRecord,
    RuleSelection,
)
from automation_client.schemas import PatientPayload, RollbackRequest
from automation_client.submission import JobSubmissionClient

logger = logging.getLogger(__name__)

DEFAULT_REAPPLY_PROJECT_NAME = "Re-apply Rules"


def rollback_path(rule_number: str) -> str:
    """``/rules/rule<n>/rollback`` for a normalized rule number."""
    return f"/rules/rule{rule_number}/rollback"


def rules_to_rollback(record: ResultRecord) -> list[ResultDetail]:
    """Details that changed the chart, or every detail when none did."""
    changed = [d for d in record.details if d.status is OutcomeStatus.CHANGES_MADE]
    return changed or list(record.details)


class RollbackClient:
    """Undoes or re-applies the rules recorded for one patient.

    Every request names only that patient, so other patients of the same run
    are never touched.
    """

    def __init__(
        self, api: AutomationApiClient, submitter: JobSubmissionClient | None = None
    ) -> None:
        self._api = api
        self._submitter = submitter or JobSubmissionClient(api)

    async def rollback(self, record: ResultRecord) -> ResultRecord:
        """Roll back the rules applied to ``record``'s patient.

        Rule rollbacks are sent concurrently and are not retried.

        Returns:
            ``record`` marked as rolled back.

        Raises:
            ValueError: If the record has no rule details.
            RollbackError: If any rule rollback failed.
        """
        details = rules_to_rollback(record)
        if not details:
            raise ValueError("No rules found to rollback")

        patient = PatientPayload(**record.to_patient().to_payload())
        logger.info(
            "Rolling back %d rule(s) for appointment %s",
            len(details),
            record.appointment_id,
        )
        outcomes = await asyncio.gather(
            *(self._rollback_rule(detail.rule_number, patient) for detail in details),
            return_exceptions=True,
        )

        failed: dict[str, str] = {}
        for detail, outcome in zip(details, outcomes):
            if isinstance(outcome, AutomationApiError):
                failed[detail.rule_number] = outcome.message
            elif isinstance(outcome, BaseException):
                raise outcome
        if failed:
            logger.error(
                "Rollback failed for appointment %s: %s", record.appointment_id, failed
            )
            raise RollbackError(record.appointment_id, failed)

        logger.info("Rollback completed for appointment %s", record.appointment_id)
        return record.mark_rolled_back()

    async def _rollback_rule(self, rule_number: str, patient: PatientPayload) -> None:
        request = RollbackRequest(
            add_modifiers=self._api.config.add_modifiers.for_rule(rule_number),
            is_rollback=True,
            patients=[patient],
        )
        await self._api.post(
            rollback_path(rule_number),
            json=request.model_dump(),
            timeout=self._api.config.submit_timeout,
        )

    async def reapply(
        self, record: ResultRecord, project_name: str | None = None
    ) -> ExecutionHandle:
        """Submit every rule in ``record``'s details again for its patient.

        Raises:
            ValueError: If the record has no rule details.
            SubmissionError: If the submission fails.
        """
        rules = [RuleSelection(rule_number=d.rule_number) for d in record.details]
        if not rules:
            raise ValueError("No rules found to apply")
        batch = Batch(
            name=project_name or DEFAULT_REAPPLY_PROJECT_NAME,
            patients=[record.to_patient()],
            rules=rules,
            add_modifiers=self._api.config.add_modifiers.default,
        )
        logger.info(
            "Re-applying %d rule(s) for appointment %s", len(rules), record.appointment_id
        )
        return await self._submitter.submit(batch)
