"""End-to-end automation run: submit a batch, poll it, collect results."""

from __future__ import annotations

import logging
from dataclasses import replace

from automation_client.api_client import AutomationApiClient
from automation_client.models import Batch, ExecutionHandle, ExecutionOutcome
from automation_client.poller import ProgressPoller, UpdateCallback
from automation_client.submission import JobSubmissionClient, ProjectIdAllocator

logger = logging.getLogger(__name__)


class AutomationRunner:
    """Drives one batch through submission, polling and reconciliation.

    Args:
        api: Authenticated API client shared by every step.
        allocator: Assigns a project id to batches that have none.
        submitter: Submission client; built from ``api`` when omitted.
        poller: Progress poller; built from ``api`` when omitted.
    """

    def __init__(
        self,
        api: AutomationApiClient,
        *,
        allocator: ProjectIdAllocator | None = None,
        submitter: JobSubmissionClient | None = None,
        poller: ProgressPoller | None = None,
    ) -> None:
        self._allocator = allocator
        self.submitter = submitter or JobSubmissionClient(api)
        self.poller = poller or ProgressPoller(api)
        self.handle: ExecutionHandle | None = None

    async def run(
        self, batch: Batch, on_update: UpdateCallback | None = None
    ) -> ExecutionOutcome:
        """Submit ``batch`` and wait for its outcome.

        Cancelling the awaiting task stops polling; the backend job itself
        keeps running.

        Raises:
            ValueError: If the batch is invalid.
            SubmissionError: If the batch could not be submitted.
        """
        if batch.project_id is None and self._allocator is not None:
            batch = replace(batch, project_id=await self._allocator.allocate())

        self.handle = await self.submitter.submit(batch)
        total_patients = len({p.appointment_id for p in batch.patients})
        self.poller.start(self.handle, batch.rules, total_patients, on_update)
        try:
            outcome = await self.poller.wait()
        finally:
            self.poller.stop()
        logger.info(
            "Run %r ended %s with %d result(s)",
            batch.name,
            outcome.status.value,
            len(outcome.results),
        )
        return outcome
