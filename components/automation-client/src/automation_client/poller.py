"""Progress polling for a running execution.

Polling is single-slot: the next request is scheduled only after the previous
one has been handled, so at most one progress request is ever in flight and
responses are always applied in request order.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from enum import Enum
from typing import Any

from pydantic import ValidationError

from automation_client.api_client import AutomationApiClient
from automation_client.errors import AutomationApiError
from automation_client.models import (
    ExecutionHandle,
    ExecutionOutcome,
    ExecutionStatus,
    OverallProgress,
    ProgressSnapshot,
    ResultRecord,
    RuleProgress,
    RuleSelection,
    RuleStatus,
)
from automation_client.reconciler import reconcile
from automation_client.schemas import ProgressResponse, ResultsResponse

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[ProgressSnapshot], None]


class PollerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    COMPLETED = "completed"
    ERRORED = "errored"


def progress_path(handle: ExecutionHandle) -> str:
    return f"/rules/progress/{handle.execution_id}"


def results_path(handle: ExecutionHandle) -> str:
    return f"/rules/results/{handle.execution_id}"


def _clamp_percentage(value: float | None) -> float:
    if value is None:
        return 0.0
    return min(max(float(value), 0.0), 100.0)


def initial_snapshot(
    rules: Sequence[RuleSelection], total_patients: int
) -> ProgressSnapshot:
    """Snapshot with every selected rule pending at zero progress."""
    return ProgressSnapshot(
        rules=tuple(RuleProgress.pending(r.rule_number, total_patients) for r in rules)
    )


def merge_progress(
    payload: Mapping[str, Any],
    rules: Sequence[RuleSelection],
    total_patients: int,
    previous: ProgressSnapshot | None = None,
) -> ProgressSnapshot:
    """Merge one full progress response into a new snapshot.

    Each response is a complete snapshot, so per-rule values overwrite the
    previous ones. Rules missing from the response are pending at zero.
    A rule that already reached ``completed`` or ``error`` keeps its final
    values.

    Raises:
        ValueError: If the payload does not match the progress schema.
    """
    response = ProgressResponse.model_validate(dict(payload))
    merged: list[RuleProgress] = []
    for rule in rules:
        earlier = previous.get(rule.rule_number) if previous else None
        if earlier is not None and earlier.is_terminal:
            merged.append(earlier)
            continue

        fragment = response.rule(rule.progress_key)
        if fragment is None:
            merged.append(RuleProgress.pending(rule.rule_number, total_patients))
            continue

        total = fragment.total_patients or total_patients
        processed = max(fragment.patients_processed or 0, 0)
        if total > 0:
            processed = min(processed, total)
        merged.append(
            RuleProgress(
                rule_number=rule.rule_number,
                status=RuleStatus.from_raw(fragment.status),
                percentage=_clamp_percentage(fragment.percentage),
                patients_processed=processed,
                total_patients=total,
            )
        )

    overall = previous.overall if previous else None
    if response.overall is not None:
        current = response.overall.current_rule
        overall = OverallProgress(
            percentage=_clamp_percentage(response.overall.percentage),
            current_rule=str(current) if current is not None else None,
        )

    return ProgressSnapshot(
        rules=tuple(merged),
        overall=overall,
        status=RuleStatus.from_raw(response.status),
        sequence=(previous.sequence if previous else 0) + 1,
    )


class ProgressPoller:
    """Polls an execution until every selected rule is done.

    Args:
        api: Authenticated API client.
        interval: Seconds between handling one poll and issuing the next.
        poll_timeout: Timeout of each progress request; kept below ``interval``.

    The outcome resolves exactly once: ``completed`` or ``failed`` when the
    backend finishes, ``cancelled`` when :meth:`stop` is called first.
    """

    def __init__(
        self,
        api: AutomationApiClient,
        *,
        interval: float | None = None,
        poll_timeout: float | None = None,
    ) -> None:
        self._api = api
        self.interval = interval if interval is not None else api.config.poll_interval
        if self.interval <= 0:
            raise ValueError("interval must be positive")
        timeout = poll_timeout if poll_timeout is not None else api.config.poll_timeout
        self.poll_timeout = timeout if timeout < self.interval else self.interval * 0.8
        self.state = PollerState.IDLE
        self.snapshot: ProgressSnapshot | None = None
        self.handle: ExecutionHandle | None = None
        self._task: asyncio.Task[None] | None = None
        self._outcome: asyncio.Future[ExecutionOutcome] | None = None

    def start(
        self,
        handle: ExecutionHandle,
        rules: Sequence[RuleSelection],
        total_patients: int,
        on_update: UpdateCallback | None = None,
    ) -> asyncio.Future[ExecutionOutcome]:
        """Begin polling ``handle``; the first poll is issued immediately.

        Returns:
            Future resolving to the execution outcome.

        Raises:
            RuntimeError: If this poller is already polling.
            ValueError: If no rules are selected.
        """
        if self.state is PollerState.POLLING:
            raise RuntimeError("Poller is already polling")
        if not rules:
            raise ValueError("at least one rule is required")

        loop = asyncio.get_running_loop()
        self.handle = handle
        self.snapshot = initial_snapshot(rules, total_patients)
        self.state = PollerState.POLLING
        self._outcome = loop.create_future()
        self._task = loop.create_task(
            self._run(handle, tuple(rules), total_patients, on_update)
        )
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            "Polling execution %s for %d rule(s)", handle.execution_id, len(rules)
        )
        return self._outcome

    def stop(self) -> None:
        """Stop polling now. Safe to call repeatedly and in any state."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            logger.info(
                "Stopped polling execution %s",
                self.handle.execution_id if self.handle else "?",
            )
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(
                ExecutionOutcome(
                    status=ExecutionStatus.CANCELLED,
                    snapshot=self.snapshot,
                    reason="Polling stopped by caller",
                )
            )
        self.state = PollerState.IDLE

    async def wait(self) -> ExecutionOutcome:
        """Wait for the outcome of the current execution."""
        if self._outcome is None:
            raise RuntimeError("Polling has not been started")
        return await asyncio.shield(self._outcome)

    async def _run(
        self,
        handle: ExecutionHandle,
        rules: tuple[RuleSelection, ...],
        total_patients: int,
        on_update: UpdateCallback | None,
    ) -> None:
        while True:
            snapshot = await self._poll_once(handle, rules, total_patients)
            if snapshot is not None:
                self.snapshot = snapshot
                self._notify(on_update, snapshot)
                if snapshot.is_complete:
                    break
            await asyncio.sleep(self.interval)
        logger.info(
            "Execution %s finished with status %s",
            handle.execution_id,
            self.snapshot.status.value if self.snapshot else "?",
        )
        await self._finish(handle)

    async def _poll_once(
        self,
        handle: ExecutionHandle,
        rules: tuple[RuleSelection, ...],
        total_patients: int,
    ) -> ProgressSnapshot | None:
        try:
            data = await self._api.get(progress_path(handle), timeout=self.poll_timeout)
            if not isinstance(data, Mapping):
                raise ValueError(f"progress response is not an object: {data!r:.100}")
            return merge_progress(data, rules, total_patients, self.snapshot)
        except (AutomationApiError, ValueError) as exc:
            # ValidationError is a ValueError; a bad tick is skipped, not fatal.
            logger.warning(
                "Progress poll for execution %s failed, continuing: %s",
                handle.execution_id,
                exc,
            )
            return None

    def _notify(self, on_update: UpdateCallback | None, snapshot: ProgressSnapshot) -> None:
        if on_update is None:
            return
        try:
            on_update(snapshot)
        except Exception:
            logger.exception("Progress update callback failed")

    async def _finish(self, handle: ExecutionHandle) -> None:
        results, reason = await self._fetch_results(handle)
        snapshot = self.snapshot
        if snapshot is not None and snapshot.status is RuleStatus.ERROR:
            status = ExecutionStatus.FAILED
            reason = reason or "Execution reported an error"
            self.state = PollerState.ERRORED
        else:
            status = ExecutionStatus.COMPLETED
            self.state = PollerState.COMPLETED
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(
                ExecutionOutcome(
                    status=status, results=results, snapshot=snapshot, reason=reason
                )
            )

    async def _fetch_results(
        self, handle: ExecutionHandle
    ) -> tuple[tuple[ResultRecord, ...], str | None]:
        try:
            data = await self._api.get(results_path(handle), retry=True)
        except AutomationApiError as exc:
            logger.error(
                "Fetching results for execution %s failed: %s",
                handle.execution_id,
                exc.message,
            )
            return (), f"Failed to fetch results: {exc.message}"

        try:
            response = ResultsResponse.model_validate(data) if isinstance(data, dict) else None
        except ValidationError as exc:
            logger.warning("Malformed results for execution %s: %s", handle.execution_id, exc)
            response = None
        if response is None or response.results is None:
            logger.warning("No results in response for execution %s", handle.execution_id)
            return (), "No results in response"

        records = tuple(reconcile(response.results))
        logger.info(
            "Execution %s: %d result row(s), %d after reconciliation",
            handle.execution_id,
            len(response.results),
            len(records),
        )
        return records, None

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error("Polling task crashed: %s", exc)
        self.state = PollerState.ERRORED
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_exception(exc)
