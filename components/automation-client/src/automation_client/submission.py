"""Non-blocking submission of patient batches to the rules engine."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any, cast

import diskcache  # type: ignore[import-untyped]
from platformdirs import user_cache_dir
from pydantic import ValidationError

from automation_client.api_client import AutomationApiClient
from automation_client.errors import (
    AutomationApiError,
    AutomationApiTimeoutError,
    MissingExecutionIdError,
    SubmissionFailedError,
)
from automation_client.models import Batch, ExecutionHandle, PatientRecord
from automation_client.schemas import PatientPayload, RunRequest, SubmitResponse

logger = logging.getLogger(__name__)

RUN_PATH = "/rules/run"
RUNS_PATH = "/rules/runs"
PROJECT_ID_MIN = 10000001
PROJECT_ID_MAX = 19999999
_LAST_PROJECT_ID_KEY = "last_project_id"


def dedupe_patients(patients: Iterable[PatientRecord]) -> list[PatientRecord]:
    """Drop repeated appointment ids, keeping the first occurrence."""
    unique: list[PatientRecord] = []
    seen: set[str] = set()
    for patient in patients:
        if patient.appointment_id in seen:
            logger.warning(
                "Skipping duplicate appointment %s in batch", patient.appointment_id
            )
            continue
        seen.add(patient.appointment_id)
        unique.append(patient)
    return unique


def build_run_request(batch: Batch) -> RunRequest:
    """Validate a batch and build the ``POST /rules/run`` body.

    Raises:
        ValueError: If the batch has no patients, no rules, a patient without an
            appointment id, or an empty name.
    """
    if not batch.patients:
        raise ValueError("patients are required")
    if not batch.rules:
        raise ValueError("rules are required")
    if not batch.name.strip():
        raise ValueError("project name is required")
    missing = [p for p in batch.patients if not p.appointment_id.strip()]
    if missing:
        raise ValueError(f"{len(missing)} patient(s) have no appointment id")

    patients = dedupe_patients(batch.patients)
    return RunRequest(
        project_name=batch.name,
        project_id=batch.project_id,
        add_modifiers=batch.add_modifiers,
        is_rollback=False,
        patients=[PatientPayload(**p.to_payload()) for p in patients],
        rules=[rule.rule_number for rule in batch.rules],
    )


class JobSubmissionClient:
    """Submits batches and returns the execution handle immediately.

    Submission is never retried: a second submit would process the same
    patients twice. Callers resubmit explicitly.
    """

    def __init__(self, api: AutomationApiClient) -> None:
        self._api = api

    async def submit(self, batch: Batch) -> ExecutionHandle:
        """Submit ``batch`` to the rules engine.

        Returns:
            Handle of the backend execution.

        Raises:
            ValueError: If the batch is invalid.
            SubmissionFailedError: On network, timeout or HTTP failure.
            MissingExecutionIdError: If the response has no execution id.
        """
        request = build_run_request(batch)
        logger.info(
            "Submitting run %r: %d patient(s), %d rule(s)",
            request.project_name,
            len(request.patients),
            len(request.rules),
        )
        try:
            data = await self._api.post(
                RUN_PATH,
                json=request.model_dump(exclude_none=True),
                timeout=self._api.config.submit_timeout,
            )
        except AutomationApiTimeoutError as exc:
            logger.error("Run submission timed out: %s", exc.message)
            raise SubmissionFailedError(
                "Processing is taking longer than expected. The backend may be "
                "handling a large number of patients; try again with fewer.",
                cause=exc,
            ) from exc
        except AutomationApiError as exc:
            logger.error("Run submission failed: %s", exc.message)
            raise SubmissionFailedError(
                exc.message or "Failed to process rules. Please try again.",
                cause=exc,
            ) from exc

        execution_id = _read_execution_id(data)
        if execution_id is None:
            logger.error("Run submission returned no execution_id: %r", data)
            raise MissingExecutionIdError(data)

        logger.info("Run %r started as execution %s", request.project_name, execution_id)
        return ExecutionHandle(
            execution_id=execution_id,
            project_name=request.project_name,
            project_id=request.project_id,
        )


def _read_execution_id(data: object) -> str | None:
    if not isinstance(data, dict):
        return None
    try:
        response = SubmitResponse.model_validate(data)
    except ValidationError:
        return None
    if response.execution_id is None or str(response.execution_id).strip() == "":
        return None
    return str(response.execution_id)


def _as_project_id(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
    else:
        return None
    return number if PROJECT_ID_MIN <= number <= PROJECT_ID_MAX else None


def next_project_id(runs: Sequence[Mapping[str, Any]]) -> str:
    """Next readable 8-digit project id after the highest one in ``runs``.

    Examples:
        >>> next_project_id([{"id": 10000004}, {"id": "10000009"}, {"id": "abc"}])
        '10000010'
        >>> next_project_id([])
        '10000001'
    """
    highest = PROJECT_ID_MIN - 1
    for run in runs:
        number = _as_project_id(run.get("id"))
        if number is not None:
            highest = max(highest, number)
    return str(highest + 1)


class ProjectIdStore:
    """Locally persisted last project id, used when the runs list is unavailable."""

    def __init__(self, cache_dir: str | None = None) -> None:
        default_cache = Path(user_cache_dir("automation-client", "medofficehq"))
        path = Path(cache_dir) if cache_dir else default_cache
        path.mkdir(parents=True, exist_ok=True)
        self._cache = diskcache.Cache(str(path / "project-ids"))

    def last(self) -> str | None:
        return cast(str | None, self._cache.get(_LAST_PROJECT_ID_KEY))

    def record(self, project_id: str) -> None:
        self._cache.set(_LAST_PROJECT_ID_KEY, project_id)

    def next(self) -> str:
        number = _as_project_id(self.last())
        return str(number + 1) if number is not None else str(PROJECT_ID_MIN)

    def close(self) -> None:
        self._cache.close()


class ProjectIdAllocator:
    """Allocates readable sequential project ids for new runs."""

    def __init__(self, api: AutomationApiClient, store: ProjectIdStore) -> None:
        self._api = api
        self._store = store

    async def allocate(self) -> str:
        """Return the next project id, preferring the backend's runs list."""
        try:
            runs = await self._api.get(RUNS_PATH, timeout=self._api.config.request_timeout)
        except AutomationApiError as exc:
            logger.warning("Could not fetch runs for project id, using local store: %s", exc)
            project_id = self._store.next()
        else:
            rows = [run for run in runs or [] if isinstance(run, Mapping)]
            project_id = next_project_id(rows)
        self._store.record(project_id)
        return project_id
