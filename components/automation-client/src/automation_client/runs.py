"""Run history and the rule/patient catalog."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from pydantic import ValidationError

from automation_client.api_client import AutomationApiClient
from automation_client.dates import DateLike, normalize_date
from automation_client.errors import (
    AutomationApiError,
    AutomationApiNotFoundError,
    RunNotFoundError,
)
from automation_client.models import PatientRecord, RuleSelection, RunDetail, RunSummary
from automation_client.reconciler import reconcile
from automation_client.schemas import ResultsResponse
from automation_client.submission import RUNS_PATH

logger = logging.getLogger(__name__)

PROJECT_RESULTS_PATH = "/rules/project-results"
RULES_LIST_PATH = "/rules/list"
PATIENTS_LIST_PATH = "/patients/list"


def _rows(data: object) -> list[Mapping[str, object]]:
    if not isinstance(data, list):
        return []
    return [row for row in data if isinstance(row, Mapping)]


class RunsClient:
    """Lists, inspects and archives past runs."""

    def __init__(self, api: AutomationApiClient) -> None:
        self._api = api

    async def list_runs(self) -> list[RunSummary]:
        data = await self._api.get(RUNS_PATH, retry=True)
        runs = [RunSummary.from_mapping(row) for row in _rows(data)]
        logger.debug("Fetched %d run(s)", len(runs))
        return runs

    async def get_run_detail(self, project_id: str) -> RunDetail:
        """Fetch a run's results, merged to one record per appointment.

        Raises:
            RunNotFoundError: If the backend does not know ``project_id``.
            AutomationApiError: On other API failures or a malformed response.
        """
        try:
            data = await self._api.post(
                PROJECT_RESULTS_PATH,
                params={"project_id": project_id},
                json={"project_id": project_id},
                timeout=self._api.config.submit_timeout,
                retry=True,
            )
        except AutomationApiNotFoundError as exc:
            raise RunNotFoundError(
                exc.message or f"Project with ID '{project_id}' not found",
                exc.status_code,
                exc.response_body,
            ) from exc

        try:
            response = ResultsResponse.model_validate(data if data is not None else {})
        except ValidationError as exc:
            raise AutomationApiError(
                f"Malformed run detail for project {project_id}"
            ) from exc

        results = tuple(reconcile(response.results or []))
        logger.info("Run %s: %d patient record(s)", project_id, len(results))
        return RunDetail(
            project_id=project_id,
            project_name=response.project_name or "",
            results=results,
        )

    async def archive_run(self, run_id: str) -> str:
        """Archive (soft delete) a run.

        Returns:
            The backend's confirmation message.

        Raises:
            RunNotFoundError: If the run does not exist.
        """
        try:
            data = await self._api.post(f"{RUNS_PATH}/{run_id}/archive")
        except AutomationApiNotFoundError as exc:
            raise RunNotFoundError(
                exc.message or f"Project with ID '{run_id}' not found",
                exc.status_code,
                exc.response_body,
            ) from exc
        message = data.get("message") if isinstance(data, Mapping) else None
        logger.info("Archived run %s", run_id)
        return str(message) if message else f"Project {run_id} archived successfully"


class CatalogClient:
    """Rules available to run and patients available to process."""

    def __init__(self, api: AutomationApiClient) -> None:
        self._api = api

    async def list_rules(self) -> list[RuleSelection]:
        data = await self._api.get(RULES_LIST_PATH, retry=True)
        rows = _rows(data.get("rules")) if isinstance(data, Mapping) else []
        return [RuleSelection.from_mapping(row) for row in rows if row.get("rule_number")]

    async def list_patients(self, start: DateLike, end: DateLike) -> list[PatientRecord]:
        """Encounters between ``start`` and ``end`` inclusive.

        Large ranges are batched by the backend and can take minutes, so the
        extended timeout applies.

        Raises:
            ValueError: If either date cannot be parsed.
        """
        start_date, end_date = normalize_date(start), normalize_date(end)
        if not start_date or not end_date:
            raise ValueError("start and end dates are required")
        data = await self._api.get(
            PATIENTS_LIST_PATH,
            params={"start_date": start_date, "end_date": end_date},
            timeout=self._api.config.submit_timeout,
        )
        patients = [PatientRecord.from_mapping(row) for row in _rows(data)]
        logger.info(
            "Fetched %d patient(s) between %s and %s", len(patients), start_date, end_date
        )
        return patients
