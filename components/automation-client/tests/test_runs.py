from __future__ import annotations

from datetime import date

import pytest

from automation_client.api_client import AutomationApiClient
from automation_client.errors import RunNotFoundError
from automation_client.runs import CatalogClient, RunsClient
from conftest import FakeBackend, request_json, result_fragment


class TestRunsClient:
    @pytest.mark.anyio
    async def test_list_runs(self, api: AutomationApiClient, backend: FakeBackend) -> None:
        backend.add(
            "GET",
            "/rules/runs",
            [
                {"id": 10000004, "project_name": "January cleanup", "run_date": "2025-01-31"},
                "not a row",
            ],
        )
        runs = await RunsClient(api).list_runs()
        assert len(runs) == 1
        assert runs[0].id == "10000004"
        assert runs[0].project_name == "January cleanup"
        assert runs[0].created_at == "2025-01-31"

    @pytest.mark.anyio
    async def test_run_detail_is_reconciled(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add(
            "POST",
            "/rules/project-results",
            {
                "project_name": "January cleanup",
                "results": [
                    result_fragment("A1", changes=1, details=[{"rule_number": 21}]),
                    result_fragment("A1", changes=1, details=[{"rule_number": 30}]),
                    result_fragment("A2", not_met=1),
                ],
            },
        )

        detail = await RunsClient(api).get_run_detail("10000004")

        request = backend.calls("POST", "/rules/project-results")[0]
        assert request.url.params["project_id"] == "10000004"
        assert request_json(request) == {"project_id": "10000004"}
        assert detail.project_name == "January cleanup"
        assert [r.appointment_id for r in detail.results] == ["A1", "A2"]
        a1 = detail.find("A1")
        assert a1 is not None and a1.changes_made == 2
        assert detail.find("missing") is None

    @pytest.mark.anyio
    async def test_run_detail_not_found(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add("POST", "/rules/project-results", (404, {"detail": "no such project"}))
        with pytest.raises(RunNotFoundError, match="no such project"):
            await RunsClient(api).get_run_detail("123")

    @pytest.mark.anyio
    async def test_archive_returns_message(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add(
            "POST",
            "/rules/runs/10000004/archive",
            {"success": True, "message": "Project archived"},
        )
        assert await RunsClient(api).archive_run("10000004") == "Project archived"

    @pytest.mark.anyio
    async def test_archive_default_message(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add("POST", "/rules/runs/10000004/archive", {"success": True})
        message = await RunsClient(api).archive_run("10000004")
        assert "10000004" in message

    @pytest.mark.anyio
    async def test_archive_unknown_run(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add(
            "POST",
            "/rules/runs/999/archive",
            (404, {"detail": "Project with ID '999' not found"}),
        )
        with pytest.raises(RunNotFoundError) as exc_info:
            await RunsClient(api).archive_run("999")
        assert exc_info.value.status_code == 404


class TestCatalogClient:
    @pytest.mark.anyio
    async def test_list_rules(self, api: AutomationApiClient, backend: FakeBackend) -> None:
        backend.add(
            "GET",
            "/rules/list",
            {"rules": [{"rule_number": 21, "name": "Modifier check"}, {"name": "broken"}]},
        )
        rules = await CatalogClient(api).list_rules()
        assert [(r.rule_number, r.name) for r in rules] == [(21, "Modifier check")]

    @pytest.mark.anyio
    async def test_list_patients_formats_range(
        self,
        api: AutomationApiClient,
        backend: FakeBackend,
        patient_rows: list[dict[str, str]],
    ) -> None:
        backend.add("GET", "/patients/list", patient_rows)

        patients = await CatalogClient(api).list_patients(date(2025, 1, 1), "2025-01-31")

        request = backend.calls("GET", "/patients/list")[0]
        assert request.url.params["start_date"] == "01/01/2025"
        assert request.url.params["end_date"] == "01/31/2025"
        assert request.headers["X-Athena-Environment"] == "sandbox"
        assert [p.appointment_id for p in patients] == ["A1", "A2", "A3"]

    @pytest.mark.anyio
    async def test_list_patients_requires_dates(self, api: AutomationApiClient) -> None:
        with pytest.raises(ValueError):
            await CatalogClient(api).list_patients("soon", "later")
