from __future__ import annotations

from typing import Any

import anyio
import pytest

from automation_client.api_client import AutomationApiClient
from automation_client.models import (
    ExecutionHandle,
    ExecutionStatus,
    ProgressSnapshot,
    RuleSelection,
    RuleStatus,
)
from automation_client.poller import PollerState, ProgressPoller, merge_progress
from conftest import FakeBackend, result_fragment

HANDLE = ExecutionHandle(execution_id="exec-1", project_name="January cleanup")
PROGRESS = "/rules/progress/exec-1"
RESULTS = "/rules/results/exec-1"
RULES = [RuleSelection(21, "Modifier check"), RuleSelection(30, "Dx order")]


def rule(status: str, percentage: float, processed: int, total: int = 3) -> dict[str, Any]:
    return {
        "status": status,
        "percentage": percentage,
        "patients_processed": processed,
        "total_patients": total,
    }


def progress(status: str, **rules: dict[str, Any]) -> dict[str, Any]:
    return {"status": status, "overall": {"percentage": 50, "current_rule": 30}, **rules}


ALL_DONE = progress(
    "completed",
    rule_21=rule("completed", 100, 3),
    rule_30=rule("completed", 100, 3),
)
RESULTS_BODY = {"results": [result_fragment(a) for a in ("A1", "A2", "A3")]}


class TestMergeProgress:
    def test_missing_rule_is_pending(self) -> None:
        snapshot = merge_progress(
            progress("running", rule_21=rule("running", 40, 1)), RULES, 3
        )
        missing = snapshot.get(30)
        assert missing is not None
        assert missing.status is RuleStatus.PENDING
        assert missing.percentage == 0
        assert missing.total_patients == 3
        assert snapshot.sequence == 1

    def test_terminal_rule_values_are_sticky(self) -> None:
        first = merge_progress(
            progress("running", rule_21=rule("completed", 100, 3)), RULES, 3
        )
        later = merge_progress(
            progress("running", rule_21=rule("running", 10, 0)), RULES, 3, first
        )
        kept = later.get(21)
        assert kept is not None
        assert kept.status is RuleStatus.COMPLETED
        assert kept.percentage == 100
        assert later.sequence == 2

    def test_values_are_clamped(self) -> None:
        snapshot = merge_progress(
            {
                "status": "running",
                "rule_21": rule("running", 150, 9),
                "rule_30": {"status": "running", "percentage": -5},
            },
            RULES,
            3,
        )
        high, low = snapshot.get(21), snapshot.get(30)
        assert high is not None and low is not None
        assert (high.percentage, high.patients_processed) == (100.0, 3)
        assert (low.percentage, low.total_patients) == (0.0, 3)

    def test_overall_kept_when_absent(self) -> None:
        first = merge_progress(progress("running"), RULES, 3)
        later = merge_progress({"status": "running"}, RULES, 3, first)
        assert later.overall is not None
        assert later.overall.percentage == 50
        assert later.overall.current_rule == "30"

    def test_malformed_fragment_raises_value_error(self) -> None:
        with pytest.raises(ValueError):
            merge_progress({"rule_21": {"percentage": "lots"}}, RULES, 3)


def test_poll_timeout_stays_below_interval(api: AutomationApiClient) -> None:
    poller = ProgressPoller(api, interval=1.0, poll_timeout=5.0)
    assert poller.poll_timeout == pytest.approx(0.8)
    with pytest.raises(ValueError):
        ProgressPoller(api, interval=0)


class TestProgressPoller:
    @pytest.mark.anyio
    async def test_straightforward_batch(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add(
            "GET",
            PROGRESS,
            progress(
                "running",
                rule_21=rule("running", 50, 1),
                rule_30=rule("pending", 0, 0),
            ),
            ALL_DONE,
        )
        backend.add("GET", RESULTS, RESULTS_BODY)
        updates: list[ProgressSnapshot] = []

        poller = ProgressPoller(api)
        poller.start(HANDLE, RULES, 3, on_update=updates.append)
        initial = poller.snapshot
        assert initial is not None and initial.sequence == 0
        assert poller.state is PollerState.POLLING
        with anyio.fail_after(5):
            outcome = await poller.wait()

        assert outcome.status is ExecutionStatus.COMPLETED
        assert outcome.succeeded
        assert [r.appointment_id for r in outcome.results] == ["A1", "A2", "A3"]
        assert len(updates) == 2
        first = updates[0]
        first_21, first_30 = first.get(21), first.get(30)
        assert first_21 is not None and first_30 is not None
        assert (first_21.status, first_21.percentage) == (RuleStatus.RUNNING, 50)
        assert (first_30.status, first_30.percentage) == (RuleStatus.PENDING, 0)
        assert not first.is_complete
        assert updates[1].is_complete
        assert outcome.snapshot is not None
        assert [(r.status, r.percentage) for r in outcome.snapshot.rules] == [
            (RuleStatus.COMPLETED, 100),
            (RuleStatus.COMPLETED, 100),
        ]
        assert poller.state is PollerState.COMPLETED
        assert len(backend.calls("GET", PROGRESS)) == 2
        assert len(backend.calls("GET", RESULTS)) == 1

    @pytest.mark.anyio
    async def test_progress_requests_use_poll_timeout(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add("GET", PROGRESS, ALL_DONE)
        backend.add("GET", RESULTS, RESULTS_BODY)
        poller = ProgressPoller(api)
        poller.start(HANDLE, RULES, 3)
        with anyio.fail_after(5):
            await poller.wait()
        request = backend.calls("GET", PROGRESS)[0]
        assert request.extensions["timeout"]["read"] == pytest.approx(0.005)

    @pytest.mark.anyio
    async def test_waits_for_aggregate_status(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        rules_done = progress(
            "running",
            rule_21=rule("completed", 100, 3),
            rule_30=rule("completed", 100, 3),
        )
        backend.add("GET", PROGRESS, rules_done, rules_done, ALL_DONE)
        backend.add("GET", RESULTS, RESULTS_BODY)

        poller = ProgressPoller(api)
        poller.start(HANDLE, RULES, 3)
        with anyio.fail_after(5):
            outcome = await poller.wait()

        assert outcome.status is ExecutionStatus.COMPLETED
        assert len(backend.calls("GET", PROGRESS)) == 3
        assert len(backend.calls("GET", RESULTS)) == 1

    @pytest.mark.anyio
    async def test_missing_rule_blocks_completion(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        partial = progress("completed", rule_21=rule("completed", 100, 3))
        backend.add("GET", PROGRESS, partial, ALL_DONE)
        backend.add("GET", RESULTS, RESULTS_BODY)

        poller = ProgressPoller(api)
        poller.start(HANDLE, RULES, 3)
        with anyio.fail_after(5):
            await poller.wait()

        assert len(backend.calls("GET", PROGRESS)) == 2
        assert len(backend.calls("GET", RESULTS)) == 1

    @pytest.mark.anyio
    async def test_errored_execution_resolves_failed(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add(
            "GET",
            PROGRESS,
            progress(
                "error",
                rule_21=rule("completed", 100, 3),
                rule_30=rule("error", 30, 1),
            ),
        )
        backend.add("GET", RESULTS, RESULTS_BODY)

        poller = ProgressPoller(api)
        poller.start(HANDLE, RULES, 3)
        with anyio.fail_after(5):
            outcome = await poller.wait()

        assert outcome.status is ExecutionStatus.FAILED
        assert outcome.reason == "Execution reported an error"
        assert len(outcome.results) == 3
        assert outcome.snapshot is not None
        assert outcome.snapshot.get(30).failed  # type: ignore[union-attr]
        assert poller.state is PollerState.ERRORED

    @pytest.mark.anyio
    async def test_transient_failures_are_skipped(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add(
            "GET",
            PROGRESS,
            (500, {"detail": "hiccup"}),
            ["not", "an", "object"],
            {"status": "running", "rule_21": {"percentage": "lots"}},
            ALL_DONE,
        )
        backend.add("GET", RESULTS, RESULTS_BODY)
        updates: list[ProgressSnapshot] = []

        poller = ProgressPoller(api)
        poller.start(HANDLE, RULES, 3, on_update=updates.append)
        with anyio.fail_after(5):
            outcome = await poller.wait()

        assert outcome.status is ExecutionStatus.COMPLETED
        assert len(updates) == 1
        assert updates[0].sequence == 1
        assert len(backend.calls("GET", PROGRESS)) == 4

    @pytest.mark.anyio
    async def test_results_failure_still_resolves(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add("GET", PROGRESS, ALL_DONE)
        backend.add("GET", RESULTS, (500, {"detail": "down"}))

        poller = ProgressPoller(api)
        poller.start(HANDLE, RULES, 3)
        with anyio.fail_after(5):
            outcome = await poller.wait()

        assert outcome.status is ExecutionStatus.COMPLETED
        assert outcome.results == ()
        assert outcome.reason == "Failed to fetch results: down"
        assert len(backend.calls("GET", RESULTS)) == 3

    @pytest.mark.anyio
    async def test_missing_results_still_resolves(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add("GET", PROGRESS, ALL_DONE)
        backend.add("GET", RESULTS, {"project_name": "January cleanup"})

        poller = ProgressPoller(api)
        poller.start(HANDLE, RULES, 3)
        with anyio.fail_after(5):
            outcome = await poller.wait()

        assert outcome.results == ()
        assert outcome.reason == "No results in response"

    @pytest.mark.anyio
    async def test_callback_errors_do_not_stop_polling(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add("GET", PROGRESS, progress("running"), ALL_DONE)
        backend.add("GET", RESULTS, RESULTS_BODY)

        def explode(_snapshot: ProgressSnapshot) -> None:
            raise RuntimeError("display broke")

        poller = ProgressPoller(api)
        poller.start(HANDLE, RULES, 3, on_update=explode)
        with anyio.fail_after(5):
            outcome = await poller.wait()
        assert outcome.status is ExecutionStatus.COMPLETED

    @pytest.mark.anyio
    async def test_stop_is_idempotent_and_cancels(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add("GET", PROGRESS, progress("running", rule_21=rule("running", 10, 0)))

        poller = ProgressPoller(api)
        poller.start(HANDLE, RULES, 3)
        with anyio.fail_after(5):
            while not backend.calls("GET", PROGRESS):
                await anyio.sleep(0.005)
        poller.stop()
        poller.stop()

        outcome = await poller.wait()
        assert outcome.status is ExecutionStatus.CANCELLED
        assert poller.state is PollerState.IDLE
        polls = len(backend.calls("GET", PROGRESS))
        await anyio.sleep(0.05)
        assert len(backend.calls("GET", PROGRESS)) == polls
        assert backend.calls("GET", RESULTS) == []

    @pytest.mark.anyio
    async def test_outcome_resolves_once(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add("GET", PROGRESS, ALL_DONE)
        backend.add("GET", RESULTS, RESULTS_BODY)

        poller = ProgressPoller(api)
        poller.start(HANDLE, RULES, 3)
        with anyio.fail_after(5):
            outcome = await poller.wait()
        poller.stop()
        assert (await poller.wait()) is outcome
        assert outcome.status is ExecutionStatus.COMPLETED

    @pytest.mark.anyio
    async def test_start_while_polling_is_rejected(
        self, api: AutomationApiClient, backend: FakeBackend
    ) -> None:
        backend.add("GET", PROGRESS, progress("running"))
        poller = ProgressPoller(api)
        poller.start(HANDLE, RULES, 3)
        try:
            with pytest.raises(RuntimeError):
                poller.start(HANDLE, RULES, 3)
        finally:
            poller.stop()

    @pytest.mark.anyio
    async def test_wait_before_start(self, api: AutomationApiClient) -> None:
        with pytest.raises(RuntimeError):
            await ProgressPoller(api).wait()
