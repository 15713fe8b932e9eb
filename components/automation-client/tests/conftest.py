from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
from tenacity import wait_none

from automation_client.api_client import AutomationApiClient
from automation_client.config import AutomationConfig

BASE_URL = "https://automation.test"


class FakeBackend:
    """Scripted rules backend behind ``httpx.MockTransport``.

    Each route holds a queue of replies; the last reply repeats once the
    queue is drained. A reply is a dict/list (200 JSON), a ``(status, body)``
    tuple, an exception to raise, or a callable taking the request.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Any]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, *replies: Any) -> None:
        self.routes[(method.upper(), path)] = list(replies)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method.upper() and r.url.path == path
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"detail": "route not scripted"})
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        if isinstance(reply, tuple):
            status, body = reply
            if body is None:
                return httpx.Response(status)
            return httpx.Response(status, json=body)
        return httpx.Response(200, json=reply)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content)


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def isolate_cache_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    cache_root = tmp_path / "automation_cache"
    cache_root.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("AUTOMATION_CACHE_DIR", str(cache_root))
    return cache_root


@pytest.fixture()
def config(isolate_cache_dir: Path) -> AutomationConfig:
    return AutomationConfig(
        base_url=BASE_URL,
        access_token="token",
        refresh_token="refresh",
        poll_interval=0.01,
        poll_timeout=0.005,
        cache_dir=str(isolate_cache_dir),
    )


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def make_api(backend: FakeBackend) -> Callable[[AutomationConfig], AutomationApiClient]:
    def _make(cfg: AutomationConfig) -> AutomationApiClient:
        return AutomationApiClient(cfg, transport=backend.transport, retry_wait=wait_none())

    return _make


@pytest.fixture()
def api(
    make_api: Callable[[AutomationConfig], AutomationApiClient],
    config: AutomationConfig,
) -> AutomationApiClient:
    return make_api(config)


@pytest.fixture()
def patient_rows() -> list[dict[str, str]]:
    return [
        {
            "appointmentid": "A1",
            "appointmentdate": "2025-01-05",
            "patientid": "P1",
            "firstname": "Ada",
            "lastname": "Lovelace",
            "dob": "1990-12-10",
        },
        {
            "appointmentid": "A2",
            "appointmentdate": "01/06/2025",
            "patientid": "P2",
            "firstname": "Alan",
            "lastname": "Turing",
            "dob": "",
        },
        {
            "appointmentid": "A3",
            "appointmentdate": "2025-01-07T09:00:00Z",
            "patientid": "P3",
            "firstname": "Grace",
            "lastname": "Hopper",
            "dob": None,
        },
    ]


def result_fragment(
    appointment_id: str,
    *,
    changes: int = 0,
    no_change: int = 0,
    not_met: int = 0,
    errors: int = 0,
    details: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    return {
        "appointment_id": appointment_id,
        "appointment_date": "01/05/2025",
        "patientid": f"P-{appointment_id}",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "dob": "12/10/1990",
        "status_1_changes_made": changes,
        "status_2_condition_met_no_changes": no_change,
        "status_3_condition_not_met": not_met,
        "status_4_errors": errors,
        "details": details or [],
    }
