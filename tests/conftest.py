"""Test fixtures and utilities."""

import json
from collections import defaultdict
from typing import Any, Callable, Optional

import httpx
import pytest

from docdesk_uploads.config import Config, DashboardConfig, PollingConfig, default_flows
from docdesk_uploads.dashboard_client import DashboardClient, UploadFile
from docdesk_uploads.schemas.jobs import JobStatus, JobStatusReport
from docdesk_uploads.services.session import SessionObserver

BASE_URL = "http://dashboard.test"
TOKEN = "test-token-12345"


class RecordingObserver(SessionObserver):
    """Collects every state and job notification a session publishes."""

    def __init__(self):
        self.states = []
        self.finished_jobs = []

    def on_state(self, state):
        self.states.append(state)

    def on_job_finished(self, job_state):
        self.finished_jobs.append(job_state)

    @property
    def last(self):
        return self.states[-1]

    @property
    def percentages(self) -> list[int]:
        """Distinct displayed percentages, in publication order."""
        seen: list[int] = []
        for state in self.states:
            if not seen or seen[-1] != state.percentage:
                seen.append(state.percentage)
        return seen


class ScriptedPoller:
    """
    poll_one replacement driven by a script per job.

    Each call for a job consumes the next scripted entry; the last entry
    repeats. Entries are status strings, JobStatusReport objects or
    exceptions (raised).
    """

    def __init__(self, script: dict[str, list[Any]]):
        self.script = {job_id: list(entries) for job_id, entries in script.items()}
        self.calls: dict[str, int] = defaultdict(int)

    async def __call__(self, job_id: str) -> JobStatusReport:
        entries = self.script[job_id]
        entry = entries[min(self.calls[job_id], len(entries) - 1)]
        self.calls[job_id] += 1
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, JobStatusReport):
            return entry
        return JobStatusReport(job_id=job_id, status=JobStatus.parse(entry))

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())


class StatusRoutes:
    """
    MockTransport handler: scripted job status endpoints plus fixed routes.

    job_script maps job_id -> list of JSON bodies (or (status_code, body)
    tuples), consumed one per request, the last one repeating.
    """

    def __init__(self, routes: Optional[dict[tuple[str, str], Any]] = None, job_script=None):
        self.routes = dict(routes or {})
        self.job_script = {k: list(v) for k, v in (job_script or {}).items()}
        self.job_calls: dict[str, int] = defaultdict(int)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "GET" and ("/jobs/" in path or "/batch-jobs/" in path):
            job_id = path.rstrip("/").rsplit("/", 1)[-1]
            entries = self.job_script.get(job_id)
            if not entries:
                return httpx.Response(404, json={"success": False, "message": "Job not found"})
            entry = entries[min(self.job_calls[job_id], len(entries) - 1)]
            self.job_calls[job_id] += 1
            return _as_response(entry)

        route = self.routes.get((request.method, path))
        if route is None:
            route = self.routes.get((request.method, str(request.url)))
        if route is None:
            return httpx.Response(404, json={"detail": f"No route for {request.method} {path}"})
        if callable(route):
            return route(request)
        return _as_response(route)

    def requests_to(self, method: str, fragment: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and fragment in str(r.url)]


def _as_response(entry: Any) -> httpx.Response:
    if isinstance(entry, httpx.Response):
        return entry
    if isinstance(entry, tuple):
        status_code, body = entry
        return httpx.Response(status_code, json=body)
    return httpx.Response(200, json=entry)


def encode_events(*events: dict) -> bytes:
    """Encode events as a server-sent event stream."""
    chunks = [": keep-alive\n\n"]
    chunks.extend(f"data: {json.dumps(event)}\n\n" for event in events)
    return "".join(chunks).encode()


@pytest.fixture
def make_client() -> Callable[[Callable], DashboardClient]:
    """Build a DashboardClient whose requests go to a handler."""

    def factory(handler) -> DashboardClient:
        return DashboardClient(BASE_URL, TOKEN, transport=httpx.MockTransport(handler))

    return factory


@pytest.fixture
def make_file() -> Callable[..., UploadFile]:
    def factory(name: str, content: bytes = b"%PDF-1.4 test", content_type: str = "application/pdf"):
        return UploadFile(filename=name, content=content, content_type=content_type)

    return factory


@pytest.fixture
def fast_config() -> Config:
    """Stock flows with polling fast enough for tests."""
    flows = default_flows()
    for flow in flows.values():
        flow.polling = PollingConfig(
            interval_seconds=0.01, max_attempts=flow.polling.max_attempts
        )
    return Config(dashboard=DashboardConfig(base_url=BASE_URL, token=TOKEN), flows=flows)


@pytest.fixture
def recording_observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def scripted_poller() -> Callable[[dict], ScriptedPoller]:
    return ScriptedPoller


@pytest.fixture
def status_routes() -> Callable[..., StatusRoutes]:
    return StatusRoutes


@pytest.fixture
def sample_duplicate_failure() -> dict:
    """failed_files entry for an upload matching an existing invoice."""
    return {
        "file": "inv-0042.pdf",
        "type": "duplicate",
        "reason": "Duplicate invoice",
        "extracted": {
            "vendor_name": "Acme Supplies",
            "invoice_no": "INV-0042",
            "invoice_date": "2024-11-20",
            "total": 2023.0,
        },
        "duplicate_of": {
            "id": 42,
            "vendor_name": "Acme Supplies",
            "invoice_no": "INV-0042",
            "invoice_date": "2024-11-20",
            "total": 2023.0,
            "status": "verified",
        },
    }


@pytest.fixture
def sse_body() -> Callable[..., bytes]:
    return encode_events
