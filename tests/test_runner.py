import httpx

import runner
from runner import extract_run_due_summary, parse_args

from api.settings import Settings


def test_summary_counts_dispatched_jobs_and_collects_errors():
    result = {
        "count": 3,
        "results": [
            {"job_id": "a", "status": "completed", "run": {"outcome": "success"}},
            {"job_id": "b", "status": "completed", "run": {"outcome": "failure"}},
            {"job_id": "c", "status": "error", "error": "boom"},
            {"job_id": "d", "status": "skipped", "reason": "already running"},
        ],
    }

    count, errors = extract_run_due_summary(result)

    assert count == 3
    assert errors == ["job_id=b: backup failed", "job_id=c: boom"]


def test_summary_of_unexpected_payload():
    count, errors = extract_run_due_summary(["not", "a", "dict"])

    assert count == 0
    assert errors and "list" in errors[0]


def test_cli_defaults_come_from_settings():
    settings = Settings(_env_file=None, RUNNER_MODE="direct", RUNNER_INTERVAL=15, ADMIN_API_KEY="k")

    args = parse_args(settings, ["--once"])

    assert args.mode == "direct"
    assert args.interval == 15
    assert args.api_key == "k"
    assert args.once is True
    assert args.drain is False


async def test_api_cycle_asks_the_service_not_to_wait(monkeypatch):
    seen = []

    def respond(request):
        seen.append(request)
        return httpx.Response(200, json={"message": "due jobs dispatched", "data": {"count": 1, "results": []}})

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        runner.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(respond), **kwargs),
    )

    data = await runner.run_due_via_api("http://autosync:8000/", "k")

    assert data == {"count": 1, "results": []}
    [request] = seen
    assert request.url.path == "/auto-sync/runner/run-due"
    assert request.url.params["wait"] == "false"
    assert request.headers["X-Admin-Key"] == "k"
