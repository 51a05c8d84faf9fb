"""Tests for the sweep poller."""
import httpx

from changeflow_core import poller


def _client(handler) -> httpx.Client:
    return httpx.Client(
        base_url="http://changeflow.test/api/v1",
        transport=httpx.MockTransport(handler),
        headers={"Authorization": "Bearer secret"},
    )


def test_run_sweep_posts_to_sweep_endpoint():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={
            "success": True,
            "autoStarted": 2,
            "completionPrompts": 1,
            "skipped": 0,
            "errors": [],
            "timestamp": "2026-03-02T09:00:00",
        })

    with _client(handler) as client:
        body = poller.run_sweep(client)

    assert seen["url"] == "http://changeflow.test/api/v1/automation/sweep"
    assert seen["auth"] == "Bearer secret"
    assert body["autoStarted"] == 2


def test_run_sweep_returns_none_when_rejected():
    with _client(lambda request: httpx.Response(401, json={"detail": "Unauthorized"})) as client:
        assert poller.run_sweep(client) is None


def test_run_sweep_returns_none_when_unreachable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with _client(handler) as client:
        assert poller.run_sweep(client) is None


def test_main_refuses_to_run_without_token():
    assert poller.main(["--once", "--token", ""]) == 2
