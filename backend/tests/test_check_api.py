import asyncio
import json

import pytest

from sitecheck.api.v1.endpoints import checks
from sitecheck.core.check_registry_provider import get_check_registry
from sitecheck.schemas.check import CheckRequest, StageId, StageStatus, StreamEvent
from sitecheck.services.check_registry import CheckRegistry
from sitecheck.services.check_session import CheckSession, SessionState
from sitecheck.services.probe_executor import ProbeTimeouts

from conftest import assert_run_invariants, drain, make_executor
from probe_fakes import FakeBackend


def _events(response):
    return [StreamEvent.model_validate(json.loads(line)) for line in response.text.splitlines() if line]


def test_check_streams_ndjson_until_final(client):
    response = client.post("/api/v1/check-website", json={"url": "example.com"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    assert response.headers["x-check-id"]
    assert response.headers["x-request-id"]

    events = _events(response)
    assert_run_invariants(events)
    assert events[-1].data.is_success
    # the stream removes its own registration once the final event is sent
    assert len(get_check_registry()) == 0


def test_check_failure_still_ends_with_final_event(client):
    response = client.post("/api/v1/check-website", json={"url": "https://exa mple.com"})

    events = _events(response)
    assert_run_invariants(events)
    assert events[-1].type == "final"
    assert events[-1].data.error_message == "Invalid domain"


def test_wire_lines_use_camel_case(client):
    response = client.post("/api/v1/check-website", json={"url": "http://example.com"})

    first = json.loads(response.text.splitlines()[0])
    assert first["type"] == "update"
    assert {"stages", "isComplete", "isSuccess", "totalResponseTime"} <= set(first["data"])


def test_empty_url_is_rejected_without_echoing_body(client):
    response = client.post("/api/v1/check-website", json={"url": ""})

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail[0]["loc"] == ["body", "url"]
    assert "input" not in detail[0]


def test_delete_unknown_check_is_404(client):
    response = client.delete("/api/v1/check-website/does-not-exist")
    assert response.status_code == 404


def test_delete_stops_running_check(client):
    registry = get_check_registry()
    backend = FakeBackend(connect_delay=3600)
    executor = make_executor(backend, timeouts=ProbeTimeouts(connect=30.0))

    async def start():
        session = CheckSession(executor)
        check_id = await registry.register(session)
        return check_id, await session.start("example.com")

    check_id, stream = client.portal.call(start)

    response = client.delete(f"/api/v1/check-website/{check_id}")
    assert response.status_code == 202
    assert response.json() == {"check_id": check_id, "status": "cancellation_requested"}

    events = client.portal.call(drain, stream)
    assert events[-1].data.error_message == "Check stopped by user"
    assert client.delete(f"/api/v1/check-website/{check_id}").status_code == 404


def test_health_endpoints(client):
    assert client.get("/health").json() == {"status": "ok"}

    versioned = client.get("/api/v1/health").json()
    assert versioned == {"status": "ok", "active_checks": 0}


def test_request_id_is_propagated_when_valid(client):
    response = client.get("/health", headers={"X-Request-ID": "trace-123"})
    assert response.headers["x-request-id"] == "trace-123"

    response = client.get("/health", headers={"X-Request-ID": "bad id with spaces"})
    assert response.headers["x-request-id"] != "bad id with spaces"


def test_oversized_body_is_rejected(client):
    response = client.post(
        "/api/v1/check-website",
        content=b"{" + b" " * (70 * 1024) + b"}",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 413


@pytest.mark.asyncio
async def test_client_disconnect_stops_check_and_forgets_it():
    backend = FakeBackend(connect_delay=3600)
    executor = make_executor(backend, timeouts=ProbeTimeouts(connect=30.0))
    registry = CheckRegistry()

    response = await checks.check_website(CheckRequest(url="example.com"), registry=registry, executor=executor)
    session = registry.get(response.headers["x-check-id"])
    disconnected = asyncio.Event()
    received = []

    async def receive():
        await disconnected.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        if message["type"] != "http.response.body":
            return
        for line in message.get("body", b"").decode().splitlines():
            event = StreamEvent.model_validate(json.loads(line))
            received.append(event)
            if event.data.stage(StageId.CONNECTION).status == StageStatus.LOADING:
                disconnected.set()

    scope = {"type": "http", "asgi": {"version": "3.0"}, "method": "POST", "path": "/api/v1/check-website", "headers": []}
    await asyncio.wait_for(response(scope, receive, send), timeout=2.0)

    assert disconnected.is_set()
    assert all(event.type == "update" for event in received)
    assert backend.connect_cancelled
    assert len(registry) == 0
    assert session.state == SessionState.CANCELLED
    assert session.stream.final_event.data.error_message == "Check stopped by user"
