import sys
import os
import ssl
import pytest
from fastapi.testclient import TestClient
from typing import Generator, List

# Add the backend directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Override settings for testing
os.environ["APP_ENV"] = "test"
os.environ["LOG_LEVEL"] = "warning"
os.environ["LOCATION_LOOKUP_ENABLED"] = "false"

from sitecheck.core import check_registry_provider
from sitecheck.core.check_registry_provider import get_probe_executor
from sitecheck.main import app
from sitecheck.schemas.check import StageStatus, StreamEvent
from sitecheck.services.probe_executor import ProbeExecutor, ProbeTimeouts

from probe_fakes import FakeBackend, static_resolver

FAST_TIMEOUTS = ProbeTimeouts(dns=1.0, connect=1.0, tls=1.0, first_byte=1.0, download=1.0)

_STATUS_RANK = {
    StageStatus.IDLE: 0,
    StageStatus.LOADING: 1,
    StageStatus.SUCCESS: 2,
    StageStatus.ERROR: 2,
}


def make_executor(backend=None, resolver=None, **kwargs) -> ProbeExecutor:
    kwargs.setdefault("timeouts", FAST_TIMEOUTS)
    kwargs.setdefault("ssl_context", ssl.create_default_context())
    return ProbeExecutor(
        resolver=resolver or static_resolver(),
        network_backend=backend or FakeBackend(),
        **kwargs,
    )


def assert_run_invariants(events: List[StreamEvent]) -> None:
    """Properties every emitted event sequence must hold."""
    assert events, "no events were published"
    assert [event.data.is_complete for event in events] == [False] * (len(events) - 1) + [True]
    assert [event.type for event in events] == ["update"] * (len(events) - 1) + ["final"]

    previous_total = 0
    previous_ranks = [0] * 5
    for event in events:
        result = event.data
        assert result.total_response_time == result.attributed_time()
        assert result.total_response_time >= previous_total
        previous_total = result.total_response_time

        ranks = [_STATUS_RANK[stage.status] for stage in result.stages]
        assert all(now >= before for now, before in zip(ranks, previous_ranks))
        previous_ranks = ranks

        failed = [i for i, stage in enumerate(result.stages) if stage.status == StageStatus.ERROR]
        if failed:
            assert all(stage.status == StageStatus.IDLE for stage in result.stages[failed[0] + 1:])

    final = events[-1].data
    if final.is_success:
        assert final.error_message == ""
    else:
        assert final.error_message


async def drain(stream) -> List[StreamEvent]:
    return [event async for event in stream]


@pytest.fixture
def executor() -> ProbeExecutor:
    return make_executor()


@pytest.fixture
def client(executor) -> Generator:
    app.dependency_overrides[get_probe_executor] = lambda: executor
    check_registry_provider.check_registry = None
    try:
        with TestClient(app, base_url="http://test") as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_probe_executor, None)
