from typing import Optional

from sitecheck.core.config import settings
from sitecheck.services.check_registry import CheckRegistry
from sitecheck.services.probe_executor import ProbeExecutor

check_registry: Optional[CheckRegistry] = None
probe_executor: Optional[ProbeExecutor] = None


def get_check_registry() -> CheckRegistry:
    global check_registry
    if check_registry is None:
        check_registry = CheckRegistry()
    return check_registry


def get_probe_executor() -> ProbeExecutor:
    """Shared executor configured from settings; executors keep no per-run state."""
    global probe_executor
    if probe_executor is None:
        probe_executor = ProbeExecutor.from_settings(settings)
    return probe_executor


async def shutdown_check_registry() -> None:
    """Stop every check that is still streaming."""
    if check_registry is not None:
        await check_registry.stop_all()
