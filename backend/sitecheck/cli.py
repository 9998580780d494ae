#!/usr/bin/env python3
"""
Command-line entry point for sitecheck.

  sitecheck check example.com               probe in-process
  sitecheck check example.com --server URL  probe through a running server
  sitecheck serve                           run the streaming API

Exit codes:
  0 - the target is reachable
  1 - a stage failed or the check was stopped
"""
import argparse
import asyncio
import json
import signal
import sys
from typing import Dict, Optional

import httpx
import uvicorn

from sitecheck.client import StreamingCheckClient
from sitecheck.core.config import settings
from sitecheck.core.logging_config import configure_logging
from sitecheck.schemas.check import RunResult, StageStatus, StreamEvent
from sitecheck.services.check_session import CheckSession
from sitecheck.services.probe_executor import ProbeExecutor

STATUS_MARKERS = {
    StageStatus.IDLE: " ",
    StageStatus.LOADING: "…",
    StageStatus.SUCCESS: "✓",
    StageStatus.ERROR: "✗",
}


def format_response_time(ms: int) -> str:
    """Format milliseconds as "123ms" below one second, else "1.23s"."""
    if ms < 1000:
        return f"{ms}ms"
    return f"{ms / 1000:.2f}s"


class StageRenderer:
    """Print one line per stage status change, then a summary."""

    def __init__(self, as_json: bool = False, out=None) -> None:
        self.as_json = as_json
        self.out = out or sys.stdout
        self._seen: Dict[str, StageStatus] = {}

    def render(self, event: StreamEvent) -> None:
        if self.as_json:
            print(json.dumps(event.to_wire()), file=self.out, flush=True)
            return
        for stage in event.data.stages:
            if self._seen.get(stage.id.value) == stage.status or stage.status == StageStatus.IDLE:
                continue
            self._seen[stage.id.value] = stage.status
            line = f"  [{STATUS_MARKERS[stage.status]}] {stage.name}"
            if stage.duration_ms is not None:
                line += f" ({format_response_time(stage.duration_ms)})"
            if stage.error_details:
                line += f" - {stage.error_details}"
            print(line, file=self.out, flush=True)
        if event.is_final:
            self.summary(event.data)

    def summary(self, result: RunResult) -> None:
        if result.check_location:
            print(f"Checked from {result.check_location} ({result.check_ip})", file=self.out)
        total = format_response_time(result.total_response_time)
        if result.is_success:
            print(f"Reachable in {total}", file=self.out, flush=True)
        else:
            print(f"Unreachable after {total}: {result.error_message}", file=self.out, flush=True)


def _install_interrupt(callback) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, callback)
    except (NotImplementedError, RuntimeError):
        # Windows event loops cannot install signal handlers; Ctrl-C then aborts outright
        pass


async def run_local_check(url: str, renderer: StageRenderer) -> Optional[RunResult]:
    session = CheckSession(ProbeExecutor.from_settings(settings))
    updates = await session.start(url)
    _install_interrupt(lambda: asyncio.ensure_future(session.stop()))

    final: Optional[RunResult] = None
    async for event in updates:
        renderer.render(event)
        if event.is_final:
            final = event.data
    await session.wait()
    return final


async def run_remote_check(
    url: str,
    server: str,
    renderer: StageRenderer,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[RunResult]:
    final: Optional[RunResult] = None
    consumer = asyncio.current_task()
    abandoned = False

    async with StreamingCheckClient(server, transport=transport) as client:

        def interrupt() -> None:
            nonlocal abandoned
            if client.check_id:
                # The server streams the cancellation snapshot back to us
                asyncio.ensure_future(client.cancel())
            else:
                abandoned = True
                consumer.cancel()

        _install_interrupt(interrupt)
        try:
            async for event in client.check(url):
                renderer.render(event)
                if event.is_final:
                    final = event.data
        except asyncio.CancelledError:
            if not abandoned:
                raise
            print("Check interrupted before the server accepted it", file=renderer.out, flush=True)
    return final


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sitecheck", description="Staged website reachability checks")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    check = subparsers.add_parser("check", help="Probe a URL and print each stage as it completes")
    check.add_argument("url", help="Target URL; https is assumed when no scheme is given")
    check.add_argument("--server", default=None, help="Base URL of a sitecheck server to probe through")
    check.add_argument("--json", action="store_true", help="Print raw NDJSON events")

    serve = subparsers.add_parser("serve", help="Run the streaming check API")
    serve.add_argument("--host", default=settings.HOST)
    serve.add_argument("--port", type=int, default=settings.PORT)
    serve.add_argument("--reload", action="store_true", default=settings.RELOAD)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    log_level = args.log_level or settings.LOG_LEVEL

    if args.command == "serve":
        uvicorn.run(
            "sitecheck.main:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=log_level.lower(),
        )
        return 0

    # Keep probe logs out of the stage output unless explicitly asked for
    configure_logging(settings.APP_ENV, args.log_level or "warning")
    renderer = StageRenderer(as_json=args.json)
    if args.server:
        final = asyncio.run(run_remote_check(args.url, args.server, renderer))
    else:
        final = asyncio.run(run_local_check(args.url, renderer))
    return 0 if final is not None and final.is_success else 1


if __name__ == "__main__":
    sys.exit(main())
