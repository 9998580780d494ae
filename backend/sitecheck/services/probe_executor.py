"""Staged reachability probe.

One run walks a target through DNS resolution, TCP connection, TLS handshake,
first response byte and body download, strictly in that order and over a
single connection. Each stage is a small coroutine; ``ProbeExecutor.run`` is
the only code that touches the ``RunResult`` and publishes snapshots.
"""
import asyncio
import enum
import socket
import ssl
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Union

import certifi
import httpcore
import structlog

from sitecheck.schemas.check import (
    INVALID_TARGET_MESSAGE,
    SKIPPED_HTTP_NOTE,
    RunResult,
    StageId,
    first_line,
)
from sitecheck.services.location import LocationLookup
from sitecheck.services.update_stream import UpdateStream
from sitecheck.utils.target import ProbeTarget, parse_target

logger = structlog.get_logger()

Resolver = Callable[[str, int], Awaitable[List[str]]]
Clock = Callable[[], float]


class ProbeErrorKind(str, enum.Enum):
    INVALID_TARGET = "invalid_target"
    RESOLUTION_FAILURE = "resolution_failure"
    CONNECTION_FAILURE = "connection_failure"
    TLS_FAILURE = "tls_failure"
    REQUEST_FAILURE = "request_failure"
    INTERNAL = "internal"


@dataclass(frozen=True)
class StageSuccess:
    duration_ms: int


@dataclass(frozen=True)
class StageFailure:
    kind: ProbeErrorKind
    message: str
    duration_ms: int


StageOutcome = Union[StageSuccess, StageFailure]


@dataclass(frozen=True)
class ProbeTimeouts:
    """Per-stage time limits in seconds."""

    dns: float = 5.0
    connect: float = 8.0
    tls: float = 8.0
    first_byte: float = 15.0
    download: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> "ProbeTimeouts":
        return cls(
            dns=settings.DNS_TIMEOUT,
            connect=settings.CONNECT_TIMEOUT,
            tls=settings.TLS_TIMEOUT,
            first_byte=settings.FIRST_BYTE_TIMEOUT,
            download=settings.DOWNLOAD_TIMEOUT,
        )


class StageAbort(Exception):
    """Ends the current stage with a ready-made message."""

    def __init__(self, message: str, kind: Optional[ProbeErrorKind] = None) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind


@dataclass(frozen=True)
class _StagePlan:
    kind: ProbeErrorKind
    timeout_message: str
    failure_prefix: str


_STAGE_PLANS = {
    StageId.DNS: _StagePlan(ProbeErrorKind.RESOLUTION_FAILURE, "DNS resolution timed out", "DNS resolution failed"),
    StageId.CONNECTION: _StagePlan(ProbeErrorKind.CONNECTION_FAILURE, "Connection timed out", "Connection failed"),
    StageId.TLS: _StagePlan(ProbeErrorKind.TLS_FAILURE, "TLS handshake timed out", "TLS handshake failed"),
    StageId.FIRST_BYTE: _StagePlan(ProbeErrorKind.REQUEST_FAILURE, "Request timed out", "Request failed"),
    StageId.DOWNLOAD: _StagePlan(ProbeErrorKind.REQUEST_FAILURE, "Download timed out", "Download failed"),
}

_TIMEOUT_ERRORS = (asyncio.TimeoutError, TimeoutError, httpcore.TimeoutException)
_TRANSPORT_ERRORS = (
    OSError,
    httpcore.NetworkError,
    httpcore.ProtocolError,
    httpcore.UnsupportedProtocol,
)


async def resolve_host(host: str, port: int) -> List[str]:
    """Resolve ``host`` to its unique stream addresses, in resolver order."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    addresses: List[str] = []
    for _family, _type, _proto, _canonname, sockaddr in infos:
        address = sockaddr[0]
        if address not in addresses:
            addresses.append(address)
    return addresses


def create_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context(cafile=certifi.where())
    context.set_alpn_protocols(["http/1.1"])
    return context


class _ProbeConnection:
    """Network state carried from one stage to the next within a run."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.target: Optional[ProbeTarget] = None
        self.addresses: List[str] = []
        self.peer: Optional[str] = None
        self.stream: Optional[httpcore.AsyncNetworkStream] = None
        self.connection: Optional[httpcore.AsyncHTTP11Connection] = None
        self.response: Optional[httpcore.Response] = None
        self.status_code: Optional[int] = None
        self.body_bytes = 0

    async def aclose(self) -> None:
        for closer in (self.response, self.connection):
            if closer is None:
                continue
            try:
                await closer.aclose()
            except Exception as exc:
                logger.debug("Ignoring error while closing probe connection", error=str(exc))
        if self.connection is None and self.stream is not None:
            try:
                await self.stream.aclose()
            except Exception as exc:
                logger.debug("Ignoring error while closing probe stream", error=str(exc))
        self.response = None
        self.connection = None
        self.stream = None


class ProbeExecutor:
    """Run one target URL through the ordered probe stages."""

    def __init__(
        self,
        *,
        timeouts: Optional[ProbeTimeouts] = None,
        resolver: Optional[Resolver] = None,
        network_backend: Optional[httpcore.AsyncNetworkBackend] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
        method: str = "GET",
        user_agent: str = "sitecheck/1.0",
        default_scheme: str = "https",
        location_lookup: Optional[LocationLookup] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.timeouts = timeouts or ProbeTimeouts()
        self._resolver = resolver or resolve_host
        self._backend = network_backend or httpcore.AnyIOBackend()
        self._ssl_context = ssl_context
        self._method = method.upper()
        self._user_agent = user_agent
        self._default_scheme = default_scheme
        self._location_lookup = location_lookup
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, **overrides) -> "ProbeExecutor":
        options = dict(
            timeouts=ProbeTimeouts.from_settings(settings),
            method=settings.PROBE_METHOD,
            user_agent=settings.USER_AGENT,
            default_scheme=settings.DEFAULT_SCHEME,
        )
        if settings.LOCATION_LOOKUP_ENABLED:
            options["location_lookup"] = LocationLookup(
                settings.LOCATION_LOOKUP_URL,
                timeout=settings.LOCATION_LOOKUP_TIMEOUT,
            )
        options.update(overrides)
        return cls(**options)

    @property
    def ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = create_ssl_context()
        return self._ssl_context

    async def run(self, url: str, result: RunResult, stream: UpdateStream) -> None:
        """Probe ``url``, recording into ``result`` and publishing every transition.

        Always ends with exactly one final event on ``stream`` unless the task
        is cancelled, in which case the caller owns the terminal snapshot.
        """
        log = logger.bind(check_url=url)
        probe = _ProbeConnection(url)
        stage_started: Optional[float] = None
        try:
            if self._location_lookup is not None:
                location = await self._location_lookup.lookup()
                result.check_location = location.location
                result.check_ip = location.ip

            for stage_id in StageId:
                if stage_id is StageId.TLS and probe.target is not None and not probe.target.secure:
                    result.skip_stage(stage_id, SKIPPED_HTTP_NOTE)
                    stream.publish(result)
                    log.debug("Probe stage skipped", stage=stage_id.value)
                    continue

                result.begin_stage(stage_id)
                stream.publish(result)
                stage_started = self._clock()
                log.debug("Probe stage started", stage=stage_id.value)

                outcome = await self._run_stage(stage_id, probe)
                stage_started = None

                if isinstance(outcome, StageFailure):
                    result.fail_stage(stage_id, outcome.duration_ms, outcome.message)
                    result.finish_failure(outcome.message)
                    stream.close(result)
                    log.info(
                        "Probe run failed",
                        stage=stage_id.value,
                        kind=outcome.kind.value,
                        error=outcome.message,
                        total_ms=result.total_response_time,
                    )
                    return

                result.complete_stage(stage_id, outcome.duration_ms)
                log.debug("Probe stage succeeded", stage=stage_id.value, duration_ms=outcome.duration_ms)
                if stage_id is not StageId.DOWNLOAD:
                    stream.publish(result)

            result.finish_success()
            stream.close(result)
            log.info(
                "Probe run succeeded",
                status_code=probe.status_code,
                body_bytes=probe.body_bytes,
                peer=probe.peer,
                total_ms=result.total_response_time,
            )
        except Exception as exc:
            message = first_line(str(exc))
            log.exception("Probe run aborted by unexpected error", kind=ProbeErrorKind.INTERNAL.value, error=message)
            elapsed = self._elapsed_ms(stage_started) if stage_started is not None else 0
            self._abort(result, stream, message, elapsed)
        finally:
            await probe.aclose()

    def _abort(self, result: RunResult, stream: UpdateStream, message: str, elapsed_ms: int) -> None:
        if stream.closed:
            return
        if not result.is_complete:
            active = result.active_stage
            if active is not None:
                result.fail_stage(active.id, elapsed_ms, message)
            result.finish_failure(message)
        stream.close(result)

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int(round((self._clock() - started) * 1000)))

    def _timeout_for(self, stage_id: StageId) -> float:
        return {
            StageId.DNS: self.timeouts.dns,
            StageId.CONNECTION: self.timeouts.connect,
            StageId.TLS: self.timeouts.tls,
            StageId.FIRST_BYTE: self.timeouts.first_byte,
            StageId.DOWNLOAD: self.timeouts.download,
        }[stage_id]

    async def _run_stage(self, stage_id: StageId, probe: _ProbeConnection) -> StageOutcome:
        operation = {
            StageId.DNS: self._resolve,
            StageId.CONNECTION: self._connect,
            StageId.TLS: self._handshake,
            StageId.FIRST_BYTE: self._first_byte,
            StageId.DOWNLOAD: self._download,
        }[stage_id]
        plan = _STAGE_PLANS[stage_id]
        started = self._clock()
        try:
            await asyncio.wait_for(operation(probe), timeout=self._timeout_for(stage_id))
        except StageAbort as exc:
            return StageFailure(exc.kind or plan.kind, exc.message, self._elapsed_ms(started))
        except _TIMEOUT_ERRORS:
            return StageFailure(plan.kind, plan.timeout_message, self._elapsed_ms(started))
        except _TRANSPORT_ERRORS as exc:
            cause = first_line(str(exc), default=type(exc).__name__)
            return StageFailure(plan.kind, f"{plan.failure_prefix}: {cause}", self._elapsed_ms(started))
        return StageSuccess(self._elapsed_ms(started))

    async def _resolve(self, probe: _ProbeConnection) -> None:
        target = parse_target(probe.url, self._default_scheme)
        if target is None:
            raise StageAbort(INVALID_TARGET_MESSAGE, ProbeErrorKind.INVALID_TARGET)
        probe.target = target
        addresses = await self._resolver(target.host, target.port)
        if not addresses:
            raise StageAbort("DNS resolution returned no addresses")
        probe.addresses = list(addresses)

    async def _connect(self, probe: _ProbeConnection) -> None:
        last_error: Optional[Exception] = None
        for address in probe.addresses:
            try:
                probe.stream = await self._backend.connect_tcp(address, probe.target.port)
            except (httpcore.ConnectError, OSError) as exc:
                last_error = exc
                continue
            probe.peer = address
            return
        if last_error is None:
            raise StageAbort("Connection failed: no address to connect to")
        raise last_error

    async def _handshake(self, probe: _ProbeConnection) -> None:
        probe.stream = await probe.stream.start_tls(
            self.ssl_context,
            server_hostname=probe.target.host,
        )

    async def _first_byte(self, probe: _ProbeConnection) -> None:
        target = probe.target
        request = httpcore.Request(
            self._method,
            target.request_url,
            headers=[
                (b"Host", target.host_header.encode("ascii")),
                (b"User-Agent", self._user_agent.encode("ascii")),
                (b"Accept", b"*/*"),
                (b"Connection", b"close"),
            ],
        )
        probe.connection = httpcore.AsyncHTTP11Connection(origin=request.url.origin, stream=probe.stream)
        probe.response = await probe.connection.handle_async_request(request)
        probe.status_code = probe.response.status

    async def _download(self, probe: _ProbeConnection) -> None:
        async for chunk in probe.response.aiter_stream():
            probe.body_bytes += len(chunk)
        await probe.response.aclose()


__all__ = [
    "ProbeErrorKind",
    "ProbeExecutor",
    "ProbeTimeouts",
    "StageAbort",
    "StageFailure",
    "StageSuccess",
    "create_ssl_context",
    "resolve_host",
]
