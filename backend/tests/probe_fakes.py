"""Scripted network pieces for exercising the probe without touching the internet."""
import asyncio
import socket
from typing import Iterable, List, Optional, Sequence

import httpcore

HANG = None  # a chunk of None blocks the read until cancelled

OK_RESPONSE = [
    b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\nContent-Length: 11\r\n\r\n",
    b"hello ",
    b"world",
]


class FakeStream(httpcore.AsyncNetworkStream):
    def __init__(
        self,
        chunks: Iterable[Optional[bytes]] = (),
        *,
        tls_delay: Optional[float] = None,
        tls_error: Optional[Exception] = None,
        close_delay: Optional[float] = None,
    ) -> None:
        self._chunks: List[Optional[bytes]] = list(chunks)
        self._tls_delay = tls_delay
        self._tls_error = tls_error
        self._close_delay = close_delay
        self.written = b""
        self.closed = False
        self.tls_started = False
        self.server_hostname: Optional[str] = None
        self.read_cancelled = False

    async def read(self, max_bytes: int, timeout: Optional[float] = None) -> bytes:
        if not self._chunks:
            return b""
        chunk = self._chunks.pop(0)
        if chunk is HANG:
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                self.read_cancelled = True
                raise
        return chunk

    async def write(self, buffer: bytes, timeout: Optional[float] = None) -> None:
        self.written += buffer

    async def aclose(self) -> None:
        if self._close_delay is not None:
            await asyncio.sleep(self._close_delay)
        self.closed = True

    async def start_tls(self, ssl_context, server_hostname=None, timeout=None):
        self.tls_started = True
        self.server_hostname = server_hostname
        if self._tls_delay is not None:
            await asyncio.sleep(self._tls_delay)
        if self._tls_error is not None:
            raise self._tls_error
        return self

    def get_extra_info(self, info: str):
        return None


class FakeBackend(httpcore.AsyncNetworkBackend):
    def __init__(
        self,
        stream: Optional[FakeStream] = None,
        *,
        connect_delay: Optional[float] = None,
        connect_error: Optional[Exception] = None,
        failing_hosts: Sequence[str] = (),
    ) -> None:
        self.stream = stream if stream is not None else FakeStream(OK_RESPONSE)
        self._connect_delay = connect_delay
        self._connect_error = connect_error
        self._failing_hosts = set(failing_hosts)
        self.attempts: List[tuple] = []
        self.connect_cancelled = False

    async def connect_tcp(self, host, port, timeout=None, local_address=None, socket_options=None):
        self.attempts.append((host, port))
        if self._connect_delay is not None:
            try:
                await asyncio.sleep(self._connect_delay)
            except asyncio.CancelledError:
                self.connect_cancelled = True
                raise
        if self._connect_error is not None:
            raise self._connect_error
        if host in self._failing_hosts:
            raise httpcore.ConnectError("[Errno 111] Connection refused")
        return self.stream

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def static_resolver(*addresses: str):
    """Resolver returning fixed addresses and recording lookups."""
    lookups: List[tuple] = []

    async def resolve(host: str, port: int) -> List[str]:
        lookups.append((host, port))
        return list(addresses or ("93.184.216.34",))

    resolve.lookups = lookups
    return resolve


def failing_resolver(message: str = "[Errno -2] Name or service not known"):
    async def resolve(host: str, port: int) -> List[str]:
        raise socket.gaierror(-2, message.split("] ", 1)[-1])

    return resolve


def hanging_resolver():
    async def resolve(host: str, port: int) -> List[str]:
        await asyncio.sleep(3600)
        return []

    return resolve
