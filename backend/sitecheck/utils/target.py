import re
from dataclasses import dataclass
from typing import Optional

from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

DEFAULT_PORTS = {"http": 80, "https": 443}

_SCHEME_PATTERN = re.compile(r"^https?://", re.IGNORECASE)
_URL_ADAPTER = TypeAdapter(AnyHttpUrl)


@dataclass(frozen=True)
class ProbeTarget:
    """A validated probe target broken into the parts each stage needs."""

    scheme: str
    host: str
    port: int
    host_header: str
    request_target: str

    @property
    def secure(self) -> bool:
        return self.scheme == "https"

    @property
    def request_url(self) -> str:
        return f"{self.scheme}://{self.host_header}{self.request_target}"


def ensure_protocol(url: str, default_scheme: str = "https") -> str:
    """Prefix a scheme when the URL has none."""
    url = (url or "").strip()
    if not url:
        return ""
    if not _SCHEME_PATTERN.match(url):
        return f"{default_scheme}://{url}"
    return url


def parse_target(url: str, default_scheme: str = "https") -> Optional[ProbeTarget]:
    """Return the probe target for ``url``, or None when it is not a usable URL."""
    normalized = ensure_protocol(url, default_scheme)
    if not normalized:
        return None
    try:
        parsed = _URL_ADAPTER.validate_python(normalized)
    except ValidationError:
        return None

    host = parsed.host
    if not host:
        return None
    scheme = parsed.scheme.lower()
    port = parsed.port or DEFAULT_PORTS[scheme]
    host_header = host if port == DEFAULT_PORTS[scheme] else f"{host}:{port}"

    request_target = parsed.path or "/"
    if parsed.query:
        request_target = f"{request_target}?{parsed.query}"

    return ProbeTarget(
        scheme=scheme,
        # IPv6 literals keep their brackets only in the Host header
        host=host[1:-1] if host.startswith("[") else host,
        port=port,
        host_header=host_header,
        request_target=request_target,
    )


def extract_domain(url: str) -> str:
    target = parse_target(url)
    return target.host if target else url
