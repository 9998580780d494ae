# sitecheck/core/config.py
import json
from pathlib import Path
from typing import List, Tuple, Union
from pydantic_settings import BaseSettings
from pydantic import field_validator

def _env_file_candidates() -> Tuple[Union[str, Path], ...]:
    """Build a prioritized list of .env files for cross-platform support."""
    base_dir = Path(__file__).resolve().parent.parent
    project_root = base_dir.parent
    candidates: List[Union[str, Path]] = [
        base_dir / ".env",
        base_dir / ".env.local",
        project_root / ".env",
        project_root / ".env.local",
        ".env",
    ]

    # Preserve order while removing duplicates
    unique_candidates: List[Union[str, Path]] = []
    seen = set()
    for candidate in candidates:
        key = str(candidate)
        if key in seen:
            continue
        seen.add(key)
        unique_candidates.append(candidate)
    return tuple(unique_candidates)


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "sitecheck"
    APP_ENV: str = "dev"
    API_V1_PREFIX: str = "/api/v1"
    ENABLE_API_DOCS: bool = True

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 3001
    RELOAD: bool = False
    LOG_LEVEL: str = "info"

    # Request size
    MAX_REQUEST_SIZE: int = 64 * 1024  # check requests carry a single URL

    # CORS
    CORS_ORIGINS: List[str] = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = False
    CORS_MAX_AGE: int = 600
    CORS_EXPOSE_HEADERS: List[str] = ["X-Check-ID", "X-Request-ID"]
    CORS_METHODS: List[str] = ["GET", "POST", "DELETE", "OPTIONS"]
    CORS_HEADERS: List[str] = ["Content-Type", "Accept", "Origin", "X-Requested-With"]

    # Probe
    DEFAULT_SCHEME: str = "https"
    DNS_TIMEOUT: float = 5.0
    CONNECT_TIMEOUT: float = 8.0
    TLS_TIMEOUT: float = 8.0
    FIRST_BYTE_TIMEOUT: float = 15.0
    DOWNLOAD_TIMEOUT: float = 30.0
    PROBE_METHOD: str = "GET"
    USER_AGENT: str = "sitecheck/1.0"

    # Probe location (reported alongside each run)
    LOCATION_LOOKUP_ENABLED: bool = False
    LOCATION_LOOKUP_URL: str = "https://ipinfo.io/json"
    LOCATION_LOOKUP_TIMEOUT: float = 3.0

    @field_validator("CORS_ORIGINS", "CORS_EXPOSE_HEADERS", "CORS_METHODS", "CORS_HEADERS", mode="before")
    @classmethod
    def parse_cors_list(cls, v):
        """Parse CORS-related list fields from string or list"""
        if v is None or v == "":
            return []
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):         # JSON array
                try:
                    return json.loads(s)
                except json.JSONDecodeError:
                    return []
            return [p.strip() for p in s.split(",") if p.strip()]  # comma-separated
        return v or []

    @field_validator("DNS_TIMEOUT", "CONNECT_TIMEOUT", "TLS_TIMEOUT", "FIRST_BYTE_TIMEOUT", "DOWNLOAD_TIMEOUT")
    @classmethod
    def require_positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Stage timeouts must be positive")
        return v

    @field_validator("DEFAULT_SCHEME")
    @classmethod
    def validate_scheme(cls, v: str) -> str:
        scheme = v.strip().lower()
        if scheme not in {"http", "https"}:
            raise ValueError("DEFAULT_SCHEME must be http or https")
        return scheme

    @field_validator("PROBE_METHOD")
    @classmethod
    def validate_probe_method(cls, v: str) -> str:
        method = v.strip().upper()
        if method not in {"GET", "HEAD"}:
            raise ValueError("PROBE_METHOD must be GET or HEAD")
        return method

    model_config = {
        "env_file": _env_file_candidates(),
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }

settings = Settings()
__all__ = ["settings", "Settings"]
