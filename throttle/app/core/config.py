import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_name_list(raw: Any) -> list[str]:
    """Parse a list setting given as JSON or as a comma/space separated string."""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate plain strings so a misconfigured deployment
    # does not crash at startup.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    # Deduplicate while preserving order.
    seen: set[str] = set()
    result: list[str] = []
    for part in re.split(r"[,\s]+", raw):
        if not part or part in seen:
            continue
        seen.add(part)
        result.append(part)
    return result


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Redis settings (shared counter store)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    redis_timeout_seconds: float = 0.5  # Per-call budget before falling back to local

    # Rate limiting settings
    rate_limit_enabled: bool = True
    # Preset applied to every request; empty selects a preset from the path
    rate_limit_default_policy: str = ""
    rate_limit_local_sweep_probability: float = 0.01
    rate_limit_min_ttl_seconds: int = 60

    # Use NoDecode so plain comma separated values don't crash JSON parsing.
    rate_limit_address_headers: Annotated[list[str], NoDecode] = [
        "CF-Connecting-IP",
        "X-Forwarded-For",
        "X-Real-IP",
    ]
    rate_limit_privileged_roles: Annotated[list[str], NoDecode] = ["admin", "service"]
    rate_limit_exempt_paths: Annotated[list[str], NoDecode] = ["/health"]

    # Admin API bearer token; empty disables the admin endpoints
    admin_token: str = ""

    @field_validator(
        "rate_limit_address_headers",
        "rate_limit_privileged_roles",
        "rate_limit_exempt_paths",
        mode="before",
    )
    @classmethod
    def decode_name_list(cls, v: Any) -> list[str]:
        return _parse_name_list(v)

    @field_validator("redis_timeout_seconds")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("redis_timeout_seconds must be positive")
        return v

    @field_validator("rate_limit_local_sweep_probability")
    @classmethod
    def validate_probability(cls, v: float) -> float:
        """Validate the sweep probability is within [0, 1]."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("rate_limit_local_sweep_probability must be between 0 and 1")
        return v

    @field_validator("rate_limit_min_ttl_seconds")
    @classmethod
    def validate_min_ttl(cls, v: int) -> int:
        """Validate the minimum TTL is positive."""
        if v < 1:
            raise ValueError("rate_limit_min_ttl_seconds must be at least 1")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
