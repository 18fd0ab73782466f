"""Configuration helpers for LinkPeek."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(slots=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    fetch_timeout_s: float = 5.0
    dns_timeout_s: float = 5.0
    max_body_bytes: int = 50 * 1024
    max_redirects: int = 3
    user_agent: str = "LinkPeek/1.0 bot"
    sweep_interval_s: float = 60.0
    api_tokens: dict[str, str] = field(default_factory=dict)
    log_level: str = "INFO"


def _parse_tokens(value: str | None) -> dict[str, str]:
    """Parse ``token:user_id`` pairs separated by commas."""
    if not value:
        return {}
    tokens: dict[str, str] = {}
    for part in value.split(","):
        token, sep, user_id = part.strip().partition(":")
        if not sep or not token.strip() or not user_id.strip():
            continue
        tokens[token.strip()] = user_id.strip()
    return tokens


def get_settings() -> Settings:
    """Load settings from environment."""
    return Settings(
        fetch_timeout_s=float(os.getenv("LINKPEEK_FETCH_TIMEOUT_S", "5")),
        dns_timeout_s=float(os.getenv("LINKPEEK_DNS_TIMEOUT_S", "5")),
        max_body_bytes=int(os.getenv("LINKPEEK_MAX_BODY_BYTES", str(50 * 1024))),
        max_redirects=int(os.getenv("LINKPEEK_MAX_REDIRECTS", "3")),
        user_agent=os.getenv("LINKPEEK_USER_AGENT", "LinkPeek/1.0 bot"),
        sweep_interval_s=float(os.getenv("LINKPEEK_SWEEP_INTERVAL_S", "60")),
        api_tokens=_parse_tokens(os.getenv("LINKPEEK_API_TOKENS")),
        log_level=os.getenv("LINKPEEK_LOG_LEVEL", "INFO").upper(),
    )
