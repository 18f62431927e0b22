"""Environment-driven configuration.

Environment variables:
- PG_DB_PATH: sqlite database path (default: proctor_gateway.db).
- PG_PORTAL_TOKEN_TTL_SECONDS: guardian portal link lifetime (default: 30 days).
- PG_SUBSTITUTE_TOKEN_TTL_SECONDS: cover link lifetime (default: 24 hours).
- PG_ARTIFACT_DIR: root directory for audio artifacts (default: artifacts).
- PG_MAX_REQUEST_BYTES: request body limit, checked via Content-Length.
- PG_RATE_LIMIT_GATEWAY: per-client limit on the gateway endpoints ('120/m', 'off').
- PG_CHANNEL_QUEUE_SIZE: per-subscriber buffer on live session channels.
- PG_METRICS_TOKEN: if set, /metrics requires `Authorization: Bearer <token>`.
- PG_LOG_LEVEL: logging level for the CLI (default: INFO).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DAY_SECONDS = 24 * 3600

# (min, max) link lifetimes in seconds, applied to env defaults and per-request overrides.
PORTAL_TTL_BOUNDS = (3600, 90 * DAY_SECONDS)
SUBSTITUTE_TTL_BOUNDS = (300, 7 * DAY_SECONDS)


def _get_int(name: str, default: int, lo: int, hi: int) -> int:
    try:
        value = int((os.getenv(name, "") or str(default)).strip())
    except ValueError:
        return default
    return max(lo, min(value, hi))


@dataclass(frozen=True)
class GatewayConfig:
    db_path: str = "proctor_gateway.db"
    portal_token_ttl_seconds: int = 30 * DAY_SECONDS
    substitute_token_ttl_seconds: int = DAY_SECONDS
    artifact_dir: str = "artifacts"
    max_request_bytes: int = 1_048_576
    gateway_rate_limit: str = "120/m"
    channel_queue_size: int = 256
    metrics_token: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        metrics_token = (os.getenv("PG_METRICS_TOKEN", "") or "").strip() or None
        return cls(
            db_path=(os.getenv("PG_DB_PATH", "") or cls.db_path).strip(),
            portal_token_ttl_seconds=_get_int(
                "PG_PORTAL_TOKEN_TTL_SECONDS", cls.portal_token_ttl_seconds, *PORTAL_TTL_BOUNDS
            ),
            substitute_token_ttl_seconds=_get_int(
                "PG_SUBSTITUTE_TOKEN_TTL_SECONDS", cls.substitute_token_ttl_seconds, *SUBSTITUTE_TTL_BOUNDS
            ),
            artifact_dir=(os.getenv("PG_ARTIFACT_DIR", "") or cls.artifact_dir).strip(),
            max_request_bytes=_get_int("PG_MAX_REQUEST_BYTES", cls.max_request_bytes, 1024, 64 * 1_048_576),
            gateway_rate_limit=(os.getenv("PG_RATE_LIMIT_GATEWAY", cls.gateway_rate_limit) or "").strip(),
            channel_queue_size=_get_int("PG_CHANNEL_QUEUE_SIZE", cls.channel_queue_size, 8, 100_000),
            metrics_token=metrics_token,
            log_level=(os.getenv("PG_LOG_LEVEL", "") or cls.log_level).strip().upper(),
        )
