"""Stable error taxonomy for the proctor gateway.

A single exception type is raised across the gateways, the capability store
and the session synchronization engine. Transport layers turn it into the
`{"error": ...}` envelope with `http_status`.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Messages that never leak token existence or store internals.
- Optional `retryable` flag so clients can offer a retry affordance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Local validation (no store round-trip)
PG_E_INVALID_INPUT = "PG_E_INVALID_INPUT"

# Token resolution
PG_E_UNAUTHORIZED = "PG_E_UNAUTHORIZED"

# Dispatch
PG_E_UNSUPPORTED_ACTION = "PG_E_UNSUPPORTED_ACTION"

# Record store / channel
PG_E_DOWNSTREAM = "PG_E_DOWNSTREAM"
PG_E_LOCKDOWN_ACTIVE = "PG_E_LOCKDOWN_ACTIVE"

# HTTP surface
PG_E_RATE_LIMITED = "PG_E_RATE_LIMITED"
PG_E_OPERATOR_AUTH = "PG_E_OPERATOR_AUTH"

# Fixed user-visible wording.
MSG_TOKEN_REQUIRED = "Token required"
MSG_INVALID_TOKEN = "Invalid or expired token"
MSG_UNSUPPORTED_ACTION = "Invalid action"
MSG_INTERNAL = "Internal error"


@dataclass
class GatewayError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "error": self.message,
            "code": self.code,
            "retryable": bool(self.retryable),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def gateway_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> GatewayError:
    return GatewayError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def invalid_input(message: str, **details: Any) -> GatewayError:
    return gateway_error(PG_E_INVALID_INPUT, message, http_status=400, **details)


def token_required() -> GatewayError:
    # Missing token is a local validation failure, but the transport status is 401.
    return gateway_error(PG_E_INVALID_INPUT, MSG_TOKEN_REQUIRED, http_status=401)


def unauthorized() -> GatewayError:
    # Identical for unknown, expired, revoked and purged tokens.
    return gateway_error(PG_E_UNAUTHORIZED, MSG_INVALID_TOKEN, http_status=401)


def unsupported_action() -> GatewayError:
    return gateway_error(PG_E_UNSUPPORTED_ACTION, MSG_UNSUPPORTED_ACTION, http_status=400)


def downstream_failure() -> GatewayError:
    return gateway_error(PG_E_DOWNSTREAM, MSG_INTERNAL, retryable=True, http_status=500)


def lockdown_active() -> GatewayError:
    return gateway_error(PG_E_LOCKDOWN_ACTIVE, "LOCKDOWN_ACTIVE", retryable=True, http_status=503)


def rate_limited() -> GatewayError:
    return gateway_error(PG_E_RATE_LIMITED, "RATE_LIMITED", retryable=True, http_status=429)


def operator_auth_failed(reason: str) -> GatewayError:
    return gateway_error(PG_E_OPERATOR_AUTH, reason, http_status=401)
