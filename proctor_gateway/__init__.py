"""Proctor Gateway package.

Delegated access and live synchronization for proctored screening sessions:

- Opaque capability tokens (only SHA-256 digests are stored)
- Guardian-portal and substitute-proctor access gateways
- Live session channel (durable row changes + ephemeral state patches)
- Per-unit scoring rollups

Convenience imports
------------------
Loaded lazily, so importing the package has no side effects:

    from proctor_gateway import create_app, PortalGateway, SessionGateway
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "1.2.0"

__all__ = [
    "__version__",
    "create_app",
    "PortalGateway",
    "SessionGateway",
    "CapabilityStore",
    "TokenCodec",
    "SessionSyncEngine",
    "SessionParticipant",
]

# name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "create_app": ("proctor_gateway.server", "create_app"),
    "PortalGateway": ("proctor_gateway.gateway", "PortalGateway"),
    "SessionGateway": ("proctor_gateway.gateway", "SessionGateway"),
    "CapabilityStore": ("proctor_gateway.capabilities", "CapabilityStore"),
    "TokenCodec": ("proctor_gateway.tokens", "TokenCodec"),
    "SessionSyncEngine": ("proctor_gateway.sync", "SessionSyncEngine"),
    "SessionParticipant": ("proctor_gateway.participant", "SessionParticipant"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'proctor_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
