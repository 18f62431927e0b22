"""Opaque capability tokens (v1).

Bearer tokens handed out-of-band to a guardian (portal link) or to a
substitute proctor (cover link).

Security Properties:
- 256 bits from the OS CSPRNG, URL-safe encoded
- Only the SHA-256 digest of the encoded string is ever persisted
- Verification recomputes the digest and compares in constant time
- Malformed input fails closed (False), never raises
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Tuple

from .crypto import _sha256_hex, constant_time_equals


TOKEN_ENTROPY_BYTES = 32
MAX_TOKEN_LENGTH = 512

_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


class CapabilityKind(Enum):
    """Access kinds a capability token can grant."""

    GUARDIAN_PORTAL = "guardian_portal"
    SUBSTITUTE_PROCTOR = "substitute_proctor"


@dataclass(frozen=True)
class IssuedSecret:
    """A freshly minted secret and its digest.

    `raw` must only travel to its one intended recipient. Store `digest`.
    """

    raw: str
    digest: str

    def __repr__(self) -> str:
        return f"IssuedSecret(raw=<redacted>, digest={self.digest[:8]}...)"


class TokenCodec:
    """Generates capability secrets and verifies them against stored digests."""

    def __init__(self, entropy_bytes: int = TOKEN_ENTROPY_BYTES):
        if entropy_bytes < TOKEN_ENTROPY_BYTES:
            raise ValueError(f"entropy_bytes must be >= {TOKEN_ENTROPY_BYTES}")
        self.entropy_bytes = int(entropy_bytes)

    def issue(self) -> IssuedSecret:
        raw = secrets.token_urlsafe(self.entropy_bytes)
        return IssuedSecret(raw=raw, digest=self.digest(raw))

    def issue_pair(self) -> Tuple[str, str]:
        issued = self.issue()
        return issued.raw, issued.digest

    @staticmethod
    def digest(raw: str) -> str:
        return _sha256_hex(raw.encode("utf-8"))

    @staticmethod
    def is_well_formed(raw: Any) -> bool:
        return isinstance(raw, str) and 0 < len(raw) <= MAX_TOKEN_LENGTH

    def verify(self, raw: Any, stored_digest: Any) -> bool:
        if not self.is_well_formed(raw):
            return False
        if not isinstance(stored_digest, str) or not _DIGEST_RE.match(stored_digest):
            return False
        return constant_time_equals(self.digest(raw), stored_digest)
