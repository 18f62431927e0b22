"""Capability store adapter.

Binds token digests to a scope subject (student id for guardian-portal
links, session id for substitute-proctor links) with an expiry, and turns a
presented raw token back into that subject id.

Resolution outcomes are deliberately collapsed: unknown, expired, revoked
and wrong-kind tokens all resolve to None.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .crypto import _now_utc, _parse_iso_utc
from .store import RecordStore
from .tokens import CapabilityKind, TokenCodec

logger = logging.getLogger("proctor_gateway.capabilities")


@dataclass(frozen=True)
class TokenHandle:
    """Reference to a stored capability record. Carries no secret material."""

    handle: str
    kind: CapabilityKind
    subject_id: str
    expires_at: datetime

    def to_dict(self) -> dict:
        return {
            "handle": self.handle,
            "kind": self.kind.value,
            "subjectId": self.subject_id,
            "expiresAt": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class IssuedCapability:
    """Result of an operator issuing a link. `token` is shown exactly once."""

    token: str
    handle: TokenHandle

    def __repr__(self) -> str:
        return f"IssuedCapability(token=<redacted>, handle={self.handle!r})"


class CapabilityStore:
    def __init__(self, store: RecordStore, codec: Optional[TokenCodec] = None):
        self.store = store
        self.codec = codec or TokenCodec()

    def store_digest(
        self,
        digest: str,
        scope_subject_id: str,
        kind: CapabilityKind,
        expires_at: datetime,
        created_by: Optional[str] = None,
    ) -> TokenHandle:
        """Persist a digest. Existing links for the subject are left untouched."""
        if not scope_subject_id or not str(scope_subject_id).strip():
            raise ValueError("scope_subject_id must be non-empty")
        handle = self.store.insert_capability(
            digest=digest,
            kind=kind.value,
            subject_id=str(scope_subject_id),
            expires_at_utc=expires_at.isoformat(),
            created_by=created_by,
        )
        logger.info("stored %s capability %s (digest %s...)", kind.value, handle, digest[:8])
        return TokenHandle(handle=handle, kind=kind, subject_id=str(scope_subject_id), expires_at=expires_at)

    def issue(
        self,
        scope_subject_id: str,
        kind: CapabilityKind,
        ttl_seconds: int,
        created_by: Optional[str] = None,
    ) -> IssuedCapability:
        if int(ttl_seconds) <= 0:
            raise ValueError("ttl_seconds must be positive")
        secret = self.codec.issue()
        expires_at = _now_utc() + timedelta(seconds=int(ttl_seconds))
        handle = self.store_digest(secret.digest, scope_subject_id, kind, expires_at, created_by=created_by)
        return IssuedCapability(token=secret.raw, handle=handle)

    def resolve(self, raw_token: object, kind: CapabilityKind) -> Optional[str]:
        """Return the scope subject id for a live token, else None."""
        if not self.codec.is_well_formed(raw_token):
            return None
        digest = self.codec.digest(raw_token)  # type: ignore[arg-type]
        row = self.store.find_capability(digest, kind.value)
        if row is None:
            return None
        if not self.codec.verify(raw_token, row.get("token_digest")):
            return None
        expires_at = _parse_iso_utc(row.get("expires_at_utc"))
        if expires_at is None:
            # Corrupted row: fail closed.
            return None
        if not expires_at > _now_utc():
            return None
        return str(row["subject_id"])

    def active_count(self, scope_subject_id: str, kind: CapabilityKind) -> int:
        now = _now_utc()
        count = 0
        for row in self.store.list_capabilities(scope_subject_id, kind.value):
            exp = _parse_iso_utc(row.get("expires_at_utc"))
            if exp is not None and exp > now:
                count += 1
        return count

    def revoke(self, handle: str) -> bool:
        removed = self.store.delete_capability(handle)
        if removed:
            logger.info("revoked capability %s", handle)
        return removed

    def purge_expired(self) -> int:
        return self.store.purge_expired_capabilities(_now_utc().isoformat())
