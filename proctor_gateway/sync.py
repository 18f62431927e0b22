"""
Session synchronization engine.

Reconciles durable facts and ephemeral state for one live session.

Durable path (navigation, status, responses):
- The write goes to the record store and must commit before it counts.
- Other participants learn of it from the store's change feed, which the
  hub republishes on the session channel as `row_change` events.
- Any failure is raised to the caller; nothing is broadcast.

Ephemeral path (timer, pointer, current item):
- Partial patches are published as `session-state` events.
- Fire-and-forget: a failed send is logged and counted, never raised.

Navigation publishes its ephemeral reset only after the session row has
committed, so on every subscriber's queue the new `current_unit_id` arrives
before the reset.

The engine is bound to one session id at construction. Callers never
supply a session id in payloads; any they send is discarded.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .artifacts import ArtifactStore, ArtifactStoreError
from .crypto import _now_utc
from .errors import downstream_failure, invalid_input, lockdown_active
from .lockdown import StorageLockdownError
from .metrics import record_broadcast_failure, record_durable_failure
from .realtime import (
    EVENT_SESSION_STATE,
    NAVIGATION_RESET,
    ChannelId,
    ChannelMessage,
    EphemeralSessionState,
    PubSubHub,
    validate_patch,
)
from .store import SESSION_STATUSES, RecordStore

logger = logging.getLogger("proctor_gateway.sync")

T = TypeVar("T")


class ResponseInput(BaseModel):
    """One scored item, as submitted by a proctor."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    unit_id: str = Field(alias="unitId", min_length=1)
    item_index: int = Field(alias="itemIndex", ge=0)
    score_code: Literal["correct", "self_correct", "incorrect", "no_response"] = Field(alias="scoreCode")
    notes: Optional[str] = Field(default=None, max_length=2000)
    response_time_ms: Optional[int] = Field(default=None, alias="responseTimeMs", ge=0)
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey", max_length=128)


def patch_to_wire(patch: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(patch)
    pointer = out.get("pointer_position")
    if isinstance(pointer, tuple):
        out["pointer_position"] = {"x": pointer[0], "y": pointer[1]}
    return out


class SessionSyncEngine:
    def __init__(
        self,
        store: RecordStore,
        hub: PubSubHub,
        session_id: str,
        artifacts: Optional[ArtifactStore] = None,
    ):
        if not session_id:
            raise ValueError("session_id must be non-empty")
        self.store = store
        self.hub = hub
        self.session_id = str(session_id)
        self.channel = ChannelId.for_session(self.session_id)
        self.artifacts = artifacts

    # ---------------------------
    # Plumbing
    # ---------------------------

    def _durable(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except StorageLockdownError:
            record_durable_failure(operation)
            raise lockdown_active()
        except sqlite3.Error as e:
            record_durable_failure(operation)
            logger.error("durable %s failed for session %s: %s", operation, self.session_id, e)
            raise downstream_failure() from e

    def _broadcast(self, patch: Mapping[str, Any]) -> bool:
        try:
            self.hub.publish(self.channel, ChannelMessage(EVENT_SESSION_STATE, patch_to_wire(patch)))
            return True
        except Exception:
            record_broadcast_failure()
            logger.warning("ephemeral broadcast failed on %s", self.channel, exc_info=True)
            return False

    def _require_session(self) -> Dict[str, Any]:
        session = self._durable("read_session", lambda: self.store.get_session(self.session_id))
        if session is None:
            raise invalid_input("Unknown session")
        return session

    def _require_unit(self, unit_id: Any) -> Dict[str, Any]:
        if not isinstance(unit_id, str) or not unit_id.strip():
            raise invalid_input("unitId is required")
        unit = self._durable("read_unit", lambda: self.store.get_unit(unit_id))
        if unit is None:
            raise invalid_input("Unknown assessment unit")
        return unit

    @staticmethod
    def _selected_unit_ids(session: Mapping[str, Any]) -> List[str]:
        observations = session.get("observations") or {}
        selected = observations.get("selected_units") if isinstance(observations, dict) else None
        return [str(u) for u in selected] if isinstance(selected, list) else []

    def _commit_session(self, operation: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        row = self._durable(operation, lambda: self.store.update_session(self.session_id, fields))
        if row is None:
            raise invalid_input("Unknown session")
        return row

    # ---------------------------
    # Reads
    # ---------------------------

    async def load(self) -> Dict[str, Any]:
        """Authoritative snapshot for a (re)connecting participant."""
        session = self._require_session()
        selected = self._selected_unit_ids(session)
        all_units = self._durable("read_units", self.store.list_units)
        by_id = {u["id"]: u for u in all_units}
        units = [by_id[u] for u in selected if u in by_id]
        current = session.get("current_unit_id")
        if current and current in by_id and current not in selected:
            units.append(by_id[current])
        responses = self._durable("read_responses", lambda: self.store.list_responses(self.session_id))
        return {
            "session": session,
            "units": units,
            "responses": responses,
            "state": EphemeralSessionState().to_dict(),
        }

    # ---------------------------
    # Durable path
    # ---------------------------

    async def navigate_to_unit(self, unit_id: str) -> Dict[str, Any]:
        self._require_unit(unit_id)
        session = self._require_session()
        if session.get("status") == "completed":
            raise invalid_input("Session is completed")
        fields: Dict[str, Any] = {"current_unit_id": unit_id}
        if session.get("status") == "scheduled":
            fields["status"] = "in_progress"
        row = self._commit_session("navigate", fields)
        self._broadcast(NAVIGATION_RESET)
        logger.info("session %s navigated to unit %s", self.session_id, unit_id)
        return row

    async def add_unit(self, unit_id: str) -> Dict[str, Any]:
        """Append a unit to the session's selection and navigate to it (one write)."""
        self._require_unit(unit_id)
        session = self._require_session()
        if session.get("status") == "completed":
            raise invalid_input("Session is completed")
        observations = dict(session.get("observations") or {})
        selected = self._selected_unit_ids(session)
        if unit_id not in selected:
            selected.append(unit_id)
        observations["selected_units"] = selected
        row = self._commit_session(
            "add_unit",
            {"observations": observations, "current_unit_id": unit_id, "status": "in_progress"},
        )
        self._broadcast(NAVIGATION_RESET)
        return row

    async def complete_current_unit(self) -> Dict[str, Any]:
        session = self._require_session()
        if not session.get("current_unit_id"):
            return session
        return self._commit_session("complete_unit", {"current_unit_id": None})

    async def set_status(self, status: str) -> Dict[str, Any]:
        """Move the session forward: scheduled -> in_progress -> completed."""
        if status not in SESSION_STATUSES:
            raise invalid_input("Unknown session status")
        session = self._require_session()
        current = session.get("status") or "scheduled"
        if current not in SESSION_STATUSES:
            raise invalid_input("Session status cannot be changed")
        if SESSION_STATUSES.index(status) < SESSION_STATUSES.index(current):
            raise invalid_input("Session status cannot move backwards")
        if status == current:
            return session
        fields: Dict[str, Any] = {"status": status}
        if status == "completed":
            fields["ended_at"] = _now_utc().isoformat()
        return self._commit_session("set_status", fields)

    async def record_response(self, response: Mapping[str, Any]) -> Dict[str, Any]:
        if not isinstance(response, Mapping):
            raise invalid_input("response must be an object")
        data = {k: v for k, v in response.items() if k not in ("session_id", "sessionId")}
        try:
            parsed = ResponseInput.model_validate(data)
        except ValidationError as e:
            raise invalid_input("Invalid response payload", fields=[".".join(map(str, err["loc"])) for err in e.errors()])
        self._require_unit(parsed.unit_id)
        self._require_session()

        row, created = self._durable(
            "record_response",
            lambda: self.store.insert_response(
                self.session_id,
                parsed.unit_id,
                parsed.item_index,
                parsed.score_code,
                notes=parsed.notes,
                response_time_ms=parsed.response_time_ms,
                idempotency_key=parsed.idempotency_key,
            ),
        )
        if not created:
            logger.info("duplicate idempotency key on session %s; returning existing row", self.session_id)
        return row

    async def store_recording(self, unit_id: str, data: bytes, content_type: str = "audio/webm") -> str:
        if self.artifacts is None:
            raise downstream_failure()
        if not data:
            raise invalid_input("Empty recording")
        self._require_unit(unit_id)
        self._require_session()
        path = f"{self.session_id}/{unit_id}/{int(time.time() * 1000)}.webm"
        try:
            return self.artifacts.put(path, data, content_type)
        except (ArtifactStoreError, OSError) as e:
            record_durable_failure("store_recording")
            logger.error("artifact upload failed for session %s: %s", self.session_id, e)
            raise downstream_failure() from e

    # ---------------------------
    # Ephemeral path
    # ---------------------------

    async def broadcast_state(self, patch: Mapping[str, Any]) -> Dict[str, Any]:
        """Validate and publish a partial state patch. Never raises on send."""
        try:
            normalized = validate_patch(patch)
        except ValueError as e:
            raise invalid_input(str(e))
        if normalized:
            self._broadcast(normalized)
        return patch_to_wire(normalized)


__all__ = ["SessionSyncEngine", "ResponseInput", "patch_to_wire"]
