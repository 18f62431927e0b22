"""Client-side view of a live session.

A participant keeps a local copy of the session row, the ordered response
log and the ephemeral state, and updates it only by folding channel
events:

- `row_change` on `sessions`: replace the session row wholesale
- `row_change` INSERT on `responses`: append (deduplicated by row id, since
  a response committed between subscribe and snapshot shows up in both)
- `session-state`: `apply_patch` into the ephemeral state

Reconnecting always starts from a zeroed ephemeral state.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from .realtime import (
    EVENT_ROW_CHANGE,
    EVENT_SESSION_STATE,
    ChannelId,
    ChannelMessage,
    EphemeralSessionState,
    PubSubHub,
    Subscription,
    apply_patch,
)
from .scoring import UnitRollup, summarize_session
from .store import RecordStore

logger = logging.getLogger("proctor_gateway.participant")


class SessionParticipant:
    def __init__(self, hub: PubSubHub, store: RecordStore, session_id: str):
        self.hub = hub
        self.store = store
        self.session_id = str(session_id)
        self.channel = ChannelId.for_session(self.session_id)
        self.session: Optional[Dict[str, Any]] = None
        self.responses: List[Dict[str, Any]] = []
        self.state = EphemeralSessionState()
        self._subscription: Optional[Subscription] = None

    @property
    def connected(self) -> bool:
        return self._subscription is not None

    async def connect(self) -> None:
        if self._subscription is not None:
            self.close()
        self.state = EphemeralSessionState()
        # Subscribe before reading so nothing committed in between is lost.
        self._subscription = self.hub.subscribe(self.channel)
        self.session = self.store.get_session(self.session_id)
        self.responses = self.store.list_responses(self.session_id)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    async def reconnect(self) -> None:
        self.close()
        await self.connect()

    def apply(self, message: ChannelMessage) -> None:
        if message.event == EVENT_SESSION_STATE:
            self.state = apply_patch(self.state, message.payload)
            return
        if message.event != EVENT_ROW_CHANGE:
            logger.debug("ignoring unknown event %s", message.event)
            return

        table = message.payload.get("table")
        row = message.payload.get("row") or {}
        if table == "sessions" and row.get("id") == self.session_id:
            self.session = dict(row)
        elif table == "responses" and message.payload.get("op") == "INSERT":
            if row.get("session_id") != self.session_id:
                return
            if any(r.get("id") == row.get("id") for r in self.responses):
                return
            self.responses.append(dict(row))

    def pump(self) -> int:
        """Fold every buffered event. Returns the number applied."""
        if self._subscription is None:
            return 0
        n = 0
        while True:
            message = self._subscription.get_nowait()
            if message is None:
                return n
            self.apply(message)
            n += 1

    async def next_event(self, timeout: Optional[float] = None) -> ChannelMessage:
        if self._subscription is None:
            raise RuntimeError("participant is not connected")
        message = await self._subscription.get(timeout=timeout)
        self.apply(message)
        return message

    @property
    def current_unit_id(self) -> Optional[str]:
        return (self.session or {}).get("current_unit_id")

    def rollups(self, units: Optional[Mapping[str, Mapping[str, Any]]] = None) -> List[UnitRollup]:
        observations = (self.session or {}).get("observations") or {}
        selected = []
        if isinstance(observations, dict):
            selected = observations.get("selected_units") or []
        return summarize_session(self.responses, units, selected_unit_ids=selected)
