"""In-process publish/subscribe for live session channels.

Each live session has one channel, addressed by a typed `ChannelId` rather
than an interpolated string. Two kinds of event travel on it:

- `row_change`: committed writes to `sessions` / `responses`, fed from the
  record store's change listeners (durable path).
- `session-state`: partial patches of the ephemeral state (timer, pointer,
  current item), merged shallowly by every subscriber (ephemeral path).

Delivery is per-subscriber FIFO in publish order. Buffers are bounded; a
full buffer drops the message for that subscriber only. There is no replay
for late joiners.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger("proctor_gateway.realtime")

SESSION_NAMESPACE = "session"

EVENT_ROW_CHANGE = "row_change"
EVENT_SESSION_STATE = "session-state"


class BroadcastError(RuntimeError):
    """Raised when a message cannot be handed to the channel at all."""


@dataclass(frozen=True)
class ChannelId:
    namespace: str
    session_id: str

    def __post_init__(self) -> None:
        if not self.namespace or not isinstance(self.namespace, str):
            raise ValueError("namespace must be a non-empty string")
        if not self.session_id or not isinstance(self.session_id, str):
            raise ValueError("session_id must be a non-empty string")

    @classmethod
    def for_session(cls, session_id: str) -> "ChannelId":
        return cls(SESSION_NAMESPACE, session_id)

    def __str__(self) -> str:
        return f"{self.namespace}:{self.session_id}"


@dataclass(frozen=True)
class ChannelMessage:
    event: str
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event, "payload": self.payload}


# ---------------------------
# Ephemeral state (reducer)
# ---------------------------

@dataclass(frozen=True)
class EphemeralSessionState:
    current_item_index: int = 0
    is_timer_running: bool = False
    timer_seconds: int = 0
    pointer_position: Optional[Tuple[float, float]] = None

    def to_dict(self) -> Dict[str, Any]:
        pointer = None
        if self.pointer_position is not None:
            pointer = {"x": self.pointer_position[0], "y": self.pointer_position[1]}
        return {
            "current_item_index": self.current_item_index,
            "is_timer_running": self.is_timer_running,
            "timer_seconds": self.timer_seconds,
            "pointer_position": pointer,
        }


EPHEMERAL_FIELDS = tuple(f.name for f in dataclasses.fields(EphemeralSessionState))

# Sent to every subscriber after a successful navigation write.
NAVIGATION_RESET: Dict[str, Any] = {"current_item_index": 0, "timer_seconds": 0, "is_timer_running": False}


def _coerce_field(name: str, value: Any) -> Any:
    if name in ("current_item_index", "timer_seconds"):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{name} must be a number")
        if value < 0:
            raise ValueError(f"{name} must be >= 0")
        return int(value)
    if name == "is_timer_running":
        if not isinstance(value, bool):
            raise ValueError("is_timer_running must be a boolean")
        return value
    if name == "pointer_position":
        if value is None:
            return None
        if isinstance(value, Mapping):
            x, y = value.get("x"), value.get("y")
        elif isinstance(value, (list, tuple)) and len(value) == 2:
            x, y = value
        else:
            raise ValueError("pointer_position must be {x, y} or null")
        if isinstance(x, bool) or isinstance(y, bool) or not isinstance(x, (int, float)) or not isinstance(y, (int, float)):
            raise ValueError("pointer_position coordinates must be numbers")
        return (float(x), float(y))
    raise ValueError(f"unknown ephemeral field: {name}")


def validate_patch(patch: Mapping[str, Any]) -> Dict[str, Any]:
    """Normalize a patch; raises ValueError on unknown fields or bad types."""
    if not isinstance(patch, Mapping):
        raise ValueError("patch must be an object")
    return {str(k): _coerce_field(str(k), v) for k, v in patch.items()}


def apply_patch(state: EphemeralSessionState, patch: Mapping[str, Any]) -> EphemeralSessionState:
    """Shallow merge, last write wins per field.

    Unknown or malformed fields from peers are dropped so one bad sender
    cannot wedge a subscriber.
    """
    changes: Dict[str, Any] = {}
    for k, v in patch.items():
        try:
            changes[str(k)] = _coerce_field(str(k), v)
        except ValueError:
            logger.debug("dropping malformed patch field %r", k)
    if not changes:
        return state
    return dataclasses.replace(state, **changes)


# ---------------------------
# Hub
# ---------------------------

@dataclass(eq=False)
class Subscription:
    channel: ChannelId
    queue: "asyncio.Queue[ChannelMessage]"
    hub: "PubSubHub"
    closed: bool = False
    dropped: int = 0

    async def get(self, timeout: Optional[float] = None) -> ChannelMessage:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def get_nowait(self) -> Optional[ChannelMessage]:
        try:
            return self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.hub._unsubscribe(self)


@dataclass
class PubSubHub:
    """Per-process channel registry."""

    queue_size: int = 256
    _subs: Dict[ChannelId, List[Subscription]] = field(default_factory=dict)
    dropped_total: int = 0

    def subscribe(self, channel: ChannelId) -> Subscription:
        if not isinstance(channel, ChannelId):
            raise TypeError("channel must be a ChannelId")
        sub = Subscription(channel=channel, queue=asyncio.Queue(maxsize=self.queue_size), hub=self)
        self._subs.setdefault(channel, []).append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.channel)
        if not subs:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            del self._subs[sub.channel]
        # Discard anything still buffered.
        while not sub.queue.empty():
            sub.queue.get_nowait()

    def subscriber_count(self, channel: ChannelId) -> int:
        return len(self._subs.get(channel, ()))

    def publish(self, channel: ChannelId, message: ChannelMessage) -> int:
        """Enqueue for every current subscriber. Returns deliveries made."""
        if not isinstance(channel, ChannelId):
            raise BroadcastError("channel must be a ChannelId")
        delivered = 0
        for sub in list(self._subs.get(channel, ())):
            try:
                sub.queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                sub.dropped += 1
                self.dropped_total += 1
                logger.warning("subscriber buffer full on %s; dropped %s", channel, message.event)
        return delivered

    def on_store_change(self, table: str, op: str, row: Dict[str, Any]) -> None:
        """Change-feed bridge: route committed rows to their session channel."""
        if table == "sessions":
            session_id = row.get("id")
        elif table == "responses":
            session_id = row.get("session_id")
        else:
            return
        if not session_id:
            return
        self.publish(
            ChannelId.for_session(str(session_id)),
            ChannelMessage(EVENT_ROW_CHANGE, {"table": table, "op": op, "row": row}),
        )
