import re
import sqlite3
from types import SimpleNamespace

import pytest

from proctor_gateway.artifacts import FileArtifactStore
from proctor_gateway.errors import PG_E_DOWNSTREAM, PG_E_INVALID_INPUT, PG_E_LOCKDOWN_ACTIVE, GatewayError
from proctor_gateway.lockdown import StorageLockdownError
from proctor_gateway.participant import SessionParticipant
from proctor_gateway.realtime import EVENT_ROW_CHANGE, EVENT_SESSION_STATE, ChannelId, PubSubHub
from proctor_gateway.store import RecordStore
from proctor_gateway.sync import SessionSyncEngine


@pytest.fixture
def env(tmp_path):
    store = RecordStore(db_path=str(tmp_path / "pg.db"))
    hub = PubSubHub()
    store.add_change_listener(hub.on_store_change)

    student = store.create_student("Ava Reader", "2")
    u1 = store.create_unit("Letter Names", item_count=5, order_index=1)
    u2 = store.create_unit("Phoneme Blending", item_count=10, order_index=2)
    session = store.create_session(student["id"])
    engine = SessionSyncEngine(store, hub, session["id"], artifacts=FileArtifactStore(str(tmp_path / "artifacts")))
    return SimpleNamespace(store=store, hub=hub, student=student, u1=u1, u2=u2, session=session, engine=engine)


def _drain(sub):
    out = []
    while True:
        msg = sub.get_nowait()
        if msg is None:
            return out
        out.append(msg)


@pytest.mark.asyncio
async def test_navigation_commits_before_reset_for_every_subscriber(env):
    channel = ChannelId.for_session(env.session["id"])
    subs = [env.hub.subscribe(channel), env.hub.subscribe(channel)]

    row = await env.engine.navigate_to_unit(env.u1["id"])
    assert row["current_unit_id"] == env.u1["id"]
    assert row["status"] == "in_progress"

    for sub in subs:
        events = _drain(sub)
        assert [m.event for m in events] == [EVENT_ROW_CHANGE, EVENT_SESSION_STATE]
        assert events[0].payload["row"]["current_unit_id"] == env.u1["id"]
        assert events[1].payload == {"current_item_index": 0, "timer_seconds": 0, "is_timer_running": False}


@pytest.mark.asyncio
async def test_participant_sees_new_unit_and_zeroed_state(env):
    p = SessionParticipant(env.hub, env.store, env.session["id"])
    await p.connect()

    await env.engine.broadcast_state({"current_item_index": 4, "is_timer_running": True, "timer_seconds": 30})
    p.pump()
    assert p.state.current_item_index == 4

    await env.engine.navigate_to_unit(env.u2["id"])
    p.pump()
    assert p.current_unit_id == env.u2["id"]
    assert p.state.current_item_index == 0
    assert p.state.is_timer_running is False
    assert p.state.timer_seconds == 0


@pytest.mark.asyncio
async def test_failed_durable_write_raises_and_broadcasts_nothing(env, monkeypatch):
    sub = env.hub.subscribe(ChannelId.for_session(env.session["id"]))

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(env.store, "update_session", _boom)

    with pytest.raises(GatewayError) as ei:
        await env.engine.navigate_to_unit(env.u1["id"])
    assert ei.value.code == PG_E_DOWNSTREAM
    assert ei.value.retryable is True
    assert "disk" not in ei.value.message
    assert _drain(sub) == []


@pytest.mark.asyncio
async def test_lockdown_surfaces_as_retryable(env, monkeypatch):
    def _locked(*args, **kwargs):
        raise StorageLockdownError("LOCKDOWN_ACTIVE")

    monkeypatch.setattr(env.store, "update_session", _locked)

    with pytest.raises(GatewayError) as ei:
        await env.engine.navigate_to_unit(env.u1["id"])
    assert ei.value.code == PG_E_LOCKDOWN_ACTIVE
    assert ei.value.http_status == 503


@pytest.mark.asyncio
async def test_broadcast_failure_is_swallowed(env, monkeypatch):
    def _broken(*args, **kwargs):
        raise RuntimeError("channel down")

    monkeypatch.setattr(env.hub, "publish", _broken)

    # Ephemeral send failure is not an operation failure.
    assert await env.engine.broadcast_state({"timer_seconds": 5}) == {"timer_seconds": 5}
    # Durable write still counts even though its reset could not be sent.
    row = await env.engine.navigate_to_unit(env.u1["id"])
    assert env.store.get_session(env.session["id"])["current_unit_id"] == row["current_unit_id"]


@pytest.mark.asyncio
async def test_broadcast_state_rejects_bad_patch(env):
    with pytest.raises(GatewayError) as ei:
        await env.engine.broadcast_state({"session_id": "someone-else"})
    assert ei.value.code == PG_E_INVALID_INPUT


@pytest.mark.asyncio
async def test_response_session_id_comes_from_engine(env):
    other = env.store.create_session(env.student["id"])

    row = await env.engine.record_response(
        {
            "sessionId": other["id"],
            "session_id": other["id"],
            "unitId": env.u1["id"],
            "itemIndex": 0,
            "scoreCode": "correct",
        }
    )

    assert row["session_id"] == env.session["id"]
    assert env.store.list_responses(other["id"]) == []


@pytest.mark.asyncio
async def test_same_response_twice_appends_twice(env):
    payload = {"unitId": env.u1["id"], "itemIndex": 2, "scoreCode": "incorrect"}

    a = await env.engine.record_response(payload)
    b = await env.engine.record_response(payload)

    assert a["id"] != b["id"]
    rows = env.store.list_responses(env.session["id"])
    assert [r["id"] for r in rows] == [a["id"], b["id"]]


@pytest.mark.asyncio
async def test_idempotency_key_deduplicates_and_notifies_once(env):
    sub = env.hub.subscribe(ChannelId.for_session(env.session["id"]))
    payload = {"unitId": env.u1["id"], "itemIndex": 2, "scoreCode": "correct", "idempotencyKey": "tap-17"}

    a = await env.engine.record_response(payload)
    b = await env.engine.record_response(payload)

    assert a["id"] == b["id"]
    assert len(env.store.list_responses(env.session["id"])) == 1
    assert len(_drain(sub)) == 1


@pytest.mark.asyncio
async def test_invalid_response_payload_is_rejected(env):
    with pytest.raises(GatewayError) as ei:
        await env.engine.record_response({"unitId": env.u1["id"], "itemIndex": -1, "scoreCode": "great"})
    assert ei.value.code == PG_E_INVALID_INPUT
    assert set(ei.value.details["fields"]) >= {"itemIndex", "scoreCode"}

    with pytest.raises(GatewayError):
        await env.engine.record_response({"unitId": "no-such-unit", "itemIndex": 0, "scoreCode": "correct"})


@pytest.mark.asyncio
async def test_status_moves_forward_only(env):
    row = await env.engine.set_status("in_progress")
    assert row["status"] == "in_progress"

    with pytest.raises(GatewayError):
        await env.engine.set_status("scheduled")

    row = await env.engine.set_status("completed")
    assert row["status"] == "completed"
    assert row["ended_at"]

    with pytest.raises(GatewayError):
        await env.engine.navigate_to_unit(env.u1["id"])


@pytest.mark.asyncio
async def test_add_unit_selects_and_navigates_in_one_write(env):
    sub = env.hub.subscribe(ChannelId.for_session(env.session["id"]))

    row = await env.engine.add_unit(env.u2["id"])
    assert row["observations"]["selected_units"] == [env.u2["id"]]
    assert row["current_unit_id"] == env.u2["id"]
    assert row["status"] == "in_progress"

    events = _drain(sub)
    assert [m.event for m in events] == [EVENT_ROW_CHANGE, EVENT_SESSION_STATE]

    snapshot = await env.engine.load()
    assert [u["id"] for u in snapshot["units"]] == [env.u2["id"]]
    assert snapshot["state"]["current_item_index"] == 0


@pytest.mark.asyncio
async def test_complete_unit_clears_current_unit(env):
    await env.engine.navigate_to_unit(env.u1["id"])
    row = await env.engine.complete_current_unit()
    assert row["current_unit_id"] is None


@pytest.mark.asyncio
async def test_recording_lands_under_session_and_unit(env, tmp_path):
    path = await env.engine.store_recording(env.u1["id"], b"RIFF....webm", "audio/webm")

    assert re.fullmatch(rf"{env.session['id']}/{env.u1['id']}/\d+\.webm", path)
    assert (tmp_path / "artifacts" / path).read_bytes() == b"RIFF....webm"

    with pytest.raises(GatewayError):
        await env.engine.store_recording(env.u1["id"], b"")


@pytest.mark.asyncio
async def test_participant_reconnect_starts_from_zeroed_state(env):
    p = SessionParticipant(env.hub, env.store, env.session["id"])
    await p.connect()
    await env.engine.broadcast_state({"current_item_index": 6})
    await env.engine.record_response({"unitId": env.u1["id"], "itemIndex": 0, "scoreCode": "incorrect"})
    p.pump()
    assert p.state.current_item_index == 6
    assert len(p.responses) == 1

    await p.reconnect()
    assert p.state.current_item_index == 0
    # Durable facts come back from the store snapshot.
    assert len(p.responses) == 1
    p.close()
    assert env.hub.subscriber_count(ChannelId.for_session(env.session["id"])) == 0


@pytest.mark.asyncio
async def test_participant_rollups_follow_the_response_log(env):
    p = SessionParticipant(env.hub, env.store, env.session["id"])
    await p.connect()
    await env.engine.add_unit(env.u1["id"])
    for i, code in enumerate(["correct", "incorrect", "incorrect"]):
        await env.engine.record_response({"unitId": env.u1["id"], "itemIndex": i, "scoreCode": code})
    p.pump()

    units = {u["id"]: u for u in env.store.list_units()}
    (rollup,) = p.rollups(units)
    assert rollup.unit_id == env.u1["id"]
    assert rollup.incorrect_count == 2
    assert rollup.needs_instruction is True
