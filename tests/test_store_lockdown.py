import sqlite3

import pytest

import proctor_gateway.store as store_mod
from proctor_gateway.lockdown import CircuitBreakerConfig, DbCircuitBreaker, StorageLockdownError
from proctor_gateway.store import RecordStore


def test_storage_lockdown_trips_on_operational_error(tmp_path, monkeypatch):
    monkeypatch.setenv("PG_DB_CONNECT_TIMEOUT_SECONDS", "0.01")
    monkeypatch.setenv("PG_DB_FAILURE_THRESHOLD", "1")
    monkeypatch.setenv("PG_DB_LOCKDOWN_SECONDS", "60")

    store = RecordStore(db_path=str(tmp_path / "pg.db"))

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store_mod.sqlite3, "connect", _boom)

    with pytest.raises(sqlite3.OperationalError):
        store.get_session("s1")

    # Once tripped, every store op fails closed during the lockdown window.
    with pytest.raises(StorageLockdownError):
        store.get_session("s1")
    assert store.circuit.is_lockdown_active() is True


def test_integrity_errors_do_not_count_towards_lockdown(tmp_path):
    breaker = DbCircuitBreaker(CircuitBreakerConfig(failure_threshold=1, lockdown_seconds=60))
    store = RecordStore(db_path=str(tmp_path / "pg.db"), circuit=breaker)
    student = store.create_student("Eli Evans", "2")

    with pytest.raises(sqlite3.IntegrityError):
        store.create_student("Duplicate", "2", student_id=student["id"])
    assert breaker.is_lockdown_active() is False
    assert store.get_student(student["id"])["full_name"] == "Eli Evans"


def test_success_resets_failure_count():
    breaker = DbCircuitBreaker(CircuitBreakerConfig(failure_threshold=2, lockdown_seconds=60))
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    assert breaker.is_lockdown_active() is False
    breaker.record_failure()
    assert breaker.is_lockdown_active() is True


def test_breaker_config_from_env_clamps(monkeypatch):
    monkeypatch.setenv("PG_DB_FAILURE_THRESHOLD", "0")
    monkeypatch.setenv("PG_DB_LOCKDOWN_SECONDS", "bogus")
    cfg = CircuitBreakerConfig.from_env()
    assert cfg.failure_threshold == 1
    assert cfg.lockdown_seconds == 15


def test_update_session_rejects_unknown_fields(tmp_path):
    store = RecordStore(db_path=str(tmp_path / "pg.db"))
    student = store.create_student("Fay", "K")
    session = store.create_session(student["id"])

    with pytest.raises(ValueError):
        store.update_session(session["id"], {"student_id": "someone-else"})
    assert store.update_session("missing", {"status": "in_progress"}) is None


def test_change_listener_failures_do_not_undo_writes(tmp_path):
    store = RecordStore(db_path=str(tmp_path / "pg.db"))
    seen = []

    def _bad_listener(table, op, row):
        raise RuntimeError("listener exploded")

    store.add_change_listener(_bad_listener)
    store.add_change_listener(lambda table, op, row: seen.append((table, op, row["status"])))

    student = store.create_student("Gus", "1")
    session = store.create_session(student["id"])
    row = store.update_session(session["id"], {"status": "in_progress"})

    assert row["status"] == "in_progress"
    assert seen == [("sessions", "UPDATE", "in_progress")]
