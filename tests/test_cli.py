import json

import pytest

from proctor_gateway import cli
from proctor_gateway.capabilities import CapabilityStore
from proctor_gateway.store import RecordStore
from proctor_gateway.tokens import CapabilityKind


def _run(argv):
    with pytest.raises(SystemExit) as ei:
        cli.main(argv)
    return ei.value.code


def test_issue_and_revoke_portal_link(tmp_path, capsys):
    db = str(tmp_path / "pg.db")
    store = RecordStore(db)
    student = store.create_student("Hana Hill", "3")

    assert _run(["--db", db, "issue-portal-link", student["id"], "--ttl", "3600"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["link"] == f"/portal?token={out['token']}"

    caps = CapabilityStore(RecordStore(db))
    assert caps.resolve(out["token"], CapabilityKind.GUARDIAN_PORTAL) == student["id"]

    assert _run(["--db", db, "revoke", out["handle"]]) == 0
    assert caps.resolve(out["token"], CapabilityKind.GUARDIAN_PORTAL) is None
    assert _run(["--db", db, "revoke", out["handle"]]) == 1


def test_issue_cover_link_requires_existing_session(tmp_path, capsys):
    db = str(tmp_path / "pg.db")
    store = RecordStore(db)
    student = store.create_student("Ian Ito", "2")
    session = store.create_session(student["id"])

    assert _run(["--db", db, "issue-cover-link", "missing"]) == 1
    assert _run(["--db", db, "issue-cover-link", session["id"]]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["link"].startswith("/session/cover?token=")


def test_purge_expired(tmp_path, capsys):
    db = str(tmp_path / "pg.db")
    RecordStore(db)
    assert _run(["--db", db, "purge-expired"]) == 0
    assert "Purged 0" in capsys.readouterr().out


def test_no_command_prints_help():
    assert _run([]) == 1


def test_issue_link_rejects_bad_ttl(tmp_path, capsys):
    db = str(tmp_path / "pg.db")
    store = RecordStore(db)
    student = store.create_student("Jo Jensen", "4")
    session = store.create_session(student["id"])

    # argparse usage error, not a traceback
    assert _run(["--db", db, "issue-cover-link", session["id"], "--ttl", "-5"]) == 2
    assert _run(["--db", db, "issue-portal-link", student["id"], "--ttl", "soon"]) == 2
    assert _run(["--db", db, "issue-cover-link", session["id"], "--ttl", str(10**15)]) == 1
    assert "--ttl must be between" in capsys.readouterr().err

    caps = CapabilityStore(RecordStore(db))
    assert caps.active_count(session["id"], CapabilityKind.SUBSTITUTE_PROCTOR) == 0
