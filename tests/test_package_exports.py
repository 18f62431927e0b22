import importlib


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    import proctor_gateway

    assert hasattr(proctor_gateway, "create_app")
    assert hasattr(proctor_gateway, "PortalGateway")

    from proctor_gateway import SessionGateway, SessionParticipant, SessionSyncEngine, TokenCodec  # noqa: F401

    importlib.reload(proctor_gateway)


def test_version_export_matches_pyproject():
    import proctor_gateway

    assert proctor_gateway.__version__ == _read_pyproject_version()
