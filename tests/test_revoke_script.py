import asyncio
import importlib.util
from pathlib import Path

from sessionguard.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "revoke_user_sessions.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("revoke_user_sessions", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_revoke_bumps_every_session_of_user(capsys):
    script = _load_script()
    sessions = get_runtime().sessions
    asyncio.run(sessions.create("alice@example.com", "sid-a"))
    asyncio.run(sessions.create("alice@example.com", "sid-b"))
    asyncio.run(sessions.create("bob@example.com", "sid-c"))

    result = asyncio.run(script.revoke("alice@example.com"))

    assert result == {
        "user_id": "alice@example.com",
        "status": "revoked",
        "sessions": ["sid-a", "sid-b"],
    }
    assert asyncio.run(sessions.get_version("sid-a")) == 2
    assert asyncio.run(sessions.get_version("sid-b")) == 2
    assert asyncio.run(sessions.get_version("sid-c")) == 1
    assert "Revoked session sid-a" in capsys.readouterr().out


def test_dry_run_changes_nothing(capsys):
    script = _load_script()
    sessions = get_runtime().sessions
    asyncio.run(sessions.create("alice@example.com", "sid-a"))

    result = asyncio.run(script.revoke("alice@example.com", dry_run=True))

    assert result["status"] == "dry_run"
    assert asyncio.run(sessions.get_version("sid-a")) == 1
    assert "[DRY RUN]" in capsys.readouterr().out
