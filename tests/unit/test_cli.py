from __future__ import annotations

import json

import pytest

from mandate_rail import __version__
from mandate_rail.cli import main
from mandate_rail.core.time import utc_now
from mandate_rail.mandate.keys import PRIVATE_KEY_ENV, PUBLIC_KEYS_JSON_ENV, private_key_pem, public_key_pem
from tests.conftest import TEST_KID
from tests.unit._mandate_factory import signed_intent


@pytest.fixture()
def repo(test_config, temp_dir, monkeypatch):
    # test_config scaffolds temp_dir/config; commands resolve it from cwd.
    monkeypatch.chdir(temp_dir)
    for name in (PRIVATE_KEY_ENV, PUBLIC_KEYS_JSON_ENV):
        monkeypatch.delenv(name, raising=False)
    return temp_dir


def _last_json(capsys) -> dict:
    out = capsys.readouterr().out.strip().splitlines()
    return json.loads(out[-1])


def test_no_command_prints_help(capsys) -> None:
    assert main([]) == 2
    assert "mandate-rail" in capsys.readouterr().out


def test_version(capsys) -> None:
    assert main(["--version"]) == 0
    assert capsys.readouterr().out.strip() == f"mandate-rail v{__version__}"


def test_verify_rejects_unparseable_input(repo, capsys) -> None:
    assert main(["verify", "--json", "{not json"]) == 1
    out = _last_json(capsys)
    assert out["ok"] is False
    assert out["error"] == "invalid_input"


def test_verify_without_public_key(repo, signing_key, capsys) -> None:
    env = signed_intent(signing_key, now=utc_now())

    assert main(["verify", "--json", json.dumps(env)]) == 0
    out = _last_json(capsys)
    assert out["ok"] is False
    assert out["error"] == "key_unavailable"


def test_sign_then_verify(repo, signing_key, monkeypatch, capsys) -> None:
    payload = signed_intent(signing_key, now=utc_now())["payload"]
    (repo / "payload.json").write_text(json.dumps(payload), encoding="utf-8")
    monkeypatch.setenv(PRIVATE_KEY_ENV, private_key_pem(signing_key))

    assert main(["sign", "--file", "payload.json", "--kid", TEST_KID]) == 0
    envelope = _last_json(capsys)
    assert envelope["protected"]["kid"] == TEST_KID
    (repo / "envelope.json").write_text(json.dumps(envelope), encoding="utf-8")

    monkeypatch.setenv(PUBLIC_KEYS_JSON_ENV, json.dumps({TEST_KID: public_key_pem(signing_key.public_key())}))
    assert main(["verify", "--file", "envelope.json"]) == 0
    out = _last_json(capsys)
    assert out["ok"] is True
    assert out["violations"] == []
    assert out["kid"] == TEST_KID


def test_sign_requires_object(repo, capsys) -> None:
    (repo / "payload.json").write_text("[1, 2]", encoding="utf-8")
    assert main(["sign", "--file", "payload.json"]) == 1
    assert "JSON object" in capsys.readouterr().err


def test_posp_without_receipts(repo, capsys) -> None:
    assert main(["posp", "--agent", "agent-7"]) == 0
    out = _last_json(capsys)
    assert out["proof"]["agent_id"] == "agent-7"
    assert out["proof"]["score"] == 0
    assert out["check"]["txCount"] == 0


def test_status_reports_missing_journal(repo, capsys) -> None:
    assert main(["status"]) == 0
    text = capsys.readouterr().out
    assert "mandate-rail status" in text
    assert "(missing)" in text
    assert "- preset: sandbox" in text
