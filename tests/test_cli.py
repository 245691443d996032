"""Tests for the offline CLI commands."""

import os
import time

import pytest

from umrgen.cli import issue_token, sweep_sessions
from umrgen.models.tier import Tier
from umrgen.services.entitlement.tokens import TokenService


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("TOKEN_SECRET", "cli-secret")
    monkeypatch.setenv("SESSION_ROOT", str(tmp_path / "sessions"))
    monkeypatch.setenv("BACKEND_LORA_DIR", str(tmp_path / "backend_loras"))
    return tmp_path


def test_issue_token(cli_env, capsys):
    exit_code = issue_token.main(["--tier", "trial", "--limit", "5", "--key-id", "partner"])

    assert exit_code == 0
    token = capsys.readouterr().out.strip()
    claims = TokenService(secret="cli-secret").verify(token)
    assert claims.valid is True
    assert claims.tier == Tier.TRIAL
    assert claims.usage_limit == 5
    assert claims.key_id == "partner"


def test_issue_token_requires_secret(cli_env, monkeypatch, capsys):
    monkeypatch.setenv("TOKEN_SECRET", "")

    assert issue_token.main(["--tier", "pro"]) == 1
    assert "TOKEN_SECRET" in capsys.readouterr().err


def test_issue_token_rejects_unknown_tier(cli_env):
    with pytest.raises(SystemExit):
        issue_token.main(["--tier", "platinum"])


def _make_session(root, name, age_seconds):
    session = root / "sessions" / name / "loras"
    session.mkdir(parents=True)
    (session / "a.safetensors").write_bytes(b"x" * 2048)
    old = time.time() - age_seconds
    os.utime(session.parent, (old, old))
    return session.parent


def test_sweep_sessions(cli_env, capsys):
    stale = _make_session(cli_env, "sid_stale", 3 * 24 * 3600)
    fresh = _make_session(cli_env, "sid_fresh", 60)
    mounts = cli_env / "backend_loras"
    mounts.mkdir()
    (mounts / "umr_sid_stale_abc_a.safetensors").write_bytes(b"x")
    (mounts / "shared.safetensors").write_bytes(b"x")

    assert sweep_sessions.main([]) == 0

    out = capsys.readouterr().out
    assert "Sessions removed: 1" in out
    assert "Stale mounts removed: 1" in out
    assert not stale.exists()
    assert fresh.exists()
    assert [p.name for p in mounts.iterdir()] == ["shared.safetensors"]


def test_sweep_sessions_dry_run(cli_env, capsys):
    stale = _make_session(cli_env, "sid_stale", 3 * 24 * 3600)

    assert sweep_sessions.main(["--dry-run"]) == 0

    out = capsys.readouterr().out
    assert "sid_stale" in out
    assert "[DRY RUN]" in out
    assert stale.exists()
