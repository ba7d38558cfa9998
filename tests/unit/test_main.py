import json

import pytest

from nudge_queue.main import run


@pytest.mark.unit
def test_cli_returns_non_zero_for_invalid_role(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run(["--role", "bad-role", "--dry-run-startup"])
    captured = capsys.readouterr()

    assert exit_code == 2
    assert "ERROR:" in captured.err
    assert "Try one of: api, worker-dispatch" in captured.err


@pytest.mark.unit
@pytest.mark.parametrize("role", ["api", "worker-dispatch"])
def test_cli_dry_run_succeeds_for_valid_role(role: str, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run(["--role", role, "--dry-run-startup"])
    captured = capsys.readouterr()

    assert exit_code == 0
    assert '"message": "dry-run startup complete"' in captured.out


@pytest.mark.unit
def test_cli_role_defaults_from_env_and_reports_wiring(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("APP_ROLE", "worker-dispatch")
    monkeypatch.setenv("NUDGES_ENABLED", "true")
    monkeypatch.delenv("DATABASE_URL", raising=False)

    assert run(["--dry-run-startup"]) == 0

    records = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]
    assert records[-1]["message"] == "dry-run startup complete"
    assert records[-1]["role"] == "worker-dispatch"
    assert records[-1]["detail"] == "store=memory nudges_enabled=true worker_loop=on"


@pytest.mark.unit
def test_cli_defaults_to_api_role(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.delenv("APP_ROLE", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    assert run(["--dry-run-startup"]) == 0

    last = json.loads(capsys.readouterr().out.splitlines()[-1])
    assert last["role"] == "api"
    assert last["detail"].endswith("worker_loop=off")
