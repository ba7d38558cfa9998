import json
import subprocess
import sys

import pytest

from nudge_queue.roles import SUPPORTED_ROLES


@pytest.mark.integration
@pytest.mark.parametrize("role", SUPPORTED_ROLES)
def test_role_starts_via_dry_run(role: str) -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "nudge_queue.main", "--role", role, "--dry-run-startup"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0, proc.stderr

    records = [json.loads(line) for line in proc.stdout.splitlines() if line.strip()]
    assert [record["message"] for record in records] == ["runtime initialized", "dry-run startup complete"]
    assert all(record["role"] == role for record in records)
    assert len({record["run_id"] for record in records}) == 1


@pytest.mark.integration
def test_unknown_role_exits_with_usage_error() -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "nudge_queue.main", "--role", "worker-deliver", "--dry-run-startup"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 2
    assert "Unsupported role 'worker-deliver'" in proc.stderr
