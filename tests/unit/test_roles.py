import pytest

from nudge_queue.roles import SUPPORTED_ROLES, validate_role


@pytest.mark.unit
@pytest.mark.parametrize("role", SUPPORTED_ROLES)
def test_supported_role_is_accepted(role: str) -> None:
    validated = validate_role(role)
    assert validated.name == role


@pytest.mark.unit
def test_only_worker_role_runs_background_loop() -> None:
    assert validate_role("worker-dispatch").runs_worker_loop is True
    assert validate_role("api").runs_worker_loop is False


@pytest.mark.unit
def test_invalid_role_rejected_with_actionable_message() -> None:
    with pytest.raises(ValueError) as exc_info:
        validate_role("worker-unknown")

    message = str(exc_info.value)
    assert "Unsupported role 'worker-unknown'" in message
    assert "Supported roles: api, worker-dispatch" in message
    assert "migrations are applied externally" in message
