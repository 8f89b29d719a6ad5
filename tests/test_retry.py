from unittest.mock import Mock

import pytest

from buildphp import CommandError, Decision, DownloadError, RetryPolicy


def failing(times, value="ok"):
    """operation that raises `times` times, then returns value"""
    calls = {"n": 0}

    def operation():
        calls["n"] += 1
        if calls["n"] <= times:
            raise DownloadError(f"failure {calls['n']}")
        return value

    operation.calls = calls
    return operation


def test_succeeds_on_third_attempt(policy, sleeps):
    outcome = policy.run(failing(2))
    assert outcome.ok
    assert outcome.value == "ok"
    assert outcome.state.attempt == 3
    assert sleeps == [2, 2]


def test_exhaustion_after_exactly_max_attempts(policy, sleeps):
    operation = failing(100)
    outcome = policy.run(operation)
    assert not outcome.ok
    assert outcome.exhausted
    assert operation.calls["n"] == 3
    assert outcome.state.attempt == 3
    assert outcome.state.last_error == "failure 3"
    assert isinstance(outcome.error, DownloadError)
    assert sleeps == [2, 2]


def test_first_try_success_does_not_sleep(policy, sleeps):
    outcome = policy.run(lambda: 42)
    assert outcome.value == 42
    assert outcome.state.attempt == 1
    assert sleeps == []


def test_on_failure_called_between_attempts(policy):
    on_failure = Mock(return_value=Decision.CONTINUE)
    policy.run(failing(100), on_failure=on_failure)
    assert [c.args[0] for c in on_failure.call_args_list] == [1, 2]


def test_abort_stops_retrying(policy, sleeps):
    operation = failing(100)
    outcome = policy.run(operation, on_failure=lambda attempt, error: Decision.ABORT)
    assert outcome.aborted
    assert not outcome.exhausted
    assert operation.calls["n"] == 1
    assert sleeps == []


def test_max_attempts_override(policy):
    operation = failing(100)
    outcome = policy.run(operation, max_attempts=1)
    assert operation.calls["n"] == 1
    assert not outcome.ok


def test_non_build_errors_propagate(policy):
    def operation():
        raise KeyError("bug")

    with pytest.raises(KeyError):
        policy.run(operation)


def test_command_errors_are_retried(policy):
    calls = []

    def operation():
        calls.append(1)
        if len(calls) == 1:
            raise CommandError("boom", command=["spc"])
        return True

    assert policy.run(operation).ok
    assert len(calls) == 2


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_max_attempts_override_must_be_positive(policy):
    operation = failing(100)
    with pytest.raises(ValueError):
        policy.run(operation, max_attempts=0)
    assert operation.calls["n"] == 0
