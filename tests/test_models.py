"""Tests for the run data model."""

from __future__ import annotations

import pytest

from meshverify.core.exceptions import FleetFrozenError, RunTimeoutError
from meshverify.models import (
    CheckReport,
    EnrollmentCredential,
    Environment,
    Fleet,
    Phase,
    Role,
    RunDeadline,
    RunOutcome,
    SubCaseResult,
)


def _env(name: str) -> Environment:
    return Environment(name=name, role=Role.CLIENT)


class TestFleet:
    def test_preserves_insertion_order(self):
        fleet = Fleet()
        for name in ("c", "a", "b"):
            fleet.add(name, _env(name))

        assert fleet.hostnames == ["c", "a", "b"]
        assert len(fleet) == 3
        assert "a" in fleet

    def test_duplicate_hostname_rejected(self):
        fleet = Fleet()
        fleet.add("a", _env("a"))

        with pytest.raises(ValueError):
            fleet.add("a", _env("a"))

    def test_frozen(self):
        fleet = Fleet()
        fleet.add("a", _env("a"))
        fleet.freeze()

        with pytest.raises(FleetFrozenError):
            fleet.add("b", _env("b"))
        assert fleet.hostnames == ["a"]


class TestRunOutcome:
    def test_empty_outcome_passes(self):
        assert RunOutcome().passed

    def test_failed_sub_case_fails_run(self):
        outcome = RunOutcome()
        outcome.record_check(
            CheckReport(
                name="addresses",
                results=[SubCaseResult(check="addresses", case="a", passed=False, hostnames=("a",))],
            )
        )

        assert not outcome.passed
        assert outcome.failed_hostnames() == {"a"}
        assert outcome.summary().startswith("FAILED: 0/1")

    def test_fatal_error_fails_run(self):
        outcome = RunOutcome()
        outcome.record_fatal(Phase.SETUP, RunTimeoutError("too slow"))

        assert not outcome.passed
        assert outcome.fatal_error_code == "RUN_TIMEOUT"
        assert "during setup" in outcome.summary()

    def test_no_recording_after_finalize(self):
        outcome = RunOutcome()
        outcome.finalize()

        with pytest.raises(RuntimeError):
            outcome.record_check(CheckReport(name="membership"))


class TestRunDeadline:
    def test_check_passes_within_budget(self):
        ticks = iter([0.0, 10.0])
        RunDeadline(60, clock=lambda: next(ticks)).check("joins")

    def test_check_raises_once_elapsed(self):
        ticks = iter([0.0, 61.0])

        with pytest.raises(RunTimeoutError) as exc_info:
            RunDeadline(60, clock=lambda: next(ticks)).check("joins")

        assert exc_info.value.details == {"step": "joins"}


def test_credential_key_hidden_from_repr():
    credential = EnrollmentCredential(key="key-3f2a9c", namespace="test", expiry="24h")

    assert "key-3f2a9c" not in repr(credential)


def test_sub_case_describe_includes_command_on_failure():
    result = SubCaseResult(
        check="reachability",
        case="a-b",
        passed=False,
        message="command exited 1",
        command=["tailscale", "ping", "100.64.0.2"],
        stderr="timeout\n",
    )

    text = result.describe()

    assert text.startswith("[FAIL] reachability/a-b: command exited 1")
    assert "tailscale ping 100.64.0.2" in text
    assert "stderr: timeout" in text
