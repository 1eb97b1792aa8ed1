"""Harness error taxonomy.

Errors marked ``fatal`` abort setup and send the run straight to diagnostics
and teardown. The rest are scoped to the check or sub-case that raised them.
"""

from __future__ import annotations

from typing import Any, Sequence


class HarnessError(Exception):
    """Base harness exception with a structured representation."""

    error_code: str = "HARNESS_ERROR"
    message: str = "Harness operation failed"
    fatal: bool = False

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "fatal": self.fatal,
            **({"details": self.details} if self.details else {}),
        }


class ProvisionError(HarnessError):
    """Image build or container start failed."""

    error_code = "PROVISION_FAILED"
    message = "Could not provision environment"
    fatal = True


class ExecError(HarnessError):
    """Exec transport into a container failed (not a non-zero exit)."""

    error_code = "EXEC_FAILED"
    message = "Could not execute command in environment"


class LogError(HarnessError):
    """Container logs could not be fetched."""

    error_code = "LOG_FETCH_FAILED"
    message = "Could not fetch environment logs"


class RemoveError(HarnessError):
    """Container or network removal failed."""

    error_code = "REMOVE_FAILED"
    message = "Could not remove environment"


class ReadinessTimeoutError(HarnessError):
    """A readiness condition did not hold before its deadline."""

    error_code = "READINESS_TIMEOUT"
    message = "Condition not met before deadline"
    fatal = True


class CommandError(HarnessError):
    """A remote command exited non-zero."""

    error_code = "COMMAND_FAILED"
    message = "Remote command failed"

    def __init__(
        self,
        argv: Sequence[str],
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
        environment: str | None = None,
    ):
        self.argv = list(argv)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.environment = environment
        where = f" in {environment}" if environment else ""
        super().__init__(
            f"command {' '.join(self.argv)!r}{where} exited {exit_code}: {stderr.strip()}",
            details={
                "argv": self.argv,
                "exit_code": exit_code,
                "stderr": stderr,
                "environment": environment,
            },
        )


class JoinError(HarnessError):
    """A client failed to join the control plane."""

    error_code = "JOIN_FAILED"
    message = "Client failed to join"
    fatal = True


class ParseError(HarnessError):
    """Command output did not have the expected shape."""

    error_code = "PARSE_FAILED"
    message = "Unexpected command output"


class CleanupError(HarnessError):
    """A teardown step failed. Logged, never escalated."""

    error_code = "CLEANUP_FAILED"
    message = "Teardown step failed"


class RunTimeoutError(HarnessError):
    """The global run deadline elapsed."""

    error_code = "RUN_TIMEOUT"
    message = "Run deadline exceeded"
    fatal = True


class FleetFrozenError(HarnessError):
    """The fleet was modified after bootstrap completed."""

    error_code = "FLEET_FROZEN"
    message = "Fleet is frozen after bootstrap"
