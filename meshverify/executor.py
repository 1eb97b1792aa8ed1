"""
Remote Command Executor.

Runs a command inside an environment and maps a non-zero exit to
CommandError. Never retries; callers own retry policy.
"""

from __future__ import annotations

from typing import Sequence

from meshverify.core.exceptions import CommandError
from meshverify.core.logging import get_logger
from meshverify.models import CommandResult, Environment
from meshverify.provisioner import EnvironmentProvisioner

logger = get_logger("executor")


def single_line(output: str) -> str:
    """Strip the trailing newline from output known to be one line."""
    return output.rstrip("\r\n")


class CommandExecutor:
    """Execute argv in environments through the provisioner."""

    def __init__(self, provisioner: EnvironmentProvisioner):
        self.provisioner = provisioner

    def run(self, env: Environment, argv: Sequence[str]) -> CommandResult:
        """Run argv and return the captured result without raising on exit code.

        Transport failures (ExecError) still propagate.
        """
        argv = list(argv)
        logger.debug(f"Running {argv} in {env.name}")
        stdout, stderr, exit_code = self.provisioner.exec(env, argv)
        return CommandResult(argv=argv, stdout=stdout, stderr=stderr, exit_code=exit_code)

    def execute(self, env: Environment, argv: Sequence[str]) -> str:
        """Run argv and return stdout, raising CommandError on non-zero exit."""
        result = self.run(env, argv)
        if not result.ok:
            logger.warning(
                f"Command {result.argv} in {env.name} exited {result.exit_code}: "
                f"{result.stderr.strip()}"
            )
            raise CommandError(
                result.argv,
                result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
                environment=env.name,
            )
        return result.stdout
