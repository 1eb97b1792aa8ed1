"""
Run diagnostics - preserved only when a run fails.

Writes each failed environment's stdout and stderr logs to
``<log_dir>/<name>.stdout.log`` / ``<name>.stderr.log`` and a structured
run report that can be read without re-running the fleet:

- run-report.json  machine-parseable outcome, every sub-case, fatal cause
- run-report.md    human summary of the failures
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from meshverify.core.logging import get_logger
from meshverify.models import Environment, RunOutcome
from meshverify.provisioner import EnvironmentProvisioner

logger = get_logger("diagnostics")


def save_logs(
    provisioner: EnvironmentProvisioner,
    env: Environment,
    base_path: Path | str,
) -> tuple[Path, Path]:
    """Fetch env's logs and write them under base_path. Raises LogError."""
    base_path = Path(base_path)
    base_path.mkdir(parents=True, exist_ok=True)

    stdout, stderr = provisioner.fetch_logs(env)

    logger.info(f"Saving logs for {env.name} to {base_path}")
    stdout_path = base_path / f"{env.name}.stdout.log"
    stderr_path = base_path / f"{env.name}.stderr.log"
    stdout_path.write_text(stdout)
    stderr_path.write_text(stderr)
    return stdout_path, stderr_path


@dataclass
class RunReport:
    """Structured report of a failed (or passed) run."""

    outcome: RunOutcome
    settings: dict[str, Any] = field(default_factory=dict)
    fleet: dict[str, str | None] = field(default_factory=dict)  # hostname -> version
    saved_logs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        outcome = self.outcome
        duration = None
        if outcome.finished_at:
            duration = (outcome.finished_at - outcome.started_at).total_seconds()
        return {
            "passed": outcome.passed,
            "summary": outcome.summary(),
            "started_at": outcome.started_at.isoformat(),
            "finished_at": outcome.finished_at.isoformat() if outcome.finished_at else None,
            "duration_seconds": duration,
            "fatal": {
                "phase": outcome.failed_phase.value,
                "error": outcome.fatal_error_code,
                "message": outcome.fatal_error,
            } if outcome.fatal_error else None,
            "fleet": self.fleet,
            "checks": [c.to_dict() for c in outcome.checks],
            "saved_logs": self.saved_logs,
            "settings": self.settings,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)

    def to_markdown(self) -> str:
        outcome = self.outcome
        md = f"# Mesh Verification Report\n\n**Result:** {outcome.summary()}\n\n"

        if outcome.fatal_error:
            md += (
                f"## Fatal Error\n\n**Phase:** {outcome.failed_phase.value}\n\n"
                f"```\n{outcome.fatal_error}\n```\n"
            )

        for check in outcome.checks:
            icon = "PASS" if check.passed else "FAIL"
            md += (
                f"\n## {check.name} ({icon}, "
                f"{len(check.results) - len(check.failures)}/{len(check.results)})\n\n"
            )
            for result in check.failures[:25]:
                md += f"- `{result.case}`: {result.message}\n"
                if result.command:
                    md += f"  - command: `{' '.join(result.command)}`\n"
                if result.stderr.strip():
                    md += f"  - stderr: `{result.stderr.strip()[:300]}`\n"
            if len(check.failures) > 25:
                md += f"- ... {len(check.failures) - 25} more\n"

        if self.saved_logs:
            md += "\n## Saved Logs\n\n"
            for path in self.saved_logs:
                md += f"- {path}\n"

        return md

    def save(self, directory: Path | str) -> Path:
        """Write run-report.json and run-report.md, return the JSON path."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)

        json_path = directory / "run-report.json"
        json_path.write_text(self.to_json())
        (directory / "run-report.md").write_text(self.to_markdown())
        return json_path
