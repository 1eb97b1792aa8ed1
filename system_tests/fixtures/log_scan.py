"""
Control-plane log scanning.

Fetches the control plane's logs through the provisioner and classifies
lines as errors or warnings, skipping known noise. A Go panic is collected
as one block from the ``panic:`` line to the first blank line.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from meshverify.models import Environment
from meshverify.provisioner import EnvironmentProvisioner
from system_tests.config import SystemTestConfig


@dataclass
class LogCapture:
    """Logs of one environment with analysis."""

    environment: str
    lines: list[str]
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    panics: list[str] = field(default_factory=list)

    @property
    def has_issues(self) -> bool:
        return bool(self.errors or self.panics)


class LogScanner:
    """
    Scan environment logs for error patterns.

    Usage:
        scanner = LogScanner(provisioner, config)
        capture = scanner.scan(control_plane)
        assert not capture.has_issues, scanner.summary(capture)
    """

    def __init__(self, provisioner: EnvironmentProvisioner, config: SystemTestConfig):
        self.provisioner = provisioner
        self.config = config

        self._error_patterns = [re.compile(p, re.IGNORECASE) for p in config.error_patterns]
        self._warning_patterns = [re.compile(p, re.IGNORECASE) for p in config.warning_patterns]
        self._ignore_patterns = [re.compile(p, re.IGNORECASE) for p in config.ignore_patterns]
        self._panic_start = re.compile(r"^panic:")

    def scan(self, env: Environment) -> LogCapture:
        stdout, stderr = self.provisioner.fetch_logs(env)
        lines = (stdout + "\n" + stderr).splitlines()
        return self.analyze(env.name, lines)

    def analyze(self, environment: str, lines: list[str]) -> LogCapture:
        capture = LogCapture(environment=environment, lines=lines)

        in_panic = False
        current: list[str] = []

        for line in lines:
            if in_panic:
                if not line.strip() or len(current) > 50:
                    capture.panics.append("\n".join(current))
                    in_panic, current = False, []
                else:
                    current.append(line)
                continue

            if not line.strip():
                continue

            if self._panic_start.search(line):
                in_panic, current = True, [line]
                continue

            if any(p.search(line) for p in self._ignore_patterns):
                continue

            if any(p.search(line) for p in self._error_patterns):
                capture.errors.append(line)
                continue

            if any(p.search(line) for p in self._warning_patterns):
                capture.warnings.append(line)

        if current:
            capture.panics.append("\n".join(current))

        return capture

    def summary(self, capture: LogCapture, strict_mode: bool | None = None) -> str | None:
        """Formatted issue list, or None when the logs are clean."""
        strict = self.config.strict_mode if strict_mode is None else strict_mode
        issues = []

        if capture.panics:
            issues.append(
                f"'{capture.environment}' panicked {len(capture.panics)} time(s):\n"
                + "\n---\n".join(capture.panics[:2])
            )
        if capture.errors:
            issues.append(
                f"'{capture.environment}' logged {len(capture.errors)} error(s):\n"
                + "\n".join(f"  → {e[:300]}" for e in capture.errors[:5])
            )
        if strict and capture.warnings:
            issues.append(
                f"'{capture.environment}' logged {len(capture.warnings)} warning(s) (strict mode):\n"
                + "\n".join(f"  → {w[:300]}" for w in capture.warnings[:5])
            )

        return "\n\n".join(issues) if issues else None
