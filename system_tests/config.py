"""
System Test Configuration.

Controls whether the Docker-backed suite runs and which control-plane log
lines count as errors.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass
class SystemTestConfig:
    """Configuration for system tests."""

    # Opt-in: the suite builds images and starts real containers
    enabled: bool = False

    # Fail the log smoke test on warnings too
    strict_mode: bool = False

    # Error detection patterns (case-insensitive regex)
    error_patterns: list[str] = field(
        default_factory=lambda: [
            r"panic:",
            r"FATAL",
            r"\bFTL\b",
            r"level=fatal",
            r"level=error",
            r"\bERR\b",
        ]
    )

    # Warning patterns (only checked in strict mode)
    warning_patterns: list[str] = field(
        default_factory=lambda: [
            r"level=warn",
            r"\bWRN\b",
        ]
    )

    # Patterns to ignore (expected noise while nodes join)
    ignore_patterns: list[str] = field(
        default_factory=lambda: [
            r"health",
            r"context canceled",
            r"long.?poll",
        ]
    )

    @classmethod
    def from_env(cls) -> "SystemTestConfig":
        """Load config from environment variables."""
        return cls(
            enabled=os.getenv("MESHVERIFY_SYSTEM_TESTS", "0") == "1",
            strict_mode=os.getenv("MESHVERIFY_SYSTEM_TESTS_STRICT", "0") == "1",
        )


_config: SystemTestConfig | None = None


def get_config() -> SystemTestConfig:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = SystemTestConfig.from_env()
    return _config
