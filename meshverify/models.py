"""
Run data model.

Environments are owned by the provisioner; everything else refers to them
by name. The fleet is written by bootstrap only and frozen before any
verification check reads it.
"""

from __future__ import annotations

import ipaddress
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator

from meshverify.core.exceptions import FleetFrozenError, RunTimeoutError

if TYPE_CHECKING:
    from meshverify.core.config import HarnessSettings
    from meshverify.executor import CommandExecutor
    from meshverify.provisioner import EnvironmentProvisioner


IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
AddressAssignment = dict[str, IPAddress]


class Role(str, Enum):
    CONTROL_PLANE = "control-plane"
    CLIENT = "client"


class Phase(str, Enum):
    """Run lifecycle states."""

    SETUP = "setup"
    RUNNING = "running"
    OUTCOME = "outcome"
    DIAGNOSTICS = "diagnostics"
    TEARDOWN = "teardown"
    DONE = "done"


@dataclass(frozen=True)
class BuildSpec:
    """How to build an environment's image."""

    dockerfile: str
    context_dir: str = "."
    build_args: dict[str, str] = field(default_factory=dict)
    tag: str | None = None


@dataclass(frozen=True)
class RunSpec:
    """How to start an environment's container."""

    name: str
    network: str | None = None
    command: list[str] = field(default_factory=list)
    mounts: list[str] = field(default_factory=list)
    # container port key -> host port, None picks an ephemeral host port
    ports: dict[str, int | None] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    hostname: str | None = None


@dataclass
class Environment:
    """One running control-plane or client container."""

    name: str
    role: Role
    network: str | None = None
    command: list[str] = field(default_factory=list)
    mounts: list[str] = field(default_factory=list)
    host_ports: dict[str, str] = field(default_factory=dict)
    version: str | None = None
    running: bool = True
    handle: Any = field(default=None, repr=False, compare=False)

    def host_port(self, port_key: str) -> str:
        """Host-side port bound to a container port key like '8080/tcp'."""
        try:
            return self.host_ports[port_key]
        except KeyError:
            raise KeyError(f"{self.name} has no host binding for {port_key}") from None


class Network:
    """Isolated Docker network shared by the control plane and the fleet."""

    def __init__(self, name: str, handle: Any = None):
        self.name = name
        self.handle = handle

    def __repr__(self) -> str:
        return f"Network(name={self.name!r})"


class Fleet:
    """hostname -> client Environment, frozen once bootstrap completes."""

    def __init__(self) -> None:
        self._members: dict[str, Environment] = {}
        self._frozen = False

    def add(self, hostname: str, env: Environment) -> None:
        if self._frozen:
            raise FleetFrozenError(details={"hostname": hostname})
        if hostname in self._members:
            raise ValueError(f"duplicate hostname in fleet: {hostname}")
        self._members[hostname] = env

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def hostnames(self) -> list[str]:
        return list(self._members)

    def items(self) -> list[tuple[str, Environment]]:
        return list(self._members.items())

    def environments(self) -> list[Environment]:
        return list(self._members.values())

    def __getitem__(self, hostname: str) -> Environment:
        return self._members[hostname]

    def __contains__(self, hostname: object) -> bool:
        return hostname in self._members

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._members))

    def __len__(self) -> int:
        return len(self._members)


@dataclass(frozen=True)
class EnrollmentCredential:
    """Reusable enrollment key. Never shown in reprs or logs."""

    key: str = field(repr=False)
    namespace: str
    expiry: str
    reusable: bool = True
    issued_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one remote command."""

    argv: list[str]
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class SubCaseResult:
    """Pass/fail of one independently attributable unit of a check."""

    check: str
    case: str
    passed: bool
    message: str = ""
    command: list[str] | None = None
    stderr: str = ""
    duration_seconds: float = 0.0
    hostnames: tuple[str, ...] = ()

    def describe(self) -> str:
        status = "PASS" if self.passed else "FAIL"
        text = f"[{status}] {self.check}/{self.case}"
        if self.message:
            text += f": {self.message}"
        if not self.passed and self.command:
            text += f"\n    command: {' '.join(self.command)}"
        if not self.passed and self.stderr.strip():
            text += f"\n    stderr: {self.stderr.strip()}"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "check": self.check,
            "case": self.case,
            "passed": self.passed,
            "message": self.message,
            "command": self.command,
            "stderr": self.stderr,
            "duration_seconds": round(self.duration_seconds, 3),
            "hostnames": list(self.hostnames),
        }


@dataclass
class CheckReport:
    """All sub-case results of one verification check."""

    name: str
    results: list[SubCaseResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(r.passed for r in self.results)

    @property
    def failures(self) -> list[SubCaseResult]:
        return [r for r in self.results if not r.passed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "total": len(self.results),
            "failed": len(self.failures),
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class RunOutcome:
    """Aggregate result of a run. Finalized once, after every check."""

    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    checks: list[CheckReport] = field(default_factory=list)
    fatal_error: str | None = None
    fatal_error_code: str | None = None
    failed_phase: Phase | None = None
    _finalized: bool = field(default=False, repr=False)

    @property
    def passed(self) -> bool:
        return self.fatal_error is None and all(c.passed for c in self.checks)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def record_check(self, report: CheckReport) -> None:
        if self._finalized:
            raise RuntimeError("run outcome already finalized")
        self.checks.append(report)

    def record_fatal(self, phase: Phase, error: Exception) -> None:
        if self._finalized:
            raise RuntimeError("run outcome already finalized")
        self.failed_phase = phase
        self.fatal_error = str(error)
        self.fatal_error_code = getattr(error, "error_code", type(error).__name__)

    def finalize(self) -> None:
        self.finished_at = datetime.now(UTC)
        self._finalized = True

    def failed_hostnames(self) -> set[str]:
        names: set[str] = set()
        for check in self.checks:
            for result in check.failures:
                names.update(result.hostnames)
        return names

    def summary(self) -> str:
        if self.fatal_error:
            return f"FAILED during {self.failed_phase.value}: {self.fatal_error}"
        total = sum(len(c.results) for c in self.checks)
        failed = sum(len(c.failures) for c in self.checks)
        status = "PASSED" if self.passed else "FAILED"
        return f"{status}: {total - failed}/{total} sub-cases passed across {len(self.checks)} checks"


class RunDeadline:
    """Global run deadline, checked between phases."""

    def __init__(self, seconds: float, clock=time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._start = clock()

    @property
    def remaining(self) -> float:
        return self.seconds - (self._clock() - self._start)

    def check(self, step: str) -> None:
        if self.remaining <= 0:
            raise RunTimeoutError(
                f"run deadline of {self.seconds:.0f}s exceeded before {step}",
                details={"step": step},
            )


@dataclass
class RunContext:
    """Per-run state handed to every component instead of globals."""

    settings: "HarnessSettings"
    provisioner: "EnvironmentProvisioner"
    executor: "CommandExecutor"
    deadline: RunDeadline
    network: Network | None = None
    control_plane: Environment | None = None
    control_plane_endpoint: str | None = None
    fleet: Fleet = field(default_factory=Fleet)
    credential: EnrollmentCredential | None = None

    def require_control_plane(self) -> Environment:
        if self.control_plane is None:
            raise RuntimeError("control plane has not been provisioned")
        return self.control_plane
