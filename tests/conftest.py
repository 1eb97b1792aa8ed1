"""Pytest configuration and fixtures.

FakeProvisioner stands in for the Docker backend and simulates the
control-plane and client CLIs closely enough for bootstrap, verification
and lifecycle tests to run without containers.
"""

from __future__ import annotations

import threading
from typing import Generator
from unittest.mock import MagicMock, patch

import pytest

from meshverify.core.config import HarnessSettings
from meshverify.core.exceptions import LogError, ProvisionError, RemoveError
from meshverify.executor import CommandExecutor
from meshverify.models import (
    BuildSpec,
    Environment,
    Network,
    Role,
    RunContext,
    RunDeadline,
    RunSpec,
)


VALID_KEY = "key-3f2a9c"


class FakeProvisioner:
    """In-memory provisioning backend with failure injection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[tuple[str, str]] = []
        self.exec_calls: list[tuple[str, list[str]]] = []
        self.environments: dict[str, Environment] = {}
        self.build_specs: dict[str, BuildSpec] = {}

        self.namespace_exists = False
        self.issued_key = VALID_KEY
        self.valid_keys = {VALID_KEY}
        self.joined: list[str] = []
        self.addresses: dict[str, str] = {}

        # Failure injection
        self.fail_start: set[str] = set()
        self.fail_remove: set[str] = set()
        self.fail_logs: set[str] = set()
        self.unreachable: set[tuple[str, str]] = set()
        self.address_overrides: dict[str, str] = {}
        self.hidden_peers: dict[str, set[str]] = {}
        self.extra_nodes: list[str] = []
        self.converge_after_status_calls = 0
        self.status_calls = 0

    # -- network ---------------------------------------------------------

    def create_network(self, name: str) -> Network:
        self.events.append(("create_network", name))
        return Network(name=name)

    def close_network(self, network: Network) -> None:
        self.events.append(("close_network", network.name))

    # -- containers ------------------------------------------------------

    def build_and_run(
        self,
        build_spec: BuildSpec,
        run_spec: RunSpec,
        role: Role = Role.CLIENT,
        version: str | None = None,
    ) -> Environment:
        if run_spec.name in self.fail_start:
            raise ProvisionError(f"Could not start {run_spec.name}: image build failed")
        self.events.append(("run", run_spec.name))
        env = Environment(
            name=run_spec.name,
            role=role,
            network=run_spec.network,
            command=list(run_spec.command),
            mounts=list(run_spec.mounts),
            host_ports={key: str(port or 49153) for key, port in run_spec.ports.items()},
            version=version,
        )
        self.environments[env.name] = env
        self.build_specs[env.name] = build_spec
        return env

    def exec(self, env: Environment, argv: list[str]) -> tuple[str, str, int]:
        with self._lock:
            self.exec_calls.append((env.name, list(argv)))
            if env.role == Role.CONTROL_PLANE:
                return self._control_plane(argv)
            return self._client(env.name, argv)

    def fetch_logs(self, env: Environment) -> tuple[str, str]:
        if env.name in self.fail_logs:
            raise LogError(f"Could not fetch logs for {env.name}")
        self.events.append(("fetch_logs", env.name))
        return f"{env.name} stdout\n", f"{env.name} stderr\n"

    def remove(self, env: Environment) -> None:
        self.events.append(("remove", env.name))
        if env.name in self.fail_remove:
            raise RemoveError(f"Could not remove {env.name}")
        env.running = False

    def close(self) -> None:
        pass

    # -- simulated CLIs --------------------------------------------------

    def _control_plane(self, argv: list[str]) -> tuple[str, str, int]:
        if argv[1:3] == ["namespaces", "create"]:
            if self.namespace_exists:
                return "", "namespace already exists", 1
            self.namespace_exists = True
            return "Namespace created\n", "", 0
        if "preauthkeys" in argv:
            return f"{self.issued_key}\n", "", 0
        if argv[-2:] == ["nodes", "list"]:
            rows = ["ID | Name | Namespace | IP address"]
            for i, hostname in enumerate(self.joined + self.extra_nodes, start=1):
                rows.append(f"{i} | {hostname} | test | {self.addresses.get(hostname, '-')}")
            return "\n".join(rows) + "\n", "", 0
        return "", f"unknown command {argv}", 2

    def _client(self, hostname: str, argv: list[str]) -> tuple[str, str, int]:
        command = argv[1]
        if command == "up":
            key = argv[argv.index("--authkey") + 1]
            if key not in self.valid_keys:
                return "", "backend error: invalid key: key has expired", 1
            name = argv[argv.index("--hostname") + 1]
            self.joined.append(name)
            self.addresses[name] = f"100.64.0.{len(self.joined)}"
            return "", "", 0
        if command == "ip":
            if hostname in self.address_overrides:
                return self.address_overrides[hostname] + "\n", "", 0
            if hostname not in self.addresses:
                return "", "NeedsLogin", 1
            return self.addresses[hostname] + "\n", "", 0
        if command == "status":
            self.status_calls += 1
            visible = self.joined
            if self.status_calls <= self.converge_after_status_calls:
                visible = [hostname]
            hidden = self.hidden_peers.get(hostname, set())
            lines = [
                f"{self.addresses[h]}  {h}  test  linux  -"
                for h in visible
                if h not in hidden
            ]
            return "\n".join(lines) + "\n", "", 0
        if command == "ping":
            address = argv[-1]
            destination = next(h for h, a in self.addresses.items() if a == address)
            if (hostname, destination) in self.unreachable:
                return "", "ping timeout: no reply after 20 attempts", 1
            return f"pong from {destination} ({address}) via 172.18.0.4:41641 in 2ms\n", "", 0
        return "", f"unknown command {argv}", 2

    # -- helpers ---------------------------------------------------------

    def calls_matching(self, fragment: str) -> list[tuple[str, list[str]]]:
        return [(name, argv) for name, argv in self.exec_calls if fragment in argv]


def no_sleep(seconds: float) -> None:
    pass


@pytest.fixture
def settings(tmp_path) -> HarnessSettings:
    return HarnessSettings(
        context_dir=str(tmp_path),
        client_count=3,
        client_versions=["1.14.3", "1.12.3"],
        readiness_timeout=0.05,
        readiness_initial_interval=0.001,
        readiness_max_interval=0.001,
        convergence_timeout=0.5,
        settle_seconds=0,
        verification_workers=4,
        log_dir=str(tmp_path / "test_output"),
        run_timeout=60,
    )


@pytest.fixture
def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def context(settings: HarnessSettings, provisioner: FakeProvisioner) -> RunContext:
    return RunContext(
        settings=settings,
        provisioner=provisioner,
        executor=CommandExecutor(provisioner),
        deadline=RunDeadline(settings.run_timeout),
    )


@pytest.fixture
def healthy() -> Generator[MagicMock, None, None]:
    """Control-plane health endpoint answering 200."""
    with patch("meshverify.readiness.httpx.get") as mock_get:
        mock_get.return_value = MagicMock(status_code=200)
        yield mock_get


@pytest.fixture
def bootstrapped(context: RunContext, healthy: MagicMock) -> RunContext:
    """Context with a joined, converged, frozen fleet."""
    from meshverify.bootstrap import FleetBootstrapController

    FleetBootstrapController(context, sleep=no_sleep).bootstrap()
    return context
