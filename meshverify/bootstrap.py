"""
Fleet Bootstrap Controller.

Brings the control plane and every client up and joins the fleet to the
overlay. Steps run strictly in order and any failure is fatal: a partial
fleet would invalidate every all-pairs check downstream.

    network -> control plane -> clients -> readiness -> credential -> joins -> converge
"""

from __future__ import annotations

import os
import time
from typing import Callable

from meshverify import commands
from meshverify.core.exceptions import CommandError, ExecError, JoinError
from meshverify.core.logging import get_logger
from meshverify.executor import single_line
from meshverify.models import (
    BuildSpec,
    EnrollmentCredential,
    Environment,
    Role,
    RunContext,
    RunSpec,
)
from meshverify.readiness import BackoffPolicy, retry_until, wait_for_http_health

logger = get_logger("bootstrap")


def assign_versions(count: int, versions: list[str]) -> list[str]:
    """Round-robin version per slot: versions[i % len(versions)]."""
    if not versions:
        raise ValueError("at least one client version is required")
    return [versions[i % len(versions)] for i in range(count)]


def plan_fleet(count: int, versions: list[str], prefix: str = "tailscale") -> list[tuple[str, str]]:
    """(hostname, version) for every client slot, in slot order."""
    return [
        (commands.client_hostname(version, i, prefix), version)
        for i, version in enumerate(assign_versions(count, versions))
    ]


class FleetBootstrapController:
    """
    Provision and join the fleet described by the run's settings.

    Usage:
        controller = FleetBootstrapController(context)
        controller.bootstrap()
        # context.fleet is now frozen and converged
    """

    def __init__(self, context: RunContext, sleep: Callable[[float], None] = time.sleep):
        self.context = context
        self.settings = context.settings
        self._sleep = sleep

    def bootstrap(self) -> None:
        """Run every bootstrap step in order."""
        deadline = self.context.deadline

        deadline.check("network creation")
        self.create_network()

        deadline.check("control plane start")
        self.start_control_plane()

        deadline.check("client start")
        self.start_clients()

        deadline.check("readiness gate")
        self.wait_for_control_plane()

        deadline.check("enrollment")
        self.issue_credential()

        deadline.check("joins")
        self.join_fleet()

        deadline.check("convergence")
        self.wait_for_convergence()

        self.context.fleet.freeze()
        logger.info(f"Bootstrap complete: {len(self.context.fleet)} clients joined")

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def create_network(self) -> None:
        self.context.network = self.context.provisioner.create_network(
            self.settings.network_name
        )

    def start_control_plane(self) -> Environment:
        s = self.settings
        logger.info("Creating control plane container")
        build = BuildSpec(
            dockerfile=s.control_plane_dockerfile,
            context_dir=os.path.abspath(s.context_dir),
            tag=f"{s.image_prefix}-control-plane:latest",
        )
        run = RunSpec(
            name=s.control_plane_name,
            network=self.context.network.name,
            command=list(s.control_plane_command),
            mounts=list(s.control_plane_mounts),
            ports={s.control_plane_port_key: s.control_plane_host_port},
        )
        env = self.context.provisioner.build_and_run(build, run, Role.CONTROL_PLANE)
        self.context.control_plane = env
        self.context.control_plane_endpoint = (
            f"localhost:{env.host_port(s.control_plane_port_key)}"
        )
        logger.info(f"Control plane reachable at {self.context.control_plane_endpoint}")
        return env

    def start_clients(self) -> None:
        s = self.settings
        logger.info(f"Creating {s.client_count} client containers")
        for hostname, version in plan_fleet(s.client_count, s.client_versions, s.hostname_prefix):
            self.context.fleet.add(hostname, self._start_client(hostname, version))

    def _start_client(self, hostname: str, version: str) -> Environment:
        s = self.settings
        build = BuildSpec(
            dockerfile=s.client_dockerfile,
            context_dir=os.path.abspath(s.context_dir),
            build_args={s.client_version_build_arg: version},
            tag=f"{s.image_prefix}-client:{version}",
        )
        run = RunSpec(
            name=hostname,
            network=self.context.network.name,
            command=list(s.client_command),
        )
        return self.context.provisioner.build_and_run(build, run, Role.CLIENT, version=version)

    def wait_for_control_plane(self) -> None:
        s = self.settings
        url = f"http://{self.context.control_plane_endpoint}{s.health_path}"
        logger.info("Waiting for control plane to be ready")
        wait_for_http_health(
            url,
            self._policy(),
            deadline=s.readiness_timeout,
            request_timeout=s.health_request_timeout,
            sleep=self._sleep,
        )
        logger.info("Control plane is ready")

    def issue_credential(self) -> EnrollmentCredential:
        s = self.settings
        control_plane = self.context.require_control_plane()
        executor = self.context.executor

        logger.info(f"Creating namespace {s.namespace}")
        try:
            executor.execute(control_plane, commands.create_namespace(s.namespace))
        except CommandError as e:
            if not commands.is_already_exists(e.stderr):
                raise
            logger.info(f"Namespace {s.namespace} already exists")

        logger.info("Creating reusable enrollment credential")
        output = executor.execute(
            control_plane,
            commands.create_enrollment_credential(
                s.namespace, reusable=True, expiry=s.credential_expiry
            ),
        )
        credential = EnrollmentCredential(
            key=single_line(output).strip(),
            namespace=s.namespace,
            expiry=s.credential_expiry,
        )
        self.context.credential = credential
        return credential

    def join_fleet(self) -> None:
        s = self.settings
        login_server = commands.login_server_url(s.control_plane_name, s.control_plane_port)
        credential = self.context.credential
        if credential is None:
            raise JoinError("no enrollment credential issued before joins")

        logger.info(f"Joining client containers to control plane at {login_server}")
        for hostname, env in self.context.fleet.items():
            argv = commands.join(login_server, credential.key, hostname)
            try:
                result = self.context.executor.execute(env, argv)
            except CommandError as e:
                raise JoinError(
                    f"{hostname} failed to join: {e.stderr.strip()}",
                    details={"hostname": hostname, "exit_code": e.exit_code, "stderr": e.stderr},
                ) from e
            except ExecError as e:
                raise JoinError(
                    f"{hostname} failed to join: {e.message}",
                    details={"hostname": hostname},
                ) from e
            if result.strip():
                logger.debug(f"Join output for {hostname}: {result.strip()}")
            logger.info(f"{hostname} joined")

    def wait_for_convergence(self) -> None:
        """Block until every node's status lists the whole fleet."""
        s = self.settings
        if not s.convergence_poll:
            logger.info(f"Settling for {s.settle_seconds:.0f}s")
            self._sleep(s.settle_seconds)
            return

        logger.info("Waiting for membership to converge")
        retry_until(
            self._fleet_converged,
            self._policy(),
            deadline=s.convergence_timeout,
            description="fleet membership convergence",
            sleep=self._sleep,
        )
        logger.info("Membership converged")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fleet_converged(self) -> bool:
        hostnames = self.context.fleet.hostnames
        for hostname, env in self.context.fleet.items():
            try:
                output = self.context.executor.execute(env, commands.peer_status())
            except (CommandError, ExecError) as e:
                logger.debug(f"Status for {hostname} not available yet: {e}")
                return False
            lines = commands.parse_status_lines(output)
            missing = [h for h in hostnames if commands.count_token_lines(lines, h) == 0]
            if missing:
                logger.debug(f"{hostname} does not see {len(missing)} peer(s) yet")
                return False
        return True

    def _policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial=self.settings.readiness_initial_interval,
            max_interval=self.settings.readiness_max_interval,
        )
