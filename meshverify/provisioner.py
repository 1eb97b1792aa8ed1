"""
Environment Provisioner - thin facade over the Docker SDK.

Builds images, starts containers, creates and destroys the isolated
network, execs commands, fetches logs and removes containers. No policy
lives here: callers decide what is fatal.

Every container is started with restart policy "no" and auto-remove on,
so a stopped environment never lingers.
"""

from __future__ import annotations

import hashlib
import os
from typing import TYPE_CHECKING

import docker
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound

from meshverify.core.exceptions import ExecError, LogError, ProvisionError, RemoveError
from meshverify.core.logging import get_logger
from meshverify.models import BuildSpec, Environment, Network, Role, RunSpec

if TYPE_CHECKING:
    from docker.models.containers import Container

logger = get_logger("provisioner")

RESTART_POLICY = {"Name": "no"}


def resolve_mount(mount: str, base_dir: str) -> str:
    """Make the host side of a 'host:container[:mode]' mount absolute."""
    host, sep, rest = mount.partition(":")
    if not sep:
        raise ValueError(f"mount must be host:container, got {mount!r}")
    if not os.path.isabs(host):
        host = os.path.abspath(os.path.join(base_dir, host))
    return f"{host}:{rest}"


class EnvironmentProvisioner:
    """
    Provision and tear down containers for one run.

    Usage:
        provisioner = EnvironmentProvisioner(docker.from_env())
        network = provisioner.create_network("headscale-test")
        env = provisioner.build_and_run(build_spec, run_spec, Role.CLIENT)
        stdout, stderr, code = provisioner.exec(env, ["tailscale", "ip"])
        provisioner.remove(env)
        provisioner.close_network(network)
    """

    def __init__(self, client: docker.DockerClient | None = None):
        self._client = client
        self._image_cache: dict[tuple, str] = {}

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise ProvisionError(f"Could not connect to docker: {e}") from e
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    def create_network(self, name: str) -> Network:
        try:
            handle = self.client.networks.create(name, driver="bridge")
        except (APIError, DockerException) as e:
            raise ProvisionError(
                f"Could not create network {name}: {e}", details={"network": name}
            ) from e
        logger.info(f"Created network {name}")
        return Network(name=name, handle=handle)

    def close_network(self, network: Network) -> None:
        try:
            handle = network.handle or self.client.networks.get(network.name)
            handle.remove()
        except NotFound:
            logger.debug(f"Network {network.name} already gone")
        except (APIError, DockerException) as e:
            raise RemoveError(
                f"Could not close network {network.name}: {e}",
                details={"network": network.name},
            ) from e
        logger.info(f"Closed network {network.name}")

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    def build_image(self, spec: BuildSpec) -> str:
        """Build an image and return its id. Identical specs build once."""
        cache_key = (
            spec.context_dir,
            spec.dockerfile,
            tuple(sorted(spec.build_args.items())),
            spec.tag,
        )
        if cache_key in self._image_cache:
            return self._image_cache[cache_key]

        tag = spec.tag or self._default_tag(spec)
        logger.info(f"Building image {tag} from {spec.dockerfile}")
        try:
            image, _ = self.client.images.build(
                path=spec.context_dir,
                dockerfile=spec.dockerfile,
                buildargs=spec.build_args or None,
                tag=tag,
                rm=True,
            )
        except BuildError as e:
            build_log = "".join(
                chunk.get("stream", "") for chunk in (e.build_log or []) if isinstance(chunk, dict)
            )
            raise ProvisionError(
                f"Could not build {spec.dockerfile}: {e.msg}",
                details={"dockerfile": spec.dockerfile, "build_log": build_log[-4000:]},
            ) from e
        except (APIError, DockerException, TypeError) as e:
            raise ProvisionError(
                f"Could not build {spec.dockerfile}: {e}",
                details={"dockerfile": spec.dockerfile},
            ) from e

        self._image_cache[cache_key] = image.id
        return image.id

    def build_and_run(
        self,
        build_spec: BuildSpec,
        run_spec: RunSpec,
        role: Role = Role.CLIENT,
        version: str | None = None,
    ) -> Environment:
        """Build the image (if needed) and start a detached container."""
        image_id = self.build_image(build_spec)
        mounts = [resolve_mount(m, build_spec.context_dir) for m in run_spec.mounts]

        try:
            container = self.client.containers.run(
                image_id,
                command=run_spec.command or None,
                name=run_spec.name,
                hostname=run_spec.hostname,
                network=run_spec.network,
                volumes=mounts or None,
                ports=dict(run_spec.ports) or None,
                environment=run_spec.env or None,
                detach=True,
                restart_policy=RESTART_POLICY,
                auto_remove=True,
            )
        except (APIError, ImageNotFound, DockerException) as e:
            raise ProvisionError(
                f"Could not start {run_spec.name}: {e}",
                details={"container": run_spec.name},
            ) from e

        try:
            host_ports = self._resolve_host_ports(container, run_spec.ports)
        except ProvisionError:
            self._discard(container)
            raise
        logger.info(f"Created {run_spec.name} container")
        return Environment(
            name=run_spec.name,
            role=role,
            network=run_spec.network,
            command=list(run_spec.command),
            mounts=mounts,
            host_ports=host_ports,
            version=version,
            handle=container,
        )

    def exec(self, env: Environment, argv: list[str]) -> tuple[str, str, int]:
        """Run argv inside env. Returns (stdout, stderr, exit_code)."""
        container = self._container(env)
        try:
            result = container.exec_run(argv, demux=True)
        except (APIError, DockerException) as e:
            raise ExecError(
                f"exec in {env.name} failed: {e}",
                details={"environment": env.name, "argv": list(argv)},
            ) from e

        stdout, stderr = result.output if result.output else (None, None)
        return (
            (stdout or b"").decode("utf-8", errors="replace"),
            (stderr or b"").decode("utf-8", errors="replace"),
            result.exit_code if result.exit_code is not None else -1,
        )

    def fetch_logs(self, env: Environment) -> tuple[str, str]:
        """Full stdout and stderr logs of env, captured separately."""
        container = self._container(env)
        try:
            stdout = container.logs(stdout=True, stderr=False, tail="all")
            stderr = container.logs(stdout=False, stderr=True, tail="all")
        except (APIError, DockerException) as e:
            raise LogError(
                f"Could not fetch logs for {env.name}: {e}",
                details={"environment": env.name},
            ) from e
        return (
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    def remove(self, env: Environment) -> None:
        container = self._container(env)
        try:
            container.remove(force=True, v=True)
        except NotFound:
            logger.debug(f"{env.name} already removed")
        except (APIError, DockerException) as e:
            raise RemoveError(
                f"Could not remove {env.name}: {e}",
                details={"environment": env.name},
            ) from e
        env.running = False
        logger.info(f"Removed {env.name}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _container(self, env: Environment) -> "Container":
        if env.handle is not None:
            return env.handle
        try:
            env.handle = self.client.containers.get(env.name)
        except NotFound as e:
            raise ExecError(
                f"{env.name} does not exist", details={"environment": env.name}
            ) from e
        return env.handle

    def _discard(self, container: "Container") -> None:
        """Remove a started container that never became an Environment."""
        try:
            container.remove(force=True, v=True)
        except NotFound:
            pass
        except (APIError, DockerException) as e:
            logger.error(f"Could not remove orphaned container {container.name}: {e}")

    def _resolve_host_ports(
        self, container: "Container", ports: dict[str, int | None]
    ) -> dict[str, str]:
        if not ports:
            return {}
        try:
            container.reload()
        except (APIError, DockerException) as e:
            raise ProvisionError(
                f"Could not inspect {container.name}: {e}",
                details={"container": container.name},
            ) from e

        host_ports: dict[str, str] = {}
        for port in ports:
            bindings = container.ports.get(port) or []
            if not bindings:
                raise ProvisionError(
                    f"{container.name} has no host binding for {port}",
                    details={"container": container.name, "port": port},
                )
            host_ports[port] = bindings[0]["HostPort"]
        return host_ports

    @staticmethod
    def _default_tag(spec: BuildSpec) -> str:
        digest = hashlib.sha1(
            repr((spec.dockerfile, sorted(spec.build_args.items()))).encode()
        ).hexdigest()[:12]
        return f"meshverify-{digest}:latest"
