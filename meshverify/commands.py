"""
Control-plane and client CLI argv builders, plus parsers for their output.

The harness treats both binaries as opaque; this is the only module that
knows their flags and output shapes.
"""

from __future__ import annotations

import ipaddress

from meshverify.core.exceptions import ParseError
from meshverify.models import IPAddress


# =============================================================================
# CONTROL PLANE
# =============================================================================


def create_namespace(name: str) -> list[str]:
    return ["headscale", "namespaces", "create", name]


def create_enrollment_credential(
    namespace: str, reusable: bool = True, expiry: str = "24h"
) -> list[str]:
    argv = ["headscale", "-n", namespace, "preauthkeys", "create"]
    if reusable:
        argv.append("--reusable")
    argv.extend(["--expiration", expiry])
    return argv


def list_nodes(namespace: str) -> list[str]:
    return ["headscale", "-n", namespace, "nodes", "list"]


def login_server_url(host: str, port: int) -> str:
    return f"http://{host}:{port}"


def is_already_exists(stderr: str) -> bool:
    """True when a create command failed only because the record exists."""
    lowered = stderr.lower()
    return "already exists" in lowered or "unique constraint" in lowered


# =============================================================================
# CLIENT
# =============================================================================


def client_hostname(version: str, index: int, prefix: str = "tailscale") -> str:
    """Hostname for a client slot, e.g. tailscale-1-14-3-0."""
    return f"{prefix}-{version.replace('.', '-')}-{index}"


def join(login_server: str, credential: str, hostname: str) -> list[str]:
    return [
        "tailscale", "up",
        "-login-server", login_server,
        "--authkey", credential,
        "--hostname", hostname,
    ]


def own_address() -> list[str]:
    return ["tailscale", "ip"]


def peer_status() -> list[str]:
    return ["tailscale", "status"]


def reachability_probe(
    address: str, timeout: str = "1s", count: int = 20, require_direct: bool = True
) -> list[str]:
    return [
        "tailscale", "ping",
        f"--timeout={timeout}",
        f"--c={count}",
        f"--until-direct={'true' if require_direct else 'false'}",
        address,
    ]


# =============================================================================
# OUTPUT PARSING
# =============================================================================


def parse_address(output: str) -> IPAddress:
    """Parse the single address printed by the own-address command.

    Clients that print one address per family list IPv4 first; only the
    first line is taken.
    """
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        raise ParseError("empty address output", details={"output": output})
    try:
        return ipaddress.ip_address(lines[0])
    except ValueError as e:
        raise ParseError(
            f"cannot parse address {lines[0]!r}", details={"output": output}
        ) from e


def parse_node_listing(output: str, header_lines: int = 1) -> list[str]:
    """Member rows of a node listing, without header and blank lines."""
    lines = [line for line in output.splitlines() if line.strip()]
    return lines[header_lines:]


def parse_status_lines(output: str) -> list[str]:
    return [line for line in output.splitlines() if line.strip()]


def listing_tokens(line: str) -> list[str]:
    return line.split()


def count_token_lines(lines: list[str], token: str) -> int:
    """Number of lines containing token as a whole whitespace-separated field."""
    return sum(1 for line in lines if token in listing_tokens(line))
