"""
Connectivity Verification Engine.

Four independent checks against a converged, frozen fleet:

1. membership    - control plane lists exactly the fleet
2. addresses     - every node holds a valid address inside the overlay block
3. status        - every node's peer status lists every member once
4. reachability  - every ordered pair reaches each other over a direct path

Sub-cases fan out on a thread pool. Each future returns its own
SubCaseResult, so one node's failure never hides or aborts another's.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from meshverify import commands
from meshverify.core.exceptions import CommandError, ExecError, HarnessError, ParseError
from meshverify.core.logging import get_logger
from meshverify.executor import single_line
from meshverify.models import AddressAssignment, CheckReport, RunContext, SubCaseResult

logger = get_logger("verification")

MEMBERSHIP = "membership"
ADDRESSES = "addresses"
STATUS = "status"
REACHABILITY = "reachability"


class SubCaseFailure(Exception):
    """Assertion failure inside a sub-case."""

    def __init__(self, message: str, command: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.message = message
        self.command = command
        self.stderr = stderr


def _run_sub_case(
    check: str,
    case: str,
    hostnames: tuple[str, ...],
    body: Callable[[], str],
) -> SubCaseResult:
    """Run one sub-case body, mapping scoped errors to a failed result."""
    start = time.monotonic()
    command: list[str] | None = None
    stderr = ""
    try:
        message = body()
        passed = True
    except SubCaseFailure as e:
        passed, message, command, stderr = False, e.message, e.command, e.stderr
    except CommandError as e:
        passed, message, command, stderr = (
            False, f"command exited {e.exit_code}", e.argv, e.stderr,
        )
    except (ExecError, ParseError) as e:
        passed, message = False, e.message
        command = e.details.get("argv")
    except Exception as e:
        logger.exception(f"{check}/{case} raised unexpectedly")
        passed, message = False, f"{type(e).__name__}: {e}"
    duration = time.monotonic() - start

    result = SubCaseResult(
        check=check,
        case=case,
        passed=passed,
        message=message,
        command=command,
        stderr=stderr,
        duration_seconds=duration,
        hostnames=hostnames,
    )
    if passed:
        logger.debug(result.describe())
    else:
        logger.warning(result.describe())
    return result


def ordered_pairs(hostnames: list[str]) -> list[tuple[str, str]]:
    """Every (source, destination) with source != destination.

    Self pairs are skipped: a node is not required to reach itself.
    """
    return [(a, b) for a in hostnames for b in hostnames if a != b]


class ConnectivityVerifier:
    """
    Post-bootstrap assertions over the run's fleet.

    Usage:
        verifier = ConnectivityVerifier(context)
        for report in verifier.run_all():
            print(report.name, report.passed)
    """

    def __init__(self, context: RunContext):
        self.context = context
        self.settings = context.settings

    def run_all(self) -> list[CheckReport]:
        return [
            self.check_membership(),
            self.check_addresses(),
            self.check_status(),
            self.check_reachability(),
        ]

    # ------------------------------------------------------------------
    # Address collection
    # ------------------------------------------------------------------

    def address_of(self, hostname: str):
        env = self.context.fleet[hostname]
        argv = commands.own_address()
        output = self.context.executor.execute(env, argv)
        try:
            return commands.parse_address(single_line(output))
        except ParseError as e:
            e.details["argv"] = argv
            e.details["hostname"] = hostname
            raise

    def gather_addresses(self) -> tuple[AddressAssignment, dict[str, HarnessError]]:
        """Query every node for its address. Always fresh, never cached.

        Returns the resolved addresses and, for every node whose query
        failed or did not parse, the error that explains why.
        """
        hostnames = self.context.fleet.hostnames

        def lookup(hostname: str):
            try:
                return hostname, self.address_of(hostname), None
            except HarnessError as e:
                logger.warning(f"Could not resolve address of {hostname}: {e.message}")
                return hostname, None, e

        with ThreadPoolExecutor(
            max_workers=self._workers(len(hostnames)), thread_name_prefix="address"
        ) as pool:
            lookups = list(pool.map(lookup, hostnames))

        addresses = {h: a for h, a, e in lookups if e is None}
        unresolved = {h: e for h, a, e in lookups if e is not None}
        return addresses, unresolved

    def collect_addresses(self) -> AddressAssignment:
        """Addresses of every node, raising the first lookup error."""
        addresses, unresolved = self.gather_addresses()
        if unresolved:
            raise next(iter(unresolved.values()))
        return addresses

    # ------------------------------------------------------------------
    # Sub-cases
    # ------------------------------------------------------------------

    def membership_case(self) -> SubCaseResult:
        """Control-plane node listing matches the fleet."""
        fleet = self.context.fleet
        argv = commands.list_nodes(self.settings.namespace)

        def body() -> str:
            output = self.context.executor.execute(self.context.require_control_plane(), argv)
            logger.info(f"List nodes:\n{output}")
            rows = commands.parse_node_listing(output, self.settings.node_list_header_lines)
            if len(rows) != len(fleet):
                raise SubCaseFailure(
                    f"control plane lists {len(rows)} node(s), fleet has {len(fleet)}",
                    command=argv,
                )
            missing = [h for h in fleet.hostnames if h not in output]
            if missing:
                raise SubCaseFailure(
                    f"missing from node list: {', '.join(missing)}", command=argv
                )
            return f"{len(rows)} nodes listed"

        return _run_sub_case(MEMBERSHIP, "node-list", tuple(fleet.hostnames), body)

    def address_case(self, hostname: str) -> SubCaseResult:
        """hostname holds an IPv4 address inside the overlay prefix."""
        prefix = self.settings.overlay_network
        argv = commands.own_address()

        def body() -> str:
            address = self.address_of(hostname)
            logger.info(f"IP for {hostname}: {address}")
            if address.version != 4:
                raise SubCaseFailure(f"{address} is not an IPv4 address", command=argv)
            if address not in prefix:
                raise SubCaseFailure(f"{address} is outside {prefix}", command=argv)
            return str(address)

        return _run_sub_case(ADDRESSES, hostname, (hostname,), body)

    def status_case(
        self,
        hostname: str,
        addresses: AddressAssignment,
        unresolved: dict[str, HarnessError] | None = None,
    ) -> SubCaseResult:
        """hostname's peer status lists every member and address exactly once.

        Peers in ``unresolved`` are still checked by hostname; the sub-case
        then fails naming the peers whose address is unknown.
        """
        fleet = self.context.fleet
        unresolved = unresolved or {}
        argv = commands.peer_status()

        def body() -> str:
            output = self.context.executor.execute(fleet[hostname], argv)
            lines = commands.parse_status_lines(output)
            if len(lines) != len(fleet):
                raise SubCaseFailure(
                    f"{len(lines)} status line(s), fleet has {len(fleet)}", command=argv
                )
            problems = []
            for peer in fleet.hostnames:
                tokens = [peer]
                if peer in addresses:
                    tokens.append(str(addresses[peer]))
                for token in tokens:
                    seen = commands.count_token_lines(lines, token)
                    if seen != 1:
                        problems.append(f"{token} listed {seen} times")
            for peer, error in unresolved.items():
                problems.append(f"address of {peer} unknown: {error.message}")
            if problems:
                raise SubCaseFailure("; ".join(problems), command=argv)
            return f"{len(lines)} peers consistent"

        return _run_sub_case(STATUS, hostname, (hostname,), body)

    def reachability_case(
        self,
        source: str,
        destination: str,
        addresses: AddressAssignment,
        unresolved: dict[str, HarnessError] | None = None,
    ) -> SubCaseResult:
        """source reaches destination over a direct path within the probe budget."""
        s = self.settings
        unresolved = unresolved or {}

        def body() -> str:
            if destination not in addresses:
                error = unresolved.get(destination)
                cause = error.message if error else "not collected"
                raise SubCaseFailure(
                    f"address of {destination} unknown: {cause}",
                    command=commands.own_address(),
                    stderr=getattr(error, "stderr", ""),
                )
            address = str(addresses[destination])
            argv = commands.reachability_probe(
                address, timeout=s.ping_timeout, count=s.ping_count, require_direct=True
            )
            logger.info(
                f"Pinging from {source} ({addresses.get(source)}) to {destination} ({address})"
            )
            output = self.context.executor.execute(self.context.fleet[source], argv)
            if s.ping_success_marker not in output:
                raise SubCaseFailure(
                    f"no {s.ping_success_marker!r} in probe output: {output.strip()[-200:]}",
                    command=argv,
                )
            return "direct path established"

        return _run_sub_case(REACHABILITY, f"{source}-{destination}", (source, destination), body)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_membership(self) -> CheckReport:
        return CheckReport(name=MEMBERSHIP, results=[self.membership_case()])

    def check_addresses(self) -> CheckReport:
        results = self._fan_out(self.address_case, self.context.fleet.hostnames)
        return CheckReport(name=ADDRESSES, results=results)

    def check_status(self) -> CheckReport:
        addresses, unresolved = self.gather_addresses()
        results = self._fan_out(
            lambda hostname: self.status_case(hostname, addresses, unresolved),
            self.context.fleet.hostnames,
        )
        return CheckReport(name=STATUS, results=results)

    def check_reachability(self) -> CheckReport:
        addresses, unresolved = self.gather_addresses()
        results = self._fan_out(
            lambda pair: self.reachability_case(pair[0], pair[1], addresses, unresolved),
            ordered_pairs(self.context.fleet.hostnames),
        )
        return CheckReport(name=REACHABILITY, results=results)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fan_out(self, sub_case: Callable, items: list) -> list[SubCaseResult]:
        if not items:
            return []
        with ThreadPoolExecutor(
            max_workers=self._workers(len(items)), thread_name_prefix="verify"
        ) as pool:
            return list(pool.map(sub_case, items))

    def _workers(self, count: int) -> int:
        return max(1, min(self.settings.verification_workers, count))
