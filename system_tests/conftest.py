"""
System test fixtures - one real fleet per pytest session.

1. The session fixture bootstraps the control plane and every client
2. Each sub-case (per hostname, per ordered pair) is its own test item
3. Sub-case results are collected into the run's outcome
4. pytest_sessionfinish finalizes the outcome, saves logs if anything
   failed, and only then tears the fleet down

CRITICAL: teardown happens in pytest_sessionfinish, not in fixture
finalizers, because log preservation depends on the session result.
"""

from __future__ import annotations

import pytest

from meshverify.bootstrap import plan_fleet
from meshverify.core.config import get_settings
from meshverify.core.exceptions import HarnessError
from meshverify.core.logging import setup_logging
from meshverify.lifecycle import RunLifecycle
from meshverify.models import AddressAssignment, CheckReport, SubCaseResult
from meshverify.verification import ConnectivityVerifier, ordered_pairs
from system_tests.config import SystemTestConfig, get_config
from system_tests.fixtures.log_scan import LogScanner

LIFECYCLE_KEY = pytest.StashKey[RunLifecycle]()
REPORTS_KEY = pytest.StashKey[dict[str, CheckReport]]()


# =============================================================================
# PYTEST HOOKS
# =============================================================================


def pytest_configure(config):
    config.addinivalue_line("markers", "smoke: Control-plane sanity checks")
    config.addinivalue_line("markers", "connectivity: Fleet connectivity sub-cases")
    config.stash[REPORTS_KEY] = {}


def pytest_collection_modifyitems(config, items):
    """Add markers by location and skip everything unless opted in."""
    enabled = get_config().enabled
    skip = pytest.mark.skip(reason="set MESHVERIFY_SYSTEM_TESTS=1 to run against Docker")

    for item in items:
        if "/smoke/" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)
        if "/workflows/" in str(item.fspath):
            item.add_marker(pytest.mark.connectivity)
        if not enabled:
            item.add_marker(skip)


def pytest_generate_tests(metafunc):
    """Parametrize per hostname and per ordered pair from the fleet plan.

    The plan is deterministic, so collection knows every hostname before
    any container exists.
    """
    settings = get_settings()
    hostnames = [
        hostname
        for hostname, _ in plan_fleet(
            settings.client_count, settings.client_versions, settings.hostname_prefix
        )
    ]
    if "hostname" in metafunc.fixturenames:
        metafunc.parametrize("hostname", hostnames)
    if "pair" in metafunc.fixturenames:
        metafunc.parametrize(
            "pair", ordered_pairs(hostnames), ids=lambda p: f"{p[0]}-{p[1]}"
        )


def pytest_sessionfinish(session, exitstatus):
    """Finalize the run: diagnostics on failure, then teardown."""
    lifecycle = session.config.stash.get(LIFECYCLE_KEY, None)
    if lifecycle is None:
        return

    for report in session.config.stash[REPORTS_KEY].values():
        lifecycle.outcome.record_check(report)

    # Failures outside recorded sub-cases (fixture errors, plain asserts)
    if session.testsfailed and lifecycle.outcome.passed:
        lifecycle.outcome.record_check(
            CheckReport(
                name="pytest",
                results=[
                    SubCaseResult(
                        check="pytest",
                        case="session",
                        passed=False,
                        message=f"{session.testsfailed} test(s) failed",
                    )
                ],
            )
        )

    try:
        lifecycle.finish()
    finally:
        lifecycle.context.provisioner.close()


# =============================================================================
# FLEET
# =============================================================================


@pytest.fixture(scope="session")
def system_config() -> SystemTestConfig:
    return get_config()


@pytest.fixture(scope="session")
def run(request) -> RunLifecycle:
    """Bootstrapped fleet. Bootstrap failure errors every dependent test."""
    settings = get_settings()
    setup_logging(settings)

    lifecycle = RunLifecycle(settings)
    request.config.stash[LIFECYCLE_KEY] = lifecycle

    if not lifecycle.setup():
        pytest.fail(
            f"Bootstrap failed ({lifecycle.outcome.fatal_error_code}): "
            f"{lifecycle.outcome.fatal_error}"
        )
    return lifecycle


@pytest.fixture(scope="session")
def verifier(run: RunLifecycle) -> ConnectivityVerifier:
    return ConnectivityVerifier(run.context)


@pytest.fixture(scope="class")
def address_lookup(
    verifier: ConnectivityVerifier,
) -> tuple[AddressAssignment, dict[str, HarnessError]]:
    """Fresh address assignment per test class, never shared across checks."""
    return verifier.gather_addresses()


@pytest.fixture(scope="class")
def addresses(address_lookup) -> AddressAssignment:
    return address_lookup[0]


@pytest.fixture(scope="class")
def unresolved(address_lookup) -> dict[str, HarnessError]:
    """hostname -> error for nodes whose address could not be read."""
    return address_lookup[1]


@pytest.fixture
def record(request):
    """Record a sub-case result on the run outcome, then assert it passed.

    Usage:
        def test_address(verifier, hostname, record):
            record(verifier.address_case(hostname))
    """
    reports = request.config.stash[REPORTS_KEY]

    def _record(result: SubCaseResult) -> SubCaseResult:
        reports.setdefault(result.check, CheckReport(name=result.check)).results.append(result)
        assert result.passed, result.describe()
        return result

    return _record


@pytest.fixture(scope="session")
def log_scanner(run: RunLifecycle, system_config: SystemTestConfig) -> LogScanner:
    return LogScanner(run.context.provisioner, system_config)
