"""
Run Lifecycle.

    SETUP -> RUNNING -> OUTCOME -> DIAGNOSTICS (failed runs only) -> TEARDOWN -> DONE

The outcome is finalized before diagnostics, and diagnostics run before
any container is removed because removal is irreversible. Teardown is
best effort: every step runs, failures are logged as CleanupError and
never change the outcome.
"""

from __future__ import annotations

import uuid
from typing import Callable

from meshverify.bootstrap import FleetBootstrapController
from meshverify.core.config import HarnessSettings
from meshverify.core.exceptions import CleanupError, HarnessError
from meshverify.core.logging import get_logger, run_id_var
from meshverify.diagnostics import RunReport, save_logs
from meshverify.executor import CommandExecutor
from meshverify.models import Phase, RunContext, RunDeadline, RunOutcome
from meshverify.provisioner import EnvironmentProvisioner
from meshverify.verification import ConnectivityVerifier

logger = get_logger("lifecycle")


class RunLifecycle:
    """
    Own one run end to end.

    Usage:
        lifecycle = RunLifecycle(settings)
        outcome = lifecycle.run()
        sys.exit(0 if outcome.passed else 1)

    The setup/verify/finish steps are also usable separately, which is how
    the pytest system suite drives them from session fixtures.
    """

    def __init__(
        self,
        settings: HarnessSettings,
        provisioner: EnvironmentProvisioner | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.settings = settings
        provisioner = provisioner or EnvironmentProvisioner()
        self.context = RunContext(
            settings=settings,
            provisioner=provisioner,
            executor=CommandExecutor(provisioner),
            deadline=RunDeadline(settings.run_timeout),
        )
        self.outcome = RunOutcome()
        self.phase = Phase.SETUP
        self.run_id = uuid.uuid4().hex
        self.cleanup_errors: list[CleanupError] = []
        self._controller_kwargs = {"sleep": sleep} if sleep else {}

    def run(self) -> RunOutcome:
        token = run_id_var.set(self.run_id)
        try:
            if self.setup():
                self.verify()
        except Exception as e:
            logger.exception(f"Run aborted during {self.phase.value}")
            self.outcome.record_fatal(self.phase, e)
        finally:
            self.finish()
            run_id_var.reset(token)
        return self.outcome

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def setup(self) -> bool:
        """Bootstrap the fleet. Returns False if a fatal error stopped it."""
        self.phase = Phase.SETUP
        try:
            FleetBootstrapController(self.context, **self._controller_kwargs).bootstrap()
        except HarnessError as e:
            logger.error(f"Bootstrap failed: [{e.error_code}] {e.message}")
            self.outcome.record_fatal(Phase.SETUP, e)
            return False
        return True

    def verify(self) -> None:
        self.phase = Phase.RUNNING
        verifier = ConnectivityVerifier(self.context)
        checks = (
            verifier.check_membership,
            verifier.check_addresses,
            verifier.check_status,
            verifier.check_reachability,
        )
        for check in checks:
            try:
                self.context.deadline.check(check.__name__)
            except HarnessError as e:
                logger.error(e.message)
                self.outcome.record_fatal(Phase.RUNNING, e)
                return
            report = check()
            logger.info(
                f"Check {report.name}: {len(report.results) - len(report.failures)}"
                f"/{len(report.results)} passed"
            )
            self.outcome.record_check(report)

    def finish(self) -> None:
        """Finalize outcome, capture diagnostics if failed, then tear down."""
        self.phase = Phase.OUTCOME
        self.outcome.finalize()
        logger.info(self.outcome.summary())

        try:
            if not self.outcome.passed:
                self.phase = Phase.DIAGNOSTICS
                self.capture_diagnostics()
        finally:
            self.phase = Phase.TEARDOWN
            self.teardown()
            self.phase = Phase.DONE

    def capture_diagnostics(self) -> list[str]:
        """Preserve logs and a run report. Runs before any removal."""
        s = self.settings
        saved: list[str] = []

        targets = []
        if self.context.control_plane is not None:
            targets.append(self.context.control_plane)
        if s.preserve_client_logs:
            implicated = self.outcome.failed_hostnames()
            targets.extend(
                env for hostname, env in self.context.fleet.items() if hostname in implicated
            )

        for env in targets:
            try:
                paths = save_logs(self.context.provisioner, env, s.log_dir)
            except (HarnessError, OSError) as e:
                logger.error(f"Could not save log for {env.name}: {e}")
                continue
            saved.extend(str(p) for p in paths)

        report = RunReport(
            outcome=self.outcome,
            settings=s.model_dump(mode="json"),
            fleet={h: env.version for h, env in self.context.fleet.items()},
            saved_logs=saved,
        )
        try:
            path = report.save(s.log_dir)
            logger.info(f"Run report written to {path}")
        except OSError as e:
            logger.error(f"Could not write run report: {e}")
        return saved

    def teardown(self) -> None:
        """Remove clients, then the control plane, then the network."""
        provisioner = self.context.provisioner

        for hostname, env in self.context.fleet.items():
            self._cleanup(f"remove {hostname}", lambda env=env: provisioner.remove(env))

        if self.context.control_plane is not None:
            control_plane = self.context.control_plane
            self._cleanup(
                f"remove {control_plane.name}", lambda: provisioner.remove(control_plane)
            )

        if self.context.network is not None:
            network = self.context.network
            self._cleanup(
                f"close network {network.name}", lambda: provisioner.close_network(network)
            )

    def _cleanup(self, step: str, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception as e:
            error = CleanupError(f"{step} failed: {e}", details={"step": step})
            self.cleanup_errors.append(error)
            logger.error(f"Could not {step}: {e}")
