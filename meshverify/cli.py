"""meshverify command line entry point."""

from __future__ import annotations

import sys

import click
from pydantic import ValidationError

from meshverify.bootstrap import plan_fleet
from meshverify.core.config import HarnessSettings
from meshverify.core.logging import setup_logging


def _load_settings(**overrides) -> HarnessSettings:
    values = {k: v for k, v in overrides.items() if v is not None and v != ()}
    if "client_versions" in values:
        values["client_versions"] = list(values["client_versions"])
    try:
        return HarnessSettings(**values)
    except ValidationError as e:
        raise click.BadParameter(str(e)) from e


def _settings_options(func):
    options = [
        click.option("--clients", "client_count", type=int, help="Number of client nodes."),
        click.option(
            "--version", "client_versions", multiple=True,
            help="Client version, repeat for a mix. Assigned round-robin.",
        ),
        click.option("--context-dir", help="Docker build context directory."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
def main():
    """End-to-end verification of a mesh-VPN control plane and its fleet."""


@main.command()
@_settings_options
@click.option("--log-dir", help="Where logs are preserved when the run fails.")
@click.option(
    "--convergence-poll/--no-convergence-poll", default=None,
    help="Poll peer status after joins instead of sleeping.",
)
@click.option("--settle-seconds", type=float, help="Fixed wait after joins without polling.")
@click.option("--log-format", type=click.Choice(["json", "text"]))
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]))
def run(**options):
    """Provision the fleet, verify connectivity, then tear everything down."""
    from meshverify.lifecycle import RunLifecycle

    settings = _load_settings(**options)
    setup_logging(settings)

    lifecycle = RunLifecycle(settings)
    try:
        outcome = lifecycle.run()
    finally:
        lifecycle.context.provisioner.close()

    click.echo("\n" + "=" * 60)
    for check in outcome.checks:
        icon = "✅" if check.passed else "❌"
        passed = len(check.results) - len(check.failures)
        click.echo(f"  {icon} {check.name}: {passed}/{len(check.results)}")
        for result in check.failures:
            click.echo("      " + result.describe().replace("\n", "\n      "))
    click.echo(outcome.summary())
    if lifecycle.cleanup_errors:
        click.echo(f"{len(lifecycle.cleanup_errors)} teardown step(s) failed, see log")
    click.echo("=" * 60)

    sys.exit(0 if outcome.passed else 1)


@main.command()
@_settings_options
def plan(**options):
    """Print the hostnames and versions a run would create."""
    settings = _load_settings(**options)
    for hostname, version in plan_fleet(
        settings.client_count, settings.client_versions, settings.hostname_prefix
    ):
        click.echo(f"{hostname}\t{version}")


if __name__ == "__main__":
    main()
