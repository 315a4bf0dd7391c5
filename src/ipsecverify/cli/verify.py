"""CLI commands: ipsecverify verify mode|north-south — run a verification scenario."""

from __future__ import annotations

import sys

import click
from rich.console import Console
from rich.table import Table

from ipsecverify.config import IpsecVerifyConfig
from ipsecverify.errors import IpsecVerifyError, TrialFailure
from ipsecverify.rollout.coordinator import RolloutCoordinator, ScenarioResult
from ipsecverify.rollout.models import SecurityMode

console = Console(stderr=True)

MODE_CHOICE = click.Choice([m.value for m in SecurityMode], case_sensitive=False)


@click.group()
@click.option(
    "--keep-on-failure",
    is_flag=True,
    help="Leave trial pods in place when a trial fails.",
)
@click.pass_context
def verify(ctx: click.Context, keep_on_failure: bool) -> None:
    """Roll out a mode and prove the wire behavior with packet capture."""
    if keep_on_failure:
        ctx.obj["config"].keep_on_failure = True


@verify.command("mode")
@click.argument("target", type=MODE_CHOICE)
@click.pass_context
def verify_mode(ctx: click.Context, target: str) -> None:
    """Switch to TARGET, verify pod traffic, restore the original mode."""
    config: IpsecVerifyConfig = ctx.obj["config"]
    desired = SecurityMode.parse(target)
    console.print(f"[bold]ipsecverify[/bold] scenario: mode [cyan]{desired.value}[/cyan]")

    coordinator = RolloutCoordinator.from_config(config)
    _run(lambda: coordinator.run_mode_scenario(desired))


@verify.command("north-south")
@click.pass_context
def verify_north_south(ctx: click.Context) -> None:
    """External mode plus host-to-host tunnels; node traffic must be ESP."""
    config: IpsecVerifyConfig = ctx.obj["config"]
    console.print(
        "[bold]ipsecverify[/bold] scenario: [cyan]north-south[/cyan] "
        f"(manifests from {config.manifest_dir})"
    )

    coordinator = RolloutCoordinator.from_config(config)
    _run(coordinator.run_north_south_scenario)


def _run(scenario) -> None:
    try:
        result = scenario()
    except TrialFailure as exc:
        sides = ", ".join(exc.failed_sides) or "?"
        console.print(f"[red]✗ Trial failed[/red] ({sides}): {exc}")
        sys.exit(1)
    except IpsecVerifyError as exc:
        console.print(f"[red]✗ Scenario failed:[/red] {exc}")
        sys.exit(1)
    _print_summary(result)


def _print_summary(result: ScenarioResult) -> None:
    console.print("\n[bold]Scenario Summary[/bold]")
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="dim")
    table.add_column()

    table.add_row("Target mode", result.target.value)
    table.add_row("Restored to", result.restored_to.value)
    table.add_row("Nodes", " ↔ ".join(result.nodes))
    table.add_row("States", " → ".join(s.value for s in result.states))
    console.print(table)
    console.print("[green]✓ Verified[/green]")
