"""CLI commands: ipsecverify mode get|set — inspect or change the cluster IPsec mode."""

from __future__ import annotations

import sys

import click
from rich.console import Console

from ipsecverify.cluster.client import OcClient
from ipsecverify.config import IpsecVerifyConfig
from ipsecverify.errors import IpsecVerifyError
from ipsecverify.rollout.convergence import FleetConvergenceChecker
from ipsecverify.rollout.mode_store import ModeStore
from ipsecverify.rollout.models import SecurityMode

console = Console(stderr=True)

MODE_CHOICE = click.Choice([m.value for m in SecurityMode], case_sensitive=False)


def _client(config: IpsecVerifyConfig) -> OcClient:
    return OcClient(
        binary=config.oc_binary,
        kubeconfig=config.kubeconfig,
        timeout=config.command_timeout,
    )


@click.group()
def mode() -> None:
    """Read or change the cluster-wide IPsec mode."""


@mode.command("get")
@click.pass_context
def get_mode(ctx: click.Context) -> None:
    """Print the current IPsec mode."""
    config: IpsecVerifyConfig = ctx.obj["config"]
    try:
        current = ModeStore(_client(config)).get_mode()
    except IpsecVerifyError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)
    click.echo(current.value)


@mode.command("set")
@click.argument("target", type=MODE_CHOICE)
@click.option("--wait/--no-wait", default=True, help="Wait for the fleet to converge.")
@click.pass_context
def set_mode(ctx: click.Context, target: str, wait: bool) -> None:
    """Request TARGET mode and optionally wait for the rollout."""
    config: IpsecVerifyConfig = ctx.obj["config"]
    desired = SecurityMode.parse(target)
    client = _client(config)

    try:
        changed = ModeStore(client).set_mode(desired)
        if changed:
            console.print(f"IPsec mode set to [cyan]{desired.value}[/cyan]")
        else:
            console.print(f"IPsec mode already [cyan]{desired.value}[/cyan]")

        if wait:
            console.print(
                f"  Waiting up to {config.max_wait:g}s "
                f"(polling every {config.poll_interval:g}s)..."
            )
            FleetConvergenceChecker(client, config.deadline).wait_for_mode(desired)
            console.print(f"[green]✓[/green] Fleet converged on {desired.value}")
    except IpsecVerifyError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)
