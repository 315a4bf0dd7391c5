"""CLI entry point — Click group with global options."""

from __future__ import annotations

import logging

import click

from ipsecverify import __version__
from ipsecverify.config import IpsecVerifyConfig
from ipsecverify.errors import ConfigError


@click.group()
@click.version_option(version=__version__, prog_name="ipsecverify")
@click.option(
    "--kubeconfig",
    type=click.Path(exists=True, dir_okay=False),
    help="Kubeconfig for the target cluster (defaults to $KUBECONFIG).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.pass_context
def main(ctx: click.Context, kubeconfig: str | None, verbose: bool) -> None:
    """ipsecverify — roll out cluster IPsec modes and prove them on the wire."""
    ctx.ensure_object(dict)
    try:
        config = IpsecVerifyConfig.load()
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if kubeconfig:
        config.kubeconfig = kubeconfig
    config.verbose = verbose
    ctx.obj["config"] = config

    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _register_commands() -> None:
    from ipsecverify.cli.mode import mode  # noqa: F811
    from ipsecverify.cli.verify import verify  # noqa: F811

    main.add_command(mode)
    main.add_command(verify)


_register_commands()
