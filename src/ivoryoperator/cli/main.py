import logging
from pathlib import Path
from typing import Tuple

import click
import kopf

from ..utils.kube import KubernetesConfigurationError, configure_kube_client
from . import handlers


@click.group()
@click.option("--verbose", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """Manage the Ivory operator and its resources."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


@main.command(help="Run the operator.")
@click.option(
    "-n",
    "--namespace",
    "namespaces",
    multiple=True,
    help="Namespace to watch. Repeat for more. Defaults to the whole cluster.",
)
def run(namespaces: Tuple[str, ...]) -> None:
    """Run the operator in the foreground."""
    # Registers every handler with kopf.
    from ..operator import operator  # noqa: F401

    kopf.run(
        standalone=True,
        namespaces=list(namespaces),
        clusterwide=not namespaces,
    )


@main.command(name="render-config", help="Print the pgBackRest files for a cluster manifest.")
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--instance",
    "instance_names",
    multiple=True,
    help="Instance StatefulSet name. Defaults to one per instance set.",
)
@click.option("--cluster-domain", default="cluster.local", show_default=True)
def render_config(manifest: Path, instance_names: Tuple[str, ...], cluster_domain: str) -> None:
    """Print the pgBackRest files for a cluster manifest."""
    try:
        handlers.render_config(manifest, instance_names, cluster_domain)
    except (KeyError, ValueError) as exc:
        raise click.ClickException(f"Invalid IvoryCluster manifest: {exc}") from exc


@main.command(name="upgrade-status", help="Show the conditions of an IvyUpgrade.")
@click.argument("name")
@click.option("-n", "--namespace", default="default", show_default=True)
def upgrade_status(name: str, namespace: str) -> None:
    """Show the conditions of an IvyUpgrade."""
    try:
        configure_kube_client(logging.getLogger(__name__))
    except KubernetesConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    handlers.upgrade_status(name, namespace)
