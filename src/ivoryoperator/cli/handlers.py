from pathlib import Path
from typing import Optional, Sequence

import yaml
from kubernetes import client
from rich.console import Console
from rich.table import Table

from ..crds.const import CRD_GROUP, CRD_PLURAL_IVYUPGRADE, CRD_VERSION
from ..crds.ivorycluster import IvoryCluster
from ..operator.pgbackrest.config import CONFIG_HASH_KEY, create_config_map_intent


def render_config(
    manifest: Path,
    instance_names: Sequence[str],
    cluster_domain: str,
    console: Optional[Console] = None,
) -> None:
    """Print the pgBackRest files the operator would generate for a cluster manifest."""
    console = console or Console()
    with open(manifest, "r") as f:
        data = yaml.safe_load(f) or {}

    data.setdefault("metadata", {}).setdefault("namespace", "default")
    cluster = IvoryCluster.from_dict(data)
    names = list(instance_names) or [
        f"{cluster.metadata.name}-{instance_set.name}" for instance_set in cluster.spec.instance_sets
    ]

    intent = create_config_map_intent(cluster, names, cluster_domain)
    for key, body in intent["data"].items():
        if key == CONFIG_HASH_KEY or not body:
            continue
        console.rule(f"[bold]{key}[/bold]")
        console.print(body, markup=False, highlight=False)
    console.print(f"[cyan]{CONFIG_HASH_KEY}[/cyan]: {intent['data'][CONFIG_HASH_KEY]}")


def upgrade_status(name: str, namespace: str, console: Optional[Console] = None) -> None:
    """Show the conditions of an IvyUpgrade."""
    console = console or Console()
    custom_objects_api = client.CustomObjectsApi()
    try:
        upgrade = custom_objects_api.get_namespaced_custom_object(
            group=CRD_GROUP,
            version=CRD_VERSION,
            plural=CRD_PLURAL_IVYUPGRADE,
            namespace=namespace,
            name=name,
        )
    except client.ApiException as e:
        if e.status == 404:
            console.print(f"IvyUpgrade '{name}' not found in namespace '{namespace}'.")
        else:
            console.print(f"Error getting IvyUpgrade: {e.reason}")
        return

    spec = upgrade.get("spec", {})
    console.print(
        f"IvyUpgrade [cyan]{name}[/cyan] for cluster [cyan]{spec.get('ivoryClusterName')}[/cyan]: "
        f"{spec.get('fromIvoryVersion')} -> {spec.get('toIvoryVersion')}"
    )

    conditions = upgrade.get("status", {}).get("conditions", [])
    if not conditions:
        console.print("No conditions reported yet.")
        return

    table = Table(title="Conditions")
    table.add_column("Type", style="cyan")
    table.add_column("Status")
    table.add_column("Reason", style="magenta")
    table.add_column("Message")
    table.add_column("Last Transition")
    for condition in conditions:
        table.add_row(
            condition.get("type", ""),
            condition.get("status", ""),
            condition.get("reason", ""),
            condition.get("message", ""),
            condition.get("lastTransitionTime", ""),
        )
    console.print(table)
