from typing import Any, Dict, List

from kubernetes import client
from rich.console import Console
from rich.table import Table

from ...crds.const import (
    CRD_GROUP,
    CRD_PLURAL_CHECLUSTER,
    CRD_PLURAL_CHECLUSTERBACKUP,
    CRD_PLURAL_CHECLUSTERRESTORE,
    CRD_VERSION,
)


def _list(api: client.CustomObjectsApi, plural: str, namespace: str) -> List[Dict[str, Any]]:
    if namespace:
        result = api.list_namespaced_custom_object(
            group=CRD_GROUP, version=CRD_VERSION, namespace=namespace, plural=plural
        )
    else:
        result = api.list_cluster_custom_object(group=CRD_GROUP, version=CRD_VERSION, plural=plural)
    return result.get("items", [])


def checluster_table(items: List[Dict[str, Any]]) -> Table:
    table = Table(title="CheClusters")
    table.add_column("Name", style="cyan")
    table.add_column("Namespace", style="green")
    table.add_column("Phase", style="yellow")
    table.add_column("Version", style="magenta")
    table.add_column("URL")
    table.add_column("Message")
    for item in items:
        status = item.get("status") or {}
        table.add_row(
            item["metadata"]["name"],
            item["metadata"].get("namespace", ""),
            status.get("chePhase", "Unknown"),
            status.get("cheVersion", ""),
            status.get("cheURL", ""),
            status.get("message", ""),
        )
    return table


def operation_table(title: str, items: List[Dict[str, Any]], detail_key: str) -> Table:
    """Table of backup or restore CRs; ``detail_key`` names the extra status column."""
    table = Table(title=title)
    table.add_column("Name", style="cyan")
    table.add_column("Namespace", style="green")
    table.add_column("State", style="yellow")
    table.add_column("Stage")
    table.add_column(detail_key)
    table.add_column("Message")
    for item in items:
        status = item.get("status") or {}
        table.add_row(
            item["metadata"]["name"],
            item["metadata"].get("namespace", ""),
            status.get("state", "") or "Pending",
            status.get("stage", ""),
            status.get(detail_key, ""),
            status.get("message", ""),
        )
    return table


def show_status(namespace: str = "") -> None:
    """Prints the CheCluster, backup and restore CRs."""
    api = client.CustomObjectsApi()
    console = Console()
    try:
        checlusters = _list(api, CRD_PLURAL_CHECLUSTER, namespace)
        backups = _list(api, CRD_PLURAL_CHECLUSTERBACKUP, namespace)
        restores = _list(api, CRD_PLURAL_CHECLUSTERRESTORE, namespace)
    except client.ApiException as e:
        console.print(f"Error listing resources: {e.reason}")
        return

    if not checlusters:
        console.print("No CheCluster found.")
    else:
        console.print(checluster_table(checlusters))
    if backups:
        console.print(operation_table("Backups", backups, "snapshotId"))
    if restores:
        console.print(operation_table("Restores", restores, "snapshotId"))
