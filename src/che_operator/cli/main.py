import logging
import sys

import click

from ..utils.kube import KubernetesConfigurationError, configure_kube_client
from . import handlers


@click.group()
@click.option("--kubeconfig", type=click.Path(exists=True), default=None, help="Path to a kubeconfig file.")
@click.pass_context
def main(ctx, kubeconfig) -> None:
    """A CLI to inspect and drive the Che operator."""
    ctx.ensure_object(dict)
    try:
        configure_kube_client(logging.getLogger(__name__), kubeconfig_path=kubeconfig)
    except KubernetesConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command(help="Show CheCluster, backup and restore resources.")
@click.option("-n", "--namespace", type=str, default="", help="Namespace, all namespaces when omitted.")
def status(namespace: str) -> None:
    handlers.show_status(namespace=namespace)


@main.command(help="Create or trigger a CheClusterBackup.")
@click.argument("name")
@click.option("-n", "--namespace", type=str, default="eclipse-che", help="Namespace of the CheCluster.")
@click.option("--internal", "use_internal_server", is_flag=True, help="Use the internal backup server.")
def backup(name: str, namespace: str, use_internal_server: bool) -> None:
    if not handlers.trigger_backup(name, namespace, use_internal_server=use_internal_server):
        sys.exit(1)


@main.command(help="Create or trigger a CheClusterRestore.")
@click.argument("name")
@click.option("-n", "--namespace", type=str, default="eclipse-che", help="Namespace of the CheCluster.")
@click.option("--snapshot", "snapshot_id", type=str, default=None, help="Snapshot to restore, latest when omitted.")
@click.option(
    "--copy-backup-config",
    is_flag=True,
    help="Copy the backup server configuration from the namespace's CheClusterBackup.",
)
def restore(name: str, namespace: str, snapshot_id: str, copy_backup_config: bool) -> None:
    if not handlers.trigger_restore(
        name, namespace, snapshot_id=snapshot_id, copy_backup_config=copy_backup_config
    ):
        sys.exit(1)


if __name__ == "__main__":
    main()
