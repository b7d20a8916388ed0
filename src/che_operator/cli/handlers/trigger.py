from typing import Any, Dict, Optional

from kubernetes import client
from rich.console import Console

from ...crds.const import (
    CRD_GROUP,
    CRD_PLURAL_CHECLUSTERBACKUP,
    CRD_PLURAL_CHECLUSTERRESTORE,
    CRD_VERSION,
)


def _create_or_trigger(
    console: Console,
    plural: str,
    kind: str,
    name: str,
    namespace: str,
    spec: Dict[str, Any],
) -> bool:
    """
    Creates the CR with ``triggerNow`` set, or sets it on an existing one.

    Returns:
        True when the operation was requested.
    """
    api = client.CustomObjectsApi()
    spec = dict(spec, triggerNow=True)
    try:
        api.create_namespaced_custom_object(
            group=CRD_GROUP,
            version=CRD_VERSION,
            namespace=namespace,
            plural=plural,
            body={
                "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
                "kind": kind,
                "metadata": {"name": name, "namespace": namespace},
                "spec": spec,
            },
        )
        console.print(f"{kind} '{name}' created in namespace '{namespace}'.")
        return True
    except client.ApiException as e:
        if e.status != 409:
            console.print(f"Error creating {kind}: {e.reason}")
            return False

    try:
        api.patch_namespaced_custom_object(
            group=CRD_GROUP,
            version=CRD_VERSION,
            namespace=namespace,
            plural=plural,
            name=name,
            body={"spec": spec},
        )
    except client.ApiException as e:
        console.print(f"Error updating {kind} '{name}': {e.reason}")
        return False
    console.print(f"{kind} '{name}' triggered in namespace '{namespace}'.")
    return True


def trigger_backup(name: str, namespace: str, use_internal_server: bool = False) -> bool:
    spec: Dict[str, Any] = {}
    if use_internal_server:
        spec["useInternalBackupServer"] = True
    return _create_or_trigger(
        Console(), CRD_PLURAL_CHECLUSTERBACKUP, "CheClusterBackup", name, namespace, spec
    )


def trigger_restore(
    name: str,
    namespace: str,
    snapshot_id: Optional[str] = None,
    copy_backup_config: bool = False,
) -> bool:
    spec: Dict[str, Any] = {}
    if snapshot_id:
        spec["snapshotId"] = snapshot_id
    if copy_backup_config:
        spec["copyBackupServerConfiguration"] = True
    return _create_or_trigger(
        Console(), CRD_PLURAL_CHECLUSTERRESTORE, "CheClusterRestore", name, namespace, spec
    )
