"""
Replaces the current Che installation with the one captured in a backup.

Steps run in order; a step that has to wait for the cluster returns early
and the progress flags let the next call resume where this one stopped.
"""
import asyncio
import base64
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import yaml
from kubernetes import client

from ..crds.checluster import CheCluster, get_path, is_true, set_path
from ..crds.const import (
    BACKUP_CHE_ECLIPSE_ORG,
    BACKUP_CONFIGMAPS_DIR,
    BACKUP_CR_FILE,
    BACKUP_DB_DIR,
    BACKUP_METADATA_FILE,
    BACKUP_SECRETS_DIR,
    CA_BUNDLE_SELECTOR,
    DEFAULT_CHE_FLAVOR,
    KEYCLOAK_NAME,
    KUBERNETES_INSTANCE_LABEL,
    KUBERNETES_NAME_LABEL,
    KUBERNETES_PART_OF_LABEL,
    POSTGRES_NAME,
    SERVER_NAME,
)
from ..crds.exec import exec_in_pod
from ..errors import TransientError, UnrecoverableError
from ..operator.checluster.resources.common import selector
from ..operator.config import OperatorConfig, config as operator_config
from ..utils.kube import get_pod_by_labels, label_selector
from .collector import DUMP_EXTENSION, clear_metadata

logger = logging.getLogger(__name__)


@dataclass
class RestoreProgress:
    """Steps of a restore already done, kept in memory between handler calls."""

    che_cr_deleted: bool = False
    deployments_deleted: bool = False
    ca_bundles_deleted: bool = False
    resources_restored: bool = False
    che_cr_restored: bool = False
    restored_databases: Set[str] = field(default_factory=set)
    database_restored: bool = False
    pods_restarted: bool = False

    @property
    def done(self) -> bool:
        return self.pods_restarted


def read_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def is_generated_host(host: str, namespace: str) -> bool:
    """Hosts the operator derives from the namespace when the CR leaves it empty."""
    return host.startswith(f"{SERVER_NAME}-{namespace}.")


def adapt_che_cr(body: Dict[str, Any], namespace: str, backup_namespace: str) -> Dict[str, Any]:
    """
    Rewrites a backed up CheCluster for the namespace it is restored into.

    Status is dropped, the che host is reset when the operator generated it
    and the identity provider URL is reset unless the provider is external.
    """
    body = clear_metadata(dict(body))
    body.pop("status", None)
    body["metadata"]["namespace"] = namespace
    spec = body.setdefault("spec", {})

    host = get_path(spec, "server.cheHost", "")
    if host and is_generated_host(host, backup_namespace or namespace):
        set_path(spec, "server.cheHost", "")
    if not is_true(get_path(spec, "auth.externalIdentityProvider", False)):
        if get_path(spec, "auth.identityProviderURL"):
            set_path(spec, "auth.identityProviderURL", "")
    return body


def restore_database_script(database: str, size: int) -> str:
    """
    Reads a base64 dump of ``size`` bytes from stdin and replaces ``database``.

    Stdin of a pod exec is never closed, so the exact length is read.
    """
    dump = f"/tmp/che-restore-{database}{DUMP_EXTENSION}"
    return (
        f"DB_NAME='{database}'\n"
        f"DUMP_FILE='{dump}'\n"
        f'head -c {size} | base64 -d > "$DUMP_FILE" || exit 1\n'
        'psql -c "ALTER DATABASE ${DB_NAME} CONNECTION LIMIT 0;"\n'
        "psql -c \"SELECT pg_terminate_backend(pid) FROM pg_stat_activity WHERE datname = '${DB_NAME}';\"\n"
        'dropdb --if-exists "$DB_NAME"\n'
        'pg_restore --create -d postgres "$DUMP_FILE"\n'
        "RC=$?\n"
        'rm -f "$DUMP_FILE"\n'
        "exit $RC\n"
    )


class BackupDataRestorer:
    def __init__(
        self,
        namespace: str,
        progress: RestoreProgress,
        core_v1: Optional[client.CoreV1Api] = None,
        apps_v1: Optional[client.AppsV1Api] = None,
        custom_objects_api: Optional[client.CustomObjectsApi] = None,
        cfg: Optional[OperatorConfig] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.namespace = namespace
        self.progress = progress
        self.core_v1 = core_v1 or client.CoreV1Api()
        self.apps_v1 = apps_v1 or client.AppsV1Api()
        self.custom_objects_api = custom_objects_api or client.CustomObjectsApi()
        self.config = cfg or operator_config
        self.logger = log or logger

    def read_backup_cr(self, data_dir: str) -> Dict[str, Any]:
        path = os.path.join(data_dir, BACKUP_CR_FILE)
        if not os.path.exists(path):
            raise UnrecoverableError(f"backup data is corrupted: {BACKUP_CR_FILE} not found")
        return read_yaml(path)

    def read_backup_metadata(self, data_dir: str) -> Dict[str, Any]:
        path = os.path.join(data_dir, BACKUP_METADATA_FILE)
        return read_yaml(path) if os.path.exists(path) else {}

    async def restore(self, data_dir: str) -> bool:
        """
        Runs the remaining restore steps.

        Returns:
            True once every step is done, False when waiting for the cluster.
        """
        progress = self.progress
        backup_cr = self.read_backup_cr(data_dir)
        metadata = self.read_backup_metadata(data_dir)
        adapted = adapt_che_cr(backup_cr, self.namespace, metadata.get("namespace", ""))
        flavor = get_path(adapted, "spec.server.cheFlavor") or DEFAULT_CHE_FLAVOR

        # Step 1: Stop the current installation
        if not progress.che_cr_deleted:
            if not await self.delete_che_cr():
                self.logger.info("Restore: waiting for the current CheCluster to be deleted")
                return False
            progress.che_cr_deleted = True

        # Step 2: Che deployments and their pods
        if not progress.deployments_deleted:
            if not await self.delete_che_deployments(flavor):
                self.logger.info("Restore: waiting for Che pods to terminate")
                return False
            progress.deployments_deleted = True

        # Step 3: CA bundles of the current installation
        if not progress.ca_bundles_deleted:
            await asyncio.to_thread(
                self.core_v1.delete_collection_namespaced_config_map,
                namespace=self.namespace,
                label_selector=label_selector(CA_BUNDLE_SELECTOR),
            )
            progress.ca_bundles_deleted = True

        # Step 4: Config maps and secrets from the backup
        if not progress.resources_restored:
            await self.restore_objects(os.path.join(data_dir, BACKUP_CONFIGMAPS_DIR), "ConfigMap")
            await self.restore_objects(os.path.join(data_dir, BACKUP_SECRETS_DIR), "Secret")
            progress.resources_restored = True

        # Step 5: CheCluster CR, the operator starts deploying from here
        if not progress.che_cr_restored:
            await self.create_che_cr(adapted)
            progress.che_cr_restored = True

        # Step 6: Databases
        if not progress.database_restored:
            if not await self.restore_databases(adapted, flavor, os.path.join(data_dir, BACKUP_DB_DIR)):
                self.logger.info("Restore: waiting for the database pod")
                return False
            progress.database_restored = True

        # Step 7: Reconnect the components to the restored data
        if not progress.pods_restarted:
            for component in (SERVER_NAME, KEYCLOAK_NAME):
                await asyncio.to_thread(
                    self.core_v1.delete_collection_namespaced_pod,
                    namespace=self.namespace,
                    label_selector=label_selector(selector(flavor, component)),
                )
            progress.pods_restarted = True
        return True

    async def delete_che_cr(self) -> bool:
        """Requests deletion of every CheCluster in the namespace; True once none is left."""
        checlusters = await asyncio.to_thread(CheCluster.list, self.namespace, self.custom_objects_api)
        for checluster in checlusters:
            if checluster.metadata.deletion_timestamp:
                continue
            self.logger.info(f"Restore: deleting CheCluster '{checluster.name}'")
            try:
                await asyncio.to_thread(checluster.delete)
            except client.ApiException as e:
                if e.status != 404:
                    raise
        return not checlusters

    def _che_selector(self, flavor: str) -> str:
        return ",".join(
            [
                f"{KUBERNETES_NAME_LABEL}={flavor}",
                f"{KUBERNETES_INSTANCE_LABEL}={flavor}",
                f"{KUBERNETES_PART_OF_LABEL}!={BACKUP_CHE_ECLIPSE_ORG}",
            ]
        )

    async def delete_che_deployments(self, flavor: str) -> bool:
        """Deletes Che deployments except the operator; True once their pods are gone."""
        operator_prefix = f"{flavor}-operator"
        che_selector = self._che_selector(flavor)
        deployments = await asyncio.to_thread(
            self.apps_v1.list_namespaced_deployment, namespace=self.namespace, label_selector=che_selector
        )
        for deployment in deployments.items:
            name = deployment.metadata.name
            if name.startswith(operator_prefix):
                continue
            self.logger.info(f"Restore: deleting deployment '{name}'")
            try:
                await asyncio.to_thread(
                    self.apps_v1.delete_namespaced_deployment, name=name, namespace=self.namespace
                )
            except client.ApiException as e:
                if e.status != 404:
                    raise

        pods = await asyncio.to_thread(
            self.core_v1.list_namespaced_pod, namespace=self.namespace, label_selector=che_selector
        )
        remaining = [p.metadata.name for p in pods.items if not p.metadata.name.startswith(operator_prefix)]
        return not remaining

    async def restore_objects(self, directory: str, kind: str) -> None:
        if not os.path.isdir(directory):
            return
        for file_name in sorted(os.listdir(directory)):
            body = clear_metadata(read_yaml(os.path.join(directory, file_name)))
            body["metadata"]["namespace"] = self.namespace
            await self._replace(kind, body)

    async def _replace(self, kind: str, body: Dict[str, Any]) -> None:
        if kind == "Secret":
            create, delete = self.core_v1.create_namespaced_secret, self.core_v1.delete_namespaced_secret
        else:
            create, delete = self.core_v1.create_namespaced_config_map, self.core_v1.delete_namespaced_config_map
        name = body["metadata"]["name"]
        try:
            await asyncio.to_thread(create, namespace=self.namespace, body=body)
            return
        except client.ApiException as e:
            if e.status != 409:
                raise
        self.logger.info(f"Restore: replacing {kind} '{name}'")
        await asyncio.to_thread(delete, name=name, namespace=self.namespace)
        await asyncio.to_thread(create, namespace=self.namespace, body=body)

    async def create_che_cr(self, body: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(
                self.custom_objects_api.create_namespaced_custom_object,
                group=CheCluster.group,
                version=CheCluster.version,
                namespace=self.namespace,
                plural=CheCluster.plural,
                body=body,
            )
        except client.ApiException as e:
            # Created by an earlier call that did not record its progress
            if e.status != 409:
                raise
        self.logger.info(f"Restore: CheCluster '{body['metadata']['name']}' created")

    def dumps(self, db_dir: str) -> List[str]:
        if not os.path.isdir(db_dir):
            return []
        return sorted(f for f in os.listdir(db_dir) if f.endswith(DUMP_EXTENSION))

    async def restore_databases(self, che_cr: Dict[str, Any], flavor: str, db_dir: str) -> bool:
        if is_true(get_path(che_cr, "spec.database.externalDb", False)):
            self.logger.info("Restore: external database is used, skipping database restore")
            return True

        pod = await asyncio.to_thread(
            get_pod_by_labels, self.core_v1, self.namespace, selector(flavor, POSTGRES_NAME)
        )
        if pod is None or not _pod_ready(pod):
            return False
        pod_name = pod["metadata"]["name"]

        for file_name in self.dumps(db_dir):
            database = file_name[: -len(DUMP_EXTENSION)]
            if database in self.progress.restored_databases:
                continue
            with open(os.path.join(db_dir, file_name), "rb") as f:
                encoded = base64.b64encode(f.read()).decode("ascii")
            self.logger.info(f"Restore: restoring database '{database}'")
            try:
                result = await asyncio.to_thread(
                    exec_in_pod,
                    self.core_v1,
                    pod_name,
                    self.namespace,
                    ["/bin/bash", "-c", restore_database_script(database, len(encoded))],
                    stdin=encoded,
                    timeout=self.config.exec_timeout,
                )
            except TimeoutError as e:
                raise TransientError(f"Failed to restore database {database}: {e}") from e
            if result.returncode != 0:
                raise UnrecoverableError(f"failed to restore database {database}: {result.output.strip()}")
            self.progress.restored_databases.add(database)
        return True


def _pod_ready(pod: Dict[str, Any]) -> bool:
    conditions = (pod.get("status") or {}).get("conditions") or []
    return any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)
