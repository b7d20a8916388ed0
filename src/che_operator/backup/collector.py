"""
Gathers everything a Che installation needs to be restored into a staging
directory that is then sent to the backup server as one snapshot.

Layout::

    che-cr.yaml
    backup-data.txt
    db/<database>.pgdump
    configmaps/<name>.yaml
    secrets/<name>.yaml
"""
import asyncio
import base64
import logging
import os
import shutil
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import yaml
from kubernetes import client

from ..crds.checluster import CheCluster
from ..crds.const import (
    BACKUP_CONFIGMAPS_DIR,
    BACKUP_CR_FILE,
    BACKUP_DB_DIR,
    BACKUP_METADATA_FILE,
    BACKUP_METADATA_VERSION,
    BACKUP_SECRETS_DIR,
    CA_BUNDLE_SELECTOR,
    POSTGRES_NAME,
    SERVER_NAME,
)
from ..crds.exec import exec_in_pod
from ..errors import TransientError
from ..operator.checluster.resources.common import selector
from ..operator.config import OperatorConfig, config as operator_config
from ..operator.platform.infrastructure import Infrastructure
from ..utils.kube import get_pod_by_labels, label_selector, to_dict

logger = logging.getLogger(__name__)

BACKUP_FILES_MODE = 0o600
BACKUP_DIR_MODE = 0o755
POD_DUMP_DIR = "/tmp/che-backup"
DUMP_EXTENSION = ".pgdump"

# Secrets referenced by the CR that hold generated credentials
CREDENTIAL_SECRET_FIELDS = [
    "database.chePostgresSecret",
    "auth.identityProviderPostgresSecret",
    "auth.identityProviderSecret",
]

# Metadata written by the API server or by kopf, meaningless in another namespace
_SERVER_METADATA = (
    "namespace",
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "managedFields",
    "ownerReferences",
    "finalizers",
    "selfLink",
)
_KOPF_ANNOTATION_PREFIX = "kopf.zalando.org/"


def clear_metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    metadata = obj.get("metadata") or {}
    for key in _SERVER_METADATA:
        metadata.pop(key, None)
    annotations = {
        k: v for k, v in (metadata.get("annotations") or {}).items()
        if not k.startswith(_KOPF_ANNOTATION_PREFIX)
        and k != "kubectl.kubernetes.io/last-applied-configuration"
    }
    if annotations:
        metadata["annotations"] = annotations
    else:
        metadata.pop("annotations", None)
    obj["metadata"] = metadata
    return obj


def prepare_directory(path: str) -> None:
    """Makes ``path`` an existing empty directory."""
    if os.path.exists(path):
        shutil.rmtree(path)
    os.makedirs(path, mode=BACKUP_DIR_MODE)


def write_file(path: str, content: Any) -> None:
    mode = "wb" if isinstance(content, bytes) else "w"
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, BACKUP_FILES_MODE)
    with os.fdopen(fd, mode) as f:
        f.write(content)


def dump_databases_script(databases: List[str]) -> str:
    names = " ".join(databases)
    return (
        f"DIR={POD_DUMP_DIR}\n"
        "rm -rf $DIR && mkdir -p $DIR\n"
        f"for db in {names}; do\n"
        f'  pg_dump -Fc "$db" > "$DIR/$db{DUMP_EXTENSION}" || exit 1\n'
        "done\n"
    )


def move_dump_script(database: str) -> str:
    """Prints a dump base64 encoded and removes it from the pod."""
    dump = f"{POD_DUMP_DIR}/{database}{DUMP_EXTENSION}"
    return f'base64 -w 0 "{dump}" && rm -f "{dump}"'


def apps_domain(checluster: CheCluster, infrastructure: Infrastructure) -> str:
    if not infrastructure.is_extended:
        return checluster.value("k8s.ingressDomain", "")
    # Routes get <name>-<namespace>.<apps domain> when no host is requested
    host = checluster.value("server.cheHost", "")
    prefix = f"{SERVER_NAME}-{checluster.namespace}."
    return host[len(prefix):] if host.startswith(prefix) else ""


class BackupDataCollector:
    """Writes the backup data of one CheCluster into a staging directory."""

    def __init__(
        self,
        checluster: CheCluster,
        infrastructure: Infrastructure,
        core_v1: Optional[client.CoreV1Api] = None,
        cfg: Optional[OperatorConfig] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.checluster = checluster
        self.infrastructure = infrastructure
        self.core_v1 = core_v1 or client.CoreV1Api()
        self.config = cfg or operator_config
        self.logger = log or logger

    @property
    def namespace(self) -> str:
        return self.checluster.namespace

    async def collect(self, dest_dir: str) -> None:
        # Step 1: Empty staging directory
        await asyncio.to_thread(prepare_directory, dest_dir)
        # Step 2: CheCluster CR
        self.backup_che_cr(dest_dir)
        # Step 3: Database dumps
        await self.backup_databases(dest_dir)
        # Step 4: CA bundle config maps
        await self.backup_config_maps(dest_dir)
        # Step 5: Credential secrets
        await self.backup_secrets(dest_dir)
        # Step 6: Metadata header
        self.write_metadata(dest_dir)
        self.logger.info(f"Backup data of CheCluster '{self.checluster.name}' collected in {dest_dir}")

    def backup_che_cr(self, dest_dir: str) -> None:
        body = clear_metadata(self.checluster.to_dict())
        write_file(os.path.join(dest_dir, BACKUP_CR_FILE), yaml.safe_dump(body))

    def databases(self) -> List[str]:
        databases = self.config.databases_for_flavor(self.checluster.flavor)
        che_db = self.checluster.value("database.chePostgresDb")
        if che_db and databases and che_db not in databases:
            databases[0] = che_db
        return databases

    async def backup_databases(self, dest_dir: str) -> None:
        db_dir = os.path.join(dest_dir, BACKUP_DB_DIR)
        os.makedirs(db_dir, mode=BACKUP_DIR_MODE, exist_ok=True)
        if self.checluster.external_db:
            self.logger.info("External database is used, skipping database backup")
            return

        pod = await asyncio.to_thread(
            get_pod_by_labels, self.core_v1, self.namespace, selector(self.checluster.flavor, POSTGRES_NAME)
        )
        if pod is None:
            raise TransientError("Database pod is not running")
        pod_name = pod["metadata"]["name"]

        databases = self.databases()
        # Dump all databases in a row to keep them consistent with each other
        self.logger.info(f"Dumping databases: {', '.join(databases)}")
        await self._exec(pod_name, dump_databases_script(databases), "dump databases")
        for database in databases:
            encoded = await self._exec(pod_name, move_dump_script(database), f"read {database} dump")
            write_file(os.path.join(db_dir, f"{database}{DUMP_EXTENSION}"), base64.b64decode(encoded))

    async def _exec(self, pod_name: str, script: str, action: str) -> str:
        try:
            result = await asyncio.to_thread(
                exec_in_pod,
                self.core_v1,
                pod_name,
                self.namespace,
                ["/bin/bash", "-c", script],
                timeout=self.config.exec_timeout,
            )
        except TimeoutError as e:
            raise TransientError(f"Failed to {action}: {e}") from e
        if result.returncode != 0:
            raise TransientError(f"Failed to {action}: {result.output}")
        return result.stdout.strip()

    async def backup_config_maps(self, dest_dir: str) -> None:
        cm_dir = os.path.join(dest_dir, BACKUP_CONFIGMAPS_DIR)
        os.makedirs(cm_dir, mode=BACKUP_DIR_MODE, exist_ok=True)
        config_maps = await asyncio.to_thread(
            self.core_v1.list_namespaced_config_map,
            namespace=self.namespace,
            label_selector=label_selector(CA_BUNDLE_SELECTOR),
        )
        for cm in config_maps.items:
            body = clear_metadata(to_dict(cm))
            write_file(os.path.join(cm_dir, f"{body['metadata']['name']}.yaml"), yaml.safe_dump(body))

    async def backup_secrets(self, dest_dir: str) -> None:
        secrets_dir = os.path.join(dest_dir, BACKUP_SECRETS_DIR)
        os.makedirs(secrets_dir, mode=BACKUP_DIR_MODE, exist_ok=True)
        names = []
        for path in CREDENTIAL_SECRET_FIELDS:
            name = self.checluster.value(path)
            if name and name not in names:
                names.append(name)

        for name in names:
            try:
                secret = await asyncio.to_thread(
                    self.core_v1.read_namespaced_secret, name=name, namespace=self.namespace
                )
            except client.ApiException as e:
                if e.status == 404:
                    self.logger.warning(f"Secret '{name}' referenced by the CheCluster not found, skipping")
                    continue
                raise
            body = clear_metadata(to_dict(secret))
            write_file(os.path.join(secrets_dir, f"{name}.yaml"), yaml.safe_dump(body))

    def write_metadata(self, dest_dir: str) -> None:
        metadata = {
            "metadataFileVersion": BACKUP_METADATA_VERSION,
            "cheVersion": self.checluster.status.get("cheVersion", ""),
            "infrastructure": self.infrastructure.value,
            "appsDomain": apps_domain(self.checluster, self.infrastructure),
            "namespace": self.namespace,
            "creationDate": datetime.now(timezone.utc).isoformat(),
        }
        write_file(os.path.join(dest_dir, BACKUP_METADATA_FILE), yaml.safe_dump(metadata))
