from typing import Any, Dict

from .base import BaseCustomResource
from .checluster import is_true
from .const import CRD_GROUP, CRD_PLURAL_CHECLUSTERRESTORE, CRD_VERSION


class CheClusterRestore(BaseCustomResource):
    group = CRD_GROUP
    version = CRD_VERSION
    plural = CRD_PLURAL_CHECLUSTERRESTORE
    kind = "CheClusterRestore"

    @property
    def trigger_now(self) -> bool:
        return is_true(self.spec.get("triggerNow", False))

    @property
    def snapshot_id(self) -> str:
        return self.spec.get("snapshotId") or ""

    @property
    def copy_backup_server_configuration(self) -> bool:
        return is_true(self.spec.get("copyBackupServerConfiguration", False))

    @property
    def delete_configuration_after_restore(self) -> bool:
        return is_true(self.spec.get("deleteConfigurationAfterRestore", False))

    @property
    def backup_server_config(self) -> Dict[str, Any]:
        return self.spec.get("backupServerConfig") or {}

    @property
    def server_type(self) -> str:
        return self.spec.get("serverType") or ""
