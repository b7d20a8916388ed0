from typing import Any, Dict

from .base import BaseCustomResource
from .checluster import is_true
from .const import CRD_GROUP, CRD_PLURAL_CHECLUSTERBACKUP, CRD_VERSION


class CheClusterBackup(BaseCustomResource):
    group = CRD_GROUP
    version = CRD_VERSION
    plural = CRD_PLURAL_CHECLUSTERBACKUP
    kind = "CheClusterBackup"

    @property
    def trigger_now(self) -> bool:
        return is_true(self.spec.get("triggerNow", False))

    @property
    def use_internal_backup_server(self) -> bool:
        return is_true(self.spec.get("useInternalBackupServer", False))

    @property
    def backup_server_config(self) -> Dict[str, Any]:
        return self.spec.get("backupServerConfig") or {}

    @property
    def server_type(self) -> str:
        return self.spec.get("serverType") or ""
