from enum import Enum
from typing import Any, Dict, List

from .base import BaseCustomResource
from .const import (
    CRD_GROUP,
    CRD_PLURAL_CHECLUSTER,
    CRD_VERSION,
    DEFAULT_CHE_FLAVOR,
)


class ChePhase(str, Enum):
    INACTIVE = "Inactive"
    ACTIVE = "Active"
    ROLLING_UPDATE = "RollingUpdate"
    FAILED = "Failed"


def get_path(data: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Reads a dotted path such as ``server.cheHost`` from nested dicts."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    if current is None:
        return default
    return current


def set_path(data: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def is_true(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("true", "1", "t")


class CheCluster(BaseCustomResource):
    group = CRD_GROUP
    version = CRD_VERSION
    plural = CRD_PLURAL_CHECLUSTER
    kind = "CheCluster"

    def value(self, path: str, default: Any = None) -> Any:
        return get_path(self.spec, path, default)

    def flag(self, path: str, default: bool = False) -> bool:
        return is_true(self.value(path, default))

    @property
    def flavor(self) -> str:
        return self.value("server.cheFlavor") or DEFAULT_CHE_FLAVOR

    @property
    def is_codeready(self) -> bool:
        return self.flavor == "codeready"

    @property
    def external_db(self) -> bool:
        return self.flag("database.externalDb")

    @property
    def external_identity_provider(self) -> bool:
        return self.flag("auth.externalIdentityProvider")

    @property
    def tls_support(self) -> bool:
        return self.flag("server.tlsSupport", True)

    @property
    def debug(self) -> bool:
        return self.flag("server.cheDebug")

    @property
    def devworkspace_enabled(self) -> bool:
        return self.flag("devWorkspace.enable")

    @property
    def scheme(self) -> str:
        return "https" if self.tls_support else "http"

    @property
    def cluster_roles(self) -> List[str]:
        """User supplied cluster roles, either a comma separated string or a list."""
        roles = self.value("server.cheClusterRoles")
        if not roles:
            return []
        if isinstance(roles, str):
            roles = roles.split(",")
        return [r.strip() for r in roles if r and r.strip()]

    @property
    def postgres_secret(self) -> str:
        return self.value("database.chePostgresSecret", "")

    @property
    def phase(self) -> str:
        return self.status.get("chePhase", "")
