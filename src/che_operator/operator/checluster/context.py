import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from kubernetes import client

from ...crds.checluster import CheCluster, get_path, set_path
from ..config import OperatorConfig
from ..platform.infrastructure import Infrastructure
from ..platform.proxy import Proxy
from ..platform.templates import TemplateRegistry
from ..sync import Syncer


@dataclass
class ClusterAPI:
    """API handles shared by the sub-reconcilers of one pass."""

    infrastructure: Infrastructure
    core_v1: Any = field(default_factory=client.CoreV1Api)
    apps_v1: Any = field(default_factory=client.AppsV1Api)
    rbac_v1: Any = field(default_factory=client.RbacAuthorizationV1Api)
    custom_objects: Any = field(default_factory=client.CustomObjectsApi)


@dataclass
class ReconcileResult:
    """
    Outcome of a sub-reconciler.

    ``done`` False stops the pass; the handler requeues after
    ``requeue_after`` seconds and the pass starts over.
    """

    done: bool = True
    requeue_after: float = 0
    reason: str = ""

    @classmethod
    def requeue(cls, reason: str, after: float = 1) -> "ReconcileResult":
        return cls(done=False, requeue_after=after, reason=reason)


@dataclass
class DeployContext:
    """Per-pass state handed to every sub-reconciler."""

    checluster: CheCluster
    cluster_api: ClusterAPI
    syncer: Syncer
    templates: TemplateRegistry
    config: OperatorConfig
    logger: logging.Logger
    proxy: Proxy = field(default_factory=Proxy)
    che_host: str = ""
    default_che_host: str = ""
    # Facts published by one sub-reconciler for the ones after it
    server_config_revision: str = ""
    spec_patch: Dict[str, Any] = field(default_factory=dict)
    status_patch: Dict[str, Any] = field(default_factory=dict)

    @property
    def namespace(self) -> str:
        return self.checluster.namespace

    @property
    def infrastructure(self) -> Infrastructure:
        return self.cluster_api.infrastructure

    @property
    def is_extended(self) -> bool:
        return self.infrastructure.is_extended

    @property
    def images(self) -> Dict[str, str]:
        return self.config.images

    def update_spec(self, path: str, value: Any) -> None:
        """Sets a spec field in memory and schedules it to be written to the CR."""
        set_path(self.checluster.spec, path, value)
        set_path(self.spec_patch, path, value)

    def update_status(self, key: str, value: Any) -> bool:
        """Records a status field; returns True when the value changed."""
        if self.checluster.status.get(key) == value:
            return False
        self.checluster.status[key] = value
        self.status_patch[key] = value
        return True

    def status(self, key: str, default: Optional[Any] = None) -> Any:
        return get_path(self.checluster.status, key, default)
