import logging
from enum import Enum

from kubernetes import client

logger = logging.getLogger(__name__)

ROUTE_API_GROUP = "route.openshift.io"
OAUTH_API_GROUP = "oauth.openshift.io"
PROJECT_API_GROUP = "project.openshift.io"
CONFIG_API_GROUP = "config.openshift.io"


class Infrastructure(str, Enum):
    """Flavor of the cluster the operator runs on."""

    # Plain kubernetes: Ingress objects, no integrated OAuth
    BASE = "Kubernetes"
    # Routes, OAuth server and projects are available
    EXTENDED = "OpenShift"

    @property
    def is_extended(self) -> bool:
        return self is Infrastructure.EXTENDED


def detect_infrastructure(apis_api: client.ApisApi) -> Infrastructure:
    """Probes the discovery API for the route API group."""
    groups = apis_api.get_api_versions().groups or []
    names = {group.name for group in groups}
    infrastructure = Infrastructure.EXTENDED if ROUTE_API_GROUP in names else Infrastructure.BASE
    logger.info(f"Detected infrastructure: {infrastructure.value}")
    return infrastructure
