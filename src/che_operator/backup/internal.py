"""
REST backup server deployed by the operator next to the Che installation.
"""
import logging
import secrets
import string
from typing import Any, Dict, List

import httpx

from ..crds.const import (
    BACKUP_CHE_ECLIPSE_ORG,
    INTERNAL_BACKUP_SERVER_COMPONENT,
    INTERNAL_BACKUP_SERVER_DEPLOYMENT,
    INTERNAL_BACKUP_SERVER_PORT,
    INTERNAL_BACKUP_SERVER_REPO,
    INTERNAL_BACKUP_SERVER_SECRET,
    INTERNAL_BACKUP_SERVER_SERVICE,
    REPO_PASSWORD_SECRET_KEY,
)
from ..operator.checluster.resources.common import build_secret, build_service, labels, selector
from ..operator.checluster.resources.deployment import build_container, build_deployment
from ..operator.sync import Syncer
from .config import InternalServerConfig, RepoPassword, RestServerConfig

logger = logging.getLogger(__name__)

READINESS_TIMEOUT = 10
REPO_PASSWORD_LENGTH = 20


def internal_server_host(namespace: str) -> str:
    return f"{INTERNAL_BACKUP_SERVER_SERVICE}.{namespace}.svc"


def internal_server_url(namespace: str) -> str:
    return f"http://{internal_server_host(namespace)}:{INTERNAL_BACKUP_SERVER_PORT}/"


def internal_rest_config(namespace: str) -> RestServerConfig:
    """The REST configuration pointing at the internal server."""
    return RestServerConfig(
        protocol="http",
        hostname=internal_server_host(namespace),
        port=str(INTERNAL_BACKUP_SERVER_PORT),
        repository_path=INTERNAL_BACKUP_SERVER_REPO,
        repo_password=RepoPassword(secret_ref=INTERNAL_BACKUP_SERVER_SECRET),
    )


def internal_server_config(namespace: str) -> InternalServerConfig:
    return InternalServerConfig(
        namespace=namespace,
        repo_password=RepoPassword(secret_ref=INTERNAL_BACKUP_SERVER_SECRET),
    )


def generate_repo_password(length: int = REPO_PASSWORD_LENGTH) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def build_internal_server_objects(namespace: str, flavor: str, image: str) -> List[Dict[str, Any]]:
    object_labels = labels(flavor, INTERNAL_BACKUP_SERVER_COMPONENT, BACKUP_CHE_ECLIPSE_ORG)
    container = build_container(
        "backup-rest-server",
        image,
        port=INTERNAL_BACKUP_SERVER_PORT,
    )
    container["ports"][0]["name"] = "rest"
    deployment = build_deployment(
        INTERNAL_BACKUP_SERVER_DEPLOYMENT,
        namespace,
        flavor,
        INTERNAL_BACKUP_SERVER_COMPONENT,
        [container],
        part_of=BACKUP_CHE_ECLIPSE_ORG,
    )
    service = build_service(
        INTERNAL_BACKUP_SERVER_SERVICE,
        namespace,
        selector(flavor, INTERNAL_BACKUP_SERVER_COMPONENT),
        [{"name": f"{INTERNAL_BACKUP_SERVER_SERVICE}-port", "port": INTERNAL_BACKUP_SERVER_PORT}],
        object_labels=object_labels,
    )
    return [deployment, service]


async def provision_internal_server(syncer: Syncer, namespace: str, flavor: str, image: str) -> bool:
    """
    Creates the internal server objects and its repository password.

    The password secret is created once and never updated.

    Returns:
        True when every object already existed in the desired state.
    """
    in_sync = True
    for obj in build_internal_server_objects(namespace, flavor, image):
        if not await syncer.sync(obj):
            in_sync = False

    secret = build_secret(
        INTERNAL_BACKUP_SERVER_SECRET,
        namespace,
        {REPO_PASSWORD_SECRET_KEY: generate_repo_password()},
        object_labels=labels(flavor, INTERNAL_BACKUP_SERVER_COMPONENT, BACKUP_CHE_ECLIPSE_ORG),
    )
    if not await syncer.create_if_not_exists(secret):
        in_sync = False
    return in_sync


def internal_server_ready(namespace: str) -> bool:
    """
    True once the internal server answers HTTP requests.

    A fresh server answers 404 to everything, so any answer counts.
    """
    try:
        httpx.head(internal_server_url(namespace), timeout=READINESS_TIMEOUT)
    except (httpx.ConnectError, httpx.ConnectTimeout) as e:
        logger.info(f"Waiting for internal REST server to be ready: {e}")
        return False
    return True
