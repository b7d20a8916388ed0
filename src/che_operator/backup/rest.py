"""
restic REST server, external or the one deployed by the operator.
"""
import logging
from urllib.parse import quote

import httpx
from kubernetes import client

from ..crds.const import PASSWORD_SECRET_KEY, USERNAME_SECRET_KEY
from ..errors import BackupServerConfigError, ResticError
from .common import BackupServer, port_suffix, read_secret, resolve_repo_password
from .config import INTERNAL, REST, InternalServerConfig, RestServerConfig
from .internal import internal_rest_config

logger = logging.getLogger(__name__)

REST_PREFIX = "rest:"
HEAD_TIMEOUT = 30


def rest_repository_exists(repo_url: str) -> bool:
    """
    Asks the REST server for the repository config file.

    A missing or empty config means the repository is not initialized yet.
    """
    url = repo_url[len(REST_PREFIX):] if repo_url.startswith(REST_PREFIX) else repo_url
    try:
        response = httpx.head(f"{url}config", timeout=HEAD_TIMEOUT)
    except httpx.HTTPError as e:
        raise ResticError(f"failed to reach REST backup server: {e}") from e
    if response.status_code == 404:
        return False
    if response.status_code >= 400:
        raise ResticError(
            f"unexpected answer from REST backup server: {response.status_code} {response.reason_phrase}"
        )
    return response.headers.get("content-length") != "0"


class RestServer(BackupServer):
    server_type = REST

    def __init__(self, config: RestServerConfig):
        super().__init__()
        self.config = config

    def repository_url(self, username: str = "", password: str = "") -> str:
        cfg = self.config
        protocol = cfg.protocol or "https"
        if protocol not in ("http", "https"):
            raise BackupServerConfigError(f"unrecognized protocol {protocol} for REST server")
        if not cfg.hostname:
            raise BackupServerConfigError("REST server hostname must be configured")

        credentials = ""
        if username and password:
            credentials = f"{quote(username, safe='')}:{quote(password, safe='')}@"
        repo = cfg.repository_path.strip("/")
        repo = f"{repo}/" if repo else ""
        return f"{REST_PREFIX}{protocol}://{credentials}{cfg.hostname}{port_suffix(cfg.port)}/{repo}"

    def _credentials(self, core_v1: client.CoreV1Api, namespace: str):
        name = self.config.credentials_secret_ref
        if not name:
            return "", ""
        data = read_secret(core_v1, namespace, name)
        if data is None:
            raise BackupServerConfigError(
                f"secret '{name}' with REST server username and password not found"
            )
        for key in (USERNAME_SECRET_KEY, PASSWORD_SECRET_KEY):
            if key not in data:
                raise BackupServerConfigError(f"{name} secret should have '{key}' field")
        return data[USERNAME_SECRET_KEY], data[PASSWORD_SECRET_KEY]

    def prepare_configuration(self, core_v1: client.CoreV1Api, namespace: str, workdir: str) -> None:
        repo_password = resolve_repo_password(core_v1, namespace, self.config.repo_password)
        username, password = self._credentials(core_v1, namespace)
        self._make_client(self.repository_url(username, password), repo_password)

    def is_repository_exist(self) -> bool:
        return rest_repository_exists(self._client().repo_url)


class InternalRestServer(RestServer):
    """REST server deployed by the operator in the installation namespace."""

    server_type = INTERNAL

    def __init__(self, config: InternalServerConfig):
        super().__init__(internal_rest_config(config.namespace))
        self.config.repo_password = config.repo_password
