"""
Base class of the backup servers and the helpers their configurations share.
"""
import base64
import logging
from typing import Dict, List, Optional

from kubernetes import client

from ..crds.const import REPO_PASSWORD_SECRET_KEY
from ..errors import BackupServerConfigError
from ..operator.config import config as operator_config
from .config import RepoPassword
from .restic import ResticClient, SnapshotStat

logger = logging.getLogger(__name__)


def read_secret(core_v1: client.CoreV1Api, namespace: str, name: str) -> Optional[Dict[str, str]]:
    """
    Reads and decodes a secret.

    Returns:
        The decoded data, or None when the secret does not exist. Other API
        errors propagate.
    """
    try:
        secret = core_v1.read_namespaced_secret(name=name, namespace=namespace)
    except client.ApiException as e:
        if e.status == 404:
            return None
        raise
    data = secret.data or {}
    return {k: base64.b64decode(v).decode("utf-8") for k, v in data.items()}


def secret_field(data: Dict[str, str], key: str) -> Optional[str]:
    """Value under ``key``, or the only value of a single-key secret."""
    if key in data:
        return data[key]
    if len(data) == 1:
        return next(iter(data.values()))
    return None


def resolve_repo_password(core_v1: client.CoreV1Api, namespace: str, password: RepoPassword) -> str:
    if password.repo_password:
        return password.repo_password
    if not password.secret_ref:
        raise BackupServerConfigError("restic repository password should be specified")

    data = read_secret(core_v1, namespace, password.secret_ref)
    if data is None:
        raise BackupServerConfigError(
            f"secret '{password.secret_ref}' with restic repository password not found"
        )
    value = secret_field(data, REPO_PASSWORD_SECRET_KEY)
    if value is None:
        raise BackupServerConfigError(
            f"{password.secret_ref} secret should have '{REPO_PASSWORD_SECRET_KEY}' field"
        )
    return value


def port_suffix(port: str) -> str:
    """':<port>' for a non default port, empty otherwise."""
    if not port or port == "80":
        return ""
    return f":{port}"


class BackupServer:
    """
    A restic repository reachable through one of the supported transports.

    ``prepare_configuration`` must be called before any repository
    operation; it validates the configuration, reads the referenced secrets
    and builds the restic client.
    """

    server_type = ""

    def __init__(self):
        self.restic: Optional[ResticClient] = None

    def prepare_configuration(self, core_v1: client.CoreV1Api, namespace: str, workdir: str) -> None:
        raise NotImplementedError

    def _make_client(
        self,
        repo_url: str,
        repo_password: str,
        extra_env: Optional[Dict[str, str]] = None,
        extra_args: Optional[List[str]] = None,
    ) -> ResticClient:
        self.restic = ResticClient(
            repo_url,
            repo_password,
            extra_env=extra_env,
            extra_args=extra_args,
            timeout=operator_config.backup_timeout,
            restore_timeout=operator_config.restore_timeout,
            binary=operator_config.restic_binary,
        )
        return self.restic

    def _client(self) -> ResticClient:
        if self.restic is None:
            raise RuntimeError(f"{self.server_type} backup server is not prepared")
        return self.restic

    def init_repository(self) -> None:
        self._client().init_repository()

    def is_repository_exist(self) -> bool:
        return self._client().is_repository_exist()

    def check_repository(self) -> None:
        self._client().check_repository()

    def send_snapshot(self, path: str) -> SnapshotStat:
        return self._client().send_snapshot(path)

    def download_snapshot(self, snapshot_id: str, path: str) -> None:
        self._client().download_snapshot(snapshot_id, path)

    def download_last_snapshot(self, path: str) -> None:
        self._client().download_last_snapshot(path)
