"""
SFTP backup server reached with a private key from a secret.

The key and the ssh client configuration are written into the per-reconcile
working directory and never into the user's home.
"""
import logging
import os

from kubernetes import client

from ..crds.const import SSH_PRIVATE_KEY_SECRET_KEY
from ..errors import BackupServerConfigError
from .common import BackupServer, read_secret, resolve_repo_password, secret_field
from .config import SFTP, SftpServerConfig

logger = logging.getLogger(__name__)

SSH_KEY_FILE = "ssh-privatekey"
SSH_CONFIG_FILE = "ssh-config"


def ssh_config(hostname: str, key_path: str) -> str:
    # No known_hosts is available in the operator pod
    return f"Host {hostname}\n  StrictHostKeyChecking no\n  IdentityFile {key_path}\n"


class SftpServer(BackupServer):
    server_type = SFTP

    def __init__(self, config: SftpServerConfig):
        super().__init__()
        self.config = config

    def validate(self) -> None:
        cfg = self.config
        if not cfg.username:
            raise BackupServerConfigError("SFTP server username must be configured")
        if not cfg.hostname:
            raise BackupServerConfigError("SFTP server hostname must be configured")
        if not cfg.repository_path:
            raise BackupServerConfigError("repository (path on server side) must be configured")
        if not cfg.ssh_key_secret_ref:
            raise BackupServerConfigError(
                "secret with SSH key is not specified. It is mandatory to connect to SFTP backup server"
            )

    def repository_url(self) -> str:
        cfg = self.config
        if cfg.port:
            path = cfg.repository_path if cfg.repository_path.startswith("/") else f"/{cfg.repository_path}"
            return f"sftp://{cfg.username}@{cfg.hostname}:{cfg.port}{path}"
        return f"sftp:{cfg.username}@{cfg.hostname}:{cfg.repository_path}"

    def read_private_key(self, core_v1: client.CoreV1Api, namespace: str) -> str:
        name = self.config.ssh_key_secret_ref
        data = read_secret(core_v1, namespace, name)
        if data is None:
            raise BackupServerConfigError(f"secret '{name}' with SSH key not found")
        key = secret_field(data, SSH_PRIVATE_KEY_SECRET_KEY)
        if key is None:
            raise BackupServerConfigError(f"'{name}' secret should have '{SSH_PRIVATE_KEY_SECRET_KEY}' field")
        if not key.strip().startswith("-----BEGIN"):
            raise BackupServerConfigError(f"provided SSH key in '{name}' secret has invalid format")
        return key if key.endswith("\n") else key + "\n"

    def write_ssh_files(self, key: str, workdir: str) -> str:
        """Writes the key and an ssh config into ``workdir``, returns the config path."""
        os.makedirs(workdir, mode=0o700, exist_ok=True)
        key_path = os.path.join(workdir, SSH_KEY_FILE)
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(key)
        os.chmod(key_path, 0o600)

        config_path = os.path.join(workdir, SSH_CONFIG_FILE)
        with open(config_path, "w") as f:
            f.write(ssh_config(self.config.hostname, key_path))
        os.chmod(config_path, 0o600)
        return config_path

    def sftp_command(self, config_path: str) -> str:
        cfg = self.config
        port = f" -p {cfg.port}" if cfg.port else ""
        return f"ssh -F {config_path}{port} {cfg.username}@{cfg.hostname} -s sftp"

    def prepare_configuration(self, core_v1: client.CoreV1Api, namespace: str, workdir: str) -> None:
        self.validate()
        repo_password = resolve_repo_password(core_v1, namespace, self.config.repo_password)
        key = self.read_private_key(core_v1, namespace)
        config_path = self.write_ssh_files(key, workdir)
        self._make_client(
            self.repository_url(),
            repo_password,
            extra_args=["-o", f"sftp.command={self.sftp_command(config_path)}"],
        )
