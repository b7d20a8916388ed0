"""
Amazon S3 (or compatible) bucket used as a restic repository.
"""
from typing import Tuple

from kubernetes import client

from ..crds.const import AWS_ACCESS_KEY_ID_SECRET_KEY, AWS_SECRET_ACCESS_KEY_SECRET_KEY
from ..errors import BackupServerConfigError
from .common import BackupServer, port_suffix, read_secret, resolve_repo_password
from .config import AWSS3, AwsS3ServerConfig

DEFAULT_S3_HOST = "s3.amazonaws.com"


class AwsS3Server(BackupServer):
    server_type = AWSS3

    def __init__(self, config: AwsS3ServerConfig):
        super().__init__()
        self.config = config

    def repository_url(self) -> str:
        cfg = self.config
        if not cfg.repository_path:
            raise BackupServerConfigError("bucket (repository) must be configured")
        protocol = f"{cfg.protocol}://" if cfg.protocol else ""
        host = cfg.hostname or DEFAULT_S3_HOST
        return f"s3:{protocol}{host}{port_suffix(cfg.port)}/{cfg.repository_path.strip('/')}"

    def access_keys(self, core_v1: client.CoreV1Api, namespace: str) -> Tuple[str, str]:
        cfg = self.config
        if cfg.aws_access_key_id and cfg.aws_secret_access_key:
            return cfg.aws_access_key_id, cfg.aws_secret_access_key

        name = cfg.aws_access_key_secret_ref
        if not name:
            raise BackupServerConfigError("secret name with AWS access key and ID is not provided")
        data = read_secret(core_v1, namespace, name)
        if data is None:
            raise BackupServerConfigError(f"secret '{name}' with AWS access key and ID not found")
        if AWS_ACCESS_KEY_ID_SECRET_KEY not in data:
            raise BackupServerConfigError(
                f"{name} secret should have access key ID under '{AWS_ACCESS_KEY_ID_SECRET_KEY}' field"
            )
        if AWS_SECRET_ACCESS_KEY_SECRET_KEY not in data:
            raise BackupServerConfigError(
                f"{name} secret should have access key under '{AWS_SECRET_ACCESS_KEY_SECRET_KEY}' field"
            )
        return data[AWS_ACCESS_KEY_ID_SECRET_KEY], data[AWS_SECRET_ACCESS_KEY_SECRET_KEY]

    def prepare_configuration(self, core_v1: client.CoreV1Api, namespace: str, workdir: str) -> None:
        repo_url = self.repository_url()
        repo_password = resolve_repo_password(core_v1, namespace, self.config.repo_password)
        key_id, secret_key = self.access_keys(core_v1, namespace)
        self._make_client(
            repo_url,
            repo_password,
            extra_env={"AWS_ACCESS_KEY_ID": key_id, "AWS_SECRET_ACCESS_KEY": secret_key},
        )
