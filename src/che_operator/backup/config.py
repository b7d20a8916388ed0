"""
Backup server configuration as found in ``spec.backupServerConfig``.

The configuration is a tagged union: each variant is a separate optional
field and ``variant()`` names the one in use.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

INTERNAL = "internal"
REST = "rest"
SFTP = "sftp"
AWSS3 = "awss3"

VARIANTS = (INTERNAL, REST, SFTP, AWSS3)


def _port(value: Any) -> str:
    if value in (None, "", 0):
        return ""
    return str(value)


@dataclass
class RepoPassword:
    """Restic repository password, inline or in a secret."""

    repo_password: str = ""
    secret_ref: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepoPassword":
        return cls(
            repo_password=data.get("repoPassword") or "",
            secret_ref=data.get("repositoryPasswordSecretRef") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        body = {}
        if self.repo_password:
            body["repoPassword"] = self.repo_password
        if self.secret_ref:
            body["repositoryPasswordSecretRef"] = self.secret_ref
        return body

    def is_configured(self) -> bool:
        return bool(self.repo_password or self.secret_ref)


@dataclass
class InternalServerConfig:
    """REST server deployed by the operator next to the installation."""

    namespace: str = ""
    repo_password: RepoPassword = field(default_factory=RepoPassword)

    def is_configured(self) -> bool:
        return bool(self.namespace)


@dataclass
class RestServerConfig:
    protocol: str = ""
    hostname: str = ""
    port: str = ""
    repository_path: str = ""
    credentials_secret_ref: str = ""
    repo_password: RepoPassword = field(default_factory=RepoPassword)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RestServerConfig":
        return cls(
            protocol=data.get("protocol") or "",
            hostname=data.get("hostname") or "",
            port=_port(data.get("port")),
            repository_path=data.get("repositoryPath") or "",
            credentials_secret_ref=data.get("credentialsSecretRef") or "",
            repo_password=RepoPassword.from_dict(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "protocol": self.protocol,
            "hostname": self.hostname,
            "repositoryPath": self.repository_path,
        }
        if self.port:
            body["port"] = int(self.port)
        if self.credentials_secret_ref:
            body["credentialsSecretRef"] = self.credentials_secret_ref
        body.update(self.repo_password.to_dict())
        return body

    def is_configured(self) -> bool:
        return any(
            (
                self.protocol,
                self.hostname,
                self.port,
                self.repository_path,
                self.credentials_secret_ref,
                self.repo_password.is_configured(),
            )
        )


@dataclass
class SftpServerConfig:
    username: str = ""
    hostname: str = ""
    port: str = ""
    repository_path: str = ""
    ssh_key_secret_ref: str = ""
    repo_password: RepoPassword = field(default_factory=RepoPassword)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SftpServerConfig":
        return cls(
            username=data.get("username") or "",
            hostname=data.get("hostname") or "",
            port=_port(data.get("port")),
            repository_path=data.get("repositoryPath") or data.get("repo") or "",
            ssh_key_secret_ref=data.get("sshKeySecretRef") or "",
            repo_password=RepoPassword.from_dict(data),
        )

    def is_configured(self) -> bool:
        return any(
            (
                self.username,
                self.hostname,
                self.port,
                self.repository_path,
                self.ssh_key_secret_ref,
                self.repo_password.is_configured(),
            )
        )


@dataclass
class AwsS3ServerConfig:
    protocol: str = ""
    hostname: str = ""
    port: str = ""
    repository_path: str = ""
    aws_access_key_secret_ref: str = ""
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    repo_password: RepoPassword = field(default_factory=RepoPassword)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AwsS3ServerConfig":
        return cls(
            protocol=data.get("protocol") or "",
            hostname=data.get("hostname") or "",
            port=_port(data.get("port")),
            repository_path=data.get("repositoryPath") or "",
            aws_access_key_secret_ref=data.get("awsAccessKeySecretRef") or "",
            aws_access_key_id=data.get("awsAccessKeyId") or "",
            aws_secret_access_key=data.get("awsSecretAccessKey") or "",
            repo_password=RepoPassword.from_dict(data),
        )

    def is_configured(self) -> bool:
        return any(
            (
                self.protocol,
                self.hostname,
                self.port,
                self.repository_path,
                self.aws_access_key_secret_ref,
                self.aws_access_key_id,
                self.aws_secret_access_key,
                self.repo_password.is_configured(),
            )
        )


@dataclass
class BackupServerConfig:
    internal: Optional[InternalServerConfig] = None
    rest: Optional[RestServerConfig] = None
    sftp: Optional[SftpServerConfig] = None
    awss3: Optional[AwsS3ServerConfig] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BackupServerConfig":
        data = data or {}
        return cls(
            rest=RestServerConfig.from_dict(data["rest"]) if data.get("rest") else None,
            sftp=SftpServerConfig.from_dict(data["sftp"]) if data.get("sftp") else None,
            awss3=AwsS3ServerConfig.from_dict(data["awss3"]) if data.get("awss3") else None,
        )

    def get(self, variant: str) -> Any:
        return getattr(self, variant) if variant in VARIANTS else None

    def configured_variants(self) -> List[str]:
        return [v for v in VARIANTS if self.get(v) is not None and self.get(v).is_configured()]

    def variant(self) -> str:
        """The single configured variant, or an empty string when not exactly one."""
        configured = self.configured_variants()
        return configured[0] if len(configured) == 1 else ""
