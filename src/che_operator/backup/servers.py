"""
Builds the backup server selected by a backup or restore CR.
"""
from ..errors import BackupServerConfigError
from .common import BackupServer
from .config import AWSS3, INTERNAL, REST, SFTP, VARIANTS, BackupServerConfig
from .rest import InternalRestServer, RestServer
from .s3 import AwsS3Server
from .sftp import SftpServer

SERVER_CLASSES = {
    INTERNAL: InternalRestServer,
    REST: RestServer,
    SFTP: SftpServer,
    AWSS3: AwsS3Server,
}


def new_backup_server(config: BackupServerConfig, server_type: str = "") -> BackupServer:
    """
    Picks the variant to use.

    Without ``server_type`` exactly one variant must be configured. With it,
    only that variant is looked at and the others are ignored.

    Raises:
        BackupServerConfigError: No usable variant.
    """
    if server_type:
        if server_type not in VARIANTS:
            raise BackupServerConfigError(f"unrecognized backup server type '{server_type}'")
        variant_config = config.get(server_type)
        if variant_config is None or not variant_config.is_configured():
            raise BackupServerConfigError(f"{server_type} backup server is not configured")
        return SERVER_CLASSES[server_type](variant_config)

    configured = config.configured_variants()
    if not configured:
        raise BackupServerConfigError("at least one backup server should be configured")
    if len(configured) > 1:
        raise BackupServerConfigError(
            f"{len(configured)} backup servers configured, please select which one to use"
        )
    variant = configured[0]
    return SERVER_CLASSES[variant](config.get(variant))
