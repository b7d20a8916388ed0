import asyncio
import logging
import shutil
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import kopf
from kubernetes import client

from ...backup.collector import BackupDataCollector
from ...backup.common import BackupServer
from ...backup.config import INTERNAL, BackupServerConfig
from ...backup.internal import (
    internal_rest_config,
    internal_server_config,
    internal_server_ready,
    provision_internal_server,
)
from ...backup.servers import new_backup_server
from ...crds.backup import CheClusterBackup
from ...crds.checluster import CheCluster
from ...crds.const import CRD_GROUP, CRD_PLURAL_CHECLUSTERBACKUP, CRD_VERSION
from ...errors import ResticError, TransientError, UnrecoverableError
from ..config import config as operator_config, watched
from ..startup import ReadyOperator
from ..sync import Syncer
from .state import BackupEvent, BackupState, next_state, parse_state

TRIGGER_RESET_ATTEMPTS = 5
TRIGGER_RESET_DELAY = 5
INTERNAL_SERVER_DELAY = 5
BUSY_DELAY = 10


def now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def find_checluster(namespace: str, api: client.CustomObjectsApi) -> CheCluster:
    checlusters = await asyncio.to_thread(CheCluster.list, namespace, api)
    if not checlusters:
        raise UnrecoverableError(f"CheCluster not found in namespace '{namespace}'")
    if len(checlusters) > 1:
        raise UnrecoverableError(
            f"expected an instance of CheCluster, but got {len(checlusters)} instances"
        )
    return checlusters[0]


async def update_status(backup: CheClusterBackup, **fields: Any) -> None:
    await asyncio.to_thread(backup.patch_status, fields)


async def reset_trigger(backup: CheClusterBackup, logger: logging.Logger) -> None:
    """Sets ``spec.triggerNow`` back to false, retrying conflicts a few times."""
    for attempt in range(1, TRIGGER_RESET_ATTEMPTS + 1):
        try:
            await asyncio.to_thread(backup.patch, {"spec": {"triggerNow": False}})
            return
        except client.ApiException as e:
            if attempt == TRIGGER_RESET_ATTEMPTS:
                raise
            logger.warning(f"Failed to reset triggerNow (attempt {attempt}): {e.reason}")
            await asyncio.sleep(TRIGGER_RESET_DELAY)


async def setup_internal_server(
    backup: CheClusterBackup, checluster: CheCluster, logger: logging.Logger
) -> BackupServer:
    """
    Deploys the internal REST server and points the backup CR at it.

    Raises:
        TransientError: The server is not answering yet.
    """
    namespace = backup.namespace
    syncer = Syncer(operator_config.operator_namespace, logger=logger)
    await provision_internal_server(
        syncer, namespace, checluster.flavor, operator_config.images["internal_rest_backup_server"]
    )
    if not await asyncio.to_thread(internal_server_ready, namespace):
        raise TransientError("Waiting for the internal backup server", delay=INTERNAL_SERVER_DELAY)

    # Show the server in use in the CR, other variants are dropped
    rest = internal_rest_config(namespace).to_dict()
    if backup.backup_server_config.get("rest") != rest or len(backup.backup_server_config) > 1:
        await asyncio.to_thread(
            backup.patch,
            {"spec": {"backupServerConfig": {"rest": rest, "sftp": None, "awss3": None}}},
        )
    return new_backup_server(BackupServerConfig(internal=internal_server_config(namespace)), INTERNAL)


async def run_backup(
    backup: CheClusterBackup,
    ready: ReadyOperator,
    logger: logging.Logger,
    api: client.CustomObjectsApi,
    core_v1: Optional[client.CoreV1Api] = None,
) -> Dict[str, Any]:
    """
    Takes a snapshot of the Che installation in the backup CR's namespace.

    Returns:
        Status fields describing the snapshot.
    """
    core_v1 = core_v1 or client.CoreV1Api()
    checluster = await find_checluster(backup.namespace, api)

    # Step 1: Backup server
    if backup.use_internal_backup_server:
        await update_status(backup, stage="Setting up internal backup server")
        server = await setup_internal_server(backup, checluster, logger)
    else:
        server = new_backup_server(
            BackupServerConfig.from_dict(backup.backup_server_config), backup.server_type
        )

    workdir = tempfile.mkdtemp(prefix="che-backup-")
    data_dir = operator_config.backup_data_dir
    try:
        # Step 2: Repository
        await update_status(backup, stage="Preparing backup repository")
        await asyncio.to_thread(server.prepare_configuration, core_v1, backup.namespace, workdir)
        if not await asyncio.to_thread(server.is_repository_exist):
            logger.info(f"Initializing backup repository for '{backup.name}'")
            await asyncio.to_thread(server.init_repository)
        await asyncio.to_thread(server.check_repository)

        # Step 3: Backup data
        await update_status(backup, stage="Collecting backup data")
        collector = BackupDataCollector(checluster, ready.infrastructure, core_v1=core_v1, log=logger)
        await collector.collect(data_dir)

        # Step 4: Snapshot
        await update_status(backup, stage="Sending backup snapshot")
        stat = await asyncio.to_thread(server.send_snapshot, data_dir)
    finally:
        shutil.rmtree(data_dir, ignore_errors=True)
        shutil.rmtree(workdir, ignore_errors=True)

    finished = now()
    return {
        "state": BackupState.SUCCEEDED.value,
        "stage": "Backup finished",
        "message": f"Backup successfully finished at {finished}",
        "snapshotId": stat.id,
        "lastBackupTime": finished,
        "cheVersion": checluster.status.get("cheVersion", ""),
    }


async def reconcile_backup(
    body: Dict[str, Any],
    logger: logging.Logger,
    memo: kopf.Memo,
    custom_objects_api: Optional[client.CustomObjectsApi] = None,
    core_v1: Optional[client.CoreV1Api] = None,
) -> None:
    """
    Raises:
        kopf.TemporaryError: The backup has to wait or failed transiently.
        kopf.PermanentError: The backup failed and was marked as such.
    """
    api = custom_objects_api or client.CustomObjectsApi()
    name = body["metadata"]["name"]
    namespace = body["metadata"]["namespace"]
    try:
        backup = await asyncio.to_thread(CheClusterBackup.get, name, namespace, api)
    except client.ApiException as e:
        if e.status == 404:
            return
        raise
    if not backup.trigger_now:
        return

    lock: asyncio.Lock = memo["backup_lock"]
    if lock.locked():
        raise kopf.TemporaryError("another backup is in progress", delay=BUSY_DELAY)

    async with lock:
        state = next_state(parse_state(backup.status.get("state", "")), BackupEvent.TRIGGER)
        if backup.status.get("state") != state.value:
            await update_status(
                backup,
                state=state.value,
                message=f"Backup is in progress. Start time: {now()}",
                snapshotId="",
            )
        logger.info(f"Starting backup '{name}' in namespace '{namespace}'")

        try:
            status = await run_backup(backup, memo["ready"], logger, api, core_v1=core_v1)
        except (UnrecoverableError, ResticError) as e:
            state = next_state(state, BackupEvent.FATAL)
            logger.error(f"Backup '{name}' failed: {e}")
            await update_status(backup, state=state.value, message=f"Error: {e}", snapshotId="")
            await reset_trigger(backup, logger)
            raise kopf.PermanentError(str(e)) from e
        except TransientError as e:
            raise kopf.TemporaryError(str(e), delay=e.delay) from e
        except client.ApiException as e:
            raise kopf.TemporaryError(f"Kubernetes API error {e.status}: {e.reason}") from e

        state = next_state(state, BackupEvent.SUCCESS)
        status["state"] = state.value
        await reset_trigger(backup, logger)
        await update_status(backup, **status)
        logger.info(status["message"])


@kopf.on.create(CRD_GROUP, CRD_VERSION, CRD_PLURAL_CHECLUSTERBACKUP, when=watched)
@kopf.on.update(CRD_GROUP, CRD_VERSION, CRD_PLURAL_CHECLUSTERBACKUP, field="spec", when=watched)
@kopf.on.resume(CRD_GROUP, CRD_VERSION, CRD_PLURAL_CHECLUSTERBACKUP, when=watched)
async def backup_checluster(
    body: Dict[str, Any],
    logger: logging.Logger,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    await reconcile_backup(body, logger, memo)
