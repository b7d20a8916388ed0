import asyncio
import logging
import shutil
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import kopf
from kubernetes import client

from ...backup.config import BackupServerConfig
from ...backup.restorer import BackupDataRestorer, RestoreProgress
from ...backup.servers import new_backup_server
from ...crds.backup import CheClusterBackup
from ...crds.const import CRD_GROUP, CRD_PLURAL_CHECLUSTERRESTORE, CRD_VERSION
from ...crds.restore import CheClusterRestore
from ...errors import BackupServerConfigError, ResticError, TransientError, UnrecoverableError
from ..config import config as operator_config, watched
from .state import RestoreEvent, RestoreStage, next_stage, parse_stage

BUSY_DELAY = 10
RESTORE_POLL_DELAY = 5


def now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def copy_backup_server_configuration(
    restore: CheClusterRestore, api: client.CustomObjectsApi
) -> None:
    """Copies the server configuration of the namespace's only CheClusterBackup."""
    backups = await asyncio.to_thread(CheClusterBackup.list, restore.namespace, api)
    if not backups:
        raise BackupServerConfigError("cannot copy backup servers configuration: backup CR not found")
    if len(backups) > 1:
        raise BackupServerConfigError(
            f"expected an instance of CheClusterBackup, but got {len(backups)} instances"
        )
    backup = backups[0]
    await asyncio.to_thread(
        restore.patch,
        {
            "spec": {
                "backupServerConfig": backup.backup_server_config,
                "serverType": backup.server_type or None,
                "copyBackupServerConfiguration": False,
            }
        },
    )


async def update_status(restore: CheClusterRestore, **fields: Any) -> None:
    await asyncio.to_thread(restore.patch_status, fields)


async def download(restore: CheClusterRestore, data_dir: str, core_v1: client.CoreV1Api, logger: logging.Logger) -> None:
    server = new_backup_server(BackupServerConfig.from_dict(restore.backup_server_config), restore.server_type)
    workdir = f"{data_dir}-credentials"
    try:
        await asyncio.to_thread(server.prepare_configuration, core_v1, restore.namespace, workdir)
        await asyncio.to_thread(server.check_repository)

        await asyncio.to_thread(shutil.rmtree, data_dir, True)
        if restore.snapshot_id:
            logger.info(f"Downloading snapshot {restore.snapshot_id}")
            await asyncio.to_thread(server.download_snapshot, restore.snapshot_id, data_dir)
        else:
            logger.info("Downloading the latest snapshot")
            await asyncio.to_thread(server.download_last_snapshot, data_dir)
    finally:
        shutil.rmtree(workdir, ignore_errors=True)


def _progress(memo: kopf.Memo) -> Optional[RestoreProgress]:
    return memo.get("restore_progress")


async def finish(restore: CheClusterRestore, stage: RestoreStage, data_dir: str, logger: logging.Logger) -> None:
    shutil.rmtree(data_dir, ignore_errors=True)
    await asyncio.to_thread(restore.patch, {"spec": {"triggerNow": False}})
    message = f"Restore successfully finished at {now()}"
    await update_status(restore, stage=stage.value, state="Succeeded", message=message)
    logger.info(message)
    if restore.delete_configuration_after_restore:
        logger.info(f"Deleting CheClusterRestore '{restore.name}'")
        await asyncio.to_thread(restore.delete)


async def reconcile_restore(
    body: Dict[str, Any],
    logger: logging.Logger,
    memo: kopf.Memo,
    custom_objects_api: Optional[client.CustomObjectsApi] = None,
    core_v1: Optional[client.CoreV1Api] = None,
    apps_v1: Optional[client.AppsV1Api] = None,
) -> None:
    """
    Drives a CheClusterRestore through Downloading and Restoring.

    Raises:
        kopf.TemporaryError: The restore waits for the cluster or failed transiently.
        kopf.PermanentError: The restore failed and was marked as such.
    """
    api = custom_objects_api or client.CustomObjectsApi()
    core_v1 = core_v1 or client.CoreV1Api()
    name = body["metadata"]["name"]
    namespace = body["metadata"]["namespace"]
    try:
        restore = await asyncio.to_thread(CheClusterRestore.get, name, namespace, api)
    except client.ApiException as e:
        if e.status == 404:
            return
        raise
    if not restore.trigger_now:
        return

    lock: asyncio.Lock = memo["restore_lock"]
    if lock.locked():
        raise kopf.TemporaryError("another restore is in progress", delay=BUSY_DELAY)

    data_dir = operator_config.restore_data_dir
    async with lock:
        stage = parse_stage(restore.status.get("stage", ""))
        progress = _progress(memo)
        # The downloaded data and the progress do not survive an operator restart
        if stage is RestoreStage.RESTORING and progress is None:
            stage = RestoreStage.PENDING
        stage = next_stage(stage, RestoreEvent.TRIGGER)

        try:
            if stage is RestoreStage.DOWNLOADING:
                # Step 1: Backup server configuration
                if restore.copy_backup_server_configuration:
                    await copy_backup_server_configuration(restore, api)
                await update_status(
                    restore,
                    stage=stage.value,
                    state="InProgress",
                    message=f"Restore is in progress. Start time: {now()}",
                )
                # Step 2: Snapshot
                await download(restore, data_dir, core_v1, logger)
                progress = RestoreProgress()
                memo["restore_progress"] = progress
                stage = next_stage(stage, RestoreEvent.DOWNLOADED)
                await update_status(restore, stage=stage.value)

            # Step 3: Installation
            restorer = BackupDataRestorer(
                namespace, progress, core_v1=core_v1, apps_v1=apps_v1, custom_objects_api=api, log=logger
            )
            if not await restorer.restore(data_dir):
                raise kopf.TemporaryError("Restore is in progress", delay=RESTORE_POLL_DELAY)
        except (UnrecoverableError, ResticError) as e:
            stage = next_stage(stage, RestoreEvent.FATAL)
            logger.error(f"Restore '{name}' failed: {e}")
            memo["restore_progress"] = None
            shutil.rmtree(data_dir, ignore_errors=True)
            await update_status(restore, stage=stage.value, state="Failed", message=f"Error: {e}")
            await asyncio.to_thread(restore.patch, {"spec": {"triggerNow": False}})
            raise kopf.PermanentError(str(e)) from e
        except TransientError as e:
            raise kopf.TemporaryError(str(e), delay=e.delay) from e
        except client.ApiException as e:
            raise kopf.TemporaryError(f"Kubernetes API error {e.status}: {e.reason}") from e

        stage = next_stage(stage, RestoreEvent.RESTORED)
        memo["restore_progress"] = None
        await finish(restore, stage, data_dir, logger)


@kopf.on.create(CRD_GROUP, CRD_VERSION, CRD_PLURAL_CHECLUSTERRESTORE, when=watched)
@kopf.on.update(CRD_GROUP, CRD_VERSION, CRD_PLURAL_CHECLUSTERRESTORE, field="spec", when=watched)
@kopf.on.resume(CRD_GROUP, CRD_VERSION, CRD_PLURAL_CHECLUSTERRESTORE, when=watched)
async def restore_checluster(
    body: Dict[str, Any],
    logger: logging.Logger,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    await reconcile_restore(body, logger, memo)
