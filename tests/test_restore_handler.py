import asyncio
from unittest.mock import AsyncMock, patch

import kopf
import pytest

from che_operator.backup.restorer import RestoreProgress
from che_operator.crds.restore import CheClusterRestore
from che_operator.errors import BackupServerConfigError, ResticError
from che_operator.operator.checlusterrestore.handler import (
    copy_backup_server_configuration,
    reconcile_restore,
)
from che_operator.operator.checlusterrestore.state import (
    RestoreEvent,
    RestoreStage,
    next_stage,
    parse_stage,
)
from tests.conftest import TEST_NAMESPACE
from tests.helpers import FakeCustomObjects

HANDLER = "che_operator.operator.checlusterrestore.handler"

BACKUP_SERVER_CONFIG = {"rest": {"hostname": "backup.example.com", "repoPassword": "pw"}}


def restore_body(spec=None, status=None):
    return {
        "apiVersion": "org.eclipse.che/v1",
        "kind": "CheClusterRestore",
        "metadata": {"name": "restore", "namespace": TEST_NAMESPACE},
        "spec": spec if spec is not None else {"triggerNow": True, "backupServerConfig": BACKUP_SERVER_CONFIG},
        "status": status or {},
    }


def backup_body(name="backup"):
    return {
        "apiVersion": "org.eclipse.che/v1",
        "kind": "CheClusterBackup",
        "metadata": {"name": name, "namespace": TEST_NAMESPACE},
        "spec": {"backupServerConfig": BACKUP_SERVER_CONFIG, "serverType": "rest"},
    }


@pytest.fixture
def memo():
    memo = kopf.Memo()
    memo["restore_lock"] = asyncio.Lock()
    return memo


@pytest.fixture
def data_dir(tmp_path):
    with patch(f"{HANDLER}.operator_config") as cfg:
        cfg.restore_data_dir = str(tmp_path / "restore-data")
        yield cfg.restore_data_dir


def stored_restore(store):
    return store.body("checlusterrestores", TEST_NAMESPACE, "restore")


@pytest.mark.parametrize(
    "stage, event, expected",
    [
        (RestoreStage.PENDING, RestoreEvent.TRIGGER, RestoreStage.DOWNLOADING),
        (RestoreStage.COMPLETED, RestoreEvent.TRIGGER, RestoreStage.DOWNLOADING),
        (RestoreStage.FAILED, RestoreEvent.TRIGGER, RestoreStage.DOWNLOADING),
        (RestoreStage.RESTORING, RestoreEvent.TRIGGER, RestoreStage.RESTORING),
        (RestoreStage.DOWNLOADING, RestoreEvent.DOWNLOADED, RestoreStage.RESTORING),
        (RestoreStage.RESTORING, RestoreEvent.RESTORED, RestoreStage.COMPLETED),
        (RestoreStage.DOWNLOADING, RestoreEvent.FATAL, RestoreStage.FAILED),
        (RestoreStage.RESTORING, RestoreEvent.FATAL, RestoreStage.FAILED),
        (RestoreStage.PENDING, RestoreEvent.RESTORED, RestoreStage.PENDING),
    ],
)
def test_restore_stage_transitions(stage, event, expected):
    assert next_stage(stage, event) is expected


def test_parse_stage():
    assert parse_stage("Restoring") is RestoreStage.RESTORING
    assert parse_stage("bogus") is RestoreStage.PENDING
    assert parse_stage("") is RestoreStage.PENDING
    assert RestoreStage.PENDING.value == "Pending"


@pytest.mark.asyncio
async def test_copy_backup_server_configuration(inline_threads):
    store = FakeCustomObjects([("checlusterrestores", restore_body()), ("checlusterbackups", backup_body())])
    restore = CheClusterRestore.from_body(restore_body(spec={"copyBackupServerConfiguration": True}), api=store.api)
    await copy_backup_server_configuration(restore, store.api)

    spec = stored_restore(store)["spec"]
    assert spec["backupServerConfig"] == BACKUP_SERVER_CONFIG
    assert spec["serverType"] == "rest"
    assert spec["copyBackupServerConfiguration"] is False


@pytest.mark.asyncio
async def test_copy_backup_server_configuration_errors(inline_threads):
    store = FakeCustomObjects([("checlusterrestores", restore_body())])
    restore = CheClusterRestore.from_body(restore_body(), api=store.api)
    with pytest.raises(BackupServerConfigError, match="backup CR not found"):
        await copy_backup_server_configuration(restore, store.api)

    store.add("checlusterbackups", backup_body("one"))
    store.add("checlusterbackups", backup_body("two"))
    with pytest.raises(BackupServerConfigError, match="but got 2 instances"):
        await copy_backup_server_configuration(restore, store.api)


@pytest.mark.asyncio
async def test_restore_completes(memo, logger, data_dir, inline_threads):
    spec = {"triggerNow": True, "backupServerConfig": BACKUP_SERVER_CONFIG, "deleteConfigurationAfterRestore": False}
    store = FakeCustomObjects([("checlusterrestores", restore_body(spec=spec))])
    with patch(f"{HANDLER}.download", new_callable=AsyncMock) as mock_download, patch(
        f"{HANDLER}.BackupDataRestorer"
    ) as mock_restorer:
        mock_restorer.return_value.restore = AsyncMock(return_value=True)
        await reconcile_restore(restore_body(), logger, memo, custom_objects_api=store.api)

    mock_download.assert_called_once()
    mock_restorer.return_value.restore.assert_called_once_with(data_dir)
    body = stored_restore(store)
    assert body["spec"]["triggerNow"] is False
    assert body["status"]["state"] == "Succeeded"
    assert body["status"]["stage"] == "Completed"
    assert body["status"]["message"].startswith("Restore successfully finished at ")
    assert memo["restore_progress"] is None


@pytest.mark.asyncio
async def test_restore_deletes_configuration_when_done(memo, logger, data_dir, inline_threads):
    spec = {"triggerNow": True, "backupServerConfig": BACKUP_SERVER_CONFIG, "deleteConfigurationAfterRestore": True}
    store = FakeCustomObjects([("checlusterrestores", restore_body(spec=spec))])
    with patch(f"{HANDLER}.download", new_callable=AsyncMock), patch(f"{HANDLER}.BackupDataRestorer") as mock_restorer:
        mock_restorer.return_value.restore = AsyncMock(return_value=True)
        await reconcile_restore(restore_body(), logger, memo, custom_objects_api=store.api)

    assert store.objects == {}


@pytest.mark.asyncio
async def test_restore_resumes_without_downloading_again(memo, logger, data_dir, inline_threads):
    store = FakeCustomObjects([("checlusterrestores", restore_body())])
    with patch(f"{HANDLER}.download", new_callable=AsyncMock) as mock_download, patch(
        f"{HANDLER}.BackupDataRestorer"
    ) as mock_restorer:
        mock_restorer.return_value.restore = AsyncMock(side_effect=[False, True])
        with pytest.raises(kopf.TemporaryError, match="Restore is in progress"):
            await reconcile_restore(restore_body(), logger, memo, custom_objects_api=store.api)

        assert stored_restore(store)["status"]["stage"] == "Restoring"
        assert stored_restore(store)["status"]["state"] == "InProgress"
        assert isinstance(memo["restore_progress"], RestoreProgress)

        await reconcile_restore(restore_body(), logger, memo, custom_objects_api=store.api)

    mock_download.assert_called_once()
    assert stored_restore(store)["status"]["state"] == "Succeeded"


@pytest.mark.asyncio
async def test_restore_without_progress_starts_over(memo, logger, data_dir, inline_threads):
    store = FakeCustomObjects(
        [("checlusterrestores", restore_body(status={"stage": "Restoring", "state": "InProgress"}))]
    )
    with patch(f"{HANDLER}.download", new_callable=AsyncMock) as mock_download, patch(
        f"{HANDLER}.BackupDataRestorer"
    ) as mock_restorer:
        mock_restorer.return_value.restore = AsyncMock(return_value=True)
        await reconcile_restore(restore_body(), logger, memo, custom_objects_api=store.api)

    mock_download.assert_called_once()


@pytest.mark.asyncio
async def test_restore_download_failure(memo, logger, data_dir, inline_threads):
    store = FakeCustomObjects([("checlusterrestores", restore_body())])
    error = ResticError("failed to download snapshot latest: no snapshot found")
    with patch(f"{HANDLER}.download", new_callable=AsyncMock, side_effect=error):
        with pytest.raises(kopf.PermanentError):
            await reconcile_restore(restore_body(), logger, memo, custom_objects_api=store.api)

    body = stored_restore(store)
    assert body["status"]["state"] == "Failed"
    assert body["status"]["stage"] == "Failed"
    assert body["status"]["message"] == "Error: failed to download snapshot latest: no snapshot found"
    assert body["spec"]["triggerNow"] is False


@pytest.mark.asyncio
async def test_restore_copy_configuration_failure(memo, logger, data_dir, inline_threads):
    spec = {"triggerNow": True, "copyBackupServerConfiguration": True}
    store = FakeCustomObjects([("checlusterrestores", restore_body(spec=spec))])
    with pytest.raises(kopf.PermanentError):
        await reconcile_restore(restore_body(), logger, memo, custom_objects_api=store.api)
    assert "backup CR not found" in stored_restore(store)["status"]["message"]


@pytest.mark.asyncio
async def test_restore_not_triggered(memo, logger, data_dir, inline_threads):
    store = FakeCustomObjects([("checlusterrestores", restore_body(spec={"triggerNow": False}))])
    with patch(f"{HANDLER}.download", new_callable=AsyncMock) as mock_download:
        await reconcile_restore(restore_body(), logger, memo, custom_objects_api=store.api)
    mock_download.assert_not_called()
