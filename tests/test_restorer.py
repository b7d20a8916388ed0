from types import SimpleNamespace
from unittest.mock import patch

import pytest
import yaml

from che_operator.backup.restorer import (
    BackupDataRestorer,
    RestoreProgress,
    adapt_che_cr,
    restore_database_script,
)
from che_operator.crds.exec import ExecResult
from che_operator.errors import UnrecoverableError
from tests.conftest import TEST_NAMESPACE, api_exception, item_list, named

BACKUP_CR = {
    "apiVersion": "org.eclipse.che/v1",
    "kind": "CheCluster",
    "metadata": {"name": "eclipse-che", "namespace": "old-che", "resourceVersion": "12"},
    "spec": {
        "server": {"cheHost": "che-old-che.apps.example.com"},
        "auth": {"identityProviderURL": "https://keycloak-old-che.apps.example.com"},
    },
    "status": {"chePhase": "Active"},
}

READY_POSTGRES = {
    "metadata": {"name": "postgres-abc"},
    "status": {"phase": "Running", "conditions": [{"type": "Ready", "status": "True"}]},
}


def write_backup(data_dir, databases=("dbche",)):
    data_dir.mkdir()
    (data_dir / "che-cr.yaml").write_text(yaml.safe_dump(BACKUP_CR))
    (data_dir / "backup-data.txt").write_text(yaml.safe_dump({"namespace": "old-che", "cheVersion": "7.42.0"}))
    (data_dir / "db").mkdir()
    for db in databases:
        (data_dir / "db" / f"{db}.pgdump").write_bytes(b"dump-" + db.encode())
    (data_dir / "configmaps").mkdir()
    (data_dir / "configmaps" / "custom-certs.yaml").write_text(
        yaml.safe_dump({"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "custom-certs"}})
    )
    (data_dir / "secrets").mkdir()
    (data_dir / "secrets" / "che-postgres-secret.yaml").write_text(
        yaml.safe_dump({"apiVersion": "v1", "kind": "Secret", "metadata": {"name": "che-postgres-secret"}})
    )
    return str(data_dir)


@pytest.fixture
def cluster(mock_k8s_api, core_v1, apps_v1):
    """Empty namespace except for the operator; the database pod is ready."""
    mock_k8s_api.list_namespaced_custom_object.return_value = {"items": []}
    apps_v1.list_namespaced_deployment.return_value = item_list([])

    def list_pods(namespace, label_selector):
        if "component=postgres" in label_selector:
            return item_list([READY_POSTGRES])
        return item_list([named("che-operator-5d4f")])

    core_v1.list_namespaced_pod.side_effect = list_pods
    return mock_k8s_api, core_v1, apps_v1


def make_restorer(cluster, progress=None):
    api, core_v1, apps_v1 = cluster
    return BackupDataRestorer(
        TEST_NAMESPACE,
        progress or RestoreProgress(),
        core_v1=core_v1,
        apps_v1=apps_v1,
        custom_objects_api=api,
        cfg=SimpleNamespace(exec_timeout=60),
    )


def test_adapt_che_cr_resets_generated_values():
    adapted = adapt_che_cr(yaml.safe_load(yaml.safe_dump(BACKUP_CR)), TEST_NAMESPACE, "old-che")
    assert "status" not in adapted
    assert adapted["metadata"] == {"name": "eclipse-che", "namespace": TEST_NAMESPACE}
    assert adapted["spec"]["server"]["cheHost"] == ""
    assert adapted["spec"]["auth"]["identityProviderURL"] == ""


def test_adapt_che_cr_keeps_custom_values():
    body = yaml.safe_load(yaml.safe_dump(BACKUP_CR))
    body["spec"]["server"]["cheHost"] = "che.example.com"
    body["spec"]["auth"]["externalIdentityProvider"] = True
    adapted = adapt_che_cr(body, TEST_NAMESPACE, "old-che")
    assert adapted["spec"]["server"]["cheHost"] == "che.example.com"
    assert adapted["spec"]["auth"]["identityProviderURL"] == "https://keycloak-old-che.apps.example.com"


def test_restore_database_script_reads_exact_length():
    script = restore_database_script("dbche", 1234)
    assert "head -c 1234" in script
    assert 'dropdb --if-exists "$DB_NAME"' in script
    assert "pg_restore --create -d postgres" in script


@pytest.mark.asyncio
async def test_restore_runs_every_step(cluster, tmp_path, inline_threads):
    api, core_v1, apps_v1 = cluster
    apps_v1.list_namespaced_deployment.return_value = item_list([named("che"), named("che-operator")])
    core_v1.create_namespaced_secret.side_effect = [api_exception(409), None]
    data_dir = write_backup(tmp_path / "restore")
    restorer = make_restorer(cluster)

    with patch(
        "che_operator.backup.restorer.exec_in_pod", return_value=ExecResult("", "", 0)
    ) as mock_exec:
        assert await restorer.restore(data_dir) is True

    apps_v1.delete_namespaced_deployment.assert_called_once_with(name="che", namespace=TEST_NAMESPACE)
    core_v1.delete_collection_namespaced_config_map.assert_called_once()
    core_v1.create_namespaced_config_map.assert_called_once()
    core_v1.delete_namespaced_secret.assert_called_once_with(name="che-postgres-secret", namespace=TEST_NAMESPACE)
    assert core_v1.create_namespaced_secret.call_count == 2

    body = api.create_namespaced_custom_object.call_args.kwargs["body"]
    assert body["metadata"]["namespace"] == TEST_NAMESPACE
    assert body["spec"]["server"]["cheHost"] == ""

    mock_exec.assert_called_once()
    assert mock_exec.call_args.kwargs["stdin"] == "ZHVtcC1kYmNoZQ=="
    assert core_v1.delete_collection_namespaced_pod.call_count == 2
    assert restorer.progress.done
    assert restorer.progress.restored_databases == {"dbche"}


@pytest.mark.asyncio
async def test_restore_waits_for_checluster_deletion(cluster, tmp_path, inline_threads):
    api, core_v1, _ = cluster
    api.list_namespaced_custom_object.return_value = {
        "items": [{"metadata": {"name": "eclipse-che", "namespace": TEST_NAMESPACE}, "spec": {}}]
    }
    restorer = make_restorer(cluster)

    assert await restorer.restore(write_backup(tmp_path / "restore")) is False
    api.delete_namespaced_custom_object.assert_called_once()
    assert not restorer.progress.che_cr_deleted
    core_v1.delete_collection_namespaced_config_map.assert_not_called()


@pytest.mark.asyncio
async def test_restore_waits_for_che_pods(cluster, tmp_path, inline_threads):
    _, core_v1, _ = cluster
    core_v1.list_namespaced_pod.side_effect = None
    core_v1.list_namespaced_pod.return_value = item_list([named("che-7c9f")])
    restorer = make_restorer(cluster)

    assert await restorer.restore(write_backup(tmp_path / "restore")) is False
    assert restorer.progress.che_cr_deleted
    assert not restorer.progress.deployments_deleted


@pytest.mark.asyncio
async def test_restore_resumes_after_database_pod_is_ready(cluster, tmp_path, inline_threads):
    api, core_v1, _ = cluster
    starting = {"metadata": {"name": "postgres-abc"}, "status": {"phase": "Running", "conditions": []}}
    core_v1.list_namespaced_pod.side_effect = lambda namespace, label_selector: item_list(
        [starting] if "component=postgres" in label_selector else []
    )
    data_dir = write_backup(tmp_path / "restore")
    progress = RestoreProgress()

    with patch("che_operator.backup.restorer.exec_in_pod", return_value=ExecResult("", "", 0)) as mock_exec:
        assert await make_restorer(cluster, progress).restore(data_dir) is False
        assert progress.che_cr_restored
        mock_exec.assert_not_called()

        starting["status"]["conditions"] = [{"type": "Ready", "status": "True"}]
        assert await make_restorer(cluster, progress).restore(data_dir) is True

    api.create_namespaced_custom_object.assert_called_once()
    mock_exec.assert_called_once()


@pytest.mark.asyncio
async def test_restore_skips_external_database(cluster, tmp_path, inline_threads):
    data_dir = write_backup(tmp_path / "restore")
    body = yaml.safe_load((tmp_path / "restore" / "che-cr.yaml").read_text())
    body["spec"]["database"] = {"externalDb": True}
    (tmp_path / "restore" / "che-cr.yaml").write_text(yaml.safe_dump(body))

    with patch("che_operator.backup.restorer.exec_in_pod") as mock_exec:
        assert await make_restorer(cluster).restore(data_dir) is True
    mock_exec.assert_not_called()


@pytest.mark.asyncio
async def test_restore_database_failure_is_fatal(cluster, tmp_path, inline_threads):
    data_dir = write_backup(tmp_path / "restore")
    failed = ExecResult("", "pg_restore: error: could not execute query", 1)
    with patch("che_operator.backup.restorer.exec_in_pod", return_value=failed):
        with pytest.raises(UnrecoverableError, match="failed to restore database dbche"):
            await make_restorer(cluster).restore(data_dir)


@pytest.mark.asyncio
async def test_restore_requires_che_cr(cluster, tmp_path, inline_threads):
    (tmp_path / "restore").mkdir()
    with pytest.raises(UnrecoverableError, match="che-cr.yaml not found"):
        await make_restorer(cluster).restore(str(tmp_path / "restore"))
