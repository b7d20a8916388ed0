import base64
import os
import stat
from unittest.mock import MagicMock, patch

import pytest
import yaml

from che_operator.backup.collector import (
    BackupDataCollector,
    apps_domain,
    clear_metadata,
    dump_databases_script,
)
from che_operator.crds.exec import ExecResult
from che_operator.errors import TransientError
from che_operator.operator.platform.infrastructure import Infrastructure
from tests.conftest import TEST_NAMESPACE, api_exception, item_list, make_checluster

POSTGRES_POD = {"metadata": {"name": "postgres-abc"}, "status": {"phase": "Running"}}


@pytest.fixture
def cfg():
    cfg = MagicMock()
    cfg.databases_for_flavor.return_value = ["dbche", "keycloak"]
    cfg.exec_timeout = 60
    return cfg


@pytest.fixture
def checluster(mock_k8s_api):
    return make_checluster(
        mock_k8s_api,
        spec={
            "server": {"cheHost": "che-eclipse-che.apps.example.com"},
            "database": {"chePostgresSecret": "che-postgres-secret"},
            "auth": {"identityProviderSecret": "che-identity-secret"},
        },
        status={"cheVersion": "7.42.0", "chePhase": "Active"},
    )


def exec_results(*dumps: bytes):
    results = [ExecResult(stdout="", stderr="", returncode=0)]
    results += [ExecResult(stdout=base64.b64encode(d).decode(), stderr="", returncode=0) for d in dumps]
    return results


def test_clear_metadata_drops_server_fields():
    obj = {
        "metadata": {
            "name": "cm",
            "namespace": "old",
            "uid": "1",
            "resourceVersion": "5",
            "ownerReferences": [{}],
            "annotations": {
                "kopf.zalando.org/last-handled-configuration": "{}",
                "keep": "me",
            },
        }
    }
    assert clear_metadata(obj)["metadata"] == {"name": "cm", "annotations": {"keep": "me"}}


def test_dump_script_dumps_every_database():
    script = dump_databases_script(["dbche", "keycloak"])
    assert "for db in dbche keycloak" in script
    assert "pg_dump -Fc" in script


def test_apps_domain(checluster):
    assert apps_domain(checluster, Infrastructure.EXTENDED) == "apps.example.com"
    checluster.spec["k8s"] = {"ingressDomain": "192.168.49.2.nip.io"}
    assert apps_domain(checluster, Infrastructure.BASE) == "192.168.49.2.nip.io"


@pytest.mark.asyncio
async def test_collect_writes_backup_layout(checluster, core_v1, cfg, tmp_path, inline_threads):
    core_v1.list_namespaced_pod.return_value = item_list([POSTGRES_POD])
    core_v1.list_namespaced_config_map.return_value = item_list(
        [{"metadata": {"name": "custom-certs", "namespace": TEST_NAMESPACE, "uid": "x"}, "data": {"ca.crt": "..."}}]
    )
    core_v1.read_namespaced_secret.side_effect = lambda name, namespace: {
        "metadata": {"name": name, "namespace": namespace},
        "data": {"password": "cGFzcw=="},
    }

    dest = tmp_path / "backup"
    collector = BackupDataCollector(checluster, Infrastructure.EXTENDED, core_v1=core_v1, cfg=cfg)
    with patch("che_operator.backup.collector.exec_in_pod", side_effect=exec_results(b"che-dump", b"kc-dump")) as mock_exec:
        await collector.collect(str(dest))

    assert (dest / "db" / "dbche.pgdump").read_bytes() == b"che-dump"
    assert (dest / "db" / "keycloak.pgdump").read_bytes() == b"kc-dump"
    assert stat.S_IMODE(os.stat(dest / "db" / "dbche.pgdump").st_mode) == 0o600
    assert mock_exec.call_count == 3
    assert mock_exec.call_args.kwargs["timeout"] == 60

    che_cr = yaml.safe_load((dest / "che-cr.yaml").read_text())
    assert che_cr["kind"] == "CheCluster"
    assert "namespace" not in che_cr["metadata"]
    assert "resourceVersion" not in che_cr["metadata"]

    cm = yaml.safe_load((dest / "configmaps" / "custom-certs.yaml").read_text())
    assert cm["metadata"] == {"name": "custom-certs"}
    assert sorted(os.listdir(dest / "secrets")) == ["che-identity-secret.yaml", "che-postgres-secret.yaml"]

    metadata = yaml.safe_load((dest / "backup-data.txt").read_text())
    assert metadata["metadataFileVersion"] == "v1"
    assert metadata["cheVersion"] == "7.42.0"
    assert metadata["infrastructure"] == "OpenShift"
    assert metadata["appsDomain"] == "apps.example.com"
    assert metadata["namespace"] == TEST_NAMESPACE


@pytest.mark.asyncio
async def test_collect_clears_previous_data(checluster, core_v1, cfg, tmp_path, inline_threads):
    checluster.spec["database"] = {"externalDb": True}
    core_v1.read_namespaced_secret.side_effect = api_exception(404)
    core_v1.list_namespaced_config_map.return_value = item_list([])
    dest = tmp_path / "backup"
    dest.mkdir()
    (dest / "stale.txt").write_text("old")

    with patch("che_operator.backup.collector.exec_in_pod") as mock_exec:
        await BackupDataCollector(checluster, Infrastructure.BASE, core_v1=core_v1, cfg=cfg).collect(str(dest))

    mock_exec.assert_not_called()
    assert not (dest / "stale.txt").exists()
    assert os.listdir(dest / "db") == []


@pytest.mark.asyncio
async def test_collect_uses_custom_che_database(checluster, core_v1, cfg, tmp_path, inline_threads):
    checluster.spec["database"]["chePostgresDb"] = "mydb"
    core_v1.list_namespaced_pod.return_value = item_list([POSTGRES_POD])
    core_v1.list_namespaced_config_map.return_value = item_list([])
    core_v1.read_namespaced_secret.side_effect = api_exception(404)

    dest = tmp_path / "backup"
    with patch("che_operator.backup.collector.exec_in_pod", side_effect=exec_results(b"a", b"b")) as mock_exec:
        await BackupDataCollector(checluster, Infrastructure.BASE, core_v1=core_v1, cfg=cfg).collect(str(dest))

    dump_command = mock_exec.call_args_list[0].args[3]
    assert "for db in mydb keycloak" in dump_command[2]
    assert sorted(os.listdir(dest / "db")) == ["keycloak.pgdump", "mydb.pgdump"]
    assert os.listdir(dest / "secrets") == []


@pytest.mark.asyncio
async def test_collect_waits_for_database_pod(checluster, core_v1, cfg, tmp_path, inline_threads):
    core_v1.list_namespaced_pod.return_value = item_list([])
    with pytest.raises(TransientError, match="Database pod is not running"):
        await BackupDataCollector(checluster, Infrastructure.BASE, core_v1=core_v1, cfg=cfg).collect(
            str(tmp_path / "backup")
        )


@pytest.mark.asyncio
async def test_collect_dump_failure_is_transient(checluster, core_v1, cfg, tmp_path, inline_threads):
    core_v1.list_namespaced_pod.return_value = item_list([POSTGRES_POD])
    failed = ExecResult(stdout="", stderr="pg_dump: connection refused", returncode=1)
    with patch("che_operator.backup.collector.exec_in_pod", return_value=failed):
        with pytest.raises(TransientError, match="connection refused"):
            await BackupDataCollector(checluster, Infrastructure.BASE, core_v1=core_v1, cfg=cfg).collect(
                str(tmp_path / "backup")
            )
