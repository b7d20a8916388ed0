import asyncio
import logging
from unittest.mock import MagicMock, patch

import kopf
import pytest

from che_operator.errors import StartupError
from che_operator.operator.config import DEFAULT_TEMPLATES_PATH
from che_operator.operator.operator import on_startup
from che_operator.operator.platform.infrastructure import Infrastructure, detect_infrastructure
from che_operator.operator.platform.templates import TemplateRegistry
from che_operator.operator.startup import ReadyOperator, init_operator, missing_crds
from che_operator.utils.kube import KubernetesConfigurationError
from tests.conftest import api_exception, run_inline

STARTUP = "che_operator.operator.startup"


def api_groups(*names):
    groups = []
    for name in names:
        group = MagicMock()
        group.name = name
        groups.append(group)
    apis_api = MagicMock()
    apis_api.get_api_versions.return_value.groups = groups
    return apis_api


def test_detect_infrastructure():
    assert detect_infrastructure(api_groups("apps", "route.openshift.io")) is Infrastructure.EXTENDED
    assert detect_infrastructure(api_groups("apps", "networking.k8s.io")) is Infrastructure.BASE
    assert Infrastructure.EXTENDED.is_extended
    assert not Infrastructure.BASE.is_extended


def test_missing_crds():
    extensions_api = MagicMock()
    extensions_api.read_custom_resource_definition.side_effect = [None, api_exception(404)]
    assert missing_crds(extensions_api, ["a", "b"]) == ["b"]


def test_shipped_templates_load():
    registry = TemplateRegistry.load(DEFAULT_TEMPLATES_PATH)
    devworkspace = registry.group("devworkspace")
    assert devworkspace
    kinds = {t.kind for t in devworkspace}
    assert "Deployment" in kinds
    namespaced = next(t for t in devworkspace if t.kind == "Namespace")
    assert namespaced.render("custom-ns")["metadata"]["name"] == "custom-ns"


def test_missing_template_directory(tmp_path):
    assert len(TemplateRegistry.load(str(tmp_path / "missing"))) == 0


def test_init_operator_ready(tmp_path):
    cfg = MagicMock(templates_path=str(tmp_path))
    with patch(f"{STARTUP}.configure_kube_client"), patch(f"{STARTUP}.client") as mock_client, patch(
        f"{STARTUP}.missing_crds", return_value=[]
    ), patch(f"{STARTUP}.detect_infrastructure", return_value=Infrastructure.BASE):
        mock_client.ApiException = Exception
        result = init_operator(cfg, logging.getLogger("test"))
    assert isinstance(result, ReadyOperator)
    assert result.infrastructure is Infrastructure.BASE


def test_init_operator_without_kube_config():
    with patch(f"{STARTUP}.configure_kube_client", side_effect=KubernetesConfigurationError("no config")):
        result = init_operator(MagicMock(), logging.getLogger("test"))
    assert isinstance(result, StartupError)
    assert str(result) == "no config"


def test_init_operator_missing_crds():
    with patch(f"{STARTUP}.configure_kube_client"), patch(f"{STARTUP}.client.ApiextensionsV1Api"), patch(
        f"{STARTUP}.missing_crds", return_value=["checlusterbackups.org.eclipse.che"]
    ):
        result = init_operator(MagicMock(), logging.getLogger("test"))
    assert isinstance(result, StartupError)
    assert "checlusterbackups.org.eclipse.che" in str(result)


@pytest.mark.asyncio
async def test_on_startup_shares_state(monkeypatch):
    monkeypatch.setattr(asyncio, "to_thread", run_inline)
    settings = kopf.OperatorSettings()
    memo = kopf.Memo()
    ready = ReadyOperator(infrastructure=Infrastructure.EXTENDED, templates=TemplateRegistry(tuple()))
    with patch("che_operator.operator.operator.init_operator", return_value=ready):
        await on_startup(settings=settings, memo=memo, logger=logging.getLogger("test"))

    assert memo["ready"] is ready
    assert isinstance(memo["backup_lock"], asyncio.Lock)
    assert isinstance(memo["restore_lock"], asyncio.Lock)
    assert settings.posting.enabled is False
    assert settings.batching.worker_limit == 1


@pytest.mark.asyncio
async def test_on_startup_failure_stops_operator(monkeypatch):
    monkeypatch.setattr(asyncio, "to_thread", run_inline)
    with patch("che_operator.operator.operator.init_operator", return_value=StartupError("Missing CRDs")):
        with pytest.raises(kopf.PermanentError, match="Missing CRDs"):
            await on_startup(settings=kopf.OperatorSettings(), memo=kopf.Memo(), logger=logging.getLogger("test"))
