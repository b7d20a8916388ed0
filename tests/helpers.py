import copy
import logging
from typing import Any, Dict, List, Tuple
from unittest.mock import AsyncMock, MagicMock

from kubernetes import client

from che_operator.operator.checluster.context import ClusterAPI, DeployContext
from che_operator.operator.config import config as operator_config
from che_operator.operator.platform.infrastructure import Infrastructure
from che_operator.operator.platform.templates import TemplateRegistry


def merge_patch(target: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """JSON merge patch: dicts merge recursively, None removes a key."""
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            merge_patch(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


class FakeCustomObjects:
    """
    In-memory stand-in for the custom objects API.

    Objects are keyed by plural, namespace and name; every read returns a
    copy so that callers never share state with the store.
    """

    def __init__(self, objects: List[Tuple[str, Dict[str, Any]]] = ()):
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.api = MagicMock(spec=client.CustomObjectsApi)
        self.api.get_namespaced_custom_object.side_effect = self.get
        self.api.list_namespaced_custom_object.side_effect = self.list
        self.api.create_namespaced_custom_object.side_effect = self.create
        self.api.patch_namespaced_custom_object.side_effect = self.patch
        self.api.patch_namespaced_custom_object_status.side_effect = self.patch_status
        self.api.delete_namespaced_custom_object.side_effect = self.delete
        for plural, body in objects:
            self.add(plural, body)

    def add(self, plural: str, body: Dict[str, Any]) -> None:
        metadata = body["metadata"]
        self.objects[(plural, metadata["namespace"], metadata["name"])] = copy.deepcopy(body)

    def body(self, plural: str, namespace: str, name: str) -> Dict[str, Any]:
        return self.objects[(plural, namespace, name)]

    def _find(self, plural: str, namespace: str, name: str) -> Dict[str, Any]:
        key = (plural, namespace, name)
        if key not in self.objects:
            raise client.ApiException(status=404, reason="Not Found")
        return self.objects[key]

    def get(self, group, version, namespace, plural, name):
        return copy.deepcopy(self._find(plural, namespace, name))

    def list(self, group, version, namespace, plural):
        items = [
            copy.deepcopy(body)
            for (p, ns, _), body in self.objects.items()
            if p == plural and ns == namespace
        ]
        return {"items": items}

    def create(self, group, version, namespace, plural, body):
        if (plural, namespace, body["metadata"]["name"]) in self.objects:
            raise client.ApiException(status=409, reason="Conflict")
        body = copy.deepcopy(body)
        body["metadata"]["namespace"] = namespace
        self.add(plural, body)
        return copy.deepcopy(body)

    def patch(self, group, version, namespace, plural, name, body):
        stored = self._find(plural, namespace, name)
        merge_patch(stored, {k: v for k, v in body.items() if k != "status"})
        return copy.deepcopy(stored)

    def patch_status(self, group, version, namespace, plural, name, body):
        stored = self._find(plural, namespace, name)
        merge_patch(stored.setdefault("status", {}), body.get("status") or {})
        return copy.deepcopy(stored)

    def delete(self, group, version, namespace, plural, name, body=None):
        self._find(plural, namespace, name)
        del self.objects[(plural, namespace, name)]


def make_context(checluster, custom_objects=None, infrastructure=None, logger=None):
    """DeployContext over mocked clients with an AsyncMock syncer."""
    syncer = MagicMock()
    syncer.sync = AsyncMock(return_value=True)
    syncer.create_if_not_exists = AsyncMock(return_value=True)
    syncer.get = AsyncMock(return_value=None)
    syncer.list = AsyncMock(return_value=[])
    syncer.delete = AsyncMock(return_value=True)
    return DeployContext(
        checluster=checluster,
        cluster_api=ClusterAPI(
            infrastructure=infrastructure or Infrastructure.BASE,
            core_v1=MagicMock(spec=client.CoreV1Api),
            apps_v1=MagicMock(spec=client.AppsV1Api),
            rbac_v1=MagicMock(spec=client.RbacAuthorizationV1Api),
            custom_objects=custom_objects or MagicMock(spec=client.CustomObjectsApi),
        ),
        syncer=syncer,
        templates=TemplateRegistry(tuple()),
        config=operator_config,
        logger=logger or logging.getLogger("che-operator-tests"),
    )
