"""
Per-kind knowledge used by the sync layer.

Every kind the operator manages has an entry in ``KIND_REGISTRY`` that knows
how to reach the API for that kind and, for most kinds, how to decide whether
a live object already matches the desired one. Kinds without a comparer fall
back to ``compare_metadata``, which only looks at labels, annotations and
owner references.
"""
import base64
import copy
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client

from ...crds.const import HASH_ANNOTATION, NAMESPACE_ANNOTATION

Comparer = Callable[[Dict[str, Any], Dict[str, Any]], bool]

SERVICE_ACCOUNT_MOUNT_PREFIX = "/var/run/secrets/kubernetes.io/serviceaccount"
SYNC_ANNOTATIONS = (HASH_ANNOTATION, NAMESPACE_ANNOTATION)


class Kind(str, Enum):
    CONFIG_MAP = "ConfigMap"
    SECRET = "Secret"
    SERVICE = "Service"
    DEPLOYMENT = "Deployment"
    PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"
    SERVICE_ACCOUNT = "ServiceAccount"
    ROLE = "Role"
    ROLE_BINDING = "RoleBinding"
    CLUSTER_ROLE = "ClusterRole"
    CLUSTER_ROLE_BINDING = "ClusterRoleBinding"
    INGRESS = "Ingress"
    ROUTE = "Route"
    JOB = "Job"
    POD = "Pod"
    NAMESPACE = "Namespace"
    OAUTH_CLIENT = "OAuthClient"
    CUSTOM_RESOURCE_DEFINITION = "CustomResourceDefinition"

    @classmethod
    def of(cls, obj: Dict[str, Any]) -> "Kind":
        try:
            return cls(obj["kind"])
        except (KeyError, ValueError) as e:
            raise ValueError(f"Unsupported object kind: {obj.get('kind')}") from e


class TypedObjectClient:
    """Uniform access to a typed API group, e.g. ``CoreV1Api`` + ``config_map``."""

    def __init__(self, api: Any, suffix: str, namespaced: bool = True):
        self.api = api
        self.suffix = suffix
        self.namespaced = namespaced

    def _call(self, verb: str, namespace: Optional[str], **kwargs: Any) -> Any:
        if self.namespaced:
            method = getattr(self.api, f"{verb}_namespaced_{self.suffix}")
            return method(namespace=namespace, **kwargs)
        method = getattr(self.api, f"{verb}_{self.suffix}")
        return method(**kwargs)

    def read(self, name: str, namespace: Optional[str]) -> Any:
        return self._call("read", namespace, name=name)

    def create(self, namespace: Optional[str], body: Dict[str, Any]) -> Any:
        return self._call("create", namespace, body=body)

    def replace(self, name: str, namespace: Optional[str], body: Dict[str, Any]) -> Any:
        return self._call("replace", namespace, name=name, body=body)

    def patch(self, name: str, namespace: Optional[str], body: Dict[str, Any]) -> Any:
        return self._call("patch", namespace, name=name, body=body)

    def delete(self, name: str, namespace: Optional[str]) -> Any:
        return self._call(
            "delete",
            namespace,
            name=name,
            body=client.V1DeleteOptions(propagation_policy="Background"),
        )

    def list(self, namespace: Optional[str], label_selector: str = "") -> List[Any]:
        return self._call("list", namespace, label_selector=label_selector).items


class CustomObjectClient:
    """Same surface as TypedObjectClient, backed by CustomObjectsApi."""

    def __init__(self, api: Any, group: str, version: str, plural: str, namespaced: bool = True):
        self.api = api
        self.group = group
        self.version = version
        self.plural = plural
        self.namespaced = namespaced

    def _coords(self, namespace: Optional[str]) -> Dict[str, Any]:
        coords = {"group": self.group, "version": self.version, "plural": self.plural}
        if self.namespaced:
            coords["namespace"] = namespace
        return coords

    def read(self, name: str, namespace: Optional[str]) -> Any:
        if self.namespaced:
            return self.api.get_namespaced_custom_object(name=name, **self._coords(namespace))
        return self.api.get_cluster_custom_object(name=name, **self._coords(namespace))

    def create(self, namespace: Optional[str], body: Dict[str, Any]) -> Any:
        if self.namespaced:
            return self.api.create_namespaced_custom_object(body=body, **self._coords(namespace))
        return self.api.create_cluster_custom_object(body=body, **self._coords(namespace))

    def replace(self, name: str, namespace: Optional[str], body: Dict[str, Any]) -> Any:
        if self.namespaced:
            return self.api.replace_namespaced_custom_object(
                name=name, body=body, **self._coords(namespace)
            )
        return self.api.replace_cluster_custom_object(name=name, body=body, **self._coords(namespace))

    def patch(self, name: str, namespace: Optional[str], body: Dict[str, Any]) -> Any:
        if self.namespaced:
            return self.api.patch_namespaced_custom_object(
                name=name, body=body, **self._coords(namespace)
            )
        return self.api.patch_cluster_custom_object(name=name, body=body, **self._coords(namespace))

    def delete(self, name: str, namespace: Optional[str]) -> Any:
        if self.namespaced:
            return self.api.delete_namespaced_custom_object(name=name, **self._coords(namespace))
        return self.api.delete_cluster_custom_object(name=name, **self._coords(namespace))

    def list(self, namespace: Optional[str], label_selector: str = "") -> List[Any]:
        if self.namespaced:
            result = self.api.list_namespaced_custom_object(
                label_selector=label_selector, **self._coords(namespace)
            )
        else:
            result = self.api.list_cluster_custom_object(
                label_selector=label_selector, **self._coords(namespace)
            )
        return result["items"]


def is_subset(desired: Any, actual: Any) -> bool:
    """
    True when every field set in ``desired`` has the same value in ``actual``.

    Fields only present on the live object are server defaults and are
    ignored. Lists must have the same length so that removals are detected.
    """
    if desired is None:
        return actual in (None, "", [], {})
    if isinstance(desired, dict):
        if actual is None:
            return not desired
        if not isinstance(actual, dict):
            return False
        return all(is_subset(v, actual.get(k)) for k, v in desired.items())
    if isinstance(desired, list):
        if actual is None:
            return not desired
        if not isinstance(actual, list) or len(desired) != len(actual):
            return False
        return all(is_subset(d, a) for d, a in zip(desired, actual))
    if isinstance(desired, bool) or isinstance(actual, bool):
        return desired == actual
    return str(desired) == str(actual)


def _meta(obj: Dict[str, Any], key: str) -> Dict[str, Any]:
    return obj.get("metadata", {}).get(key) or {}


def user_annotations(obj: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in _meta(obj, "annotations").items() if k not in SYNC_ANNOTATIONS}


def _labels_match(desired: Dict[str, Any], actual: Dict[str, Any]) -> bool:
    return is_subset(_meta(desired, "labels"), _meta(actual, "labels"))


def _annotations_match(desired: Dict[str, Any], actual: Dict[str, Any]) -> bool:
    return is_subset(user_annotations(desired), user_annotations(actual))


def strip_system_mounts(pod_spec: Dict[str, Any]) -> Dict[str, Any]:
    """Removes the service account token volume the API server injects."""
    pod_spec = copy.deepcopy(pod_spec or {})
    for key in ("containers", "initContainers"):
        for container in pod_spec.get(key) or []:
            mounts = container.get("volumeMounts")
            if mounts:
                container["volumeMounts"] = [
                    m for m in mounts
                    if not str(m.get("mountPath", "")).startswith(SERVICE_ACCOUNT_MOUNT_PREFIX)
                ]
    volumes = pod_spec.get("volumes")
    if volumes:
        pod_spec["volumes"] = [v for v in volumes if not v.get("name", "").startswith("kube-api-access-")]
    return pod_spec


def compare_config_map(desired: Dict[str, Any], actual: Dict[str, Any]) -> bool:
    return (
        _labels_match(desired, actual)
        and _annotations_match(desired, actual)
        and (desired.get("data") or {}) == (actual.get("data") or {})
        and (desired.get("binaryData") or {}) == (actual.get("binaryData") or {})
    )


def secret_data(secret: Dict[str, Any]) -> Dict[str, str]:
    """Base64 encoded data of a secret, folding ``stringData`` in."""
    data = dict(secret.get("data") or {})
    for key, value in (secret.get("stringData") or {}).items():
        data[key] = base64.b64encode(str(value).encode()).decode()
    return data


def compare_secret(desired: Dict[str, Any], actual: Dict[str, Any]) -> bool:
    return (
        _labels_match(desired, actual)
        and secret_data(desired) == secret_data(actual)
        and desired.get("type", "Opaque") == actual.get("type", "Opaque")
    )


def compare_service(desired: Dict[str, Any], actual: Dict[str, Any]) -> bool:
    desired_spec = {
        k: v for k, v in (desired.get("spec") or {}).items() if k not in ("clusterIP", "clusterIPs")
    }
    return (
        _labels_match(desired, actual)
        and _annotations_match(desired, actual)
        and is_subset(desired_spec, actual.get("spec"))
    )


def compare_workload(desired: Dict[str, Any], actual: Dict[str, Any]) -> bool:
    desired_spec = copy.deepcopy(desired.get("spec") or {})
    actual_spec = copy.deepcopy(actual.get("spec") or {})
    desired_template = desired_spec.get("template") or {}
    actual_template = actual_spec.get("template") or {}
    desired_template["spec"] = strip_system_mounts(desired_template.get("spec"))
    actual_template["spec"] = strip_system_mounts(actual_template.get("spec"))
    return (
        _labels_match(desired, actual)
        and _annotations_match(desired, actual)
        and is_subset(desired_spec, actual_spec)
    )


def compare_pvc(desired: Dict[str, Any], actual: Dict[str, Any]) -> bool:
    desired_requests = ((desired.get("spec") or {}).get("resources") or {}).get("requests")
    actual_requests = ((actual.get("spec") or {}).get("resources") or {}).get("requests")
    return _labels_match(desired, actual) and is_subset(desired_requests, actual_requests)


def compare_service_account(desired: Dict[str, Any], actual: Dict[str, Any]) -> bool:
    return _labels_match(desired, actual)


def compare_rules(desired: Dict[str, Any], actual: Dict[str, Any]) -> bool:
    return is_subset(desired.get("rules") or [], actual.get("rules") or [])


def compare_binding(desired: Dict[str, Any], actual: Dict[str, Any]) -> bool:
    return is_subset(desired.get("roleRef"), actual.get("roleRef")) and is_subset(
        desired.get("subjects") or [], actual.get("subjects") or []
    )


def compare_exposure(desired: Dict[str, Any], actual: Dict[str, Any]) -> bool:
    desired_spec = copy.deepcopy(desired.get("spec") or {})
    # An empty host on a Route is assigned by the router
    if desired.get("kind") == Kind.ROUTE.value and not desired_spec.get("host"):
        desired_spec.pop("host", None)
    return (
        _labels_match(desired, actual)
        and _annotations_match(desired, actual)
        and is_subset(desired_spec, actual.get("spec"))
    )


def compare_metadata(desired: Dict[str, Any], actual: Dict[str, Any]) -> bool:
    """Conservative comparison for kinds without a registered comparer."""
    return (
        _labels_match(desired, actual)
        and _annotations_match(desired, actual)
        and is_subset(_meta(desired, "ownerReferences") or [], _meta(actual, "ownerReferences") or [])
    )


@dataclass(frozen=True)
class KindInfo:
    api_version: str
    factory: Callable[[], Any]
    comparer: Optional[Comparer] = None
    # Kinds whose updates are rejected or misapplied are deleted and created again
    recreate: bool = False
    namespaced: bool = True


def _typed(api_cls: Any, suffix: str, namespaced: bool = True) -> Callable[[], Any]:
    return lambda: TypedObjectClient(api_cls(), suffix, namespaced)


def _custom(group: str, version: str, plural: str, namespaced: bool = True) -> Callable[[], Any]:
    return lambda: CustomObjectClient(client.CustomObjectsApi(), group, version, plural, namespaced)


KIND_REGISTRY: Dict[Kind, KindInfo] = {
    Kind.CONFIG_MAP: KindInfo("v1", _typed(client.CoreV1Api, "config_map"), compare_config_map),
    Kind.SECRET: KindInfo("v1", _typed(client.CoreV1Api, "secret"), compare_secret, recreate=True),
    Kind.SERVICE: KindInfo("v1", _typed(client.CoreV1Api, "service"), compare_service, recreate=True),
    Kind.PERSISTENT_VOLUME_CLAIM: KindInfo(
        "v1", _typed(client.CoreV1Api, "persistent_volume_claim"), compare_pvc
    ),
    Kind.SERVICE_ACCOUNT: KindInfo(
        "v1", _typed(client.CoreV1Api, "service_account"), compare_service_account
    ),
    Kind.POD: KindInfo("v1", _typed(client.CoreV1Api, "pod")),
    Kind.NAMESPACE: KindInfo(
        "v1", _typed(client.CoreV1Api, "namespace", namespaced=False), namespaced=False
    ),
    Kind.DEPLOYMENT: KindInfo("apps/v1", _typed(client.AppsV1Api, "deployment"), compare_workload),
    Kind.JOB: KindInfo("batch/v1", _typed(client.BatchV1Api, "job"), compare_workload, recreate=True),
    Kind.ROLE: KindInfo(
        "rbac.authorization.k8s.io/v1", _typed(client.RbacAuthorizationV1Api, "role"), compare_rules
    ),
    Kind.ROLE_BINDING: KindInfo(
        "rbac.authorization.k8s.io/v1",
        _typed(client.RbacAuthorizationV1Api, "role_binding"),
        compare_binding,
    ),
    Kind.CLUSTER_ROLE: KindInfo(
        "rbac.authorization.k8s.io/v1",
        _typed(client.RbacAuthorizationV1Api, "cluster_role", namespaced=False),
        compare_rules,
        namespaced=False,
    ),
    Kind.CLUSTER_ROLE_BINDING: KindInfo(
        "rbac.authorization.k8s.io/v1",
        _typed(client.RbacAuthorizationV1Api, "cluster_role_binding", namespaced=False),
        compare_binding,
        namespaced=False,
    ),
    Kind.INGRESS: KindInfo(
        "networking.k8s.io/v1", _typed(client.NetworkingV1Api, "ingress"), compare_exposure, recreate=True
    ),
    Kind.ROUTE: KindInfo(
        "route.openshift.io/v1",
        _custom("route.openshift.io", "v1", "routes"),
        compare_exposure,
        recreate=True,
    ),
    Kind.OAUTH_CLIENT: KindInfo(
        "oauth.openshift.io/v1",
        _custom("oauth.openshift.io", "v1", "oauthclients", namespaced=False),
        namespaced=False,
    ),
    Kind.CUSTOM_RESOURCE_DEFINITION: KindInfo(
        "apiextensions.k8s.io/v1",
        _typed(client.ApiextensionsV1Api, "custom_resource_definition", namespaced=False),
        namespaced=False,
    ),
}
