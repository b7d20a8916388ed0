import base64
from typing import Any, Dict, List, Optional

from ....crds.const import (
    CHE_ECLIPSE_ORG,
    KUBERNETES_COMPONENT_LABEL,
    KUBERNETES_INSTANCE_LABEL,
    KUBERNETES_MANAGED_BY_LABEL,
    KUBERNETES_NAME_LABEL,
    KUBERNETES_PART_OF_LABEL,
    OPERATOR_NAME,
)


def labels(flavor: str, component: str, part_of: str = CHE_ECLIPSE_ORG) -> Dict[str, str]:
    """Labels carried by every object the operator creates."""
    return {
        "app": flavor,
        "component": component,
        KUBERNETES_NAME_LABEL: flavor,
        KUBERNETES_INSTANCE_LABEL: flavor,
        KUBERNETES_COMPONENT_LABEL: component,
        KUBERNETES_PART_OF_LABEL: part_of,
        KUBERNETES_MANAGED_BY_LABEL: f"{flavor}-operator" if part_of == CHE_ECLIPSE_ORG else OPERATOR_NAME,
    }


def selector(flavor: str, component: str) -> Dict[str, str]:
    """Immutable subset of the labels used as a pod selector."""
    return {"app": flavor, "component": component}


def build_config_map(
    name: str,
    namespace: str,
    data: Dict[str, str],
    object_labels: Optional[Dict[str, str]] = None,
    annotations: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {"name": name, "namespace": namespace}
    if object_labels:
        metadata["labels"] = dict(object_labels)
    if annotations:
        metadata["annotations"] = dict(annotations)
    return {"apiVersion": "v1", "kind": "ConfigMap", "metadata": metadata, "data": data}


def encode(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def decode(value: Optional[str]) -> str:
    if not value:
        return ""
    return base64.b64decode(value).decode()


def build_secret(
    name: str,
    namespace: str,
    data: Dict[str, str],
    object_labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Builds an Opaque secret; ``data`` holds plain text values."""
    metadata: Dict[str, Any] = {"name": name, "namespace": namespace}
    if object_labels:
        metadata["labels"] = dict(object_labels)
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": metadata,
        "data": {k: encode(v) for k, v in data.items()},
    }


def build_service(
    name: str,
    namespace: str,
    pod_selector: Dict[str, str],
    ports: List[Dict[str, Any]],
    object_labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Builds a ClusterIP Service. Each port is ``{"name", "port", "targetPort"}``."""
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(object_labels or {})},
        "spec": {
            "type": "ClusterIP",
            "selector": dict(pod_selector),
            "ports": [
                {
                    "name": p["name"],
                    "port": p["port"],
                    "targetPort": p.get("targetPort", p["port"]),
                    "protocol": "TCP",
                }
                for p in ports
            ],
        },
    }


def build_pvc(
    name: str,
    namespace: str,
    size: str,
    storage_class: Optional[str] = None,
    object_labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": size}},
    }
    if storage_class:
        spec["storageClassName"] = storage_class
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(object_labels or {})},
        "spec": spec,
    }
