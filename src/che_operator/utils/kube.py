"""
Helpers around the Kubernetes Python client shared by the operator and the CLI.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from kubernetes import client, config as kube_config

logger = logging.getLogger(__name__)


class KubernetesConfigurationError(RuntimeError):
    """Raised when the Kubernetes client cannot be configured."""


def configure_kube_client(
    log: Optional[logging.Logger] = None,
    *,
    kubeconfig_path: Optional[str] = None,
) -> str:
    """
    Loads client credentials: an explicit kubeconfig when given, otherwise
    the pod's service account and then the default kubeconfig.

    Returns:
        "kubeconfig" or "in-cluster".

    Raises:
        KubernetesConfigurationError: No source could be loaded.
    """
    log = log or logger
    if kubeconfig_path:
        sources = [("kubeconfig", lambda: kube_config.load_kube_config(config_file=kubeconfig_path))]
    else:
        sources = [
            ("in-cluster", kube_config.load_incluster_config),
            ("kubeconfig", kube_config.load_kube_config),
        ]

    errors = []
    for source, load in sources:
        try:
            load()
        except kube_config.ConfigException as e:
            errors.append(f"{source}: {e}")
            continue
        log.debug(f"Kubernetes client configured from {source}")
        return source

    message = "Cannot configure the Kubernetes client (" + "; ".join(errors) + ")"
    log.error(message)
    raise KubernetesConfigurationError(message)


def to_dict(obj: Any) -> Dict[str, Any]:
    """Converts a client model into the plain dict form used by the API."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return client.ApiClient().sanitize_for_serialization(obj)


def label_selector(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in labels.items())


def get_pod_by_labels(
    core_v1: client.CoreV1Api,
    namespace: str,
    labels: Dict[str, str],
) -> Optional[Any]:
    """
    Find the first running pod matching a label selector.

    Pods being deleted are skipped so that callers never exec into a
    terminating container.
    """
    pods = core_v1.list_namespaced_pod(
        namespace=namespace, label_selector=label_selector(labels)
    )
    for pod in pods.items:
        pod = to_dict(pod)
        if pod.get("metadata", {}).get("deletionTimestamp"):
            continue
        if pod.get("status", {}).get("phase") == "Running":
            return pod
    return None


def list_pods(
    core_v1: client.CoreV1Api, namespace: str, labels: Dict[str, str]
) -> List[Dict[str, Any]]:
    pods = core_v1.list_namespaced_pod(
        namespace=namespace, label_selector=label_selector(labels)
    )
    return [to_dict(p) for p in pods.items]


def deployment_availability(deployment: Dict[str, Any]) -> Dict[str, int]:
    """Extracts the replica counters used for phase computation."""
    spec = deployment.get("spec") or {}
    status = deployment.get("status") or {}
    return {
        "desired": spec.get("replicas", 1) or 0,
        "replicas": status.get("replicas") or 0,
        "available": status.get("availableReplicas") or 0,
        "updated": status.get("updatedReplicas") or 0,
    }
