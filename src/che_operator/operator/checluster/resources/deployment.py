from typing import Any, Dict, List, Optional

from ....crds.checluster import CheCluster
from .common import labels, selector

# Default requests/limits per component: (memory request, memory limit, cpu request, cpu limit)
DEFAULT_RESOURCES = {
    "server": ("512Mi", "1024Mi", "100m", "1"),
    "dashboard": ("32Mi", "256Mi", "100m", "500m"),
    "devfile-registry": ("32Mi", "256Mi", "10m", "500m"),
    "plugin-registry": ("32Mi", "256Mi", "10m", "500m"),
    "postgres": ("512Mi", "1024Mi", "100m", "500m"),
    "keycloak": ("512Mi", "2Gi", "100m", "2"),
    "gateway": ("64Mi", "256Mi", "50m", "500m"),
}

# CR fields overriding the defaults, keyed like DEFAULT_RESOURCES
RESOURCE_OVERRIDES = {
    "server": "server.server",
    "dashboard": "server.dashboard",
    "devfile-registry": "server.devfileRegistry",
    "plugin-registry": "server.pluginRegistry",
    "postgres": "database.chePostgresContainerResources",
    "keycloak": "auth.identityProviderContainerResources",
}


def compute_resources(checluster: Optional[CheCluster], component: str) -> Dict[str, Any]:
    """
    Container resources of a component with CR overrides applied.

    Overrides use the ``<prefix>MemoryRequest``/``<prefix>CpuLimit`` style
    fields of the server section, or a ``{request, limit}`` block for the
    database and identity provider.
    """
    mem_req, mem_lim, cpu_req, cpu_lim = DEFAULT_RESOURCES[component]
    override = RESOURCE_OVERRIDES.get(component)
    if checluster is not None and override:
        section, prefix = override.split(".", 1)
        if prefix.endswith("Resources"):
            block = checluster.value(override, {}) or {}
            mem_req = (block.get("request") or {}).get("memory") or mem_req
            cpu_req = (block.get("request") or {}).get("cpu") or cpu_req
            mem_lim = (block.get("limits") or {}).get("memory") or mem_lim
            cpu_lim = (block.get("limits") or {}).get("cpu") or cpu_lim
        else:
            mem_req = checluster.value(f"{section}.{prefix}MemoryRequest") or mem_req
            mem_lim = checluster.value(f"{section}.{prefix}MemoryLimit") or mem_lim
            cpu_req = checluster.value(f"{section}.{prefix}CpuRequest") or cpu_req
            cpu_lim = checluster.value(f"{section}.{prefix}CpuLimit") or cpu_lim
    return {
        "requests": {"memory": mem_req, "cpu": cpu_req},
        "limits": {"memory": mem_lim, "cpu": cpu_lim},
    }


def http_probe(path: str, port: int, initial_delay: int, period: int = 10, failure_threshold: int = 3) -> Dict[str, Any]:
    return {
        "httpGet": {"path": path, "port": port, "scheme": "HTTP"},
        "initialDelaySeconds": initial_delay,
        "periodSeconds": period,
        "failureThreshold": failure_threshold,
        "timeoutSeconds": 5,
        "successThreshold": 1,
    }


def env_var(name: str, value: str) -> Dict[str, Any]:
    return {"name": name, "value": value}


def secret_env_var(name: str, secret: str, key: str) -> Dict[str, Any]:
    return {"name": name, "valueFrom": {"secretKeyRef": {"name": secret, "key": key}}}


def build_container(
    name: str,
    image: str,
    port: Optional[int] = None,
    env: Optional[List[Dict[str, Any]]] = None,
    resources: Optional[Dict[str, Any]] = None,
    readiness_probe: Optional[Dict[str, Any]] = None,
    liveness_probe: Optional[Dict[str, Any]] = None,
    volume_mounts: Optional[List[Dict[str, Any]]] = None,
    env_from_config_map: Optional[str] = None,
    args: Optional[List[str]] = None,
) -> Dict[str, Any]:
    container: Dict[str, Any] = {
        "name": name,
        "image": image,
        "imagePullPolicy": "Always" if image.endswith(":latest") or image.endswith(":next") else "IfNotPresent",
    }
    if args:
        container["args"] = list(args)
    if port is not None:
        container["ports"] = [{"name": "http", "containerPort": port, "protocol": "TCP"}]
    if env:
        container["env"] = list(env)
    if env_from_config_map:
        container["envFrom"] = [{"configMapRef": {"name": env_from_config_map}}]
    if resources:
        container["resources"] = resources
    if readiness_probe:
        container["readinessProbe"] = readiness_probe
    if liveness_probe:
        container["livenessProbe"] = liveness_probe
    if volume_mounts:
        container["volumeMounts"] = list(volume_mounts)
    container["securityContext"] = {"capabilities": {"drop": ["ALL"]}}
    return container


def build_deployment(
    name: str,
    namespace: str,
    flavor: str,
    component: str,
    containers: List[Dict[str, Any]],
    volumes: Optional[List[Dict[str, Any]]] = None,
    service_account: Optional[str] = None,
    security_context: Optional[Dict[str, Any]] = None,
    strategy: str = "RollingUpdate",
    part_of: Optional[str] = None,
) -> Dict[str, Any]:
    """Builds a single replica Deployment for a managed component."""
    object_labels = labels(flavor, component, part_of) if part_of else labels(flavor, component)
    pod_spec: Dict[str, Any] = {
        "containers": containers,
        "restartPolicy": "Always",
        "terminationGracePeriodSeconds": 30,
    }
    if volumes:
        pod_spec["volumes"] = volumes
    if service_account:
        pod_spec["serviceAccountName"] = service_account
    if security_context:
        pod_spec["securityContext"] = security_context

    deployment_strategy: Dict[str, Any] = {"type": strategy}
    if strategy == "RollingUpdate":
        deployment_strategy["rollingUpdate"] = {"maxSurge": "25%", "maxUnavailable": "25%"}

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "labels": object_labels},
        "spec": {
            "replicas": 1,
            "revisionHistoryLimit": 2,
            "strategy": deployment_strategy,
            "selector": {"matchLabels": selector(flavor, component)},
            "template": {
                "metadata": {"labels": object_labels},
                "spec": pod_spec,
            },
        },
    }


def pod_security_context(checluster: CheCluster, is_extended: bool) -> Optional[Dict[str, Any]]:
    """Fixed uid/fsGroup on base clusters; extended clusters assign their own."""
    if is_extended:
        return None
    fs_group = checluster.value("k8s.securityContextFsGroup") or "1724"
    run_as_user = checluster.value("k8s.securityContextRunAsUser") or "1724"
    return {"fsGroup": int(fs_group), "runAsUser": int(run_as_user)}
