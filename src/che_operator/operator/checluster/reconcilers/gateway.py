"""
Single-host gateway.

A traefik instance routes the paths of the che host to the server, the
dashboard and the registries. Its routes are config maps labelled as gateway
configuration, copied into traefik's watched directory by a sidecar.
"""
from typing import Any, Dict, List

import yaml

from ....crds.const import (
    DASHBOARD_NAME,
    DEVFILE_REGISTRY_NAME,
    GATEWAY_CONFIG_NAME,
    GATEWAY_NAME,
    PLUGIN_REGISTRY_NAME,
    SERVER_SERVICE_NAME,
)
from ...platform.images import resolve_image
from ..context import DeployContext, ReconcileResult
from ..resources.common import build_config_map, build_service, labels, selector
from ..resources.deployment import build_container, build_deployment, env_var, pod_security_context
from ..resources.rbac import build_role, build_role_binding, build_service_account, rule
from .base import Reconciler, sync_all
from .registries import is_external

GATEWAY_PORT = 8080
GATEWAY_CONFIG_LABELS = {"app": "che", "role": "gateway-config"}
DYNAMIC_CONFIG_DIR = "/dynamic-config"


def traefik_static_config() -> str:
    config = {
        "entrypoints": {
            "http": {"address": f":{GATEWAY_PORT}", "forwardedHeaders": {"insecure": True}},
            "sink": {"address": ":8090"},
        },
        "ping": {"entryPoint": "sink"},
        "global": {"checkNewVersion": False, "sendAnonymousUsage": False},
        "providers": {"file": {"directory": DYNAMIC_CONFIG_DIR, "watch": True}},
        "log": {"level": "INFO"},
    }
    return yaml.safe_dump(config, sort_keys=False)


def traefik_route_config(name: str, path: str, service_url: str, priority: int, strip_prefix: bool) -> str:
    router: Dict[str, Any] = {
        "rule": f"PathPrefix(`{path}`)",
        "service": name,
        "priority": priority,
    }
    middlewares: Dict[str, Any] = {}
    if strip_prefix:
        router["middlewares"] = [f"{name}-strip-prefix"]
        middlewares[f"{name}-strip-prefix"] = {"stripPrefix": {"prefixes": [path]}}
    http: Dict[str, Any] = {
        "routers": {name: router},
        "services": {name: {"loadBalancer": {"servers": [{"url": service_url}]}}},
    }
    if middlewares:
        http["middlewares"] = middlewares
    return yaml.safe_dump({"http": http}, sort_keys=False)


def gateway_routes(ctx: DeployContext) -> List[Dict[str, Any]]:
    """Route config maps for every component behind the gateway."""
    ns = ctx.namespace
    # name -> (path, service url, priority, strip prefix)
    routes = {
        "server": ("/api", f"http://{SERVER_SERVICE_NAME}.{ns}.svc:8080", 100, False),
        "dashboard": ("/dashboard", f"http://{DASHBOARD_NAME}.{ns}.svc:8080", 10, False),
    }
    if not is_external(ctx, DEVFILE_REGISTRY_NAME):
        routes["devfile-registry"] = (
            "/devfile-registry",
            f"http://{DEVFILE_REGISTRY_NAME}.{ns}.svc:8080",
            10,
            True,
        )
    if not is_external(ctx, PLUGIN_REGISTRY_NAME):
        routes["plugin-registry"] = (
            "/plugin-registry",
            f"http://{PLUGIN_REGISTRY_NAME}.{ns}.svc:8080",
            10,
            True,
        )

    route_labels = labels(ctx.checluster.flavor, GATEWAY_CONFIG_NAME)
    route_labels.update(GATEWAY_CONFIG_LABELS)
    objects = []
    for name, (path, url, priority, strip) in routes.items():
        objects.append(
            build_config_map(
                f"{GATEWAY_CONFIG_NAME}-{name}",
                ns,
                {f"{name}.yml": traefik_route_config(name, path, url, priority, strip)},
                route_labels,
            )
        )
    return objects


def build_gateway_deployment(ctx: DeployContext) -> Dict[str, Any]:
    cr = ctx.checluster
    gateway = build_container(
        "gateway",
        resolve_image(ctx.images, cr, "single_host_gateway"),
        port=GATEWAY_PORT,
        resources={
            "requests": {"memory": "128Mi", "cpu": "100m"},
            "limits": {"memory": "4Gi", "cpu": "1"},
        },
        volume_mounts=[
            {"name": "static-config", "mountPath": "/etc/traefik"},
            {"name": "dynamic-config", "mountPath": DYNAMIC_CONFIG_DIR},
        ],
    )
    config_labels = ",".join(f"{k}={v}" for k, v in GATEWAY_CONFIG_LABELS.items())
    configbump = build_container(
        "configbump",
        resolve_image(ctx.images, cr, "single_host_gateway_config_sidecar"),
        env=[
            env_var("CONFIG_BUMP_DIR", DYNAMIC_CONFIG_DIR),
            env_var("CONFIG_BUMP_LABELS", config_labels),
            {
                "name": "CONFIG_BUMP_NAMESPACE",
                "valueFrom": {"fieldRef": {"apiVersion": "v1", "fieldPath": "metadata.namespace"}},
            },
        ],
        resources={
            "requests": {"memory": "64Mi", "cpu": "50m"},
            "limits": {"memory": "256Mi", "cpu": "500m"},
        },
        volume_mounts=[{"name": "dynamic-config", "mountPath": DYNAMIC_CONFIG_DIR}],
    )
    return build_deployment(
        GATEWAY_NAME,
        ctx.namespace,
        cr.flavor,
        GATEWAY_NAME,
        [gateway, configbump],
        volumes=[
            {"name": "static-config", "configMap": {"name": GATEWAY_CONFIG_NAME}},
            {"name": "dynamic-config", "emptyDir": {}},
        ],
        service_account=GATEWAY_NAME,
        security_context=pod_security_context(cr, ctx.is_extended),
    )


class GatewayReconciler(Reconciler):
    name = "gateway"

    async def reconcile(self, ctx: DeployContext) -> ReconcileResult:
        ns = ctx.namespace
        flavor = ctx.checluster.flavor
        gateway_labels = labels(flavor, GATEWAY_NAME)
        objects = [
            build_service_account(GATEWAY_NAME, ns, gateway_labels),
            build_role(
                GATEWAY_NAME, ns, [rule([""], ["configmaps"], ["get", "watch", "list"])], gateway_labels
            ),
            build_role_binding(GATEWAY_NAME, ns, GATEWAY_NAME, GATEWAY_NAME, labels=gateway_labels),
            build_config_map(GATEWAY_CONFIG_NAME, ns, {"traefik.yml": traefik_static_config()}, gateway_labels),
            *gateway_routes(ctx),
            build_gateway_deployment(ctx),
            build_service(
                GATEWAY_NAME,
                ns,
                selector(flavor, GATEWAY_NAME),
                [{"name": "gateway-http", "port": GATEWAY_PORT}],
                gateway_labels,
            ),
        ]
        if not await sync_all(ctx, objects):
            return ReconcileResult.requeue("Waiting for the gateway")
        return ReconcileResult()
