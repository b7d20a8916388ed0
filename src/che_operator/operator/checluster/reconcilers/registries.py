"""
Devfile and plugin registries.

Each registry is served by the operator unless the CR points to an external
one. Managed registries sit behind the gateway under a path of the che host.
"""
from typing import Dict, List

from ....crds.const import DEVFILE_REGISTRY_NAME, PLUGIN_REGISTRY_NAME
from ...platform.images import resolve_image
from ..context import DeployContext, ReconcileResult
from ..resources.common import build_config_map, build_service, labels, selector
from ..resources.deployment import (
    build_container,
    build_deployment,
    compute_resources,
    http_probe,
    pod_security_context,
)
from .base import Reconciler, sync_all

REGISTRY_PORT = 8080

# name -> (image component, external flag, external url field, public path)
REGISTRIES = {
    DEVFILE_REGISTRY_NAME: (
        "devfile_registry",
        "server.externalDevfileRegistry",
        "server.devfileRegistryUrl",
        "/devfile-registry",
    ),
    PLUGIN_REGISTRY_NAME: (
        "plugin_registry",
        "server.externalPluginRegistry",
        "server.pluginRegistryUrl",
        "/plugin-registry/v3",
    ),
}

STATUS_KEYS = {
    DEVFILE_REGISTRY_NAME: "devfileRegistryURL",
    PLUGIN_REGISTRY_NAME: "pluginRegistryURL",
}


def is_external(ctx: DeployContext, name: str) -> bool:
    return ctx.checluster.flag(REGISTRIES[name][1])


def registry_urls(ctx: DeployContext) -> Dict[str, str]:
    """Public URL of each registry; empty while the che host is unknown."""
    urls = {}
    for name, (_, _, url_field, path) in REGISTRIES.items():
        if is_external(ctx, name):
            urls[name] = ctx.checluster.value(url_field, "")
        elif ctx.che_host:
            urls[name] = f"{ctx.checluster.scheme}://{ctx.che_host}{path}"
        else:
            urls[name] = ""
    return urls


def internal_registry_url(ctx: DeployContext, name: str) -> str:
    return f"http://{name}.{ctx.namespace}.svc:{REGISTRY_PORT}"


def build_registry_objects(ctx: DeployContext, name: str, public_url: str) -> List[dict]:
    cr = ctx.checluster
    flavor = cr.flavor
    component, _, _, _ = REGISTRIES[name]
    object_labels = labels(flavor, name)

    env = {"CHE_SIDECAR_CONTAINERS_REGISTRY_URL": "", "CHE_SIDECAR_CONTAINERS_REGISTRY_ORGANIZATION": ""}
    if name == DEVFILE_REGISTRY_NAME:
        env["CHE_DEVFILE_IMAGES_REGISTRY_URL"] = cr.value("server.airGapContainerRegistryHostname", "")
        env["CHE_DEVFILE_REGISTRY_URL"] = public_url
    else:
        env["CHE_PLUGIN_REGISTRY_URL"] = public_url
    if ctx.proxy.enabled:
        env["HTTP_PROXY"] = ctx.proxy.http_proxy
        env["HTTPS_PROXY"] = ctx.proxy.https_proxy
        env["NO_PROXY"] = ctx.proxy.no_proxy_string

    probe_path = "/devfiles/" if name == DEVFILE_REGISTRY_NAME else "/v3/plugins/"
    container = build_container(
        name,
        resolve_image(ctx.images, cr, component),
        port=REGISTRY_PORT,
        resources=compute_resources(cr, name),
        readiness_probe=http_probe(probe_path, REGISTRY_PORT, 3),
        liveness_probe=http_probe(probe_path, REGISTRY_PORT, 30),
        env_from_config_map=name,
    )
    return [
        build_config_map(name, ctx.namespace, env, object_labels),
        build_service(
            name,
            ctx.namespace,
            selector(flavor, name),
            [{"name": "http", "port": REGISTRY_PORT}],
            object_labels,
        ),
        build_deployment(
            name,
            ctx.namespace,
            flavor,
            name,
            [container],
            security_context=pod_security_context(cr, ctx.is_extended),
        ),
    ]


class RegistriesReconciler(Reconciler):
    name = "registries"

    async def reconcile(self, ctx: DeployContext) -> ReconcileResult:
        urls = registry_urls(ctx)
        in_sync = True
        for name in REGISTRIES:
            if not is_external(ctx, name):
                if not await sync_all(ctx, build_registry_objects(ctx, name, urls[name])):
                    in_sync = False
            ctx.update_status(STATUS_KEYS[name], urls[name])
        if not in_sync:
            return ReconcileResult.requeue("Waiting for the registries")
        return ReconcileResult()
