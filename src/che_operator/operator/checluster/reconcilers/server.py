"""
The che server: its configuration config map, Deployment and Service.

The deployment carries the config map ``resourceVersion`` in ``CM_REVISION``
so that a configuration change rolls the server pod.
"""
from typing import Any, Dict

from ....crds.const import (
    DEFAULT_CHE_SERVICE_ACCOUNT,
    DEFAULT_JAVA_OPTS,
    DEFAULT_MERGED_CA_CONFIGMAP,
    DEFAULT_POSTGRES_DB,
    DEFAULT_POSTGRES_HOST,
    DEFAULT_POSTGRES_PORT,
    DEFAULT_POSTGRES_SECRET,
    DEVFILE_REGISTRY_NAME,
    PLUGIN_REGISTRY_NAME,
    SERVER_NAME,
    SERVER_SERVICE_NAME,
)
from ...platform.images import resolve_image
from ...sync import Kind
from ..context import DeployContext, ReconcileResult
from ..resources.common import build_config_map, build_service, labels, selector
from ..resources.deployment import (
    build_container,
    build_deployment,
    compute_resources,
    env_var,
    http_probe,
    pod_security_context,
    secret_env_var,
)
from .base import Reconciler
from .registries import internal_registry_url, registry_urls

SERVER_PORT = 8080
DEBUG_PORT = 8000
CA_CERTS_MOUNT_PATH = "/public-certs"


def server_properties(ctx: DeployContext) -> Dict[str, str]:
    """Environment of the che server, custom properties applied last."""
    cr = ctx.checluster
    scheme = cr.scheme
    ws_scheme = "wss" if cr.tls_support else "ws"
    internal = f"http://{SERVER_SERVICE_NAME}.{ctx.namespace}.svc:{SERVER_PORT}"
    urls = registry_urls(ctx)

    java_opts = DEFAULT_JAVA_OPTS
    proxy_opts = ctx.proxy.java_opts()
    if proxy_opts:
        java_opts = f"{java_opts} {proxy_opts}"

    props = {
        "CHE_HOST": ctx.che_host,
        "CHE_PORT": str(SERVER_PORT),
        "CHE_API": f"{scheme}://{ctx.che_host}/api",
        "CHE_API_INTERNAL": f"{internal}/api",
        "CHE_WEBSOCKET_ENDPOINT": f"{ws_scheme}://{ctx.che_host}/api/websocket",
        "CHE_WEBSOCKET_INTERNAL_ENDPOINT": f"ws://{SERVER_SERVICE_NAME}.{ctx.namespace}.svc:{SERVER_PORT}/api/websocket",
        "CHE_DEBUG_SERVER": str(cr.debug).lower(),
        "CHE_LOG_LEVEL": cr.value("server.cheLogLevel", "INFO"),
        "CHE_INFRASTRUCTURE_ACTIVE": "openshift" if ctx.is_extended else "kubernetes",
        "CHE_INFRA_KUBERNETES_NAMESPACE_DEFAULT": cr.value(
            "server.workspaceNamespaceDefault", f"<username>-{cr.flavor}"
        ),
        "CHE_INFRA_KUBERNETES_PVC_STRATEGY": cr.value("storage.pvcStrategy", "common"),
        "CHE_INFRA_KUBERNETES_PVC_QUANTITY": cr.value("storage.pvcClaimSize", "10Gi"),
        "CHE_INFRA_KUBERNETES_TLS__ENABLED": str(cr.tls_support).lower(),
        "CHE_INFRA_KUBERNETES_INGRESS_DOMAIN": cr.value("k8s.ingressDomain", ""),
        "CHE_TRUSTED__CA__BUNDLES__CONFIGMAP": DEFAULT_MERGED_CA_CONFIGMAP,
        "CHE_WORKSPACE_DEVFILE__REGISTRY__URL": urls[DEVFILE_REGISTRY_NAME],
        "CHE_WORKSPACE_PLUGIN__REGISTRY__URL": urls[PLUGIN_REGISTRY_NAME],
        "CHE_WORKSPACE_PLUGIN__REGISTRY__INTERNAL__URL": f"{internal_registry_url(ctx, PLUGIN_REGISTRY_NAME)}/v3",
        "CHE_WORKSPACE_DEVFILE__REGISTRY__INTERNAL__URL": internal_registry_url(ctx, DEVFILE_REGISTRY_NAME),
        "CHE_JDBC_URL": "jdbc:postgresql://{}:{}/{}".format(
            cr.value("database.chePostgresHostName") or DEFAULT_POSTGRES_HOST,
            cr.value("database.chePostgresPort") or DEFAULT_POSTGRES_PORT,
            cr.value("database.chePostgresDb") or DEFAULT_POSTGRES_DB,
        ),
        "CHE_KEYCLOAK_AUTH__SERVER__URL": ctx.status("keycloakURL", ""),
        "CHE_KEYCLOAK_REALM": cr.value("auth.identityProviderRealm") or cr.flavor,
        "CHE_KEYCLOAK_CLIENT__ID": cr.value("auth.identityProviderClientId") or f"{cr.flavor}-public",
        "CHE_OAUTH_OPENSHIFT_OAUTH__ENDPOINT": "",
        "JAVA_OPTS": java_opts,
    }
    if ctx.proxy.enabled:
        props["CHE_WORKSPACE_HTTP__PROXY"] = ctx.proxy.http_proxy
        props["CHE_WORKSPACE_HTTPS__PROXY"] = ctx.proxy.https_proxy
        props["CHE_WORKSPACE_NO__PROXY"] = ctx.proxy.no_proxy_string
    if cr.flag("auth.openShiftoAuth"):
        props["CHE_INFRA_OPENSHIFT_OAUTH__IDENTITY__PROVIDER"] = "openshift-v4"

    for key, value in (cr.value("server.customCheProperties") or {}).items():
        props[key] = str(value)
    return props


class ServerConfigReconciler(Reconciler):
    name = "server-config"

    async def reconcile(self, ctx: DeployContext) -> ReconcileResult:
        desired = build_config_map(
            SERVER_NAME, ctx.namespace, server_properties(ctx), labels(ctx.checluster.flavor, SERVER_NAME)
        )
        in_sync = await ctx.syncer.sync(desired)
        actual = await ctx.syncer.get(Kind.CONFIG_MAP, SERVER_NAME, ctx.namespace)
        if not in_sync or actual is None:
            return ReconcileResult.requeue("Waiting for the server config map")
        ctx.server_config_revision = actual["metadata"].get("resourceVersion", "")
        return ReconcileResult()


def build_server_deployment(ctx: DeployContext) -> Dict[str, Any]:
    cr = ctx.checluster
    credentials = cr.postgres_secret or DEFAULT_POSTGRES_SECRET
    env = [
        env_var("CM_REVISION", ctx.server_config_revision),
        env_var("KUBERNETES_NAMESPACE", ctx.namespace),
        secret_env_var("CHE_JDBC_USERNAME", credentials, "user"),
        secret_env_var("CHE_JDBC_PASSWORD", credentials, "password"),
    ]
    readiness = liveness = None
    if not cr.debug:
        readiness = http_probe("/api/system/state", SERVER_PORT, 25, period=5, failure_threshold=18)
        liveness = http_probe("/api/system/state", SERVER_PORT, 400, period=10, failure_threshold=3)

    container = build_container(
        SERVER_NAME,
        resolve_image(ctx.images, cr, "che_server"),
        port=SERVER_PORT,
        env=env,
        resources=compute_resources(cr, "server"),
        readiness_probe=readiness,
        liveness_probe=liveness,
        volume_mounts=[{"name": DEFAULT_MERGED_CA_CONFIGMAP, "mountPath": CA_CERTS_MOUNT_PATH}],
        env_from_config_map=SERVER_NAME,
    )
    if cr.debug:
        container["ports"].append({"name": "http-debug", "containerPort": DEBUG_PORT, "protocol": "TCP"})
    return build_deployment(
        SERVER_NAME,
        ctx.namespace,
        cr.flavor,
        SERVER_NAME,
        [container],
        volumes=[{"name": DEFAULT_MERGED_CA_CONFIGMAP, "configMap": {"name": DEFAULT_MERGED_CA_CONFIGMAP}}],
        service_account=DEFAULT_CHE_SERVICE_ACCOUNT,
        security_context=pod_security_context(cr, ctx.is_extended),
        strategy=cr.value("server.serverDeploymentStrategy") or "Recreate",
    )


class ServerDeploymentReconciler(Reconciler):
    name = "server-deployment"

    async def reconcile(self, ctx: DeployContext) -> ReconcileResult:
        cr = ctx.checluster
        ports = [{"name": "http", "port": SERVER_PORT}]
        if cr.debug:
            ports.append({"name": "debug", "port": DEBUG_PORT})
        service = build_service(
            SERVER_SERVICE_NAME,
            ctx.namespace,
            selector(cr.flavor, SERVER_NAME),
            ports,
            labels(cr.flavor, SERVER_NAME),
        )
        service_synced = await ctx.syncer.sync(service)
        deployment_synced = await ctx.syncer.sync(build_server_deployment(ctx))
        if not (service_synced and deployment_synced):
            return ReconcileResult.requeue("Waiting for the server deployment")
        return ReconcileResult()
