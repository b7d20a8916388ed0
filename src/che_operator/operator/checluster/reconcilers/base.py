import asyncio
import secrets
import string
from typing import Any, Dict, Iterable, Optional, Tuple

from kubernetes import client

from ....crds.const import DEFAULT_CHE_TLS_SECRET, DEFAULT_INGRESS_CLASS
from ....utils.kube import to_dict
from ...sync import Kind
from ..context import DeployContext, ReconcileResult
from ..resources.common import decode
from ..resources.exposure import build_ingress, build_route, exposed_host, ingress_host

PASSWORD_ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int = 12) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


class Reconciler:
    """
    One step of the CheCluster pipeline.

    ``reconcile`` converges the objects the step owns. ``finalize`` removes
    what owner references cannot garbage collect and returns True when done.
    """

    name = "reconciler"

    async def reconcile(self, ctx: DeployContext) -> ReconcileResult:
        raise NotImplementedError

    async def finalize(self, ctx: DeployContext) -> bool:
        return True


async def sync_all(ctx: DeployContext, objects: Iterable[Dict[str, Any]]) -> bool:
    """Syncs every object; True when all of them were already in sync."""
    in_sync = True
    for obj in objects:
        if not await ctx.syncer.sync(obj):
            in_sync = False
    return in_sync


async def read_deployment(ctx: DeployContext, name: str) -> Optional[Dict[str, Any]]:
    try:
        deployment = await asyncio.to_thread(
            ctx.cluster_api.apps_v1.read_namespaced_deployment, name=name, namespace=ctx.namespace
        )
    except client.ApiException as e:
        if e.status == 404:
            return None
        raise
    return to_dict(deployment)


async def deployment_ready(ctx: DeployContext, name: str) -> bool:
    deployment = await read_deployment(ctx, name)
    if not deployment:
        return False
    status = deployment.get("status") or {}
    return (status.get("availableReplicas") or 0) >= 1


async def read_secret_data(ctx: DeployContext, name: str) -> Optional[Dict[str, str]]:
    """Decoded data of a secret in the CR namespace, None when missing."""
    try:
        secret = await asyncio.to_thread(
            ctx.cluster_api.core_v1.read_namespaced_secret, name=name, namespace=ctx.namespace
        )
    except client.ApiException as e:
        if e.status == 404:
            return None
        raise
    data = to_dict(secret).get("data") or {}
    return {k: decode(v) for k, v in data.items()}


async def expose(
    ctx: DeployContext,
    name: str,
    component: str,
    service: str,
    port: int,
    host: str = "",
    path: str = "/",
) -> Tuple[bool, str]:
    """
    Exposes a service outside the cluster with a Route on extended clusters
    and an Ingress otherwise.

    Returns:
        Whether the object was in sync, and the host it is served on.
    """
    cr = ctx.checluster
    if ctx.is_extended:
        desired = build_route(
            name, ctx.namespace, cr.flavor, component, host, service, port, path, tls=cr.tls_support
        )
        kind = Kind.ROUTE
    else:
        tls_secret = (cr.value("k8s.tlsSecretName") or DEFAULT_CHE_TLS_SECRET) if cr.tls_support else None
        desired = build_ingress(
            name,
            ctx.namespace,
            cr.flavor,
            component,
            host or ingress_host(cr, name),
            service,
            port,
            path,
            tls_secret=tls_secret,
            ingress_class=cr.value("k8s.ingressClass") or DEFAULT_INGRESS_CLASS,
        )
        kind = Kind.INGRESS

    in_sync = await ctx.syncer.sync(desired)
    actual = await ctx.syncer.get(kind, name, ctx.namespace)
    return in_sync, exposed_host(actual) if actual else ""
