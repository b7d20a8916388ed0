"""
Finalizer bookkeeping on the CheCluster CR.

Finalizers are written with a merge patch that carries the resourceVersion the
change was computed from, so a concurrent edit fails with a conflict and the
change is recomputed instead of clobbering the other writer's list.
"""
import asyncio
from typing import Callable, List

from kubernetes import client

from ...crds.const import (
    CRB_FINALIZER_SUFFIX,
    CRD_GROUP,
    CRD_PLURAL_CHECLUSTER,
    CRD_VERSION,
    MAX_FINALIZER_LENGTH,
)
from ...errors import NeedRetryError
from .context import DeployContext

MAX_CONFLICT_RETRIES = 3


def crb_finalizer_name(role: str) -> str:
    return f"{role}{CRB_FINALIZER_SUFFIX}"[:MAX_FINALIZER_LENGTH].lower()


def has_finalizer(ctx: DeployContext, name: str) -> bool:
    return name in ctx.checluster.metadata.finalizers


async def _update_finalizers(ctx: DeployContext, mutate: Callable[[List[str]], List[str]]) -> None:
    api = ctx.cluster_api.custom_objects
    cr = ctx.checluster
    for _ in range(MAX_CONFLICT_RETRIES):
        current = await asyncio.to_thread(
            api.get_namespaced_custom_object,
            group=CRD_GROUP,
            version=CRD_VERSION,
            namespace=cr.namespace,
            plural=CRD_PLURAL_CHECLUSTER,
            name=cr.name,
        )
        metadata = current.get("metadata", {})
        finalizers = list(metadata.get("finalizers") or [])
        updated = mutate(list(finalizers))
        if updated == finalizers:
            cr.metadata.finalizers = finalizers
            return
        try:
            await asyncio.to_thread(
                api.patch_namespaced_custom_object,
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=cr.namespace,
                plural=CRD_PLURAL_CHECLUSTER,
                name=cr.name,
                body={
                    "metadata": {
                        "finalizers": updated,
                        "resourceVersion": metadata.get("resourceVersion"),
                    }
                },
            )
        except client.ApiException as e:
            if e.status == 409:
                continue
            raise
        cr.metadata.finalizers = updated
        return
    raise NeedRetryError(f"Could not update finalizers of CheCluster '{cr.name}' due to conflicts.")


async def append_finalizer(ctx: DeployContext, name: str) -> None:
    if has_finalizer(ctx, name):
        return
    ctx.logger.info(f"Adding finalizer: {name}")
    await _update_finalizers(ctx, lambda items: items if name in items else items + [name])


async def remove_finalizer(ctx: DeployContext, name: str) -> None:
    if not has_finalizer(ctx, name):
        return
    ctx.logger.info(f"Removing finalizer: {name}")
    await _update_finalizers(ctx, lambda items: [f for f in items if f != name])
