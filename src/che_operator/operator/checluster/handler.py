import asyncio
import logging
from typing import Any, Dict, Optional

import kopf
from kubernetes import client

from ...crds.checluster import ChePhase, CheCluster
from ...crds.const import CRD_GROUP, CRD_PLURAL_CHECLUSTER, CRD_VERSION, SERVER_NAME
from ...errors import TransientError, UnrecoverableError
from ...utils.kube import deployment_availability
from ..config import config as operator_config, watched
from ..platform.proxy import merge_proxy, read_cluster_proxy
from ..startup import ReadyOperator
from ..sync import Syncer
from .context import ClusterAPI, DeployContext
from .manager import ReconcileManager
from .phase import DeploymentObservation, next_phase
from .reconcilers.base import read_deployment, read_secret_data
from .resources.exposure import ingress_host

manager = ReconcileManager()


def _reconcile_lock(memo: kopf.Memo) -> asyncio.Lock:
    # memo is per object; change handlers and the timer share this lock
    lock = memo.get("reconcile_lock")
    if lock is None:
        lock = asyncio.Lock()
        memo["reconcile_lock"] = lock
    return lock


async def build_context(
    body: Dict[str, Any],
    checluster: CheCluster,
    ready: ReadyOperator,
    logger: logging.Logger,
    cluster_api: Optional[ClusterAPI] = None,
) -> DeployContext:
    cluster_api = cluster_api or ClusterAPI(infrastructure=ready.infrastructure)
    ctx = DeployContext(
        checluster=checluster,
        cluster_api=cluster_api,
        syncer=Syncer(operator_config.operator_namespace, owner=body, logger=logger),
        templates=ready.templates,
        config=operator_config,
        logger=logger,
    )

    cluster_proxy = await asyncio.to_thread(
        read_cluster_proxy, cluster_api.custom_objects, ready.infrastructure
    )
    credentials = None
    proxy_secret = checluster.value("server.proxySecret")
    if proxy_secret:
        credentials = await read_secret_data(ctx, proxy_secret)
    ctx.proxy = merge_proxy(cluster_proxy, checluster, credentials)

    if not ctx.is_extended:
        ctx.default_che_host = ingress_host(checluster, SERVER_NAME)
    ctx.che_host = checluster.value("server.cheHost") or ctx.default_che_host
    return ctx


async def update_phase(ctx: DeployContext) -> None:
    """Derives chePhase from the server deployment and publishes version and URL."""
    deployment = await read_deployment(ctx, SERVER_NAME)
    counts = deployment_availability(deployment or {})
    observation = DeploymentObservation(
        desired=counts["desired"], replicas=counts["replicas"], available=counts["available"]
    )
    previous = ctx.checluster.phase
    phase = next_phase(previous, observation)
    ctx.update_status("chePhase", phase)

    if phase == ChePhase.ACTIVE.value:
        ctx.update_status("cheVersion", ctx.checluster.value("server.cheImageTag") or _image_tag(deployment))
        if previous != phase:
            ctx.logger.info(f"Che is now available at: {ctx.status('cheURL')}")


def _image_tag(deployment: Optional[Dict[str, Any]]) -> str:
    containers = (
        (deployment or {}).get("spec", {}).get("template", {}).get("spec", {}).get("containers") or []
    )
    if not containers:
        return ""
    image = containers[0].get("image", "")
    last = image.rsplit("/", 1)[-1]
    return last.split(":", 1)[1] if ":" in last else ""


async def flush(ctx: DeployContext) -> None:
    """Writes the spec and status changes recorded during the pass."""
    cr = ctx.checluster
    if ctx.spec_patch:
        await asyncio.to_thread(cr.patch, {"spec": ctx.spec_patch})
        ctx.spec_patch = {}
    if ctx.status_patch:
        await asyncio.to_thread(cr.patch_status, ctx.status_patch)
        ctx.status_patch = {}


async def reconcile_checluster(
    body: Dict[str, Any],
    logger: logging.Logger,
    memo: kopf.Memo,
    custom_objects_api: Optional[client.CustomObjectsApi] = None,
) -> None:
    """
    One reconcile pass over a CheCluster.

    Raises:
        kopf.TemporaryError: A step is not done yet or failed transiently.
        kopf.PermanentError: The CR cannot be installed as specified.
    """
    ready: ReadyOperator = memo["ready"]
    api = custom_objects_api or client.CustomObjectsApi()

    async with _reconcile_lock(memo):
        # Step 1: Re-read the CR, the event body may be stale
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]
        try:
            checluster = await asyncio.to_thread(CheCluster.get, name, namespace, api)
        except client.ApiException as e:
            if e.status == 404:
                logger.info(f"CheCluster '{name}' is gone, nothing to do.")
                return
            raise
        if checluster.metadata.deletion_timestamp:
            return

        ctx = await build_context(body, checluster, ready, logger)

        # Step 2: Run the sub-reconcilers
        try:
            result = await manager.reconcile_all(ctx)
            # Step 3: Phase, version and URL once every step is done
            if result.done:
                await update_phase(ctx)
        except UnrecoverableError as e:
            ctx.update_status("chePhase", ChePhase.FAILED.value)
            await flush(ctx)
            raise kopf.PermanentError(str(e)) from e
        except TransientError as e:
            await flush(ctx)
            raise kopf.TemporaryError(str(e), delay=e.delay) from e
        except client.ApiException as e:
            if e.status in (403, 422):
                ctx.update_status("chePhase", ChePhase.FAILED.value)
                await flush(ctx)
                raise kopf.PermanentError(f"{e.status}: {e.reason}") from e
            await flush(ctx)
            raise kopf.TemporaryError(f"Kubernetes API error {e.status}: {e.reason}") from e

        await flush(ctx)
        if not result.done:
            raise kopf.TemporaryError(
                result.reason, delay=result.requeue_after or operator_config.requeue_delay
            )


@kopf.on.create(CRD_GROUP, CRD_VERSION, CRD_PLURAL_CHECLUSTER, when=watched)
@kopf.on.update(CRD_GROUP, CRD_VERSION, CRD_PLURAL_CHECLUSTER, when=watched)
@kopf.on.resume(CRD_GROUP, CRD_VERSION, CRD_PLURAL_CHECLUSTER, when=watched)
async def create_or_update_checluster(
    body: Dict[str, Any],
    name: str,
    namespace: str,
    logger: logging.Logger,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    logger.info(f"Reconciling CheCluster '{name}' in namespace '{namespace}'...")
    await reconcile_checluster(body, logger, memo)


@kopf.timer(
    CRD_GROUP, CRD_VERSION, CRD_PLURAL_CHECLUSTER, when=watched, interval=operator_config.reconcile_interval
)
async def periodic_checluster_reconcile(
    body: Dict[str, Any],
    logger: logging.Logger,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """Converges objects changed behind the operator's back."""
    await reconcile_checluster(body, logger, memo)


@kopf.on.delete(CRD_GROUP, CRD_VERSION, CRD_PLURAL_CHECLUSTER, when=watched, optional=True)
async def delete_checluster(
    body: Dict[str, Any],
    name: str,
    namespace: str,
    logger: logging.Logger,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """
    Removes what owner references cannot garbage collect.

    Cluster scoped objects and the OAuth client are deleted by the
    sub-reconcilers; the CR is released once all of them are done.
    """
    logger.info(f"CheCluster '{name}' in namespace '{namespace}' is being deleted.")
    ready: ReadyOperator = memo["ready"]
    api = client.CustomObjectsApi()
    async with _reconcile_lock(memo):
        try:
            checluster = await asyncio.to_thread(CheCluster.get, name, namespace, api)
        except client.ApiException as e:
            if e.status == 404:
                return
            raise
        ctx = await build_context(body, checluster, ready, logger)
        done = await manager.finalize_all(ctx)
        if ctx.status_patch:
            try:
                await asyncio.to_thread(checluster.patch_status, ctx.status_patch)
            except client.ApiException as e:
                # Released finalizers may already have removed the CR
                if e.status != 404:
                    raise
        if not done:
            raise kopf.TemporaryError("Finalization is not complete", delay=operator_config.requeue_delay)

