from ....crds.const import GATEWAY_NAME, SERVER_NAME
from ....errors import UnrecoverableError
from ..context import DeployContext, ReconcileResult
from .base import Reconciler, expose
from .gateway import GATEWAY_PORT


class HostExposureReconciler(Reconciler):
    """
    Exposes the gateway on the che host.

    The resolved host is written back to ``spec.server.cheHost`` when the CR
    leaves it empty, and published as ``status.cheURL``.
    """

    name = "host-exposure"

    async def reconcile(self, ctx: DeployContext) -> ReconcileResult:
        cr = ctx.checluster
        requested = cr.value("server.cheHost", "")
        if not ctx.is_extended and not requested and not cr.value("k8s.ingressDomain"):
            raise UnrecoverableError("Either spec.server.cheHost or spec.k8s.ingressDomain must be set")
        in_sync, host = await expose(ctx, SERVER_NAME, SERVER_NAME, GATEWAY_NAME, GATEWAY_PORT, requested)
        if not in_sync or not host:
            return ReconcileResult.requeue("Waiting for the che host")

        if cr.value("server.cheHost", "") != host:
            ctx.logger.info(f"Che host resolved to '{host}'")
            ctx.update_spec("server.cheHost", host)
        ctx.che_host = host
        ctx.update_status("cheURL", f"{cr.scheme}://{host}")
        return ReconcileResult()
