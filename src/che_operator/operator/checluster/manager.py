"""
Runs the CheCluster sub-reconcilers in order and finalizes them in reverse.
"""
from typing import List, Optional

from kubernetes import client

from ...crds.const import CLUSTER_RESOURCES_FINALIZER
from ...errors import CheOperatorError
from .context import DeployContext, ReconcileResult
from .finalizers import append_finalizer, remove_finalizer
from .reconcilers.base import Reconciler
from .reconcilers.certificates import CertificatesReconciler
from .reconcilers.dashboard import DashboardReconciler
from .reconcilers.database import DatabaseReconciler
from .reconcilers.defaults import DefaultsReconciler
from .reconcilers.devworkspace import DevWorkspaceReconciler
from .reconcilers.gateway import GatewayReconciler
from .reconcilers.host_exposure import HostExposureReconciler
from .reconcilers.identity_provider import IdentityProviderReconciler
from .reconcilers.permissions import PermissionsReconciler
from .reconcilers.registries import RegistriesReconciler
from .reconcilers.server import ServerConfigReconciler, ServerDeploymentReconciler

INSTALL_OR_UPDATE_FAILED = "InstallOrUpdateFailed"


def default_reconcilers() -> List[Reconciler]:
    return [
        DefaultsReconciler(),
        PermissionsReconciler(),
        CertificatesReconciler(),
        DatabaseReconciler(),
        IdentityProviderReconciler(),
        ServerConfigReconciler(),
        ServerDeploymentReconciler(),
        RegistriesReconciler(),
        GatewayReconciler(),
        DashboardReconciler(),
        HostExposureReconciler(),
        DevWorkspaceReconciler(),
    ]


class ReconcileManager:
    def __init__(self, reconcilers: Optional[List[Reconciler]] = None):
        self.reconcilers = reconcilers if reconcilers is not None else default_reconcilers()

    async def reconcile_all(self, ctx: DeployContext) -> ReconcileResult:
        """
        Runs every sub-reconciler until one is not done.

        A failing sub-reconciler is recorded in ``status.reason`` and
        ``status.message`` before its error propagates; the next pass that
        gets through every step clears both.
        """
        await append_finalizer(ctx, CLUSTER_RESOURCES_FINALIZER)

        for reconciler in self.reconcilers:
            try:
                result = await reconciler.reconcile(ctx)
            except (CheOperatorError, client.ApiException) as e:
                ctx.logger.error(f"Reconciler '{reconciler.name}' failed: {e}")
                ctx.update_status("reason", INSTALL_OR_UPDATE_FAILED)
                ctx.update_status("message", str(e))
                raise
            if not result.done:
                ctx.logger.debug(f"Reconciler '{reconciler.name}' not done: {result.reason}")
                return result

        if ctx.status("reason") == INSTALL_OR_UPDATE_FAILED:
            ctx.update_status("reason", "")
            ctx.update_status("message", "")
        return ReconcileResult()

    async def finalize_all(self, ctx: DeployContext) -> bool:
        """
        Finalizes every sub-reconciler, last one first.

        Returns:
            True when all of them are done and the CR finalizer was removed.
        """
        done = True
        for reconciler in reversed(self.reconcilers):
            try:
                finalized = await reconciler.finalize(ctx)
            except (CheOperatorError, client.ApiException) as e:
                ctx.logger.error(f"Finalization of '{reconciler.name}' failed: {e}")
                finalized = False
            if not finalized:
                done = False
                ctx.update_status("message", f"Finalization failed for reconciler: {reconciler.name}")

        if done:
            await remove_finalizer(ctx, CLUSTER_RESOURCES_FINALIZER)
        return done
