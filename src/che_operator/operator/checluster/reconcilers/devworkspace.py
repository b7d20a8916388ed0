"""
DevWorkspace controller installed from the bundled templates.
"""
from typing import Any, Dict

from ....utils.kube import deployment_availability
from ...sync import Kind
from ..context import DeployContext, ReconcileResult
from .base import Reconciler

DEVWORKSPACE_NAMESPACE = "devworkspace-controller"
DEVWORKSPACE_TEMPLATE_GROUP = "devworkspace"
DEVWORKSPACE_CONTROLLER = "devworkspace-controller"
DEVWORKSPACE_DEPLOYMENT = "devworkspace-controller-manager"


def override_image(obj: Dict[str, Any], image: str) -> None:
    """Points the controller container of the manager deployment at ``image``."""
    if obj.get("kind") != "Deployment" or obj["metadata"]["name"] != DEVWORKSPACE_DEPLOYMENT:
        return
    for container in obj["spec"]["template"]["spec"].get("containers", []):
        if container["name"] == DEVWORKSPACE_CONTROLLER:
            container["image"] = image


class DevWorkspaceReconciler(Reconciler):
    name = "devworkspace"

    async def reconcile(self, ctx: DeployContext) -> ReconcileResult:
        if not ctx.checluster.devworkspace_enabled:
            return ReconcileResult()

        templates = ctx.templates.group(DEVWORKSPACE_TEMPLATE_GROUP)
        if not templates:
            ctx.logger.warning("No DevWorkspace templates bundled, skipping DevWorkspace installation")
            return ReconcileResult()

        in_sync = True
        for template in templates:
            obj = template.render(DEVWORKSPACE_NAMESPACE)
            override_image(obj, ctx.images["devworkspace_controller"])
            if not await ctx.syncer.sync(obj):
                in_sync = False
        if not in_sync:
            ctx.update_status("devworkspaceStatus", "Deploying")
            return ReconcileResult.requeue("Waiting for the DevWorkspace controller objects")

        deployment = await ctx.syncer.get(Kind.DEPLOYMENT, DEVWORKSPACE_DEPLOYMENT, DEVWORKSPACE_NAMESPACE)
        available = bool(deployment) and deployment_availability(deployment)["available"] > 0
        ctx.update_status("devworkspaceStatus", "Available" if available else "Deploying")
        return ReconcileResult()
