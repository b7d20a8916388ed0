from ....crds.const import DASHBOARD_NAME, SERVER_SERVICE_NAME
from ...platform.images import resolve_image
from ..context import DeployContext, ReconcileResult
from ..resources.common import build_service, labels, selector
from ..resources.deployment import (
    build_container,
    build_deployment,
    compute_resources,
    env_var,
    http_probe,
    pod_security_context,
)
from .base import Reconciler, sync_all

DASHBOARD_PORT = 8080


def build_dashboard_deployment(ctx: DeployContext):
    cr = ctx.checluster
    env = [
        env_var("CHE_HOST", ctx.che_host),
        env_var("CHE_URL", f"{cr.scheme}://{ctx.che_host}"),
        env_var("CHE_INTERNAL_URL", f"http://{SERVER_SERVICE_NAME}.{ctx.namespace}.svc:8080/api"),
    ]
    container = build_container(
        DASHBOARD_NAME,
        resolve_image(ctx.images, cr, "dashboard"),
        port=DASHBOARD_PORT,
        env=env,
        resources=compute_resources(cr, "dashboard"),
        readiness_probe=http_probe("/dashboard/", DASHBOARD_PORT, 3),
        liveness_probe=http_probe("/dashboard/", DASHBOARD_PORT, 30),
    )
    return build_deployment(
        DASHBOARD_NAME,
        ctx.namespace,
        cr.flavor,
        DASHBOARD_NAME,
        [container],
        security_context=pod_security_context(cr, ctx.is_extended),
    )


class DashboardReconciler(Reconciler):
    name = "dashboard"

    async def reconcile(self, ctx: DeployContext) -> ReconcileResult:
        flavor = ctx.checluster.flavor
        objects = [
            build_service(
                DASHBOARD_NAME,
                ctx.namespace,
                selector(flavor, DASHBOARD_NAME),
                [{"name": "http", "port": DASHBOARD_PORT}],
                labels(flavor, DASHBOARD_NAME),
            ),
            build_dashboard_deployment(ctx),
        ]
        if not await sync_all(ctx, objects):
            return ReconcileResult.requeue("Waiting for the dashboard")
        return ReconcileResult()
