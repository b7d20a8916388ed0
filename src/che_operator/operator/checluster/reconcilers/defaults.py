"""
Fills unset CheCluster fields and generates the persisted credentials of a
managed installation.
"""
from ....crds.const import (
    DEFAULT_CHE_FLAVOR,
    DEFAULT_CHE_LOG_LEVEL,
    DEFAULT_IDENTITY_ADMIN_USER,
    DEFAULT_IDENTITY_POSTGRES_SECRET,
    DEFAULT_IDENTITY_SECRET,
    DEFAULT_INGRESS_CLASS,
    DEFAULT_POSTGRES_DB,
    DEFAULT_POSTGRES_HOST,
    DEFAULT_POSTGRES_PORT,
    DEFAULT_POSTGRES_PVC_SIZE,
    DEFAULT_POSTGRES_SECRET,
    DEFAULT_POSTGRES_USER,
    DEFAULT_PVC_STRATEGY,
    DEFAULT_WORKSPACE_PVC_SIZE,
)
from ....errors import UnrecoverableError
from ...platform.images import default_image_tag
from ..context import DeployContext, ReconcileResult
from ..resources.common import build_secret, labels
from .base import Reconciler, generate_password


class DefaultsReconciler(Reconciler):
    name = "defaults"

    async def reconcile(self, ctx: DeployContext) -> ReconcileResult:
        cr = ctx.checluster

        self._default(ctx, "server.cheFlavor", DEFAULT_CHE_FLAVOR)
        self._default(ctx, "server.cheLogLevel", DEFAULT_CHE_LOG_LEVEL)
        if cr.value("server.cheImage") and not cr.value("server.cheImageTag"):
            ctx.update_spec("server.cheImageTag", default_image_tag(ctx.images, "che_server"))
        self._default(ctx, "storage.pvcStrategy", DEFAULT_PVC_STRATEGY)
        self._default(ctx, "storage.pvcClaimSize", DEFAULT_WORKSPACE_PVC_SIZE)
        if not ctx.is_extended:
            self._default(ctx, "k8s.ingressClass", DEFAULT_INGRESS_CLASS)
        if cr.value("auth.openShiftoAuth") is None:
            ctx.update_spec("auth.openShiftoAuth", ctx.is_extended and not cr.external_identity_provider)

        if not cr.external_db:
            self._default(ctx, "database.chePostgresHostName", DEFAULT_POSTGRES_HOST)
            self._default(ctx, "database.chePostgresPort", DEFAULT_POSTGRES_PORT)
            self._default(ctx, "database.chePostgresDb", DEFAULT_POSTGRES_DB)
            self._default(ctx, "database.pvcClaimSize", DEFAULT_POSTGRES_PVC_SIZE)
            if not cr.postgres_secret:
                await self._ensure_credentials(
                    ctx,
                    DEFAULT_POSTGRES_SECRET,
                    "postgres",
                    {"user": DEFAULT_POSTGRES_USER, "password": generate_password()},
                )
                ctx.update_spec("database.chePostgresSecret", DEFAULT_POSTGRES_SECRET)

        if cr.external_identity_provider:
            if not cr.value("auth.identityProviderURL"):
                raise UnrecoverableError(
                    "External identity provider URL must be set when an external identity provider is used"
                )
        else:
            if cr.value("auth.identityProviderURL"):
                # The managed identity provider publishes its URL in the status
                ctx.update_spec("auth.identityProviderURL", "")
            self._default(ctx, "auth.identityProviderRealm", cr.flavor)
            self._default(ctx, "auth.identityProviderClientId", f"{cr.flavor}-public")
            if not cr.value("auth.identityProviderSecret"):
                await self._ensure_credentials(
                    ctx,
                    DEFAULT_IDENTITY_SECRET,
                    "keycloak",
                    {"user": DEFAULT_IDENTITY_ADMIN_USER, "password": generate_password()},
                )
                ctx.update_spec("auth.identityProviderSecret", DEFAULT_IDENTITY_SECRET)
            if not cr.value("auth.identityProviderPostgresSecret"):
                await self._ensure_credentials(
                    ctx,
                    DEFAULT_IDENTITY_POSTGRES_SECRET,
                    "keycloak",
                    {"password": generate_password()},
                )
                ctx.update_spec("auth.identityProviderPostgresSecret", DEFAULT_IDENTITY_POSTGRES_SECRET)

        if ctx.spec_patch:
            ctx.logger.info(f"Defaults applied to CheCluster '{cr.name}': {sorted(_leaves(ctx.spec_patch))}")
        return ReconcileResult()

    @staticmethod
    def _default(ctx: DeployContext, path: str, value) -> None:
        if ctx.checluster.value(path) in (None, ""):
            ctx.update_spec(path, value)

    @staticmethod
    async def _ensure_credentials(ctx: DeployContext, name: str, component: str, data) -> None:
        """Creates a credentials secret once; an existing one is never overwritten."""
        secret = build_secret(name, ctx.namespace, data, labels(ctx.checluster.flavor, component))
        existed = await ctx.syncer.create_if_not_exists(secret)
        if not existed:
            ctx.logger.info(f"Generated credentials secret '{name}'")


def _leaves(tree, prefix=""):
    for key, value in tree.items():
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            yield from _leaves(value, path)
        else:
            yield path
