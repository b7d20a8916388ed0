"""
Cluster scoped permissions of the che service account.

Cluster roles and bindings cannot carry an owner reference to a namespaced
CR, so they are named after the CR namespace and removed by ``finalize``.
Bindings to user supplied cluster roles are tracked with one finalizer each.
"""
from typing import Any, Dict, List

from ....crds.const import (
    CRB_FINALIZER_SUFFIX,
    DEFAULT_CHE_SERVICE_ACCOUNT,
    KUBERNETES_COMPONENT_LABEL,
    KUBERNETES_PART_OF_LABEL,
    CHE_ECLIPSE_ORG,
    MAX_FINALIZER_LENGTH,
)
from ...sync import Kind
from ..context import DeployContext, ReconcileResult
from ..finalizers import crb_finalizer_name, remove_finalizer, append_finalizer
from ..resources.common import labels
from ..resources.rbac import (
    build_cluster_role,
    build_cluster_role_binding,
    build_service_account,
    rule,
)
from .base import Reconciler, sync_all

USER_CLUSTER_ROLE_COMPONENT = "user-cluster-role"


def workspaces_cluster_role(namespace: str) -> str:
    return f"{namespace}-cheworkspaces-clusterrole"


def namespaces_cluster_role(namespace: str) -> str:
    return f"{namespace}-cheworkspaces-namespaces-clusterrole"


def devworkspace_cluster_role(namespace: str) -> str:
    return f"{namespace}-cheworkspaces-devworkspace-clusterrole"


def user_role_binding_name(namespace: str, role: str) -> str:
    return f"{namespace}-che-{role}"


def workspace_policy_rules(is_extended: bool) -> List[Dict[str, Any]]:
    """Permissions the che server needs to run workspaces in user namespaces."""
    rules = [
        rule([""], ["serviceaccounts"], ["get", "create", "watch"]),
        rule([""], ["pods/exec"], ["get", "create"]),
        rule([""], ["pods/log"], ["get", "watch", "list"]),
        rule([""], ["persistentvolumeclaims", "configmaps"], ["list"]),
        rule([""], ["secrets"], ["list", "create", "delete"]),
        rule([""], ["persistentvolumeclaims"], ["get", "create", "watch"]),
        rule([""], ["pods"], ["get", "list", "create", "watch", "delete"]),
        rule([""], ["services"], ["create", "list", "delete"]),
        rule([""], ["configmaps"], ["get", "create", "delete"]),
        rule([""], ["events"], ["watch"]),
        rule(["apps"], ["secrets"], ["list"]),
        rule(["apps"], ["deployments"], ["get", "create", "list", "watch", "patch", "delete"]),
        rule(["apps"], ["replicasets"], ["list", "get", "patch", "delete"]),
        rule(["extensions", "networking.k8s.io"], ["ingresses"], ["list", "create", "watch", "get", "delete"]),
        rule(["rbac.authorization.k8s.io"], ["roles", "rolebindings"], ["get", "update", "create"]),
        rule(["metrics.k8s.io"], ["pods", "nodes"], ["list", "get", "watch"]),
    ]
    if is_extended:
        rules.extend(
            [
                rule(["route.openshift.io"], ["routes"], ["list", "create", "delete"]),
                rule(["authorization.openshift.io"], ["roles", "rolebindings"], ["get", "update", "create"]),
            ]
        )
    return rules


def namespaces_policy_rules(is_extended: bool) -> List[Dict[str, Any]]:
    rules = [rule([""], ["namespaces"], ["get", "create", "update"])]
    if is_extended:
        rules.extend(
            [
                rule(["project.openshift.io"], ["projectrequests"], ["create"]),
                rule(["project.openshift.io"], ["projects"], ["get"]),
            ]
        )
    return rules


def devworkspace_policy_rules() -> List[Dict[str, Any]]:
    verbs = ["get", "create", "delete", "list", "update", "patch", "watch"]
    return [
        rule(["workspace.devfile.io"], ["devworkspaces", "devworkspacetemplates"], verbs),
        rule(["controller.devfile.io"], ["devworkspaceroutings", "devworkspaceoperatorconfigs"], verbs),
    ]


class PermissionsReconciler(Reconciler):
    name = "permissions"

    def _cluster_roles(self, ctx: DeployContext) -> Dict[str, List[Dict[str, Any]]]:
        ns = ctx.namespace
        return {
            workspaces_cluster_role(ns): workspace_policy_rules(ctx.is_extended),
            namespaces_cluster_role(ns): namespaces_policy_rules(ctx.is_extended),
            devworkspace_cluster_role(ns): devworkspace_policy_rules(),
        }

    async def reconcile(self, ctx: DeployContext) -> ReconcileResult:
        ns = ctx.namespace
        flavor = ctx.checluster.flavor
        object_labels = labels(flavor, "che-workspaces")

        objects = [build_service_account(DEFAULT_CHE_SERVICE_ACCOUNT, ns, labels(flavor, "che"))]
        for role_name, rules in self._cluster_roles(ctx).items():
            objects.append(build_cluster_role(role_name, rules, object_labels))
            objects.append(
                build_cluster_role_binding(
                    role_name, role_name, DEFAULT_CHE_SERVICE_ACCOUNT, ns, object_labels
                )
            )
        if not await sync_all(ctx, objects):
            return ReconcileResult.requeue("Waiting for workspace permissions")

        if not await self._reconcile_user_roles(ctx):
            return ReconcileResult.requeue("Waiting for user cluster role bindings")
        return ReconcileResult()

    async def _reconcile_user_roles(self, ctx: DeployContext) -> bool:
        ns = ctx.namespace
        roles = ctx.checluster.cluster_roles
        user_labels = labels(ctx.checluster.flavor, USER_CLUSTER_ROLE_COMPONENT)
        in_sync = True

        for role in roles:
            await append_finalizer(ctx, crb_finalizer_name(role))
            binding = build_cluster_role_binding(
                user_role_binding_name(ns, role), role, DEFAULT_CHE_SERVICE_ACCOUNT, ns, user_labels
            )
            if not await ctx.syncer.sync(binding):
                in_sync = False

        # Bindings whose role was removed from the CR
        wanted = {crb_finalizer_name(r) for r in roles}
        for binding in await self._user_bindings(ctx):
            role = binding.get("roleRef", {}).get("name", "")
            if role in roles:
                continue
            ctx.logger.info(f"Cluster role '{role}' was removed from the CR, deleting its binding")
            await ctx.syncer.delete(Kind.CLUSTER_ROLE_BINDING, binding["metadata"]["name"])
            await remove_finalizer(ctx, crb_finalizer_name(role))
            in_sync = False
        for finalizer in list(ctx.checluster.metadata.finalizers):
            if _is_crb_finalizer(finalizer) and finalizer not in wanted:
                await remove_finalizer(ctx, finalizer)
        return in_sync

    async def _user_bindings(self, ctx: DeployContext) -> List[Dict[str, Any]]:
        bindings = await ctx.syncer.list(
            Kind.CLUSTER_ROLE_BINDING,
            None,
            {
                KUBERNETES_PART_OF_LABEL: CHE_ECLIPSE_ORG,
                KUBERNETES_COMPONENT_LABEL: USER_CLUSTER_ROLE_COMPONENT,
            },
        )
        prefix = f"{ctx.namespace}-che-"
        return [b for b in bindings if b.get("metadata", {}).get("name", "").startswith(prefix)]

    async def finalize(self, ctx: DeployContext) -> bool:
        ns = ctx.namespace
        for role_name in self._cluster_roles(ctx):
            await ctx.syncer.delete(Kind.CLUSTER_ROLE_BINDING, role_name)
            await ctx.syncer.delete(Kind.CLUSTER_ROLE, role_name)

        known = {crb_finalizer_name(r) for r in ctx.checluster.cluster_roles}
        for binding in await self._user_bindings(ctx):
            known.add(crb_finalizer_name(binding.get("roleRef", {}).get("name", "")))
            await ctx.syncer.delete(Kind.CLUSTER_ROLE_BINDING, binding["metadata"]["name"])
        for role in ctx.checluster.cluster_roles:
            await ctx.syncer.delete(Kind.CLUSTER_ROLE_BINDING, user_role_binding_name(ns, role))
        for finalizer in list(ctx.checluster.metadata.finalizers):
            if finalizer in known or _is_crb_finalizer(finalizer):
                await remove_finalizer(ctx, finalizer)
        return True


def _is_crb_finalizer(finalizer: str) -> bool:
    if finalizer.endswith(CRB_FINALIZER_SUFFIX):
        return True
    if len(finalizer) != MAX_FINALIZER_LENGTH:
        return False
    # Names cut at the length limit keep only a leading part of the suffix
    return any(
        finalizer.endswith(CRB_FINALIZER_SUFFIX[:size]) for size in range(1, len(CRB_FINALIZER_SUFFIX))
    )
