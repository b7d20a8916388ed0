"""
Keycloak identity provider.

An external provider only has its URL published in the status. A managed one
gets a Deployment, a Service and an external host; once it serves requests the
realm and the public client are provisioned with ``kcadm.sh`` executed in the
keycloak pod. On extended clusters with ``auth.openShiftoAuth`` an OAuthClient
lets users log in with their cluster account.
"""
import asyncio
import secrets
import string

from ....crds.const import (
    DEFAULT_IDENTITY_POSTGRES_SECRET,
    DEFAULT_IDENTITY_SECRET,
    KEYCLOAK_NAME,
    OAUTH_CLIENT_FINALIZER,
    POSTGRES_NAME,
)
from ....crds.exec import exec_in_pod
from ....errors import TransientError
from ....utils.kube import get_pod_by_labels
from ...platform.images import resolve_image
from ...sync import Kind
from ..context import DeployContext, ReconcileResult
from ..finalizers import append_finalizer, has_finalizer, remove_finalizer
from ..resources.common import build_service, labels, selector
from ..resources.deployment import (
    build_container,
    build_deployment,
    compute_resources,
    env_var,
    http_probe,
    pod_security_context,
    secret_env_var,
)
from .base import Reconciler, deployment_ready, expose, generate_password

KEYCLOAK_PORT = 8080
OAUTH_PROVIDER_ID = "openshift-v4"


def kcadm_script(flavor: str) -> str:
    if flavor == "codeready":
        return "/opt/eap/bin/kcadm.sh"
    return "/opt/jboss/keycloak/bin/kcadm.sh"


def admin_env(flavor: str):
    if flavor == "codeready":
        return "${SSO_ADMIN_USERNAME}", "${SSO_ADMIN_PASSWORD}"
    return "${KEYCLOAK_USER}", "${KEYCLOAK_PASSWORD}"


def realm_provision_command(ctx: DeployContext) -> str:
    """Shell command creating the realm, its theme and the public client."""
    cr = ctx.checluster
    flavor = cr.flavor
    kcadm = kcadm_script(flavor)
    user, password = admin_env(flavor)
    realm = cr.value("auth.identityProviderRealm") or flavor
    client_id = cr.value("auth.identityProviderClientId") or f"{flavor}-public"
    display_name = "CodeReady Workspaces" if cr.is_codeready else "Eclipse Che"
    theme = "rh-sso" if cr.is_codeready else "che"
    che_url = f"{cr.scheme}://{ctx.che_host}"
    required_actions = '"UPDATE_PASSWORD"' if cr.flag("auth.updateAdminPassword") else ""

    steps = [
        f"{kcadm} config credentials --server http://0.0.0.0:8080/auth --realm master --user {user} --password {password}",
        f"if {kcadm} get realms/{realm}; then echo 'Realm exists'; exit 0; fi",
        f"{kcadm} create realms -s realm='{realm}' -s displayName='{display_name}' -s enabled=true "
        f"-s registrationAllowed=false -s resetPasswordAllowed=true -s loginTheme={theme} -s accountTheme={theme}",
        f"{kcadm} create clients -r '{realm}' -s clientId={client_id} -s id={client_id} "
        f"-s webOrigins='[\"{che_url}\"]' -s redirectUris='[\"{che_url}/*\"]' "
        "-s directAccessGrantsEnabled=true -s publicClient=true",
        f"{kcadm} create users -r '{realm}' -s username=admin -s email=admin@admin.com -s enabled=true "
        f"-s requiredActions='[{required_actions}]'",
        f"{kcadm} set-password -r '{realm}' --username admin --new-password admin",
        f"{kcadm} add-roles -r '{realm}' --uusername admin --cclientid broker --rolename read-token",
    ]
    command = " && ".join(steps)
    if flavor != "codeready":
        command = "cd /scripts && export JAVA_TOOL_OPTIONS=-Duser.home=. && " + command
    return command


def oauth_provision_command(ctx: DeployContext, client_name: str, secret: str) -> str:
    cr = ctx.checluster
    flavor = cr.flavor
    kcadm = kcadm_script(flavor)
    user, password = admin_env(flavor)
    realm = cr.value("auth.identityProviderRealm") or flavor
    api_url = cr.value("auth.openShiftApiURL") or "https://kubernetes.default.svc"
    steps = [
        f"{kcadm} config credentials --server http://0.0.0.0:8080/auth --realm master --user {user} --password {password}",
        f"if {kcadm} get identity-provider/instances/{OAUTH_PROVIDER_ID} -r {realm}; then echo 'Provider exists'; exit 0; fi",
        f"{kcadm} create identity-provider/instances -r {realm} -s alias={OAUTH_PROVIDER_ID} "
        f"-s providerId={OAUTH_PROVIDER_ID} -s enabled=true -s storeToken=true -s addReadTokenRoleOnCreate=true "
        f"-s config.useJwksUrl=true -s config.clientId={client_name} -s config.clientSecret={secret} "
        f"-s config.baseUrl={api_url} -s config.defaultScope=user:full",
    ]
    command = " && ".join(steps)
    if flavor != "codeready":
        command = "cd /scripts && export JAVA_TOOL_OPTIONS=-Duser.home=. && " + command
    return command


def build_keycloak_deployment(ctx: DeployContext):
    cr = ctx.checluster
    flavor = cr.flavor
    admin_secret = cr.value("auth.identityProviderSecret") or DEFAULT_IDENTITY_SECRET
    postgres_secret = cr.value("auth.identityProviderPostgresSecret") or DEFAULT_IDENTITY_POSTGRES_SECRET
    user_var, password_var = ("SSO_ADMIN_USERNAME", "SSO_ADMIN_PASSWORD") if cr.is_codeready else (
        "KEYCLOAK_USER",
        "KEYCLOAK_PASSWORD",
    )
    env = [
        env_var("PROXY_ADDRESS_FORWARDING", "true"),
        env_var("DB_VENDOR", "POSTGRES"),
        env_var("DB_ADDR", cr.value("database.chePostgresHostName") or POSTGRES_NAME),
        env_var("DB_PORT", str(cr.value("database.chePostgresPort") or "5432")),
        env_var("DB_DATABASE", "keycloak"),
        env_var("DB_USER", "keycloak"),
        secret_env_var("DB_PASSWORD", postgres_secret, "password"),
        secret_env_var(user_var, admin_secret, "user"),
        secret_env_var(password_var, admin_secret, "password"),
        env_var("CHE_HOST", ctx.che_host),
    ]
    if ctx.proxy.enabled:
        env.append(env_var("HTTP_PROXY", ctx.proxy.http_proxy))
        env.append(env_var("HTTPS_PROXY", ctx.proxy.https_proxy))
        env.append(env_var("NO_PROXY", ctx.proxy.no_proxy_string))
    container = build_container(
        KEYCLOAK_NAME,
        resolve_image(ctx.images, cr, "keycloak"),
        port=KEYCLOAK_PORT,
        env=env,
        resources=compute_resources(cr, "keycloak"),
        readiness_probe=http_probe("/auth/js/keycloak.js", KEYCLOAK_PORT, 30),
        liveness_probe=http_probe("/auth/js/keycloak.js", KEYCLOAK_PORT, 300, failure_threshold=10),
    )
    container["ports"][0]["name"] = KEYCLOAK_NAME
    return build_deployment(
        KEYCLOAK_NAME,
        ctx.namespace,
        flavor,
        KEYCLOAK_NAME,
        [container],
        security_context=pod_security_context(cr, ctx.is_extended),
    )


def build_oauth_client(name: str, secret: str, keycloak_url: str, realm: str, flavor: str):
    return {
        "apiVersion": "oauth.openshift.io/v1",
        "kind": "OAuthClient",
        "metadata": {"name": name, "labels": labels(flavor, "oauth")},
        "secret": secret,
        "redirectURIs": [f"{keycloak_url}/realms/{realm}/broker/{OAUTH_PROVIDER_ID}/endpoint"],
        "grantMethod": "prompt",
    }


class IdentityProviderReconciler(Reconciler):
    name = "identity-provider"

    async def reconcile(self, ctx: DeployContext) -> ReconcileResult:
        cr = ctx.checluster
        if cr.external_identity_provider:
            ctx.update_status("keycloakURL", cr.value("auth.identityProviderURL"))
            return ReconcileResult()

        flavor = cr.flavor
        service = build_service(
            KEYCLOAK_NAME,
            ctx.namespace,
            selector(flavor, KEYCLOAK_NAME),
            [{"name": "http", "port": KEYCLOAK_PORT}],
            labels(flavor, KEYCLOAK_NAME),
        )
        service_synced = await ctx.syncer.sync(service)
        exposure_synced, host = await expose(
            ctx, KEYCLOAK_NAME, KEYCLOAK_NAME, KEYCLOAK_NAME, KEYCLOAK_PORT, cr.value("auth.identityProviderHost", "")
        )
        if not (service_synced and exposure_synced) or not host:
            return ReconcileResult.requeue("Waiting for the identity provider host")
        keycloak_url = f"{cr.scheme}://{host}/auth"
        ctx.update_status("keycloakURL", keycloak_url)

        if not await ctx.syncer.sync(build_keycloak_deployment(ctx)):
            return ReconcileResult.requeue("Waiting for the identity provider deployment")
        if not await deployment_ready(ctx, KEYCLOAK_NAME):
            return ReconcileResult.requeue("Waiting for the identity provider to become available", after=5)

        # Redirect URIs need the che host, published by a later step on first install
        if ctx.che_host and not ctx.status("keycloakProvisioned"):
            await self._exec(ctx, realm_provision_command(ctx), "provision the realm")
            ctx.update_status("keycloakProvisioned", True)

        if ctx.is_extended and cr.flag("auth.openShiftoAuth"):
            return await self._reconcile_oauth_client(ctx, keycloak_url)
        return ReconcileResult()

    async def _reconcile_oauth_client(self, ctx: DeployContext, keycloak_url: str) -> ReconcileResult:
        cr = ctx.checluster
        client_name = cr.value("auth.oAuthClientName")
        secret = cr.value("auth.oAuthSecret")
        if not client_name:
            suffix = "".join(secrets.choice(string.ascii_lowercase) for _ in range(6))
            client_name = f"{cr.flavor}-openshift-identity-provider-{suffix}"
            ctx.update_spec("auth.oAuthClientName", client_name)
        if not secret:
            secret = generate_password()
            ctx.update_spec("auth.oAuthSecret", secret)

        await append_finalizer(ctx, OAUTH_CLIENT_FINALIZER)
        realm = cr.value("auth.identityProviderRealm") or cr.flavor
        if not await ctx.syncer.sync(build_oauth_client(client_name, secret, keycloak_url, realm, cr.flavor)):
            return ReconcileResult.requeue("Waiting for the OAuth client")

        if not ctx.status("openShiftoAuthProvisioned"):
            await self._exec(ctx, oauth_provision_command(ctx, client_name, secret), "create the OpenShift identity provider")
            ctx.update_status("openShiftoAuthProvisioned", True)
        return ReconcileResult()

    async def _exec(self, ctx: DeployContext, command: str, action: str) -> None:
        pod = await asyncio.to_thread(
            get_pod_by_labels,
            ctx.cluster_api.core_v1,
            ctx.namespace,
            selector(ctx.checluster.flavor, KEYCLOAK_NAME),
        )
        if pod is None:
            raise TransientError("Identity provider pod is not running yet")
        ctx.logger.info(f"Identity provider: {action}")
        result = await asyncio.to_thread(
            exec_in_pod,
            ctx.cluster_api.core_v1,
            pod["metadata"]["name"],
            ctx.namespace,
            ["/bin/bash", "-c", command],
            timeout=ctx.config.exec_timeout,
        )
        if result.returncode != 0:
            raise TransientError(f"Failed to {action}: {result.output}")

    async def finalize(self, ctx: DeployContext) -> bool:
        if not has_finalizer(ctx, OAUTH_CLIENT_FINALIZER):
            return True
        client_name = ctx.checluster.value("auth.oAuthClientName")
        if client_name and not await ctx.syncer.delete(Kind.OAUTH_CLIENT, client_name):
            return False
        await remove_finalizer(ctx, OAUTH_CLIENT_FINALIZER)
        return True
