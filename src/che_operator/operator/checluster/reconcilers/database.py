"""
PostgreSQL database of the che server and the identity provider.
"""
import asyncio

from ....crds.const import (
    DEFAULT_IDENTITY_POSTGRES_SECRET,
    DEFAULT_POSTGRES_DB,
    DEFAULT_POSTGRES_PVC,
    DEFAULT_POSTGRES_PVC_SIZE,
    DEFAULT_POSTGRES_SECRET,
    POSTGRES_NAME,
)
from ....crds.exec import exec_in_pod
from ....errors import TransientError, UnrecoverableError
from ....utils.kube import get_pod_by_labels
from ...platform.images import resolve_image
from ..context import DeployContext, ReconcileResult
from ..resources.common import build_pvc, build_service, labels, selector
from ..resources.deployment import (
    build_container,
    build_deployment,
    compute_resources,
    env_var,
    pod_security_context,
    secret_env_var,
)
from .base import Reconciler, deployment_ready, read_secret_data, sync_all

POSTGRES_PORT = 5432
POSTGRES_DATA_PATH = "/var/lib/pgsql/data"


def provision_keycloak_db_script(password: str) -> str:
    """Creates the keycloak role and database unless the role already exists."""
    return (
        "OUT=$(psql postgres -tAc \"SELECT 1 FROM pg_roles WHERE rolname='keycloak'\"); "
        "if [ \"$OUT\" = \"1\" ]; then echo 'DB exists'; exit 0; fi "
        f"&& psql -c \"CREATE USER keycloak WITH PASSWORD '{password}'\" "
        "&& psql -c \"CREATE DATABASE keycloak\" "
        "&& psql -c \"GRANT ALL PRIVILEGES ON DATABASE keycloak TO keycloak\" "
        "&& psql -c \"ALTER USER ${POSTGRESQL_USER} WITH SUPERUSER\""
    )


def build_postgres_deployment(ctx: DeployContext):
    cr = ctx.checluster
    database = cr.value("database.chePostgresDb") or DEFAULT_POSTGRES_DB
    credentials = cr.postgres_secret or DEFAULT_POSTGRES_SECRET
    probe = {
        "exec": {
            "command": [
                "/bin/sh",
                "-i",
                "-c",
                f"psql -h 127.0.0.1 -U $POSTGRESQL_USER -q -d {database} -c 'SELECT 1'",
            ]
        },
        "initialDelaySeconds": 15,
        "periodSeconds": 10,
        "timeoutSeconds": 5,
        "failureThreshold": 10,
        "successThreshold": 1,
    }
    liveness = {
        "tcpSocket": {"port": POSTGRES_PORT},
        "initialDelaySeconds": 30,
        "periodSeconds": 10,
        "timeoutSeconds": 5,
        "failureThreshold": 10,
        "successThreshold": 1,
    }
    container = build_container(
        POSTGRES_NAME,
        resolve_image(ctx.images, cr, "postgres"),
        port=POSTGRES_PORT,
        env=[
            env_var("POSTGRESQL_DATABASE", database),
            secret_env_var("POSTGRESQL_USER", credentials, "user"),
            secret_env_var("POSTGRESQL_PASSWORD", credentials, "password"),
        ],
        resources=compute_resources(cr, "postgres"),
        readiness_probe=probe,
        liveness_probe=liveness,
        volume_mounts=[{"name": DEFAULT_POSTGRES_PVC, "mountPath": POSTGRES_DATA_PATH}],
    )
    container["ports"][0]["name"] = "postgres"
    return build_deployment(
        POSTGRES_NAME,
        ctx.namespace,
        cr.flavor,
        POSTGRES_NAME,
        [container],
        volumes=[
            {"name": DEFAULT_POSTGRES_PVC, "persistentVolumeClaim": {"claimName": DEFAULT_POSTGRES_PVC}}
        ],
        security_context=pod_security_context(cr, ctx.is_extended),
        strategy="Recreate",
    )


class DatabaseReconciler(Reconciler):
    name = "database"

    async def reconcile(self, ctx: DeployContext) -> ReconcileResult:
        cr = ctx.checluster
        if cr.external_db:
            secret = cr.postgres_secret
            if secret and await read_secret_data(ctx, secret) is None:
                raise UnrecoverableError(f"Database credentials secret '{secret}' not found")
            return ReconcileResult()

        flavor = cr.flavor
        objects = [
            build_pvc(
                DEFAULT_POSTGRES_PVC,
                ctx.namespace,
                cr.value("database.pvcClaimSize") or DEFAULT_POSTGRES_PVC_SIZE,
                cr.value("database.postgresPVCStorageClassName") or cr.value("storage.postgresPVCStorageClassName"),
                labels(flavor, POSTGRES_NAME),
            ),
            build_service(
                POSTGRES_NAME,
                ctx.namespace,
                selector(flavor, POSTGRES_NAME),
                [{"name": POSTGRES_NAME, "port": POSTGRES_PORT}],
                labels(flavor, POSTGRES_NAME),
            ),
            build_postgres_deployment(ctx),
        ]
        if not await sync_all(ctx, objects):
            return ReconcileResult.requeue("Waiting for the database deployment")

        if not await deployment_ready(ctx, POSTGRES_NAME):
            return ReconcileResult.requeue("Waiting for the database to become available", after=5)

        if not cr.external_identity_provider and not ctx.status("dbProvisioned"):
            await self._provision(ctx)
        return ReconcileResult()

    async def _provision(self, ctx: DeployContext) -> None:
        cr = ctx.checluster
        secret_name = cr.value("auth.identityProviderPostgresSecret") or DEFAULT_IDENTITY_POSTGRES_SECRET
        credentials = await read_secret_data(ctx, secret_name)
        if credentials is None:
            raise UnrecoverableError(f"Secret '{secret_name}' not found")

        pod = await asyncio.to_thread(
            get_pod_by_labels, ctx.cluster_api.core_v1, ctx.namespace, selector(cr.flavor, POSTGRES_NAME)
        )
        if pod is None:
            raise TransientError("Database pod is not running yet")

        ctx.logger.info("Provisioning the identity provider database")
        result = await asyncio.to_thread(
            exec_in_pod,
            ctx.cluster_api.core_v1,
            pod["metadata"]["name"],
            ctx.namespace,
            ["/bin/bash", "-c", provision_keycloak_db_script(credentials.get("password", ""))],
            timeout=ctx.config.exec_timeout,
        )
        if result.returncode != 0:
            raise TransientError(f"Failed to provision the identity provider database: {result.output}")
        ctx.update_status("dbProvisioned", True)
