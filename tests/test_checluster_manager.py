from unittest.mock import AsyncMock, MagicMock, patch

import kopf
import pytest

from che_operator.crds.checluster import CheCluster, ChePhase
from che_operator.errors import NeedRetryError, TransientError, UnrecoverableError
from che_operator.operator.checluster.context import ClusterAPI, DeployContext, ReconcileResult
from che_operator.operator.checluster.finalizers import (
    append_finalizer,
    crb_finalizer_name,
    remove_finalizer,
)
from che_operator.operator.checluster.handler import reconcile_checluster, update_phase
from che_operator.operator.checluster.manager import INSTALL_OR_UPDATE_FAILED, ReconcileManager
from che_operator.operator.checluster.phase import DeploymentObservation, next_phase
from che_operator.operator.checluster.reconcilers.base import Reconciler
from che_operator.operator.config import config as operator_config
from che_operator.operator.platform.infrastructure import Infrastructure
from che_operator.operator.platform.templates import TemplateRegistry
from che_operator.operator.startup import ReadyOperator
from tests.conftest import TEST_NAMESPACE, api_exception
from tests.helpers import FakeCustomObjects

HANDLER = "che_operator.operator.checluster.handler"
FINALIZER = "cluster-resources.finalizers.che.eclipse.org"

CHECLUSTER = {
    "apiVersion": "org.eclipse.che/v1",
    "kind": "CheCluster",
    "metadata": {"name": "eclipse-che", "namespace": TEST_NAMESPACE, "resourceVersion": "1"},
    "spec": {"server": {"cheImageTag": "7.42.0"}},
    "status": {},
}


class StepReconciler(Reconciler):
    def __init__(self, name, result=None, error=None, finalized=True):
        self.name = name
        self.result = result or ReconcileResult()
        self.error = error
        self.finalized = finalized
        self.calls = []

    async def reconcile(self, ctx):
        self.calls.append("reconcile")
        if self.error:
            raise self.error
        return self.result

    async def finalize(self, ctx):
        self.calls.append("finalize")
        return self.finalized


@pytest.fixture
def store():
    return FakeCustomObjects([("checlusters", CHECLUSTER)])


@pytest.fixture
def ctx(store, logger):
    checluster = CheCluster.get("eclipse-che", TEST_NAMESPACE, store.api)
    apps_v1 = MagicMock()
    return DeployContext(
        checluster=checluster,
        cluster_api=ClusterAPI(
            infrastructure=Infrastructure.BASE,
            core_v1=MagicMock(),
            apps_v1=apps_v1,
            rbac_v1=MagicMock(),
            custom_objects=store.api,
        ),
        syncer=MagicMock(),
        templates=TemplateRegistry(tuple()),
        config=operator_config,
        logger=logger,
    )


def stored_checluster(store):
    return store.body("checlusters", TEST_NAMESPACE, "eclipse-che")


@pytest.mark.parametrize(
    "current, observation, expected",
    [
        ("", DeploymentObservation(desired=1, replicas=0, available=0), "Inactive"),
        ("Inactive", DeploymentObservation(desired=1, replicas=1, available=1), "Active"),
        ("Active", DeploymentObservation(desired=1, replicas=2, available=1), "RollingUpdate"),
        ("RollingUpdate", DeploymentObservation(desired=2, replicas=2, available=1), "RollingUpdate"),
        ("Active", DeploymentObservation(desired=1, replicas=1, available=0), "Inactive"),
    ],
)
def test_next_phase(current, observation, expected):
    assert next_phase(current, observation) == expected


def test_crb_finalizer_name_is_bounded():
    name = crb_finalizer_name("Eclipse-Che-" + "x" * 80)
    assert len(name) <= 63
    assert name == name.lower()


@pytest.mark.asyncio
async def test_reconcile_all_runs_in_order(ctx, store, inline_threads):
    steps = [StepReconciler("one"), StepReconciler("two")]
    result = await ReconcileManager(steps).reconcile_all(ctx)

    assert result.done
    assert [s.calls for s in steps] == [["reconcile"], ["reconcile"]]
    assert FINALIZER in stored_checluster(store)["metadata"]["finalizers"]


@pytest.mark.asyncio
async def test_reconcile_all_stops_at_first_pending_step(ctx, inline_threads):
    steps = [StepReconciler("one", result=ReconcileResult.requeue("waiting for db", after=3)), StepReconciler("two")]
    result = await ReconcileManager(steps).reconcile_all(ctx)

    assert not result.done
    assert result.requeue_after == 3
    assert steps[1].calls == []


@pytest.mark.asyncio
async def test_reconcile_all_records_failure_and_clears_it(ctx, inline_threads):
    failing = StepReconciler("database", error=UnrecoverableError("bad database config"))
    with pytest.raises(UnrecoverableError):
        await ReconcileManager([failing]).reconcile_all(ctx)
    assert ctx.status_patch == {"reason": INSTALL_OR_UPDATE_FAILED, "message": "bad database config"}

    ctx.status_patch = {}
    await ReconcileManager([StepReconciler("database")]).reconcile_all(ctx)
    assert ctx.status_patch == {"reason": "", "message": ""}


@pytest.mark.asyncio
async def test_finalize_all_runs_in_reverse(ctx, store, inline_threads):
    order = []

    class Recording(StepReconciler):
        async def finalize(self, ctx):
            order.append(self.name)
            return self.finalized

    steps = [Recording("one"), Recording("two", finalized=False)]
    await append_finalizer(ctx, FINALIZER)
    assert await ReconcileManager(steps).finalize_all(ctx) is False
    assert order == ["two", "one"]
    assert ctx.status_patch["message"] == "Finalization failed for reconciler: two"
    assert FINALIZER in stored_checluster(store)["metadata"]["finalizers"]

    steps[1].finalized = True
    assert await ReconcileManager(steps).finalize_all(ctx) is True
    assert FINALIZER not in stored_checluster(store)["metadata"].get("finalizers", [])


@pytest.mark.asyncio
async def test_finalizer_update_retries_conflicts(ctx, store, inline_threads):
    calls = {"n": 0}

    def conflict_once(**kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise api_exception(409)
        return store.patch(**kwargs)

    store.api.patch_namespaced_custom_object.side_effect = conflict_once
    await append_finalizer(ctx, "one.che.eclipse.org")
    assert calls["n"] == 2
    assert ctx.checluster.metadata.finalizers == ["one.che.eclipse.org"]

    store.api.patch_namespaced_custom_object.side_effect = api_exception(409)
    with pytest.raises(NeedRetryError):
        await remove_finalizer(ctx, "one.che.eclipse.org")


@pytest.mark.asyncio
async def test_update_phase_publishes_version(ctx, inline_threads):
    ctx.cluster_api.apps_v1.read_namespaced_deployment.return_value = {
        "spec": {"replicas": 1},
        "status": {"replicas": 1, "availableReplicas": 1},
    }
    await update_phase(ctx)
    assert ctx.status_patch["chePhase"] == ChePhase.ACTIVE.value
    assert ctx.status_patch["cheVersion"] == "7.42.0"


@pytest.mark.asyncio
async def test_reconcile_checluster_flushes_status(ctx, store, logger, inline_threads):
    memo = kopf.Memo()
    memo["ready"] = ReadyOperator(infrastructure=Infrastructure.BASE, templates=TemplateRegistry(tuple()))

    async def build(body, checluster, ready, log):
        ctx.checluster = checluster
        return ctx

    manager = MagicMock()
    manager.reconcile_all = AsyncMock(return_value=ReconcileResult())
    ctx.cluster_api.apps_v1.read_namespaced_deployment.side_effect = api_exception(404)
    with patch(f"{HANDLER}.build_context", side_effect=build), patch(f"{HANDLER}.manager", manager):
        await reconcile_checluster(CHECLUSTER, logger, memo, custom_objects_api=store.api)

    assert stored_checluster(store)["status"]["chePhase"] == "Inactive"


@pytest.mark.asyncio
async def test_reconcile_checluster_errors(ctx, store, logger, inline_threads):
    memo = kopf.Memo()
    memo["ready"] = ReadyOperator(infrastructure=Infrastructure.BASE, templates=TemplateRegistry(tuple()))

    async def build(body, checluster, ready, log):
        ctx.checluster = checluster
        return ctx

    manager = MagicMock()
    with patch(f"{HANDLER}.build_context", side_effect=build), patch(f"{HANDLER}.manager", manager):
        manager.reconcile_all = AsyncMock(return_value=ReconcileResult.requeue("waiting", after=4))
        with pytest.raises(kopf.TemporaryError) as exc_info:
            await reconcile_checluster(CHECLUSTER, logger, memo, custom_objects_api=store.api)
        assert exc_info.value.delay == 4

        manager.reconcile_all = AsyncMock(side_effect=TransientError("busy", delay=9))
        with pytest.raises(kopf.TemporaryError):
            await reconcile_checluster(CHECLUSTER, logger, memo, custom_objects_api=store.api)

        manager.reconcile_all = AsyncMock(side_effect=UnrecoverableError("invalid CR"))
        with pytest.raises(kopf.PermanentError, match="invalid CR"):
            await reconcile_checluster(CHECLUSTER, logger, memo, custom_objects_api=store.api)

    assert stored_checluster(store)["status"]["chePhase"] == "Failed"


@pytest.mark.asyncio
async def test_reconcile_checluster_gone(logger, inline_threads):
    memo = kopf.Memo()
    memo["ready"] = MagicMock()
    store = FakeCustomObjects()
    with patch(f"{HANDLER}.build_context") as build:
        await reconcile_checluster(CHECLUSTER, logger, memo, custom_objects_api=store.api)
    build.assert_not_called()
