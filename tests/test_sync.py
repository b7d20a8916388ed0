import copy

import pytest

from che_operator.crds.const import HASH_ANNOTATION, NAMESPACE_ANNOTATION
from che_operator.errors import NeedRetryError, UnrecoverableSyncError
from che_operator.operator.checluster.resources.common import build_config_map, build_secret
from che_operator.operator.sync import Kind, Syncer, compute_hash
from tests.conftest import TEST_NAMESPACE, api_exception
from tests.helpers import merge_patch

OWNER = {
    "apiVersion": "org.eclipse.che/v1",
    "kind": "CheCluster",
    "metadata": {"name": "eclipse-che", "namespace": TEST_NAMESPACE, "uid": "uid-1"},
}


class FakeTypedClient:
    """Keeps objects of one kind in memory, keyed by namespace and name."""

    def __init__(self):
        self.objects = {}
        self.calls = []

    def read(self, name, namespace):
        self.calls.append(("read", name))
        if (namespace, name) not in self.objects:
            raise api_exception(404)
        return copy.deepcopy(self.objects[(namespace, name)])

    def create(self, namespace, body):
        self.calls.append(("create", body["metadata"]["name"]))
        if (namespace, body["metadata"]["name"]) in self.objects:
            raise api_exception(409)
        self.objects[(namespace, body["metadata"]["name"])] = copy.deepcopy(body)

    def replace(self, name, namespace, body):
        self.calls.append(("replace", name))
        self.objects[(namespace, name)] = copy.deepcopy(body)

    def patch(self, name, namespace, body):
        self.calls.append(("patch", name))
        merge_patch(self.objects[(namespace, name)], body)

    def delete(self, name, namespace):
        self.calls.append(("delete", name))
        if (namespace, name) not in self.objects:
            raise api_exception(404)
        del self.objects[(namespace, name)]

    def list(self, namespace, label_selector=""):
        return [copy.deepcopy(o) for (ns, _), o in self.objects.items() if ns == namespace]


@pytest.fixture
def typed():
    return FakeTypedClient()


@pytest.fixture
def syncer(typed, logger):
    return Syncer(
        "eclipse-che",
        owner=OWNER,
        logger=logger,
        clients={Kind.CONFIG_MAP: typed, Kind.SECRET: typed},
    )


def config_map(data):
    return build_config_map("che", TEST_NAMESPACE, data, object_labels={"app": "che"})


def test_compute_hash_ignores_sync_annotations():
    obj = config_map({"a": "1"})
    annotated = copy.deepcopy(obj)
    annotated["metadata"]["annotations"] = {HASH_ANNOTATION: "x", NAMESPACE_ANNOTATION: "y"}
    assert compute_hash(annotated) == compute_hash(dict(obj, metadata=dict(obj["metadata"], annotations={})))


def test_prepare_sets_owner_and_annotations(syncer):
    obj = syncer.prepare(config_map({"a": "1"}))
    assert obj["apiVersion"] == "v1"
    assert obj["metadata"]["ownerReferences"][0]["uid"] == "uid-1"
    assert obj["metadata"]["annotations"][NAMESPACE_ANNOTATION] == "eclipse-che"
    assert HASH_ANNOTATION in obj["metadata"]["annotations"]


def test_prepare_skips_owner_in_other_namespace(syncer):
    obj = syncer.prepare(build_config_map("che", "other", {}))
    assert "ownerReferences" not in obj["metadata"]


@pytest.mark.asyncio
async def test_sync_creates_then_reports_in_sync(syncer, typed, inline_threads):
    assert await syncer.sync(config_map({"a": "1"})) is False
    assert (TEST_NAMESPACE, "che") in typed.objects
    assert await syncer.sync(config_map({"a": "1"})) is True
    assert [c[0] for c in typed.calls].count("create") == 1


@pytest.mark.asyncio
async def test_sync_updates_changed_object(syncer, typed, inline_threads):
    await syncer.sync(config_map({"a": "1"}))
    typed.objects[(TEST_NAMESPACE, "che")]["metadata"]["resourceVersion"] = "7"

    assert await syncer.sync(config_map({"a": "2"})) is False
    stored = typed.objects[(TEST_NAMESPACE, "che")]
    assert stored["data"] == {"a": "2"}
    assert stored["metadata"]["resourceVersion"] == "7"


@pytest.mark.asyncio
async def test_equal_object_gets_fresh_hash(syncer, typed, inline_threads):
    await syncer.sync(config_map({"a": "1"}))
    stored = typed.objects[(TEST_NAMESPACE, "che")]
    fresh_hash = stored["metadata"]["annotations"][HASH_ANNOTATION]
    stored["metadata"]["annotations"][HASH_ANNOTATION] = "written-by-an-older-operator"
    stored["metadata"]["labels"]["added-by-admin"] = "yes"
    typed.calls.clear()

    assert await syncer.sync(config_map({"a": "1"})) is True
    assert typed.calls == [("read", "che"), ("patch", "che")]
    assert stored["metadata"]["annotations"][HASH_ANNOTATION] == fresh_hash
    assert stored["metadata"]["labels"]["added-by-admin"] == "yes"

    typed.calls.clear()
    assert await syncer.sync(config_map({"a": "1"})) is True
    assert typed.calls == [("read", "che")]


@pytest.mark.asyncio
async def test_sync_recreates_secrets(syncer, typed, inline_threads):
    secret = build_secret("che-secret", TEST_NAMESPACE, {"password": "one"})
    await syncer.sync(secret)
    typed.calls.clear()

    assert await syncer.sync(build_secret("che-secret", TEST_NAMESPACE, {"password": "two"})) is False
    assert ("delete", "che-secret") in typed.calls
    assert ("create", "che-secret") in typed.calls


@pytest.mark.asyncio
async def test_sync_leaves_objects_of_other_operators(syncer, typed, inline_threads):
    obj = syncer.prepare(config_map({"a": "1"}))
    obj["metadata"]["annotations"][NAMESPACE_ANNOTATION] = "another-che"
    obj["metadata"]["annotations"][HASH_ANNOTATION] = "other"
    typed.objects[(TEST_NAMESPACE, "che")] = obj

    assert await syncer.sync(config_map({"a": "2"})) is True
    assert typed.objects[(TEST_NAMESPACE, "che")]["data"] == {"a": "1"}


@pytest.mark.asyncio
async def test_create_if_not_exists_never_updates(syncer, typed, inline_threads):
    assert await syncer.create_if_not_exists(build_secret("pw", TEST_NAMESPACE, {"repo-password": "a"})) is False
    assert await syncer.create_if_not_exists(build_secret("pw", TEST_NAMESPACE, {"repo-password": "b"})) is True
    assert typed.objects[(TEST_NAMESPACE, "pw")]["data"]["repo-password"] == "YQ=="


@pytest.mark.asyncio
async def test_delete_missing_object(syncer, inline_threads):
    assert await syncer.delete(Kind.CONFIG_MAP, "missing", TEST_NAMESPACE) is True


@pytest.mark.asyncio
async def test_sync_rejected_object(syncer, typed, inline_threads):
    def reject(namespace, body):
        raise api_exception(422, "Invalid")

    typed.create = reject
    with pytest.raises(UnrecoverableSyncError, match="rejected by the API server"):
        await syncer.sync(config_map({"a": "1"}))


@pytest.mark.asyncio
async def test_sync_conflict_on_update(syncer, typed, inline_threads):
    await syncer.sync(config_map({"a": "1"}))

    def conflict(name, namespace, body):
        raise api_exception(409, "Conflict")

    typed.replace = conflict
    with pytest.raises(NeedRetryError):
        await syncer.sync(config_map({"a": "2"}))


def test_unsupported_kind(syncer):
    with pytest.raises(ValueError, match="Unsupported object kind"):
        syncer.prepare({"kind": "Gadget", "metadata": {"name": "x"}})

