"""
Create-or-update of cluster objects.

``Syncer.sync`` returns True when the live object already matches the desired
one and False when something was written, so callers requeue and observe the
result on the next pass.
"""
import asyncio
import copy
import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

import kopf
from kubernetes import client

from ...crds.const import HASH_ANNOTATION, NAMESPACE_ANNOTATION
from ...errors import NeedRetryError, UnrecoverableSyncError
from ...utils.kube import label_selector, to_dict
from .kinds import KIND_REGISTRY, Kind, KindInfo, compare_metadata

module_logger = logging.getLogger(__name__)


def compute_hash(obj: Dict[str, Any]) -> str:
    """Stable content hash of an object, ignoring the annotations sync adds."""
    body = copy.deepcopy(obj)
    annotations = body.get("metadata", {}).get("annotations") or {}
    for key in (HASH_ANNOTATION, NAMESPACE_ANNOTATION):
        annotations.pop(key, None)
    encoded = json.dumps(body, sort_keys=True, default=str).encode()
    return hashlib.sha256(encoded).hexdigest()


class Syncer:
    """
    Applies desired objects for one CR.

    Args:
        operator_namespace: Namespace recorded on created objects so that a
            second installation can tell its objects apart.
        owner: Body of the owning CR. Objects in the owner's namespace get an
            owner reference to it.
        logger: Logger instance
        clients: Optional per-kind client overrides.
    """

    def __init__(
        self,
        operator_namespace: str,
        owner: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
        clients: Optional[Dict[Kind, Any]] = None,
    ):
        self.operator_namespace = operator_namespace
        self.owner = owner
        self.logger = logger or module_logger
        self._clients: Dict[Kind, Any] = dict(clients or {})

    def client_for(self, kind: Kind) -> Any:
        if kind not in self._clients:
            self._clients[kind] = KIND_REGISTRY[kind].factory()
        return self._clients[kind]

    @property
    def owner_namespace(self) -> Optional[str]:
        if not self.owner:
            return None
        return self.owner.get("metadata", {}).get("namespace")

    def prepare(self, desired: Dict[str, Any]) -> Dict[str, Any]:
        """Fills apiVersion, owner reference and the sync annotations."""
        kind = Kind.of(desired)
        info = KIND_REGISTRY[kind]
        obj = copy.deepcopy(desired)
        obj.setdefault("apiVersion", info.api_version)
        metadata = obj.setdefault("metadata", {})
        if (
            self.owner
            and info.namespaced
            and metadata.get("namespace") == self.owner_namespace
        ):
            kopf.append_owner_reference(obj, owner=self.owner)
        annotations = metadata.setdefault("annotations", {})
        annotations[NAMESPACE_ANNOTATION] = self.operator_namespace
        annotations[HASH_ANNOTATION] = compute_hash(obj)
        return obj

    async def get(self, kind: Kind, name: str, namespace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        try:
            obj = await asyncio.to_thread(self.client_for(kind).read, name, namespace)
        except client.ApiException as e:
            if e.status == 404:
                return None
            raise
        return to_dict(obj)

    async def list(self, kind: Kind, namespace: Optional[str], labels: Dict[str, str]) -> List[Dict[str, Any]]:
        items = await asyncio.to_thread(
            self.client_for(kind).list, namespace, label_selector(labels)
        )
        return [to_dict(item) for item in items]

    async def sync(self, desired: Dict[str, Any]) -> bool:
        """
        Makes the cluster object match ``desired``.

        Returns:
            True if the object was already in sync.

        Raises:
            NeedRetryError: The object changed while it was being updated.
            UnrecoverableSyncError: The API server rejected the object.
        """
        kind = Kind.of(desired)
        info = KIND_REGISTRY[kind]
        obj = self.prepare(desired)
        name = obj["metadata"]["name"]
        namespace = obj["metadata"].get("namespace") if info.namespaced else None

        actual = await self.get(kind, name, namespace)
        if actual is None:
            created = await self._create(kind, obj, namespace)
            if created:
                return False
            # Created concurrently, continue as an update
            actual = await self.get(kind, name, namespace)
            if actual is None:
                raise NeedRetryError(f"{kind.value} '{name}' vanished while being created.")

        annotations = actual.get("metadata", {}).get("annotations") or {}
        if annotations.get(HASH_ANNOTATION) == obj["metadata"]["annotations"][HASH_ANNOTATION]:
            return True

        owner_namespace = annotations.get(NAMESPACE_ANNOTATION)
        if owner_namespace and owner_namespace != self.operator_namespace:
            self.logger.warning(
                f"{kind.value} '{name}' is managed by the operator in namespace "
                f"'{owner_namespace}', skipping update."
            )
            return True

        if info.comparer is None:
            return await self._sync_metadata(kind, obj, actual, namespace)

        if info.comparer(obj, actual):
            await self._refresh_hash(kind, obj, namespace)
            return True

        await self._update(kind, info, obj, actual, namespace)
        return False

    async def create_if_not_exists(self, desired: Dict[str, Any]) -> bool:
        """
        Creates the object unless one with the same name exists.

        Returns:
            True if the object already existed.
        """
        kind = Kind.of(desired)
        info = KIND_REGISTRY[kind]
        obj = self.prepare(desired)
        namespace = obj["metadata"].get("namespace") if info.namespaced else None
        if await self.get(kind, obj["metadata"]["name"], namespace) is not None:
            return True
        await self._create(kind, obj, namespace)
        return False

    async def delete(self, kind: Kind, name: str, namespace: Optional[str] = None) -> bool:
        """
        Deletes an object.

        Returns:
            True once the object is gone.
        """
        if not KIND_REGISTRY[kind].namespaced:
            namespace = None
        try:
            await asyncio.to_thread(self.client_for(kind).delete, name, namespace)
        except client.ApiException as e:
            if e.status == 404:
                return True
            raise
        self.logger.info(f"Deleting object: {kind.value} '{name}'")
        return await self.get(kind, name, namespace) is None

    async def _create(self, kind: Kind, obj: Dict[str, Any], namespace: Optional[str]) -> bool:
        name = obj["metadata"]["name"]
        self.logger.info(f"Creating a new object: {kind.value} '{name}'")
        try:
            await asyncio.to_thread(self.client_for(kind).create, namespace, obj)
        except client.ApiException as e:
            if e.status == 409:
                return False
            self._raise_sync_error(e, kind, name)
        return True

    async def _refresh_hash(self, kind: Kind, obj: Dict[str, Any], namespace: Optional[str]) -> None:
        """Stores the new hash on an object the comparer found equal."""
        name = obj["metadata"]["name"]
        self.logger.debug(f"Refreshing hash annotation of {kind.value} '{name}'")
        patch = {"metadata": {"annotations": {HASH_ANNOTATION: obj["metadata"]["annotations"][HASH_ANNOTATION]}}}
        try:
            await asyncio.to_thread(self.client_for(kind).patch, name, namespace, patch)
        except client.ApiException as e:
            if e.status == 404:
                return
            self._raise_sync_error(e, kind, name)

    async def _update(
        self,
        kind: Kind,
        info: KindInfo,
        obj: Dict[str, Any],
        actual: Dict[str, Any],
        namespace: Optional[str],
    ) -> None:
        name = obj["metadata"]["name"]
        if info.recreate:
            self.logger.info(f"Recreating object: {kind.value} '{name}'")
            await self.delete(kind, name, namespace)
            await self._create(kind, obj, namespace)
            return

        self.logger.info(f"Updating existing object: {kind.value} '{name}'")
        body = copy.deepcopy(obj)
        resource_version = actual.get("metadata", {}).get("resourceVersion")
        if resource_version:
            body["metadata"]["resourceVersion"] = resource_version
        # Immutable or server assigned fields are carried over
        if kind == Kind.PERSISTENT_VOLUME_CLAIM:
            body["spec"] = {**(actual.get("spec") or {}), **(body.get("spec") or {})}
            body["spec"]["volumeName"] = (actual.get("spec") or {}).get("volumeName")
        try:
            await asyncio.to_thread(self.client_for(kind).replace, name, namespace, body)
        except client.ApiException as e:
            self._raise_sync_error(e, kind, name)

    async def _sync_metadata(
        self, kind: Kind, obj: Dict[str, Any], actual: Dict[str, Any], namespace: Optional[str]
    ) -> bool:
        name = obj["metadata"]["name"]
        if compare_metadata(obj, actual):
            if json.dumps(obj.get("spec"), sort_keys=True, default=str) != json.dumps(
                actual.get("spec"), sort_keys=True, default=str
            ) and "spec" in obj:
                self.logger.warning(
                    f"{kind.value} '{name}' differs from the desired state but only "
                    f"its metadata is synced."
                )
            return True

        self.logger.info(f"Updating metadata of existing object: {kind.value} '{name}'")
        body = copy.deepcopy(actual)
        metadata = body.setdefault("metadata", {})
        for key in ("labels", "annotations"):
            merged = dict(metadata.get(key) or {})
            merged.update(obj["metadata"].get(key) or {})
            metadata[key] = merged
        if obj["metadata"].get("ownerReferences"):
            metadata["ownerReferences"] = obj["metadata"]["ownerReferences"]
        try:
            await asyncio.to_thread(self.client_for(kind).replace, name, namespace, body)
        except client.ApiException as e:
            self._raise_sync_error(e, kind, name)
        return False

    @staticmethod
    def _raise_sync_error(e: client.ApiException, kind: Kind, name: str) -> None:
        if e.status == 409:
            raise NeedRetryError(f"{kind.value} '{name}' was modified concurrently.") from e
        if e.status in (403, 422):
            raise UnrecoverableSyncError(
                f"{kind.value} '{name}' was rejected by the API server: {e.reason}"
            ) from e
        raise e
