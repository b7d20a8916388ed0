from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Type, TypeVar

from kubernetes import client

from ..utils.kube import configure_kube_client

# A generic type for BaseCustomResource subclasses
T = TypeVar("T", bound="BaseCustomResource")

# Metadata keys the API server sends in camelCase
_META_ALIASES = {
    "resourceVersion": "resource_version",
    "deletionTimestamp": "deletion_timestamp",
    "creationTimestamp": "creation_timestamp",
}


def _get_k8s_api() -> client.CustomObjectsApi:
    configure_kube_client()
    return client.CustomObjectsApi()


@dataclass
class ObjectMeta:
    name: str
    namespace: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    deletion_timestamp: Optional[str] = None
    creation_timestamp: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectMeta":
        """
        Constructs an ObjectMeta from a dictionary, ignoring unknown fields.
        """
        known_field_names = {f.name for f in fields(cls)}
        filtered_data = {}
        for key, value in data.items():
            key = _META_ALIASES.get(key, key)
            if key in known_field_names and value is not None:
                filtered_data[key] = value
        return cls(**filtered_data)

    def to_dict(self) -> Dict[str, Any]:
        """Client-writable metadata; server populated fields are left out."""
        body: Dict[str, Any] = {"name": self.name}
        if self.namespace:
            body["namespace"] = self.namespace
        if self.labels:
            body["labels"] = dict(self.labels)
        if self.annotations:
            body["annotations"] = dict(self.annotations)
        if self.finalizers:
            body["finalizers"] = list(self.finalizers)
        if self.resource_version:
            body["resourceVersion"] = self.resource_version
        return body


class BaseCustomResource:
    group: str
    version: str
    plural: str
    kind: str
    namespaced: bool = True

    metadata: ObjectMeta
    spec: Dict[str, Any]
    status: Dict[str, Any]

    def __init__(
        self,
        metadata: ObjectMeta,
        spec: Optional[Dict[str, Any]] = None,
        status: Optional[Dict[str, Any]] = None,
        api: Optional[client.CustomObjectsApi] = None,
    ) -> None:
        self.api = api or _get_k8s_api()
        self.metadata = metadata
        self.spec = spec or {}
        self.status = status or {}

    @classmethod
    def from_body(
        cls: Type[T], body: Dict[str, Any], api: Optional[client.CustomObjectsApi] = None
    ) -> T:
        """Wraps an object as received from the API or from a kopf handler."""
        return cls(
            metadata=ObjectMeta.from_dict(dict(body.get("metadata", {}))),
            spec=_plain(body.get("spec")),
            status=_plain(body.get("status")),
            api=api,
        )

    @classmethod
    def get(
        cls: Type[T],
        name: str,
        namespace: str,
        api: Optional[client.CustomObjectsApi] = None,
    ) -> T:
        api_instance = api or _get_k8s_api()
        data = api_instance.get_namespaced_custom_object(
            group=cls.group,
            version=cls.version,
            namespace=namespace,
            plural=cls.plural,
            name=name,
        )
        return cls.from_body(data, api=api_instance)

    @classmethod
    def create(
        cls: Type[T],
        metadata: ObjectMeta,
        spec: Dict[str, Any],
        api: Optional[client.CustomObjectsApi] = None,
    ) -> T:
        """Creates a custom resource in the cluster."""
        api_instance = api or _get_k8s_api()
        if not metadata.namespace:
            raise ValueError("Namespace is required for namespaced resources")
        resource = cls(metadata=metadata, spec=spec, api=api_instance)
        created_obj = api_instance.create_namespaced_custom_object(
            group=cls.group,
            version=cls.version,
            namespace=metadata.namespace,
            plural=cls.plural,
            body=resource.to_dict(),
        )
        return cls.from_body(created_obj, api=api_instance)

    @classmethod
    def list(
        cls: Type[T],
        namespace: str,
        api: Optional[client.CustomObjectsApi] = None,
    ) -> List[T]:
        """Lists all custom resources of this kind in a namespace."""
        api_instance = api or _get_k8s_api()
        result = api_instance.list_namespaced_custom_object(
            group=cls.group,
            version=cls.version,
            namespace=namespace,
            plural=cls.plural,
        )
        return [cls.from_body(item, api=api_instance) for item in result["items"]]

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or ""

    def update(self: T) -> T:
        """Replaces the custom resource in the cluster with the current object's state."""
        updated_obj = self.api.replace_namespaced_custom_object(
            group=self.group,
            version=self.version,
            namespace=self.namespace,
            plural=self.plural,
            name=self.name,
            body=self.to_dict(),
        )
        self._load(updated_obj)
        return self

    def patch(self: T, patch_body: Dict[str, Any]) -> T:
        """Merge-patches the custom resource in the cluster."""
        patched_obj = self.api.patch_namespaced_custom_object(
            group=self.group,
            version=self.version,
            namespace=self.namespace,
            plural=self.plural,
            name=self.name,
            body=patch_body,
        )
        self._load(patched_obj)
        return self

    def patch_status(self: T, status: Dict[str, Any]) -> T:
        """Merge-patches the status subresource."""
        patched_obj = self.api.patch_namespaced_custom_object_status(
            group=self.group,
            version=self.version,
            namespace=self.namespace,
            plural=self.plural,
            name=self.name,
            body={"status": status},
        )
        self._load(patched_obj)
        return self

    def delete(self) -> None:
        """Deletes the custom resource from the cluster."""
        self.api.delete_namespaced_custom_object(
            group=self.group,
            version=self.version,
            namespace=self.namespace,
            plural=self.plural,
            name=self.name,
            body=client.V1DeleteOptions(),
        )

    def refresh(self) -> None:
        """Refreshes the object from the cluster, updating metadata, spec and status."""
        obj = self.api.get_namespaced_custom_object(
            group=self.group,
            version=self.version,
            namespace=self.namespace,
            plural=self.plural,
            name=self.name,
        )
        self._load(obj)

    def _load(self, data: Dict[str, Any]) -> None:
        self.metadata = ObjectMeta.from_dict(data.get("metadata", {}))
        self.spec = data.get("spec") or {}
        self.status = data.get("status") or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "apiVersion": f"{self.group}/{self.version}",
            "kind": self.kind,
            "metadata": self.metadata.to_dict(),
            "spec": self.spec,
        }
        # The API server ignores status on create/replace.
        if self.status:
            body["status"] = self.status
        return body


def _plain(value: Any) -> Any:
    """Deep-copies kopf's read-only views into mutable dicts and lists."""
    if value is None:
        return {}
    if hasattr(value, "items"):
        return {k: _plain_value(v) for k, v in value.items()}
    return value


def _plain_value(value: Any) -> Any:
    if hasattr(value, "items"):
        return {k: _plain_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain_value(v) for v in value]
    return value
