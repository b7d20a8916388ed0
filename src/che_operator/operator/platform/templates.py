"""
Read-only registry of object templates shipped with the operator.

The registry is built once at startup, before any reconcile runs, and handed
to reconcilers through the deploy context. Consumers receive copies of the
parsed objects, so a reconcile pass can never alter the registry.
"""
import copy
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Tuple

import yaml

from ..sync import compute_hash

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Template:
    group: str
    source: str
    kind: str
    name: str
    hash: str
    _body: Mapping[str, Any]

    def render(self, namespace: str = "") -> Dict[str, Any]:
        """A mutable copy of the template, placed in ``namespace`` when namespaced."""
        body = copy.deepcopy(dict(self._body))
        if namespace:
            _relocate(body, namespace)
        return body


def _relocate(body: Dict[str, Any], namespace: str) -> None:
    metadata = body.setdefault("metadata", {})
    if body.get("kind") == "Namespace":
        metadata["name"] = namespace
        return
    if "namespace" in metadata:
        metadata["namespace"] = namespace
    for subject in body.get("subjects") or []:
        if "namespace" in subject:
            subject["namespace"] = namespace


class TemplateRegistry:
    def __init__(self, templates: Tuple[Template, ...]):
        self._templates = templates

    @classmethod
    def load(cls, path: str) -> "TemplateRegistry":
        """
        Parses every ``<group>/*.yaml`` file under ``path``.

        Raises:
            OSError, yaml.YAMLError: When a template cannot be read.
        """
        templates: List[Template] = []
        if not os.path.isdir(path):
            logger.warning(f"Template directory {path} not found, no templates loaded.")
            return cls(tuple())

        for group in sorted(os.listdir(path)):
            group_dir = os.path.join(path, group)
            if not os.path.isdir(group_dir):
                continue
            for filename in sorted(os.listdir(group_dir)):
                if not filename.endswith((".yaml", ".yml")):
                    continue
                source = os.path.join(group_dir, filename)
                with open(source, "r") as f:
                    documents = [d for d in yaml.safe_load_all(f) if d]
                for doc in documents:
                    templates.append(
                        Template(
                            group=group,
                            source=filename,
                            kind=doc["kind"],
                            name=doc["metadata"]["name"],
                            hash=compute_hash(doc),
                            _body=doc,
                        )
                    )
        logger.info(f"Loaded {len(templates)} object templates from {path}")
        return cls(tuple(templates))

    def group(self, group: str) -> List[Template]:
        return [t for t in self._templates if t.group == group]

    def __iter__(self) -> Iterator[Template]:
        return iter(self._templates)

    def __len__(self) -> int:
        return len(self._templates)
