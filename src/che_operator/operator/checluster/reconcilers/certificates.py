"""
Merged CA bundle for the che server.

Every config map labelled as a CA bundle of the installation is merged into
one config map mounted by the server. The merged config map records the
revision of each source so that a change to any of them triggers a merge.
"""
import asyncio
from typing import Any, Dict, List

from ....crds.const import (
    CA_BUNDLE_COMPONENT,
    CA_BUNDLE_SELECTOR,
    DEFAULT_MERGED_CA_CONFIGMAP,
    DEFAULT_SERVER_TRUST_STORE_CONFIGMAP,
    INCLUDED_CONFIGMAPS_ANNOTATION,
    INJECT_TRUSTED_CABUNDLE_LABEL,
)
from ....utils.kube import label_selector, to_dict
from ...sync import Kind
from ..context import DeployContext, ReconcileResult
from ..resources.common import build_config_map, labels
from .base import Reconciler


def revisions_annotation(config_maps: List[Dict[str, Any]]) -> str:
    """``name=revision`` pairs of the source config maps, joined by ``.``."""
    pairs = []
    for cm in sorted(config_maps, key=lambda c: c["metadata"]["name"]):
        metadata = cm["metadata"]
        pairs.append(f"{metadata['name']}={metadata.get('resourceVersion', '')}")
    return ".".join(pairs)


def merge_ca_bundles(config_maps: List[Dict[str, Any]]) -> Dict[str, str]:
    data: Dict[str, str] = {}
    for cm in config_maps:
        name = cm["metadata"]["name"]
        for key, value in (cm.get("data") or {}).items():
            data[f"{name}.{key}"] = value
    return data


class CertificatesReconciler(Reconciler):
    name = "certificates"

    async def reconcile(self, ctx: DeployContext) -> ReconcileResult:
        flavor = ctx.checluster.flavor

        if ctx.is_extended:
            # The cluster network operator injects the cluster trust bundle here
            trust_store_name = (
                ctx.checluster.value("server.serverTrustStoreConfigMapName")
                or DEFAULT_SERVER_TRUST_STORE_CONFIGMAP
            )
            trust_store_labels = labels(flavor, CA_BUNDLE_COMPONENT)
            trust_store_labels[INJECT_TRUSTED_CABUNDLE_LABEL] = "true"
            trust_store = build_config_map(trust_store_name, ctx.namespace, {}, trust_store_labels)
            if not await ctx.syncer.create_if_not_exists(trust_store):
                return ReconcileResult.requeue("Waiting for the trusted CA bundle config map")

        sources = await self._ca_bundles(ctx)
        revisions = revisions_annotation(sources)

        merged = await ctx.syncer.get(Kind.CONFIG_MAP, DEFAULT_MERGED_CA_CONFIGMAP, ctx.namespace)
        if merged is not None:
            current = (merged.get("metadata", {}).get("annotations") or {}).get(
                INCLUDED_CONFIGMAPS_ANNOTATION
            )
            if current == revisions:
                return ReconcileResult()

        ctx.logger.info(f"Merging CA bundles: {revisions or '(none)'}")
        desired = build_config_map(
            DEFAULT_MERGED_CA_CONFIGMAP,
            ctx.namespace,
            merge_ca_bundles(sources),
            labels(flavor, "ca-certs-merged"),
            {INCLUDED_CONFIGMAPS_ANNOTATION: revisions},
        )
        if not await ctx.syncer.sync(desired):
            return ReconcileResult.requeue("Waiting for the merged CA bundle")
        return ReconcileResult()

    async def _ca_bundles(self, ctx: DeployContext) -> List[Dict[str, Any]]:
        result = await asyncio.to_thread(
            ctx.cluster_api.core_v1.list_namespaced_config_map,
            namespace=ctx.namespace,
            label_selector=label_selector(CA_BUNDLE_SELECTOR),
        )
        return [to_dict(cm) for cm in result.items]
