"""
Proxy settings for the managed components.

The cluster wide proxy (the ``Proxy`` config object on extended clusters, the
operator's own environment otherwise) is merged with the overrides of the
CheCluster CR.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlparse

from kubernetes import client

from ...crds.checluster import CheCluster
from .infrastructure import CONFIG_API_GROUP, Infrastructure

KUBERNETES_API_HOST = "kubernetes.default.svc"


@dataclass
class Proxy:
    http_proxy: str = ""
    https_proxy: str = ""
    no_proxy: List[str] = field(default_factory=list)
    trusted_ca: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.http_proxy or self.https_proxy)

    @property
    def no_proxy_string(self) -> str:
        return ",".join(self.no_proxy)

    def java_opts(self) -> str:
        """JVM system properties for the che server."""
        opts = []
        for scheme, url in (("http", self.http_proxy), ("https", self.https_proxy)):
            if not url:
                continue
            parsed = urlparse(url)
            opts.append(f"-D{scheme}.proxyHost={parsed.hostname}")
            if parsed.port:
                opts.append(f"-D{scheme}.proxyPort={parsed.port}")
            if parsed.username:
                opts.append(f"-D{scheme}.proxyUser={parsed.username}")
            if parsed.password:
                opts.append(f"-D{scheme}.proxyPassword={parsed.password}")
        if opts and self.no_proxy:
            hosts = "|".join(h.replace(".", "*.", 1) if h.startswith(".") else h for h in self.no_proxy)
            opts.append(f"-Dhttp.nonProxyHosts='{hosts}'")
        return " ".join(opts)


def _split_hosts(value: str) -> List[str]:
    if not value:
        return []
    for sep in ("|", ";"):
        value = value.replace(sep, ",")
    return [h.strip() for h in value.split(",") if h.strip()]


def read_cluster_proxy(
    custom_objects_api: client.CustomObjectsApi, infrastructure: Infrastructure
) -> Proxy:
    """Reads the cluster wide proxy settings."""
    if infrastructure.is_extended:
        try:
            obj = custom_objects_api.get_cluster_custom_object(
                group=CONFIG_API_GROUP, version="v1", plural="proxies", name="cluster"
            )
        except client.ApiException as e:
            if e.status == 404:
                return Proxy()
            raise
        status = obj.get("status") or {}
        spec = obj.get("spec") or {}
        return Proxy(
            http_proxy=status.get("httpProxy", ""),
            https_proxy=status.get("httpsProxy", ""),
            no_proxy=_split_hosts(status.get("noProxy", "")),
            trusted_ca=(spec.get("trustedCA") or {}).get("name", ""),
        )

    return Proxy(
        http_proxy=os.environ.get("HTTP_PROXY", os.environ.get("http_proxy", "")),
        https_proxy=os.environ.get("HTTPS_PROXY", os.environ.get("https_proxy", "")),
        no_proxy=_split_hosts(os.environ.get("NO_PROXY", os.environ.get("no_proxy", ""))),
    )


def _with_credentials(url: str, user: str, password: str) -> str:
    if not url or not user:
        return url
    parsed = urlparse(url)
    netloc = f"{quote(user, safe='')}:{quote(password, safe='')}@{parsed.netloc}"
    return parsed._replace(netloc=netloc).geturl()


def merge_proxy(
    cluster_proxy: Proxy,
    checluster: CheCluster,
    credentials: Optional[Dict[str, Any]] = None,
) -> Proxy:
    """
    Applies the CR overrides on top of the cluster wide proxy.

    Args:
        cluster_proxy: Proxy read from the cluster.
        checluster: The CheCluster CR.
        credentials: ``user``/``password`` decoded from ``spec.server.proxySecret``.

    Returns:
        The effective proxy; its no_proxy list always contains the in-cluster
        API server host.
    """
    proxy_url = checluster.value("server.proxyURL", "")
    proxy_port = str(checluster.value("server.proxyPort", "") or "")

    if proxy_url:
        url = proxy_url if "://" in proxy_url else f"http://{proxy_url}"
        if proxy_port:
            url = f"{url}:{proxy_port}"
        http_proxy = https_proxy = url
        no_proxy = _split_hosts(checluster.value("server.nonProxyHosts", ""))
    else:
        http_proxy = cluster_proxy.http_proxy
        https_proxy = cluster_proxy.https_proxy
        no_proxy = list(cluster_proxy.no_proxy) + _split_hosts(
            checluster.value("server.nonProxyHosts", "")
        )

    if credentials:
        user = credentials.get("user", "")
        password = credentials.get("password", "")
        http_proxy = _with_credentials(http_proxy, user, password)
        https_proxy = _with_credentials(https_proxy, user, password)

    if KUBERNETES_API_HOST not in no_proxy:
        no_proxy.append(KUBERNETES_API_HOST)

    deduplicated = list(dict.fromkeys(no_proxy))
    return Proxy(
        http_proxy=http_proxy,
        https_proxy=https_proxy,
        no_proxy=deduplicated,
        trusted_ca=cluster_proxy.trusted_ca,
    )
