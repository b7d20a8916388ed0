from typing import Any, Dict, Optional

from ....crds.checluster import CheCluster
from ....crds.const import DEFAULT_INGRESS_CLASS
from .common import labels


def ingress_host(checluster: CheCluster, prefix: str) -> str:
    """Host assigned to an ingress when the CR leaves it empty."""
    domain = checluster.value("k8s.ingressDomain", "")
    if not domain:
        return ""
    return f"{prefix}-{checluster.namespace}.{domain}"


def build_ingress(
    name: str,
    namespace: str,
    flavor: str,
    component: str,
    host: str,
    service: str,
    port: int,
    path: str = "/",
    tls_secret: Optional[str] = None,
    ingress_class: str = DEFAULT_INGRESS_CLASS,
) -> Dict[str, Any]:
    annotations = {
        "kubernetes.io/ingress.class": ingress_class,
        "nginx.ingress.kubernetes.io/proxy-read-timeout": "3600",
        "nginx.ingress.kubernetes.io/proxy-connect-timeout": "3600",
        "nginx.ingress.kubernetes.io/ssl-redirect": "true" if tls_secret else "false",
    }
    rule: Dict[str, Any] = {
        "http": {
            "paths": [
                {
                    "path": path,
                    "pathType": "Prefix" if path != "/" else "ImplementationSpecific",
                    "backend": {"service": {"name": service, "port": {"number": port}}},
                }
            ]
        }
    }
    if host:
        rule["host"] = host
    spec: Dict[str, Any] = {"rules": [rule]}
    if tls_secret:
        tls: Dict[str, Any] = {"secretName": tls_secret}
        if host:
            tls["hosts"] = [host]
        spec["tls"] = [tls]
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": labels(flavor, component),
            "annotations": annotations,
        },
        "spec": spec,
    }


def build_route(
    name: str,
    namespace: str,
    flavor: str,
    component: str,
    host: str,
    service: str,
    port: int,
    path: str = "/",
    tls: bool = True,
) -> Dict[str, Any]:
    """Builds a Route; TLS is terminated at the router edge."""
    spec: Dict[str, Any] = {
        "to": {"kind": "Service", "name": service, "weight": 100},
        "port": {"targetPort": port},
        "path": path,
    }
    if host:
        spec["host"] = host
    if tls:
        spec["tls"] = {"termination": "edge", "insecureEdgeTerminationPolicy": "Redirect"}
    return {
        "apiVersion": "route.openshift.io/v1",
        "kind": "Route",
        "metadata": {"name": name, "namespace": namespace, "labels": labels(flavor, component)},
        "spec": spec,
    }


def exposed_host(route_or_ingress: Dict[str, Any]) -> str:
    """Host actually served by an existing Route or Ingress."""
    if not route_or_ingress:
        return ""
    spec = route_or_ingress.get("spec") or {}
    if route_or_ingress.get("kind") == "Ingress" or "rules" in spec:
        rules = spec.get("rules") or [{}]
        return rules[0].get("host", "")
    if spec.get("host"):
        return spec["host"]
    ingresses = (route_or_ingress.get("status") or {}).get("ingress") or [{}]
    return ingresses[0].get("host", "")
