from typing import Any, Dict, List, Optional

RBAC_API_VERSION = "rbac.authorization.k8s.io/v1"


def rule(api_groups: List[str], resources: List[str], verbs: List[str]) -> Dict[str, Any]:
    return {"apiGroups": api_groups, "resources": resources, "verbs": verbs}


def build_service_account(name: str, namespace: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(labels or {})},
    }


def build_cluster_role(name: str, rules: List[Dict[str, Any]], labels: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "ClusterRole",
        "metadata": {"name": name, "labels": dict(labels or {})},
        "rules": rules,
    }


def build_role(name: str, namespace: str, rules: List[Dict[str, Any]], labels: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "Role",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(labels or {})},
        "rules": rules,
    }


def build_cluster_role_binding(
    name: str,
    cluster_role: str,
    service_account: str,
    service_account_namespace: str,
    labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "ClusterRoleBinding",
        "metadata": {"name": name, "labels": dict(labels or {})},
        "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "ClusterRole", "name": cluster_role},
        "subjects": [
            {"kind": "ServiceAccount", "name": service_account, "namespace": service_account_namespace}
        ],
    }


def build_role_binding(
    name: str,
    namespace: str,
    role: str,
    service_account: str,
    role_kind: str = "Role",
    labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "RoleBinding",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(labels or {})},
        "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": role_kind, "name": role},
        "subjects": [{"kind": "ServiceAccount", "name": service_account, "namespace": namespace}],
    }
