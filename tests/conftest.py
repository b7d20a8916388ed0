"""
This file contains shared fixtures for all tests.
"""

import asyncio
import base64
import logging
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from kubernetes import client

from che_operator.crds.base import ObjectMeta
from che_operator.crds.backup import CheClusterBackup
from che_operator.crds.checluster import CheCluster
from che_operator.crds.restore import CheClusterRestore

TEST_NAMESPACE = "eclipse-che"


async def run_inline(func, *args, **kwargs):
    """Stand-in for asyncio.to_thread that runs the call in the test thread."""
    return func(*args, **kwargs)


def api_exception(status: int, reason: str = "") -> client.ApiException:
    return client.ApiException(status=status, reason=reason or str(status))


def encoded_secret(data: Dict[str, str]) -> MagicMock:
    """A V1Secret look-alike with base64 encoded values."""
    secret = MagicMock()
    secret.data = {k: base64.b64encode(v.encode()).decode() for k, v in data.items()}
    return secret


def item_list(items: List[Any]) -> MagicMock:
    result = MagicMock()
    result.items = items
    return result


def named(name: str) -> MagicMock:
    obj = MagicMock()
    obj.metadata.name = name
    return obj


@pytest.fixture
def inline_threads(monkeypatch):
    """Runs asyncio.to_thread calls synchronously."""
    monkeypatch.setattr(asyncio, "to_thread", run_inline)


@pytest.fixture
def mock_k8s_api() -> MagicMock:
    return MagicMock(spec=client.CustomObjectsApi)


@pytest.fixture
def core_v1() -> MagicMock:
    return MagicMock(spec=client.CoreV1Api)


@pytest.fixture
def apps_v1() -> MagicMock:
    return MagicMock(spec=client.AppsV1Api)


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("che-operator-tests")


def make_checluster(
    api,
    spec: Optional[Dict[str, Any]] = None,
    status: Optional[Dict[str, Any]] = None,
    name: str = "eclipse-che",
    namespace: str = TEST_NAMESPACE,
) -> CheCluster:
    return CheCluster(
        ObjectMeta(name=name, namespace=namespace, uid="uid-1", resource_version="1"),
        spec=spec or {},
        status=status or {},
        api=api,
    )


def make_backup(api, spec: Optional[Dict[str, Any]] = None, status=None, name: str = "backup") -> CheClusterBackup:
    return CheClusterBackup(
        ObjectMeta(name=name, namespace=TEST_NAMESPACE), spec=spec or {}, status=status or {}, api=api
    )


def make_restore(api, spec: Optional[Dict[str, Any]] = None, status=None, name: str = "restore") -> CheClusterRestore:
    return CheClusterRestore(
        ObjectMeta(name=name, namespace=TEST_NAMESPACE), spec=spec or {}, status=status or {}, api=api
    )
