"""
One-time initialization of the operator.

``init_operator`` never raises for expected failures: it returns either a
``ReadyOperator`` or a ``StartupError`` and leaves the decision to stop the
process to the kopf startup handler.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Union

import yaml
from kubernetes import client

from ..crds.const import CRD_NAMES
from ..errors import StartupError
from ..utils.kube import KubernetesConfigurationError, configure_kube_client
from .config import OperatorConfig, config as operator_config
from .platform.infrastructure import Infrastructure, detect_infrastructure
from .platform.templates import TemplateRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadyOperator:
    infrastructure: Infrastructure
    templates: TemplateRegistry


def missing_crds(extensions_api: client.ApiextensionsV1Api, names: List[str]) -> List[str]:
    missing = []
    for name in names:
        try:
            extensions_api.read_custom_resource_definition(name=name)
        except client.ApiException as e:
            if e.status == 404:
                missing.append(name)
                continue
            raise
    return missing


def init_operator(
    cfg: Optional[OperatorConfig] = None,
    log: Optional[logging.Logger] = None,
) -> Union[ReadyOperator, StartupError]:
    cfg = cfg or operator_config
    log = log or logger

    try:
        configure_kube_client(log)
    except KubernetesConfigurationError as e:
        return StartupError(str(e))

    try:
        missing = missing_crds(client.ApiextensionsV1Api(), CRD_NAMES)
    except client.ApiException as e:
        return StartupError(f"Could not read CustomResourceDefinitions: {e.reason}")
    if missing:
        return StartupError(f"Missing CustomResourceDefinitions: {', '.join(missing)}")

    try:
        infrastructure = detect_infrastructure(client.ApisApi())
    except client.ApiException as e:
        return StartupError(f"Could not detect the cluster infrastructure: {e.reason}")

    try:
        templates = TemplateRegistry.load(cfg.templates_path)
    except (OSError, yaml.YAMLError, KeyError) as e:
        return StartupError(f"Could not load object templates from {cfg.templates_path}: {e}")

    return ReadyOperator(infrastructure=infrastructure, templates=templates)
