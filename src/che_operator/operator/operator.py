"""
Kubernetes operator for CheCluster, CheClusterBackup and CheClusterRestore.

The handlers live next to the code they drive:
- CheCluster installation (checluster/handler.py)
- Backups (checlusterbackup/handler.py)
- Restores (checlusterrestore/handler.py)
"""
import asyncio
import logging
from typing import Any

import kopf

# NOTE: Importing the handler modules registers them with kopf so that
#       `kopf run -m che_operator.operator.operator` finds them.
# ruff: noqa: F401
from .checluster import handler as checluster_handler
from .checlusterbackup import handler as backup_handler
from .checlusterrestore import handler as restore_handler
from .config import config as operator_config
from .startup import init_operator


@kopf.on.startup()
async def on_startup(
    settings: kopf.OperatorSettings, memo: kopf.Memo, logger: logging.Logger, **kwargs: Any
) -> None:
    """
    Initializes the operator and shares the result with every handler.

    A failed initialization stops the operator.
    """
    result = await asyncio.to_thread(init_operator, operator_config, logger)
    if isinstance(result, Exception):
        raise kopf.PermanentError(str(result))

    # Handlers get a shallow copy of this memo, the objects below are shared
    memo["ready"] = result
    memo["backup_lock"] = asyncio.Lock()
    memo["restore_lock"] = asyncio.Lock()

    # The default worker limit is unbounded which floods the API server on
    # restart with many CheClusters.
    settings.batching.worker_limit = operator_config.worker_limit

    # Handler logs would otherwise be posted as Kubernetes events.
    settings.posting.enabled = operator_config.posting_enabled

    namespace = operator_config.watch_namespace or "all namespaces"
    logger.info(
        f"Operator started on {result.infrastructure.value}, watching {namespace}."
    )
