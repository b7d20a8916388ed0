from .kinds import KIND_REGISTRY, Kind
from .syncer import Syncer, compute_hash

__all__ = ["KIND_REGISTRY", "Kind", "Syncer", "compute_hash"]
