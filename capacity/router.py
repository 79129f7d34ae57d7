"""
Attribution routing: which (workload, region) cell a resource's count and
bytes land in.

Every physical byte is attributed to exactly one cell:
- an attached disk's bytes go to its VM's cell (the VM keeps its count of 1)
- a storage account and its sub-services never both contribute bytes; the
  storage aggregation mode decides which side does
"""
import logging
import threading
from typing import Dict, List, Optional

from .constants import (
    DEFAULT_STORAGE_MODE,
    ROLLUP_ATTRIBUTE_TO_PARENT,
    STORAGE_ACCOUNT_KINDS,
    STORAGE_MODE_ACCOUNT_LEVEL,
    STORAGE_MODE_SERVICE_LEVEL,
    STORAGE_MODES,
    STORAGE_SERVICE_KINDS,
)
from .models import AggregateKey, Contribution, ResourceRecord

logger = logging.getLogger(__name__)


class AttributionRouter:
    """
    Routes resources to aggregate cells.

    Parents must be registered before their children are routed; the engine
    guarantees this by deferring parent-attributed records until the
    collection phase ends.
    """

    def __init__(self, storage_mode: str = DEFAULT_STORAGE_MODE):
        if storage_mode not in STORAGE_MODES:
            raise ValueError(f"Unknown storage aggregation mode: {storage_mode}")
        self.storage_mode = storage_mode
        self._parents: Dict[str, AggregateKey] = {}
        self._lock = threading.Lock()

    def register(self, record: ResourceRecord) -> None:
        """Remember a resource so children can attribute to its cell."""
        with self._lock:
            self._parents[record.identity] = AggregateKey(record.workload_kind, record.region)

    def parent_key(self, identity: Optional[str]) -> Optional[AggregateKey]:
        if not identity:
            return None
        with self._lock:
            return self._parents.get(identity)

    def wants_parent(self, record: ResourceRecord) -> bool:
        return record.rollup_policy == ROLLUP_ATTRIBUTE_TO_PARENT and bool(record.parent_identity)

    def contributes_bytes(self, record: ResourceRecord) -> bool:
        """Whether this record's bytes count toward aggregates under the storage mode."""
        if record.workload_kind in STORAGE_ACCOUNT_KINDS:
            return self.storage_mode == STORAGE_MODE_ACCOUNT_LEVEL
        if record.workload_kind in STORAGE_SERVICE_KINDS:
            return self.storage_mode == STORAGE_MODE_SERVICE_LEVEL
        return True

    def route(self, record: ResourceRecord, resolved_bytes: int) -> List[Contribution]:
        """
        Route one resource.

        Rules, in order:
          1. AttributeToParent with a seen parent -> (parent cell, 0, bytes)
          2. AttributeToParent with an unseen parent -> own cell (orphan fallback)
          3. otherwise -> (own cell, 1, bytes)
        """
        byte_delta = resolved_bytes if self.contributes_bytes(record) else 0
        own_key = AggregateKey(record.workload_kind, record.region)

        if self.wants_parent(record):
            parent = self.parent_key(record.parent_identity)
            if parent is not None:
                return [Contribution(parent, 0, byte_delta)]
            logger.info(
                f"Parent of {record.workload_kind} resource not found in this run; "
                f"attributing to its own bucket"
            )

        return [Contribution(own_key, 1, byte_delta)]

    def is_orphan(self, record: ResourceRecord) -> bool:
        return self.wants_parent(record) and self.parent_key(record.parent_identity) is None
