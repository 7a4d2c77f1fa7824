"""
Instance registry and scaling bounds.
Keeps each application's target instance count in redis (cache-aside over
PostgreSQL) and clamps every write to the application's scaling policy.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from state.db import DEFAULT_SCALING_POLICY

logger = logging.getLogger(__name__)

@dataclass
class ScalingPolicy:
    """Scaling bounds for an application."""
    min_instances: int = DEFAULT_SCALING_POLICY["min"]
    max_instances: int = DEFAULT_SCALING_POLICY["max"]

    def __post_init__(self):
        """Validate policy parameters."""
        if self.min_instances < 0:
            raise ValueError("min_instances must be >= 0")
        if self.max_instances < 1:
            raise ValueError("max_instances must be >= 1")
        if self.max_instances < self.min_instances:
            raise ValueError(
                f"max_instances ({self.max_instances}) must be >= min_instances ({self.min_instances})"
            )

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "ScalingPolicy":
        """Build from the stored {min, max} form, falling back to defaults if unusable."""
        if not data:
            return cls()
        try:
            return cls(
                min_instances=int(data.get("min", DEFAULT_SCALING_POLICY["min"])),
                max_instances=int(data.get("max", DEFAULT_SCALING_POLICY["max"])),
            )
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid scaling policy {data!r}, using defaults: {e}")
            return cls()

    def to_dict(self) -> Dict[str, int]:
        return {"min": self.min_instances, "max": self.max_instances}

    def clamp(self, requested: int) -> int:
        return max(self.min_instances, min(self.max_instances, requested))

class InstanceRegistry:
    def __init__(self, store, cache, monitor=None):
        self.store = store
        self.cache = cache
        self.monitor = monitor
        self._lock = threading.RLock()

    def get_policy(self, app_id: int) -> ScalingPolicy:
        return ScalingPolicy.from_dict(self.store.get_scaling_policy(app_id))

    def get_count(self, app_id: int) -> int:
        """Target instance count: redis first, then the persisted count (default 1)."""
        cached = self.cache.get_instance_count(app_id)
        if cached is not None:
            return cached

        persisted = self.store.get_instance_count(app_id)
        count = persisted if persisted is not None else 1
        self.cache.set_instance_count(app_id, count)
        logger.debug(f"Instance count cache miss for app {app_id}, loaded {count} from store")
        return count

    def set_count(self, app_id: int, requested: int) -> int:
        """Clamp to the app's policy and persist to the store and the cache.

        Every change of the persisted count goes through here.
        """
        with self._lock:
            policy = self.get_policy(app_id)
            clamped = policy.clamp(requested)
            self.store.update_instance_count(app_id, clamped)
            self.cache.set_instance_count(app_id, clamped)

        if clamped != requested:
            logger.info(
                f"Requested {requested} instances for app {app_id}, clamped to {clamped} "
                f"by policy {policy.to_dict()}"
            )
        return clamped

    def scale_up(self, app_id: int, delta: int = 1) -> int:
        if delta < 1:
            raise ValueError("delta must be >= 1")
        with self._lock:
            current = self.get_count(app_id)
            return self.set_count(app_id, current + delta)

    def scale_down(self, app_id: int, delta: int = 1) -> int:
        """Never below 1, whatever the policy minimum says."""
        if delta < 1:
            raise ValueError("delta must be >= 1")
        with self._lock:
            current = self.get_count(app_id)
            return self.set_count(app_id, max(1, current - delta))

    def metrics(self, app_id: int) -> Dict:
        utilization = self.monitor.utilization(app_id) if self.monitor else {}
        return {
            "instances": self.get_count(app_id),
            "policy": self.get_policy(app_id).to_dict(),
            "metrics": utilization,
        }
