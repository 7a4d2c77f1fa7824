"""
Point-in-time utilization for an application's instances.
Samples container stats from the runtime and averages them per app.
"""

import logging
from dataclasses import dataclass
from typing import Dict

logger = logging.getLogger(__name__)

@dataclass
class InstanceUsage:
    cpu_percent: float = 0.0
    memory_percent: float = 0.0

def compute_usage(stats: Dict) -> InstanceUsage:
    """CPU and memory percentages from one docker stats sample."""
    cpu_stats = stats.get("cpu_stats", {}) or {}
    precpu_stats = stats.get("precpu_stats", {}) or {}

    cpu_usage = cpu_stats.get("cpu_usage", {}) or {}
    precpu_usage = precpu_stats.get("cpu_usage", {}) or {}

    cpu_delta = cpu_usage.get("total_usage", 0) - precpu_usage.get("total_usage", 0)
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu_stats.get("system_cpu_usage", 0)

    if "online_cpus" in cpu_stats:
        num_cpus = cpu_stats["online_cpus"] or 1
    elif cpu_usage.get("percpu_usage"):
        num_cpus = len(cpu_usage["percpu_usage"])
    else:
        num_cpus = 1

    if system_delta > 0 and cpu_delta >= 0:
        cpu_percent = (cpu_delta / system_delta) * num_cpus * 100.0
    else:
        cpu_percent = 0.0

    memory_stats = stats.get("memory_stats", {}) or {}
    memory_usage = memory_stats.get("usage", 0)
    memory_limit = memory_stats.get("limit", 0)
    memory_percent = (memory_usage / memory_limit) * 100.0 if memory_limit > 0 else 0.0

    return InstanceUsage(cpu_percent=cpu_percent, memory_percent=memory_percent)

class ContainerStatsMonitor:
    """Monitoring collaborator backing the metrics(app_id) response."""

    def __init__(self, lifecycle):
        self.lifecycle = lifecycle

    def utilization(self, app_id: int) -> Dict:
        usages = []
        for info in self.lifecycle.get_containers(app_id):
            if info.status != "running":
                continue
            try:
                usages.append(compute_usage(self.lifecycle.runtime.stats(info.id)))
            except Exception as e:
                logger.info(f"Container {info.name} stats unavailable: {e}")

        if not usages:
            return {"cpu_percent": 0.0, "memory_percent": 0.0, "sampled_instances": 0}

        return {
            "cpu_percent": round(sum(u.cpu_percent for u in usages) / len(usages), 1),
            "memory_percent": round(sum(u.memory_percent for u in usages) / len(usages), 1),
            "sampled_instances": len(usages),
        }
