"""
Deployment orchestration.

Sequences lifecycle -> registry -> proxy for each request and is the one
place where partial failures are absorbed: per-instance faults and proxy
problems become warnings on the result, while an unreachable runtime or
store, or an unknown application, propagates to the caller.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from metrics.exporter import MetricsExporter
from state.db import AppRecord

logger = logging.getLogger(__name__)

class AppNotFoundError(Exception):
    """No application with the given id exists in the store."""
    pass

@dataclass
class DeployResult:
    app_id: int
    requested: int
    instances: int
    status: str
    containers: List[Dict] = field(default_factory=list)
    metrics: Dict = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "message": f"Deployed {self.instances} instances successfully",
            "instances": self.instances,
            "status": self.status,
            "containers": self.containers,
            "metrics": self.metrics,
            "warnings": self.warnings,
        }

@dataclass
class StopResult:
    app_id: int
    stopped: int
    status: str = "stopped"
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "message": "App stopped successfully",
            "status": self.status,
            "stopped": self.stopped,
            "warnings": self.warnings,
        }

class DeploymentOrchestrator:
    def __init__(self, store, lifecycle, registry, proxy, exporter: MetricsExporter = None):
        self.store = store
        self.lifecycle = lifecycle
        self.registry = registry
        self.proxy = proxy
        self.exporter = exporter or MetricsExporter()
        self._app_locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _app_lock(self, app_id: int):
        """Serialize mutating workflows for one existing application and yield its record."""
        app = self._require_app(app_id)
        with self._locks_guard:
            lock = self._app_locks.setdefault(app_id, threading.Lock())
        with lock:
            yield app

    def _require_app(self, app_id: int) -> AppRecord:
        app = self.store.get_app(app_id)
        if app is None:
            raise AppNotFoundError(f"App {app_id} not found")
        return app

    def _sync_proxy(self, app_id: int, **kwargs) -> List[str]:
        """Regenerate the app's route and reload nginx; problems come back as warnings."""
        warnings = []
        try:
            self.proxy.generate_config(app_id, **kwargs)
        except Exception as e:
            logger.error(f"Failed to generate nginx config for app {app_id}: {e}")
            warnings.append(f"Proxy config generation failed: {e}")
            return warnings
        warnings.extend(self._reload_proxy())
        return warnings

    def _reload_proxy(self) -> List[str]:
        result = self.proxy.reload()
        if result.error:
            return [f"Proxy reload failed: {result.error}"]
        if result.skipped:
            return ["Proxy is not running; routing will apply on its next start"]
        return []

    def deploy(self, app_id: int, instances: Optional[int] = None, env_vars: Dict[str, str] = None,
               image: Optional[str] = None) -> DeployResult:
        """Replace the app's instances, record what actually started and route to it."""
        with self._app_lock(app_id) as app:
            desired = instances or self.registry.get_count(app_id)
            image_ref = image or app.image

            outcome = self.lifecycle.deploy(app_id, desired, env_vars or {}, image_ref)
            warnings = [failure.describe() for failure in outcome.failures]

            if outcome.achieved:
                # The registry tracks what runs, not what was asked for
                self.registry.set_count(app_id, outcome.achieved)
                status = "running"
                self.store.mark_deployed(app_id, status)
            else:
                status = "stopped"
                self.store.update_app_status(app_id, status)
                warnings.append(f"No instance of app {app_id} started; instance target left unchanged")

            warnings.extend(self._sync_proxy(app_id, backends=outcome.backends))
            self.exporter.record_deployment(app_id, desired, outcome.achieved)

        # Sampled unlocked; stats() blocks for each container
        containers = [info.to_dict() for info in self.lifecycle.get_containers(app_id)]
        metrics = self.registry.metrics(app_id)

        if warnings:
            logger.warning(f"Deploy of app {app_id} finished degraded: {warnings}")
        logger.info(f"Deployed app {app_id}: {outcome.achieved}/{desired} instance(s), status={status}")
        return DeployResult(
            app_id=app_id,
            requested=desired,
            instances=outcome.achieved,
            status=status,
            containers=containers,
            metrics=metrics,
            warnings=warnings,
        )

    def stop(self, app_id: int) -> StopResult:
        """Tear down every instance the runtime reports and drop the app's route."""
        with self._app_lock(app_id):
            outcome = self.lifecycle.stop(app_id)
            warnings = [failure.describe() for failure in outcome.failures]
            self.store.update_app_status(app_id, "stopped")

            try:
                self.proxy.remove_config(app_id)
                warnings.extend(self._reload_proxy())
            except Exception as e:
                logger.error(f"Failed to remove nginx config for app {app_id}: {e}")
                warnings.append(f"Proxy config removal failed: {e}")

            self.exporter.record_stop(app_id)

        logger.info(f"Stopped app {app_id}: {outcome.stopped} instance(s) removed")
        return StopResult(app_id=app_id, stopped=outcome.stopped, warnings=warnings)

    def list_containers(self, app_id: int) -> Dict:
        self._require_app(app_id)
        containers = [info.to_dict() for info in self.lifecycle.get_containers(app_id)]
        return {"containers": containers, "count": len(containers)}

    def scale(self, app_id: int, instances: int) -> Dict:
        """Set the target instance count; the next deploy materializes it."""
        with self._app_lock(app_id):
            count = self.registry.set_count(app_id, instances)
        return {"message": f"Scaled to {count} instances", "instances": count, "status": "success"}

    def scale_up(self, app_id: int, delta: int = 1) -> Dict:
        with self._app_lock(app_id):
            count = self.registry.scale_up(app_id, delta)
        return {"instances": count, "action": "scale_up"}

    def scale_down(self, app_id: int, delta: int = 1) -> Dict:
        with self._app_lock(app_id):
            count = self.registry.scale_down(app_id, delta)
        return {"instances": count, "action": "scale_down"}

    def metrics(self, app_id: int) -> Dict:
        self._require_app(app_id)
        return self.registry.metrics(app_id)

    def regenerate_proxy(self, app_id: int) -> Dict:
        """Rebuild the app's route from a fresh runtime discovery and reload nginx."""
        with self._app_lock(app_id):
            config = self.proxy.generate_config(app_id)
            self.proxy.generate_base_config()
            warnings = self._reload_proxy()

        return {
            "message": "NGINX config generated and reloaded",
            "config": {
                "appUrl": config.hostname,
                "ports": config.ports,
                "instances": config.instances,
            },
            "warnings": warnings,
        }

    def proxy_status(self, app_id: int) -> Dict:
        self._require_app(app_id)
        generated = self.proxy.route_exists(app_id)
        return {"status": "active" if generated else "pending", "configGenerated": generated}
