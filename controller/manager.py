"""
Container lifecycle management for application sandboxes.
Creates, enumerates and tears down the instances of an application.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from state.cache import RedisCache
from metrics.exporter import MetricsExporter
from .naming import InstanceNaming
from .runtime import ContainerRuntime, SandboxInfo, SandboxProfile, SandboxSpec

logger = logging.getLogger(__name__)

DEFAULT_IMAGE = "node:20-alpine"
DEFAULT_NETWORK = "slipway-apps"
DEFAULT_APP_PORT = 8080

# Minimal HTTP responder plus a periodic heartbeat line on stdout
BUILTIN_APP_SCRIPT = (
    "const http=require('http');"
    "const port=process.env.PORT||8080;"
    "http.createServer((req,res)=>{"
    "res.writeHead(200,{'Content-Type':'text/plain'});"
    "res.end('ok from '+process.env.SLIPWAY_INSTANCE_ID+'\\n');"
    "}).listen(port);"
    "setInterval(()=>console.log('['+new Date().toISOString()+'] [STDOUT] '"
    "+process.env.SLIPWAY_INSTANCE_ID+' heartbeat'),5000);"
)

@dataclass
class InstanceFailure:
    """One instance that could not be started or stopped."""
    app_id: int
    name: str
    error: str
    action: str  # start, stop
    ordinal: Optional[int] = None

    def describe(self) -> str:
        return f"Failed to {self.action} {self.name}: {self.error}"

@dataclass
class DeployOutcome:
    """Best-effort result of a deploy: what was asked for and what runs."""
    app_id: int
    requested: int
    instances: List[SandboxInfo] = field(default_factory=list)
    failures: List[InstanceFailure] = field(default_factory=list)
    replaced: int = 0

    @property
    def achieved(self) -> int:
        return len(self.instances)

    @property
    def backends(self) -> List[str]:
        return [info.name for info in self.instances]

@dataclass
class StopOutcome:
    app_id: int
    stopped: int = 0
    failures: List[InstanceFailure] = field(default_factory=list)

class LifecycleManager:
    def __init__(
        self,
        runtime: ContainerRuntime,
        cache: RedisCache,
        naming: InstanceNaming = None,
        network: str = None,
        default_image: str = None,
        app_port: int = None,
        profile: SandboxProfile = None,
        log_sink=None,
        exporter: MetricsExporter = None,
        stop_timeout: int = None,
    ):
        self.runtime = runtime
        self.cache = cache
        self.naming = naming or InstanceNaming(os.getenv("SLIPWAY_CONTAINER_PREFIX", "slipway"))
        self.network = network or os.getenv("SLIPWAY_NETWORK", DEFAULT_NETWORK)
        self.default_image = default_image or os.getenv("SLIPWAY_DEFAULT_IMAGE", DEFAULT_IMAGE)
        self.app_port = app_port or int(os.getenv("SLIPWAY_APP_PORT", str(DEFAULT_APP_PORT)))
        self.profile = profile or SandboxProfile()
        self.log_sink = log_sink
        self.exporter = exporter or MetricsExporter()
        self.stop_timeout = stop_timeout if stop_timeout is not None else int(os.getenv("SLIPWAY_STOP_TIMEOUT", "10"))
        self._network_ready = False
        self._network_lock = threading.Lock()

    def _ensure_network(self):
        """Ensure the shared application network exists, checking at most once per process."""
        if self._network_ready:
            return
        with self._network_lock:
            if self._network_ready:
                return
            self.runtime.ensure_network(self.network)
            self._network_ready = True
            logger.info(f"Application network {self.network} is ready")

    def _record_log(self, app_id: int, log_type: str, message: str, instance_id: str):
        """Forward an instance event to the log collaborator; never raises."""
        if self.log_sink is None:
            return
        try:
            self.log_sink.append_log(app_id, log_type, message, instance_id)
        except Exception as e:
            logger.warning(f"Failed to append {log_type} log for {instance_id}: {e}")

    def _sandbox_spec(self, app_id: int, ordinal: int, env_vars: Dict[str, str], image_ref: Optional[str]) -> SandboxSpec:
        name = self.naming.container_name(app_id, ordinal)
        env = dict(env_vars)
        env.update({
            "PORT": str(self.app_port),
            "SLIPWAY_APP_ID": str(app_id),
            "SLIPWAY_INSTANCE_ID": self.naming.instance_id(app_id, ordinal),
        })
        labels = {
            "slipway.app": str(app_id),
            "slipway.instance": str(ordinal),
        }
        if image_ref:
            return SandboxSpec(
                name=name, image=image_ref, network=self.network, env=env,
                labels=labels, profile=self.profile, harden=False,
            )
        return SandboxSpec(
            name=name, image=self.default_image, network=self.network, env=env,
            command=["node", "-e", BUILTIN_APP_SCRIPT], labels=labels, profile=self.profile,
        )

    def deploy(self, app_id: int, desired_instances: int, env_vars: Dict[str, str] = None,
               image_ref: Optional[str] = None) -> DeployOutcome:
        """Destroy any existing instances of the app, then start desired_instances new ones.

        Spawns are sequential and each failure is recorded and skipped; the
        outcome's achieved count only includes sandboxes that reached running.
        Raises RuntimeUnavailableError if the runtime cannot be reached before
        the first spawn.
        """
        if desired_instances < 1:
            raise ValueError("desired_instances must be >= 1")
        env_vars = env_vars or {}

        self._ensure_network()

        outcome = DeployOutcome(app_id=app_id, requested=desired_instances)
        hinted = self.cache.is_deployed(app_id)
        existing = self.get_containers(app_id)
        if hinted or existing:
            logger.info(
                f"App {app_id} has {len(existing)} existing instance(s) "
                f"(deployed hint={'set' if hinted else 'absent'}), tearing down before redeploy"
            )
            stopped = self.stop(app_id)
            outcome.replaced = stopped.stopped
            outcome.failures.extend(stopped.failures)

        for ordinal in range(desired_instances):
            spec = self._sandbox_spec(app_id, ordinal, env_vars, image_ref)
            instance_id = self.naming.instance_id(app_id, ordinal)
            try:
                info = self.runtime.spawn(spec)
            except Exception as e:
                logger.error(f"Failed to start instance {ordinal} ({spec.name}) for app {app_id}: {e}")
                outcome.failures.append(InstanceFailure(app_id=app_id, name=spec.name, error=str(e), action="start", ordinal=ordinal))
                self.exporter.record_spawn_failure(app_id)
                self._record_log(app_id, "stderr", f"Failed to deploy instance {ordinal}: {e}", instance_id)
                continue

            outcome.instances.append(info)
            logger.info(f"Started {spec.name} ({info.id[:12]}) for app {app_id}")
            self._record_log(
                app_id, "stdout",
                f"Instance {ordinal + 1}/{desired_instances} deployed: {info.id[:12]}",
                instance_id
            )

        if outcome.achieved:
            self.cache.mark_deployed(app_id)
        logger.info(f"App {app_id} deployed {outcome.achieved}/{desired_instances} instance(s)")
        return outcome

    def stop(self, app_id: int) -> StopOutcome:
        """Stop and remove every instance the runtime reports for the app."""
        outcome = StopOutcome(app_id=app_id)
        for info in self.get_containers(app_id):
            try:
                self.runtime.stop(info.id, timeout=self.stop_timeout)
            except Exception as e:
                logger.warning(f"Graceful stop of {info.name} failed for app {app_id}, forcing removal: {e}")
            # remove() forces the container down even when stop() failed
            try:
                self.runtime.remove(info.id)
                outcome.stopped += 1
                logger.info(f"Stopped and removed {info.name} for app {app_id}")
            except Exception as e:
                logger.warning(f"Failed to remove container {info.name} ({info.id[:12]}) for app {app_id}: {e}")
                outcome.failures.append(InstanceFailure(app_id=app_id, name=info.name, error=str(e), action="stop"))
                self.exporter.record_stop_failure(app_id)

        self.cache.clear_deployed(app_id)
        return outcome

    def get_containers(self, app_id: int) -> List[SandboxInfo]:
        """Instances of the app as the runtime reports them, ordered by ordinal."""
        managed = []
        for info in self.runtime.list(self.naming.app_prefix(app_id)):
            parsed = self.naming.parse(info.name)
            if parsed is None or parsed[0] != app_id:
                continue
            managed.append((parsed[1], info))
        return [info for _, info in sorted(managed, key=lambda pair: pair[0])]

    def running_instance_names(self, app_id: int) -> List[str]:
        """Names of the app's instances that are currently running."""
        return [info.name for info in self.get_containers(app_id) if info.status == "running"]
