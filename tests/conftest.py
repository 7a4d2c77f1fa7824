"""Shared fixtures: in-memory runtime, store, cache and a mocked nginx container."""

from dataclasses import dataclass
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from docker.errors import NotFound

from controller.manager import LifecycleManager
from controller.monitoring import ContainerStatsMonitor
from controller.naming import InstanceNaming
from controller.nginx import DockerNginxManager, ResolverSettings
from controller.orchestrator import DeploymentOrchestrator
from controller.runtime import (
    ContainerRuntime,
    RuntimeUnavailableError,
    SandboxInfo,
    SandboxSpec,
    SpawnError,
)
from controller.scaler import InstanceRegistry
from metrics.exporter import MetricsExporter
from state.db import AppRecord, DatabaseError, DEFAULT_SCALING_POLICY


@dataclass
class LoggedLine:
    app_id: int
    log_type: str
    message: str
    instance_id: Optional[str] = None


class FakeRuntime(ContainerRuntime):
    """In-memory container runtime keyed by sandbox name."""

    def __init__(self) -> None:
        self.containers: Dict[str, SandboxInfo] = {}
        self.specs: Dict[str, SandboxSpec] = {}
        self.networks: set = set()
        self.ensure_network_calls = 0
        self.spawned: List[str] = []
        self.fail_spawn: set = set()
        self.fail_stop: set = set()
        self.fail_remove: set = set()
        self.unavailable = False

    def _check(self) -> None:
        if self.unavailable:
            raise RuntimeUnavailableError("Docker daemon is not reachable")

    def _find(self, name_or_id: str) -> Optional[SandboxInfo]:
        for info in self.containers.values():
            if name_or_id in (info.id, info.name):
                return info
        return None

    def ensure_network(self, name: str) -> None:
        self._check()
        self.ensure_network_calls += 1
        self.networks.add(name)

    def spawn(self, spec: SandboxSpec) -> SandboxInfo:
        self._check()
        if spec.name in self.containers:
            raise SpawnError(f"Conflict: name {spec.name} already in use")
        if spec.name in self.fail_spawn:
            raise SpawnError(f"Container {spec.name} is exited, not running")
        info = SandboxInfo(id=f"{len(self.spawned):04d}{spec.name}", name=spec.name, status="running", ports="8080/tcp")
        self.containers[spec.name] = info
        self.specs[spec.name] = spec
        self.spawned.append(spec.name)
        return info

    def inspect(self, name_or_id: str) -> Optional[SandboxInfo]:
        self._check()
        return self._find(name_or_id)

    def list(self, name_prefix: str) -> List[SandboxInfo]:
        self._check()
        return sorted(
            (info for info in self.containers.values() if info.name.startswith(name_prefix)),
            key=lambda info: info.name,
        )

    def stop(self, name_or_id: str, timeout: int = 10) -> None:
        self._check()
        info = self._find(name_or_id)
        if info is None:
            raise SpawnError(f"No such container: {name_or_id}")
        if info.name in self.fail_stop:
            raise SpawnError(f"Cannot stop {info.name}: device busy")
        info.status = "exited"

    def remove(self, name_or_id: str) -> None:
        self._check()
        info = self._find(name_or_id)
        if info is None:
            return
        if info.name in self.fail_remove:
            raise SpawnError(f"Cannot remove {info.name}: removal of container is already in progress")
        del self.containers[info.name]

    def stats(self, name_or_id: str) -> Dict:
        self._check()
        return {
            "cpu_stats": {"cpu_usage": {"total_usage": 300}, "system_cpu_usage": 2000, "online_cpus": 2},
            "precpu_stats": {"cpu_usage": {"total_usage": 100}, "system_cpu_usage": 1000},
            "memory_stats": {"usage": 64, "limit": 256},
        }

    def add_foreign(self, name: str, status: str = "running") -> SandboxInfo:
        """Place a container that was not started through spawn()."""
        info = SandboxInfo(id=f"ext-{name}", name=name, status=status)
        self.containers[name] = info
        return info


class FakeStore:
    """In-memory stand-in for PostgreSQLManager."""

    def __init__(self) -> None:
        self.apps: Dict[int, AppRecord] = {}
        self.logs: List[LoggedLine] = []
        self.unavailable = False
        self.fail_logs = False

    def _check(self) -> None:
        if self.unavailable:
            raise DatabaseError("Cannot connect to PostgreSQL")

    def add_app(self, app_id: int, name: str, **kwargs) -> AppRecord:
        record = AppRecord(id=app_id, name=name, **kwargs)
        self.apps[app_id] = record
        return record

    def get_app(self, app_id: int) -> Optional[AppRecord]:
        self._check()
        return self.apps.get(app_id)

    def get_scaling_policy(self, app_id: int) -> Dict[str, int]:
        self._check()
        record = self.apps.get(app_id)
        return dict(record.scaling_policy) if record else dict(DEFAULT_SCALING_POLICY)

    def get_instance_count(self, app_id: int) -> Optional[int]:
        self._check()
        record = self.apps.get(app_id)
        return record.instances if record else None

    def update_instance_count(self, app_id: int, instances: int) -> bool:
        self._check()
        if app_id not in self.apps:
            return False
        self.apps[app_id].instances = instances
        return True

    def update_app_status(self, app_id: int, status: str) -> bool:
        self._check()
        if app_id not in self.apps:
            return False
        self.apps[app_id].status = status
        return True

    def mark_deployed(self, app_id: int, status: str = "running") -> bool:
        self._check()
        if app_id not in self.apps:
            return False
        self.apps[app_id].status = status
        self.apps[app_id].last_deployed = "now"
        return True

    def append_log(self, app_id: int, log_type: str, message: str, instance_id: Optional[str] = None) -> None:
        if self.fail_logs:
            raise DatabaseError("app_logs is unavailable")
        self.logs.append(LoggedLine(app_id=app_id, log_type=log_type, message=message, instance_id=instance_id))


class FakeCache:
    """In-memory stand-in for RedisCache (TTLs are not modelled)."""

    def __init__(self) -> None:
        self.counts: Dict[int, int] = {}
        self.deployed: set = set()

    def get_instance_count(self, app_id: int) -> Optional[int]:
        return self.counts.get(app_id)

    def set_instance_count(self, app_id: int, count: int) -> None:
        self.counts[app_id] = count

    def is_deployed(self, app_id: int) -> bool:
        return app_id in self.deployed

    def mark_deployed(self, app_id: int) -> None:
        self.deployed.add(app_id)

    def clear_deployed(self, app_id: int) -> None:
        self.deployed.discard(app_id)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


@pytest.fixture
def naming() -> InstanceNaming:
    return InstanceNaming("slipway")


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def store() -> FakeStore:
    store = FakeStore()
    store.add_app(42, "Demo App")
    return store


@pytest.fixture
def cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def exporter() -> MetricsExporter:
    return MetricsExporter()


@pytest.fixture
def lifecycle(runtime, cache, naming, store, exporter) -> LifecycleManager:
    return LifecycleManager(
        runtime,
        cache,
        naming=naming,
        network="test-net",
        default_image="node:20-alpine",
        app_port=8080,
        log_sink=store,
        exporter=exporter,
        stop_timeout=1,
    )


@pytest.fixture
def nginx_container() -> MagicMock:
    """A running nginx container whose nginx -t and reload succeed."""
    container = MagicMock()
    container.status = "running"
    container.exec_run.return_value = MagicMock(exit_code=0, output=b"")
    return container


@pytest.fixture
def nginx_client(nginx_container) -> MagicMock:
    client = MagicMock()
    client.containers.get.return_value = nginx_container
    return client


@pytest.fixture
def missing_nginx_client() -> MagicMock:
    client = MagicMock()
    client.containers.get.side_effect = NotFound("No such container: test-nginx")
    return client


@pytest.fixture
def proxy(tmp_path, nginx_client, lifecycle, store, exporter, naming) -> DockerNginxManager:
    return DockerNginxManager(
        conf_dir=str(tmp_path / "conf.d"),
        nginx_container_name="test-nginx",
        docker_client=nginx_client,
        instance_source=lifecycle,
        app_store=store,
        domain="apps.test",
        app_port=8080,
        resolver=ResolverSettings(),
        exporter=exporter,
        naming=naming,
    )


@pytest.fixture
def registry(store, cache, lifecycle) -> InstanceRegistry:
    return InstanceRegistry(store, cache, monitor=ContainerStatsMonitor(lifecycle))


@pytest.fixture
def orchestrator(store, lifecycle, registry, proxy, exporter) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(store, lifecycle, registry, proxy, exporter=exporter)
