"""
Container runtime boundary for Slipway.

The lifecycle manager only talks to a ContainerRuntime (spawn, inspect,
list, stop, remove, plus network and stats helpers). DockerRuntime is the
production implementation on top of the Docker SDK; tests use an in-memory
fake.
"""

import docker
import logging
import requests
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.types import Ulimit
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class RuntimeUnavailableError(Exception):
    """The container runtime cannot be reached."""
    pass


class SpawnError(Exception):
    """A single sandbox could not be created or did not reach running."""
    pass


@dataclass
class SandboxProfile:
    """Fixed security and resource profile applied to every sandbox."""
    memory: str = "256m"
    cpus: float = 0.5
    nofile: int = 1024
    nproc: int = 100
    pids_limit: int = 256
    read_only: bool = True
    tmpfs: Dict[str, str] = field(default_factory=lambda: {"/tmp": "size=64m"})
    cap_add: List[str] = field(default_factory=lambda: ["CHOWN"])
    no_new_privileges: bool = True

    def resource_kwargs(self) -> Dict:
        """Hard ceilings: memory, CPU, file descriptors, processes."""
        return {
            "mem_limit": self.memory,
            "nano_cpus": int(self.cpus * 1_000_000_000),
            "pids_limit": self.pids_limit,
            "ulimits": [
                Ulimit(name="nofile", soft=self.nofile, hard=self.nofile),
                Ulimit(name="nproc", soft=self.nproc, hard=self.nproc),
            ],
        }

    def hardening_kwargs(self) -> Dict:
        """Privilege and filesystem restrictions."""
        kwargs = {
            "read_only": self.read_only,
            "tmpfs": dict(self.tmpfs),
            "cap_drop": ["ALL"],
            "cap_add": list(self.cap_add),
        }
        if self.no_new_privileges:
            kwargs["security_opt"] = ["no-new-privileges"]
        return kwargs


@dataclass
class SandboxSpec:
    """Everything needed to create one sandbox."""
    name: str
    image: str
    network: str
    env: Dict[str, str] = field(default_factory=dict)
    command: Optional[List[str]] = None
    labels: Dict[str, str] = field(default_factory=dict)
    profile: SandboxProfile = field(default_factory=SandboxProfile)
    # Custom images only get resource ceilings and env, no hardening assumptions
    harden: bool = True

    @property
    def aliases(self) -> List[str]:
        return [self.name]


@dataclass
class SandboxInfo:
    """A sandbox as reported by the runtime."""
    id: str
    name: str
    status: str
    ports: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name, "status": self.status, "ports": self.ports}


class ContainerRuntime(ABC):
    """Narrow interface over the container runtime."""

    @abstractmethod
    def ensure_network(self, name: str) -> None:
        """Create the named network if it does not exist."""

    @abstractmethod
    def spawn(self, spec: SandboxSpec) -> SandboxInfo:
        """Create and start a sandbox; raise SpawnError if it is not running."""

    @abstractmethod
    def inspect(self, name_or_id: str) -> Optional[SandboxInfo]:
        """Current view of one sandbox, None if it does not exist."""

    @abstractmethod
    def list(self, name_prefix: str) -> List[SandboxInfo]:
        """All sandboxes, running or not, whose name starts with the prefix."""

    @abstractmethod
    def stop(self, name_or_id: str, timeout: int = 10) -> None:
        """Stop a sandbox."""

    @abstractmethod
    def remove(self, name_or_id: str) -> None:
        """Remove a sandbox."""

    @abstractmethod
    def stats(self, name_or_id: str) -> Dict:
        """One raw stats sample for a sandbox."""


def _format_ports(container) -> str:
    ports = (container.attrs.get("NetworkSettings") or {}).get("Ports") or {}
    if not ports:
        exposed = (container.attrs.get("Config") or {}).get("ExposedPorts") or {}
        return ",".join(sorted(exposed))
    return ",".join(sorted(ports))


class DockerRuntime(ContainerRuntime):
    def __init__(self, client: Optional[docker.DockerClient] = None):
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        """Docker client, connected on first use."""
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise RuntimeUnavailableError(f"Docker daemon is not reachable: {e}") from e
        return self._client

    def _to_info(self, container) -> SandboxInfo:
        return SandboxInfo(
            id=container.id,
            name=container.name,
            status=container.status,
            ports=_format_ports(container),
        )

    def ensure_network(self, name: str) -> None:
        try:
            self.client.networks.get(name)
            return
        except NotFound:
            pass
        except requests.exceptions.ConnectionError as e:
            raise RuntimeUnavailableError(f"Docker daemon is not reachable: {e}") from e
        except DockerException as e:
            raise RuntimeUnavailableError(f"Failed to look up network {name}: {e}") from e

        try:
            self.client.networks.create(
                name, driver="bridge", internal=True, labels={"managed_by": "slipway"}
            )
            logger.info(f"Created network {name}")
        except APIError as e:
            # Another caller created it between our get and create
            if e.status_code == 409:
                logger.debug(f"Network {name} already created concurrently")
                return
            raise RuntimeUnavailableError(f"Failed to create network {name}: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise RuntimeUnavailableError(f"Docker daemon is not reachable: {e}") from e

    def _create_kwargs(self, spec: SandboxSpec) -> Dict:
        kwargs = {
            "image": spec.image,
            "name": spec.name,
            "environment": dict(spec.env),
            "labels": dict(spec.labels),
            "network": spec.network,
            "networking_config": {
                spec.network: self.client.api.create_endpoint_config(aliases=spec.aliases)
            },
        }
        if spec.command:
            kwargs["command"] = spec.command
        kwargs.update(spec.profile.resource_kwargs())
        if spec.harden:
            kwargs.update(spec.profile.hardening_kwargs())
        return kwargs

    def _create(self, spec: SandboxSpec):
        """Create the container, pulling its image once if the daemon lacks it."""
        kwargs = self._create_kwargs(spec)
        try:
            return self.client.containers.create(**kwargs)
        except ImageNotFound:
            logger.info(f"Image {spec.image} not present, pulling it for {spec.name}")
        self.client.images.pull(spec.image)
        return self.client.containers.create(**kwargs)

    def spawn(self, spec: SandboxSpec) -> SandboxInfo:
        container = None
        try:
            container = self._create(spec)
            container.start()
            container.reload()
        except requests.exceptions.ConnectionError as e:
            raise RuntimeUnavailableError(f"Docker daemon is not reachable: {e}") from e
        except DockerException as e:
            if container is not None:
                self._discard(container)
            raise SpawnError(f"Failed to start {spec.name}: {e}") from e

        if container.status != "running":
            status = container.status
            self._discard(container)
            raise SpawnError(f"Container {spec.name} is {status}, not running")
        return self._to_info(container)

    def _discard(self, container):
        try:
            container.remove(force=True)
        except DockerException as e:
            logger.warning(f"Failed to discard container {container.name}: {e}")

    def inspect(self, name_or_id: str) -> Optional[SandboxInfo]:
        try:
            return self._to_info(self.client.containers.get(name_or_id))
        except NotFound:
            return None
        except requests.exceptions.ConnectionError as e:
            raise RuntimeUnavailableError(f"Docker daemon is not reachable: {e}") from e

    def list(self, name_prefix: str) -> List[SandboxInfo]:
        try:
            containers = self.client.containers.list(all=True, filters={"name": name_prefix})
        except requests.exceptions.ConnectionError as e:
            raise RuntimeUnavailableError(f"Docker daemon is not reachable: {e}") from e
        except DockerException as e:
            raise RuntimeUnavailableError(f"Failed to list containers: {e}") from e

        # The daemon's name filter is a substring match
        infos = [self._to_info(c) for c in containers if c.name.startswith(name_prefix)]
        return sorted(infos, key=lambda info: info.name)

    def stop(self, name_or_id: str, timeout: int = 10) -> None:
        try:
            self.client.containers.get(name_or_id).stop(timeout=timeout)
        except requests.exceptions.ConnectionError as e:
            raise RuntimeUnavailableError(f"Docker daemon is not reachable: {e}") from e

    def remove(self, name_or_id: str) -> None:
        try:
            self.client.containers.get(name_or_id).remove(force=True)
        except NotFound:
            logger.debug(f"Container {name_or_id} already removed")
        except requests.exceptions.ConnectionError as e:
            raise RuntimeUnavailableError(f"Docker daemon is not reachable: {e}") from e

    def stats(self, name_or_id: str) -> Dict:
        try:
            return self.client.containers.get(name_or_id).stats(stream=False)
        except requests.exceptions.ConnectionError as e:
            raise RuntimeUnavailableError(f"Docker daemon is not reachable: {e}") from e
