"""
Slipway Controller Package

This package contains the control plane components for hosting sandboxed
application instances behind nginx.

Components:
- LifecycleManager: Sandbox creation, discovery and teardown
- DockerRuntime: Docker-backed container runtime
- DockerNginxManager: Nginx route generation and reload
- InstanceRegistry: Target instance counts and scaling bounds
- DeploymentOrchestrator: Deploy/stop/scale workflows
- API: FastAPI-based admin interface
"""

from .manager import LifecycleManager, DeployOutcome, StopOutcome, InstanceFailure
from .runtime import (
    ContainerRuntime,
    DockerRuntime,
    RuntimeUnavailableError,
    SandboxInfo,
    SandboxProfile,
    SandboxSpec,
    SpawnError,
)
from .nginx import DockerNginxManager, ReloadResult, NginxConfig
from .scaler import InstanceRegistry, ScalingPolicy
from .orchestrator import DeploymentOrchestrator, AppNotFoundError

__version__ = "1.0.0"

__all__ = [
    "LifecycleManager",
    "DeployOutcome",
    "StopOutcome",
    "InstanceFailure",
    "ContainerRuntime",
    "DockerRuntime",
    "RuntimeUnavailableError",
    "SandboxInfo",
    "SandboxProfile",
    "SandboxSpec",
    "SpawnError",
    "DockerNginxManager",
    "ReloadResult",
    "NginxConfig",
    "InstanceRegistry",
    "ScalingPolicy",
    "DeploymentOrchestrator",
    "AppNotFoundError",
]
