"""
Lifecycle management for the Slipway Controller.
Builds the process-wide services on startup and releases them on shutdown.
"""
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from controller.manager import LifecycleManager
from controller.monitoring import ContainerStatsMonitor
from controller.nginx import DockerNginxManager
from controller.orchestrator import DeploymentOrchestrator
from controller.runtime import DockerRuntime
from controller.scaler import InstanceRegistry
from metrics.exporter import MetricsExporter
from state.cache import RedisCache, get_cache
from state.db import PostgreSQLManager, get_database_manager

logger = logging.getLogger(__name__)

# Global components - initialized when starting the API
state_store: Optional[PostgreSQLManager] = None
cache: Optional[RedisCache] = None
nginx_manager: Optional[DockerNginxManager] = None
orchestrator: Optional[DeploymentOrchestrator] = None
exporter: Optional[MetricsExporter] = None

# Bounded pool for blocking docker and nginx calls
executor: Optional[ThreadPoolExecutor] = None


def get_orchestrator() -> Optional[DeploymentOrchestrator]:
    """Get the global deployment orchestrator."""
    return orchestrator


def get_exporter() -> MetricsExporter:
    """Get the global metrics exporter, creating one if the API has not started."""
    global exporter
    if exporter is None:
        exporter = MetricsExporter()
    return exporter


def get_executor() -> Optional[ThreadPoolExecutor]:
    return executor


def get_request_timeout() -> float:
    return float(os.getenv("SLIPWAY_REQUEST_TIMEOUT", "120"))


async def startup_event():
    """Initialize all components when the API starts."""
    global state_store, cache, nginx_manager, orchestrator, executor

    try:
        logger.info("Connecting to PostgreSQL store...")
        state_store = get_database_manager()
        cache = get_cache()
        if not cache.ping():
            logger.warning("Redis is unreachable; instance counts will be read from PostgreSQL")

        metrics_exporter = get_exporter()
        runtime = DockerRuntime()
        lifecycle_manager = LifecycleManager(
            runtime,
            cache,
            log_sink=state_store,
            exporter=metrics_exporter,
        )
        nginx_manager = DockerNginxManager(
            instance_source=lifecycle_manager,
            app_store=state_store,
            exporter=metrics_exporter,
            naming=lifecycle_manager.naming,
        )
        registry = InstanceRegistry(
            state_store,
            cache,
            monitor=ContainerStatsMonitor(lifecycle_manager),
        )
        orchestrator = DeploymentOrchestrator(
            state_store,
            lifecycle_manager,
            registry,
            nginx_manager,
            exporter=metrics_exporter,
        )

        workers = int(os.getenv("SLIPWAY_RUNTIME_WORKERS", "4"))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="slipway-runtime")

        nginx_manager.generate_base_config()

        logger.info(f"Slipway Controller API started ({workers} runtime workers)")

    except Exception as e:
        logger.error(f"Failed to start controller: {e}")
        raise


async def shutdown_event():
    """Clean up resources when shutting down."""
    global executor

    if executor:
        executor.shutdown(wait=True)
        executor = None

    if cache:
        cache.close()

    if state_store:
        state_store.close()

    logger.info("Slipway Controller API shut down")
