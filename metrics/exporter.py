"""
Prometheus exporter for Slipway.
Counts deploy outcomes, per-instance faults, proxy route changes and reloads.
"""

import logging
from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest, CONTENT_TYPE_LATEST

logger = logging.getLogger(__name__)

class MetricsExporter:
    """
    Holds the control plane's Prometheus collectors.

    Each exporter owns its CollectorRegistry so several instances (one per
    process, or one per test) never collide on metric names.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or CollectorRegistry()
        self._setup_prometheus_metrics()

    def _setup_prometheus_metrics(self):
        """Initialize Prometheus metric objects."""
        # Deploy/stop workflow
        self.deployments = Counter(
            'slipway_deployments_total', 'Deploy requests by outcome', ['outcome'],
            registry=self.registry
        )
        self.stops = Counter(
            'slipway_stops_total', 'Stop requests handled', registry=self.registry
        )
        self.app_instances = Gauge(
            'slipway_app_instances', 'Live instances after the last deploy or stop', ['app'],
            registry=self.registry
        )

        # Per-instance faults
        self.spawn_failures = Counter(
            'slipway_instance_spawn_failures_total', 'Sandboxes that failed to start', ['app'],
            registry=self.registry
        )
        self.stop_failures = Counter(
            'slipway_instance_stop_failures_total', 'Sandboxes that failed to stop or remove', ['app'],
            registry=self.registry
        )

        # Nginx
        self.nginx_reloads = Counter(
            'slipway_nginx_reloads_total', 'Nginx reload attempts', ['status'],
            registry=self.registry
        )
        self.nginx_routes = Counter(
            'slipway_nginx_route_changes_total', 'Route files written or removed', ['action'],
            registry=self.registry
        )
        self.nginx_upstreams = Gauge(
            'slipway_nginx_upstreams', 'Backends referenced by an app route', ['app'],
            registry=self.registry
        )

    def record_deployment(self, app_id: int, requested: int, achieved: int):
        if achieved == 0:
            outcome = "failed"
        elif achieved < requested:
            outcome = "partial"
        else:
            outcome = "complete"
        self.deployments.labels(outcome=outcome).inc()
        self.app_instances.labels(app=str(app_id)).set(achieved)
        logger.debug(f"Deployment of app {app_id}: {achieved}/{requested} ({outcome})")

    def record_stop(self, app_id: int):
        self.stops.inc()
        self.app_instances.labels(app=str(app_id)).set(0)

    def record_spawn_failure(self, app_id: int):
        self.spawn_failures.labels(app=str(app_id)).inc()

    def record_stop_failure(self, app_id: int):
        self.stop_failures.labels(app=str(app_id)).inc()

    def record_nginx_reload(self, status: str):
        """status is one of reloaded, skipped, failed."""
        self.nginx_reloads.labels(status=status).inc()

    def record_route_written(self, app_id: int, backends: int):
        self.nginx_routes.labels(action="written").inc()
        self.nginx_upstreams.labels(app=str(app_id)).set(backends)

    def record_route_removed(self, app_id: int):
        self.nginx_routes.labels(action="removed").inc()
        self.nginx_upstreams.labels(app=str(app_id)).set(0)

    def get_prometheus_metrics(self) -> bytes:
        """Get metrics in Prometheus exposition format."""
        return generate_latest(self.registry)
