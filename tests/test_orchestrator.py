"""Workflow tests for DeploymentOrchestrator over in-memory collaborators."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from controller.nginx import DEFAULT_CONF_NAME
from controller.orchestrator import AppNotFoundError, DeploymentOrchestrator
from controller.runtime import RuntimeUnavailableError
from state.db import DatabaseError


class TestEndToEnd:
    def test_deploy_metrics_stop_for_app_42(self, orchestrator: DeploymentOrchestrator, proxy, store) -> None:
        proxy.generate_base_config()

        deployed = orchestrator.deploy(42, instances=3).to_dict()

        assert deployed["instances"] == 3
        assert deployed["status"] == "running"
        assert [c["name"] for c in deployed["containers"]] == [
            "slipway-app-42-instance-0",
            "slipway-app-42-instance-1",
            "slipway-app-42-instance-2",
        ]
        assert deployed["warnings"] == []
        assert proxy.route_exists(42)
        assert store.apps[42].status == "running"
        assert store.apps[42].last_deployed is not None

        metrics = orchestrator.metrics(42)
        assert metrics["instances"] == 3
        assert metrics["policy"] == {"min": 1, "max": 10}
        assert metrics["metrics"]["sampled_instances"] == 3

        stopped = orchestrator.stop(42).to_dict()
        assert stopped["status"] == "stopped"
        assert stopped["stopped"] == 3
        assert not proxy.route_exists(42)
        assert (proxy.conf_dir / DEFAULT_CONF_NAME).exists()
        assert store.apps[42].status == "stopped"
        assert orchestrator.list_containers(42) == {"containers": [], "count": 0}


class TestDeploy:
    def test_unknown_app(self, orchestrator: DeploymentOrchestrator) -> None:
        with pytest.raises(AppNotFoundError):
            orchestrator.deploy(404, instances=1)

    def test_uses_registry_count_when_instances_omitted(self, orchestrator: DeploymentOrchestrator, store) -> None:
        store.apps[42].instances = 2

        result = orchestrator.deploy(42)

        assert result.requested == 2
        assert result.instances == 2

    def test_uses_stored_custom_image(self, orchestrator: DeploymentOrchestrator, store, runtime) -> None:
        store.apps[42].image = "ghcr.io/acme/api:1"

        orchestrator.deploy(42, instances=1)

        assert runtime.specs["slipway-app-42-instance-0"].image == "ghcr.io/acme/api:1"

    def test_request_image_overrides_stored_image(self, orchestrator: DeploymentOrchestrator, store, runtime) -> None:
        store.apps[42].image = "ghcr.io/acme/api:1"

        orchestrator.deploy(42, instances=1, image="ghcr.io/acme/api:2")

        assert runtime.specs["slipway-app-42-instance-0"].image == "ghcr.io/acme/api:2"

    def test_partial_deploy_records_achieved_count(
        self, orchestrator: DeploymentOrchestrator, runtime, store, cache, proxy
    ) -> None:
        runtime.fail_spawn.update({"slipway-app-42-instance-1", "slipway-app-42-instance-3"})

        result = orchestrator.deploy(42, instances=5)

        assert result.instances == 3
        assert result.status == "running"
        assert len(result.warnings) == 2
        assert store.apps[42].instances == 3
        assert cache.counts[42] == 3
        config = proxy.config_path(42).read_text()
        assert "slipway-app-42-instance-1:" not in config
        assert "slipway-app-42-instance-4:8080" in config

    def test_nothing_started(self, orchestrator: DeploymentOrchestrator, runtime, store, proxy) -> None:
        orchestrator.deploy(42, instances=2)
        store.apps[42].instances = 2
        runtime.fail_spawn.update({"slipway-app-42-instance-0", "slipway-app-42-instance-1"})

        result = orchestrator.deploy(42, instances=2)

        assert result.instances == 0
        assert result.status == "stopped"
        assert store.apps[42].status == "stopped"
        assert store.apps[42].instances == 2
        assert not proxy.route_exists(42)
        assert any("No instance" in w for w in result.warnings)

    def test_proxy_failure_is_a_warning(
        self, orchestrator: DeploymentOrchestrator, nginx_container: MagicMock, store
    ) -> None:
        nginx_container.exec_run.return_value = MagicMock(exit_code=1, output=b"emerg: host not found")

        result = orchestrator.deploy(42, instances=2)

        assert result.instances == 2
        assert result.status == "running"
        assert any("host not found" in w for w in result.warnings)

    def test_proxy_not_running_is_a_warning(
        self, orchestrator: DeploymentOrchestrator, nginx_client: MagicMock
    ) -> None:
        nginx_client.containers.get.return_value.status = "exited"

        result = orchestrator.deploy(42, instances=1)

        assert result.instances == 1
        assert any("not running" in w for w in result.warnings)

    def test_route_write_failure_is_a_warning(self, orchestrator: DeploymentOrchestrator, proxy) -> None:
        proxy.generate_config = MagicMock(side_effect=OSError("read-only file system"))

        result = orchestrator.deploy(42, instances=1)

        assert result.instances == 1
        assert any("read-only file system" in w for w in result.warnings)

    def test_runtime_unavailable_is_fatal(self, orchestrator: DeploymentOrchestrator, runtime) -> None:
        runtime.unavailable = True

        with pytest.raises(RuntimeUnavailableError):
            orchestrator.deploy(42, instances=1)

    def test_store_unavailable_is_fatal(self, orchestrator: DeploymentOrchestrator, store) -> None:
        store.unavailable = True

        with pytest.raises(DatabaseError):
            orchestrator.deploy(42, instances=1)

    def test_records_deployment_metric(self, orchestrator: DeploymentOrchestrator, runtime, exporter) -> None:
        runtime.fail_spawn.add("slipway-app-42-instance-0")

        orchestrator.deploy(42, instances=2)

        assert exporter.registry.get_sample_value("slipway_deployments_total", {"outcome": "partial"}) == 1


class TestStop:
    def test_stop_failures_become_warnings(self, orchestrator: DeploymentOrchestrator, runtime, proxy) -> None:
        orchestrator.deploy(42, instances=2)
        runtime.fail_remove.add("slipway-app-42-instance-1")

        result = orchestrator.stop(42)

        assert result.stopped == 1
        assert len(result.warnings) == 1
        assert not proxy.route_exists(42)

    def test_stop_unknown_app(self, orchestrator: DeploymentOrchestrator) -> None:
        with pytest.raises(AppNotFoundError):
            orchestrator.stop(404)


class TestScaling:
    def test_scale_clamps_to_policy(self, orchestrator: DeploymentOrchestrator, store) -> None:
        store.apps[42].scaling_policy = {"min": 2, "max": 6}

        assert orchestrator.scale(42, 20) == {"message": "Scaled to 6 instances", "instances": 6, "status": "success"}

    def test_scale_up_and_down(self, orchestrator: DeploymentOrchestrator) -> None:
        assert orchestrator.scale_up(42, 2) == {"instances": 3, "action": "scale_up"}
        assert orchestrator.scale_down(42, 5) == {"instances": 1, "action": "scale_down"}

    def test_scale_only_moves_the_target(self, orchestrator: DeploymentOrchestrator, runtime) -> None:
        orchestrator.deploy(42, instances=1)

        orchestrator.scale(42, 4)

        assert len(runtime.containers) == 1
        assert orchestrator.deploy(42).instances == 4


class TestProxy:
    def test_regenerate_from_discovery(self, orchestrator: DeploymentOrchestrator, runtime, proxy) -> None:
        runtime.add_foreign("slipway-app-42-instance-0")
        runtime.add_foreign("slipway-app-42-instance-1")

        result = orchestrator.regenerate_proxy(42)

        assert result["config"] == {"appUrl": "demo-app.apps.test", "ports": [8080, 8080], "instances": 2}
        assert result["warnings"] == []
        assert (proxy.conf_dir / DEFAULT_CONF_NAME).exists()

    def test_regenerate_discovery_failure_keeps_route(
        self, orchestrator: DeploymentOrchestrator, runtime, proxy
    ) -> None:
        orchestrator.deploy(42, instances=1)
        runtime.unavailable = True

        with pytest.raises(RuntimeUnavailableError):
            orchestrator.regenerate_proxy(42)
        assert proxy.route_exists(42)

    def test_proxy_status(self, orchestrator: DeploymentOrchestrator) -> None:
        assert orchestrator.proxy_status(42) == {"status": "pending", "configGenerated": False}

        orchestrator.deploy(42, instances=1)

        assert orchestrator.proxy_status(42) == {"status": "active", "configGenerated": True}


class TestPerAppLock:
    def test_same_app_workflows_are_serialized(self, orchestrator: DeploymentOrchestrator, lifecycle) -> None:
        active = []
        overlaps = []
        original_deploy = lifecycle.deploy

        def slow_deploy(*args, **kwargs):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.05)
            try:
                return original_deploy(*args, **kwargs)
            finally:
                active.pop()

        lifecycle.deploy = slow_deploy
        threads = [threading.Thread(target=orchestrator.deploy, args=(42,), kwargs={"instances": 2}) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []
        assert len(lifecycle.get_containers(42)) == 2

    def test_unknown_app_allocates_no_lock(self, orchestrator: DeploymentOrchestrator) -> None:
        for workflow in (orchestrator.deploy, orchestrator.stop, orchestrator.scale_up, orchestrator.regenerate_proxy):
            with pytest.raises(AppNotFoundError):
                workflow(404)

        assert 404 not in orchestrator._app_locks

    def test_utilization_is_sampled_after_the_lock_is_released(
        self, orchestrator: DeploymentOrchestrator, registry
    ) -> None:
        held_while_sampling = []
        original_metrics = registry.metrics

        def recording_metrics(app_id):
            held_while_sampling.append(orchestrator._app_locks[app_id].locked())
            return original_metrics(app_id)

        registry.metrics = MagicMock(side_effect=recording_metrics)

        result = orchestrator.deploy(42, instances=2)

        assert held_while_sampling == [False]
        assert result.metrics["instances"] == 2
