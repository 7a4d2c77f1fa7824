"""
Nginx management for Slipway.
Derives per-application routes from live instances, writes them atomically
and reloads the nginx container.
"""

import docker
import logging
import os
import re
import requests
import tempfile
from dataclasses import dataclass, field
from docker.errors import DockerException, NotFound
from jinja2 import Template
from pathlib import Path
from typing import List, Optional
from dotenv import load_dotenv

from metrics.exporter import MetricsExporter
from .naming import InstanceNaming

load_dotenv()

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"
DEFAULT_CONF_NAME = "00-default.conf"
DEFAULT_UNAVAILABLE_MESSAGE = "No app is deployed for this host"

@dataclass
class ResolverSettings:
    """Name resolution used by nginx at request time."""
    address: str = "127.0.0.11"
    valid: str = "10s"
    timeout: str = "5s"

@dataclass
class Backend:
    host: str
    port: int

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

@dataclass
class UpstreamPool:
    name: str
    backends: List[Backend]
    policy: str = "least_conn"

@dataclass
class RouteConfig:
    """A hostname routed either to one backend or to a named pool."""
    app_id: int
    hostname: str
    resolver: ResolverSettings
    backend: Optional[Backend] = None
    pool: Optional[UpstreamPool] = None

    @property
    def backends(self) -> List[Backend]:
        if self.pool:
            return list(self.pool.backends)
        return [self.backend] if self.backend else []

@dataclass
class NginxConfig:
    """What generate_config produced; empty lists and config when no instance is live."""
    app_id: int
    app_name: str
    hostname: str
    upstreams: List[str] = field(default_factory=list)
    ports: List[int] = field(default_factory=list)
    config: str = ""
    path: Optional[str] = None

    @property
    def instances(self) -> int:
        return len(self.upstreams)

@dataclass
class ReloadResult:
    reloaded: bool = False
    skipped: bool = False
    error: Optional[str] = None

    @property
    def status(self) -> str:
        if self.reloaded:
            return "reloaded"
        if self.skipped:
            return "skipped"
        return "failed"

def _slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9-]+", "-", name.lower()).strip("-")
    return slug or "app"

def build_route(app_id: int, hostname: str, backend_hosts: List[str], port: int,
                resolver: ResolverSettings) -> RouteConfig:
    """Single backend for one host, a least-connections pool for several."""
    backends = [Backend(host=host, port=port) for host in backend_hosts]
    if not backends:
        raise ValueError("A route needs at least one backend")
    if len(backends) == 1:
        return RouteConfig(app_id=app_id, hostname=hostname, resolver=resolver, backend=backends[0])
    pool = UpstreamPool(name=f"app-{app_id}", backends=backends)
    return RouteConfig(app_id=app_id, hostname=hostname, resolver=resolver, pool=pool)

def _load_template(name: str) -> Template:
    return Template((TEMPLATE_DIR / name).read_text(), trim_blocks=True, lstrip_blocks=True)

_APP_TEMPLATE = _load_template("app.conf.j2")
_DEFAULT_TEMPLATE = _load_template("default.conf.j2")

def render_route(route: RouteConfig) -> str:
    """Render a route to nginx configuration text."""
    return _APP_TEMPLATE.render(route=route)

class DockerNginxManager:
    def __init__(
        self,
        conf_dir: str = None,
        nginx_container_name: str = None,
        docker_client: docker.DockerClient = None,
        instance_source=None,
        app_store=None,
        domain: str = None,
        app_port: int = None,
        resolver: ResolverSettings = None,
        exporter: MetricsExporter = None,
        naming: InstanceNaming = None,
    ):
        self.conf_dir = Path(conf_dir or os.getenv("SLIPWAY_NGINX_CONF_DIR", "/tmp/nginx-slipway"))
        self.nginx_container_name = nginx_container_name or os.getenv("SLIPWAY_NGINX_CONTAINER", "slipway-nginx")
        self._docker_client = docker_client
        # Anything with running_instance_names(app_id), normally the LifecycleManager
        self.instance_source = instance_source
        # Anything with get_app(app_id), normally the PostgreSQL store
        self.app_store = app_store
        self.domain = domain or os.getenv("SLIPWAY_APPS_DOMAIN", "slipway.local")
        self.app_port = app_port or int(os.getenv("SLIPWAY_APP_PORT", "8080"))
        self.resolver = resolver or ResolverSettings(
            address=os.getenv("SLIPWAY_NGINX_RESOLVER", "127.0.0.11"),
            valid=os.getenv("SLIPWAY_NGINX_RESOLVER_VALID", "10s"),
            timeout=os.getenv("SLIPWAY_NGINX_RESOLVER_TIMEOUT", "5s"),
        )
        self.exporter = exporter or MetricsExporter()
        self.naming = naming or InstanceNaming(os.getenv("SLIPWAY_CONTAINER_PREFIX", "slipway"))

    @property
    def docker_client(self) -> docker.DockerClient:
        if self._docker_client is None:
            self._docker_client = docker.from_env()
        return self._docker_client

    def _validate_app_id(self, app_id: int) -> int:
        """Only plain non-negative integers may become part of a config path."""
        if isinstance(app_id, bool) or not isinstance(app_id, int) or app_id < 0:
            raise ValueError(f"Invalid app id: {app_id!r}")
        return app_id

    def config_path(self, app_id: int) -> Path:
        return self.conf_dir / f"app-{self._validate_app_id(app_id)}.conf"

    def route_exists(self, app_id: int) -> bool:
        return self.config_path(app_id).exists()

    def _write_atomic(self, path: Path, content: str):
        """Write through a temp file in the same directory and rename over the target."""
        self.conf_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(mode='w', delete=False, dir=self.conf_dir,
                                             prefix=f".{path.stem}-", suffix='.tmp') as tmp_file:
                tmp_path = tmp_file.name
                tmp_file.write(content)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, path)
        except OSError:
            if tmp_path:
                Path(tmp_path).unlink(missing_ok=True)
            raise

    def _app_name(self, app_id: int) -> str:
        if self.app_store is not None:
            record = self.app_store.get_app(app_id)
            if record is not None and record.name:
                return record.name
        return f"app-{app_id}"

    def _resolve_backends(self, app_id: int, actual_instance_count: Optional[int],
                          backends: Optional[List[str]]) -> List[str]:
        if backends is not None:
            return list(backends)
        if actual_instance_count is not None:
            if actual_instance_count < 0:
                raise ValueError("actual_instance_count must be >= 0")
            return [self.naming.container_name(app_id, ordinal) for ordinal in range(actual_instance_count)]
        if self.instance_source is None:
            raise ValueError("No instance count given and no instance source to discover from")
        return self.instance_source.running_instance_names(app_id)

    def generate_config(self, app_id: int, actual_instance_count: Optional[int] = None,
                        backends: Optional[List[str]] = None) -> NginxConfig:
        """Write the route for an app from its live instances.

        backends (instance names) wins over actual_instance_count, which wins
        over discovering running instances from the runtime. With zero
        instances the route is removed and an empty NginxConfig is returned.
        """
        self._validate_app_id(app_id)
        app_name = self._app_name(app_id)
        hostname = f"{_slugify(app_name)}.{self.domain}"
        hosts = self._resolve_backends(app_id, actual_instance_count, backends)

        if not hosts:
            logger.info(f"No live instances for app {app_id}, removing its route")
            self.remove_config(app_id)
            return NginxConfig(app_id=app_id, app_name=app_name, hostname=hostname)

        route = build_route(app_id, hostname, hosts, self.app_port, self.resolver)
        config = render_route(route)
        conf_path = self.config_path(app_id)
        self._write_atomic(conf_path, config)
        self.exporter.record_route_written(app_id, len(hosts))
        logger.info(f"Wrote nginx route for app {app_id} ({hostname}) with {len(hosts)} backend(s)")

        return NginxConfig(
            app_id=app_id,
            app_name=app_name,
            hostname=hostname,
            upstreams=hosts,
            ports=[self.app_port] * len(hosts),
            config=config,
            path=str(conf_path),
        )

    def remove_config(self, app_id: int) -> bool:
        """Remove the route file for an app. A missing file is success."""
        conf_path = self.config_path(app_id)
        try:
            conf_path.unlink()
        except FileNotFoundError:
            logger.debug(f"Config for app {app_id} does not exist")
            return True
        self.exporter.record_route_removed(app_id)
        logger.info(f"Removed nginx route for app {app_id}")
        return True

    def generate_base_config(self, message: str = DEFAULT_UNAVAILABLE_MESSAGE):
        """Ensure the catch-all route exists so nginx always has a server to start with."""
        config = _DEFAULT_TEMPLATE.render(message=message)
        default_path = self.conf_dir / DEFAULT_CONF_NAME
        if default_path.exists() and default_path.read_text() == config:
            return
        self._write_atomic(default_path, config)
        logger.info(f"Wrote default nginx route to {default_path}")

    def _get_running_nginx(self):
        """The nginx container if it exists and is running, else None."""
        try:
            container = self.docker_client.containers.get(self.nginx_container_name)
        except NotFound:
            return None
        except (DockerException, requests.exceptions.ConnectionError) as e:
            logger.warning(f"Unable to inspect nginx container {self.nginx_container_name}: {e}")
            return None
        if container.status != "running":
            return None
        return container

    def _exec(self, container, command: List[str]):
        result = container.exec_run(command)
        output = result.output
        if isinstance(output, bytes):
            output = output.decode('utf-8', errors='replace')
        return result.exit_code, (output or "").strip()

    def validate(self, container=None) -> Optional[str]:
        """Run nginx -t. Returns None when valid, the error text otherwise."""
        container = container or self._get_running_nginx()
        if container is None:
            return "nginx container is not running"
        exit_code, output = self._exec(container, ["nginx", "-t"])
        if exit_code != 0:
            return output or f"nginx -t exited with {exit_code}"
        return None

    def reload(self) -> ReloadResult:
        """Validate the whole configuration, then reload nginx in place.

        A missing or stopped nginx container is a logged no-op.
        """
        result = self._reload()
        self.exporter.record_nginx_reload(result.status)
        return result

    def _reload(self) -> ReloadResult:
        container = self._get_running_nginx()
        if container is None:
            logger.info(f"Nginx container {self.nginx_container_name} is not running, skipping reload")
            return ReloadResult(skipped=True)

        try:
            error = self.validate(container)
            if error:
                logger.error(f"Nginx config test failed: {error}")
                return ReloadResult(error=f"nginx config test failed: {error}")

            exit_code, output = self._exec(container, ["nginx", "-s", "reload"])
            if exit_code != 0:
                logger.error(f"Nginx reload failed: {output}")
                return ReloadResult(error=f"nginx reload failed: {output}")
        except (DockerException, requests.exceptions.ConnectionError) as e:
            logger.error(f"Failed to reload nginx: {e}")
            return ReloadResult(error=f"nginx reload failed: {e}")

        logger.info("Nginx reloaded successfully")
        return ReloadResult(reloaded=True)
