"""
Container Lifecycle
===================

Drives the one application container a ship runs, through the Docker Engine
SDK.

The ship has a single deployment slot, identified by a fixed container name.
``stop_and_remove`` always removes the previous container before a new one is
created, so at most one container with that name exists at a time.

Container shape (every deployment):
  - image:          the deployment's registry-qualified reference
  - environment:    deployment settings + a base set the agent always injects
  - ports:          80/tcp → host 8080
  - restart policy: unless-stopped
  - limits:         2 GiB memory, 2 CPUs
  - volume:         <data_dir> → /app/data (rw)
  - labels:         deployment / app metadata, read back by current_version()
  - healthcheck:    HTTP on :80 every 30s (10s timeout, 3 retries, 30s grace)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import docker
from docker.errors import DockerException
from docker.utils import parse_repository_tag

from .errors import (
    ContainerStartError,
    DockerNotAvailableError,
    ImagePullError,
    OperationCancelledError,
)
from .models import Deployment, image_tag, utc_timestamp
from .resilience import ResilientOperation

if TYPE_CHECKING:
    from docker.models.containers import Container

    from .config import AgentConfig

log = logging.getLogger(__name__)

CONTAINER_PORT    = "80/tcp"
HOST_PORT         = 8080
DATA_MOUNT        = "/app/data"
WORKING_DIR       = "/app"
MEMORY_LIMIT_GB   = 2
CPU_LIMIT         = 2
STOP_GRACE_SEC    = 30

_NS = 1_000_000_000  # Docker healthcheck durations are nanoseconds

HEALTHCHECK = {
    "test":         ["CMD-SHELL", "curl -f http://localhost:80/health || exit 1"],
    "interval":     30 * _NS,
    "timeout":      10 * _NS,
    "retries":      3,
    "start_period": 30 * _NS,
}

VERSION_LABEL = "deployment.version"

# Injected by the agent on every container; deployment settings cannot override them.
BASE_ENV_KEYS = (
    "APP_ENVIRONMENT",
    "SHIP_DEPLOYMENT",
    "DEPLOYMENT_ID",
    "DEPLOYMENT_VERSION",
    "DEPLOYMENT_TIMESTAMP",
    "DEPLOYED_BY",
)


# ─── Settings ─────────────────────────────────────────────────────────────────

@dataclass
class ContainerSettings:
    container_name:    str
    ship_id:           str
    data_dir:          str = "/opt/ship-agent/data"
    app_environment:   str = "Production"
    operator:          str = "ship-agent"
    registry_username: Optional[str] = None
    registry_password: Optional[str] = None
    docker_host:       Optional[str] = None

    @classmethod
    def from_config(cls, config: AgentConfig) -> ContainerSettings:
        return cls(
            container_name    = config.container_name,
            ship_id           = config.ship_id,
            data_dir          = config.data_dir,
            app_environment   = config.app_environment,
            registry_username = config.registry_username,
            registry_password = config.registry_password,
            docker_host       = config.docker_host,
        )

    def auth_config(self) -> Optional[dict]:
        if not self.registry_username:
            return None
        return {"username": self.registry_username, "password": self.registry_password or ""}


# ─── Lifecycle Manager ────────────────────────────────────────────────────────

class ContainerLifecycleManager:
    def __init__(
        self,
        settings:       ContainerSettings,
        pull_operation: ResilientOperation,
        client:         Optional[docker.DockerClient] = None,
    ):
        self.settings       = settings
        self.pull_operation = pull_operation
        self._client        = client

    @property
    def client(self) -> docker.DockerClient:
        """Connected on first use, so the agent can come up before the daemon does."""
        if self._client is None:
            self._client = self._connect(self.settings.docker_host)
        return self._client

    @staticmethod
    def _connect(docker_host: Optional[str]) -> docker.DockerClient:
        try:
            if docker_host:
                return docker.DockerClient(base_url=docker_host)
            return docker.from_env()
        except DockerException as e:
            raise DockerNotAvailableError(operation="connect") from e

    def _find(self, name: str, include_stopped: bool) -> list[Container]:
        """Containers whose name is exactly ``name`` (Docker's filter is a regex)."""
        matches = self.client.containers.list(
            all     = include_stopped,
            filters = {"name": f"^/{name}$"},
        )
        return [c for c in matches if c.name == name]

    # ─── Pull ─────────────────────────────────────────────────────────────────

    def pull_image(self, ref: str, cancel: Optional[threading.Event] = None) -> None:
        """
        Pull ``ref`` under the image-pull policy. Errors propagate once the
        policy gives up: a deployment cannot go ahead without its image.
        """
        repository, tag = parse_repository_tag(ref)
        tag  = tag or "latest"
        auth = self.settings.auth_config()
        log.info(f"Pulling image: {ref}")

        def pull(token: threading.Event) -> None:
            stream = self.client.api.pull(
                repository,
                tag         = tag,
                stream      = True,
                decode      = True,
                auth_config = auth,
            )
            for progress in stream:
                if token.is_set():
                    raise OperationCancelledError(f"pull {ref}")
                if "error" in progress:
                    detail = progress.get("errorDetail", {}).get("message") or progress["error"]
                    raise ImagePullError(ref, detail)
                log.debug(
                    f"Pull: {progress.get('status', '')} "
                    f"{progress.get('id', '')} {progress.get('progress', '')}".rstrip()
                )

        self.pull_operation.execute(pull, cancel)
        log.info(f"Image ready: {ref}")

    # ─── Stop ─────────────────────────────────────────────────────────────────

    def stop_and_remove(self, name: Optional[str] = None) -> None:
        """
        Stop (30s grace, then kill) and force-remove the managed container.
        Never raises: a stale container must not block starting the new one.
        """
        name = name or self.settings.container_name
        try:
            containers = self._find(name, include_stopped=True)
            if not containers:
                log.info(f"No existing container '{name}' - nothing to stop")
                return

            for container in containers:
                log.info(f"Stopping container: {name} ({container.short_id})")
                if container.status == "running":
                    container.stop(timeout=STOP_GRACE_SEC)
                container.remove(force=True)
                log.info(f"Container {name} removed")
        except Exception as e:
            log.warning(f"Error stopping container {name}: {e}", exc_info=True)

    # ─── Start ────────────────────────────────────────────────────────────────

    def build_container_spec(self, deployment: Deployment) -> dict[str, Any]:
        """Keyword arguments for ``client.containers.create``."""
        timestamp = utc_timestamp()
        name      = self.settings.container_name
        ram_bytes = MEMORY_LIMIT_GB * 1024 * 1024 * 1024

        return {
            "image":          deployment.full_image_path,
            "name":           name,
            "detach":         True,
            "working_dir":    WORKING_DIR,
            "environment":    self._build_env(deployment, timestamp),
            "ports":          {CONTAINER_PORT: HOST_PORT},
            "restart_policy": {"Name": "unless-stopped"},
            "mem_limit":      ram_bytes,
            "nano_cpus":      CPU_LIMIT * _NS,
            "volumes":        {self.settings.data_dir: {"bind": DATA_MOUNT, "mode": "rw"}},
            "labels": {
                "deployment.id":        deployment.id,
                VERSION_LABEL:          deployment.version,
                "deployment.ship":      self.settings.ship_id,
                "deployment.timestamp": timestamp,
                "deployment.operator":  self.settings.operator,
                "app.name":             name,
                "app.environment":      self.settings.app_environment,
            },
            "healthcheck":    dict(HEALTHCHECK),
        }

    def _build_env(self, deployment: Deployment, timestamp: str) -> dict[str, str]:
        """Deployment settings as given, then the base set on top."""
        env: dict[str, str] = {}
        for k, v in deployment.settings.items():
            # Docker cannot express these as KEY=value
            if not k or "=" in k or "\x00" in k:
                log.warning(f"Dropping setting with unusable name {k!r}")
                continue
            env[k] = str(v)

        base = {
            "APP_ENVIRONMENT":      self.settings.app_environment,
            "SHIP_DEPLOYMENT":      "true",
            "DEPLOYMENT_ID":        deployment.id,
            "DEPLOYMENT_VERSION":   deployment.version,
            "DEPLOYMENT_TIMESTAMP": timestamp,
            "DEPLOYED_BY":          f"{self.settings.operator}@{self.settings.ship_id}",
        }
        overridden = sorted(k for k in base if k in env)
        if overridden:
            log.warning(
                f"Deployment {deployment.id} settings tried to override reserved "
                f"variables {overridden} - keeping agent values"
            )
        env.update(base)
        return env

    def create_and_start(self, deployment: Deployment) -> str:
        """Create and start the new container. Returns its id."""
        spec = self.build_container_spec(deployment)
        log.info(f"Starting container with image: {deployment.full_image_path}")

        try:
            container = self.client.containers.create(**spec)
            container.start()
        except DockerException as e:
            log.error(f"Failed to start container {spec['name']}: {e}")
            raise ContainerStartError(spec["name"], str(e)) from e

        log.info(f"Container started with ID: {container.id}")
        return container.id

    # ─── Inspection ───────────────────────────────────────────────────────────

    def is_running(self, name: Optional[str] = None) -> bool:
        """True only if Docker confirms a running container with that name."""
        name = name or self.settings.container_name
        try:
            return any(c.status == "running" for c in self._find(name, include_stopped=False))
        except Exception as e:
            log.debug(f"Could not determine whether {name} is running: {e}")
            return False

    def current_version(self, name: Optional[str] = None) -> Optional[str]:
        """
        Version of the managed container (stopped ones included): the
        ``deployment.version`` label, else the tag of its image reference.
        None when there is no container or Docker cannot be asked.
        """
        name = name or self.settings.container_name
        try:
            containers = self._find(name, include_stopped=True)
            if not containers:
                return None
            container = containers[0]

            version = (container.labels or {}).get(VERSION_LABEL)
            if version:
                return version
            return image_tag(container.attrs.get("Config", {}).get("Image"))
        except Exception as e:
            log.debug(f"Could not read current version of {name}: {e}")
            return None
