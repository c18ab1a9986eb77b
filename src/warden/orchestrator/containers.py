"""
Worker lifecycle management on top of the docker daemon.

Every user gets one container named ``agent-<user id>`` with a private
writable session directory, the shared read-only config directory, resource
caps and least-privilege flags, attached to the private agent network.

The docker SDK is synchronous, so every daemon call runs in a worker thread.
"""

import asyncio
import enum
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, cast

import docker
from docker.errors import APIError, NotFound
from docker.models.containers import Container

from warden.common import settings
from warden.common.limits import ProvisioningError, parse_cpu_limit, parse_memory_limit

logger = logging.getLogger(__name__)

CONTAINER_PREFIX = "agent-"
MANAGED_LABEL = "warden.user"

# Mount points inside the worker container
SESSION_MOUNT = "/app/session-data"
CONFIG_MOUNT = "/app/config"


class NotFoundPolicy(enum.Enum):
    """What to do when the runtime reports that a container does not exist."""

    # Reconciliation-friendly calls treat absence as a normal state
    SWALLOW = "swallow"
    # Explicit user actions on a specific worker surface absence as an error
    PROPAGATE = "propagate"


class WorkerNotFoundError(Exception):
    def __init__(self, name: str):
        super().__init__(f"Worker container {name} not found")
        self.name = name


class WorkerExistsError(Exception):
    def __init__(self, name: str):
        super().__init__(f"Worker container {name} already exists")
        self.name = name


@dataclass
class WorkerConfig:
    """Everything needed to provision one user's worker."""

    user_id: int
    api_id: str = field(default_factory=lambda: settings.TG_API_ID)
    api_hash: str = field(default_factory=lambda: settings.TG_API_HASH)
    # Serialized user settings, see UserSettings.as_environment
    settings_env: dict[str, str] = field(default_factory=dict)


@dataclass
class RuntimeStatus:
    state: Literal["running", "stopped", "not_found"]
    container_id: str | None = None
    uptime_seconds: int | None = None
    health: str | None = None

    @property
    def running(self) -> bool:
        return self.state == "running"

    def serialize(self) -> dict[str, Any]:
        return {
            "status": self.state,
            "container_id": self.container_id,
            "uptime_seconds": self.uptime_seconds,
            "health": self.health,
        }


FRACTION_PATTERN = re.compile(r"\.(\d+)")


def parse_docker_time(value: str | None) -> datetime | None:
    """Parse docker's RFC 3339 timestamps, which carry nanosecond precision."""
    if not value or value.startswith("0001-01-01"):
        return None
    value = value.replace("Z", "+00:00")
    # datetime only understands microseconds
    value = FRACTION_PATTERN.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"Could not parse docker timestamp: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def container_name(user_id: int) -> str:
    return f"{CONTAINER_PREFIX}{user_id}"


class WorkerLifecycleManager:
    """Creates, inspects and tears down per-user worker containers."""

    def __init__(
        self,
        docker_client: docker.DockerClient | None = None,
        *,
        image: str = settings.AGENT_IMAGE,
        network: str = settings.AGENT_NETWORK,
        sessions_dir: Path = settings.SESSIONS_DIR,
        host_sessions_dir: Path = settings.HOST_SESSIONS_DIR,
        host_config_dir: Path = settings.HOST_CONFIG_DIR,
        cpu_limit: str = settings.CONTAINER_CPU_LIMIT,
        memory_limit: str = settings.CONTAINER_MEMORY_LIMIT,
        stop_timeout: int = settings.CONTAINER_STOP_TIMEOUT,
        log_level: str = settings.WORKER_LOG_LEVEL,
    ):
        self._docker = docker_client
        self.image = image
        self.network = network
        self.sessions_dir = Path(sessions_dir)
        self.host_sessions_dir = Path(host_sessions_dir)
        self.host_config_dir = Path(host_config_dir)
        self.cpu_limit = cpu_limit
        self.memory_limit = memory_limit
        self.stop_timeout = stop_timeout
        self.log_level = log_level

    @property
    def docker(self) -> docker.DockerClient:
        if self._docker is None:
            self._docker = docker.from_env()
            logger.info("Connected to Docker daemon")
        return self._docker

    container_name = staticmethod(container_name)

    def session_dir(self, user_id: int) -> Path:
        return self.sessions_dir / str(user_id)

    def _get_container(self, name: str, policy: NotFoundPolicy) -> Container | None:
        try:
            return cast(Container, self.docker.containers.get(name))
        except NotFound:
            if policy is NotFoundPolicy.PROPAGATE:
                raise WorkerNotFoundError(name)
            logger.debug(f"Container not found: {name}")
            return None

    def ensure_network(self) -> None:
        """Make sure the private network shared with the workers exists."""
        try:
            self.docker.networks.get(self.network)
            logger.info(f"Using existing network: {self.network}")
        except NotFound:
            self.docker.networks.create(
                self.network,
                driver="bridge",
                labels={"managed-by": "warden"},
            )
            logger.info(f"Created network: {self.network}")

    def _environment(self, config: WorkerConfig) -> dict[str, str]:
        if not config.api_id or not config.api_hash:
            raise ProvisioningError("Messaging API credentials are not configured")
        return {
            **config.settings_env,
            "TG_API_ID": str(config.api_id),
            "TG_API_HASH": config.api_hash,
            "USER_ID": str(config.user_id),
            "LOG_LEVEL": self.log_level,
            "SESSION_DIR": SESSION_MOUNT,
            "CONFIG_PATH": f"{CONFIG_MOUNT}/default.json",
        }

    def _create(self, config: WorkerConfig) -> str:
        name = container_name(config.user_id)

        # Everything that can be rejected is checked before touching the daemon
        environment = self._environment(config)
        nano_cpus = parse_cpu_limit(self.cpu_limit)
        mem_limit = parse_memory_limit(self.memory_limit)

        if self._get_container(name, NotFoundPolicy.SWALLOW):
            raise WorkerExistsError(name)

        self.session_dir(config.user_id).mkdir(parents=True, exist_ok=True)
        volumes = {
            str(self.host_sessions_dir / str(config.user_id)): {
                "bind": SESSION_MOUNT,
                "mode": "rw",
            },
            str(self.host_config_dir): {"bind": CONFIG_MOUNT, "mode": "ro"},
        }

        try:
            container = cast(
                Container,
                self.docker.containers.run(
                    self.image,
                    name=name,
                    detach=True,
                    network=self.network,
                    environment=environment,
                    volumes=volumes,
                    labels={MANAGED_LABEL: str(config.user_id)},
                    restart_policy={"Name": "unless-stopped"},
                    # Security hardening
                    security_opt=["no-new-privileges:true"],
                    cap_drop=["ALL"],
                    nano_cpus=nano_cpus,
                    mem_limit=mem_limit,
                ),
            )
        except APIError as e:
            logger.error(f"Failed to create worker {name}: {e}")
            # A container that was created but failed to start must not linger
            try:
                self._remove(name)
            except APIError as cleanup_error:
                logger.error(f"Failed to clean up worker {name}: {cleanup_error}")
            raise

        logger.info(f"Created container: {name} ({container.short_id})")
        return cast(str, container.id)

    def _stop(self, name: str) -> bool:
        container = self._get_container(name, NotFoundPolicy.SWALLOW)
        if not container:
            logger.info(f"Not stopping {name}: container not found")
            return False
        if container.status not in ("running", "restarting", "paused"):
            logger.debug(f"Container {name} already stopped ({container.status})")
            return False
        container.stop(timeout=self.stop_timeout)
        logger.info(f"Stopped container: {name}")
        return True

    def _remove(self, name: str) -> bool:
        container = self._get_container(name, NotFoundPolicy.SWALLOW)
        if not container:
            logger.info(f"Not removing {name}: container not found")
            return False
        try:
            container.remove(force=True)
        except NotFound:
            # Removed concurrently, e.g. by the daemon's own cleanup
            logger.info(f"Container {name} disappeared during removal")
            return False
        logger.info(f"Removed container: {name}")
        return True

    def _status(self, name: str) -> RuntimeStatus:
        container = self._get_container(name, NotFoundPolicy.SWALLOW)
        if not container:
            return RuntimeStatus(state="not_found")

        state = container.attrs.get("State", {})
        if not state.get("Running"):
            return RuntimeStatus(state="stopped", container_id=container.id)

        uptime = None
        if started_at := parse_docker_time(state.get("StartedAt")):
            uptime = max(0, int((datetime.now(timezone.utc) - started_at).total_seconds()))
        health = (state.get("Health") or {}).get("Status") or "unknown"
        return RuntimeStatus(
            state="running",
            container_id=container.id,
            uptime_seconds=uptime,
            health=health,
        )

    def _restart(self, name: str) -> None:
        container = cast(Container, self._get_container(name, NotFoundPolicy.PROPAGATE))
        container.restart(timeout=self.stop_timeout)
        logger.info(f"Restarted container: {name}")

    def _logs(self, name: str, tail: int) -> str:
        container = cast(Container, self._get_container(name, NotFoundPolicy.PROPAGATE))
        output = container.logs(stdout=True, stderr=True, tail=tail, timestamps=True)
        return output.decode("utf-8", errors="replace")

    async def create(self, config: WorkerConfig) -> str:
        """
        Provision a worker for the user.

        Returns:
            The container id assigned by the runtime

        Raises:
            ProvisioningError: If credentials or resource limits are invalid
            WorkerExistsError: If the user already has a container
        """
        return await asyncio.to_thread(self._create, config)

    async def stop(self, name: str) -> bool:
        """Stop a worker. Returns False if there was nothing to stop."""
        return await asyncio.to_thread(self._stop, name)

    async def remove(self, name: str) -> bool:
        """Remove a worker, stopping it first. Returns False if it did not exist."""
        return await asyncio.to_thread(self._remove, name)

    async def status(self, name: str) -> RuntimeStatus:
        return await asyncio.to_thread(self._status, name)

    async def restart(self, name: str) -> None:
        """Restart a worker. Raises WorkerNotFoundError if it does not exist."""
        await asyncio.to_thread(self._restart, name)

    async def logs(self, name: str, tail: int = 100) -> str:
        """Tail of the worker's combined output, one timestamp per line.

        Raises WorkerNotFoundError if it does not exist.
        """
        return await asyncio.to_thread(self._logs, name, tail)
