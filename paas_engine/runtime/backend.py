# paas_engine/runtime/backend.py
"""
Container backend.

Everything the platform asks of a container runtime: compile a build,
run and scale a service, report on it and collect garbage.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout

from paas_engine.core.errors import BuildError, FatalAgentError, TransientInfrastructureError

logger = logging.getLogger(__name__)

SERVICE_LABEL = "paas.service"
MANAGED_LABEL = "managed_by"
MANAGED_BY = "paas_engine"

RUN_IMAGE = "gliderlabs/herokuish:latest"
SLUG_MOUNT = "/tmp/slug.tgz"


@dataclass
class CompileRequest:
    workspace: str
    cache_dir: str
    buildpack_url: str
    image: str = RUN_IMAGE
    timeout_seconds: int = 15 * 60
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class ServiceSpec:
    """One application's web process, replicated."""
    name: str
    slug_url: str
    replicas: int = 1
    memory_mb: Optional[int] = None
    cpu_millicores: Optional[int] = None
    port: int = 5000
    env: Dict[str, str] = field(default_factory=dict)
    image: str = RUN_IMAGE
    labels: Dict[str, str] = field(default_factory=dict)


class ContainerBackend(ABC):

    @abstractmethod
    def ping(self) -> None:
        """Raise FatalAgentError when the runtime is unreachable."""
        raise NotImplementedError

    @abstractmethod
    def info(self) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def compile(self, request: CompileRequest, on_output: Callable[[str], None]) -> None:
        """Run the buildpack in place. Raises BuildError on failure or timeout."""
        raise NotImplementedError

    @abstractmethod
    def run_service(self, spec: ServiceSpec) -> Dict[str, Any]:
        """Replace any existing replicas of the service with new ones."""
        raise NotImplementedError

    @abstractmethod
    def scale_service(self, name: str, replicas: int) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def restart_service(self, name: str) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def remove_service(self, name: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def service_stats(self, name: str) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def garbage_collect(self) -> Dict[str, int]:
        """Remove stopped containers and dangling images."""
        raise NotImplementedError


# ============================================
# DOCKER
# ============================================

class DockerBackend(ContainerBackend):
    """Docker SDK implementation. Replicas are containers named `<service>-<n>`."""

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise FatalAgentError(f"Docker not available: {e}") from e
        return self._client

    # -------------------------
    # NODE
    # -------------------------

    def ping(self) -> None:
        try:
            self.client.ping()
        except (DockerException, RequestsConnectionError) as e:
            raise FatalAgentError(f"Docker daemon unreachable: {e}") from e

    def info(self) -> Dict[str, Any]:
        info = self.client.info()
        return {
            "docker_version": info.get("ServerVersion", "unknown"),
            "containers_running": info.get("ContainersRunning", 0),
            "containers_total": info.get("Containers", 0),
            "images_count": info.get("Images", 0),
            "memory_total": info.get("MemTotal", 0),
            "cpu_count": info.get("NCPU", 0),
        }

    # -------------------------
    # BUILD
    # -------------------------

    def compile(self, request: CompileRequest, on_output: Callable[[str], None]) -> None:
        self._ensure_image(request.image)

        container = self.client.containers.run(
            request.image,
            command="/bin/herokuish buildpack build",
            volumes={
                request.workspace: {"bind": "/tmp/app", "mode": "rw"},
                request.cache_dir: {"bind": "/tmp/cache", "mode": "rw"},
            },
            environment={"BUILDPACK_URL": request.buildpack_url, **request.env},
            labels={MANAGED_LABEL: MANAGED_BY, "paas.role": "build"},
            detach=True,
        )

        streamer = threading.Thread(
            target=self._stream_logs,
            args=(container, on_output),
            daemon=True,
        )
        streamer.start()

        try:
            try:
                result = container.wait(timeout=request.timeout_seconds)
            except (ReadTimeout, RequestsConnectionError) as e:
                container.kill()
                raise BuildError(
                    f"Build timed out after {request.timeout_seconds // 60} minutes"
                ) from e

            streamer.join(timeout=5)
            exit_code = result.get("StatusCode", 1)
            if exit_code != 0:
                raise BuildError(f"Buildpack compile failed (exit code {exit_code})")
        finally:
            try:
                container.remove(force=True)
            except APIError as e:
                logger.warning(f"[docker] failed to remove build container: {e}")

    @staticmethod
    def _stream_logs(container, on_output: Callable[[str], None]) -> None:
        try:
            for chunk in container.logs(stream=True, follow=True):
                on_output(chunk.decode("utf-8", errors="replace"))
        except (APIError, RequestsConnectionError) as e:
            logger.debug(f"[docker] log stream ended: {e}")

    # -------------------------
    # SERVICES
    # -------------------------

    def run_service(self, spec: ServiceSpec) -> Dict[str, Any]:
        self._ensure_image(spec.image)
        self.remove_service(spec.name)

        containers = [self._start_replica(spec, i) for i in range(1, spec.replicas + 1)]
        logger.info(f"[docker] ✅ {spec.name} running with {len(containers)} replica(s)")
        return {
            "name": spec.name,
            "replicas": len(containers),
            "container_ids": [c.id for c in containers],
        }

    def scale_service(self, name: str, replicas: int) -> Dict[str, Any]:
        current = self._replicas(name)
        if replicas < len(current):
            for container in current[replicas:]:
                container.remove(force=True)
        elif replicas > len(current):
            if not current:
                raise TransientInfrastructureError(f"Service {name} has no replica to clone")
            template = current[0]
            for i in range(len(current) + 1, replicas + 1):
                self._clone_replica(template, name, i)

        logger.info(f"[docker] scaled {name} to {replicas}")
        return {"name": name, "replicas": replicas}

    def restart_service(self, name: str) -> Dict[str, Any]:
        current = self._replicas(name)
        if not current:
            raise TransientInfrastructureError(f"Service {name} not found")
        for container in current:
            container.restart(timeout=10)
        return {"name": name, "replicas": len(current)}

    def remove_service(self, name: str) -> int:
        removed = 0
        for container in self._replicas(name, include_stopped=True):
            try:
                container.remove(force=True)
                removed += 1
            except NotFound:
                continue
        return removed

    def service_stats(self, name: str) -> Dict[str, Any]:
        replicas = []
        for container in self._replicas(name, include_stopped=True):
            stats = container.stats(stream=False) if container.status == "running" else {}
            memory = stats.get("memory_stats", {})
            replicas.append({
                "container_id": container.id,
                "status": container.status,
                "memory_usage_bytes": memory.get("usage", 0),
                "memory_limit_bytes": memory.get("limit", 0),
            })
        return {
            "name": name,
            "running": sum(1 for r in replicas if r["status"] == "running"),
            "replicas": replicas,
        }

    def garbage_collect(self) -> Dict[str, int]:
        containers = self.client.containers.prune(filters={"label": f"{MANAGED_LABEL}={MANAGED_BY}"})
        images = self.client.images.prune(filters={"dangling": True})
        return {
            "containers_removed": len(containers.get("ContainersDeleted") or []),
            "images_removed": len(images.get("ImagesDeleted") or []),
        }

    # -------------------------
    # INTERNALS
    # -------------------------

    def _ensure_image(self, image: str) -> None:
        try:
            self.client.images.get(image)
        except ImageNotFound:
            logger.info(f"[docker] pulling {image}")
            try:
                self.client.images.pull(image)
            except APIError as e:
                raise TransientInfrastructureError(f"Failed to pull {image}: {e}") from e

    def _replicas(self, name: str, include_stopped: bool = False) -> List:
        containers = self.client.containers.list(
            all=include_stopped,
            filters={"label": f"{SERVICE_LABEL}={name}"},
        )
        return sorted(containers, key=lambda c: c.name)

    def _start_replica(self, spec: ServiceSpec, index: int):
        env = {"PORT": str(spec.port), **spec.env}
        volumes = {}
        if spec.slug_url.startswith("/"):
            volumes[spec.slug_url] = {"bind": SLUG_MOUNT, "mode": "ro"}
            env["SLUG_URL"] = f"file://{SLUG_MOUNT}"
        else:
            env["SLUG_URL"] = spec.slug_url

        kwargs: Dict[str, Any] = {
            "name": f"{spec.name}-{index}",
            "command": "/start web",
            "environment": env,
            "volumes": volumes,
            "labels": {
                **spec.labels,
                MANAGED_LABEL: MANAGED_BY,
                SERVICE_LABEL: spec.name,
            },
            "restart_policy": {"Name": "always"},
            "detach": True,
        }
        if spec.memory_mb:
            kwargs["mem_limit"] = f"{spec.memory_mb}m"
        if spec.cpu_millicores:
            kwargs["nano_cpus"] = spec.cpu_millicores * 1_000_000

        try:
            return self.client.containers.run(spec.image, **kwargs)
        except APIError as e:
            raise TransientInfrastructureError(f"Failed to start {kwargs['name']}: {e}") from e

    def _clone_replica(self, template, name: str, index: int):
        config = template.attrs.get("Config", {})
        host = template.attrs.get("HostConfig", {})
        env = dict(item.split("=", 1) for item in config.get("Env") or [] if "=" in item)
        binds = {}
        for bind in host.get("Binds") or []:
            source, target, *mode = bind.split(":")
            binds[source] = {"bind": target, "mode": mode[0] if mode else "rw"}

        kwargs: Dict[str, Any] = {
            "name": f"{name}-{index}",
            "command": config.get("Cmd"),
            "environment": env,
            "volumes": binds,
            "labels": config.get("Labels") or {},
            "restart_policy": {"Name": "always"},
            "detach": True,
        }
        if host.get("Memory"):
            kwargs["mem_limit"] = host["Memory"]
        if host.get("NanoCpus"):
            kwargs["nano_cpus"] = host["NanoCpus"]
        return self.client.containers.run(config.get("Image"), **kwargs)
