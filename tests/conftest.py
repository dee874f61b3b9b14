#tests/conftest.py

"""Pytest configuration and fixtures."""

import os
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import pytest

from paas_engine.builder.git import CommitInfo
from paas_engine.builder.storage import LocalArtifactStorage
from paas_engine.config import PlatformSettings
from paas_engine.container import build_container, memory_repositories
from paas_engine.core.errors import FatalAgentError, TransientInfrastructureError
from paas_engine.core.events import RecordingEventEmitter
from paas_engine.core.models import DEPLOY_QUEUE
from paas_engine.domain.models import Plan
from paas_engine.node_manager.models import CapacityMetrics
from paas_engine.node_manager.service import NodeInfo
from paas_engine.runtime.backend import CompileRequest, ContainerBackend, ServiceSpec


# ============================================
# FAKES
# ============================================

class FakeGit:
    """Writes a fixed file set instead of cloning."""

    def __init__(self):
        self.files: Dict[str, str] = {"package.json": '{"name": "demo"}', "index.js": "console.log('hi')"}
        self.validate_error: Optional[Exception] = None
        self.clone_error: Optional[Exception] = None
        self.clones: List[Tuple[str, str, Optional[str]]] = []

    def validate(self, git_url: str, branch: str) -> None:
        if self.validate_error:
            raise self.validate_error

    def clone(self, git_url: str, branch: str, target_dir: str, commit: Optional[str] = None) -> CommitInfo:
        self.clones.append((git_url, branch, commit))
        if self.clone_error:
            raise self.clone_error
        os.makedirs(target_dir, exist_ok=True)
        for name, content in self.files.items():
            with open(os.path.join(target_dir, name), "w") as f:
                f.write(content)
        os.makedirs(os.path.join(target_dir, ".git"), exist_ok=True)
        return CommitInfo(sha=commit or "a1b2c3d4e5f6", message="Initial commit")


class FakeBackend(ContainerBackend):
    """Records calls; compile writes a marker file into the workspace."""

    def __init__(self):
        self.healthy = True
        self.compile_error: Optional[Exception] = None
        self.compiled: List[CompileRequest] = []
        self.services: Dict[str, int] = {}
        self.gc_runs = 0

    def ping(self) -> None:
        if not self.healthy:
            raise FatalAgentError("Docker daemon unreachable")

    def info(self) -> Dict[str, Any]:
        return {
            "docker_version": "24.0.0",
            "containers_running": sum(self.services.values()),
            "containers_total": sum(self.services.values()),
            "images_count": 3,
            "memory_total": 8 * 1024 ** 3,
            "cpu_count": 4,
        }

    def compile(self, request: CompileRequest, on_output: Callable[[str], None]) -> None:
        self.compiled.append(request)
        on_output("-----> Node.js app detected\n       Installing dependencies")
        if self.compile_error:
            raise self.compile_error
        with open(os.path.join(request.workspace, ".compiled"), "w") as f:
            f.write("ok")

    def run_service(self, spec: ServiceSpec) -> Dict[str, Any]:
        self.services[spec.name] = spec.replicas
        return {"name": spec.name, "replicas": spec.replicas, "container_ids": [f"c{i}" for i in range(spec.replicas)]}

    def scale_service(self, name: str, replicas: int) -> Dict[str, Any]:
        if name not in self.services:
            raise TransientInfrastructureError(f"Service {name} not found")
        self.services[name] = replicas
        return {"name": name, "replicas": replicas}

    def restart_service(self, name: str) -> Dict[str, Any]:
        if name not in self.services:
            raise TransientInfrastructureError(f"Service {name} not found")
        return {"name": name, "replicas": self.services[name]}

    def remove_service(self, name: str) -> int:
        return self.services.pop(name, 0)

    def service_stats(self, name: str) -> Dict[str, Any]:
        return {"name": name, "running": self.services.get(name, 0), "replicas": []}

    def garbage_collect(self) -> Dict[str, int]:
        self.gc_runs += 1
        return {"containers_removed": 0, "images_removed": 0}


class FakeRuntimeClient:

    def __init__(self, factory: "FakeRuntimeClientFactory", url: str):
        self._factory = factory
        self.url = url

    def _call(self, method: str, *args):
        self._factory.calls.append((self.url, method, args))
        if self.url in self._factory.failing_urls:
            raise TransientInfrastructureError(f"Cannot connect to runtime agent at {self.url}")

    def health_check(self) -> bool:
        return self.url not in self._factory.failing_urls

    def run_service(self, spec: ServiceSpec) -> Dict[str, Any]:
        self._call("run_service", spec)
        return {"name": spec.name, "replicas": spec.replicas, "container_ids": []}

    def scale_service(self, name: str, replicas: int) -> Dict[str, Any]:
        self._call("scale_service", name, replicas)
        return {"name": name, "replicas": replicas}

    def restart_service(self, name: str) -> Dict[str, Any]:
        self._call("restart_service", name)
        return {"name": name, "replicas": 1}

    def service_stats(self, name: str) -> Dict[str, Any]:
        self._call("service_stats", name)
        return {"name": name, "running": 1, "replicas": []}

    def remove_service(self, name: str) -> Dict[str, Any]:
        self._call("remove_service", name)
        return {"status": "removed", "name": name, "containers_removed": 1}


class FakeRuntimeClientFactory:
    """Every call on every node lands in `calls` as (url, method, args)."""

    def __init__(self):
        self.calls: List[Tuple[str, str, tuple]] = []
        self.failing_urls = set()

    def for_url(self, agent_url: str) -> FakeRuntimeClient:
        return FakeRuntimeClient(self, agent_url)

    def methods(self, url: Optional[str] = None) -> List[str]:
        return [method for call_url, method, _ in self.calls if url is None or call_url == url]


# ============================================
# CONTAINER
# ============================================

@pytest.fixture
def settings(tmp_path):
    return PlatformSettings(
        build_workspace_root=str(tmp_path / "builds"),
        storage_backend="local",
        storage_local_path=str(tmp_path / "storage"),
    )


@pytest.fixture
def fake_git():
    return FakeGit()


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def fake_runtime():
    return FakeRuntimeClientFactory()


@pytest.fixture
def events():
    return RecordingEventEmitter()


@pytest.fixture
def container(settings, fake_git, fake_backend, fake_runtime, events):
    return build_container(
        settings,
        memory_repositories(),
        storage=LocalArtifactStorage(settings.storage_local_path),
        backend=fake_backend,
        git=fake_git,
        runtime_clients=fake_runtime,
        event_emitter=events,
    )


# ============================================
# DOMAIN DATA
# ============================================

@pytest.fixture
def plan(container):
    plan = Plan(plan_id=uuid4(), name="standard", cpu_millicores=500, memory_mb=512, storage_mb=1024, max_replicas=3)
    container.repositories.plans.create(plan)
    return plan


@pytest.fixture
def app(container, plan):
    return container.applications.create_application(
        owner_id=uuid4(),
        name="Demo",
        slug="demo",
        plan_id=plan.plan_id,
        region="us-east",
        git_url="https://github.com/acme/demo.git",
    )


def roomy_metrics() -> CapacityMetrics:
    return CapacityMetrics(
        cpu_total=4000,
        cpu_used=500,
        memory_total_mb=8192,
        memory_used_mb=1024,
        disk_total_mb=100_000,
        disk_used_mb=10_000,
        container_count=0,
    )


@pytest.fixture
def register_node(container):
    def _register(name: str = "node-1", region: str = "us-east", metrics: Optional[CapacityMetrics] = None):
        node_id, token = container.node_registry.register(NodeInfo(
            name=name,
            region=region,
            host_address=f"{name}.internal",
            runtime_agent_url=f"http://{name}:9000",
            metrics=metrics or roomy_metrics(),
        ))
        return container.node_registry.get(node_id), token
    return _register


@pytest.fixture
def node(register_node):
    node, _ = register_node()
    return node


@pytest.fixture
def run_deploy_jobs(container):
    """Run every queued deploy-queue job the way the queue worker would."""
    def _run():
        results = []
        while True:
            job = container.queue.claim_next(DEPLOY_QUEUE, "test-worker")
            if job is None:
                return results
            result = container.handlers.get(job.name)(job)
            container.queue.ack(job.job_id, "test-worker", result)
            results.append(result)
    return _run


@pytest.fixture
def deploy_app(container, run_deploy_jobs):
    """Build the application and run the resulting deploy job. Returns the deployment."""
    def _deploy(app, replicas: Optional[int] = None):
        result = container.pipeline.build(app.application_id, app.git_url, app.git_branch, replicas=replicas)
        assert result.success, result.error
        run_deploy_jobs()
        return container.repositories.deployments.get(result.deployment_id)
    return _deploy
