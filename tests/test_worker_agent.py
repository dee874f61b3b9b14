#tests/test_worker_agent.py

"""Worker agent: registration, heartbeats, build polling and cleanup."""

import json
import os
import threading
import time
from types import SimpleNamespace
from uuid import uuid4

import pytest

from paas_engine.builder.pipeline import BuildResult
from paas_engine.core.errors import (
    AuthenticationError,
    FatalAgentError,
    TransientInfrastructureError,
    ValidationError,
)
from paas_engine.domain.models import BuildStatus
from worker_agent.agent import (
    AgentState,
    BuildLogForwarder,
    PipelineBuildRunner,
    WorkerAgent,
)
from worker_agent.cleanup import cleanup_workspaces, run_cleanup
from worker_agent.client import ControlPlaneClient
from worker_agent.config import WorkerSettings
from worker_agent.credentials import Credentials, load_credentials, save_credentials
from worker_agent import metrics as metrics_module
from worker_agent.metrics import collect_metrics


# ============================================
# FAKES
# ============================================

class FakeControlPlane(ControlPlaneClient):
    """In-process stand-in for the worker API."""

    def __init__(self):
        super().__init__("http://control-plane:8000")
        self.healthy = True
        self.valid_tokens = {}
        self.registrations = []
        self.heartbeats = []
        self.heartbeat_error = None
        self.queued = []
        self.taken = set()
        self.statuses = []
        self.logs = []

    def health(self):
        return self.healthy

    def register_worker(self, *, name, region, host_address=None, runtime_agent_url=None,
                        metrics=None, metadata=None, registration_token=None):
        node_id, token = uuid4(), f"token-{len(self.registrations)}"
        self.registrations.append({"name": name, "region": region, "metadata": metadata})
        self.valid_tokens[node_id] = token
        self.set_credentials(node_id, token)
        return node_id, token

    def send_heartbeat(self, metrics, active_job_ids):
        self.heartbeats.append(list(active_job_ids))
        if self.heartbeat_error:
            raise self.heartbeat_error
        if self.valid_tokens.get(self.node_id) != self.auth_token:
            raise AuthenticationError("Invalid node credentials")
        return {"status": "online", "lost_job_ids": []}

    def get_queued_builds(self, limit=10):
        return [b for b in self.queued if b["job_id"] not in self.taken][:limit]

    def accept_build(self, job_id):
        if str(job_id) in self.taken:
            return None
        self.taken.add(str(job_id))
        build = next(b for b in self.queued if b["job_id"] == str(job_id))
        return {"job_id": str(job_id), "payload": build["payload"]}

    def update_build_status(self, job_id, status, *, progress=None, error=None, retryable=True, result=None):
        self.statuses.append((job_id, status, error, retryable))
        return {}

    def add_build_log(self, job_id, lines):
        self.logs.extend(lines)
        return True


def queued_build(**payload):
    return {"job_id": str(uuid4()), "payload": payload}


@pytest.fixture
def worker_settings(tmp_path):
    return WorkerSettings(
        worker_name="builder-1",
        worker_region="us-east",
        worker_host_address="builder-1.internal",
        credentials_file=str(tmp_path / "creds" / "worker.json"),
        workspace_dir=str(tmp_path / "workspaces"),
        max_concurrent_builds=2,
        control_plane_wait_timeout_seconds=0.3,
        control_plane_wait_interval_seconds=0.05,
        heartbeat_interval_seconds=0.05,
        build_poll_interval_seconds=0.05,
    )


@pytest.fixture
def control_plane():
    return FakeControlPlane()


def make_agent(settings, client, backend, runner=None):
    def succeed(payload, log_sink):
        log_sink("-----> Build complete!")
        return BuildResult(success=True, build_id=uuid4(), deployment_id=uuid4())

    return WorkerAgent(settings=settings, client=client, backend=backend, runner=runner or succeed)


# ============================================
# SETTINGS / CREDENTIALS / METRICS
# ============================================

class TestWorkerSettings:

    def test_runtime_agent_url_derived_from_host(self, worker_settings):
        assert worker_settings.advertised_runtime_agent_url == "http://builder-1.internal:9000"

    def test_explicit_runtime_agent_url(self):
        settings = WorkerSettings(runtime_agent_url="https://agent.example.com")
        assert settings.advertised_runtime_agent_url == "https://agent.example.com"

    def test_concurrency_bounds(self):
        with pytest.raises(ValueError):
            WorkerSettings(max_concurrent_builds=11)

    def test_retention_must_cover_build_timeout(self):
        with pytest.raises(ValueError, match="WORKSPACE_RETENTION_MINUTES"):
            WorkerSettings(workspace_retention_minutes=10, build_timeout_minutes=30)

    def test_retention_equal_to_timeout_allowed(self):
        settings = WorkerSettings(workspace_retention_minutes=30, build_timeout_minutes=30)
        assert settings.workspace_retention_minutes == 30


class TestCredentials:

    def test_round_trip(self, tmp_path):
        path = str(tmp_path / "nested" / "creds.json")
        credentials = Credentials(uuid4(), "secret")

        save_credentials(path, credentials)

        assert load_credentials(path) == credentials
        assert os.stat(path).st_mode & 0o777 == 0o600

    def test_missing_file(self, tmp_path):
        assert load_credentials(str(tmp_path / "nope.json")) is None

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "creds.json"
        path.write_text("{not json")
        assert load_credentials(str(path)) is None


class TestMetrics:

    @pytest.fixture
    def host(self, monkeypatch):
        """4 CPUs at 25%, 8000MB memory with 4000MB available."""
        monkeypatch.setattr(metrics_module.psutil, "cpu_count", lambda: 4)
        monkeypatch.setattr(metrics_module.psutil, "cpu_percent", lambda: 25.0)
        monkeypatch.setattr(
            metrics_module.psutil, "virtual_memory",
            lambda: SimpleNamespace(total=8000 * 1024 * 1024, available=4000 * 1024 * 1024),
        )

    def test_cpu_and_memory_from_psutil(self, tmp_path, host):
        metrics = collect_metrics(str(tmp_path))

        assert metrics["cpu_total"] == 4000
        assert metrics["cpu_used"] == 1000
        assert metrics["memory_total_mb"] == 8000
        assert metrics["memory_used_mb"] == 4000
        assert metrics["container_count"] is None

    def test_disk_usage_of_workspace(self, tmp_path, host, monkeypatch):
        seen = []

        def disk_usage(path):
            seen.append(path)
            return SimpleNamespace(total=100 * 1024 * 1024, used=40 * 1024 * 1024)

        monkeypatch.setattr(metrics_module.psutil, "disk_usage", disk_usage)

        metrics = collect_metrics(str(tmp_path))

        assert seen == [str(tmp_path)]
        assert (metrics["disk_total_mb"], metrics["disk_used_mb"]) == (100, 40)

    def test_collect_includes_container_count(self, tmp_path, fake_backend):
        fake_backend.services["paas-demo"] = 2

        metrics = collect_metrics(str(tmp_path), fake_backend)

        assert metrics["container_count"] == 2
        assert metrics["disk_total_mb"] > 0


# ============================================
# CLEANUP
# ============================================

class TestCleanup:

    def test_only_old_workspaces_removed(self, tmp_path):
        old = tmp_path / "old-build"
        young = tmp_path / "young-build"
        old.mkdir()
        young.mkdir()
        (old / "slug.tar.gz").write_bytes(b"x")
        now = time.time()
        os.utime(old / "slug.tar.gz", (now - 7200, now - 7200))
        os.utime(old, (now - 7200, now - 7200))

        report = cleanup_workspaces(str(tmp_path), retention_minutes=60, now=now)

        assert report.workspaces_removed == 1
        assert report.workspaces_kept == 1
        assert not old.exists()
        assert young.exists()

    def test_recent_activity_inside_old_directory_keeps_it(self, tmp_path):
        build_dir = tmp_path / "running-build"
        (build_dir / "cache").mkdir(parents=True)
        now = time.time()
        os.utime(build_dir, (now - 7200, now - 7200))

        report = cleanup_workspaces(str(tmp_path), retention_minutes=60, now=now)

        assert report.workspaces_removed == 0
        assert build_dir.exists()

    def test_missing_directory(self, tmp_path):
        assert cleanup_workspaces(str(tmp_path / "missing"), 60).workspaces_removed == 0

    def test_run_cleanup_collects_garbage(self, tmp_path, fake_backend):
        report = run_cleanup(str(tmp_path), 60, fake_backend)

        assert fake_backend.gc_runs == 1
        assert report.garbage == {"containers_removed": 0, "images_removed": 0}

    def test_garbage_collection_failure_is_logged(self, tmp_path, fake_backend):
        def broken():
            raise TransientInfrastructureError("docker down")

        fake_backend.garbage_collect = broken

        assert run_cleanup(str(tmp_path), 60, fake_backend).garbage == {}


# ============================================
# REGISTRATION
# ============================================

class TestRegistration:
    """Credentials are reused while the control plane accepts them."""

    def test_first_start_registers_and_saves(self, worker_settings, control_plane, fake_backend):
        agent = make_agent(worker_settings, control_plane, fake_backend)

        node_id = agent.register()

        assert control_plane.registrations == [
            {"name": "builder-1", "region": "us-east", "metadata": {"max_concurrent_builds": 2}}
        ]
        with open(worker_settings.credentials_file) as f:
            assert json.load(f)["node_id"] == str(node_id)

    def test_saved_credentials_reused(self, worker_settings, control_plane, fake_backend):
        node_id = uuid4()
        control_plane.valid_tokens[node_id] = "kept"
        save_credentials(worker_settings.credentials_file, Credentials(node_id, "kept"))
        agent = make_agent(worker_settings, control_plane, fake_backend)

        assert agent.register() == node_id
        assert control_plane.registrations == []

    def test_rejected_credentials_trigger_registration(self, worker_settings, control_plane, fake_backend):
        save_credentials(worker_settings.credentials_file, Credentials(uuid4(), "revoked"))
        agent = make_agent(worker_settings, control_plane, fake_backend)

        node_id = agent.register()

        assert len(control_plane.registrations) == 1
        assert load_credentials(worker_settings.credentials_file).node_id == node_id

    def test_transient_error_during_reuse_propagates(self, worker_settings, control_plane, fake_backend):
        save_credentials(worker_settings.credentials_file, Credentials(uuid4(), "kept"))
        control_plane.heartbeat_error = TransientInfrastructureError("control plane down")
        agent = make_agent(worker_settings, control_plane, fake_backend)

        with pytest.raises(TransientInfrastructureError):
            agent.register()
        assert control_plane.registrations == []

    def test_env_credentials_preferred_over_file(self, tmp_path, control_plane, fake_backend):
        node_id = uuid4()
        control_plane.valid_tokens[node_id] = "from-env"
        settings = WorkerSettings(
            worker_node_id=node_id,
            worker_auth_token="from-env",
            credentials_file=str(tmp_path / "creds.json"),
            workspace_dir=str(tmp_path / "ws"),
        )
        save_credentials(settings.credentials_file, Credentials(uuid4(), "from-file"))

        assert make_agent(settings, control_plane, fake_backend).register() == node_id


# ============================================
# LIFECYCLE
# ============================================

class TestLifecycle:

    def test_unhealthy_backend_is_fatal(self, worker_settings, control_plane, fake_backend):
        fake_backend.healthy = False
        agent = make_agent(worker_settings, control_plane, fake_backend)

        with pytest.raises(FatalAgentError):
            agent.start()
        assert control_plane.registrations == []

    def test_unreachable_control_plane_times_out(self, worker_settings, control_plane, fake_backend):
        control_plane.healthy = False
        agent = make_agent(worker_settings, control_plane, fake_backend)

        with pytest.raises(FatalAgentError, match="not reachable"):
            agent.wait_for_control_plane()

    def test_start_runs_loops_until_stopped(self, worker_settings, control_plane, fake_backend):
        control_plane.queued.append(queued_build(application_id=str(uuid4()), git_url="https://x/y.git"))
        agent = make_agent(worker_settings, control_plane, fake_backend)

        agent.start()
        deadline = time.monotonic() + 5
        while not control_plane.statuses and time.monotonic() < deadline:
            time.sleep(0.02)
        agent.stop(timeout=5)

        assert agent.state == AgentState.STOPPED
        assert control_plane.statuses[0][1] == "completed"
        assert os.path.isdir(worker_settings.workspace_dir)
        assert fake_backend.gc_runs >= 1

    def test_stop_is_idempotent(self, worker_settings, control_plane, fake_backend):
        agent = make_agent(worker_settings, control_plane, fake_backend)
        agent.stop()
        assert agent.state == AgentState.STOPPED


# ============================================
# HEARTBEAT / BUILDS
# ============================================

class TestHeartbeat:

    def test_success(self, worker_settings, control_plane, fake_backend):
        agent = make_agent(worker_settings, control_plane, fake_backend)
        agent.register()

        assert agent.heartbeat()

    def test_failure_re_registers(self, worker_settings, control_plane, fake_backend):
        agent = make_agent(worker_settings, control_plane, fake_backend)
        agent.register()
        control_plane.valid_tokens.clear()

        assert not agent.heartbeat()
        assert len(control_plane.registrations) == 2
        assert agent.heartbeat()


class TestBuildProcessing:

    def test_successful_build_reported(self, worker_settings, control_plane, fake_backend):
        build = queued_build(application_id=str(uuid4()), git_url="https://x/y.git")
        control_plane.queued.append(build)
        agent = make_agent(worker_settings, control_plane, fake_backend)
        agent.register()

        assert agent.poll_builds() == 1

        job_id, status, error, _ = control_plane.statuses[0]
        assert str(job_id) == build["job_id"]
        assert status == "completed"
        assert control_plane.logs == ["-----> Build complete!"]
        assert agent.active_job_ids() == []

    def test_failed_build_reports_retryability(self, worker_settings, control_plane, fake_backend):
        control_plane.queued.append(queued_build())

        def fail(payload, log_sink):
            return BuildResult(success=False, error="compile failed", retryable=False)

        agent = make_agent(worker_settings, control_plane, fake_backend, runner=fail)
        agent.register()
        agent.poll_builds()

        assert control_plane.statuses[0][1:] == ("failed", "compile failed", False)

    def test_runner_exception_reported_as_failure(self, worker_settings, control_plane, fake_backend):
        control_plane.queued.append(queued_build())

        def explode(payload, log_sink):
            raise TransientInfrastructureError("disk full")

        agent = make_agent(worker_settings, control_plane, fake_backend, runner=explode)
        agent.register()
        agent.poll_builds()

        assert control_plane.statuses[0][1:] == ("failed", "disk full", True)

    def test_build_taken_by_other_worker(self, worker_settings, control_plane, fake_backend):
        build = queued_build()
        control_plane.queued.append(build)
        agent = make_agent(worker_settings, control_plane, fake_backend)
        agent.register()

        assert agent.process_build(build)
        assert not agent.process_build(build)
        assert len(control_plane.statuses) == 1

    def test_poll_takes_no_more_than_free_slots(self, worker_settings, control_plane, fake_backend):
        for _ in range(5):
            control_plane.queued.append(queued_build())
        agent = make_agent(worker_settings, control_plane, fake_backend)
        agent.register()

        assert agent.poll_builds() == 2

    def test_overlapping_poll_skipped(self, worker_settings, control_plane, fake_backend):
        control_plane.queued.append(queued_build())
        started = threading.Event()
        release = threading.Event()

        def slow(payload, log_sink):
            started.set()
            release.wait(5)
            return BuildResult(success=True)

        agent = make_agent(worker_settings, control_plane, fake_backend, runner=slow)
        agent.register()
        first = threading.Thread(target=agent.poll_builds)
        first.start()
        started.wait(5)

        assert agent.poll_builds() == 0
        assert len(agent.active_job_ids()) == 1

        release.set()
        first.join(5)

    def test_active_builds_sent_with_heartbeat(self, worker_settings, control_plane, fake_backend):
        control_plane.queued.append(queued_build())
        agent = make_agent(worker_settings, control_plane, fake_backend)
        agent.register()
        seen = []

        def runner(payload, log_sink):
            agent.heartbeat()
            seen.extend(control_plane.heartbeats[-1])
            return BuildResult(success=True)

        agent.runner = runner
        agent.poll_builds()

        assert [str(job_id) for job_id in seen] == [control_plane.queued[0]["job_id"]]


class TestBuildLogForwarder:

    def test_batches_lines(self, control_plane):
        uploads = []
        control_plane.add_build_log = lambda job_id, lines: uploads.append(list(lines))
        forwarder = BuildLogForwarder(control_plane, uuid4(), batch_size=2)

        for line in ["a", "b", "c"]:
            forwarder(line)
        forwarder.flush()

        assert uploads == [["a", "b"], ["c"]]


class TestPipelineBuildRunner:
    """Runs the real pipeline against the in-memory container."""

    def test_runs_pipeline(self, container, app):
        lines = []
        runner = PipelineBuildRunner(container.pipeline)

        result = runner(
            {"application_id": str(app.application_id), "git_url": app.git_url, "git_branch": None},
            lines.append,
        )

        assert result.success
        assert container.repositories.builds.get(result.build_id).status == BuildStatus.COMPLETED
        assert lines

    def test_invalid_payload(self, container):
        with pytest.raises(ValidationError, match="Invalid build payload"):
            PipelineBuildRunner(container.pipeline)({"application_id": "nope"}, lambda line: None)
