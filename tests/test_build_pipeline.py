#tests/test_build_pipeline.py

"""Build pipeline: clone, compile, slug, deploy hand-off and failure paths."""

import os
import tarfile
import threading
from uuid import uuid4

import pytest

from paas_engine.builder.storage import slug_key
from paas_engine.core.errors import BuildError, TransientInfrastructureError, ValidationError
from paas_engine.core.models import DEPLOY_QUEUE, JobState
from paas_engine.domain.models import ApplicationStatus, BuildStatus, DeploymentStatus


class TestSuccessfulBuild:
    """Happy path through all stages."""

    def test_build_enqueues_deploy_job(self, container, app):
        result = container.pipeline.build(app.application_id, app.git_url, "main", replicas=2)

        assert result.success
        job = container.queue.get(result.deploy_job_id)
        assert job.queue_name == DEPLOY_QUEUE
        assert job.name == "deploy"
        assert job.state == JobState.WAITING
        assert job.priority == 3
        assert job.payload == {
            "application_id": str(app.application_id),
            "deployment_id": str(result.deployment_id),
            "replicas": 2,
        }

    def test_records_and_statuses(self, container, app):
        result = container.pipeline.build(app.application_id, app.git_url, "main")

        build = container.repositories.builds.get(result.build_id)
        deployment = container.repositories.deployments.get(result.deployment_id)
        current = container.applications.get(app.application_id)

        assert build.status == BuildStatus.COMPLETED
        assert build.build_number == 1
        assert build.git_commit_sha == "a1b2c3d4e5f6"
        assert build.buildpack == "heroku/nodejs"
        assert build.started_at is not None and build.completed_at is not None
        assert "-----> Build complete!" in build.build_log

        assert deployment.status == DeploymentStatus.DEPLOYING
        assert deployment.version == 1
        assert deployment.slug_size_bytes == build.artifact_size_bytes
        assert not deployment.is_active

        assert current.status == ApplicationStatus.BUILDING
        assert current.current_build_id == build.build_id

    def test_slug_excludes_git_metadata(self, container, app, settings):
        result = container.pipeline.build(app.application_id, app.git_url, "main")

        slug_path = os.path.join(settings.storage_local_path, slug_key(app.application_id, result.deployment_id))
        with tarfile.open(slug_path, "r:gz") as tar:
            names = {os.path.normpath(name) for name in tar.getnames()}

        assert "package.json" in names
        assert ".compiled" in names
        assert not any(".git" in name.split("/") for name in names)

    def test_workspace_removed(self, container, app, settings):
        result = container.pipeline.build(app.application_id, app.git_url, "main")

        assert not os.path.exists(os.path.join(settings.build_workspace_root, str(result.build_id)))

    def test_build_numbers_are_sequential(self, container, app):
        first = container.pipeline.build(app.application_id, app.git_url, "main")
        second = container.pipeline.build(app.application_id, app.git_url, "main")

        builds = container.repositories.builds
        deployments = container.repositories.deployments
        assert builds.get(first.build_id).build_number == 1
        assert builds.get(second.build_id).build_number == 2
        assert deployments.get(second.deployment_id).version == 2

    def test_explicit_buildpack_and_commit(self, container, app, fake_backend, fake_git):
        result = container.pipeline.build(
            app.application_id, app.git_url, "main",
            git_commit="deadbeef", buildpack="heroku/python",
        )

        assert container.repositories.builds.get(result.build_id).git_commit_sha == "deadbeef"
        assert fake_git.clones == [(app.git_url, "main", "deadbeef")]
        assert fake_backend.compiled[0].buildpack_url == "https://github.com/heroku/heroku-buildpack-python"

    def test_detection_uses_repository_files(self, container, app, fake_git):
        fake_git.files = {"requirements.txt": "flask\n", "app.py": ""}

        result = container.pipeline.build(app.application_id, app.git_url, "main")

        assert container.repositories.builds.get(result.build_id).buildpack == "heroku/python"

    def test_second_build_hits_cache(self, container, app):
        container.pipeline.build(app.application_id, app.git_url, "main")
        seen = []

        container.pipeline.build(app.application_id, app.git_url, "main", log_sink=seen.append)

        assert any(line.startswith("-----> Build cache hit") for line in seen)

    def test_log_sink_receives_compiler_output(self, container, app):
        seen = []
        container.pipeline.build(app.application_id, app.git_url, "main", log_sink=seen.append)

        assert "-----> Node.js app detected" in seen
        assert seen[0].startswith("-----> Cloning")


class TestFailedBuild:
    """Failures fail the build and put the application back."""

    def test_clone_failure_is_retryable(self, container, app, fake_git):
        fake_git.clone_error = TransientInfrastructureError("git clone timed out")

        result = container.pipeline.build(app.application_id, app.git_url, "main")

        assert not result.success
        assert result.retryable
        assert result.error == "git clone timed out"

        build = container.repositories.builds.get(result.build_id)
        deployment = container.repositories.deployments.get(result.deployment_id)
        assert build.status == BuildStatus.FAILED
        assert build.error_message == "git clone timed out"
        assert "!     Build failed: git clone timed out" in build.build_log
        assert deployment.status == DeploymentStatus.BUILD_FAILED
        assert container.applications.get(app.application_id).status == ApplicationStatus.PENDING
        assert container.queue.list_waiting(DEPLOY_QUEUE) == []

    def test_compile_failure_is_not_retryable(self, container, app, fake_backend):
        fake_backend.compile_error = BuildError("herokuish exited with status 1")

        result = container.pipeline.build(app.application_id, app.git_url, "main")

        assert not result.success
        assert not result.retryable
        assert container.repositories.builds.get(result.build_id).status == BuildStatus.FAILED

    def test_failure_restores_running_status(self, container, app, node, deploy_app, fake_backend):
        deploy_app(app)
        fake_backend.compile_error = BuildError("boom")

        container.pipeline.build(app.application_id, app.git_url, "main")

        assert container.applications.get(app.application_id).status == ApplicationStatus.RUNNING

    def test_repository_check_fails_before_any_record(self, container, app, fake_git):
        fake_git.validate_error = ValidationError("Branch 'main' not found")

        result = container.pipeline.build(app.application_id, app.git_url, "main")

        assert not result.success
        assert result.build_id is None
        assert not result.retryable
        assert container.repositories.builds.list_for_application(app.application_id) == []

    def test_unknown_application(self, container):
        result = container.pipeline.build(uuid4(), "https://github.com/acme/x.git", "main")
        assert not result.success
        assert "not found" in result.error

    def test_workspace_removed_on_failure(self, container, app, fake_backend, settings):
        fake_backend.compile_error = BuildError("boom")

        result = container.pipeline.build(app.application_id, app.git_url, "main")

        assert not os.path.exists(os.path.join(settings.build_workspace_root, str(result.build_id)))


class TestSuspendedDuringBuild:

    def test_suspension_is_not_overwritten(self, container, app, fake_git):
        def suspend_then_clone(git_url, branch, target_dir, commit=None):
            container.applications.suspend(app.application_id, "payment overdue")
            raise TransientInfrastructureError("network down")

        fake_git.clone = suspend_then_clone

        container.pipeline.build(app.application_id, app.git_url, "main")

        assert container.applications.get(app.application_id).status == ApplicationStatus.SUSPENDED

    def test_completed_build_does_not_schedule_deploy(self, container, app, fake_backend):
        original_compile = fake_backend.compile

        def suspend_then_compile(request, on_output):
            container.applications.suspend(app.application_id, "payment overdue")
            original_compile(request, on_output)

        fake_backend.compile = suspend_then_compile

        result = container.pipeline.build(app.application_id, app.git_url, "main")

        assert result.success
        assert result.deploy_job_id is None
        assert container.queue.list_waiting(DEPLOY_QUEUE) == []

        build = container.repositories.builds.get(result.build_id)
        deployment = container.repositories.deployments.get(result.deployment_id)
        assert build.status == BuildStatus.COMPLETED
        assert "-----> Application suspended, deploy not scheduled" in build.build_log
        assert deployment.status == DeploymentStatus.DEPLOYING
        assert deployment.slug_url
        assert container.applications.get(app.application_id).status == ApplicationStatus.SUSPENDED


class TestOverlappingBuilds:
    """Two builds of one application in flight at the same time."""

    def test_both_failing_restore_status_before_first(self, container, app, node, deploy_app, fake_backend):
        deploy_app(app)
        first_compiling = threading.Event()
        second_compiling = threading.Event()
        results = {}

        def compile_and_fail(request, on_output):
            if not first_compiling.is_set():
                first_compiling.set()
                second_compiling.wait(5)
                raise BuildError("first build failed")
            second_compiling.set()
            first.join(5)
            raise BuildError("second build failed")

        fake_backend.compile = compile_and_fail

        def run_first():
            results["first"] = container.pipeline.build(app.application_id, app.git_url, "main")

        first = threading.Thread(target=run_first)
        first.start()
        assert first_compiling.wait(5)
        results["second"] = container.pipeline.build(app.application_id, app.git_url, "main")

        assert results["first"].error == "first build failed"
        assert results["second"].error == "second build failed"
        current = container.applications.get(app.application_id)
        assert current.status == ApplicationStatus.RUNNING
        assert current.status_before_build is None

    def test_concurrent_allocation_never_repeats_numbers(self, container, app):
        builds = container.repositories.builds
        workers = 20
        barrier = threading.Barrier(workers)
        allocated = []
        lock = threading.Lock()

        def allocate():
            barrier.wait(5)
            build, deployment = builds.create_pending(app.application_id)
            with lock:
                allocated.append((build.build_number, deployment.version))

        threads = [threading.Thread(target=allocate) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert sorted(n for n, _ in allocated) == list(range(1, workers + 1))
        assert sorted(v for _, v in allocated) == list(range(1, workers + 1))


@pytest.mark.parametrize("replicas", [None, 3])
def test_result_to_dict(container, app, replicas):
    result = container.pipeline.build(app.application_id, app.git_url, "main", replicas=replicas)

    data = result.to_dict()

    assert data["success"] is True
    assert data["build_id"] == str(result.build_id)
    assert data["error"] is None
