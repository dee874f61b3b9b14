# paas_engine/builder/pipeline.py
"""Build pipeline - turns an application's git source into a slug."""

import logging
import os
import shutil
import tarfile
from dataclasses import dataclass
from typing import Callable, Optional
from uuid import UUID

from paas_engine.builder.buildpacks import buildpack_url, detect_buildpack
from paas_engine.builder.cache import BuildCacheService
from paas_engine.builder.git import GitClient
from paas_engine.builder.log import BuildLog
from paas_engine.builder.storage import ArtifactStorage, slug_key
from paas_engine.core.errors import BuildError, NotFoundError, PaasError, is_retryable
from paas_engine.core.models import DEPLOY_QUEUE, JobOptions, DEFAULT_QUEUE_OPTIONS
from paas_engine.core.service import JobQueue
from paas_engine.domain.models import (
    Application,
    ApplicationStatus,
    Build,
    BuildStatus,
    Deployment,
    DeploymentStatus,
)
from paas_engine.domain.repository import (
    ApplicationRepository,
    BuildRepository,
    DeploymentRepository,
)
from paas_engine.domain.state_machine import (
    transition_application,
    transition_build,
    transition_deployment,
)
from paas_engine.runtime.backend import CompileRequest, ContainerBackend

logger = logging.getLogger(__name__)

DEPLOY_PRIORITY = 3


@dataclass
class BuildConfig:
    workspace_root: str = "/tmp/paas-builds"
    default_buildpack: str = "heroku/nodejs"
    herokuish_image: str = "gliderlabs/herokuish:latest"
    default_stack: str = "heroku-22"
    timeout_minutes: int = 15


@dataclass
class BuildResult:
    success: bool
    build_id: Optional[UUID] = None
    deployment_id: Optional[UUID] = None
    error: Optional[str] = None
    retryable: bool = False
    deploy_job_id: Optional[UUID] = None

    def to_dict(self):
        return {
            "success": self.success,
            "build_id": str(self.build_id) if self.build_id else None,
            "deployment_id": str(self.deployment_id) if self.deployment_id else None,
            "deploy_job_id": str(self.deploy_job_id) if self.deploy_job_id else None,
            "error": self.error,
            "retryable": self.retryable,
        }


class BuildPipeline:
    """
    Ten stages, in order:

    1. load the application and validate the repository
    2. allocate build number + deployment version, mark everything building
    3. clone
    4. detect buildpack
    5. restore cache
    6. compile with herokuish
    7. package the slug
    8. persist cache
    9. upload the slug
    10. complete the build and enqueue the deploy job

    Any failure after stage 2 fails the Build, marks the Deployment
    build_failed and returns the Application to its previous status.
    The workspace is removed on every path.
    """

    def __init__(
        self,
        *,
        applications: ApplicationRepository,
        builds: BuildRepository,
        deployments: DeploymentRepository,
        queue: JobQueue,
        git: GitClient,
        backend: ContainerBackend,
        cache: BuildCacheService,
        storage: ArtifactStorage,
        config: Optional[BuildConfig] = None,
    ):
        self._apps = applications
        self._builds = builds
        self._deployments = deployments
        self._queue = queue
        self._git = git
        self._backend = backend
        self._cache = cache
        self._storage = storage
        self.config = config or BuildConfig()

    def build(
        self,
        application_id: UUID,
        git_url: str,
        git_branch: str,
        git_commit: Optional[str] = None,
        user_id: Optional[UUID] = None,
        buildpack: Optional[str] = None,
        replicas: Optional[int] = None,
        log_sink: Optional[Callable[[str], None]] = None,
    ) -> BuildResult:
        # 1. Application + repository
        app = self._apps.get(application_id)
        if app is None:
            return BuildResult(success=False, error=f"Application {application_id} not found")

        try:
            self._git.validate(git_url, git_branch)
        except PaasError as e:
            logger.warning(f"[builder] repository check failed for {app.slug}: {e}")
            return BuildResult(success=False, error=str(e), retryable=e.retryable)

        # 2. Allocate numbers and claim the building status
        try:
            build, deployment = self._builds.create_pending(application_id, triggered_by=user_id)
        except PaasError as e:
            logger.error(f"[builder] could not allocate a build for {app.slug}: {e}")
            return BuildResult(success=False, error=str(e), retryable=e.retryable)
        log = BuildLog(f"{app.slug}#{build.build_number}", sink=log_sink)

        transition_build(build, BuildStatus.BUILDING)
        self._builds.update(build)
        transition_deployment(deployment, DeploymentStatus.BUILDING)
        self._deployments.update(deployment)
        self._enter_building(application_id)

        logger.info(
            f"[builder] 🚀 build #{build.build_number} of {app.slug} "
            f"(deployment v{deployment.version}) started"
        )

        scratch = os.path.join(self.config.workspace_root, str(build.build_id))
        try:
            deploy_job_id = self._run_stages(
                app, build, deployment, log, scratch,
                git_url=git_url,
                git_branch=git_branch,
                git_commit=git_commit,
                buildpack=buildpack,
                replicas=replicas,
            )
        except Exception as e:
            retryable = False if isinstance(e, BuildError) else is_retryable(e)
            self._fail(application_id, build, deployment, log, e)
            return BuildResult(
                success=False,
                build_id=build.build_id,
                deployment_id=deployment.deployment_id,
                error=str(e),
                retryable=retryable,
            )
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        return BuildResult(
            success=True,
            build_id=build.build_id,
            deployment_id=deployment.deployment_id,
            deploy_job_id=deploy_job_id,
        )

    # -------------------------
    # STAGES 3-10
    # -------------------------

    def _run_stages(
        self,
        app: Application,
        build: Build,
        deployment: Deployment,
        log: BuildLog,
        scratch: str,
        *,
        git_url: str,
        git_branch: str,
        git_commit: Optional[str],
        buildpack: Optional[str],
        replicas: Optional[int],
    ) -> Optional[UUID]:
        workspace = os.path.join(scratch, "app")
        cache_dir = os.path.join(scratch, "cache")
        os.makedirs(cache_dir, exist_ok=True)

        # 3. Clone
        log.step(f"Cloning {git_url} ({git_commit or git_branch})...")
        commit = self._git.clone(git_url, git_branch, workspace, commit=git_commit)
        build.git_commit_sha = commit.sha
        build.git_commit_message = commit.message
        log.step(f"Checked out {commit.sha[:8]} {commit.message}")

        # 4. Buildpack
        chosen = buildpack or app.buildpack
        if not chosen:
            log.step("Detecting buildpack...")
            chosen = detect_buildpack(os.listdir(workspace), default=self.config.default_buildpack)
        build.buildpack = chosen
        log.step(f"Using buildpack: {chosen}")

        # 5. Cache restore
        stack = app.stack or self.config.default_stack
        cache_key = None
        if self._cache.enabled:
            cache_key = self._cache.cache_key(app.application_id, chosen, stack, workspace)
            build.cache_key = cache_key
            log.step(f"Checking build cache (stack={stack}, buildpack={chosen})")
            self._cache.restore(app.application_id, cache_key, cache_dir, log)
        else:
            log.step("Build cache disabled")
        self._builds.update(build)

        # 6. Compile
        log.step("Compiling application...")
        self._backend.compile(
            CompileRequest(
                workspace=workspace,
                cache_dir=cache_dir,
                buildpack_url=buildpack_url(chosen),
                image=self.config.herokuish_image,
                timeout_seconds=self.config.timeout_minutes * 60,
            ),
            on_output=log.output,
        )

        # 7. Slug
        log.step("Creating slug...")
        slug_path = os.path.join(scratch, "slug.tar.gz")
        slug_size = create_slug(workspace, slug_path)
        build.artifact_size_bytes = slug_size

        # 8. Cache persist
        if cache_key:
            self._cache.persist(app.application_id, cache_key, cache_dir, scratch, log)

        # 9. Upload
        log.step("Uploading slug...")
        slug_url = self._storage.upload_file(slug_path, slug_key(app.application_id, deployment.deployment_id))

        deployment = self._deployments.get(deployment.deployment_id)
        deployment.slug_url = slug_url
        deployment.slug_size_bytes = slug_size
        transition_deployment(deployment, DeploymentStatus.DEPLOYING)
        self._deployments.update(deployment)

        # 10. Complete + hand off to the deploy queue
        log.step(f"Build complete! Slug size: {slug_size / 1024 / 1024:.2f}MB")
        transition_build(build, BuildStatus.COMPLETED)
        build.build_log = log.text()
        self._builds.update(build)

        current = self._apps.get(app.application_id)
        if current is not None:
            current.current_build_id = build.build_id
            self._apps.update(current)

        if current is None or current.is_suspended():
            # No new jobs for a suspended application; the slug stays on the deployment
            log.step("Application suspended, deploy not scheduled")
            build.build_log = log.text()
            self._builds.update(build)
            logger.warning(f"[builder] build #{build.build_number} of {app.slug} completed, deploy skipped (suspended)")
            return None

        base = DEFAULT_QUEUE_OPTIONS[DEPLOY_QUEUE]
        deploy_job_id = self._queue.enqueue(
            DEPLOY_QUEUE,
            {
                "application_id": str(app.application_id),
                "deployment_id": str(deployment.deployment_id),
                "replicas": replicas,
            },
            JobOptions(attempts=base.attempts, backoff=base.backoff, priority=DEPLOY_PRIORITY),
            name="deploy",
            application_id=app.application_id,
        )

        logger.info(f"[builder] ✅ build #{build.build_number} of {app.slug} completed, deploy job {deploy_job_id}")
        return deploy_job_id

    # -------------------------
    # FAILURE PATH
    # -------------------------

    def _fail(
        self,
        application_id: UUID,
        build: Build,
        deployment: Deployment,
        log: BuildLog,
        error: Exception,
    ) -> None:
        logger.error(f"[builder] ❌ build {build.build_id} failed: {error}")
        log.error(f"Build failed: {error}")

        try:
            transition_build(build, BuildStatus.FAILED)
            build.error_message = str(error)
            build.build_log = log.text()
            self._builds.update(build)

            current = self._deployments.get(deployment.deployment_id) or deployment
            if current.status in (DeploymentStatus.PENDING, DeploymentStatus.BUILDING):
                transition_deployment(current, DeploymentStatus.BUILD_FAILED)
            current.error_message = str(error)
            self._deployments.update(current)

            self._leave_building(application_id)
        except Exception as e:
            logger.error(f"[builder] failed to record failure of build {build.build_id}: {e}", exc_info=True)

    def _enter_building(self, application_id: UUID) -> None:
        """Suspension wins over build progress."""
        app = self._apps.get(application_id)
        if app is None:
            raise NotFoundError(f"Application {application_id} not found")
        if app.is_suspended() or app.status == ApplicationStatus.BUILDING:
            return
        app.status_before_build = app.status
        transition_application(app, ApplicationStatus.BUILDING)
        self._apps.update(app)

    def _leave_building(self, application_id: UUID) -> None:
        """
        Return the application to the status it had before it started
        building. Overlapping builds share that status, so the last failure
        never restores BUILDING.
        """
        app = self._apps.get(application_id)
        if app is None or app.status != ApplicationStatus.BUILDING:
            return
        transition_application(app, app.status_before_build or ApplicationStatus.PENDING)
        app.status_before_build = None
        self._apps.update(app)


def create_slug(workspace: str, slug_path: str) -> int:
    """tar.gz of the compiled workspace without VCS metadata. Returns its size."""

    def _exclude_git(info: tarfile.TarInfo):
        parts = info.name.split("/")
        return None if ".git" in parts else info

    with tarfile.open(slug_path, "w:gz", compresslevel=1) as tar:
        for entry in sorted(os.listdir(workspace)):
            if entry == ".git":
                continue
            tar.add(os.path.join(workspace, entry), arcname=f"./{entry}", filter=_exclude_git)
    return os.path.getsize(slug_path)
