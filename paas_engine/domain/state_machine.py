#paas_engine/domain/state_machine.py

from datetime import datetime, timezone
from typing import Optional

from paas_engine.core.errors import InvalidStateError
from paas_engine.domain.models import (
    Application,
    ApplicationStatus,
    Build,
    BuildStatus,
    Deployment,
    DeploymentStatus,
)


APPLICATION_TRANSITIONS = {
    ApplicationStatus.PENDING: {
        ApplicationStatus.BUILDING,
        ApplicationStatus.RUNNING,
        ApplicationStatus.SUSPENDED,
    },
    # A failed build reverts to whatever status the application had before.
    ApplicationStatus.BUILDING: {
        ApplicationStatus.PENDING,
        ApplicationStatus.RUNNING,
        ApplicationStatus.STOPPED,
        ApplicationStatus.FAILED,
        ApplicationStatus.SUSPENDED,
    },
    ApplicationStatus.RUNNING: {
        ApplicationStatus.BUILDING,
        ApplicationStatus.STOPPED,
        ApplicationStatus.FAILED,
        ApplicationStatus.SUSPENDED,
    },
    ApplicationStatus.STOPPED: {
        ApplicationStatus.BUILDING,
        ApplicationStatus.RUNNING,
        ApplicationStatus.FAILED,
        ApplicationStatus.SUSPENDED,
    },
    ApplicationStatus.FAILED: {
        ApplicationStatus.BUILDING,
        ApplicationStatus.RUNNING,
        ApplicationStatus.STOPPED,
        ApplicationStatus.SUSPENDED,
    },
    ApplicationStatus.SUSPENDED: {
        ApplicationStatus.STOPPED,
        ApplicationStatus.RUNNING,
    },
}


DEPLOYMENT_TRANSITIONS = {
    DeploymentStatus.PENDING: {
        DeploymentStatus.BUILDING,
        DeploymentStatus.BUILD_FAILED,
    },
    DeploymentStatus.BUILDING: {
        DeploymentStatus.DEPLOYING,
        DeploymentStatus.BUILD_FAILED,
    },
    DeploymentStatus.DEPLOYING: {
        DeploymentStatus.DEPLOYED,
        DeploymentStatus.FAILED,
    },
    DeploymentStatus.FAILED: {
        DeploymentStatus.DEPLOYING,
    },
    DeploymentStatus.DEPLOYED: {
        DeploymentStatus.DEPLOYING,
        DeploymentStatus.ROLLED_BACK,
    },
    DeploymentStatus.ROLLED_BACK: {
        DeploymentStatus.DEPLOYING,
    },
    DeploymentStatus.BUILD_FAILED: set(),
}


BUILD_TRANSITIONS = {
    BuildStatus.PENDING: {BuildStatus.BUILDING, BuildStatus.FAILED},
    BuildStatus.BUILDING: {BuildStatus.COMPLETED, BuildStatus.FAILED},
    BuildStatus.COMPLETED: set(),
    BuildStatus.FAILED: set(),
}


def transition_application(app: Application, new_status: ApplicationStatus) -> Application:
    current = app.status
    if current == new_status:
        return app

    if new_status not in APPLICATION_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Cannot transition application from {current.value} to {new_status.value}"
        )

    app.status = new_status
    app.updated_at = datetime.now(timezone.utc)
    return app


def transition_deployment(
    deployment: Deployment,
    new_status: DeploymentStatus,
    *,
    now: Optional[datetime] = None,
) -> Deployment:
    now = now or datetime.now(timezone.utc)
    current = deployment.status

    if current == new_status:
        return deployment

    if new_status not in DEPLOYMENT_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Cannot transition deployment from {current.value} to {new_status.value}"
        )

    if new_status == DeploymentStatus.DEPLOYED:
        deployment.deployed_at = now
        deployment.error_message = None

    deployment.status = new_status
    return deployment


def transition_build(build: Build, new_status: BuildStatus, *, now: Optional[datetime] = None) -> Build:
    now = now or datetime.now(timezone.utc)
    current = build.status

    if current == new_status:
        return build

    if new_status not in BUILD_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Cannot transition build from {current.value} to {new_status.value}"
        )

    # Timestamp semantics
    if new_status == BuildStatus.BUILDING:
        build.started_at = now
    elif new_status in (BuildStatus.COMPLETED, BuildStatus.FAILED):
        build.completed_at = now

    build.status = new_status
    return build
