#paas_engine/infrastructure/postgres/repository.py

"""PostgreSQL job repository using SQLAlchemy."""

import logging
from datetime import datetime
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from paas_engine.core.errors import AlreadyExistsError, ConcurrencyError
from paas_engine.core.models import BackoffPolicy, Job, JobState
from paas_engine.core.repository import JobRepository
from paas_engine.infrastructure.postgres.models import JobORM

logger = logging.getLogger(__name__)


# ============================================
# Mapping Functions
# ============================================

def orm_to_domain(orm: JobORM) -> Job:
    """Convert ORM model to domain model."""
    return Job(
        job_id=orm.job_id,
        queue_name=orm.queue_name,
        name=orm.name,
        payload=orm.payload or {},
        application_id=orm.application_id,
        state=orm.state,
        priority=orm.priority,
        progress=orm.progress,
        attempts_made=orm.attempts_made,
        max_attempts=orm.max_attempts,
        backoff=BackoffPolicy.from_dict(orm.backoff),
        available_at=orm.available_at,
        stalled_count=orm.stalled_count,
        lease_owner=orm.lease_owner,
        lease_expires_at=orm.lease_expires_at,
        failure_reason=orm.failure_reason,
        return_value=orm.return_value,
        created_at=orm.created_at,
        started_at=orm.started_at,
        finished_at=orm.finished_at,
        version=orm.version,
    )


def domain_to_orm(job: Job) -> JobORM:
    """Convert domain model to ORM model."""
    return JobORM(
        job_id=job.job_id,
        queue_name=job.queue_name,
        name=job.name,
        payload=job.payload,
        application_id=job.application_id,
        state=job.state,
        priority=job.priority,
        progress=job.progress,
        attempts_made=job.attempts_made,
        max_attempts=job.max_attempts,
        backoff=job.backoff.to_dict(),
        available_at=job.available_at,
        stalled_count=job.stalled_count,
        lease_owner=job.lease_owner,
        lease_expires_at=job.lease_expires_at,
        failure_reason=job.failure_reason,
        return_value=job.return_value,
        created_at=job.created_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
        version=job.version,
    )


def _claimable(now: datetime):
    return and_(
        JobORM.state.in_([JobState.WAITING, JobState.DELAYED]),
        JobORM.available_at <= now,
    )


# ============================================
# Repository Implementation
# ============================================

class PostgresJobRepository(JobRepository):
    """PostgreSQL job store. Claims use FOR UPDATE SKIP LOCKED."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _get_session(self) -> Session:
        return self._session_factory()

    # -------------------------
    # CREATE
    # -------------------------

    def create(self, job: Job) -> None:
        session = self._get_session()
        try:
            session.add(domain_to_orm(job))
            session.commit()
            logger.debug(f"[postgres] create job {job.job_id} -> done")
        except IntegrityError as e:
            session.rollback()
            raise AlreadyExistsError(f"Job {job.job_id} already exists") from e
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    # -------------------------
    # READ
    # -------------------------

    def get(self, job_id: UUID) -> Optional[Job]:
        session = self._get_session()
        try:
            orm = session.get(JobORM, job_id)
            return orm_to_domain(orm) if orm else None
        finally:
            session.close()

    def list_by_state(
        self,
        state: JobState,
        queue_name: Optional[str] = None,
        limit: int = 100,
    ) -> Iterable[Job]:
        session = self._get_session()
        try:
            query = session.query(JobORM).filter(JobORM.state == state)
            if queue_name:
                query = query.filter(JobORM.queue_name == queue_name)

            results = query.order_by(
                JobORM.priority.desc(),
                JobORM.created_at.asc()
            ).limit(limit).all()

            logger.debug(f"[postgres] list_by_state state={state.value} -> {len(results)} rows")
            return [orm_to_domain(orm) for orm in results]
        finally:
            session.close()

    def list_due_delayed(self, now: datetime, limit: int = 100) -> Iterable[Job]:
        session = self._get_session()
        try:
            results = session.query(JobORM).filter(
                and_(
                    JobORM.state == JobState.DELAYED,
                    JobORM.available_at <= now,
                )
            ).order_by(JobORM.available_at.asc()).limit(limit).all()
            return [orm_to_domain(orm) for orm in results]
        finally:
            session.close()

    def list_stalled(self, now: datetime, limit: int = 100) -> Iterable[Job]:
        session = self._get_session()
        try:
            results = session.query(JobORM).filter(
                and_(
                    JobORM.state == JobState.ACTIVE,
                    JobORM.lease_expires_at <= now,
                )
            ).limit(limit).all()

            logger.debug(f"[postgres] list_stalled -> {len(results)} rows")
            return [orm_to_domain(orm) for orm in results]
        finally:
            session.close()

    def list_pending_for_application(self, application_id: UUID) -> List[Job]:
        session = self._get_session()
        try:
            results = session.query(JobORM).filter(
                and_(
                    JobORM.application_id == application_id,
                    or_(JobORM.state == JobState.WAITING, JobORM.state == JobState.DELAYED),
                )
            ).all()
            return [orm_to_domain(orm) for orm in results]
        finally:
            session.close()

    # -------------------------
    # CLAIM
    # -------------------------

    def claim_next(
        self,
        queue_name: str,
        worker_id: str,
        lease_seconds: float,
        now: datetime,
    ) -> Optional[Job]:
        """Lock the best claimable row, skipping rows other workers hold."""
        session = self._get_session()
        try:
            orm = session.query(JobORM).filter(
                and_(JobORM.queue_name == queue_name, _claimable(now))
            ).order_by(
                JobORM.priority.desc(),
                JobORM.created_at.asc()
            ).limit(1).with_for_update(skip_locked=True).first()

            if orm is None:
                session.rollback()
                return None

            job = orm_to_domain(orm)
            job.claim(worker_id, lease_seconds, now=now)
            self._apply(orm, job)

            session.commit()
            logger.debug(f"[postgres] claim_next {job.job_id} by {worker_id}")
            return job
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def try_claim(
        self,
        job_id: UUID,
        worker_id: str,
        lease_seconds: float,
        now: datetime,
    ) -> Optional[Job]:
        session = self._get_session()
        try:
            orm = session.query(JobORM).filter(
                and_(JobORM.job_id == job_id, _claimable(now))
            ).with_for_update(skip_locked=True).first()

            if orm is None:
                session.rollback()
                return None

            job = orm_to_domain(orm)
            job.claim(worker_id, lease_seconds, now=now)
            self._apply(orm, job)

            session.commit()
            logger.debug(f"[postgres] try_claim {job_id} by {worker_id} -> True")
            return job
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    # -------------------------
    # UPDATE
    # -------------------------

    def update(self, job: Job) -> None:
        """Update with optimistic locking on version."""
        session = self._get_session()
        try:
            current = session.query(JobORM).filter(
                and_(
                    JobORM.job_id == job.job_id,
                    JobORM.version == job.version - 1
                )
            ).with_for_update().first()

            if not current:
                raise ConcurrencyError(
                    f"Update failed for {job.job_id} - concurrent modification"
                )

            self._apply(current, job)
            session.commit()
        except ConcurrencyError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise ConcurrencyError(f"Update failed: {e}") from e
        finally:
            session.close()

    @staticmethod
    def _apply(orm: JobORM, job: Job) -> None:
        orm.state = job.state
        orm.progress = job.progress
        orm.attempts_made = job.attempts_made
        orm.available_at = job.available_at
        orm.stalled_count = job.stalled_count
        orm.lease_owner = job.lease_owner
        orm.lease_expires_at = job.lease_expires_at
        orm.failure_reason = job.failure_reason
        orm.return_value = job.return_value
        orm.started_at = job.started_at
        orm.finished_at = job.finished_at
        orm.version = job.version
