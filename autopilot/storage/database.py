from sqlalchemy import Column, String, Text, DateTime, JSON, Enum as SQLEnum, select, update, func, or_, and_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol
from ..models.job import JobStatus, ScheduledJob
from ..models.errors import DatabaseError

Base = declarative_base()

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC (SQLite keeps no offset)"""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class JobModel(Base):
    __tablename__ = "scheduled_jobs"

    id = Column(String, primary_key=True)
    page_id = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    media_url = Column(String, nullable=True)
    scheduled_for = Column(UTCDateTime, nullable=False, index=True)
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.PENDING, index=True)
    retry_metadata = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    published_content_id = Column(String, nullable=True)
    published_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


def _to_row(job: ScheduledJob) -> JobModel:
    data = job.model_dump(exclude={"retry_metadata"})
    data["retry_metadata"] = job.retry_metadata.model_dump(mode="json")
    return JobModel(**data)


def _from_row(row: JobModel) -> ScheduledJob:
    return ScheduledJob.model_validate(row, from_attributes=True)


class JobStore(Protocol):
    """What the scheduler needs from persistence."""

    async def find_due(self, now: datetime, limit: int, max_retries: int) -> List[ScheduledJob]: ...

    async def save(self, job: ScheduledJob) -> ScheduledJob: ...


class Storage:
    def __init__(self, db_path: str = None):
        if not db_path:
            db_path = os.path.join(os.path.expanduser("~"), ".autopilot", "jobs.db")
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)

        self.db_path = db_path
        self.engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
        self.Session = async_sessionmaker(bind=self.engine, expire_on_commit=False)

    async def init(self):
        """Probe the connection and create tables. Safe to call repeatedly."""
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Could not connect to {self.db_path}: {e}", e) from e

    async def close(self):
        await self.engine.dispose()

    async def add_job(self, job: ScheduledJob) -> ScheduledJob:
        async with self.Session() as session:
            try:
                session.add(_to_row(job))
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to add job {job.id}: {e}", e) from e
        return job

    async def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        async with self.Session() as session:
            row = await session.get(JobModel, job_id)
            return _from_row(row) if row else None

    async def save(self, job: ScheduledJob) -> ScheduledJob:
        """Write the full current state of one job in a single transaction"""
        job.updated_at = utcnow()
        async with self.Session() as session:
            try:
                await session.merge(_to_row(job))
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to save job {job.id}: {e}", e) from e
        return job

    async def find_due(self, now: datetime, limit: int, max_retries: int) -> List[ScheduledJob]:
        retry_count = func.coalesce(JobModel.retry_metadata["retry_count"].as_integer(), 0)
        query = (
            select(JobModel)
            .where(
                or_(
                    JobModel.status == JobStatus.PENDING,
                    and_(JobModel.status == JobStatus.FAILED, retry_count < max_retries),
                )
            )
            .where(JobModel.scheduled_for <= now)
            .order_by(JobModel.scheduled_for.asc(), JobModel.created_at.asc(), JobModel.id.asc())
            .limit(limit)
        )
        async with self.Session() as session:
            try:
                result = await session.execute(query)
            except SQLAlchemyError as e:
                raise DatabaseError(f"Failed to fetch due jobs: {e}", e) from e
            return [_from_row(row) for row in result.scalars().all()]

    async def list_jobs(self, status: JobStatus = None, limit: int = None) -> List[ScheduledJob]:
        async with self.Session() as session:
            query = select(JobModel).order_by(JobModel.scheduled_for.asc())
            if status:
                query = query.where(JobModel.status == status)
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)
            return [_from_row(row) for row in result.scalars().all()]

    async def count_by_status(self) -> Dict[JobStatus, int]:
        async with self.Session() as session:
            result = await session.execute(
                select(JobModel.status, func.count()).group_by(JobModel.status)
            )
            counts = {status: 0 for status in JobStatus}
            counts.update({status: count for status, count in result.all()})
            return counts

    async def requeue_failed(self, job_id: str) -> Optional[ScheduledJob]:
        """Give a terminally failed job a fresh set of attempts"""
        job = await self.get_job(job_id)
        if job is None or job.status != JobStatus.FAILED:
            return None
        job.status = JobStatus.PENDING
        job.retry_metadata.retry_count = 0
        job.retry_metadata.final_error = None
        job.retry_metadata.failed_at = None
        job.error_message = None
        return await self.save(job)

    async def reset_stale_jobs(self, older_than: timedelta) -> int:
        """Put jobs left in processing (e.g. after a crash) back to pending"""
        cutoff = utcnow() - older_than
        async with self.Session() as session:
            result = await session.execute(
                update(JobModel)
                .where(JobModel.status == JobStatus.PROCESSING)
                .where(JobModel.updated_at < cutoff)
                .values(status=JobStatus.PENDING, updated_at=utcnow())
            )
            await session.commit()
            if result.rowcount:
                logger.warning(f"Reset {result.rowcount} stale processing job(s) to pending")
            return result.rowcount
