from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator
from uuid import uuid4

class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PUBLISHED = "published"
    FAILED = "failed"

class RetryMetadata(BaseModel):
    retry_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    last_retry_at: Optional[datetime] = None
    final_error: Optional[str] = None
    failed_at: Optional[datetime] = None

class ScheduledJob(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    page_id: str
    content: str
    media_url: Optional[str] = None
    scheduled_for: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: JobStatus = JobStatus.PENDING
    retry_metadata: RetryMetadata = Field(default_factory=RetryMetadata)
    error_message: Optional[str] = None
    published_content_id: Optional[str] = None
    published_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("retry_metadata", mode="before")
    @classmethod
    def _empty_metadata(cls, value):
        # Rows written before any attempt carry NULL metadata
        return value if value is not None else {}

    @field_validator("scheduled_for", "created_at", "updated_at", "published_at")
    @classmethod
    def _as_utc(cls, value):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def retry_count(self) -> int:
        return self.retry_metadata.retry_count

    def is_due(self, now: datetime, max_retries: int) -> bool:
        """Whether the scheduler may pick this job up at `now`"""
        if self.scheduled_for > now:
            return False
        if self.status == JobStatus.PENDING:
            return True
        return self.status == JobStatus.FAILED and self.retry_count < max_retries

class ExecutionResult(BaseModel):
    content_id: str
    published_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
