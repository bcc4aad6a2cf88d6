import enum
from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    JSON, BigInteger, Boolean, DateTime, Float, ForeignKey, Integer, LargeBinary,
    Index, String, Text, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReviewStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class IndexingStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class Delivery(Base):
    """Model for storing GitHub webhook deliveries."""

    __tablename__ = "deliveries"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    guid: Mapped[str] = mapped_column(String(64), unique=True)
    event: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict] = mapped_column(JSONType)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ReviewRecord(Base):
    """One review attempt (initial or follow-up) for a pull request.

    ``diff``, ``summary`` and ``merge_score`` of the latest COMPLETED record
    are what the next follow-up review is compared against.
    """

    __tablename__ = "review_records"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    repository: Mapped[str] = mapped_column(String(256))
    pr_number: Mapped[int] = mapped_column(Integer)
    pr_url: Mapped[str] = mapped_column(String(512), default="")
    comment_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=ReviewStatus.IN_PROGRESS.value)
    is_follow_up: Mapped[bool] = mapped_column(Boolean, default=False)
    merge_score: Mapped[int] = mapped_column(Integer, default=0)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    code_quality: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    rules_violated: Mapped[list] = mapped_column(JSONType, default=list)
    rules_passed: Mapped[list] = mapped_column(JSONType, default=list)
    suggestions: Mapped[list] = mapped_column(JSONType, default=list)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    diff: Mapped[str | None] = mapped_column(Text, nullable=True)
    context_metrics: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    processing_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class CodeFile(Base):
    """Model for an indexed repository file."""

    __tablename__ = "code_files"
    __table_args__ = (
        UniqueConstraint("tenant_id", "repository", "file_path", name="uq_code_file_path"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64))
    repository: Mapped[str] = mapped_column(String(256))
    file_path: Mapped[str] = mapped_column(String(1024))
    file_hash: Mapped[str] = mapped_column(String(64))
    last_indexed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    chunks: Mapped[list["CodeChunk"]] = relationship(
        back_populates="code_file", cascade="all, delete-orphan"
    )


class CodeChunk(Base):
    """Model for storing code chunks with embeddings."""

    __tablename__ = "code_chunks"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code_file_id: Mapped[int] = mapped_column(
        ForeignKey("code_files.id", ondelete="CASCADE"), index=True
    )
    chunk_index: Mapped[int] = mapped_column(Integer)
    content: Mapped[str] = mapped_column(Text)
    embedding: Mapped[bytes] = mapped_column(LargeBinary)

    code_file: Mapped[CodeFile] = relationship(back_populates="chunks")


class IndexingState(Base):
    """Resumable indexing progress for one repository."""

    __tablename__ = "indexing_states"
    __table_args__ = (
        UniqueConstraint("tenant_id", "repository", name="uq_indexing_state_repo"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64))
    repository: Mapped[str] = mapped_column(String(256))
    status: Mapped[str] = mapped_column(String(16), default=IndexingStatus.IN_PROGRESS.value)
    last_indexed_file_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Job(Base):
    """Durable record of a queued background job."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16), default=JobStatus.PENDING.value, index=True)
    dedupe_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    payload: Mapped[dict] = mapped_column(JSONType)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)

# At most one pending or processing job per dedupe key.
Index(
    "uq_jobs_active_dedupe_key",
    Job.dedupe_key,
    unique=True,
    postgresql_where=Job.status.in_(ACTIVE_JOB_STATUSES),
    sqlite_where=Job.status.in_(ACTIVE_JOB_STATUSES),
)
