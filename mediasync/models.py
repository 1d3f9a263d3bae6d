"""Database models for mediasync."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from mediasync.db import Base
from mediasync.utils.time import utcnow


class JobStatus(str, Enum):
    """Lifecycle states for a sync job row."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)
ACTIVE_JOB_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING})


class JobType(str, Enum):
    """Closed set of job types the engine knows how to process."""

    FULL_SYNC = "full_sync"
    METADATA_MATCHING = "metadata_matching"
    CLEANUP = "cleanup"


class SyncJob(Base):
    __tablename__ = "sync_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','running','completed','failed','cancelled')",
            name="ck_sync_jobs_status_valid",
        ),
        CheckConstraint(
            "progress >= 0 AND progress <= 100", name="ck_sync_jobs_progress_range"
        ),
        Index("ix_sync_jobs_owner_type_status", "owner_id", "type", "status"),
        Index("ix_sync_jobs_status_completed_at", "status", "completed_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(32), nullable=False, index=True)
    owner_id = Column(Integer, nullable=True, index=True)
    status = Column(String(16), nullable=False, default=JobStatus.PENDING.value)
    progress = Column(Integer, nullable=False, default=0)
    current_step = Column(String(255), nullable=True)
    total_items = Column(Integer, nullable=False, default=0)
    processed_items = Column(Integer, nullable=False, default=0)
    successful_items = Column(Integer, nullable=False, default=0)
    failed_items = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)


class MediaAccountToken(Base):
    """Connected external media account of an owner."""

    __tablename__ = "media_account_tokens"

    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, nullable=False, unique=True)
    token = Column(String(512), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class MediaServer(Base):
    __tablename__ = "media_servers"

    id = Column(Integer, primary_key=True)
    machine_id = Column(String(128), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    platform = Column(String(128), nullable=True)
    version = Column(String(64), nullable=True)
    base_url = Column(String(1024), nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class MediaLibrary(Base):
    __tablename__ = "media_libraries"
    __table_args__ = (
        UniqueConstraint("server_id", "section_key", name="uq_media_libraries_section"),
    )

    id = Column(Integer, primary_key=True)
    server_id = Column(
        Integer, ForeignKey("media_servers.id", ondelete="CASCADE"), nullable=False
    )
    section_key = Column(String(64), nullable=False)
    title = Column(String(255), nullable=False)
    type = Column(String(32), nullable=False)
    agent = Column(String(255), nullable=True)
    scanner = Column(String(255), nullable=True)
    language = Column(String(32), nullable=True)
    uuid = Column(String(128), nullable=True)
    item_count = Column(Integer, nullable=False, default=0)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class UserAccessGrant(Base):
    """Evidence that an owner can see a library."""

    __tablename__ = "user_access_grants"
    __table_args__ = (
        UniqueConstraint("owner_id", "library_id", name="uq_user_access_grants_owner"),
    )

    id = Column(Integer, primary_key=True)
    owner_id = Column(Integer, nullable=False, index=True)
    library_id = Column(
        Integer, ForeignKey("media_libraries.id", ondelete="CASCADE"), nullable=False
    )
    access_level = Column(String(32), nullable=False, default="read")
    is_active = Column(Boolean, nullable=False, default=True)
    discovered_at = Column(DateTime, nullable=False, default=utcnow)
    last_verified_at = Column(DateTime, nullable=False, default=utcnow)


class LibraryItem(Base):
    __tablename__ = "library_items"
    __table_args__ = (
        UniqueConstraint("library_id", "rating_key", name="uq_library_items_rating_key"),
        Index("ix_library_items_guid", "guid"),
        Index("ix_library_items_unmatched", "metadata_id", "is_active", "matching_attempts"),
    )

    id = Column(Integer, primary_key=True)
    library_id = Column(
        Integer, ForeignKey("media_libraries.id", ondelete="CASCADE"), nullable=False
    )
    rating_key = Column(String(64), nullable=False)
    guid = Column(String(512), nullable=True)
    title = Column(String(512), nullable=False)
    year = Column(Integer, nullable=True)
    type = Column(String(32), nullable=False, default="movie")
    metadata_id = Column(Integer, nullable=True)
    matching_attempts = Column(Integer, nullable=False, default=0)
    last_matched_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class ExternalIdMapping(Base):
    """Durable cache of GUID to metadata-id resolutions."""

    __tablename__ = "external_id_mappings"
    __table_args__ = (
        UniqueConstraint("guid", "metadata_id", name="uq_external_id_mappings_pair"),
    )

    id = Column(Integer, primary_key=True)
    guid = Column(String(512), nullable=False, index=True)
    metadata_id = Column(Integer, nullable=False, index=True)
    rating_key = Column(String(64), nullable=True)
    title = Column(String(512), nullable=True)
    year = Column(Integer, nullable=True)
    strategy = Column(String(32), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class Movie(Base):
    """Local record of a metadata provider movie."""

    __tablename__ = "movies"

    id = Column(Integer, primary_key=True)
    tmdb_id = Column(Integer, nullable=False, unique=True)
    title = Column(String(512), nullable=False)
    year = Column(Integer, nullable=True)
    overview = Column(Text, nullable=True)
    poster_url = Column(String(1024), nullable=True)
    runtime = Column(Integer, nullable=True)
    genres = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ProviderUsage(Base):
    """Single-row counter of metadata provider requests."""

    __tablename__ = "provider_usage"

    id = Column(Integer, primary_key=True)
    requests_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    last_request_at = Column(DateTime, nullable=True)


__all__ = [
    "ACTIVE_JOB_STATUSES",
    "ExternalIdMapping",
    "JobStatus",
    "JobType",
    "LibraryItem",
    "MediaAccountToken",
    "MediaLibrary",
    "MediaServer",
    "Movie",
    "ProviderUsage",
    "SyncJob",
    "TERMINAL_JOB_STATUSES",
    "UserAccessGrant",
]
