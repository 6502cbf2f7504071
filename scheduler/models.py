"""Engine data models: bulk operations, scheduled posts, automation schedules."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, computed_field


def _new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Bulk operations ──────────────────────────────────────────────────────────

class BulkAction(str, Enum):
    PUBLISH = "publish"
    UNPUBLISH = "unpublish"
    DELETE = "delete"
    UPDATE_METADATA = "update_metadata"


class BulkStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


BULK_TERMINAL = frozenset({
    BulkStatus.COMPLETED, BulkStatus.COMPLETED_WITH_ERRORS, BulkStatus.FAILED,
})


class ItemError(BaseModel):
    target_id: str | None = None   # None: the whole operation failed a precondition
    error: str


class BulkOperation(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner: str
    site_id: str
    target_type: str = "post"
    action: BulkAction
    target_ids: list[str]
    fields: dict[str, Any] | None = None
    status: BulkStatus = BulkStatus.QUEUED
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[ItemError] = []
    errors_truncated: bool = False
    processed_ids: list[str] = []
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utc_now)


# ── Scheduled posts ──────────────────────────────────────────────────────────

class PostStatus(str, Enum):
    PENDING = "pending"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PublishStatus(str, Enum):
    DRAFT = "draft"
    PUBLISH = "publish"


class PostContent(BaseModel):
    title: str = Field(min_length=1)
    content: str
    excerpt: str | None = None
    categories: list[int] = []
    tags: list[int] = []
    featured_media: int | None = None
    status: PublishStatus = PublishStatus.PUBLISH


class ScheduledPost(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner: str
    site_id: str
    payload: PostContent
    scheduled_for: datetime            # always UTC
    timezone: str = "UTC"              # display only
    status: PostStatus = PostStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    last_error: str | None = None
    remote_id: str | None = None
    remote_link: str | None = None
    claimed_at: datetime | None = None
    published_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# ── Automation schedules ─────────────────────────────────────────────────────

class ScheduleKind(str, Enum):
    ONCE = "once"
    EVERY_5_MIN = "every_5_min"
    EVERY_10_MIN = "every_10_min"
    EVERY_30_MIN = "every_30_min"
    HOURLY = "hourly"
    EVERY_2_HOURS = "every_2_hours"
    EVERY_6_HOURS = "every_6_hours"
    EVERY_12_HOURS = "every_12_hours"
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"


class AutomationSchedule(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner: str
    site_id: str
    source_ref: str | None = None
    name: str = Field(min_length=1)
    description: str | None = None
    kind: ScheduleKind
    # Resolved from ``kind`` at create/update; None only for ONCE.
    cron_expression: str | None = None
    run_at: datetime | None = None     # ONCE only, UTC
    timezone: str = "UTC"
    is_active: bool = True
    auto_publish: bool = False
    publish_status: PublishStatus = PublishStatus.DRAFT
    max_articles: int = Field(20, ge=1, le=50)
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ExecutionTrigger(str, Enum):
    CRON = "cron"
    ONCE = "once"
    MANUAL = "manual"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class AutomationExecution(BaseModel):
    id: str = Field(default_factory=_new_id)
    schedule_id: str
    trigger: ExecutionTrigger
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    articles_generated: int = 0
    articles_published: int = 0
    error: str | None = None

    @computed_field
    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None


class ArticleStatus(str, Enum):
    GENERATED = "generated"
    PUBLISHED = "published"
    FAILED = "failed"


class GeneratedArticle(BaseModel):
    id: str = Field(default_factory=_new_id)
    schedule_id: str
    execution_id: str
    source_url: str | None = None
    title: str
    content: str
    excerpt: str | None = None
    status: ArticleStatus = ArticleStatus.GENERATED
    remote_id: str | None = None
    remote_link: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class ScheduleStats(BaseModel):
    total_schedules: int = 0
    active_schedules: int = 0
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    success_rate: int = 0   # percent, rounded


class Page(BaseModel):
    items: list[Any]
    total: int
    page: int
    per_page: int
