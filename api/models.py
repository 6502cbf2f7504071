"""API request and response models."""

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, Field, model_validator

from scheduler.models import (
    BulkOperation,
    BulkStatus,
    PostContent,
    PublishStatus,
    ScheduleKind,
)


# ── Bulk operations ───────────────────────────────────────────────────────────

def _id_text(value: Any) -> Any:
    # WordPress post IDs are integers on the wire
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


TargetId = Annotated[str, BeforeValidator(_id_text)]


class BulkRequest(BaseModel):
    site_id: str
    target_ids: list[TargetId] = Field(min_length=1)
    target_type: str = "post"
    fields: dict[str, Any] | None = None


class BulkSubmitResponse(BaseModel):
    operation_id: str
    status: BulkStatus


class BulkOperationResponse(BaseModel):
    id: str
    site_id: str
    target_type: str
    action: str
    status: str
    total: int
    processed: int
    succeeded: int
    failed: int
    errors: list[dict]
    errors_truncated: bool
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def of(cls, op: BulkOperation) -> "BulkOperationResponse":
        data = op.model_dump(mode="json")
        return cls.model_validate(data)


# ── Scheduled posts ───────────────────────────────────────────────────────────

class SchedulePostRequest(BaseModel):
    site_id: str
    payload: PostContent
    scheduled_for: datetime
    timezone: str = "UTC"
    max_retries: int | None = Field(None, ge=0, le=10)


class UpdatePostRequest(BaseModel):
    payload: PostContent | None = None
    scheduled_for: datetime | None = None
    timezone: str | None = None


class RescheduleRequest(BaseModel):
    scheduled_for: datetime
    timezone: str | None = None


# ── Automation schedules ──────────────────────────────────────────────────────

class CreateScheduleRequest(BaseModel):
    site_id: str
    name: str = Field(min_length=1)
    description: str | None = None
    source_ref: str | None = None
    kind: ScheduleKind
    cron_expression: str | None = None
    run_at: datetime | None = None
    timezone: str = "UTC"
    is_active: bool = True
    auto_publish: bool = False
    publish_status: PublishStatus = PublishStatus.DRAFT
    max_articles: int = Field(20, ge=1, le=50)

    @model_validator(mode="after")
    def _kind_fields(self):
        if self.kind == ScheduleKind.CUSTOM and not self.cron_expression:
            raise ValueError("cron_expression is required for custom schedules")
        if self.kind == ScheduleKind.ONCE and self.run_at is None:
            raise ValueError("run_at is required for once schedules")
        return self


class UpdateScheduleRequest(BaseModel):
    name: str | None = Field(None, min_length=1)
    description: str | None = None
    source_ref: str | None = None
    kind: ScheduleKind | None = None
    cron_expression: str | None = None
    run_at: datetime | None = None
    timezone: str | None = None
    is_active: bool | None = None
    auto_publish: bool | None = None
    publish_status: PublishStatus | None = None
    max_articles: int | None = Field(None, ge=1, le=50)
