"""Relational schema for every engine record."""

from datetime import datetime, timezone

import sqlalchemy as sa


class UTCDateTime(sa.TypeDecorator):
    """Store naive UTC, hand back timezone-aware UTC.

    SQLite has no timezone-aware column type; normalising on the way in keeps
    ``scheduled_for <= now`` comparisons correct whatever offset callers use.
    """

    impl = sa.DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


metadata = sa.MetaData()

bulk_operations = sa.Table(
    "bulk_operations",
    metadata,
    sa.Column("id",               sa.String,    primary_key=True),
    sa.Column("owner",            sa.String,    nullable=False, index=True),
    sa.Column("site_id",          sa.String,    nullable=False),
    sa.Column("target_type",      sa.String,    nullable=False),
    sa.Column("action",           sa.String,    nullable=False),
    sa.Column("target_ids",       sa.JSON,      nullable=False),
    sa.Column("fields",           sa.JSON,      nullable=True),
    sa.Column("status",           sa.String,    nullable=False, index=True),
    sa.Column("total",            sa.Integer,   nullable=False, default=0),
    sa.Column("processed",        sa.Integer,   nullable=False, default=0),
    sa.Column("succeeded",        sa.Integer,   nullable=False, default=0),
    sa.Column("failed",           sa.Integer,   nullable=False, default=0),
    sa.Column("errors",           sa.JSON,      nullable=False),
    sa.Column("errors_truncated", sa.Boolean,   nullable=False, default=False),
    sa.Column("processed_ids",    sa.JSON,      nullable=False),
    sa.Column("created_at",       UTCDateTime,  nullable=False),
    sa.Column("started_at",       UTCDateTime,  nullable=True),
    sa.Column("finished_at",      UTCDateTime,  nullable=True),
    sa.Column("updated_at",       UTCDateTime,  nullable=False),
)

scheduled_posts = sa.Table(
    "scheduled_posts",
    metadata,
    sa.Column("id",            sa.String,    primary_key=True),
    sa.Column("owner",         sa.String,    nullable=False, index=True),
    sa.Column("site_id",       sa.String,    nullable=False),
    sa.Column("payload",       sa.JSON,      nullable=False),
    sa.Column("scheduled_for", UTCDateTime,  nullable=False),
    sa.Column("timezone",      sa.String,    nullable=False),
    sa.Column("status",        sa.String,    nullable=False),
    sa.Column("retry_count",   sa.Integer,   nullable=False, default=0),
    sa.Column("max_retries",   sa.Integer,   nullable=False),
    sa.Column("last_error",    sa.Text,      nullable=True),
    sa.Column("remote_id",     sa.String,    nullable=True),
    sa.Column("remote_link",   sa.String,    nullable=True),
    sa.Column("claimed_at",    UTCDateTime,  nullable=True),
    sa.Column("published_at",  UTCDateTime,  nullable=True),
    sa.Column("created_at",    UTCDateTime,  nullable=False),
    sa.Column("updated_at",    UTCDateTime,  nullable=False),
    sa.Index("ix_scheduled_posts_due", "status", "scheduled_for"),
)

automation_schedules = sa.Table(
    "automation_schedules",
    metadata,
    sa.Column("id",              sa.String,    primary_key=True),
    sa.Column("owner",           sa.String,    nullable=False, index=True),
    sa.Column("site_id",         sa.String,    nullable=False),
    sa.Column("source_ref",      sa.String,    nullable=True),
    sa.Column("name",            sa.String,    nullable=False),
    sa.Column("description",     sa.Text,      nullable=True),
    sa.Column("kind",            sa.String,    nullable=False),
    sa.Column("cron_expression", sa.String,    nullable=True),
    sa.Column("run_at",          UTCDateTime,  nullable=True),
    sa.Column("timezone",        sa.String,    nullable=False),
    sa.Column("is_active",       sa.Boolean,   nullable=False, index=True),
    sa.Column("auto_publish",    sa.Boolean,   nullable=False),
    sa.Column("publish_status",  sa.String,    nullable=False),
    sa.Column("max_articles",    sa.Integer,   nullable=False),
    sa.Column("next_run_at",     UTCDateTime,  nullable=True),
    sa.Column("last_run_at",     UTCDateTime,  nullable=True),
    sa.Column("total_runs",      sa.Integer,   nullable=False, default=0),
    sa.Column("successful_runs", sa.Integer,   nullable=False, default=0),
    sa.Column("failed_runs",     sa.Integer,   nullable=False, default=0),
    sa.Column("created_at",      UTCDateTime,  nullable=False),
    sa.Column("updated_at",      UTCDateTime,  nullable=False),
)

automation_executions = sa.Table(
    "automation_executions",
    metadata,
    sa.Column("id",                 sa.String,    primary_key=True),
    sa.Column("schedule_id",        sa.String,    nullable=False, index=True),
    sa.Column("trigger",            sa.String,    nullable=False),
    sa.Column("status",             sa.String,    nullable=False),
    sa.Column("started_at",         UTCDateTime,  nullable=False),
    sa.Column("finished_at",        UTCDateTime,  nullable=True),
    sa.Column("articles_generated", sa.Integer,   nullable=False, default=0),
    sa.Column("articles_published", sa.Integer,   nullable=False, default=0),
    sa.Column("error",              sa.Text,      nullable=True),
)

generated_articles = sa.Table(
    "generated_articles",
    metadata,
    sa.Column("id",           sa.String,    primary_key=True),
    sa.Column("schedule_id",  sa.String,    nullable=False, index=True),
    sa.Column("execution_id", sa.String,    nullable=False),
    sa.Column("source_url",   sa.String,    nullable=True),
    sa.Column("title",        sa.Text,      nullable=False),
    sa.Column("content",      sa.Text,      nullable=False),
    sa.Column("excerpt",      sa.Text,      nullable=True),
    sa.Column("status",       sa.String,    nullable=False),
    sa.Column("remote_id",    sa.String,    nullable=True),
    sa.Column("remote_link",  sa.String,    nullable=True),
    sa.Column("error",        sa.Text,      nullable=True),
    sa.Column("created_at",   UTCDateTime,  nullable=False),
)


def row_values(model, table: sa.Table) -> dict:
    """Dump a pydantic record into a column → value dict for *table*."""
    data = model.model_dump()
    return {
        col.name: getattr(data[col.name], "value", data[col.name])
        for col in table.columns
        if col.name in data
    }
