"""Runtime settings, read from ENGINE_* environment variables."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "ENGINE_"


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///engine.db"
    sites_file: Path | None = None

    # Auth: "token:user,token:user". Empty means single-user dev mode.
    api_tokens: dict[str, str] = {}
    default_user: str = "default_user"

    dispatcher_interval_seconds: float = Field(60.0, gt=0)
    dispatch_concurrency: int = Field(5, ge=1)
    post_max_retries: int = Field(3, ge=0)
    retry_backoff_seconds: float = Field(60.0, ge=0)
    stale_claim_seconds: float = Field(600.0, gt=0)

    bulk_concurrency: int = Field(5, ge=1)
    bulk_item_delay_seconds: float = Field(0.0, ge=0)
    bulk_max_errors: int = Field(100, ge=1)

    generator_model: str = "claude-sonnet-4-6"

    log_level: str = "INFO"
    log_json: bool = True
    host: str = "127.0.0.1"
    port: int = 8000

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> Settings:
        """Build settings from the environment (after loading ``.env``)."""
        if env is None:
            load_dotenv()
            env = dict(os.environ)

        values: dict = {}
        for name in cls.model_fields:
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None or raw == "":
                continue
            values[name] = parse_tokens(raw) if name == "api_tokens" else raw
        return cls.model_validate(values)


def parse_tokens(raw: str) -> dict[str, str]:
    """Parse ``"tok1:alice, tok2:bob"`` into ``{"tok1": "alice", "tok2": "bob"}``."""
    tokens: dict[str, str] = {}
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        token, sep, user = pair.partition(":")
        if not sep or not token.strip() or not user.strip():
            raise ValueError(f"Malformed API token entry: {pair!r}")
        tokens[token.strip()] = user.strip()
    return tokens
