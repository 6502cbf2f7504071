"""Tests for JSON log formatting and job labels."""

import asyncio
import json
import logging

from core.logging_config import JsonFormatter, bind_job, current_job, setup_logging


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("engine.test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_line_carries_extras_and_job():
    with bind_job("bulk", "op-1"):
        line = JsonFormatter().format(_record(operation_id="op-1", total=3))
    data = json.loads(line)
    assert data["msg"] == "hello"
    assert data["level"] == "INFO"
    assert data["logger"] == "engine.test"
    assert data["job"] == "bulk:op-1"
    assert data["operation_id"] == "op-1"
    assert data["total"] == 3
    assert data["ts"].endswith("Z")


def test_job_label_defaults_and_resets():
    assert current_job() == "-"
    with bind_job("post", "p-1") as label:
        assert label == "post:p-1"
        assert current_job() == "post:p-1"
    assert current_job() == "-"


async def test_job_label_is_per_task():
    seen = {}

    async def worker(name: str) -> None:
        with bind_job("automation", name):
            await asyncio.sleep(0.01)
            seen[name] = current_job()

    await asyncio.gather(worker("a"), worker("b"))
    assert seen == {"a": "automation:a", "b": "automation:b"}


def test_setup_logging_installs_single_handler():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging("debug", json_output=True)
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("apscheduler").level == logging.WARNING
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)
