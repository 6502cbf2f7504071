"""Tests for the engine CLI with the HTTP client patched out."""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest
import yaml
from click.testing import CliRunner

from cli.main import cli


@pytest.fixture
def runner():
    return CliRunner()


def _resp(status: int, data=None, text: str = ""):
    r = MagicMock(spec=httpx.Response)
    r.status_code = status
    r.json = MagicMock(return_value=data if data is not None else {})
    r.text = text
    r.is_error = status >= 400
    return r


def _mock_client():
    mc = MagicMock()
    mc.__enter__ = MagicMock(return_value=mc)
    mc.__exit__ = MagicMock(return_value=False)
    return mc


def _bulk_op(status: str = "completed", **extra) -> dict:
    op = {
        "id": "op-1", "action": "delete", "status": status, "total": 3, "processed": 3,
        "succeeded": 3, "failed": 0, "errors": [], "errors_truncated": False,
    }
    op.update(extra)
    return op


# ── Help ──────────────────────────────────────────────────────────────────────


def test_cli_help(runner):
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    for group in ("bulk", "posts", "schedules", "serve"):
        assert group in result.output


def test_bulk_submit_help(runner):
    result = runner.invoke(cli, ["bulk", "submit", "--help"])
    assert result.exit_code == 0
    assert "--wait" in result.output
    assert "--fields" in result.output


# ── engine bulk ───────────────────────────────────────────────────────────────


def test_bulk_submit(runner):
    with patch("cli.main._client") as factory:
        mc = _mock_client()
        mc.post.return_value = _resp(202, {"operation_id": "op-1", "status": "queued"})
        factory.return_value = mc

        result = runner.invoke(cli, ["bulk", "submit", "delete", "blog", "1", "2", "3"])

    assert result.exit_code == 0, result.output
    assert "Submitted  op-1  [queued]" in result.output
    path = mc.post.call_args.args[0]
    assert path == "/bulk-operations/delete"
    assert mc.post.call_args.kwargs["json"] == {"site_id": "blog", "target_ids": ["1", "2", "3"]}


def test_bulk_submit_with_fields_file(runner, tmp_path):
    fields = tmp_path / "fields.yaml"
    fields.write_text(yaml.dump({"categories": [3]}))
    with patch("cli.main._client") as factory:
        mc = _mock_client()
        mc.post.return_value = _resp(202, {"operation_id": "op-2", "status": "queued"})
        factory.return_value = mc

        result = runner.invoke(
            cli, ["bulk", "submit", "update-metadata", "blog", "9", "--fields", str(fields)],
        )

    assert result.exit_code == 0, result.output
    assert mc.post.call_args.kwargs["json"]["fields"] == {"categories": [3]}


def test_bulk_submit_wait_polls_until_done(runner):
    with patch("cli.main._client") as factory, patch("cli.main.time.sleep"):
        mc = _mock_client()
        mc.post.return_value = _resp(202, {"operation_id": "op-1", "status": "queued"})
        mc.get.side_effect = [
            _resp(200, _bulk_op("running", processed=1)),
            _resp(200, _bulk_op("completed_with_errors", succeeded=2, failed=1,
                                errors=[{"target_id": "3", "error": "HTTP 403"}])),
        ]
        factory.return_value = mc

        result = runner.invoke(cli, ["bulk", "submit", "delete", "blog", "1", "2", "3", "--wait"])

    assert result.exit_code == 0, result.output
    assert "completed_with_errors" in result.output
    assert "HTTP 403" in result.output
    assert mc.get.call_count == 2


def test_bulk_submit_wait_exits_nonzero_on_failure(runner):
    with patch("cli.main._client") as factory, patch("cli.main.time.sleep"):
        mc = _mock_client()
        mc.post.return_value = _resp(202, {"operation_id": "op-1", "status": "queued"})
        mc.get.return_value = _resp(200, _bulk_op("failed", processed=0, succeeded=0))
        factory.return_value = mc

        result = runner.invoke(cli, ["bulk", "submit", "delete", "bare", "1", "--wait"])

    assert result.exit_code == 1


def test_bulk_status_json(runner):
    with patch("cli.main._client") as factory:
        mc = _mock_client()
        mc.get.return_value = _resp(200, _bulk_op())
        factory.return_value = mc

        result = runner.invoke(cli, ["--json", "bulk", "status", "op-1"])

    assert result.exit_code == 0
    assert json.loads(result.output)["status"] == "completed"


def test_bulk_status_not_found(runner):
    with patch("cli.main._client") as factory:
        mc = _mock_client()
        mc.get.return_value = _resp(404, {"detail": "Bulk operation 'nope' not found"})
        factory.return_value = mc

        result = runner.invoke(cli, ["bulk", "status", "nope"])

    assert result.exit_code == 1


def test_bulk_list_empty(runner):
    with patch("cli.main._client") as factory:
        mc = _mock_client()
        mc.get.return_value = _resp(200, {"items": [], "total": 0, "page": 1, "per_page": 20})
        factory.return_value = mc

        result = runner.invoke(cli, ["bulk", "list"])

    assert result.exit_code == 0
    assert "No bulk operations found." in result.output


# ── engine posts ──────────────────────────────────────────────────────────────


def test_posts_schedule_from_yaml(runner, tmp_path):
    post_file = tmp_path / "post.yaml"
    post_file.write_text(yaml.dump({
        "site_id": "blog",
        "scheduled_for": "2030-01-01T09:00:00",
        "timezone": "Europe/Berlin",
        "payload": {"title": "Hello", "content": "<p>World</p>"},
    }))
    with patch("cli.main._client") as factory:
        mc = _mock_client()
        mc.post.return_value = _resp(201, {
            "id": "p-1", "scheduled_for": "2030-01-01T08:00:00Z", "status": "pending",
        })
        factory.return_value = mc

        result = runner.invoke(cli, ["posts", "schedule", str(post_file)])

    assert result.exit_code == 0, result.output
    assert "Scheduled  p-1" in result.output
    assert mc.post.call_args.kwargs["json"]["timezone"] == "Europe/Berlin"


def test_posts_cancel_conflict(runner):
    with patch("cli.main._client") as factory:
        mc = _mock_client()
        mc.post.return_value = _resp(409, {"detail": "Cannot cancel 'p-1' while it is published"})
        factory.return_value = mc

        result = runner.invoke(cli, ["posts", "cancel", "p-1"])

    assert result.exit_code == 1


def test_posts_reschedule_with_timezone(runner):
    with patch("cli.main._client") as factory:
        mc = _mock_client()
        mc.post.return_value = _resp(200, {"scheduled_for": "2030-06-01T07:00:00Z"})
        factory.return_value = mc

        result = runner.invoke(cli, ["posts", "reschedule", "p-1", "2030-06-01T09:00:00", "--tz", "Europe/Berlin"])

    assert result.exit_code == 0, result.output
    assert mc.post.call_args.kwargs["json"] == {
        "scheduled_for": "2030-06-01T09:00:00", "timezone": "Europe/Berlin",
    }


def test_posts_delete(runner):
    with patch("cli.main._client") as factory:
        mc = _mock_client()
        mc.delete.return_value = _resp(204)
        factory.return_value = mc

        result = runner.invoke(cli, ["posts", "delete", "p-1"])

    assert result.exit_code == 0
    assert "Deleted  p-1" in result.output


# ── engine schedules ──────────────────────────────────────────────────────────


def test_schedules_create(runner, tmp_path):
    sched_file = tmp_path / "sched.yaml"
    sched_file.write_text(yaml.dump({"site_id": "blog", "name": "digest", "kind": "daily"}))
    with patch("cli.main._client") as factory:
        mc = _mock_client()
        mc.post.return_value = _resp(201, {
            "id": "s-1", "cron_expression": "0 8 * * *", "next_run_at": "2030-01-01T08:00:00Z",
        })
        factory.return_value = mc

        result = runner.invoke(cli, ["schedules", "create", str(sched_file)])

    assert result.exit_code == 0, result.output
    assert "Created  s-1  [0 8 * * *]" in result.output


def test_schedules_list_paused_filter(runner):
    with patch("cli.main._client") as factory:
        mc = _mock_client()
        mc.get.return_value = _resp(200, {"items": [], "total": 0, "page": 1, "per_page": 20})
        factory.return_value = mc

        result = runner.invoke(cli, ["schedules", "list", "--paused"])

    assert result.exit_code == 0
    assert mc.get.call_args.kwargs["params"]["is_active"] == "false"


def test_schedules_run_now(runner):
    with patch("cli.main._client") as factory:
        mc = _mock_client()
        mc.post.return_value = _resp(202, {"id": "e-1", "status": "running"})
        factory.return_value = mc

        result = runner.invoke(cli, ["schedules", "run-now", "s-1"])

    assert result.exit_code == 0
    assert "Started  e-1  [running]" in result.output


def test_schedules_stats(runner):
    with patch("cli.main._client") as factory:
        mc = _mock_client()
        mc.get.return_value = _resp(200, {
            "total_schedules": 4, "active_schedules": 3, "total_runs": 10,
            "successful_runs": 9, "failed_runs": 1, "success_rate": 90,
        })
        factory.return_value = mc

        result = runner.invoke(cli, ["schedules", "stats"])

    assert result.exit_code == 0
    assert "3/4 active, 10 runs, 90% successful" in result.output


def test_token_is_passed_to_client(runner):
    with patch("cli.main._client") as factory:
        mc = _mock_client()
        mc.post.return_value = _resp(200, {})
        factory.return_value = mc

        runner.invoke(cli, ["--token", "s3cret", "schedules", "pause", "s-1"])

    factory.assert_called_with("http://localhost:8000", "s3cret")
