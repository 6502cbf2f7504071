"""Publish Engine CLI: interact with a running Engine API server."""

from __future__ import annotations

import json
import sys
import time
from typing import Any

import click
import httpx
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

_BULK_TERMINAL = {"completed", "completed_with_errors", "failed"}

_STATUS_COLOR: dict[str, str] = {
    "completed": "green",
    "published": "green",
    "success": "green",
    "active": "green",
    "completed_with_errors": "yellow",
    "running": "yellow",
    "publishing": "yellow",
    "paused": "yellow",
    "queued": "blue",
    "pending": "blue",
    "failed": "red",
    "cancelled": "dim",
}


# ── Internal helpers ──────────────────────────────────────────────────────────


def _color(status: str) -> str:
    return _STATUS_COLOR.get(status, "white")


def _client(url: str, token: str | None = None) -> httpx.Client:
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return httpx.Client(base_url=url.rstrip("/"), timeout=30, headers=headers)


def _load_file(path: str) -> dict:
    with open(path) as f:
        return yaml.safe_load(f) if path.endswith((".yaml", ".yml")) else json.load(f)


def _die(msg: str, code: int = 1) -> None:
    err_console.print(f"[red]Error:[/] {msg}")
    sys.exit(code)


def _check(resp: httpx.Response) -> None:
    if resp.status_code in (404, 409, 422):
        detail = resp.json().get("detail", "Not found")
        _die(detail if isinstance(detail, str) else json.dumps(detail))
    if resp.is_error:
        _die(f"HTTP {resp.status_code}: {resp.text}")


def _call(obj: dict, method: str, path: str, **kwargs: Any) -> Any:
    with _client(obj["url"], obj["token"]) as c:
        resp = getattr(c, method)(path, **kwargs)
    _check(resp)
    return resp.json() if resp.status_code != 204 else None


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _table(columns: list[str], rows: list[list[str]]) -> None:
    table = Table(box=box.SIMPLE)
    for i, name in enumerate(columns):
        table.add_column(name, style="cyan" if i == 0 else None)
    for row in rows:
        table.add_row(*row)
    console.print(table)


def _status_cell(status: str) -> str:
    return f"[{_color(status)}]{status}[/]"


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.option(
    "--url", "-u",
    default="http://localhost:8000",
    envvar="ENGINE_URL",
    show_default=True,
    help="Engine API base URL.",
)
@click.option("--token", "-t", envvar="ENGINE_TOKEN", help="Bearer token for the API.")
@click.option("--json", "json_output", is_flag=True, help="Output raw JSON.")
@click.pass_context
def cli(ctx: click.Context, url: str, token: str | None, json_output: bool) -> None:
    """Publish Engine: bulk operations, scheduled posts and automation."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["token"] = token
    ctx.obj["json_output"] = json_output


# ── engine serve ──────────────────────────────────────────────────────────────


@cli.command("serve")
@click.option("--host", default=None, help="Bind address (default: ENGINE_HOST).")
@click.option("--port", default=None, type=int, help="Port (default: ENGINE_PORT).")
def serve(host: str | None, port: int | None) -> None:
    """Run the API server and its timers in this process."""
    from main import run_server

    run_server(host=host, port=port)


# ── engine bulk ───────────────────────────────────────────────────────────────


@cli.group("bulk")
def bulk() -> None:
    """Apply one action to many posts."""


@bulk.command("submit")
@click.argument("action", type=click.Choice(["publish", "unpublish", "delete", "update-metadata"]))
@click.argument("site_id")
@click.argument("target_ids", nargs=-1, required=True)
@click.option("--fields", "fields_file", type=click.Path(exists=True),
              help="YAML/JSON file with the fields for update-metadata.")
@click.option("--wait", is_flag=True, help="Poll until the operation finishes.")
@click.option("--interval", default=1.0, show_default=True, metavar="SECS",
              help="Poll interval when --wait is set.")
@click.pass_obj
def bulk_submit(
    obj: dict,
    action: str,
    site_id: str,
    target_ids: tuple[str, ...],
    fields_file: str | None,
    wait: bool,
    interval: float,
) -> None:
    """Queue ACTION over TARGET_IDS on SITE_ID."""
    body: dict[str, Any] = {"site_id": site_id, "target_ids": list(target_ids)}
    if fields_file:
        body["fields"] = _load_file(fields_file)
    data = _call(obj, "post", f"/bulk-operations/{action}", json=body)

    if not wait:
        if obj["json_output"]:
            _echo_json(data)
        else:
            click.echo(f"Submitted  {data['operation_id']}  [{data['status']}]")
        return

    op_id = data["operation_id"]
    while True:
        op = _call(obj, "get", f"/bulk-operations/{op_id}")
        if op["status"] in _BULK_TERMINAL:
            _print_bulk(op, obj["json_output"])
            if op["status"] == "failed":
                sys.exit(1)
            return
        time.sleep(interval)


@bulk.command("status")
@click.argument("operation_id")
@click.pass_obj
def bulk_status(obj: dict, operation_id: str) -> None:
    """Show counters and errors of a bulk operation."""
    _print_bulk(_call(obj, "get", f"/bulk-operations/{operation_id}"), obj["json_output"])


def _print_bulk(op: dict, json_output: bool) -> None:
    if json_output:
        _echo_json(op)
        return
    console.print(
        f"{op['id']}  {op['action']}  {_status_cell(op['status'])}  "
        f"{op['processed']}/{op['total']} processed, "
        f"{op['succeeded']} succeeded, {op['failed']} failed"
    )
    if op.get("errors"):
        _table(
            ["Target", "Error"],
            [[str(e.get("target_id") or "-"), f"[red]{e['error'][:80]}[/]"] for e in op["errors"]],
        )
        if op.get("errors_truncated"):
            console.print("[dim]… more errors not shown[/]")


@bulk.command("list")
@click.option("--site", "site_id", help="Filter by site.")
@click.option("--status", help="Filter by status.")
@click.option("--page", default=1, show_default=True)
@click.pass_obj
def bulk_list(obj: dict, site_id: str | None, status: str | None, page: int) -> None:
    """List bulk operations, most recent first."""
    params = {k: v for k, v in {"site_id": site_id, "status": status, "page": page}.items() if v}
    data = _call(obj, "get", "/bulk-operations", params=params)
    if obj["json_output"]:
        _echo_json(data)
        return
    if not data["items"]:
        click.echo("No bulk operations found.")
        return
    _table(
        ["Operation ID", "Action", "Status", "Progress", "Failed"],
        [
            [op["id"], op["action"], _status_cell(op["status"]),
             f"{op['processed']}/{op['total']}", str(op["failed"])]
            for op in data["items"]
        ],
    )


@bulk.command("stream")
@click.argument("operation_id")
@click.pass_obj
def bulk_stream(obj: dict, operation_id: str) -> None:
    """Stream live progress of a bulk operation (SSE)."""
    url = obj["url"].rstrip("/") + f"/bulk-operations/{operation_id}/stream"
    headers = {"Authorization": f"Bearer {obj['token']}"} if obj["token"] else {}
    try:
        with httpx.Client(timeout=None, headers=headers) as c:
            with c.stream("GET", url) as resp:
                if resp.status_code == 404:
                    _die(f"Bulk operation '{operation_id}' not found")
                resp.raise_for_status()
                for line in resp.iter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        event = json.loads(line[6:])
                    except json.JSONDecodeError:
                        continue
                    if obj["json_output"]:
                        click.echo(json.dumps(event))
                    else:
                        s = event.get("status", "?")
                        console.print(
                            f"[{_color(s)}][{s}][/] {event.get('processed', 0)}/{event.get('total', 0)}"
                            f"  ok={event.get('succeeded', 0)} failed={event.get('failed', 0)}"
                        )
                    if event.get("status") in _BULK_TERMINAL:
                        break
    except httpx.ConnectError:
        _die(f"Cannot connect to {obj['url']}")


# ── engine posts ──────────────────────────────────────────────────────────────


@cli.group("posts")
def posts() -> None:
    """Manage scheduled posts."""


@posts.command("schedule")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def posts_schedule(obj: dict, file: str) -> None:
    """Schedule a post from a YAML or JSON file.

    \b
    File format (YAML example):
      site_id: blog
      scheduled_for: "2030-01-01T09:00:00"
      timezone: Europe/Berlin
      payload:
        title: Hello
        content: "<p>World</p>"
        status: draft        # optional, default publish
    """
    data = _call(obj, "post", "/scheduled-posts", json=_load_file(file))
    if obj["json_output"]:
        _echo_json(data)
        return
    click.echo(f"Scheduled  {data['id']}  for {data['scheduled_for']}  [{data['status']}]")


@posts.command("list")
@click.option("--site", "site_id", help="Filter by site.")
@click.option("--status", help="Filter by status.")
@click.option("--page", default=1, show_default=True)
@click.pass_obj
def posts_list(obj: dict, site_id: str | None, status: str | None, page: int) -> None:
    """List scheduled posts, soonest first."""
    params = {k: v for k, v in {"site_id": site_id, "status": status, "page": page}.items() if v}
    data = _call(obj, "get", "/scheduled-posts", params=params)
    if obj["json_output"]:
        _echo_json(data)
        return
    if not data["items"]:
        click.echo("No scheduled posts found.")
        return
    _table(
        ["Post ID", "Title", "Scheduled For (UTC)", "Status", "Retries"],
        [
            [p["id"], p["payload"]["title"][:40], p["scheduled_for"],
             _status_cell(p["status"]), str(p["retry_count"])]
            for p in data["items"]
        ],
    )


@posts.command("cancel")
@click.argument("post_id")
@click.pass_obj
def posts_cancel(obj: dict, post_id: str) -> None:
    """Cancel a pending post."""
    _call(obj, "post", f"/scheduled-posts/{post_id}/cancel")
    click.echo(f"Cancelled  {post_id}")


@posts.command("publish-now")
@click.argument("post_id")
@click.pass_obj
def posts_publish_now(obj: dict, post_id: str) -> None:
    """Publish a pending post immediately."""
    data = _call(obj, "post", f"/scheduled-posts/{post_id}/publish-now")
    if obj["json_output"]:
        _echo_json(data)
        return
    link = f"  {data['remote_link']}" if data.get("remote_link") else ""
    console.print(f"{post_id}  {_status_cell(data['status'])}{link}")


@posts.command("reschedule")
@click.argument("post_id")
@click.argument("when")
@click.option("--tz", "timezone", help="Timezone WHEN is expressed in.")
@click.pass_obj
def posts_reschedule(obj: dict, post_id: str, when: str, timezone: str | None) -> None:
    """Move a pending post to WHEN (ISO 8601)."""
    body: dict[str, Any] = {"scheduled_for": when}
    if timezone:
        body["timezone"] = timezone
    data = _call(obj, "post", f"/scheduled-posts/{post_id}/reschedule", json=body)
    click.echo(f"Rescheduled  {post_id}  for {data['scheduled_for']}")


@posts.command("delete")
@click.argument("post_id")
@click.pass_obj
def posts_delete(obj: dict, post_id: str) -> None:
    """Delete a scheduled post."""
    _call(obj, "delete", f"/scheduled-posts/{post_id}")
    click.echo(f"Deleted  {post_id}")


# ── engine schedules ──────────────────────────────────────────────────────────


@cli.group("schedules")
def schedules() -> None:
    """Manage automation schedules."""


@schedules.command("list")
@click.option("--site", "site_id", help="Filter by site.")
@click.option("--active/--paused", "is_active", default=None, help="Filter by state.")
@click.option("--page", default=1, show_default=True)
@click.pass_obj
def schedules_list(obj: dict, site_id: str | None, is_active: bool | None, page: int) -> None:
    """List automation schedules."""
    params: dict[str, Any] = {"page": page}
    if site_id:
        params["site_id"] = site_id
    if is_active is not None:
        params["is_active"] = str(is_active).lower()
    data = _call(obj, "get", "/automation-schedules", params=params)
    if obj["json_output"]:
        _echo_json(data)
        return
    if not data["items"]:
        click.echo("No schedules found.")
        return
    _table(
        ["Schedule ID", "Name", "Cron", "State", "Next Run", "Runs"],
        [
            [
                s["id"],
                s["name"],
                s.get("cron_expression") or f"once @ {s.get('run_at')}",
                _status_cell("active" if s["is_active"] else "paused"),
                s.get("next_run_at") or "-",
                f"{s['successful_runs']}/{s['total_runs']}",
            ]
            for s in data["items"]
        ],
    )


@schedules.command("create")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def schedules_create(obj: dict, file: str) -> None:
    """Create a schedule from a YAML or JSON file.

    \b
    File format (YAML example):
      site_id: blog
      name: morning-digest
      kind: daily
      timezone: Europe/Berlin
      source_ref: https://example.com/feed.xml
      auto_publish: true
      publish_status: draft
      max_articles: 5
    """
    data = _call(obj, "post", "/automation-schedules", json=_load_file(file))
    if obj["json_output"]:
        _echo_json(data)
        return
    click.echo(f"Created  {data['id']}  [{data['cron_expression'] or 'once'}]  next: {data.get('next_run_at') or '-'}")


@schedules.command("pause")
@click.argument("schedule_id")
@click.pass_obj
def schedules_pause(obj: dict, schedule_id: str) -> None:
    """Pause a schedule."""
    _call(obj, "post", f"/automation-schedules/{schedule_id}/pause")
    click.echo(f"Paused  {schedule_id}")


@schedules.command("resume")
@click.argument("schedule_id")
@click.pass_obj
def schedules_resume(obj: dict, schedule_id: str) -> None:
    """Resume a paused schedule."""
    data = _call(obj, "post", f"/automation-schedules/{schedule_id}/resume")
    click.echo(f"Resumed  {schedule_id}  next: {data.get('next_run_at') or '-'}")


@schedules.command("delete")
@click.argument("schedule_id")
@click.pass_obj
def schedules_delete(obj: dict, schedule_id: str) -> None:
    """Delete a schedule and its history."""
    _call(obj, "delete", f"/automation-schedules/{schedule_id}")
    click.echo(f"Deleted  {schedule_id}")


@schedules.command("run-now")
@click.argument("schedule_id")
@click.pass_obj
def schedules_run_now(obj: dict, schedule_id: str) -> None:
    """Start an execution immediately."""
    data = _call(obj, "post", f"/automation-schedules/{schedule_id}/run-now")
    if obj["json_output"]:
        _echo_json(data)
        return
    click.echo(f"Started  {data['id']}  [{data['status']}]")


@schedules.command("executions")
@click.argument("schedule_id")
@click.option("--page", default=1, show_default=True)
@click.pass_obj
def schedules_executions(obj: dict, schedule_id: str, page: int) -> None:
    """Show the execution history of a schedule."""
    data = _call(obj, "get", f"/automation-schedules/{schedule_id}/executions", params={"page": page})
    if obj["json_output"]:
        _echo_json(data)
        return
    if not data["items"]:
        click.echo("No executions yet.")
        return
    _table(
        ["Execution ID", "Trigger", "Status", "Started", "Generated", "Published", "Error"],
        [
            [
                e["id"], e["trigger"], _status_cell(e["status"]), e["started_at"],
                str(e["articles_generated"]), str(e["articles_published"]),
                f"[red]{(e.get('error') or '')[:50]}[/]" if e.get("error") else "",
            ]
            for e in data["items"]
        ],
    )


@schedules.command("stats")
@click.option("--site", "site_id", help="Restrict to one site.")
@click.pass_obj
def schedules_stats(obj: dict, site_id: str | None) -> None:
    """Aggregate run counters across schedules."""
    data = _call(obj, "get", "/automation-schedules/stats",
                 params={"site_id": site_id} if site_id else {})
    if obj["json_output"]:
        _echo_json(data)
        return
    click.echo(
        f"{data['active_schedules']}/{data['total_schedules']} active, "
        f"{data['total_runs']} runs, {data['success_rate']}% successful"
    )
