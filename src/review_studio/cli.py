"""CLI entry point for code review studio."""

import asyncio
import json
import logging
import sys
from datetime import timedelta

import click

from review_studio.config import get_config
from review_studio.core import forks as forks_mod
from review_studio.core import operations as ops_mod
from review_studio.core.handlers import OperationHandlers
from review_studio.core.payloads import parse_payload
from review_studio.core.queue import QueueProcessor, RateLimiter
from review_studio.core.recreate import PRRecreator, RecreationError, RecreationRequest
from review_studio.core.simulations import DuplicateSimulationError, queue_pr_simulation
from review_studio.db.engine import get_db


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@click.group()
def main():
    """crs - Code Review Studio CLI"""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Recreate Command ─────────────────────────────────────────────────────────


@main.command("recreate")
@click.argument("repo_url")
@click.option("--commit", "commit_hash", default=None, help="Commit to recreate (default: tip of main/master)")
@click.option("--parent", "parent_commit_hash", default=None, help="Parent commit to branch from")
@click.option("--auto", is_flag=True, help="REPO_URL is upstream; fork it first")
@click.option("--fork-owner", default=None, help="Organization to fork into (auto mode)")
@click.option("--json-output", "--json", is_flag=True, help="Output the result as JSON")
def recreate_command(repo_url, commit_hash, parent_commit_hash, auto, fork_owner, json_output):
    """Recreate a commit as a pull request in a fork."""
    config = get_config()
    request = RecreationRequest(
        repo_url=repo_url,
        commit_hash=commit_hash,
        parent_commit_hash=parent_commit_hash,
        auto=auto,
        fork_owner=fork_owner,
    )
    recreator = PRRecreator.from_config(config)

    def on_progress(event):
        if not json_output:
            click.echo(f"  [{event.step}] {event.message}")

    async def run():
        try:
            return await recreator.recreate(request, on_progress)
        finally:
            if recreator.github:
                await recreator.github.close()

    try:
        result = asyncio.run(run())
    except RecreationError as e:
        click.echo(f"Error ({e.status_code}): {e.message}", err=True)
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return
    status = "Existing PR" if result.already_existed else "Created PR"
    click.echo(f"{status}: {result.pr_url}")
    click.echo(f"  Branch: {result.branch_name}")
    click.echo(f"  Fork: {result.fork_url}")
    if result.is_merge_commit:
        click.echo("  Merge commit, cherry-picked against its first parent")


# ── Queue Commands ───────────────────────────────────────────────────────────


@main.group("queue")
def queue_group():
    """Manage the GitHub operation queue."""
    pass


@queue_group.command("add")
@click.argument("pr_url")
@click.option("--target-org", default=None, help="Organization to fork into")
@click.option("--created-by", default=None, help="Who queued the simulation")
def queue_add(pr_url, target_org, created_by):
    """Queue a PR simulation."""
    config = get_config()
    with _get_db() as db:
        try:
            queued = queue_pr_simulation(db, pr_url, target_org or config.target_org, created_by)
        except (RecreationError, DuplicateSimulationError) as e:
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)
        click.echo(f"Queued operation {queued.queue_id} (position {queued.queue_position})")


@queue_group.command("enqueue")
@click.argument("operation_type")
@click.argument("payload")
@click.option("--created-by", default=None, help="Who queued the operation")
def queue_enqueue(operation_type, payload, created_by):
    """Queue an operation. PAYLOAD is a JSON object."""
    try:
        typed = parse_payload(operation_type, json.loads(payload))
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    with _get_db() as db:
        op_id = ops_mod.enqueue_operation(db, typed, created_by)
        click.echo(f"Queued operation {op_id} ({operation_type})")


@queue_group.command("process")
@click.option("--all", "drain", is_flag=True, help="Keep processing until the queue is empty")
def queue_process(drain):
    """Process the next queued operation."""
    config = get_config()
    with _get_db() as db:
        handlers = OperationHandlers(db, config)
        rate_limiter = RateLimiter(min_delay=config.min_operation_delay)
        # Each run is a new process, so the delay starts from the last finished operation.
        rate_limiter.seed(ops_mod.get_last_finished_at(db))
        processor = QueueProcessor(
            db,
            handlers,
            rate_limiter=rate_limiter,
            stuck_timeout=timedelta(minutes=config.stuck_timeout_minutes),
        )
        asyncio.run(_process(processor, handlers, drain))


@queue_group.command("status")
def queue_status():
    """Show queue depth per status."""
    with _get_db() as db:
        status = ops_mod.get_queue_status(db)
        for key in ("queued", "processing", "completed", "failed", "total"):
            click.echo(f"  {key}: {status[key]}")


@queue_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--limit", default=20, type=int, help="Maximum operations to show")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def queue_list(status, limit, json_output):
    """List operations, newest first."""
    with _get_db() as db:
        operations = ops_mod.list_operations(db, status=status, limit=limit)

        if json_output:
            click.echo(json.dumps([ops_mod.operation_dict(op) for op in operations], indent=2))
            return

        if not operations:
            click.echo("No operations found.")
            return

        status_icons = {
            "queued": "○",
            "processing": "●",
            "completed": "✓",
            "failed": "✗",
        }
        for op in operations:
            icon = status_icons.get(op.status, "?")
            error = f" [{op.error}]" if op.error else ""
            click.echo(f"  {icon} #{op.id} {op.operation_type} ({op.status}){error}")


@queue_group.command("cancel")
@click.argument("operation_id", type=int)
def queue_cancel(operation_id):
    """Cancel an operation that has not started yet."""
    with _get_db() as db:
        if not ops_mod.cancel_operation(db, operation_id):
            click.echo(
                f"Operation {operation_id} not found or cannot be cancelled (already processing)",
                err=True,
            )
            sys.exit(1)
        click.echo(f"Cancelled operation {operation_id}")


async def _process(processor, handlers, drain):
    try:
        while True:
            result = await processor.process_next()
            if result.reason == "rate_limited" and drain:
                click.echo(f"Waiting {result.wait_seconds}s before the next operation...")
                await asyncio.sleep(result.wait_seconds)
                continue
            _echo_process_result(result)
            if not (drain and result.processed):
                return
    finally:
        if handlers.github:
            await handlers.github.close()


def _echo_process_result(result):
    if not result.processed:
        click.echo(result.message)
        return
    op = result.operation
    if result.error is not None:
        click.echo(f"Operation {op.id} ({op.operation_type}) failed: {result.error}")
    else:
        click.echo(f"Operation {op.id} ({op.operation_type}) completed")
        click.echo(json.dumps(result.result, indent=2))


# ── Fork Commands ────────────────────────────────────────────────────────────


@main.command("forks")
def forks_command():
    """List forks and the review PRs recorded against them."""
    with _get_db() as db:
        forks = forks_mod.list_forks(db)
        if not forks:
            click.echo("No forks recorded.")
            return
        for fork in forks:
            upstream = f" (from {fork.upstream_owner})" if fork.upstream_owner else ""
            click.echo(f"{fork.repo_owner}/{fork.repo_name}{upstream}")
            for pr in forks_mod.list_prs(db, fork.id):
                label = f"#{pr.pr_number}" if pr.pr_number > 0 else "queued"
                click.echo(f"  [{pr.state}] {label} {pr.pr_title or ''}  {pr.forked_pr_url}")


# ── Server Command ───────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the HTTP API."""
    from review_studio.web.app import run_server

    click.echo(f"Starting API at http://{host}:{port}")
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from review_studio.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
