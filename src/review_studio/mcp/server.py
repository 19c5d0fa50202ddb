"""MCP server exposing the review studio queue and recreator."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

from mcp.server.fastmcp import Context, FastMCP

from review_studio.config import Config, get_config
from review_studio.core import operations as ops_mod
from review_studio.core.handlers import OperationHandlers
from review_studio.core.queue import QueueProcessor, RateLimiter
from review_studio.core.recreate import PRRecreator, RecreationError, RecreationRequest, error_result
from review_studio.core.simulations import DuplicateSimulationError, queue_pr_simulation
from review_studio.db.engine import init_db


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    processor: QueueProcessor
    recreator: PRRecreator


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the DB and build one queue processor for the server's lifetime."""
    config = get_config()
    db = init_db(config.db_path)
    handlers = OperationHandlers(db, config)
    rate_limiter = RateLimiter(min_delay=config.min_operation_delay)
    rate_limiter.seed(ops_mod.get_last_finished_at(db))
    processor = QueueProcessor(
        db,
        handlers,
        rate_limiter=rate_limiter,
        stuck_timeout=timedelta(minutes=config.stuck_timeout_minutes),
    )

    try:
        yield AppContext(db=db, config=config, processor=processor, recreator=handlers.recreator)
    finally:
        if handlers.github:
            await handlers.github.close()
        db.close()


mcp = FastMCP("code-review-studio", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Queue Tools ───────────────────────────────────────────────────────────────


@mcp.tool(name="queue_pr_simulation")
def queue_simulation(ctx: Context, pr_url: str, target_org: str | None = None) -> dict:
    """Queue a simulation of an upstream pull request.

    The PR's commit is recreated as a PR in a fork owned by target_org
    (defaults to the configured organization) when the queue is processed.
    """
    app = _ctx(ctx)
    try:
        queued = queue_pr_simulation(app.db, pr_url, target_org or app.config.target_org)
    except (RecreationError, DuplicateSimulationError) as e:
        return {"error": e.message}
    return queued.to_dict()


@mcp.tool()
async def process_queue(ctx: Context) -> dict:
    """Process the next queued operation, subject to the minimum delay between operations."""
    result = await _ctx(ctx).processor.process_next()
    return result.to_dict()


@mcp.tool()
def queue_status(ctx: Context) -> dict:
    """Queue depth per status and whether an operation can be processed now."""
    return _ctx(ctx).processor.status()


@mcp.tool()
def get_operation(ctx: Context, operation_id: int) -> dict:
    """Get one queued operation with its payload, result or error."""
    op = ops_mod.get_operation(_ctx(ctx).db, operation_id)
    if not op:
        return {"error": f"Operation not found: {operation_id}"}
    return ops_mod.operation_dict(op)


# ── Recreation Tools ──────────────────────────────────────────────────────────


@mcp.tool()
async def recreate_commit(
    ctx: Context,
    repo_url: str,
    commit_hash: str | None = None,
    parent_commit_hash: str | None = None,
    auto: bool = True,
    fork_owner: str | None = None,
) -> dict:
    """Recreate a commit as a pull request in a fork, immediately and outside the queue.

    With auto=True, repo_url is the upstream repository and it is forked first.
    With auto=False, repo_url is the fork and both hashes are required.
    """
    app = _ctx(ctx)
    request = RecreationRequest(
        repo_url=repo_url,
        commit_hash=commit_hash,
        parent_commit_hash=parent_commit_hash,
        auto=auto,
        fork_owner=fork_owner,
    )
    messages: list[str] = []
    try:
        result = await app.recreator.recreate(request, lambda e: messages.append(e.message))
    except RecreationError as e:
        return {**error_result(e), "statusMessages": messages}
    return {**result.to_dict(), "statusMessages": messages}
