"""HTTP API: commit recreation (SSE or JSON) and the operation queue."""

import asyncio
import json
import logging
import os
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from review_studio.config import Config, get_config
from review_studio.core import operations as ops_mod
from review_studio.core.handlers import OperationHandlers
from review_studio.core.operations import utcnow
from review_studio.core.payloads import parse_payload
from review_studio.core.queue import QueueProcessor, RateLimiter
from review_studio.core.recreate import (
    PRRecreator,
    RecreationError,
    RecreationRequest,
    error_result,
    iter_recreation_events,
)
from review_studio.core.simulations import DuplicateSimulationError, queue_pr_simulation
from review_studio.db.engine import init_db
from review_studio.integrations.github import GitHubClient

logger = logging.getLogger(__name__)


def _get_db(request: Request):
    return init_db(request.app.state.config.db_path)


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


# ── Recreation ────────────────────────────────────────────────────────────────


async def api_create_pr(request: Request):
    return await _create_pr(request, auto=False)


async def api_create_pr_auto(request: Request):
    return await _create_pr(request, auto=True)


async def _create_pr(request: Request, auto: bool):
    body = await _json_body(request)
    if body is None:
        return JSONResponse({"success": False, "error": "Invalid JSON body"}, status_code=400)

    recreation = RecreationRequest(
        repo_url=body.get("repoUrl") or "",
        commit_hash=body.get("commitHash") or None,
        parent_commit_hash=body.get("parentCommitHash") or None,
        auto=auto,
        fork_owner=body.get("forkOwner") or None,
        pr_title=body.get("prTitle") or None,
        original_pr_url=body.get("originalPrUrl") or None,
    )
    recreator: PRRecreator = request.app.state.recreator

    try:
        recreator.validate(recreation)
    except RecreationError as e:
        return JSONResponse({"success": False, "error": e.message}, status_code=e.status_code)

    if request.query_params.get("stream", "true").lower() == "false":
        try:
            result = await recreator.recreate(recreation)
        except RecreationError as e:
            return JSONResponse(error_result(e), status_code=e.status_code)
        except Exception as e:
            logger.exception("Unexpected error while recreating %s", recreation.repo_url)
            return JSONResponse(error_result(e), status_code=500)
        return JSONResponse(result.to_dict())

    async def event_stream():
        async for event in iter_recreation_events(recreator, recreation):
            yield f"data: {json.dumps(event)}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ── Queue ─────────────────────────────────────────────────────────────────────


def _processor(request: Request, db) -> QueueProcessor:
    state = request.app.state
    handlers = OperationHandlers(db, state.config, github=state.github, recreator=state.recreator)
    # Operations finished by the CLI or another worker count against the delay too.
    state.rate_limiter.seed(ops_mod.get_last_finished_at(db))
    return QueueProcessor(
        db,
        handlers,
        rate_limiter=state.rate_limiter,
        stuck_timeout=timedelta(minutes=state.config.stuck_timeout_minutes),
        owner_id=state.owner_id,
    )


async def api_process_queue(request: Request):
    db = _get_db(request)
    try:
        async with request.app.state.process_lock:
            result = await _processor(request, db).process_next()
        return JSONResponse(result.to_dict())
    except Exception as e:
        logger.exception("Queue process error")
        return JSONResponse({"error": str(e) or "Failed to process queue"}, status_code=500)
    finally:
        db.close()


async def api_process_status(request: Request):
    db = _get_db(request)
    try:
        return JSONResponse(_processor(request, db).status())
    finally:
        db.close()


async def api_get_queue(request: Request):
    db = _get_db(request)
    try:
        ids_param = request.query_params.get("ids")
        if ids_param:
            ids = [int(i) for i in (p.strip() for p in ids_param.split(",")) if i.isdigit()]
            operations = ops_mod.get_operations_by_ids(db, ids)
            return JSONResponse({"operations": [ops_mod.operation_dict(op) for op in operations]})

        return JSONResponse({
            "status": ops_mod.get_queue_status(db),
            "pending": [ops_mod.operation_dict(op) for op in ops_mod.list_pending_operations(db)],
        })
    finally:
        db.close()


async def api_enqueue(request: Request):
    body = await _json_body(request)
    if body is None:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    try:
        payload = parse_payload(body.get("type", ""), body.get("payload") or {})
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    db = _get_db(request)
    try:
        op_id = ops_mod.enqueue_operation(db, payload, body.get("createdBy"))
        op = ops_mod.get_operation(db, op_id)
        return JSONResponse({"success": True, "operation": ops_mod.operation_dict(op)}, status_code=201)
    finally:
        db.close()


async def api_cancel(request: Request):
    id_param = request.query_params.get("id")
    if not id_param:
        return JSONResponse({"error": "id parameter is required"}, status_code=400)
    if not id_param.isdigit():
        return JSONResponse({"error": "Invalid id parameter"}, status_code=400)

    db = _get_db(request)
    try:
        if not ops_mod.cancel_operation(db, int(id_param)):
            return JSONResponse(
                {"error": "Operation not found or cannot be cancelled (already processing)"},
                status_code=404,
            )
        return JSONResponse({"success": True, "message": "Operation cancelled"})
    finally:
        db.close()


async def api_queue_add(request: Request):
    body = await _json_body(request)
    if body is None:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    config: Config = request.app.state.config
    db = _get_db(request)
    try:
        queued = queue_pr_simulation(
            db,
            body.get("prUrl") or "",
            body.get("targetOrg") or config.target_org,
            created_by=body.get("createdBy"),
        )
        return JSONResponse(queued.to_dict())
    except (RecreationError, DuplicateSimulationError) as e:
        return JSONResponse({"error": e.message}, status_code=e.status_code)
    finally:
        db.close()


# ── Health ────────────────────────────────────────────────────────────────────


async def api_health(request: Request):
    config: Config = request.app.state.config
    checks = {"database": False, "filesystem": False, "github_token": bool(config.github_token)}
    errors = []

    try:
        db = init_db(config.db_path)
        try:
            db.execute("SELECT 1").fetchone()
            checks["database"] = True
        finally:
            db.close()
    except Exception as e:
        errors.append(f"Database: {e}")

    data_dir = config.db_path.parent
    if data_dir.exists() and os.access(data_dir, os.R_OK | os.W_OK):
        checks["filesystem"] = True
    else:
        errors.append(f"Data directory {data_dir} is not writable")

    if not checks["github_token"]:
        errors.append("GITHUB_BOT_TOKEN is not set")

    healthy = checks["database"] and checks["filesystem"]
    return JSONResponse(
        {
            "timestamp": utcnow().isoformat() + "Z",
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "errors": errors,
        },
        status_code=200 if healthy else 503,
    )


# ── App ───────────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: Starlette) -> AsyncIterator[None]:
    """Close the shared GitHub client on shutdown."""
    try:
        yield
    finally:
        if app.state.github is not None:
            await app.state.github.close()


def create_app(
    config: Config | None = None,
    github: GitHubClient | None = None,
    recreator: PRRecreator | None = None,
) -> Starlette:
    config = config or get_config()
    if github is None and config.github_token:
        github = GitHubClient(config.github_token, config.github_api_url)

    routes = [
        Route("/api/create-pr", api_create_pr, methods=["POST"]),
        Route("/api/create-pr/auto", api_create_pr_auto, methods=["POST"]),
        Route("/api/queue", api_get_queue, methods=["GET"]),
        Route("/api/queue", api_enqueue, methods=["POST"]),
        Route("/api/queue", api_cancel, methods=["DELETE"]),
        Route("/api/queue/add", api_queue_add, methods=["POST"]),
        Route("/api/queue/process", api_process_queue, methods=["POST"]),
        Route("/api/queue/process", api_process_status, methods=["GET"]),
        Route("/api/health", api_health, methods=["GET"]),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.config = config
    app.state.github = github
    app.state.recreator = recreator or PRRecreator.from_config(config, github)
    # The rate limiter and lease owner live as long as the server process.
    app.state.rate_limiter = RateLimiter(min_delay=config.min_operation_delay)
    app.state.owner_id = f"web-{uuid.uuid4().hex[:12]}"
    app.state.process_lock = asyncio.Lock()
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
