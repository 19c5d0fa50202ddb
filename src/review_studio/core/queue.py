"""Operation queue processor: stuck-lease recovery, rate limiting, lease and dispatch."""

import logging
import math
import sqlite3
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from review_studio.core.operations import (
    get_next_queued_operation,
    get_queue_status,
    get_stuck_operations,
    mark_operation_completed,
    mark_operation_failed,
    mark_operation_processing,
    reset_stuck_operation,
    utcnow,
)
from review_studio.db.models import Operation

logger = logging.getLogger(__name__)

Dispatcher = Callable[[Operation], Awaitable[dict]]


@dataclass
class RateLimiter:
    """Enforces a minimum delay between dispatched operations.

    The limiter lives in process memory, so a restart clears it.
    """

    min_delay: float = 60.0
    clock: Callable[[], float] = time.monotonic
    last_operation_at: float | None = None
    last_operation_time: datetime | None = None

    def wait_seconds(self) -> int:
        if self.last_operation_at is None:
            return 0
        remaining = self.min_delay - (self.clock() - self.last_operation_at)
        return max(0, math.ceil(remaining))

    def can_proceed(self) -> bool:
        return self.wait_seconds() == 0

    def record(self):
        self.last_operation_at = self.clock()
        self.last_operation_time = utcnow()

    def seed(self, finished_at: datetime | None, now: datetime | None = None):
        """Start the delay from an operation another process finished.

        Short-lived callers such as ``crs queue process`` would otherwise
        start every run with an empty limiter.
        """
        if finished_at is None:
            return
        elapsed = max(0.0, ((now or utcnow()) - finished_at).total_seconds())
        started = self.clock() - elapsed
        if self.last_operation_at is None or started > self.last_operation_at:
            self.last_operation_at = started
            self.last_operation_time = finished_at


@dataclass
class ProcessResult:
    processed: bool
    reason: str | None = None
    message: str | None = None
    wait_seconds: int | None = None
    operation: Operation | None = None
    result: dict | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        if not self.processed:
            data = {"processed": False, "reason": self.reason, "message": self.message}
            if self.wait_seconds is not None:
                data["waitSeconds"] = self.wait_seconds
            return data

        op = {
            "id": self.operation.id,
            "type": self.operation.operation_type,
            "status": "failed" if self.error is not None else "completed",
        }
        if self.error is not None:
            op["error"] = self.error
        else:
            op["result"] = self.result
        return {"processed": True, "operation": op}


@dataclass
class QueueProcessor:
    """Processes at most one queued operation per call."""

    db: sqlite3.Connection
    dispatch: Dispatcher
    rate_limiter: RateLimiter = field(default_factory=RateLimiter)
    stuck_timeout: timedelta = timedelta(minutes=10)
    owner_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    now: Callable[[], datetime] = utcnow

    def recover_stuck(self) -> list[int]:
        """Return every operation whose lease expired to the queue."""
        reset = []
        for op in get_stuck_operations(self.db, self.now(), self.stuck_timeout):
            if reset_stuck_operation(self.db, op.id):
                logger.warning(
                    "Resetting stuck operation %d (%s), leased by %s",
                    op.id, op.operation_type, op.lease_owner,
                )
                reset.append(op.id)
        return reset

    async def process_next(self) -> ProcessResult:
        self.recover_stuck()

        wait = self.rate_limiter.wait_seconds()
        if wait > 0:
            return ProcessResult(
                processed=False,
                reason="rate_limited",
                wait_seconds=wait,
                message=f"Must wait {wait} seconds before next operation",
            )

        op = get_next_queued_operation(self.db)
        if op is None:
            return ProcessResult(processed=False, reason="queue_empty", message="No operations in queue")

        if not mark_operation_processing(self.db, op.id, self.owner_id, self.now(), self.stuck_timeout):
            return ProcessResult(
                processed=False,
                reason="already_processing",
                message="Operation was already picked up by another processor",
            )

        logger.info("Processing operation %d (%s)", op.id, op.operation_type)
        try:
            result = await self.dispatch(op)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error("Operation %d (%s) failed: %s", op.id, op.operation_type, error)
            if not mark_operation_failed(self.db, op.id, error, lease_owner=self.owner_id, now=self.now()):
                logger.warning("Lease on operation %d was lost before it could be marked failed", op.id)
            # Failures count against the delay too, to prevent rapid retries.
            self.rate_limiter.record()
            return ProcessResult(processed=True, operation=op, error=error)

        if not mark_operation_completed(self.db, op.id, result, lease_owner=self.owner_id, now=self.now()):
            logger.warning("Lease on operation %d was lost before it could be marked completed", op.id)
        self.rate_limiter.record()
        logger.info("Operation %d (%s) completed", op.id, op.operation_type)
        return ProcessResult(processed=True, operation=op, result=result)

    def status(self) -> dict:
        counts = get_queue_status(self.db)
        wait = self.rate_limiter.wait_seconds()
        last = self.rate_limiter.last_operation_time
        return {
            **counts,
            "canProcessNow": wait == 0,
            "waitSeconds": wait,
            "minDelaySeconds": self.rate_limiter.min_delay,
            "lastOperationTime": last.isoformat() + "Z" if last else None,
        }
