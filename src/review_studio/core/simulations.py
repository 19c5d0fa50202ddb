"""Queueing PR simulations with optimistic fork and PR records."""

import sqlite3
from dataclasses import dataclass

from review_studio.core.forks import get_fork, save_fork, save_placeholder_pr
from review_studio.core.github_urls import parse_pr_url
from review_studio.core.operations import (
    enqueue_operation,
    find_queued_simulation,
    get_operation,
    list_pending_operations,
)
from review_studio.core.payloads import SimulatePRPayload
from review_studio.core.recreate import InvalidInputError
from review_studio.db.models import Operation


class DuplicateSimulationError(Exception):
    """Raised when the same PR is already waiting in the queue."""

    status_code = 409

    def __init__(self, pr_url: str, operation_id: int):
        super().__init__("This PR is already in the queue")
        self.message = "This PR is already in the queue"
        self.pr_url = pr_url
        self.operation_id = operation_id


@dataclass
class QueuedSimulation:
    queue_id: int
    fork_id: int
    pr_id: int
    queue_position: int
    operation: Operation

    def to_dict(self) -> dict:
        return {
            "success": True,
            "message": "PR simulation queued",
            "queueId": self.queue_id,
            "forkId": self.fork_id,
            "prId": self.pr_id,
            "queuePosition": self.queue_position,
            "operation": {
                "id": self.operation.id,
                "type": self.operation.operation_type,
                "status": self.operation.status,
                "created_at": self.operation.created_at.isoformat() if self.operation.created_at else None,
            },
        }


def queue_pr_simulation(
    db: sqlite3.Connection,
    pr_url: str,
    target_org: str,
    created_by: str | None = None,
    cache_repo: bool = True,
) -> QueuedSimulation:
    """Enqueue a simulate_pr operation and record placeholder rows for it.

    Raises InvalidInputError for a malformed PR URL and DuplicateSimulationError
    when the PR is already queued or processing.
    """
    if not pr_url:
        raise InvalidInputError("prUrl is required")
    ref = parse_pr_url(pr_url)
    if ref is None:
        raise InvalidInputError("Invalid PR URL format")

    existing = find_queued_simulation(db, pr_url)
    if existing:
        raise DuplicateSimulationError(pr_url, existing.id)

    queued_ahead = sum(1 for op in list_pending_operations(db) if op.status == "queued")

    fork = get_fork(db, target_org, ref.repo)
    fork_id = fork.id if fork else save_fork(
        db, target_org, ref.repo, f"https://github.com/{target_org}/{ref.repo}", ref.owner
    )
    pr_id = save_placeholder_pr(
        db,
        fork_id,
        target_org=target_org,
        source_repo=ref.repo,
        source_pr_number=ref.number,
        source_owner=ref.owner,
        original_pr_url=pr_url,
        created_by=created_by,
    )

    payload = SimulatePRPayload(pr_url=pr_url, target_org=target_org, cache_repo=cache_repo)
    queue_id = enqueue_operation(db, payload, created_by)
    return QueuedSimulation(
        queue_id=queue_id,
        fork_id=fork_id,
        pr_id=pr_id,
        queue_position=queued_ahead + 1,
        operation=get_operation(db, queue_id),
    )
