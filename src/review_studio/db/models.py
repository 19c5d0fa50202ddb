"""Data models for code review studio."""

from dataclasses import dataclass
from datetime import datetime

OPERATION_STATUSES = ("queued", "processing", "completed", "failed")


@dataclass
class Operation:
    id: int
    operation_type: str
    payload: dict
    status: str = "queued"
    result: dict | None = None
    error: str | None = None
    created_by: str | None = None
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    created_at: datetime | None = None
    processing_started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class Fork:
    id: int
    repo_owner: str
    repo_name: str
    fork_url: str
    upstream_owner: str | None = None
    created_at: datetime | None = None


@dataclass
class PullRequestRecord:
    id: int
    fork_id: int
    pr_number: int
    forked_pr_url: str
    pr_title: str | None = None
    original_pr_url: str | None = None
    state: str = "open"
    commit_count: int | None = None
    created_by: str | None = None
    created_at: datetime | None = None
