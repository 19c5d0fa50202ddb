"""Fork and recreated-PR records."""

import sqlite3
from datetime import datetime

from review_studio.db.models import Fork, PullRequestRecord


def placeholder_pr_number(source_pr_number: int) -> int:
    """Queued simulations are keyed by the negated upstream PR number until the real PR exists."""
    return -source_pr_number


def save_fork(
    db: sqlite3.Connection,
    repo_owner: str,
    repo_name: str,
    fork_url: str,
    upstream_owner: str | None = None,
) -> int:
    """Insert or update a fork record. Returns the fork ID."""
    db.execute(
        """INSERT INTO forks (repo_owner, repo_name, fork_url, upstream_owner)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(repo_owner, repo_name) DO UPDATE SET
               fork_url = excluded.fork_url,
               upstream_owner = COALESCE(excluded.upstream_owner, forks.upstream_owner)""",
        (repo_owner, repo_name, fork_url, upstream_owner),
    )
    db.commit()
    return get_fork(db, repo_owner, repo_name).id


def get_fork(db: sqlite3.Connection, repo_owner: str, repo_name: str) -> Fork | None:
    row = db.execute(
        "SELECT * FROM forks WHERE repo_owner = ? AND repo_name = ?",
        (repo_owner, repo_name),
    ).fetchone()
    if not row:
        return None
    return _row_to_fork(row)


def list_forks(db: sqlite3.Connection) -> list[Fork]:
    rows = db.execute("SELECT * FROM forks ORDER BY created_at DESC, id DESC").fetchall()
    return [_row_to_fork(r) for r in rows]


def save_pr(
    db: sqlite3.Connection,
    fork_id: int,
    pr_number: int,
    forked_pr_url: str,
    pr_title: str | None = None,
    original_pr_url: str | None = None,
    state: str = "open",
    commit_count: int | None = None,
    created_by: str | None = None,
) -> int:
    """Insert or update a PR record keyed by (fork_id, pr_number). Returns the PR ID."""
    db.execute(
        """INSERT INTO prs (fork_id, pr_number, pr_title, forked_pr_url, original_pr_url,
                            state, commit_count, created_by)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(fork_id, pr_number) DO UPDATE SET
               pr_title = COALESCE(excluded.pr_title, prs.pr_title),
               forked_pr_url = excluded.forked_pr_url,
               original_pr_url = COALESCE(excluded.original_pr_url, prs.original_pr_url),
               state = excluded.state,
               commit_count = COALESCE(excluded.commit_count, prs.commit_count),
               created_by = COALESCE(excluded.created_by, prs.created_by)""",
        (fork_id, pr_number, pr_title, forked_pr_url, original_pr_url, state, commit_count, created_by),
    )
    db.commit()
    row = db.execute(
        "SELECT id FROM prs WHERE fork_id = ? AND pr_number = ?", (fork_id, pr_number)
    ).fetchone()
    return row["id"]


def save_placeholder_pr(
    db: sqlite3.Connection,
    fork_id: int,
    target_org: str,
    source_repo: str,
    source_pr_number: int,
    source_owner: str,
    original_pr_url: str,
    created_by: str | None = None,
) -> int:
    """Record a queued simulation so it shows up before the real PR exists."""
    return save_pr(
        db,
        fork_id,
        placeholder_pr_number(source_pr_number),
        f"queued://{target_org}/{source_repo}/pr/{source_pr_number}",
        pr_title=f"[Queued] PR #{source_pr_number} from {source_owner}/{source_repo}",
        original_pr_url=original_pr_url,
        state="queued",
        created_by=created_by,
    )


def reconcile_simulated_pr(
    db: sqlite3.Connection,
    fork_id: int,
    pr_number: int,
    pr_url: str,
    pr_title: str | None,
    original_pr_url: str,
    commit_count: int | None = None,
) -> int:
    """Replace the queued placeholder for a simulation with the real PR."""
    placeholder = db.execute(
        "SELECT created_by FROM prs WHERE original_pr_url = ? AND pr_number <= 0",
        (original_pr_url,),
    ).fetchone()
    db.execute(
        "DELETE FROM prs WHERE original_pr_url = ? AND pr_number <= 0",
        (original_pr_url,),
    )
    return save_pr(
        db,
        fork_id,
        pr_number,
        pr_url,
        pr_title=pr_title,
        original_pr_url=original_pr_url,
        state="open",
        commit_count=commit_count,
        created_by=placeholder["created_by"] if placeholder else None,
    )


def list_prs(db: sqlite3.Connection, fork_id: int | None = None) -> list[PullRequestRecord]:
    query = "SELECT * FROM prs"
    params: list = []
    if fork_id is not None:
        query += " WHERE fork_id = ?"
        params.append(fork_id)
    query += " ORDER BY id"
    return [_row_to_pr(r) for r in db.execute(query, params).fetchall()]


def _row_to_fork(row: sqlite3.Row) -> Fork:
    return Fork(
        id=row["id"],
        repo_owner=row["repo_owner"],
        repo_name=row["repo_name"],
        fork_url=row["fork_url"],
        upstream_owner=row["upstream_owner"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_pr(row: sqlite3.Row) -> PullRequestRecord:
    return PullRequestRecord(
        id=row["id"],
        fork_id=row["fork_id"],
        pr_number=row["pr_number"],
        forked_pr_url=row["forked_pr_url"],
        pr_title=row["pr_title"],
        original_pr_url=row["original_pr_url"],
        state=row["state"],
        commit_count=row["commit_count"],
        created_by=row["created_by"],
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
