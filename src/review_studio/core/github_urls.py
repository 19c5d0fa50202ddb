"""GitHub URL and commit-hash helpers shared by the recreator and the queue."""

import re
from dataclasses import dataclass

_REPO_URL_RE = re.compile(r"^https://github\.com/([\w.-]+)/([\w.-]+?)(?:\.git)?/?$")
_PR_URL_RE = re.compile(r"github\.com/([^/\s]+)/([^/\s]+)/pull/(\d+)")
_COMMIT_RE = re.compile(r"^[0-9a-fA-F]{7,40}$")

SHORT_HASH_LENGTH = 7
BRANCH_PREFIX = "review-"


@dataclass(frozen=True)
class RepoRef:
    owner: str
    repo: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def html_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repo}"


@dataclass(frozen=True)
class PullRequestRef:
    owner: str
    repo: str
    number: int

    @property
    def repo_ref(self) -> RepoRef:
        return RepoRef(self.owner, self.repo)


def parse_repo_url(url: str) -> RepoRef | None:
    """Parse ``https://github.com/owner/repo`` into a RepoRef, or None if malformed."""
    match = _REPO_URL_RE.match(url.strip())
    if not match:
        return None
    return RepoRef(match.group(1), match.group(2))


def parse_pr_url(url: str) -> PullRequestRef | None:
    """Parse ``https://github.com/owner/repo/pull/123`` into a PullRequestRef."""
    match = _PR_URL_RE.search(url.strip())
    if not match:
        return None
    return PullRequestRef(match.group(1), match.group(2), int(match.group(3)))


def is_commit_hash(value: str) -> bool:
    return bool(_COMMIT_RE.match(value.strip()))


def short_hash(commit_hash: str) -> str:
    return commit_hash[:SHORT_HASH_LENGTH]


def review_branch_name(commit_hash: str) -> str:
    """Deterministic branch name for a recreated commit."""
    return f"{BRANCH_PREFIX}{short_hash(commit_hash)}"
