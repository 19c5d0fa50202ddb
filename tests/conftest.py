"""Shared fixtures: temporary git remotes and an in-memory GitHub API."""

import json
import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

import httpx
import pytest

from review_studio.core.github_urls import RepoRef
from review_studio.core.recreate import PRRecreator
from review_studio.db.engine import init_db
from review_studio.integrations.github import GitHubClient

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}

UPSTREAM = RepoRef("octo", "widgets")
BOT_LOGIN = "review-bot"


def run_git(cwd, *args) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, check=True, text=True, env=GIT_ENV
    )
    return result.stdout.strip()


def _commit(repo: Path, filename: str, content: str, message: str) -> str:
    (repo / filename).write_text(content)
    run_git(repo, "add", filename)
    run_git(repo, "commit", "-m", message)
    return run_git(repo, "rev-parse", "HEAD")


@dataclass
class Remotes:
    """Bare repositories standing in for GitHub remotes, laid out as root/owner/repo.git."""

    root: Path
    commits: dict[str, str] = field(default_factory=dict)

    def path(self, repo: RepoRef) -> Path:
        return self.root / repo.owner / f"{repo.repo}.git"

    def url(self, repo: RepoRef) -> str:
        return str(self.path(repo))

    def exists(self, repo: RepoRef) -> bool:
        return self.path(repo).exists()

    def branches(self, repo: RepoRef) -> list[str]:
        out = run_git(self.path(repo), "for-each-ref", "--format=%(refname:short)", "refs/heads")
        return out.splitlines()


@pytest.fixture
def remotes(tmp_path):
    """An upstream repo with a linear history, a merged feature branch and a conflicting change.

    main: init -> first -> main_side -> merge(feature) -> conflict_base -> conflict_change
    feature (from first): feature
    """
    work = tmp_path / "work"
    work.mkdir()
    run_git(work, "init")
    run_git(work, "symbolic-ref", "HEAD", "refs/heads/main")

    commits = {}
    commits["init"] = _commit(work, "README.md", "# Widgets\n", "Initial commit")
    commits["first"] = _commit(work, "a.txt", "one\n", "Add a.txt")

    run_git(work, "checkout", "-b", "feature")
    commits["feature"] = _commit(work, "b.txt", "feature\n", "Add b.txt on feature")
    run_git(work, "checkout", "main")
    commits["main_side"] = _commit(work, "c.txt", "side\n", "Add c.txt on main")
    run_git(work, "merge", "--no-ff", "feature", "-m", "Merge branch 'feature'")
    commits["merge"] = run_git(work, "rev-parse", "HEAD")

    commits["conflict_base"] = _commit(work, "conflict.txt", "v1\n", "Add conflict.txt")
    commits["conflict_change"] = _commit(work, "conflict.txt", "v2\n", "Change conflict.txt")

    remotes = Remotes(root=tmp_path / "remotes", commits=commits)
    dest = remotes.path(UPSTREAM)
    dest.parent.mkdir(parents=True)
    run_git(tmp_path, "clone", "--bare", str(work), str(dest))
    return remotes


class FakeGitHub:
    """Serves the subset of the GitHub REST API the studio calls, backed by Remotes."""

    def __init__(self, remotes: Remotes, login: str = BOT_LOGIN):
        self.remotes = remotes
        self.login = login
        self.pulls: list[dict] = []
        self.upstream_pulls: dict[tuple[str, str, int], dict] = {}
        self.forks: list[tuple[str, str, str]] = []
        self.deleted_repos: list[str] = []
        self.deleted_refs: list[str] = []
        self.actions_disabled: list[str] = []
        self.calls: list[tuple[str, str]] = []

    # ── Routing ─────────────────────────────────────────────────────────────

    def handle(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.calls.append((method, path))
        body = json.loads(request.content) if request.content else {}

        if path == "/user":
            return self._json({"login": self.login})

        m = re.match(r"^/repos/([^/]+)/([^/]+)(/.*)?$", path)
        if not m:
            return self._error(404, "Not Found")
        repo = RepoRef(m.group(1), m.group(2))
        rest = m.group(3) or ""

        if rest == "":
            if method == "DELETE":
                self.deleted_repos.append(repo.full_name)
                return httpx.Response(204)
            if not self.remotes.exists(repo):
                return self._error(404, "Not Found")
            return self._json(self._repo_json(repo))

        if not self.remotes.exists(repo):
            return self._error(404, "Not Found")

        if rest == "/forks" and method == "POST":
            return self._create_fork(repo, body.get("organization"))
        if rest == "/actions/permissions" and method == "PUT":
            self.actions_disabled.append(repo.full_name)
            return httpx.Response(204)
        if m2 := re.match(r"^/commits/(.+)$", rest):
            return self._commit(repo, m2.group(1))
        if m2 := re.match(r"^/branches/(.+)$", rest):
            return self._branch(repo, m2.group(1))
        if m2 := re.match(r"^/git/refs/(.+)$", rest):
            self.deleted_refs.append(f"{repo.full_name}:{m2.group(1)}")
            return httpx.Response(204)
        if rest == "/pulls" and method == "GET":
            return self._list_pulls(repo, request.url.params.get("head"))
        if rest == "/pulls" and method == "POST":
            return self._create_pull(repo, body)
        if m2 := re.match(r"^/pulls/(\d+)$", rest):
            pull = self.upstream_pulls.get((repo.owner, repo.repo, int(m2.group(1))))
            return self._json(pull) if pull else self._error(404, "Not Found")

        return self._error(404, "Not Found")

    # ── Endpoints ───────────────────────────────────────────────────────────

    def _create_fork(self, upstream: RepoRef, organization: str | None) -> httpx.Response:
        fork = RepoRef(organization or self.login, upstream.repo)
        dest = self.remotes.path(fork)
        if not dest.exists():
            dest.parent.mkdir(parents=True, exist_ok=True)
            run_git(self.remotes.root, "clone", "--bare", str(self.remotes.path(upstream)), str(dest))
        self.forks.append((upstream.full_name, fork.owner, fork.repo))
        return self._json(self._repo_json(fork), status=202)

    def _commit(self, repo: RepoRef, sha: str) -> httpx.Response:
        try:
            line = run_git(self.remotes.path(repo), "rev-list", "--parents", "-n", "1", sha)
            message = run_git(self.remotes.path(repo), "log", "-1", "--format=%B", sha)
        except subprocess.CalledProcessError:
            return self._error(422, f"No commit found for SHA: {sha}")
        full, *parents = line.split()
        return self._json({
            "sha": full,
            "parents": [{"sha": p} for p in parents],
            "commit": {"message": message},
        })

    def _branch(self, repo: RepoRef, branch: str) -> httpx.Response:
        try:
            sha = run_git(self.remotes.path(repo), "rev-parse", "--verify", f"refs/heads/{branch}")
        except subprocess.CalledProcessError:
            return self._error(404, "Branch not found")
        return self._json({"name": branch, "commit": {"sha": sha}})

    def _list_pulls(self, repo: RepoRef, head: str | None) -> httpx.Response:
        pulls = [
            p for p in self.pulls
            if p["repo"] == repo.full_name
            and p["state"] == "open"
            and (head is None or f"{p['owner']}:{p['head']}" == head)
        ]
        return self._json(pulls)

    def _create_pull(self, repo: RepoRef, body: dict) -> httpx.Response:
        branches = self.remotes.branches(repo)
        if body["base"] not in branches or body["head"] not in branches:
            return self._error(422, "Validation Failed", [{"resource": "PullRequest", "code": "invalid"}])
        for p in self.pulls:
            if p["repo"] == repo.full_name and p["head"] == body["head"] and p["state"] == "open":
                return self._error(
                    422, "Validation Failed",
                    [{"message": f"A pull request already exists for {repo.owner}:{body['head']}."}],
                )
        number = len(self.pulls) + 1
        pull = {
            "number": number,
            "html_url": f"https://github.com/{repo.full_name}/pull/{number}",
            "title": body["title"],
            "body": body.get("body", ""),
            "head": body["head"],
            "base": body["base"],
            "state": "open",
            "owner": repo.owner,
            "repo": repo.full_name,
        }
        self.pulls.append(pull)
        return self._json(pull, status=201)

    # ── Helpers ─────────────────────────────────────────────────────────────

    @staticmethod
    def _repo_json(repo: RepoRef) -> dict:
        return {"name": repo.repo, "html_url": repo.html_url, "owner": {"login": repo.owner}}

    @staticmethod
    def _json(data, status: int = 200) -> httpx.Response:
        return httpx.Response(status, json=data)

    @staticmethod
    def _error(status: int, message: str, errors: list | None = None) -> httpx.Response:
        data = {"message": message}
        if errors:
            data["errors"] = errors
        return httpx.Response(status, json=data)


@pytest.fixture
def fake_github(remotes):
    return FakeGitHub(remotes)


@pytest.fixture
def github(fake_github):
    return GitHubClient("test-token", transport=httpx.MockTransport(fake_github.handle))


@pytest.fixture
def clone_root(tmp_path):
    path = tmp_path / "clones"
    path.mkdir()
    return path


@pytest.fixture
def recreator(github, remotes, clone_root):
    return PRRecreator(github, fork_settle_seconds=0, clone_url=remotes.url, tmp_root=clone_root)


@pytest.fixture
def db(tmp_path):
    conn = init_db(tmp_path / "test.db")
    yield conn
    conn.close()
