"""Per-type handlers for queued operations."""

import asyncio
import logging
import sqlite3
from pathlib import Path

from review_studio.config import Config
from review_studio.core.forks import get_fork, reconcile_simulated_pr, save_fork
from review_studio.core.github_urls import RepoRef, parse_pr_url, parse_repo_url
from review_studio.core.payloads import (
    CreateForkPayload,
    CreatePRPayload,
    DeleteBranchPayload,
    DeleteForkPayload,
    SimulatePRPayload,
    parse_payload,
)
from review_studio.core.recreate import (
    ConfigurationError,
    InvalidInputError,
    NotFoundError,
    PRRecreator,
    ProgressEvent,
    RecreationRequest,
)
from review_studio.db.models import Operation
from review_studio.integrations import git, slack
from review_studio.integrations.git import GitError
from review_studio.integrations.github import GitHubClient, GitHubError

logger = logging.getLogger(__name__)


class OperationHandlers:
    """Dispatches a leased operation to the handler for its payload type.

    Handlers never retry. Any exception propagates to the queue processor,
    which records the operation as failed.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        config: Config,
        github: GitHubClient | None = None,
        recreator: PRRecreator | None = None,
    ):
        self.db = db
        self.config = config
        if github is None and config.github_token:
            github = GitHubClient(config.github_token, config.github_api_url)
        self.github = github
        self.recreator = recreator or PRRecreator.from_config(config, github)

    async def __call__(self, op: Operation) -> dict:
        payload = parse_payload(op.operation_type, op.payload)
        handler = {
            CreateForkPayload: self.create_fork,
            CreatePRPayload: self.create_pr,
            DeleteForkPayload: self.delete_fork,
            DeleteBranchPayload: self.delete_branch,
            SimulatePRPayload: self.simulate_pr,
        }[type(payload)]
        return await handler(payload)

    def _require_github(self) -> GitHubClient:
        if self.github is None:
            raise ConfigurationError("GitHub bot token not configured")
        return self.github

    async def create_fork(self, payload: CreateForkPayload) -> dict:
        github = self._require_github()
        logger.info(
            "Creating fork of %s/%s in %s",
            payload.source_owner, payload.source_repo, payload.target_org,
        )

        existing = await github.get_repo(payload.target_org, payload.source_repo)
        if existing:
            logger.info("Fork already exists: %s", existing["html_url"])
            fork_id = save_fork(
                self.db, payload.target_org, payload.source_repo,
                existing["html_url"], payload.source_owner,
            )
            return {"fork_url": existing["html_url"], "fork_id": fork_id, "already_existed": True}

        fork = await github.create_fork(payload.source_owner, payload.source_repo, payload.target_org)
        # GitHub may pick a different name when the org already has a repo called source_repo.
        fork_ref = RepoRef(fork["owner"]["login"], fork["name"])
        await asyncio.sleep(self.config.fork_settle_seconds)

        try:
            await github.disable_actions(fork_ref.owner, fork_ref.repo)
        except GitHubError as e:
            logger.warning("Failed to disable actions on fork: %s", e.message)

        fork_id = save_fork(
            self.db, fork_ref.owner, fork_ref.repo, fork["html_url"], payload.source_owner
        )
        return {"fork_url": fork["html_url"], "fork_id": fork_id, "already_existed": False}

    async def create_pr(self, payload: CreatePRPayload) -> dict:
        github = self._require_github()
        logger.info("Creating PR on %s/%s", payload.fork_owner, payload.fork_repo)

        existing = await github.list_pulls(
            payload.fork_owner, payload.fork_repo, head=f"{payload.fork_owner}:{payload.branch}"
        )
        if existing:
            logger.info("PR already exists: %s", existing[0]["html_url"])
            return {
                "pr_url": existing[0]["html_url"],
                "pr_number": existing[0]["number"],
                "already_existed": True,
            }

        pr = await github.create_pull(
            payload.fork_owner,
            payload.fork_repo,
            title=payload.title,
            head=payload.branch,
            base=payload.base_branch,
            body=payload.body,
        )
        return {"pr_url": pr["html_url"], "pr_number": pr["number"], "already_existed": False}

    async def delete_fork(self, payload: DeleteForkPayload) -> dict:
        github = self._require_github()
        logger.info("Deleting fork %s/%s", payload.owner, payload.repo)
        await github.delete_repo(payload.owner, payload.repo)
        return {"deleted": True}

    async def delete_branch(self, payload: DeleteBranchPayload) -> dict:
        logger.info("Deleting branch %s from %s/%s", payload.branch, payload.owner, payload.repo)

        repo_path = self.cached_clone_path(RepoRef(payload.owner, payload.repo))
        if repo_path.exists():
            try:
                await git.delete_remote_branch(repo_path, payload.branch)
                return {"deleted": True, "method": "git"}
            except GitError as e:
                logger.warning("Git delete failed, falling back to API: %s", e)

        github = self._require_github()
        await github.delete_ref(payload.owner, payload.repo, f"heads/{payload.branch}")
        return {"deleted": True, "method": "api"}

    async def simulate_pr(self, payload: SimulatePRPayload) -> dict:
        logger.info("Processing PR simulation for %s", payload.pr_url)
        ref = parse_pr_url(payload.pr_url)
        if ref is None:
            raise InvalidInputError("Invalid PR URL format")
        github = self._require_github()

        pull = await github.get_pull(ref.owner, ref.repo, ref.number)
        if pull is None:
            raise NotFoundError(f"Pull request {payload.pr_url} not found")
        merged = bool(pull.get("merged"))
        commit = pull.get("merge_commit_sha") if merged else pull["head"]["sha"]

        status_messages: list[str] = []

        def on_progress(event: ProgressEvent):
            status_messages.append(event.message)

        request = RecreationRequest(
            repo_url=ref.repo_ref.html_url,
            commit_hash=commit,
            auto=True,
            fork_owner=payload.target_org or self.config.target_org,
            pr_title=pull.get("title"),
            original_pr_url=payload.pr_url,
        )
        try:
            result = await self.recreator.recreate(request, on_progress)
        except Exception as e:
            await self._notify(payload.pr_url, succeeded=False, error=str(e))
            raise

        fork_ref = parse_repo_url(result.fork_url)
        fork = get_fork(self.db, fork_ref.owner, fork_ref.repo)
        fork_id = fork.id if fork else save_fork(
            self.db, fork_ref.owner, fork_ref.repo, result.fork_url, ref.owner
        )
        # An unmerged PR is recreated from its head commit alone.
        commit_count = pull.get("commits") if merged else 1
        reconcile_simulated_pr(
            self.db,
            fork_id,
            result.pr_number,
            result.pr_url,
            result.pr_title or f"PR #{ref.number} from {ref.owner}/{ref.repo}",
            payload.pr_url,
            commit_count=commit_count,
        )

        if payload.cache_repo:
            await self._refresh_cached_clone(fork_ref)

        await self._notify(
            payload.pr_url, succeeded=True, pr_url=result.pr_url, pr_title=result.pr_title
        )

        return {
            "success": True,
            "prUrl": result.pr_url,
            "forkUrl": result.fork_url,
            "prNumber": result.pr_number,
            "prTitle": result.pr_title,
            "commitHash": result.commit_hash,
            "commitCount": commit_count,
            "alreadyExisted": result.already_existed,
            "statusMessages": status_messages,
        }

    def cached_clone_path(self, repo: RepoRef) -> Path:
        return Path(self.config.repos_dir) / repo.owner / repo.repo

    async def _refresh_cached_clone(self, repo: RepoRef):
        path = self.cached_clone_path(repo)
        try:
            if path.exists():
                await git.fetch(path, "origin")
            else:
                path.parent.mkdir(parents=True, exist_ok=True)
                await git.clone(self.recreator.clone_url(repo), path)
        except GitError as e:
            logger.warning("Could not refresh cached clone of %s: %s", repo.full_name, e)

    async def _notify(self, original_pr_url: str, succeeded: bool, **kwargs):
        if not (self.config.slack_bot_token and self.config.slack_channel):
            return
        blocks = slack.format_simulation_notification(original_pr_url, succeeded, **kwargs)
        text = f"PR simulation {'complete' if succeeded else 'failed'}: {original_pr_url}"
        try:
            await asyncio.to_thread(
                slack.send_message, self.config.slack_bot_token, self.config.slack_channel, text, blocks
            )
        except Exception as e:
            logger.warning("Slack notification failed: %s", e)
