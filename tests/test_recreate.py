"""Tests for recreating commits as pull requests."""

import pytest

from review_studio.core.github_urls import RepoRef, review_branch_name
from review_studio.core.recreate import (
    CherryPickConflictError,
    ConfigurationError,
    InvalidInputError,
    NotFoundError,
    PRRecreator,
    PullRequestCreationError,
    PushError,
    RecreationRequest,
    iter_recreation_events,
)
from review_studio.integrations import git
from review_studio.integrations.github import GitHubClient

from conftest import UPSTREAM, run_git

REPO_URL = "https://github.com/octo/widgets"


def _manual(commit, parent):
    return RecreationRequest(repo_url=REPO_URL, commit_hash=commit, parent_commit_hash=parent)


class TestManualRecreation:
    async def test_creates_branch_and_pr(self, recreator, remotes, fake_github, clone_root):
        c = remotes.commits
        events = []
        result = await recreator.recreate(_manual(c["first"], c["init"]), events.append)

        branch = review_branch_name(c["first"])
        assert result.branch_name == branch
        assert result.pr_url == "https://github.com/octo/widgets/pull/1"
        assert result.fork_url == "https://github.com/octo/widgets"
        assert result.commit_hash == c["first"]
        assert not result.already_existed
        assert not result.is_merge_commit
        assert result.pr_title == "Add a.txt"

        bare = remotes.path(UPSTREAM)
        assert run_git(bare, "rev-parse", f"{branch}~1") == c["init"]
        assert run_git(bare, "show", f"{branch}:a.txt") == "one"

        pr = fake_github.pulls[0]
        assert pr["base"] == "main"
        assert pr["head"] == branch
        assert c["first"] in pr["body"]

        assert [e.step for e in events] == sorted(e.step for e in events)
        assert list(clone_root.iterdir()) == []

    async def test_second_run_returns_existing_pr(self, recreator, remotes, fake_github, clone_root):
        c = remotes.commits
        first = await recreator.recreate(_manual(c["first"], c["init"]))
        second = await recreator.recreate(_manual(c["first"], c["init"]))

        assert second.already_existed
        assert second.pr_url == first.pr_url
        assert len(fake_github.pulls) == 1
        assert list(clone_root.iterdir()) == []

    async def test_merge_commit_uses_first_parent(self, recreator, remotes, fake_github):
        c = remotes.commits
        result = await recreator.recreate(_manual(c["merge"], c["main_side"]))

        assert result.is_merge_commit
        bare = remotes.path(UPSTREAM)
        assert run_git(bare, "rev-parse", f"{result.branch_name}~1") == c["main_side"]
        assert run_git(bare, "show", f"{result.branch_name}:b.txt") == "feature"
        assert "-m 1" in fake_github.pulls[0]["body"]

    async def test_zero_parent_commit_rejected_before_clone(self, recreator, remotes, fake_github, clone_root):
        c = remotes.commits
        with pytest.raises(InvalidInputError) as exc:
            await recreator.recreate(_manual(c["init"], c["init"]))
        assert exc.value.status_code == 400
        assert list(clone_root.iterdir()) == []
        assert not any(method == "POST" for method, _ in fake_github.calls)

    async def test_conflict_aborts_and_cleans_up(self, recreator, remotes, fake_github, clone_root):
        c = remotes.commits
        with pytest.raises(CherryPickConflictError) as exc:
            await recreator.recreate(_manual(c["conflict_change"], c["init"]))
        assert exc.value.status_code == 409
        assert list(clone_root.iterdir()) == []
        assert fake_github.pulls == []
        assert review_branch_name(c["conflict_change"]) not in remotes.branches(UPSTREAM)

    async def test_unknown_commit(self, recreator, remotes):
        with pytest.raises(NotFoundError):
            await recreator.recreate(_manual("deadbeef", remotes.commits["init"]))


class TestFailureCleanup:
    async def test_rejected_push(self, recreator, remotes, fake_github, clone_root):
        hook = remotes.path(UPSTREAM) / "hooks" / "pre-receive"
        hook.write_text("#!/bin/sh\nexit 1\n")
        hook.chmod(0o755)

        c = remotes.commits
        with pytest.raises(PushError):
            await recreator.recreate(_manual(c["first"], c["init"]))
        assert list(clone_root.iterdir()) == []
        assert fake_github.pulls == []

    async def test_pr_creation_fails_on_every_base(self, recreator, remotes, fake_github, clone_root, monkeypatch):
        monkeypatch.setattr(
            fake_github, "_create_pull",
            lambda repo, body: fake_github._error(422, "Validation Failed", [{"code": "invalid"}]),
        )

        c = remotes.commits
        with pytest.raises(PullRequestCreationError) as exc:
            await recreator.recreate(_manual(c["first"], c["init"]))
        assert "Validation Failed" in exc.value.message
        posts = [path for method, path in fake_github.calls if method == "POST" and path.endswith("/pulls")]
        assert len(posts) == 2
        assert list(clone_root.iterdir()) == []

    async def test_unexpected_error(self, recreator, remotes, clone_root, monkeypatch):
        async def broken_push(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(git, "push", broken_push)
        c = remotes.commits
        with pytest.raises(RuntimeError):
            await recreator.recreate(_manual(c["first"], c["init"]))
        assert list(clone_root.iterdir()) == []

    async def test_pr_opened_concurrently(self, recreator, remotes, fake_github, clone_root, monkeypatch):
        create_pull = fake_github._create_pull

        def racing(repo, body):
            # Another caller opens the same PR just before this one.
            create_pull(repo, body)
            return create_pull(repo, body)

        monkeypatch.setattr(fake_github, "_create_pull", racing)
        c = remotes.commits
        result = await recreator.recreate(_manual(c["first"], c["init"]))

        assert result.already_existed
        assert result.pr_url == "https://github.com/octo/widgets/pull/1"
        assert len(fake_github.pulls) == 1
        assert list(clone_root.iterdir()) == []


class TestCherryPickMode:
    async def test_single_parent_has_no_mainline(self, recreator, remotes, monkeypatch):
        mainlines = []
        cherry_pick = git.cherry_pick

        async def recording(cwd, commit, mainline=None):
            mainlines.append(mainline)
            return await cherry_pick(cwd, commit, mainline=mainline)

        monkeypatch.setattr(git, "cherry_pick", recording)
        c = remotes.commits
        await recreator.recreate(_manual(c["first"], c["init"]))
        await recreator.recreate(_manual(c["merge"], c["main_side"]))

        assert mainlines == [None, 1]


class TestValidation:
    async def test_missing_token(self, remotes):
        recreator = PRRecreator(None, clone_url=remotes.url)
        with pytest.raises(ConfigurationError) as exc:
            await recreator.recreate(_manual("abcdef1", "abcdef2"))
        assert exc.value.status_code == 500

    async def test_empty_token(self, remotes):
        recreator = PRRecreator(GitHubClient(""), clone_url=remotes.url)
        with pytest.raises(ConfigurationError):
            await recreator.recreate(_manual("abcdef1", "abcdef2"))

    async def test_invalid_url(self, recreator):
        with pytest.raises(InvalidInputError) as exc:
            await recreator.recreate(RecreationRequest("https://gitlab.com/a/b", "abcdef1", "abcdef2"))
        assert "Invalid GitHub URL format" in exc.value.message

    async def test_manual_mode_requires_both_hashes(self, recreator):
        with pytest.raises(InvalidInputError):
            await recreator.recreate(RecreationRequest(REPO_URL, commit_hash="abcdef1"))

    async def test_bad_hash(self, recreator):
        with pytest.raises(InvalidInputError):
            await recreator.recreate(_manual("not-a-sha", "abcdef2"))


class TestAutoRecreation:
    async def test_forks_into_org(self, recreator, remotes, fake_github):
        c = remotes.commits
        request = RecreationRequest(
            repo_url=REPO_URL, commit_hash=c["first"], auto=True, fork_owner="gtm-org"
        )
        result = await recreator.recreate(request)

        fork = RepoRef("gtm-org", "widgets")
        assert fake_github.forks == [("octo/widgets", "gtm-org", "widgets")]
        assert fake_github.actions_disabled == ["gtm-org/widgets"]
        assert result.fork_url == "https://github.com/gtm-org/widgets"
        assert result.pr_url.startswith("https://github.com/gtm-org/widgets/pull/")
        assert result.branch_name in remotes.branches(fork)
        assert result.branch_name not in remotes.branches(UPSTREAM)

    async def test_existing_fork_is_reused(self, recreator, remotes, fake_github):
        c = remotes.commits
        request = RecreationRequest(repo_url=REPO_URL, commit_hash=c["first"], auto=True, fork_owner="gtm-org")
        await recreator.recreate(request)
        request.commit_hash = c["main_side"]
        await recreator.recreate(request)
        assert len(fake_github.forks) == 1

    async def test_forks_into_bot_account_without_owner(self, recreator, remotes, fake_github):
        request = RecreationRequest(repo_url=REPO_URL, commit_hash=remotes.commits["first"], auto=True)
        result = await recreator.recreate(request)
        assert fake_github.forks == [("octo/widgets", "review-bot", "widgets")]
        assert result.fork_url == "https://github.com/review-bot/widgets"

    async def test_defaults_to_main_tip(self, recreator, remotes):
        c = remotes.commits
        result = await recreator.recreate(RecreationRequest(repo_url=REPO_URL, auto=True, fork_owner="gtm-org"))
        assert result.commit_hash == c["conflict_change"]
        bare = remotes.path(RepoRef("gtm-org", "widgets"))
        assert run_git(bare, "rev-parse", f"{result.branch_name}~1") == c["conflict_base"]

    async def test_missing_upstream(self, recreator):
        request = RecreationRequest(
            repo_url="https://github.com/octo/missing", commit_hash="abcdef1", auto=True, fork_owner="gtm-org"
        )
        with pytest.raises(NotFoundError):
            await recreator.recreate(request)


class TestEventStream:
    async def test_status_events_then_result(self, recreator, remotes):
        c = remotes.commits
        events = [e async for e in iter_recreation_events(recreator, _manual(c["first"], c["init"]))]

        assert all(e["eventType"] == "status" for e in events[:-1])
        assert events[0]["step"] == 1
        result = events[-1]
        assert result["eventType"] == "result"
        assert result["success"] is True
        assert result["prUrl"] == "https://github.com/octo/widgets/pull/1"

    async def test_error_event(self, recreator, remotes, clone_root):
        c = remotes.commits
        events = [e async for e in iter_recreation_events(recreator, _manual(c["conflict_change"], c["init"]))]

        assert events[-2]["eventType"] == "status"
        assert events[-2]["statusType"] == "error"
        result = events[-1]
        assert result["eventType"] == "result"
        assert result["success"] is False
        assert result["statusCode"] == 409
        assert "cherry-pick" in result["error"]
        assert list(clone_root.iterdir()) == []
