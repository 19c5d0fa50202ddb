"""Async git subprocess wrappers for clone, branch, cherry-pick and push."""

import asyncio
import os
import re
from pathlib import Path

_CREDENTIALS_RE = re.compile(r"(https?://)[^/@\s]+@")


class GitError(Exception):
    """Raised when a git command fails."""


def redact(text: str) -> str:
    """Strip credentials embedded in remote URLs."""
    return _CREDENTIALS_RE.sub(r"\1***@", text)


async def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd) if cwd is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        # The caller may delete cwd next; git must not outlive the task.
        if proc.returncode is None:
            proc.kill()
        await proc.wait()
        raise
    if proc.returncode != 0:
        command = redact(" ".join(args))
        message = redact(stderr.decode(errors="replace").strip())
        raise GitError(f"git {command} failed: {message}")
    return stdout.decode(errors="replace").strip()


async def clone(url: str, dest: str | Path, single_branch: bool = False) -> str:
    """Clone a repository. Full history on all branches unless single_branch."""
    args = ["clone"]
    if not single_branch:
        args.append("--no-single-branch")
    args += [url, str(dest)]
    return await run_git(args)


async def set_config(cwd: str | Path, key: str, value: str) -> str:
    return await run_git(["config", key, value], cwd=cwd)


async def add_remote(cwd: str | Path, name: str, url: str) -> str:
    return await run_git(["remote", "add", name, url], cwd=cwd)


async def fetch(cwd: str | Path, remote: str | None = None, *refspecs: str) -> str:
    """Fetch a single remote, or all remotes when none is given."""
    args = ["fetch", remote, *refspecs] if remote else ["fetch", "--all"]
    return await run_git(args, cwd=cwd)


async def rev_parse(cwd: str | Path, rev: str) -> str:
    return await run_git(["rev-parse", "--verify", f"{rev}^{{commit}}"], cwd=cwd)


async def commit_exists(cwd: str | Path, rev: str) -> bool:
    try:
        await rev_parse(cwd, rev)
        return True
    except GitError:
        return False


async def checkout_new_branch(cwd: str | Path, branch: str, start_point: str) -> str:
    return await run_git(["checkout", "-b", branch, start_point], cwd=cwd)


async def checkout(cwd: str | Path, branch: str) -> str:
    return await run_git(["checkout", branch], cwd=cwd)


async def reset_hard(cwd: str | Path, rev: str) -> str:
    return await run_git(["reset", "--hard", rev], cwd=cwd)


async def cherry_pick(cwd: str | Path, commit: str, mainline: int | None = None) -> str:
    """Cherry-pick a commit. Pass mainline=1 to replay a merge commit against its first parent."""
    args = ["cherry-pick"]
    if mainline is not None:
        args += ["-m", str(mainline)]
    args.append(commit)
    return await run_git(args, cwd=cwd)


async def cherry_pick_abort(cwd: str | Path) -> str:
    return await run_git(["cherry-pick", "--abort"], cwd=cwd)


async def push(cwd: str | Path, remote: str, branch: str, force: bool = False) -> str:
    args = ["push", remote, branch]
    if force:
        args.append("--force")
    return await run_git(args, cwd=cwd)


async def delete_remote_branch(cwd: str | Path, branch: str, remote: str = "origin") -> str:
    return await run_git(["push", remote, "--delete", branch], cwd=cwd)
