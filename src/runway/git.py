# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


class GitError(RuntimeError):
    pass


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises GitError when git is missing or exits non-zero.
    """
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=str(cwd) if cwd is not None else None,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError:
        raise GitError("git command not found. Please install Git.") from None
    if proc.returncode != 0:
        raise GitError(f"git {' '.join(args)} failed: {proc.stderr.strip()}")
    return proc.stdout.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Branch name (refs/heads/<branch>) or, on a detached HEAD, the commit SHA.
    """
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if branch == "HEAD":
        return head_sha(cwd)
    return f"refs/heads/{branch}"


def remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def repo_name(cwd: Optional[str | Path] = None) -> str:
    """Short repository name for headers; falls back to the directory name."""
    try:
        url = remote_url("origin", cwd=cwd)
        return url.rstrip("/").split("/")[-1].replace(".git", "")
    except GitError:
        return Path(cwd or ".").resolve().name


def clone_at_ref(repo_url: str, ref: str, work_dir: Path) -> Path:
    """
    Clone (or update) a repository and check out `ref`.

    Returns the path of the checkout under work_dir.
    """
    work_dir.mkdir(parents=True, exist_ok=True)

    # last part of the URL as directory name
    name = repo_url.rstrip("/").split("/")[-1].replace(".git", "") or "repo"
    repo_path = work_dir / name

    if repo_path.exists():
        _git(["fetch", "origin", "--tags", "--prune"], cwd=repo_path)
    else:
        _git(["clone", repo_url, str(repo_path)])

    checkout_ref = ref
    if ref.startswith("refs/heads/"):
        checkout_ref = "origin/" + ref[len("refs/heads/"):]
    _git(["checkout", "--force", "--detach", checkout_ref], cwd=repo_path)
    return repo_path
