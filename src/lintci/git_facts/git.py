# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


class GitError(RuntimeError):
    """Raised when a git command exits non-zero."""


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.
    Every other function builds on top of this to ensure:
    - consistent invocation of git
    - consistent text output (not bytes)
    - one error type (GitError) carrying git's own stderr

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.
             Useful if the caller is not already inside the repo.

    Returns:
        Stdout from the git command with surrounding whitespace removed.
    """
    proc = subprocess.run(
        ["git", *args],
        cwd=cwd,
        text=True,   # return output as str instead of bytes
        capture_output=True,
    )
    if proc.returncode != 0:
        raise GitError(f"git {' '.join(args)} failed: {proc.stderr.strip()}")

    # Strip trailing newlines so callers can do clean string comparisons
    return proc.stdout.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def repo_root(cwd: Optional[str] = None) -> Path:
    """
    Return the absolute path to the root of the current Git repository.

    `git rev-parse --show-toplevel` prints the repo root directory regardless
    of where the command is run from inside the repo.
    """
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """
    Return the full SHA hash of the current HEAD commit.

    Used to check that a local run lints the commit the event refers to.
    """
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Return the symbolic ref of HEAD ("refs/heads/dev"), or the SHA when detached.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except GitError:
        return head_sha(cwd=cwd)


def remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def is_dirty(cwd: Optional[str] = None) -> bool:
    """
    Check whether the working tree has uncommitted changes.

    This includes:
    - modified files
    - staged files
    - untracked files

    `git status --porcelain` produces stable, machine-readable output.
    Any output at all indicates the working tree is not clean.
    """
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str] = None) -> List[str]:
    """
    Return a list of files changed between two Git references.

    File paths are returned relative to the repository root, which is the
    form trigger path filters are written in.
    """
    # `git diff --name-only` outputs only file paths, one per line
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd))


def merge_base(with_ref: str = "origin/dev", cwd: Optional[str] = None) -> str:
    """
    Return the merge-base (common ancestor) between HEAD and another ref.

    The merge-base is the point where the current branch diverged from the
    given reference: the canonical base for "what does this push/PR change".
    """
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def changed_paths(compare_ref: str = "origin/dev", cwd: Optional[str] = None) -> List[str]:
    """
    Paths a local run should feed to the trigger evaluator.

    - dirty tree: staged + unstaged + untracked files
    - clean tree: HEAD against its merge-base with compare_ref, falling back
      to HEAD~1 when there is no such ref (no remote, shallow clone)

    A repository with a single commit and a clean tree yields [] (the
    trigger treats that as "nothing changed").
    """
    if is_dirty(cwd=cwd):
        files = set()
        files.update(_lines(_git(["diff", "--name-only"], cwd=cwd)))
        files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd=cwd)))
        files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd=cwd)))
        return sorted(files)

    try:
        base = merge_base(compare_ref, cwd=cwd)
    except GitError:
        base = "HEAD~1"

    try:
        return changed_files(base, "HEAD", cwd=cwd)
    except GitError:
        return []


def clone_or_update(repo_url: str, ref: str, work_dir: Path) -> Path:
    """
    Produce a clean checkout of `ref` under work_dir and return its path.

    An existing clone is reused (fetch + forced checkout) to save bandwidth;
    `git clean -ffdx` then removes anything a previous job left behind.
    The build directory is excluded so a restored cache is not wiped.

    Raises:
        RuntimeError: If git is missing or any git operation fails
    """
    work_dir.mkdir(parents=True, exist_ok=True)

    # Simple approach: use last part of URL as directory name
    repo_name = repo_url.rstrip("/").split("/")[-1].removesuffix(".git")
    repo_path = work_dir / repo_name

    try:
        if not (repo_path / ".git").exists():
            _git(["clone", repo_url, str(repo_path)])
        _git(["fetch", "--force", "origin", ref], cwd=str(repo_path))
        _git(["checkout", "--force", "--detach", "FETCH_HEAD"], cwd=str(repo_path))
        _git(["clean", "-ffdx", "--exclude=target"], cwd=str(repo_path))
    except FileNotFoundError:
        raise RuntimeError("git command not found. Please install Git.") from None

    return repo_path
