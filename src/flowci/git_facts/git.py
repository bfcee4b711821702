# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Full ref of the checked out branch (e.g. "refs/heads/main"), or the
    HEAD commit SHA when detached.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def remote_url(name: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", name], cwd=cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True if the working tree has modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """Files (relative to repo root) that changed between two refs."""
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    return out.splitlines() if out else []


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def working_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked files of a dirty working tree."""
    files = set()
    for args in (
        ["diff", "--name-only"],
        ["diff", "--name-only", "--cached"],
        ["ls-files", "--others", "--exclude-standard"],
    ):
        out = _git(args, cwd=cwd)
        if out:
            files.update(out.splitlines())
    return sorted(files)


def changed_since(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files a push from this checkout would touch.

    Dirty tree: the working changes. Clean tree: HEAD against its merge-base
    with `compare_ref`, falling back to HEAD~1, then to every tracked file
    on a first commit.
    """
    if is_dirty(cwd=cwd):
        return working_changes(cwd=cwd)
    try:
        base = merge_base(compare_ref, cwd=cwd)
    except subprocess.CalledProcessError:
        base = "HEAD~1"
    try:
        return changed_files(base, "HEAD", cwd=cwd)
    except subprocess.CalledProcessError:
        tracked = _git(["ls-files"], cwd=cwd)
        return tracked.splitlines() if tracked else []


def clone_or_update(repo_url: str, ref: str, dest: Path) -> Path:
    """
    Clone `repo_url` into `dest` (or fetch if it already exists) and check
    out `ref`.

    Raises:
        RuntimeError: if a git operation fails or git is missing
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        if (dest / ".git").exists():
            _run_git(["fetch", "origin"], cwd=dest)
        else:
            _run_git(["clone", repo_url, str(dest)])
        if ref:
            _run_git(["checkout", ref], cwd=dest)
    except FileNotFoundError:
        raise RuntimeError("git command not found. Please install Git.")
    return dest


def _run_git(args: list[str], cwd: Optional[Path] = None) -> None:
    result = subprocess.run(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        check=False,
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        raise RuntimeError(f"git {args[0]} failed: {result.stderr.strip()}")
