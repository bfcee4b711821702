from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from flowci.git_facts.git import changed_since, clone_or_update, current_ref, head_sha, is_dirty

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(repo: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-c", "user.name=test", "-c", "user.email=test@example.com", *args],
        cwd=repo,
        check=True,
        capture_output=True,
    )


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    git(path, "init", "-q", "-b", "main")
    (path / "a.txt").write_text("a\n")
    git(path, "add", "a.txt")
    git(path, "commit", "-q", "-m", "first")
    return path


def test_head_and_ref(repo: Path) -> None:
    assert len(head_sha(cwd=repo)) == 40
    assert current_ref(cwd=repo) == "refs/heads/main"


def test_detached_head_reports_sha(repo: Path) -> None:
    sha = head_sha(cwd=repo)
    git(repo, "checkout", "-q", "--detach")
    assert current_ref(cwd=repo) == sha


def test_changed_since_dirty_tree(repo: Path) -> None:
    assert not is_dirty(cwd=repo)
    (repo / "a.txt").write_text("changed\n")
    (repo / "new.txt").write_text("new\n")
    assert changed_since("origin/main", cwd=repo) == ["a.txt", "new.txt"]


def test_changed_since_clean_tree_uses_previous_commit(repo: Path) -> None:
    (repo / "b.txt").write_text("b\n")
    git(repo, "add", "b.txt")
    git(repo, "commit", "-q", "-m", "second")
    # no origin/main, so the diff falls back to HEAD~1
    assert changed_since("origin/main", cwd=repo) == ["b.txt"]


def test_changed_since_first_commit_lists_tracked_files(repo: Path) -> None:
    assert changed_since("origin/main", cwd=repo) == ["a.txt"]


def test_clone_or_update(repo: Path, tmp_path: Path) -> None:
    dest = tmp_path / "work" / "clone"
    clone_or_update(str(repo), "", dest)
    assert (dest / "a.txt").read_text() == "a\n"
    assert head_sha(cwd=dest) == head_sha(cwd=repo)

    # second call fetches instead of cloning
    clone_or_update(str(repo), "main", dest)

    with pytest.raises(RuntimeError):
        clone_or_update(str(tmp_path / "missing"), "", tmp_path / "other")
