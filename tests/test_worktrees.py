import asyncio
import shutil
import subprocess
from pathlib import Path
from typing import Any

import pytest

from foreman.errors import (
    BranchConflictError,
    DirectoryExistsError,
    GitFailureError,
    ValidationError,
    WorktreeTimeoutError,
)
from foreman.git import GitRunner
from foreman.worktrees import WorktreeManager, parse_worktree_list


def _run(cmd: list[str], cwd: Path) -> str:
    return subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True).stdout


def _init_git_repo(repo_path: Path) -> None:
    repo_path.mkdir(parents=True, exist_ok=True)
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "symbolic-ref", "HEAD", "refs/heads/main"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _branch_exists(repo: Path, branch: str) -> bool:
    proc = subprocess.run(
        ["git", "show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
        cwd=repo,
        capture_output=True,
    )
    return proc.returncode == 0


class HangingGit(GitRunner):
    """Registers the worktree for real, then never returns."""

    def build_command(self, args: list[str]) -> list[str]:
        if args[:2] == ["worktree", "add"]:
            script = 'git worktree add "$1" "$2" >/dev/null 2>&1; sleep 30'
            return ["sh", "-c", script, "sh", *args[2:]]
        return super().build_command(args)


def test_create_list_and_remove(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    manager = WorktreeManager(repo)
    target = tmp_path / "repo-auth"

    created = asyncio.run(manager.create(target, "auth"))

    assert created == {"path": str(target.resolve()), "branch": "auth", "created_branch": True}
    assert (target / "seed.txt").exists()
    assert manager.checked_out_at("auth") == str(target.resolve())

    removed = manager.remove(target)

    assert removed["removed"] is True
    assert not target.exists()
    assert [item.path for item in manager.list()] == [str(repo.resolve())]
    assert _branch_exists(repo, "auth")


def test_existing_directory_is_rejected_before_branch_creation(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    target = tmp_path / "occupied"
    target.mkdir()

    with pytest.raises(DirectoryExistsError) as excinfo:
        asyncio.run(WorktreeManager(repo).create(target, "feature"))

    assert excinfo.value.to_dict()["kind"] == "directory_exists"
    assert not _branch_exists(repo, "feature")


def test_branch_checked_out_elsewhere_conflicts(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)

    with pytest.raises(BranchConflictError) as excinfo:
        asyncio.run(WorktreeManager(repo).create(tmp_path / "repo-main", "main"))

    assert excinfo.value.details["path"] == str(repo.resolve())
    assert not (tmp_path / "repo-main").exists()


def test_bad_base_is_git_failure(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)

    with pytest.raises(GitFailureError):
        asyncio.run(WorktreeManager(repo).create(tmp_path / "repo-x", "x", base="no-such-ref"))

    assert not _branch_exists(repo, "x")


def test_invalid_branch_name(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)

    with pytest.raises(ValidationError):
        asyncio.run(WorktreeManager(repo).create(tmp_path / "repo-x", "bad..name"))


def test_timeout_rolls_back_directory_registration_and_branch(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    events: list[dict[str, Any]] = []
    ticks: list[float] = []
    manager = WorktreeManager(
        repo,
        git=HangingGit(),
        progress_interval_seconds=0.2,
        event_hook=events.append,
    )
    target = tmp_path / "repo-slow"

    with pytest.raises(WorktreeTimeoutError) as excinfo:
        asyncio.run(manager.create(target, "slow", timeout_seconds=1.5, progress=ticks.append))

    assert excinfo.value.to_dict()["kind"] == "timeout"
    assert not target.exists()
    assert [item.path for item in WorktreeManager(repo).list()] == [str(repo.resolve())]
    assert not _branch_exists(repo, "slow")
    assert not (repo / ".git" / "worktrees" / "repo-slow").exists()
    assert ticks
    assert any(event["event"] == "worktree_progress" for event in events)
    assert events[-1] == {
        "event": "worktree_rolled_back",
        "path": str(target.resolve()),
        "branch": "slow",
        "branch_deleted": True,
    }


def test_timeout_keeps_preexisting_branch(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    _run(["git", "branch", "keep"], cwd=repo)
    manager = WorktreeManager(repo, git=HangingGit())

    with pytest.raises(WorktreeTimeoutError):
        asyncio.run(manager.create(tmp_path / "repo-keep", "keep", timeout_seconds=1.0))

    assert _branch_exists(repo, "keep")
    assert not (tmp_path / "repo-keep").exists()


def test_remove_tolerates_directory_deleted_out_of_band(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    manager = WorktreeManager(repo)
    target = tmp_path / "repo-gone"
    asyncio.run(manager.create(target, "gone"))
    shutil.rmtree(target)

    first = manager.remove(target)
    second = manager.remove(target)

    assert first["already_missing"] is True
    assert second["already_missing"] is True
    assert [item.path for item in manager.list()] == [str(repo.resolve())]


def test_remove_refuses_unregistered_directory_without_force(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    stray = tmp_path / "stray"
    stray.mkdir()
    manager = WorktreeManager(repo)

    with pytest.raises(GitFailureError):
        manager.remove(stray)

    assert manager.remove(stray, force=True)["removed"] is True
    assert not stray.exists()


def test_parse_worktree_list() -> None:
    output = (
        "worktree /src/repo\nHEAD abc123\nbranch refs/heads/main\n\n"
        "worktree /src/repo-2\nHEAD def456\ndetached\n"
        "prunable gitdir file points to non-existent location\n"
    )

    worktrees = parse_worktree_list(output)

    assert [item.branch for item in worktrees] == ["main", None]
    assert worktrees[1].detached is True
    assert worktrees[1].prunable is True
