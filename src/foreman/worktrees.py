from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from foreman.errors import (
    BranchConflictError,
    DirectoryExistsError,
    GitFailureError,
    WorktreeTimeoutError,
)
from foreman.git import GitRunner, validate_branch_name
from foreman.process import ProgressCallback

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class WorktreeInfo:
    path: str
    head: str | None = None
    branch: str | None = None
    detached: bool = False
    locked: bool = False
    prunable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "head": self.head,
            "branch": self.branch,
            "detached": self.detached,
            "locked": self.locked,
            "prunable": self.prunable,
        }


def parse_worktree_list(output: str) -> list[WorktreeInfo]:
    worktrees: list[WorktreeInfo] = []
    current: WorktreeInfo | None = None
    for line in output.splitlines():
        if not line.strip():
            current = None
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            current = WorktreeInfo(path=value)
            worktrees.append(current)
            continue
        if current is None:
            continue
        if key == "HEAD":
            current.head = value
        elif key == "branch":
            current.branch = value.removeprefix("refs/heads/")
        elif key == "detached":
            current.detached = True
        elif key == "locked":
            current.locked = True
        elif key == "prunable":
            current.prunable = True
    return worktrees


class WorktreeManager:
    """Creates and removes linked worktrees, undoing partial work on failure."""

    def __init__(
        self,
        repo_root: Path,
        *,
        git: GitRunner | None = None,
        kill_grace_seconds: float = 1.0,
        progress_interval_seconds: float = 10.0,
        event_hook: EventHook | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.git = git or GitRunner()
        self.kill_grace_seconds = kill_grace_seconds
        self.progress_interval_seconds = progress_interval_seconds
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def list(self) -> list[WorktreeInfo]:
        proc = self.git.run(["worktree", "list", "--porcelain"], self.repo_root)
        return parse_worktree_list(proc.stdout)

    def checked_out_at(self, branch: str) -> str | None:
        for worktree in self.list():
            if worktree.branch == branch:
                return worktree.path
        return None

    def prune(self) -> None:
        self.git.run(["worktree", "prune"], self.repo_root, check=False)

    async def create(
        self,
        path: Path,
        branch: str,
        *,
        base: str = "HEAD",
        timeout_seconds: float = 120.0,
        progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        branch = validate_branch_name(branch)
        target = path.resolve()
        if target.exists():
            raise DirectoryExistsError(
                f"Worktree directory already exists: {target}",
                path=str(target),
                branch=branch,
            )
        existing = self.checked_out_at(branch)
        if existing is not None:
            raise BranchConflictError(
                f"Branch '{branch}' is already checked out at {existing}.",
                branch=branch,
                path=existing,
            )

        created_branch = False
        if not self.git.branch_exists(self.repo_root, branch):
            proc = self.git.run(["branch", branch, base], self.repo_root, check=False)
            if proc.returncode != 0:
                raise GitFailureError(
                    proc.stderr.strip() or f"Could not create branch '{branch}'.",
                    branch=branch,
                    base=base,
                    exit_code=proc.returncode,
                )
            created_branch = True

        def _on_progress(elapsed: float) -> None:
            self._emit(
                {
                    "event": "worktree_progress",
                    "path": str(target),
                    "branch": branch,
                    "elapsed_seconds": round(elapsed, 1),
                }
            )
            if progress is not None:
                progress(elapsed)

        logger.info("creating worktree %s on branch %s", target, branch)
        try:
            result = await self.git.run_async(
                ["worktree", "add", str(target), branch],
                self.repo_root,
                timeout_seconds=timeout_seconds,
                kill_grace_seconds=self.kill_grace_seconds,
                progress=_on_progress,
                progress_interval_seconds=self.progress_interval_seconds,
            )
        except BaseException:
            self._rollback(target, branch, created_branch)
            raise

        if result.timed_out:
            self._rollback(target, branch, created_branch)
            raise WorktreeTimeoutError(
                f"Timed out after {timeout_seconds:g}s creating worktree at {target}.",
                path=str(target),
                branch=branch,
                timeout_seconds=timeout_seconds,
            )
        if result.exit_code != 0:
            self._rollback(target, branch, created_branch)
            raise GitFailureError(
                result.stderr.strip() or f"git worktree add exited with {result.exit_code}.",
                path=str(target),
                branch=branch,
                exit_code=result.exit_code,
            )

        self._emit({"event": "worktree_created", "path": str(target), "branch": branch})
        return {"path": str(target), "branch": branch, "created_branch": created_branch}

    def _common_git_dir(self) -> Path:
        raw = Path(self.git.output(["rev-parse", "--git-common-dir"], self.repo_root))
        return raw if raw.is_absolute() else (self.repo_root / raw).resolve()

    def _purge_admin_entries(self, target: Path) -> None:
        # An interrupted "worktree add" can leave a locked admin entry that prune skips.
        admin_root = self._common_git_dir() / "worktrees"
        if not admin_root.is_dir():
            return
        for admin_dir in admin_root.iterdir():
            gitdir_file = admin_dir / "gitdir"
            if not gitdir_file.is_file():
                continue
            recorded = Path(gitdir_file.read_text(encoding="utf-8").strip())
            if recorded.parent.resolve() == target:
                shutil.rmtree(admin_dir, ignore_errors=True)

    def _rollback(self, target: Path, branch: str, created_branch: bool) -> None:
        logger.warning("rolling back worktree %s", target)
        self.git.run(
            ["worktree", "remove", "--force", "--force", str(target)],
            self.repo_root,
            check=False,
        )
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)
        self._purge_admin_entries(target)
        self.prune()
        if created_branch:
            self.git.run(["branch", "-D", branch], self.repo_root, check=False)
        self._emit(
            {
                "event": "worktree_rolled_back",
                "path": str(target),
                "branch": branch,
                "branch_deleted": created_branch,
            }
        )

    def remove(self, path: Path, *, force: bool = False) -> dict[str, Any]:
        target = path.resolve()
        registered = any(Path(item.path).resolve() == target for item in self.list())
        if not target.exists():
            self.prune()
            return {"path": str(target), "removed": False, "already_missing": True}

        if registered:
            args = ["worktree", "remove", str(target)]
            if force:
                args.append("--force")
            proc = self.git.run(args, self.repo_root, check=False)
            if proc.returncode != 0:
                raise GitFailureError(
                    proc.stderr.strip() or f"Could not remove worktree {target}.",
                    path=str(target),
                    exit_code=proc.returncode,
                )
        elif force:
            shutil.rmtree(target)
        else:
            raise GitFailureError(
                f"{target} is not a registered worktree; pass force to delete it.",
                path=str(target),
            )

        self.prune()
        logger.info("removed worktree %s", target)
        return {"path": str(target), "removed": True, "already_missing": False}
