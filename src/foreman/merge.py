from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from foreman.claims import ClaimManager
from foreman.config import MergeConfig
from foreman.errors import (
    ConflictManualRequiredError,
    ForemanError,
    GitCommandError,
    SessionError,
    SessionNotFoundError,
    ValidationError,
)
from foreman.git import GitRunner
from foreman.resolution import (
    CATEGORY_POLICY,
    ConflictResolution,
    ConflictResolver,
    categorize_file,
)
from foreman.sessions import Session, SessionRegistry
from foreman.state.store import JsonStateStore
from foreman.worktrees import WorktreeManager

logger = logging.getLogger(__name__)

MERGES_NAMESPACE = "merges"
MERGES_SCHEMA_VERSION = 1
STRATEGIES = ("squash", "preserve-history")

_FIELD_SEPARATOR = "\x1f"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class MergeResult:
    session_id: str
    branch: str
    target: str
    strategy: str
    outcome: str = "aborted"
    reason: str | None = None
    commits: list[dict[str, Any]] = field(default_factory=list)
    files_changed: list[dict[str, Any]] = field(default_factory=list)
    conflicts: list[ConflictResolution] = field(default_factory=list)
    new_commits: list[str] = field(default_factory=list)
    error: dict[str, Any] | None = None
    branch_deleted: bool = False
    worktree_deleted: bool = False
    stash_restored: bool = False
    released_claims: list[str] = field(default_factory=list)
    cleanup_errors: list[dict[str, Any]] = field(default_factory=list)
    merged_at: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome == "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "outcome": self.outcome,
            "reason": self.reason,
            "session_id": self.session_id,
            "branch": self.branch,
            "target": self.target,
            "strategy": self.strategy,
            "commits": list(self.commits),
            "files_changed": list(self.files_changed),
            "conflicts": [item.to_dict() for item in self.conflicts],
            "new_commits": list(self.new_commits),
            "error": self.error,
            "branch_deleted": self.branch_deleted,
            "worktree_deleted": self.worktree_deleted,
            "stash_restored": self.stash_restored,
            "released_claims": list(self.released_claims),
            "cleanup_errors": list(self.cleanup_errors),
            "merged_at": self.merged_at,
        }


class MergeEngine:
    """Lands a session's committed work on the target branch of the main checkout."""

    def __init__(
        self,
        repo_root: Path,
        store: JsonStateStore,
        sessions: SessionRegistry,
        *,
        worktrees: WorktreeManager | None = None,
        git: GitRunner | None = None,
        claims: ClaimManager | None = None,
        config: MergeConfig | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.store = store
        self.sessions = sessions
        self.git = git or GitRunner()
        self.worktrees = worktrees or sessions.worktrees
        self.claims = claims
        self.config = config or MergeConfig()
        self.event_hook = event_hook
        self.resolver = ConflictResolver(self.repo_root, git=self.git)
        self.store.register(MERGES_NAMESPACE, MERGES_SCHEMA_VERSION)

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def _session(self, ref: str | int) -> Session:
        session = self.sessions.get(ref)
        if session.is_main:
            raise SessionError(
                "The main session cannot be merged into itself.",
                session_id=session.id,
            )
        if not Path(session.path).exists():
            raise SessionError(
                f"Session {session.id} worktree is missing: {session.path}",
                session_id=session.id,
                path=session.path,
            )
        return session

    def target_branch(self, override: str | None = None) -> str:
        if override:
            return override
        if self.config.target_branch:
            return self.config.target_branch
        for candidate in ("main", "master"):
            if self.git.branch_exists(self.repo_root, candidate):
                return candidate
        return self.sessions.main().branch

    @staticmethod
    def _label(session: Session) -> str:
        return session.nickname or session.id

    def check_uncommitted(self, ref: str | int) -> dict[str, Any]:
        session = self._session(ref)
        path = Path(session.path)
        files = self.git.status(path)
        numstat = self.git.run(["diff", "HEAD", "--numstat"], path, check=False).stdout
        line_counts: dict[str, tuple[int, int]] = {}
        for line in numstat.splitlines():
            parts = line.split("\t")
            if len(parts) == 3 and parts[0].isdigit() and parts[1].isdigit():
                line_counts[parts[2]] = (int(parts[0]), int(parts[1]))
        for entry in files:
            added, removed = line_counts.get(entry["path"], (0, 0))
            entry["insertions"] = added
            entry["deletions"] = removed
        return {
            "session_id": session.id,
            "branch": session.branch,
            "path": session.path,
            "clean": not files,
            "reason": "uncommitted_changes" if files else None,
            "files": files,
            "summary": {
                "total": len(files),
                "staged": sum(1 for entry in files if entry["staged"]),
                "untracked": sum(1 for entry in files if entry["untracked"]),
                "insertions": sum(entry["insertions"] for entry in files),
                "deletions": sum(entry["deletions"] for entry in files),
            },
        }

    @staticmethod
    def generate_commit_message(label: str, files: list[dict[str, Any]]) -> str:
        counts: dict[str, int] = {}
        for entry in files:
            category = categorize_file(entry["path"])
            counts[category] = counts.get(category, 0) + 1
        breakdown = ", ".join(f"{count} {category}" for category, count in sorted(counts.items()))
        lines = [f"Session {label}: update {len(files)} file(s) ({breakdown})", ""]
        lines.extend(f"- {entry['status']} {entry['path']}" for entry in files[:20])
        if len(files) > 20:
            lines.append(f"- ... and {len(files) - 20} more")
        return "\n".join(lines).strip() + "\n"

    def commit_changes(self, ref: str | int, message: str | None = None) -> dict[str, Any]:
        session = self._session(ref)
        path = Path(session.path)
        files = self.git.status(path)
        if not files:
            return {"session_id": session.id, "committed": False, "commit": None, "message": None}
        commit_message = message or self.generate_commit_message(self._label(session), files)
        self.git.run(["add", "-A"], path)
        self.git.run(["commit", "-m", commit_message], path)
        commit = self.git.head(path)
        logger.info("committed %d file(s) in session %s as %s", len(files), session.id, commit[:10])
        return {
            "session_id": session.id,
            "committed": True,
            "commit": commit,
            "message": commit_message,
            "files": len(files),
        }

    @staticmethod
    def _stash_message(session_id: str) -> str:
        return f"foreman: session {session_id} merge prep"

    def _find_stash(self, message: str) -> str | None:
        proc = self.git.run(["stash", "list", f"--format=%gd{_FIELD_SEPARATOR}%gs"], self.repo_root)
        for line in proc.stdout.splitlines():
            ref, _, subject = line.partition(_FIELD_SEPARATOR)
            if subject.endswith(message):
                return ref
        return None

    def _update_stashes(self, change: Callable[[dict[str, Any]], None]) -> None:
        def _updater(data: Any) -> dict[str, Any]:
            payload = data if isinstance(data, dict) else {}
            change(payload.setdefault("stashes", {}))
            return payload

        self.store.update(MERGES_NAMESPACE, _updater, default={"entries": [], "last_merge": None})

    def _stashed_session_id(self, ref: str | int) -> str:
        """Map a session ref to its id, falling back to recorded stashes once the session is gone."""
        try:
            return self.sessions.get(ref).id
        except SessionNotFoundError:
            stashes = self.store.get(MERGES_NAMESPACE, default={}).get("stashes") or {}
            for session_id, record in stashes.items():
                if str(ref) in (session_id, record.get("nickname")):
                    return session_id
            return str(ref)

    def stash_changes(self, ref: str | int) -> dict[str, Any]:
        session = self._session(ref)
        path = Path(session.path)
        files = self.git.status(path)
        if not files:
            return {"session_id": session.id, "stashed": False, "stash": None}
        message = self._stash_message(session.id)
        self.git.run(["stash", "push", "--include-untracked", "-m", message], path)
        record = {
            "message": message,
            "nickname": session.nickname,
            "branch": session.branch,
            "at": _utcnow_iso(),
        }
        self._update_stashes(lambda stashes: stashes.update({session.id: record}))
        return {
            "session_id": session.id,
            "stashed": True,
            "stash": self._find_stash(message),
            "message": message,
            "files": len(files),
        }

    def unstash(self, ref: str | int) -> dict[str, Any]:
        """Pop the session's merge-prep stash onto the main checkout.

        Works after the session has been integrated and dropped from the registry.
        """
        session_id = self._stashed_session_id(ref)
        stash_ref = self._find_stash(self._stash_message(session_id))
        if stash_ref is None:
            return {"session_id": session_id, "restored": False, "stash": None}
        self.git.run(["stash", "pop", stash_ref], self.repo_root)
        self._update_stashes(lambda stashes: stashes.pop(session_id, None))
        logger.info("restored %s for session %s onto %s", stash_ref, session_id, self.repo_root)
        return {"session_id": session_id, "restored": True, "stash": stash_ref}

    def discard_changes(self, ref: str | int) -> dict[str, Any]:
        """Throw away tracked modifications; untracked files are never deleted."""
        session = self._session(ref)
        path = Path(session.path)
        files = self.git.status(path)
        tracked = [entry["path"] for entry in files if not entry["untracked"]]
        if tracked:
            self.git.run(["reset", "-q", "HEAD"], path)
            self.git.run(["checkout", "--", "."], path)
        untracked = [entry["path"] for entry in self.git.status(path) if entry["untracked"]]
        return {
            "session_id": session.id,
            "discarded": tracked,
            "untracked_preserved": untracked,
        }

    def _log(self, target: str, branch: str) -> list[dict[str, Any]]:
        proc = self.git.run(
            [
                "log",
                "--reverse",
                f"--format=%H{_FIELD_SEPARATOR}%h{_FIELD_SEPARATOR}%s"
                f"{_FIELD_SEPARATOR}%an{_FIELD_SEPARATOR}%aI",
                f"{target}..{branch}",
            ],
            self.repo_root,
        )
        commits = []
        for line in proc.stdout.splitlines():
            parts = line.split(_FIELD_SEPARATOR)
            if len(parts) != 5:
                continue
            commits.append(
                {
                    "hash": parts[0],
                    "short_hash": parts[1],
                    "subject": parts[2],
                    "author": parts[3],
                    "date": parts[4],
                }
            )
        return commits

    def _changed_files(self, target: str, branch: str) -> list[dict[str, Any]]:
        proc = self.git.run(["diff", "--name-status", f"{target}...{branch}"], self.repo_root)
        files = []
        for line in proc.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) < 2:
                continue
            entry = {"status": parts[0][:1], "path": parts[-1]}
            if len(parts) == 3:
                entry["previous_path"] = parts[1]
            entry["category"] = categorize_file(entry["path"])
            files.append(entry)
        return files

    def preview(self, ref: str | int, target: str | None = None) -> dict[str, Any]:
        session = self._session(ref)
        target_branch = self.target_branch(target)
        commits = self._log(target_branch, session.branch)
        behind = self.git.output(
            ["rev-list", "--count", f"{session.branch}..{target_branch}"], self.repo_root
        )
        return {
            "session_id": session.id,
            "branch": session.branch,
            "target": target_branch,
            "commits": commits,
            "commits_ahead": len(commits),
            "commits_behind": int(behind or 0),
            "files_changed": self._changed_files(target_branch, session.branch),
        }

    def _tracked_changes(self, path: Path) -> list[dict[str, Any]]:
        return [entry for entry in self.git.status(path) if not entry["untracked"]]

    def _prepare_target(self, target: str) -> str:
        dirty = self._tracked_changes(self.repo_root)
        if dirty:
            raise ValidationError(
                "The main checkout has uncommitted changes to tracked files.",
                path=str(self.repo_root),
                files=[entry["path"] for entry in dirty],
            )
        previous = self.git.current_branch(self.repo_root)
        if previous != target:
            self.git.run(["checkout", target], self.repo_root)
        return previous

    def _restore_target(self, head: str) -> None:
        self.git.run(["cherry-pick", "--abort"], self.repo_root, check=False)
        self.git.run(["merge", "--abort"], self.repo_root, check=False)
        self.git.run(["reset", "-q", "--hard", head], self.repo_root)

    def detect_conflicts(self, ref: str | int, target: str | None = None) -> dict[str, Any]:
        """Dry-run the merge in the main checkout and list what would conflict.

        The checkout is returned to its previous branch and a clean tree afterwards.
        """
        session = self._session(ref)
        target_branch = self.target_branch(target)
        with self.store.locked(f"merge-{target_branch}"):
            previous = self._prepare_target(target_branch)
            head = self.git.head(self.repo_root)
            try:
                proc = self.git.run(
                    ["merge", "--no-commit", "--no-ff", session.branch],
                    self.repo_root,
                    check=False,
                )
                conflicted = self.resolver.unmerged_paths()
            finally:
                self._restore_target(head)
                if previous != target_branch and previous != "HEAD":
                    self.git.run(["checkout", previous], self.repo_root)

        if proc.returncode != 0 and not conflicted:
            raise GitCommandError(
                proc.stderr.strip() or proc.stdout.strip() or "Dry-run merge failed.",
                args=["merge", "--no-commit", "--no-ff", session.branch],
                exit_code=proc.returncode,
                cwd=str(self.repo_root),
            )
        conflicts = [
            {
                "path": path,
                "category": categorize_file(path),
                "resolution": CATEGORY_POLICY[categorize_file(path)],
            }
            for path in conflicted
        ]
        return {
            "session_id": session.id,
            "branch": session.branch,
            "target": target_branch,
            "has_conflicts": bool(conflicts),
            "conflicts": conflicts,
            "auto_resolvable": all(item["resolution"] != "manual" for item in conflicts),
        }

    def auto_resolve(self, paths: list[str] | None = None) -> list[ConflictResolution]:
        """Resolve the unmerged entries currently in the main checkout's index."""
        return self.resolver.resolve_all(paths if paths is not None else self.resolver.unmerged_paths())

    def _unresolved(self, paths: list[str]) -> list[ConflictResolution]:
        return [
            ConflictResolution(
                path,
                categorize_file(path),
                "manual",
                False,
                "automatic resolution disabled; use smart-merge",
            )
            for path in paths
        ]

    def _handle_conflicts(
        self,
        proc_stderr: str,
        args: list[str],
        exit_code: int,
        auto_resolve: bool,
    ) -> list[ConflictResolution]:
        unmerged = self.resolver.unmerged_paths()
        if not unmerged:
            raise GitCommandError(
                proc_stderr.strip() or f"git {args[0]} failed.",
                args=args,
                exit_code=exit_code,
                cwd=str(self.repo_root),
            )
        if not auto_resolve:
            return self._unresolved(unmerged)
        return self.auto_resolve(unmerged)

    def _squash(self, branch: str, message: str, auto_resolve: bool) -> list[ConflictResolution]:
        args = ["merge", "--squash", branch]
        proc = self.git.run(args, self.repo_root, check=False)
        resolutions: list[ConflictResolution] = []
        if proc.returncode != 0:
            resolutions = self._handle_conflicts(proc.stderr, args, proc.returncode, auto_resolve)
            if not all(item.resolved for item in resolutions):
                return resolutions
        staged = self.git.run(["diff", "--cached", "--quiet"], self.repo_root, check=False)
        if staged.returncode == 0:
            # The branch nets out to no change against the target.
            squash_msg = self.git.output(["rev-parse", "--git-path", "SQUASH_MSG"], self.repo_root)
            (self.repo_root / squash_msg).unlink(missing_ok=True)
            return resolutions
        self.git.run(["commit", "-m", message], self.repo_root)
        return resolutions

    def _replay(self, branch: str, auto_resolve: bool) -> list[ConflictResolution]:
        ancestor = self.git.run(
            ["merge-base", "--is-ancestor", "HEAD", branch], self.repo_root, check=False
        )
        if ancestor.returncode == 0:
            self.git.run(["merge", "--ff-only", branch], self.repo_root)
            return []

        commits = self.git.output(
            ["rev-list", "--reverse", "--no-merges", f"HEAD..{branch}"], self.repo_root
        ).split()
        resolutions: list[ConflictResolution] = []
        for commit in commits:
            args = ["cherry-pick", "--keep-redundant-commits", commit]
            proc = self.git.run(args, self.repo_root, check=False)
            if proc.returncode == 0:
                continue
            step = self._handle_conflicts(proc.stderr, args, proc.returncode, auto_resolve)
            resolutions.extend(step)
            if not all(item.resolved for item in step):
                return resolutions
            self.git.run(
                ["-c", "core.editor=true", "commit", "--no-edit", "--allow-empty"],
                self.repo_root,
            )
        return resolutions

    def _default_message(self, session: Session, commits: list[dict[str, Any]]) -> str:
        lines = [f"Merge session {self._label(session)} ({session.branch}): {len(commits)} commit(s)", ""]
        lines.extend(f"- {commit['subject']}" for commit in commits)
        return "\n".join(lines).strip() + "\n"

    def integrate(
        self,
        ref: str | int,
        *,
        strategy: str | None = None,
        target: str | None = None,
        delete_branch: bool = True,
        delete_worktree: bool = True,
        message: str | None = None,
        auto_resolve: bool = False,
        unstash: bool = False,
        force_remove: bool = False,
    ) -> MergeResult:
        session = self._session(ref)
        target_branch = self.target_branch(target)
        chosen = strategy or self.config.default_strategy
        if chosen not in STRATEGIES:
            raise ValidationError(f"Unknown merge strategy: {chosen}", strategy=chosen)
        if session.branch == target_branch:
            raise SessionError(
                f"Session {session.id} is on the target branch {target_branch}.",
                session_id=session.id,
            )
        result = MergeResult(
            session_id=session.id,
            branch=session.branch,
            target=target_branch,
            strategy=chosen,
        )

        check = self.check_uncommitted(session.id)
        if not check["clean"]:
            result.reason = "uncommitted_changes"
            result.files_changed = check["files"]
            return result

        preview = self.preview(session.id, target_branch)
        result.commits = preview["commits"]
        result.files_changed = preview["files_changed"]
        if not preview["commits"]:
            result.reason = "no_changes"
            return result

        self._emit({"event": "merge_started", "session_id": session.id, "target": target_branch})
        with self.store.locked(f"merge-{target_branch}"):
            self._prepare_target(target_branch)
            head = self.git.head(self.repo_root)
            try:
                if chosen == "squash":
                    commit_message = message or self._default_message(session, preview["commits"])
                    result.conflicts = self._squash(session.branch, commit_message, auto_resolve)
                else:
                    result.conflicts = self._replay(session.branch, auto_resolve)
            except ForemanError as exc:
                logger.warning("merge of session %s failed: %s", session.id, exc)
                self._restore_target(head)
                result.error = exc.to_dict()
                result.reason = "git_failure"
                self._record(result)
                return result

            if not all(item.resolved for item in result.conflicts):
                self._restore_target(head)
                result.outcome = "manual_required"
                result.reason = "unresolved_conflicts"
                unresolved = [item.path for item in result.conflicts if not item.resolved]
                result.error = ConflictManualRequiredError(
                    f"{len(unresolved)} file(s) need manual conflict resolution.",
                    files=unresolved,
                    branch=session.branch,
                    target=target_branch,
                ).to_dict()
                self._record(result)
                return result

            result.new_commits = self.git.output(
                ["rev-list", "--reverse", f"{head}..HEAD"], self.repo_root
            ).split()
            if not result.new_commits:
                result.reason = "already_merged"

        result.outcome = "success"
        result.merged_at = _utcnow_iso()
        logger.info(
            "merged session %s into %s with %d new commit(s)",
            session.id,
            target_branch,
            len(result.new_commits),
        )
        self._cleanup(session, result, unstash, delete_worktree, delete_branch, force_remove)
        self._record(result)
        self._emit({"event": "merge_finished", "session_id": session.id, "outcome": result.outcome})
        return result

    def smart_merge(self, ref: str | int, **options: Any) -> MergeResult:
        return self.integrate(ref, auto_resolve=True, **options)

    def _cleanup(
        self,
        session: Session,
        result: MergeResult,
        unstash: bool,
        delete_worktree: bool,
        delete_branch: bool,
        force_remove: bool,
    ) -> None:
        if unstash:
            try:
                result.stash_restored = bool(self.unstash(session.id)["restored"])
            except ForemanError as exc:
                result.cleanup_errors.append({"step": "unstash", **exc.to_dict()})
        if delete_worktree:
            try:
                self.worktrees.remove(Path(session.path), force=force_remove)
                self.sessions.forget(session.id)
                result.worktree_deleted = True
                if self.claims is not None:
                    result.released_claims = self.claims.release_all(session.id)
            except ForemanError as exc:
                result.cleanup_errors.append({"step": "delete_worktree", **exc.to_dict()})
        if delete_branch:
            try:
                self.git.run(["branch", "-D", session.branch], self.repo_root)
                result.branch_deleted = True
            except ForemanError as exc:
                result.cleanup_errors.append({"step": "delete_branch", **exc.to_dict()})

    def _record(self, result: MergeResult) -> None:
        entry = {
            "at": _utcnow_iso(),
            "session_id": result.session_id,
            "branch": result.branch,
            "target": result.target,
            "strategy": result.strategy,
            "outcome": result.outcome,
            "reason": result.reason,
            "commits": len(result.commits),
            "files_changed": len(result.files_changed),
            "new_commits": list(result.new_commits),
            "conflicts": [item.to_dict() for item in result.conflicts],
        }
        limit = max(1, int(self.config.history_limit))

        def _updater(data: Any) -> dict[str, Any]:
            payload = data if isinstance(data, dict) else {}
            entries = list(payload.get("entries") or [])
            entries.append(entry)
            payload["entries"] = entries[-limit:]
            if result.outcome == "success":
                payload["last_merge"] = entry
            return payload

        self.store.update(MERGES_NAMESPACE, _updater, default={"entries": [], "last_merge": None})

    def history(self, limit: int | None = None) -> list[dict[str, Any]]:
        entries = self.store.get(MERGES_NAMESPACE, default={"entries": []}).get("entries", [])
        return entries[-limit:] if limit else entries

    def last_merge(self) -> dict[str, Any] | None:
        return self.store.get(MERGES_NAMESPACE, default={}).get("last_merge")
