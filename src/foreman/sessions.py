from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Literal

from foreman.config import SessionsConfig
from foreman.errors import GitCommandError, SessionError, SessionNotFoundError, ValidationError
from foreman.git import GitRunner
from foreman.liveness import ProcessLivenessChecker, default_liveness_checker
from foreman.process import ProgressCallback
from foreman.state.store import JsonStateStore
from foreman.worktrees import WorktreeManager

logger = logging.getLogger(__name__)

SessionKind = Literal["main", "worktree"]
SessionStatus = Literal["active", "inactive"]
Clock = Callable[[], datetime]

SESSIONS_NAMESPACE = "sessions"
SESSIONS_SCHEMA_VERSION = 1

_NICKNAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(moment: datetime) -> str:
    return moment.astimezone(UTC).replace(microsecond=0).isoformat()


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _migrate_legacy_registry(data: Any) -> dict[str, Any]:
    """Convert the pre-envelope registry layout (``is_main``/``created``/``last_active``)."""
    if not isinstance(data, dict):
        return {"next_id": 1, "sessions": {}}
    sessions: dict[str, Any] = {}
    for session_id, record in (data.get("sessions") or {}).items():
        if not isinstance(record, dict):
            continue
        sessions[str(session_id)] = {
            "id": str(session_id),
            "kind": "main" if record.get("is_main") else record.get("kind", "worktree"),
            "path": record.get("path", ""),
            "branch": record.get("branch", ""),
            "nickname": record.get("nickname"),
            "pid": record.get("pid"),
            "created_at": record.get("created_at") or record.get("created"),
            "last_active_at": record.get("last_active_at") or record.get("last_active"),
            "status": record.get("status", "active"),
            "story_id": record.get("story_id") or record.get("story"),
        }
    next_id = int(data.get("next_id") or 1)
    numeric_ids = [int(key) for key in sessions if key.isdigit()]
    if numeric_ids:
        next_id = max(next_id, max(numeric_ids) + 1)
    return {"next_id": next_id, "project_name": data.get("project_name"), "sessions": sessions}


@dataclass(slots=True)
class Session:
    id: str
    kind: SessionKind
    path: str
    branch: str
    created_at: str
    last_active_at: str
    nickname: str | None = None
    pid: int | None = None
    status: SessionStatus = "active"
    story_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        now = _iso(_utcnow())
        return cls(
            id=str(data["id"]),
            kind=data.get("kind", "worktree"),
            path=str(data.get("path", "")),
            branch=str(data.get("branch", "")),
            created_at=data.get("created_at") or now,
            last_active_at=data.get("last_active_at") or data.get("created_at") or now,
            nickname=data.get("nickname"),
            pid=data.get("pid"),
            status=data.get("status", "active"),
            story_id=data.get("story_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "path": self.path,
            "branch": self.branch,
            "nickname": self.nickname,
            "pid": self.pid,
            "created_at": self.created_at,
            "last_active_at": self.last_active_at,
            "status": self.status,
            "story_id": self.story_id,
        }

    @property
    def is_main(self) -> bool:
        return self.kind == "main"


class SessionRegistry:
    """Persistent catalog of the main checkout and every worktree session."""

    def __init__(
        self,
        repo_root: Path,
        store: JsonStateStore,
        *,
        worktrees: WorktreeManager | None = None,
        liveness: ProcessLivenessChecker | None = None,
        git: GitRunner | None = None,
        config: SessionsConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.store = store
        self.git = git or GitRunner()
        self.worktrees = worktrees or WorktreeManager(self.repo_root, git=self.git)
        self.liveness = liveness or default_liveness_checker()
        self.config = config or SessionsConfig()
        self.clock = clock or _utcnow
        self.store.register(
            SESSIONS_NAMESPACE,
            SESSIONS_SCHEMA_VERSION,
            migrations={0: _migrate_legacy_registry},
        )

    def _now_iso(self) -> str:
        return _iso(self.clock())

    def _default_data(self) -> dict[str, Any]:
        return {"next_id": 1, "project_name": self.repo_root.name, "sessions": {}}

    def _with_main(self, data: Any) -> dict[str, Any]:
        payload = data if isinstance(data, dict) else self._default_data()
        payload.setdefault("next_id", 1)
        payload.setdefault("sessions", {})
        payload.setdefault("project_name", self.repo_root.name)
        if any(record.get("kind") == "main" for record in payload["sessions"].values()):
            return payload
        session_id = str(payload["next_id"])
        payload["next_id"] = int(payload["next_id"]) + 1
        now = self._now_iso()
        payload["sessions"][session_id] = Session(
            id=session_id,
            kind="main",
            path=str(self.repo_root),
            branch=self.git.current_branch(self.repo_root),
            created_at=now,
            last_active_at=now,
        ).to_dict()
        logger.info("registered main session %s at %s", session_id, self.repo_root)
        return payload

    def _snapshot(self) -> dict[str, Any]:
        data = self.store.get(SESSIONS_NAMESPACE, default=self._default_data())
        if isinstance(data, dict) and any(
            record.get("kind") == "main" for record in data.get("sessions", {}).values()
        ):
            return data
        return self.store.update(SESSIONS_NAMESPACE, self._with_main, default=self._default_data())

    def _effective(self, session: Session) -> Session:
        if session.status == "active" and session.pid is not None:
            if not self.liveness.is_alive(session.pid):
                session.status = "inactive"
        return session

    @staticmethod
    def _find(data: dict[str, Any], ref: str) -> dict[str, Any] | None:
        sessions = data.get("sessions", {})
        if ref in sessions:
            return sessions[ref]
        for record in sessions.values():
            if record.get("nickname") and record.get("nickname") == ref:
                return record
        return None

    def get(self, ref: str | int) -> Session:
        """Look a session up by id or nickname."""
        record = self._find(self._snapshot(), str(ref))
        if record is None:
            raise SessionNotFoundError(f"Session not found: {ref}", session_id=str(ref))
        return self._effective(Session.from_dict(record))

    def list(self) -> list[Session]:
        records = self._snapshot().get("sessions", {}).values()
        sessions = [self._effective(Session.from_dict(record)) for record in records]
        return sorted(
            sessions,
            key=lambda item: (not item.is_main, int(item.id) if item.id.isdigit() else 0),
        )

    def main(self) -> Session:
        for session in self.list():
            if session.is_main:
                return session
        raise SessionError("Main session is missing from the registry.")

    def _validate_nickname(self, nickname: str | None) -> str | None:
        if nickname is None:
            return None
        if not _NICKNAME_PATTERN.match(nickname) or nickname.isdigit():
            raise ValidationError(
                f"Invalid nickname {nickname!r}: use letters, digits, '.', '_' or '-'.",
                nickname=nickname,
            )
        return nickname

    def _worktree_path(self, suffix: str) -> Path:
        parent = self.repo_root.parent
        if self.config.worktree_parent:
            parent = Path(self.config.worktree_parent)
        if not parent.is_absolute():
            parent = self.repo_root / parent
        return parent / f"{self.repo_root.name}-{suffix}"

    def _reserve_id(self, nickname: str | None) -> str:
        reserved: dict[str, str] = {}

        def _updater(data: Any) -> dict[str, Any]:
            payload = self._with_main(data)
            if nickname is not None and self._find(payload, nickname) is not None:
                raise SessionError(f"Nickname '{nickname}' is already in use.", nickname=nickname)
            reserved["id"] = str(payload["next_id"])
            payload["next_id"] = int(payload["next_id"]) + 1
            return payload

        self.store.update(SESSIONS_NAMESPACE, _updater, default=self._default_data())
        return reserved["id"]

    def _copy_env_files(self, target: Path) -> list[str]:
        copied: list[str] = []
        for name in self.config.copy_env_files:
            source = self.repo_root / name
            destination = target / name
            if source.is_file() and not destination.exists():
                shutil.copy2(source, destination)
                copied.append(name)
        return copied

    def _insert(self, session: Session) -> None:
        def _updater(data: Any) -> dict[str, Any]:
            payload = self._with_main(data)
            payload["sessions"][session.id] = session.to_dict()
            return payload

        self.store.update(SESSIONS_NAMESPACE, _updater, default=self._default_data())

    async def create(
        self,
        nickname: str | None = None,
        branch: str | None = None,
        *,
        in_place: bool = False,
        path: Path | None = None,
        base: str = "HEAD",
        pid: int | None = None,
        story_id: str | None = None,
        timeout_seconds: float | None = None,
        progress: ProgressCallback | None = None,
    ) -> Session:
        nickname = self._validate_nickname(nickname)
        if in_place:
            return self._register_existing((path or Path.cwd()).resolve(), nickname, pid, story_id)

        session_id = self._reserve_id(nickname)
        branch_name = branch or f"{self.config.branch_prefix}{session_id}"
        target = self._worktree_path(nickname or session_id)
        created = await self.worktrees.create(
            target,
            branch_name,
            base=base,
            timeout_seconds=timeout_seconds or self.config.create_timeout_seconds,
            progress=progress,
        )
        self._copy_env_files(Path(created["path"]))
        now = self._now_iso()
        session = Session(
            id=session_id,
            kind="worktree",
            path=created["path"],
            branch=created["branch"],
            created_at=now,
            last_active_at=now,
            nickname=nickname,
            pid=pid,
            story_id=story_id,
        )
        self._insert(session)
        logger.info("created session %s at %s", session.id, session.path)
        return session

    def _register_existing(
        self,
        path: Path,
        nickname: str | None,
        pid: int | None,
        story_id: str | None,
    ) -> Session:
        if not path.is_dir() or self.git.repo_root(path) != self.repo_root:
            raise ValidationError(
                f"{path} is not a checkout of {self.repo_root}.",
                path=str(path),
            )
        branch = self.git.current_branch(path)
        result: dict[str, Session] = {}

        def _updater(data: Any) -> dict[str, Any]:
            payload = self._with_main(data)
            if nickname is not None:
                owner = self._find(payload, nickname)
                if owner is not None and Path(owner["path"]) != path:
                    raise SessionError(f"Nickname '{nickname}' is already in use.", nickname=nickname)
            now = self._now_iso()
            for record in payload["sessions"].values():
                if Path(record.get("path", "")) == path:
                    record.update(
                        {"pid": pid, "last_active_at": now, "status": "active", "branch": branch}
                    )
                    if nickname is not None:
                        record["nickname"] = nickname
                    if story_id is not None:
                        record["story_id"] = story_id
                    result["session"] = Session.from_dict(record)
                    return payload
            session_id = str(payload["next_id"])
            payload["next_id"] = int(payload["next_id"]) + 1
            session = Session(
                id=session_id,
                kind="worktree",
                path=str(path),
                branch=branch,
                created_at=now,
                last_active_at=now,
                nickname=nickname,
                pid=pid,
                story_id=story_id,
            )
            payload["sessions"][session_id] = session.to_dict()
            result["session"] = session
            return payload

        self.store.update(SESSIONS_NAMESPACE, _updater, default=self._default_data())
        return result["session"]

    def _modify(self, ref: str | int, change: Callable[[dict[str, Any]], None]) -> Session:
        result: dict[str, Session] = {}

        def _updater(data: Any) -> dict[str, Any]:
            payload = self._with_main(data)
            record = self._find(payload, str(ref))
            if record is None:
                raise SessionNotFoundError(f"Session not found: {ref}", session_id=str(ref))
            change(record)
            result["session"] = Session.from_dict(record)
            return payload

        self.store.update(SESSIONS_NAMESPACE, _updater, default=self._default_data())
        return result["session"]

    def mark_active(self, ref: str | int, pid: int | None = None) -> Session:
        now = self._now_iso()

        def _change(record: dict[str, Any]) -> None:
            record["last_active_at"] = now
            record["status"] = "active"
            if pid is not None:
                record["pid"] = pid

        return self._modify(ref, _change)

    def deactivate(self, ref: str | int) -> Session:
        return self._modify(ref, lambda record: record.update({"status": "inactive"}))

    def delete(
        self,
        ref: str | int,
        *,
        remove_worktree: bool = True,
        delete_branch: bool = False,
        force: bool = False,
    ) -> dict[str, Any]:
        session = self.get(ref)
        if session.is_main:
            raise SessionError(
                "The main session cannot be deleted; deactivate it instead.",
                session_id=session.id,
            )
        result: dict[str, Any] = {
            "session_id": session.id,
            "path": session.path,
            "branch": session.branch,
            "worktree": None,
            "branch_deleted": False,
        }
        if remove_worktree:
            result["worktree"] = self.worktrees.remove(Path(session.path), force=force)
        if delete_branch and session.branch:
            flag = "-D" if force else "-d"
            self.git.run(["branch", flag, session.branch], self.repo_root)
            result["branch_deleted"] = True

        def _updater(data: Any) -> dict[str, Any]:
            payload = self._with_main(data)
            payload["sessions"].pop(session.id, None)
            return payload

        self.store.update(SESSIONS_NAMESPACE, _updater, default=self._default_data())
        logger.info("deleted session %s", session.id)
        return result

    def forget(self, ref: str | int) -> None:
        """Drop a registry entry without touching the filesystem."""
        session = self.get(ref)
        if session.is_main:
            raise SessionError("The main session cannot be removed.", session_id=session.id)

        def _updater(data: Any) -> dict[str, Any]:
            payload = self._with_main(data)
            payload["sessions"].pop(session.id, None)
            return payload

        self.store.update(SESSIONS_NAMESPACE, _updater, default=self._default_data())

    def health(self, *, detailed: bool = False) -> dict[str, Any]:
        now = self.clock()
        stale_after = timedelta(days=self.config.stale_after_days)
        sessions = self.list()
        alive_ids = [s.id for s in sessions if s.pid is not None and self.liveness.is_alive(s.pid)]
        if alive_ids:
            stamp = _iso(now)

            def _touch(data: Any) -> dict[str, Any]:
                payload = self._with_main(data)
                for session_id in alive_ids:
                    if session_id in payload["sessions"]:
                        payload["sessions"][session_id]["last_active_at"] = stamp
                return payload

            self.store.update(SESSIONS_NAMESPACE, _touch, default=self._default_data())

        report: dict[str, Any] = {
            "checked_at": _iso(now),
            "sessions": len(sessions),
            "uncommitted": [],
            "stale": [],
            "orphaned_registry": [],
            "orphaned_worktrees": [],
        }
        for session in sessions:
            summary = {
                "id": session.id,
                "nickname": session.nickname,
                "path": session.path,
                "branch": session.branch,
            }
            path = Path(session.path)
            if not path.exists():
                report["orphaned_registry"].append(summary)
                continue

            last_active = _parse_iso(session.last_active_at)
            if (
                not session.is_main
                and session.id not in alive_ids
                and last_active is not None
                and now - last_active > stale_after
            ):
                report["stale"].append({**summary, "days_inactive": (now - last_active).days})

            try:
                changes = self.git.status(path)
            except GitCommandError as exc:
                report["orphaned_registry"].append({**summary, "error": exc.message})
                continue
            if changes:
                entry = {**summary, "changes": len(changes)}
                if detailed:
                    entry["files"] = changes
                report["uncommitted"].append(entry)

        registered = {Path(session.path).resolve() for session in sessions}
        for worktree in self.worktrees.list():
            worktree_path = Path(worktree.path).resolve()
            if worktree_path == self.repo_root or worktree_path in registered:
                continue
            report["orphaned_worktrees"].append(
                {"path": worktree.path, "branch": worktree.branch, "prunable": worktree.prunable}
            )

        report["healthy"] = not any(
            report[key] for key in ("uncommitted", "stale", "orphaned_registry", "orphaned_worktrees")
        )
        return report
