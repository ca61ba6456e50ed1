from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from foreman.errors import (
    CycleError,
    InvalidTransitionError,
    TaskNotFoundError,
    ValidationError,
)
from foreman.state.store import JsonStateStore

logger = logging.getLogger(__name__)

TaskState = Literal["queued", "running", "blocked", "completed", "failed", "cancelled"]

TASKS_NAMESPACE = "tasks"
TASKS_SCHEMA_VERSION = 1
AUDIT_LIMIT = 500

TASK_STATES: tuple[str, ...] = ("queued", "running", "blocked", "completed", "failed", "cancelled")
TRANSITIONS: dict[str, set[str]] = {
    "queued": {"running", "blocked", "cancelled"},
    "running": {"completed", "failed", "blocked"},
    "blocked": {"queued", "running", "cancelled"},
    "failed": {"queued", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}
DONE_STATES = {"completed", "cancelled"}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(moment: datetime) -> str:
    return moment.astimezone(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Task:
    id: str
    description: str
    subagent_type: str
    seq: int
    created_at: str
    updated_at: str
    state: TaskState = "queued"
    story_id: str | None = None
    blocked_by: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    retries: int = 0
    ready: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=str(data["id"]),
            description=str(data.get("description", "")),
            subagent_type=str(data.get("subagent_type", "")),
            seq=int(data.get("seq", 0)),
            created_at=str(data.get("created_at", "")),
            updated_at=str(data.get("updated_at", data.get("created_at", ""))),
            state=data.get("state", "queued"),
            story_id=data.get("story_id"),
            blocked_by=list(data.get("blocked_by") or []),
            metadata=dict(data.get("metadata") or {}),
            result=data.get("result"),
            error=data.get("error"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            retries=int(data.get("retries", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "subagent_type": self.subagent_type,
            "story_id": self.story_id,
            "state": self.state,
            "blocked_by": list(self.blocked_by),
            "metadata": dict(self.metadata),
            "result": self.result,
            "error": self.error,
            "seq": self.seq,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "retries": self.retries,
            "ready": self.ready,
        }


@dataclass(slots=True)
class TaskUpdate:
    task: Task
    unblocked: list[Task] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.to_dict(),
            "unblocked": [task.to_dict() for task in self.unblocked],
        }


def find_cycle(edges: dict[str, list[str]], start: str, blocked_by: Iterable[str]) -> list[str] | None:
    """Return a dependency path leading from ``start`` back to itself, if any.

    ``edges`` maps task id to the ids it is blocked by.
    """
    stack = [(dep, [start, dep]) for dep in blocked_by]
    seen: set[str] = set()
    while stack:
        node, path = stack.pop()
        if node == start:
            return path
        if node in seen:
            continue
        seen.add(node)
        for upstream in edges.get(node, []):
            stack.append((upstream, [*path, upstream]))
    return None


class TaskRegistry:
    """Dependency graph of work units with readiness tracking."""

    def __init__(
        self,
        store: JsonStateStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or _utcnow
        self.store.register(TASKS_NAMESPACE, TASKS_SCHEMA_VERSION)

    @staticmethod
    def _default() -> dict[str, Any]:
        return {"next_seq": 1, "tasks": {}, "audit_trail": []}

    def _payload(self, data: Any) -> dict[str, Any]:
        payload = data if isinstance(data, dict) else self._default()
        payload.setdefault("next_seq", 1)
        payload.setdefault("tasks", {})
        payload.setdefault("audit_trail", [])
        return payload

    @staticmethod
    def _edges(tasks: dict[str, Any]) -> dict[str, list[str]]:
        return {task_id: list(record.get("blocked_by") or []) for task_id, record in tasks.items()}

    @staticmethod
    def _is_ready(record: dict[str, Any], tasks: dict[str, Any]) -> bool:
        if record.get("state") != "queued":
            return False
        for dep in record.get("blocked_by") or []:
            upstream = tasks.get(dep)
            if upstream is None or upstream.get("state") != "completed":
                return False
        return True

    def _hydrate(self, record: dict[str, Any], tasks: dict[str, Any]) -> Task:
        task = Task.from_dict(record)
        task.ready = self._is_ready(record, tasks)
        return task

    def _audit(self, payload: dict[str, Any], task_id: str, event: str, **details: Any) -> None:
        entry = {"at": _iso(self.clock()), "task_id": task_id, "event": event}
        entry.update({key: value for key, value in details.items() if value is not None})
        payload["audit_trail"].append(entry)
        payload["audit_trail"] = payload["audit_trail"][-AUDIT_LIMIT:]

    def _check_cycle(self, tasks: dict[str, Any], task_id: str, blocked_by: list[str]) -> None:
        edges = self._edges(tasks)
        edges[task_id] = list(blocked_by)
        cycle = find_cycle(edges, task_id, blocked_by)
        if cycle is not None:
            raise CycleError(
                f"Dependency cycle detected: {' -> '.join(cycle)}",
                cycle=cycle,
            )

    def _snapshot(self) -> dict[str, Any]:
        return self._payload(self.store.get(TASKS_NAMESPACE, default=self._default()))

    def create(
        self,
        description: str,
        subagent_type: str,
        *,
        story_id: str | None = None,
        blocked_by: Iterable[str] | None = None,
        metadata: dict[str, Any] | None = None,
        task_id: str | None = None,
    ) -> Task:
        if not description.strip():
            raise ValidationError("Task description must not be empty.")
        dependencies = list(dict.fromkeys(blocked_by or []))
        result: dict[str, Task] = {}

        def _updater(data: Any) -> dict[str, Any]:
            payload = self._payload(data)
            tasks = payload["tasks"]
            new_id = task_id or f"task-{uuid.uuid4().hex[:8]}"
            if new_id in tasks:
                raise ValidationError(f"Task already exists: {new_id}", task_id=new_id)
            self._check_cycle(tasks, new_id, dependencies)
            now = _iso(self.clock())
            task = Task(
                id=new_id,
                description=description,
                subagent_type=subagent_type,
                seq=int(payload["next_seq"]),
                created_at=now,
                updated_at=now,
                story_id=story_id,
                blocked_by=dependencies,
                metadata=dict(metadata or {}),
            )
            payload["next_seq"] = int(payload["next_seq"]) + 1
            tasks[new_id] = task.to_dict()
            self._audit(payload, new_id, "created", blocked_by=dependencies or None)
            result["task"] = self._hydrate(tasks[new_id], tasks)
            return payload

        self.store.update(TASKS_NAMESPACE, _updater, default=self._default())
        logger.info("created task %s", result["task"].id)
        return result["task"]

    def update(
        self,
        task_id: str,
        *,
        state: str | None = None,
        metadata: dict[str, Any] | None = None,
        blocked_by: Iterable[str] | None = None,
        description: str | None = None,
        result: Any = None,
        error: str | None = None,
    ) -> TaskUpdate:
        """Apply a partial update.

        ``metadata`` is merged into the existing mapping. A move to
        ``completed`` reports every dependent that became ready as a result.
        """
        outcome: dict[str, Any] = {}

        def _updater(data: Any) -> dict[str, Any]:
            payload = self._payload(data)
            tasks = payload["tasks"]
            record = tasks.get(task_id)
            if record is None:
                raise TaskNotFoundError(f"Task not found: {task_id}", task_id=task_id)
            now = _iso(self.clock())
            ready_before = {key for key, item in tasks.items() if self._is_ready(item, tasks)}

            if blocked_by is not None:
                dependencies = list(dict.fromkeys(blocked_by))
                self._check_cycle(tasks, task_id, dependencies)
                record["blocked_by"] = dependencies
                self._audit(payload, task_id, "dependencies_changed", blocked_by=dependencies)
            if description is not None:
                record["description"] = description
            if metadata:
                merged = dict(record.get("metadata") or {})
                merged.update(metadata)
                record["metadata"] = merged
            if result is not None:
                record["result"] = result
            if error is not None:
                record["error"] = error

            if state is not None and state != record.get("state"):
                current = record.get("state", "queued")
                if state not in TASK_STATES:
                    raise ValidationError(f"Unknown task state: {state}", state=state)
                if state not in TRANSITIONS.get(current, set()):
                    raise InvalidTransitionError(
                        f"Cannot move task {task_id} from {current} to {state}.",
                        task_id=task_id,
                        from_state=current,
                        to_state=state,
                        allowed=sorted(TRANSITIONS.get(current, set())),
                    )
                record["state"] = state
                if state == "running":
                    record["started_at"] = now
                if state in {"completed", "failed", "cancelled"}:
                    record["completed_at"] = now
                if state == "queued" and current == "failed":
                    record["retries"] = int(record.get("retries", 0)) + 1
                    record["error"] = None
                    record["completed_at"] = None
                self._audit(payload, task_id, "transition", from_state=current, to_state=state)

            record["updated_at"] = now
            unblocked = [
                key
                for key, item in tasks.items()
                if key not in ready_before and key != task_id and self._is_ready(item, tasks)
            ]
            for key in unblocked:
                self._audit(payload, key, "unblocked", by=task_id)
            outcome["update"] = TaskUpdate(
                task=self._hydrate(record, tasks),
                unblocked=sorted(
                    (self._hydrate(tasks[key], tasks) for key in unblocked),
                    key=lambda task: task.seq,
                ),
            )
            return payload

        self.store.update(TASKS_NAMESPACE, _updater, default=self._default())
        update = outcome["update"]
        if update.unblocked:
            logger.info(
                "task %s unblocked %s",
                task_id,
                ", ".join(task.id for task in update.unblocked),
            )
        return update

    def start(self, task_id: str) -> TaskUpdate:
        return self.update(task_id, state="running")

    def complete(self, task_id: str, result: Any = None) -> TaskUpdate:
        metadata = {"result": result} if result is not None else None
        return self.update(task_id, state="completed", result=result, metadata=metadata)

    def fail(self, task_id: str, error: str) -> TaskUpdate:
        return self.update(task_id, state="failed", error=error)

    def cancel(self, task_id: str) -> TaskUpdate:
        return self.update(task_id, state="cancelled")

    def retry(self, task_id: str) -> TaskUpdate:
        return self.update(task_id, state="queued")

    def add_dependency(self, task_id: str, depends_on: str) -> TaskUpdate:
        current = self.get(task_id)
        return self.update(task_id, blocked_by=[*current.blocked_by, depends_on])

    def remove_dependency(self, task_id: str, depends_on: str) -> TaskUpdate:
        current = self.get(task_id)
        return self.update(
            task_id,
            blocked_by=[dep for dep in current.blocked_by if dep != depends_on],
        )

    def get(self, task_id: str) -> Task:
        payload = self._snapshot()
        record = payload["tasks"].get(task_id)
        if record is None:
            raise TaskNotFoundError(f"Task not found: {task_id}", task_id=task_id)
        return self._hydrate(record, payload["tasks"])

    def get_all(
        self,
        *,
        state: str | None = None,
        subagent_type: str | None = None,
        story_id: str | None = None,
    ) -> list[Task]:
        tasks = self._snapshot()["tasks"]
        selected = [
            self._hydrate(record, tasks)
            for record in tasks.values()
            if (state is None or record.get("state") == state)
            and (subagent_type is None or record.get("subagent_type") == subagent_type)
            and (story_id is None or record.get("story_id") == story_id)
        ]
        return sorted(selected, key=lambda task: task.seq)

    def get_ready_tasks(self) -> list[Task]:
        return [task for task in self.get_all(state="queued") if task.ready]

    def get_dependency_graph(self) -> dict[str, Any]:
        tasks = self._snapshot()["tasks"]
        nodes = [
            {
                "id": task.id,
                "state": task.state,
                "subagent_type": task.subagent_type,
                "ready": task.ready,
                "is_validator": bool(task.metadata.get("is_validator")),
            }
            for task in sorted((self._hydrate(r, tasks) for r in tasks.values()), key=lambda t: t.seq)
        ]
        edges = [
            {"from": dep, "to": task_id, "missing": dep not in tasks}
            for task_id, record in tasks.items()
            for dep in record.get("blocked_by") or []
        ]
        return {"nodes": nodes, "edges": edges}

    def get_stats(self) -> dict[str, Any]:
        tasks = self._snapshot()["tasks"]
        by_state = {state: 0 for state in TASK_STATES}
        by_agent: dict[str, int] = {}
        ready = 0
        for record in tasks.values():
            by_state[record.get("state", "queued")] = by_state.get(record.get("state", "queued"), 0) + 1
            agent = record.get("subagent_type") or "unknown"
            by_agent[agent] = by_agent.get(agent, 0) + 1
            if self._is_ready(record, tasks):
                ready += 1
        return {"total": len(tasks), "ready": ready, "by_state": by_state, "by_agent": by_agent}

    def get_audit_trail(self, task_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        trail = self._snapshot()["audit_trail"]
        if task_id is not None:
            trail = [entry for entry in trail if entry.get("task_id") == task_id]
        return trail[-limit:] if limit > 0 else trail

    def delete(self, task_id: str) -> None:
        def _updater(data: Any) -> dict[str, Any]:
            payload = self._payload(data)
            tasks = payload["tasks"]
            if task_id not in tasks:
                raise TaskNotFoundError(f"Task not found: {task_id}", task_id=task_id)
            dependents = sorted(
                key for key, record in tasks.items() if task_id in (record.get("blocked_by") or [])
            )
            if dependents:
                raise ValidationError(
                    f"Task {task_id} still blocks {', '.join(dependents)}.",
                    task_id=task_id,
                    dependents=dependents,
                )
            del tasks[task_id]
            self._audit(payload, task_id, "deleted")
            return payload

        self.store.update(TASKS_NAMESPACE, _updater, default=self._default())

    def cleanup(self, max_age_days: float = 7) -> list[str]:
        """Forget completed or cancelled tasks older than ``max_age_days`` nobody depends on."""
        cutoff = self.clock() - timedelta(days=max_age_days)
        removed: list[str] = []

        def _updater(data: Any) -> dict[str, Any]:
            payload = self._payload(data)
            tasks = payload["tasks"]
            still_needed = {
                dep
                for record in tasks.values()
                if record.get("state") not in DONE_STATES
                for dep in record.get("blocked_by") or []
            }
            for key in list(tasks):
                record = tasks[key]
                if record.get("state") not in DONE_STATES or key in still_needed:
                    continue
                updated = datetime.fromisoformat(record.get("updated_at") or record["created_at"])
                if updated.tzinfo is None:
                    updated = updated.replace(tzinfo=UTC)
                if updated < cutoff:
                    del tasks[key]
                    removed.append(key)
            if removed:
                self._audit(payload, "*", "cleanup", removed=len(removed))
            return payload

        self.store.update(TASKS_NAMESPACE, _updater, default=self._default())
        return removed
