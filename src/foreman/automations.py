from __future__ import annotations

import asyncio
import calendar
import logging
import os
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from foreman.config import AutomationsConfig
from foreman.errors import (
    AutomationFailedError,
    AutomationNotFoundError,
    AutomationTimeoutError,
    LoopDetectedError,
    ValidationError,
)
from foreman.process import run_command
from foreman.state.store import JsonStateStore

logger = logging.getLogger(__name__)

AUTOMATIONS_NAMESPACE = "automations"
AUTOMATIONS_SCHEMA_VERSION = 1

SCHEDULE_TYPES = ("daily", "weekly", "monthly", "interval", "on_session")
WEEKDAYS = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")
ON_SESSION_COOLDOWN = timedelta(hours=1)
# Shell exit codes for a command that is not executable or not found.
NON_RETRIABLE_EXIT_CODES = frozenset({126, 127})

EventHook = Callable[[dict[str, Any]], None]
Sleep = Callable[[float], Awaitable[None]]

_ID_PATTERN = re.compile(r"[^a-z0-9]+")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(moment: datetime) -> str:
    return moment.astimezone(UTC).replace(microsecond=0).isoformat()


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def slugify(name: str) -> str:
    return _ID_PATTERN.sub("-", name.lower()).strip("-")


def normalize_schedule(schedule: dict[str, Any]) -> dict[str, Any]:
    """Validate a schedule mapping and return it in canonical form.

    Weekly days may be given by name or number, with 0 meaning Sunday.
    """
    kind = str(schedule.get("type", "")).lower()
    if kind not in SCHEDULE_TYPES:
        raise ValidationError(
            f"Unknown schedule type {kind!r}; expected one of {', '.join(SCHEDULE_TYPES)}.",
            schedule=schedule,
        )
    if kind == "weekly":
        day = schedule.get("day")
        if isinstance(day, str) and not day.isdigit():
            if day.lower() not in WEEKDAYS:
                raise ValidationError(f"Unknown weekday: {day}", schedule=schedule)
            day_index = WEEKDAYS.index(day.lower())
        else:
            try:
                day_index = int(day)  # type: ignore[arg-type]
            except (TypeError, ValueError) as exc:
                raise ValidationError("Weekly schedules need a day.", schedule=schedule) from exc
        if not 0 <= day_index <= 6:
            raise ValidationError("Weekday must be between 0 (Sunday) and 6.", schedule=schedule)
        return {"type": kind, "day": day_index}
    if kind == "monthly":
        try:
            date = int(schedule.get("date"))  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ValidationError("Monthly schedules need a date.", schedule=schedule) from exc
        if not 1 <= date <= 31:
            raise ValidationError("Monthly date must be between 1 and 31.", schedule=schedule)
        return {"type": kind, "date": date}
    if kind == "interval":
        try:
            hours = float(schedule.get("hours"))  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ValidationError("Interval schedules need hours.", schedule=schedule) from exc
        if hours <= 0:
            raise ValidationError("Interval hours must be positive.", schedule=schedule)
        return {"type": kind, "hours": hours}
    return {"type": kind}


def is_due(automation: Automation, now: datetime, *, on_session: bool = False) -> bool:
    """Evaluate the schedule against ``now`` in local time."""
    if not automation.enabled or automation.paused:
        return False
    local_now = now.astimezone()
    last = _parse_iso(automation.last_run_at)
    last_local = last.astimezone() if last else None
    ran_today = last_local is not None and last_local.date() >= local_now.date()
    schedule = automation.schedule
    kind = schedule.get("type")

    if kind == "daily":
        return not ran_today
    if kind == "weekly":
        today = (local_now.weekday() + 1) % 7
        return today == int(schedule.get("day", -1)) and not ran_today
    if kind == "monthly":
        last_day = calendar.monthrange(local_now.year, local_now.month)[1]
        return local_now.day == min(int(schedule.get("date", 0)), last_day) and not ran_today
    if kind == "interval":
        if last is None:
            return True
        return now - last >= timedelta(hours=float(schedule.get("hours", 0)))
    if kind == "on_session":
        return on_session and (last is None or now - last >= ON_SESSION_COOLDOWN)
    return False


@dataclass(slots=True)
class Automation:
    id: str
    name: str
    command: str
    schedule: dict[str, Any]
    timeout_ms: int = 300000
    max_retries: int = 2
    enabled: bool = True
    paused: bool = False
    paused_reason: str | None = None
    resumed_at: str | None = None
    description: str = ""
    created_at: str = field(default_factory=lambda: _iso(_utcnow()))
    last_run_at: str | None = None
    last_success: bool | None = None
    run_history: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Automation:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            command=str(data.get("command", "")),
            schedule=dict(data.get("schedule") or {"type": "daily"}),
            timeout_ms=int(data.get("timeout_ms", data.get("timeout", 300000))),
            max_retries=int(data.get("max_retries", 2)),
            enabled=bool(data.get("enabled", True)),
            paused=bool(data.get("paused", False)),
            paused_reason=data.get("paused_reason"),
            resumed_at=data.get("resumed_at"),
            description=str(data.get("description", "")),
            created_at=str(data.get("created_at") or _iso(_utcnow())),
            last_run_at=data.get("last_run_at"),
            last_success=data.get("last_success"),
            run_history=list(data.get("run_history") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "command": self.command,
            "schedule": dict(self.schedule),
            "timeout_ms": self.timeout_ms,
            "max_retries": self.max_retries,
            "enabled": self.enabled,
            "paused": self.paused,
            "paused_reason": self.paused_reason,
            "resumed_at": self.resumed_at,
            "description": self.description,
            "created_at": self.created_at,
            "last_run_at": self.last_run_at,
            "last_success": self.last_success,
            "run_history": list(self.run_history),
        }


@dataclass(slots=True)
class RunResult:
    automation_id: str
    success: bool
    started_at: str
    attempts: int = 0
    duration_ms: int = 0
    exit_code: int | None = None
    timed_out: bool = False
    output: str = ""
    error: str | None = None
    skipped: bool = False
    loop_warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "automation_id": self.automation_id,
            "success": self.success,
            "started_at": self.started_at,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "output": self.output,
            "error": self.error,
            "skipped": self.skipped,
            "loop_warning": self.loop_warning,
        }


class AutomationRegistry:
    def __init__(
        self,
        store: JsonStateStore,
        *,
        config: AutomationsConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.config = config or AutomationsConfig()
        self.clock = clock or _utcnow
        self.store.register(AUTOMATIONS_NAMESPACE, AUTOMATIONS_SCHEMA_VERSION)

    @staticmethod
    def _default() -> dict[str, Any]:
        return {"automations": {}}

    def _records(self) -> dict[str, Any]:
        data = self.store.get(AUTOMATIONS_NAMESPACE, default=self._default())
        return data.get("automations", {}) if isinstance(data, dict) else {}

    def _modify(self, automation_id: str, change: Callable[[dict[str, Any]], None]) -> Automation:
        result: dict[str, Automation] = {}

        def _updater(data: Any) -> dict[str, Any]:
            payload = data if isinstance(data, dict) else self._default()
            records = payload.setdefault("automations", {})
            record = records.get(automation_id)
            if record is None:
                raise AutomationNotFoundError(
                    f"Automation not found: {automation_id}", automation_id=automation_id
                )
            change(record)
            result["automation"] = Automation.from_dict(record)
            return payload

        self.store.update(AUTOMATIONS_NAMESPACE, _updater, default=self._default())
        return result["automation"]

    def add(
        self,
        name: str,
        command: str,
        schedule: dict[str, Any],
        *,
        automation_id: str | None = None,
        timeout_ms: int | None = None,
        max_retries: int | None = None,
        enabled: bool = True,
        description: str = "",
    ) -> Automation:
        if not command.strip():
            raise ValidationError("Automation command must not be empty.")
        new_id = automation_id or slugify(name)
        if not new_id:
            raise ValidationError("Automation needs a name or id.", name=name)
        automation = Automation(
            id=new_id,
            name=name,
            command=command,
            schedule=normalize_schedule(schedule),
            timeout_ms=int(timeout_ms if timeout_ms is not None else self.config.default_timeout_ms),
            max_retries=int(max_retries if max_retries is not None else self.config.max_retries),
            enabled=enabled,
            description=description,
        )
        if automation.timeout_ms <= 0 or automation.max_retries < 0:
            raise ValidationError("timeout_ms must be positive and max_retries non-negative.")

        def _updater(data: Any) -> dict[str, Any]:
            payload = data if isinstance(data, dict) else self._default()
            records = payload.setdefault("automations", {})
            if new_id in records:
                raise ValidationError(f"Automation already exists: {new_id}", automation_id=new_id)
            records[new_id] = automation.to_dict()
            return payload

        self.store.update(AUTOMATIONS_NAMESPACE, _updater, default=self._default())
        logger.info("added automation %s", new_id)
        return automation

    def update(self, automation_id: str, **changes: Any) -> Automation:
        allowed = {"name", "command", "schedule", "timeout_ms", "max_retries", "enabled", "description"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if "schedule" in changes:
            changes["schedule"] = normalize_schedule(changes["schedule"])
        return self._modify(automation_id, lambda record: record.update(changes))

    def remove(self, automation_id: str) -> None:
        def _updater(data: Any) -> dict[str, Any]:
            payload = data if isinstance(data, dict) else self._default()
            records = payload.setdefault("automations", {})
            if automation_id not in records:
                raise AutomationNotFoundError(
                    f"Automation not found: {automation_id}", automation_id=automation_id
                )
            del records[automation_id]
            return payload

        self.store.update(AUTOMATIONS_NAMESPACE, _updater, default=self._default())

    def enable(self, automation_id: str) -> Automation:
        return self._modify(automation_id, lambda record: record.update({"enabled": True}))

    def disable(self, automation_id: str) -> Automation:
        return self._modify(automation_id, lambda record: record.update({"enabled": False}))

    def pause(self, automation_id: str, reason: str) -> Automation:
        return self._modify(
            automation_id,
            lambda record: record.update({"paused": True, "paused_reason": reason}),
        )

    def resume(self, automation_id: str) -> Automation:
        return self._modify(
            automation_id,
            lambda record: record.update(
                {"paused": False, "paused_reason": None, "resumed_at": self.clock().isoformat()}
            ),
        )

    def get(self, automation_id: str) -> Automation:
        record = self._records().get(automation_id)
        if record is None:
            raise AutomationNotFoundError(
                f"Automation not found: {automation_id}", automation_id=automation_id
            )
        return Automation.from_dict(record)

    def list(self) -> list[Automation]:
        return sorted(
            (Automation.from_dict(record) for record in self._records().values()),
            key=lambda automation: automation.id,
        )

    def record_run(self, automation_id: str, entry: dict[str, Any]) -> Automation:
        limit = max(int(self.config.history_limit), int(self.config.loop_threshold))

        def _change(record: dict[str, Any]) -> None:
            history = list(record.get("run_history") or [])
            history.append(entry)
            record["run_history"] = history[-limit:]
            record["last_run_at"] = entry["at"]
            record["last_success"] = entry["success"]

        return self._modify(automation_id, _change)

    def history(self, automation_id: str, limit: int = 20) -> list[dict[str, Any]]:
        history = self.get(automation_id).run_history
        return history[-limit:] if limit > 0 else history


class AutomationScheduler:
    """Runs automations with loop detection, a hard timeout and retry backoff."""

    def __init__(
        self,
        registry: AutomationRegistry,
        repo_root: Path,
        *,
        config: AutomationsConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Sleep | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.registry = registry
        self.repo_root = repo_root.resolve()
        self.config = config or registry.config
        self.clock = clock or registry.clock
        self.sleep = sleep or asyncio.sleep
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def get_due(self, *, on_session: bool = False) -> list[Automation]:
        now = self.clock()
        return [
            automation
            for automation in self.registry.list()
            if is_due(automation, now, on_session=on_session)
        ]

    def _recent_runs(self, automation: Automation, now: datetime) -> list[dict[str, Any]]:
        window_start = now - timedelta(seconds=self.config.loop_window_seconds)
        resumed = _parse_iso(automation.resumed_at)
        recent = []
        for entry in automation.run_history:
            at = _parse_iso(entry.get("at"))
            if at is None or at < window_start:
                continue
            # Runs before a manual resume do not count towards the loop.
            if resumed is not None and at <= resumed:
                continue
            recent.append(entry)
        return recent

    def _check_loop(self, automation: Automation, now: datetime) -> None:
        recent = self._recent_runs(automation, now)
        if len(recent) >= self.config.loop_threshold:
            raise LoopDetectedError(
                f"Automation {automation.id} ran {len(recent)} times in the last "
                f"{self.config.loop_window_seconds}s; paused to break a possible loop.",
                automation_id=automation.id,
                runs=len(recent),
            )

    def _environment(self, automation: Automation) -> dict[str, str]:
        env = os.environ.copy()
        env["FOREMAN_AUTOMATION_ID"] = automation.id
        env["FOREMAN_ROOT"] = str(self.repo_root)
        return env

    async def _attempt(self, automation: Automation) -> tuple[str, int | None]:
        result = await run_command(
            automation.command,
            cwd=self.repo_root,
            env=self._environment(automation),
            timeout_seconds=automation.timeout_ms / 1000,
            kill_grace_seconds=self.config.kill_grace_seconds,
        )
        output = (result.stdout + result.stderr)[: self.config.output_limit]
        if result.timed_out:
            raise AutomationTimeoutError(
                f"Automation {automation.id} timed out after {automation.timeout_ms}ms.",
                exit_code=result.exit_code,
                automation_id=automation.id,
                output=output,
            )
        if result.exit_code != 0:
            raise AutomationFailedError(
                f"Automation {automation.id} exited with code {result.exit_code}.",
                exit_code=result.exit_code,
                retriable=result.exit_code not in NON_RETRIABLE_EXIT_CODES,
                automation_id=automation.id,
                output=output,
            )
        return output, result.exit_code

    async def run(self, automation_id: str) -> RunResult:
        automation = self.registry.get(automation_id)
        now = self.clock()
        started_at = _iso(now)

        if automation.paused:
            return RunResult(
                automation_id=automation.id,
                success=False,
                started_at=started_at,
                skipped=True,
                error=f"Automation is paused: {automation.paused_reason or 'no reason given'}",
            )

        try:
            self._check_loop(automation, now)
        except LoopDetectedError as exc:
            warning = exc.message
            logger.warning(warning)
            self.registry.pause(automation.id, warning)
            self._emit({"event": "automation_loop_detected", "automation_id": automation.id})
            return RunResult(
                automation_id=automation.id,
                success=False,
                started_at=started_at,
                skipped=True,
                loop_warning=warning,
                error=warning,
            )

        errors: list[str] = []
        output = ""
        exit_code: int | None = None
        timed_out = False
        success = False
        attempts = 0
        started = time.monotonic()
        for attempt in range(automation.max_retries + 1):
            if attempt > 0:
                delay = self.config.retry_delay_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "automation_retry",
                        "automation_id": automation.id,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await self.sleep(delay)
            attempts += 1
            try:
                output, exit_code = await self._attempt(automation)
                success = True
                timed_out = False
                break
            except AutomationFailedError as exc:
                errors.append(f"attempt {attempt + 1}: {exc}")
                output = str(exc.details.get("output", ""))
                exit_code = exc.exit_code
                timed_out = isinstance(exc, AutomationTimeoutError)
                self._emit(
                    {
                        "event": "automation_attempt_failed",
                        "automation_id": automation.id,
                        "attempt": attempt,
                        "error": str(exc),
                        "timed_out": timed_out,
                        "retriable": exc.retriable,
                    }
                )
                logger.info("automation %s attempt %d failed: %s", automation.id, attempt + 1, exc)
                if not exc.retriable:
                    break

        result = RunResult(
            automation_id=automation.id,
            success=success,
            started_at=started_at,
            attempts=attempts,
            duration_ms=int((time.monotonic() - started) * 1000),
            exit_code=exit_code,
            timed_out=timed_out,
            output=output,
            error=None if success else "; ".join(errors[-3:]),
        )
        self.registry.record_run(
            automation.id,
            {
                "at": started_at,
                "success": success,
                "duration_ms": result.duration_ms,
                "attempts": attempts,
                "exit_code": exit_code,
                "timed_out": timed_out,
                "output_excerpt": output[: self.config.excerpt_limit],
                "error": result.error,
            },
        )
        if not success:
            logger.warning("automation %s failed after %d attempt(s)", automation.id, attempts)
        return result

    async def run_due(self, *, on_session: bool = False) -> list[RunResult]:
        results = []
        for automation in self.get_due(on_session=on_session):
            results.append(await self.run(automation.id))
        return results
