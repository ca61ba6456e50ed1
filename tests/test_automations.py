import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from foreman.automations import (
    Automation,
    AutomationRegistry,
    AutomationScheduler,
    is_due,
    normalize_schedule,
)
from foreman.config import AutomationsConfig
from foreman.errors import AutomationNotFoundError, ValidationError
from foreman.state import JsonStateStore

COUNTER_SCRIPT = (
    'n=$(cat attempts.txt 2>/dev/null || echo 0); n=$((n + 1)); echo "$n" > attempts.txt; '
    '[ "$n" -ge 3 ] && echo "report ready"'
)


def _setup(
    tmp_path: Path,
    *,
    clock: Any = None,
    **config: Any,
) -> tuple[AutomationRegistry, AutomationScheduler, list[float], list[dict[str, Any]]]:
    automations_config = AutomationsConfig(**config)
    registry = AutomationRegistry(
        JsonStateStore(tmp_path / ".foreman"), config=automations_config, clock=clock
    )
    delays: list[float] = []
    events: list[dict[str, Any]] = []

    async def _no_sleep(seconds: float) -> None:
        delays.append(seconds)

    scheduler = AutomationScheduler(
        registry,
        tmp_path,
        config=automations_config,
        clock=clock,
        sleep=_no_sleep,
        event_hook=events.append,
    )
    return registry, scheduler, delays, events


def _local(*args: int) -> datetime:
    return datetime(*args).astimezone()


def test_fails_twice_then_succeeds_within_retry_budget(tmp_path: Path) -> None:
    registry, scheduler, delays, events = _setup(tmp_path)
    registry.add("Daily report", COUNTER_SCRIPT, {"type": "daily"}, max_retries=2)

    result = asyncio.run(scheduler.run("daily-report"))

    assert result.success is True
    assert result.attempts == 3
    assert result.exit_code == 0
    assert "report ready" in result.output
    assert delays == [5.0, 10.0]
    assert (tmp_path / "attempts.txt").read_text(encoding="utf-8").strip() == "3"
    assert [event["event"] for event in events].count("automation_attempt_failed") == 2
    history = registry.history("daily-report")
    assert len(history) == 1
    assert history[0]["success"] is True
    assert history[0]["attempts"] == 3
    assert registry.get("daily-report").last_success is True


def test_retries_exhausted_reports_failure(tmp_path: Path) -> None:
    registry, scheduler, delays, _ = _setup(tmp_path, retry_delay_seconds=1.0)
    registry.add("broken", "echo boom >&2; exit 7", {"type": "daily"}, max_retries=2)

    result = asyncio.run(scheduler.run("broken"))

    assert result.success is False
    assert result.attempts == 3
    assert result.exit_code == 7
    assert "boom" in result.output
    assert "attempt 3" in result.error
    assert delays == [1.0, 2.0]
    assert registry.history("broken")[-1]["exit_code"] == 7


def test_missing_command_is_not_retried(tmp_path: Path) -> None:
    registry, scheduler, delays, events = _setup(tmp_path)
    registry.add("typo", "no-such-foreman-command-xyz", {"type": "daily"}, max_retries=2)

    result = asyncio.run(scheduler.run("typo"))

    assert result.success is False
    assert result.attempts == 1
    assert result.exit_code == 127
    assert delays == []
    assert events[-1]["retriable"] is False


def test_timeout_kills_command(tmp_path: Path) -> None:
    registry, scheduler, _, _ = _setup(tmp_path, kill_grace_seconds=0.5)
    registry.add("hang", "sleep 30", {"type": "daily"}, timeout_ms=300, max_retries=0)

    result = asyncio.run(scheduler.run("hang"))

    assert result.success is False
    assert result.timed_out is True
    assert result.attempts == 1
    assert result.duration_ms < 10000
    assert "timed out" in result.error


def test_timeout_escalates_to_sigkill(tmp_path: Path) -> None:
    registry, scheduler, _, _ = _setup(tmp_path, kill_grace_seconds=0.3)
    registry.add("stubborn", "trap '' TERM; sleep 30", {"type": "daily"}, timeout_ms=300, max_retries=0)

    result = asyncio.run(scheduler.run("stubborn"))

    assert result.timed_out is True
    assert result.duration_ms < 10000


def test_fourth_run_in_window_is_blocked_as_loop(tmp_path: Path) -> None:
    registry, scheduler, _, events = _setup(tmp_path)
    registry.add("echoer", "echo run >> runs.txt", {"type": "on_session"})

    for _ in range(3):
        assert asyncio.run(scheduler.run("echoer")).success is True
    blocked = asyncio.run(scheduler.run("echoer"))

    assert blocked.skipped is True
    assert blocked.success is False
    assert "paused" in blocked.loop_warning
    assert (tmp_path / "runs.txt").read_text(encoding="utf-8").count("run") == 3
    assert registry.get("echoer").paused is True
    assert events[-1] == {"event": "automation_loop_detected", "automation_id": "echoer"}

    still_paused = asyncio.run(scheduler.run("echoer"))
    assert still_paused.skipped is True
    assert still_paused.loop_warning is None

    registry.resume("echoer")
    assert asyncio.run(scheduler.run("echoer")).success is True


def test_loop_window_ignores_old_runs(tmp_path: Path) -> None:
    clock_now = [_local(2026, 3, 2, 9, 0)]
    registry, scheduler, _, _ = _setup(tmp_path, clock=lambda: clock_now[0])
    registry.add("echoer", "true", {"type": "interval", "hours": 0.01})

    for _ in range(3):
        asyncio.run(scheduler.run("echoer"))
        clock_now[0] += timedelta(minutes=2)

    # Runs at 9:00, 9:02 and 9:04; at 9:06 only two fall inside five minutes.
    assert asyncio.run(scheduler.run("echoer")).skipped is False


def test_resume_uses_scheduler_clock(tmp_path: Path) -> None:
    clock_now = [_local(2031, 6, 1, 9, 0)]
    registry, scheduler, _, _ = _setup(tmp_path, clock=lambda: clock_now[0])
    registry.add("echoer", "true", {"type": "on_session"})

    for _ in range(3):
        asyncio.run(scheduler.run("echoer"))
    assert asyncio.run(scheduler.run("echoer")).skipped is True

    clock_now[0] += timedelta(minutes=1)
    resumed = registry.resume("echoer")

    assert resumed.resumed_at == clock_now[0].isoformat()
    assert asyncio.run(scheduler.run("echoer")).success is True


def test_environment_exposes_automation_id(tmp_path: Path) -> None:
    registry, scheduler, _, _ = _setup(tmp_path)
    registry.add("env", 'echo "$FOREMAN_AUTOMATION_ID:$FOREMAN_ROOT"', {"type": "daily"})

    result = asyncio.run(scheduler.run("env"))

    assert result.output.strip() == f"env:{tmp_path.resolve()}"


def test_output_is_capped(tmp_path: Path) -> None:
    registry, scheduler, _, _ = _setup(tmp_path, output_limit=50, excerpt_limit=10)
    registry.add("chatty", "yes line | head -n 100", {"type": "daily"})

    result = asyncio.run(scheduler.run("chatty"))

    assert len(result.output) == 50
    assert len(registry.history("chatty")[-1]["output_excerpt"]) == 10


def test_registry_crud(tmp_path: Path) -> None:
    registry, _, _, _ = _setup(tmp_path)
    added = registry.add("Nightly Backup", "true", {"type": "weekly", "day": "Friday"})

    assert added.id == "nightly-backup"
    assert added.schedule == {"type": "weekly", "day": 5}
    assert added.timeout_ms == 300000
    assert added.max_retries == 2
    with pytest.raises(ValidationError, match="already exists"):
        registry.add("Nightly Backup", "true", {"type": "daily"})

    assert registry.disable("nightly-backup").enabled is False
    assert registry.enable("nightly-backup").enabled is True
    updated = registry.update("nightly-backup", schedule={"type": "monthly", "date": 15})
    assert updated.schedule == {"type": "monthly", "date": 15}
    with pytest.raises(ValidationError):
        registry.update("nightly-backup", id="other")

    registry.remove("nightly-backup")
    assert registry.list() == []
    with pytest.raises(AutomationNotFoundError):
        registry.get("nightly-backup")


@pytest.mark.parametrize(
    "schedule",
    [
        {"type": "hourly"},
        {"type": "weekly", "day": "funday"},
        {"type": "weekly", "day": 9},
        {"type": "monthly"},
        {"type": "monthly", "date": 32},
        {"type": "interval", "hours": 0},
    ],
)
def test_invalid_schedules(schedule: dict[str, Any]) -> None:
    with pytest.raises(ValidationError):
        normalize_schedule(schedule)


def _automation(schedule: dict[str, Any], last_run: datetime | None = None, **kwargs: Any) -> Automation:
    return Automation(
        id="job",
        name="job",
        command="true",
        schedule=normalize_schedule(schedule),
        last_run_at=last_run.isoformat() if last_run else None,
        **kwargs,
    )


def test_daily_schedule() -> None:
    now = _local(2026, 3, 2, 12, 0)

    assert is_due(_automation({"type": "daily"}), now) is True
    assert is_due(_automation({"type": "daily"}, _local(2026, 3, 2, 8, 0)), now) is False
    assert is_due(_automation({"type": "daily"}, _local(2026, 3, 1, 23, 0)), now) is True
    assert is_due(_automation({"type": "daily"}, enabled=False), now) is False
    assert is_due(_automation({"type": "daily"}, paused=True), now) is False


def test_weekly_schedule_uses_sunday_zero() -> None:
    monday = _local(2026, 3, 2, 12, 0)

    assert is_due(_automation({"type": "weekly", "day": 1}), monday) is True
    assert is_due(_automation({"type": "weekly", "day": "monday"}), monday) is True
    assert is_due(_automation({"type": "weekly", "day": 0}), monday) is False


def test_monthly_schedule_clamps_to_month_end() -> None:
    assert is_due(_automation({"type": "monthly", "date": 31}), _local(2026, 2, 28, 9, 0)) is True
    assert is_due(_automation({"type": "monthly", "date": 31}), _local(2026, 2, 27, 9, 0)) is False
    assert is_due(_automation({"type": "monthly", "date": 2}), _local(2026, 3, 2, 9, 0)) is True


def test_interval_and_on_session_schedules() -> None:
    now = _local(2026, 3, 2, 12, 0)
    interval = {"type": "interval", "hours": 6}

    assert is_due(_automation(interval), now) is True
    assert is_due(_automation(interval, now - timedelta(hours=5)), now) is False
    assert is_due(_automation(interval, now - timedelta(hours=6)), now) is True

    on_session = {"type": "on_session"}
    assert is_due(_automation(on_session), now) is False
    assert is_due(_automation(on_session), now, on_session=True) is True
    assert is_due(_automation(on_session, now - timedelta(minutes=30)), now, on_session=True) is False
    assert is_due(_automation(on_session, now - timedelta(hours=2)), now, on_session=True) is True


def test_run_due_runs_only_due_automations(tmp_path: Path) -> None:
    now = _local(2026, 3, 2, 12, 0)
    registry, scheduler, _, _ = _setup(tmp_path, clock=lambda: now)
    registry.add("due", "echo due", {"type": "daily"})
    registry.add("later", "echo later", {"type": "weekly", "day": "sunday"})
    registry.add("session-hook", "echo hook", {"type": "on_session"})

    assert [item.id for item in scheduler.get_due()] == ["due"]
    assert [item.id for item in scheduler.get_due(on_session=True)] == ["due", "session-hook"]

    results = asyncio.run(scheduler.run_due())

    assert [result.automation_id for result in results] == ["due"]
    assert scheduler.get_due() == []
