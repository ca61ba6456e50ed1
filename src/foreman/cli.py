from __future__ import annotations

import asyncio
import functools
import json
import logging
import os
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from foreman import __version__
from foreman.automations import AutomationRegistry, AutomationScheduler
from foreman.claims import ClaimManager
from foreman.config import ForemanConfig, load_config, save_config
from foreman.errors import ForemanError, SessionNotFoundError, ValidationError
from foreman.git import GitRunner
from foreman.liveness import default_liveness_checker
from foreman.merge import STRATEGIES, MergeEngine
from foreman.sessions import SessionRegistry
from foreman.state import JsonStateStore
from foreman.tasks import TASK_STATES, TaskRegistry
from foreman.worktrees import WorktreeManager

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "foreman.toml"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ForemanConfig
    store: JsonStateStore
    worktrees: WorktreeManager
    sessions: SessionRegistry
    claims: ClaimManager
    tasks: TaskRegistry
    merges: MergeEngine
    automations: AutomationRegistry
    scheduler: AutomationScheduler


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _log_event(event: dict[str, Any]) -> None:
    logger.info("event %s", json.dumps(event, ensure_ascii=False, sort_keys=True, default=str))


def _load_runtime(repo_value: str | None, config_value: str) -> Runtime:
    git = GitRunner()
    repo_root = git.repo_root(Path(repo_value or Path.cwd()).resolve())
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    state_dir = Path(config.state.directory)
    if not state_dir.is_absolute():
        state_dir = repo_root / state_dir
    store = JsonStateStore(state_dir, lock_timeout_seconds=config.state.lock_timeout_seconds)
    liveness = default_liveness_checker()
    worktrees = WorktreeManager(
        repo_root,
        git=git,
        progress_interval_seconds=config.sessions.progress_interval_seconds,
        event_hook=_log_event,
    )
    sessions = SessionRegistry(
        repo_root,
        store,
        worktrees=worktrees,
        liveness=liveness,
        git=git,
        config=config.sessions,
    )
    claims = ClaimManager(store, liveness=liveness, ttl_hours=config.claims.ttl_hours)
    automations = AutomationRegistry(store, config=config.automations)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        worktrees=worktrees,
        sessions=sessions,
        claims=claims,
        tasks=TaskRegistry(store),
        merges=MergeEngine(
            repo_root,
            store,
            sessions,
            worktrees=worktrees,
            git=git,
            claims=claims,
            config=config.merge,
            event_hook=_log_event,
        ),
        automations=automations,
        scheduler=AutomationScheduler(
            automations,
            repo_root,
            config=config.automations,
            event_hook=_log_event,
        ),
    )


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _runtime(ctx: click.Context) -> Runtime:
    runtime = ctx.obj.get("runtime")
    if runtime is None:
        runtime = _load_runtime(ctx.obj.get("repo"), ctx.obj.get("config", DEFAULT_CONFIG))
        ctx.obj["runtime"] = runtime
    return runtime


def json_command(func: Callable[..., Any]) -> Callable[..., Any]:
    """Print the command's return value as JSON; exit 1 on failure."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            payload = func(*args, **kwargs)
        except ForemanError as exc:
            logger.debug("command failed", exc_info=True)
            _emit({"success": False, "error": exc.to_dict()})
            sys.exit(1)
        _emit(payload)
        if isinstance(payload, dict) and payload.get("success") is False:
            sys.exit(1)

    return wrapper


def _parse_json_option(value: str | None, option: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"{option} must be valid JSON: {exc}", option=option) from exc


def _progress(elapsed: float) -> None:
    click.echo(f"still working... {elapsed:.0f}s elapsed", err=True)


@click.group()
@click.version_option(__version__, prog_name="foreman")
@click.option("--repo", "repo_value", default=None, help="Any path inside the repository.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.option(
    "--log-level",
    default="WARNING",
    envvar="FOREMAN_LOG_LEVEL",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
@click.pass_context
def cli(ctx: click.Context, repo_value: str | None, config_value: str, log_level: str) -> None:
    """Coordinate parallel sessions on one repository."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj.update({"repo": repo_value, "config": config_value})


@cli.command("init")
@click.pass_context
@json_command
def init_command(ctx: click.Context) -> dict[str, Any]:
    runtime = _runtime(ctx)
    if not runtime.config_path.exists():
        save_config(runtime.config_path, runtime.config)
    main = runtime.sessions.main()
    return {
        "success": True,
        "repo_root": str(runtime.repo_root),
        "config": str(runtime.config_path),
        "state_dir": str(runtime.store.state_dir),
        "main_session": main.to_dict(),
    }


# Sessions


@cli.command("create")
@click.option("--nickname", default=None)
@click.option("--branch", default=None)
@click.option("--base", default="HEAD", show_default=True)
@click.option("--in-place", is_flag=True, default=False, help="Register an existing checkout.")
@click.option("--path", "path_value", default=None, type=click.Path(file_okay=False))
@click.option("--pid", type=int, default=None, help="Owning process (defaults to the parent pid).")
@click.option("--story", "story_id", default=None)
@click.option("--timeout", "timeout_seconds", type=float, default=None)
@click.pass_context
@json_command
def create_command(
    ctx: click.Context,
    nickname: str | None,
    branch: str | None,
    base: str,
    in_place: bool,
    path_value: str | None,
    pid: int | None,
    story_id: str | None,
    timeout_seconds: float | None,
) -> dict[str, Any]:
    runtime = _runtime(ctx)
    session = asyncio.run(
        runtime.sessions.create(
            nickname,
            branch,
            in_place=in_place,
            path=Path(path_value) if path_value else None,
            base=base,
            pid=pid if pid is not None else os.getppid(),
            story_id=story_id,
            timeout_seconds=timeout_seconds,
            progress=_progress,
        )
    )
    return {"success": True, "session": session.to_dict()}


@cli.command("delete")
@click.argument("session_ref")
@click.option("--keep-worktree", is_flag=True, default=False)
@click.option("--delete-branch", is_flag=True, default=False)
@click.option("--force", is_flag=True, default=False)
@click.pass_context
@json_command
def delete_command(
    ctx: click.Context,
    session_ref: str,
    keep_worktree: bool,
    delete_branch: bool,
    force: bool,
) -> dict[str, Any]:
    runtime = _runtime(ctx)
    result = runtime.sessions.delete(
        session_ref,
        remove_worktree=not keep_worktree,
        delete_branch=delete_branch,
        force=force,
    )
    result["released_claims"] = runtime.claims.release_all(result["session_id"])
    return {"success": True, **result}


@cli.command("deactivate")
@click.argument("session_ref")
@click.pass_context
@json_command
def deactivate_command(ctx: click.Context, session_ref: str) -> dict[str, Any]:
    session = _runtime(ctx).sessions.deactivate(session_ref)
    return {"success": True, "session": session.to_dict()}


@cli.command("touch")
@click.argument("session_ref")
@click.option("--pid", type=int, default=None)
@click.pass_context
@json_command
def touch_command(ctx: click.Context, session_ref: str, pid: int | None) -> dict[str, Any]:
    session = _runtime(ctx).sessions.mark_active(session_ref, pid=pid)
    return {"success": True, "session": session.to_dict()}


@cli.command("status")
@click.argument("session_ref", required=False)
@click.pass_context
@json_command
def status_command(ctx: click.Context, session_ref: str | None) -> dict[str, Any]:
    runtime = _runtime(ctx)
    claims = runtime.claims.list()
    if session_ref:
        session = runtime.sessions.get(session_ref)
        return {
            "success": True,
            "session": session.to_dict(),
            "claims": [claim.to_dict() for claim in claims if claim.session_id == session.id],
        }
    sessions = runtime.sessions.list()
    return {
        "success": True,
        "sessions": [session.to_dict() for session in sessions],
        "claims": [claim.to_dict() for claim in claims],
        "active": sum(1 for session in sessions if session.status == "active"),
    }


@cli.command("health")
@click.option("--detailed", is_flag=True, default=False)
@click.pass_context
@json_command
def health_command(ctx: click.Context, detailed: bool) -> dict[str, Any]:
    report = _runtime(ctx).sessions.health(detailed=detailed)
    return {"success": True, **report}


# Claims


@cli.command("claim")
@click.argument("item_id")
@click.option("--session", "session_ref", required=True)
@click.option("--pid", type=int, default=None, help="Owning process (defaults to the parent pid).")
@click.option("--ttl-hours", type=float, default=None)
@click.pass_context
@json_command
def claim_command(
    ctx: click.Context,
    item_id: str,
    session_ref: str,
    pid: int | None,
    ttl_hours: float | None,
) -> dict[str, Any]:
    runtime = _runtime(ctx)
    session = runtime.sessions.get(session_ref)
    claim = runtime.claims.claim(
        item_id,
        session.id,
        pid if pid is not None else (session.pid or os.getppid()),
        ttl_hours=ttl_hours,
    )
    return {"success": True, "claim": claim.to_dict()}


@cli.command("release")
@click.argument("item_id")
@click.option("--session", "session_ref", required=True)
@click.pass_context
@json_command
def release_command(ctx: click.Context, item_id: str, session_ref: str) -> dict[str, Any]:
    runtime = _runtime(ctx)
    try:
        session_id = runtime.sessions.get(session_ref).id
    except SessionNotFoundError:
        # Claims may outlive the session's registry entry.
        session_id = session_ref
    released = runtime.claims.release(item_id, session_id)
    return {"success": True, "item_id": item_id, "released": released}


@cli.command("claims")
@click.option("--session", "session_ref", default=None, help="Show claims held by other sessions.")
@click.pass_context
@json_command
def claims_command(ctx: click.Context, session_ref: str | None) -> dict[str, Any]:
    runtime = _runtime(ctx)
    if session_ref:
        session = runtime.sessions.get(session_ref)
        claims = runtime.claims.list_others(session.id)
    else:
        claims = runtime.claims.list()
    return {"success": True, "claims": [claim.to_dict() for claim in claims]}


@cli.command("cleanup-claims")
@click.pass_context
@json_command
def cleanup_claims_command(ctx: click.Context) -> dict[str, Any]:
    removed = _runtime(ctx).claims.cleanup()
    return {"success": True, "removed": [claim.to_dict() for claim in removed]}


# Merging


@cli.command("check-merge")
@click.argument("session_ref")
@click.pass_context
@json_command
def check_merge_command(ctx: click.Context, session_ref: str) -> dict[str, Any]:
    result = _runtime(ctx).merges.check_uncommitted(session_ref)
    return {"success": True, **result}


@cli.command("merge-preview")
@click.argument("session_ref")
@click.option("--target", default=None)
@click.pass_context
@json_command
def merge_preview_command(ctx: click.Context, session_ref: str, target: str | None) -> dict[str, Any]:
    return {"success": True, **_runtime(ctx).merges.preview(session_ref, target)}


@cli.command("conflicts")
@click.argument("session_ref")
@click.option("--target", default=None)
@click.pass_context
@json_command
def conflicts_command(ctx: click.Context, session_ref: str, target: str | None) -> dict[str, Any]:
    return {"success": True, **_runtime(ctx).merges.detect_conflicts(session_ref, target)}


def _merge_options(func: Callable[..., Any]) -> Callable[..., Any]:
    options = [
        click.argument("session_ref"),
        click.option("--strategy", type=click.Choice(STRATEGIES), default=None),
        click.option("--target", default=None),
        click.option("--message", "-m", default=None),
        click.option("--keep-branch", is_flag=True, default=False),
        click.option("--keep-worktree", is_flag=True, default=False),
        click.option("--unstash", is_flag=True, default=False),
        click.option("--force", is_flag=True, default=False, help="Force worktree removal."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _integrate(ctx: click.Context, auto_resolve: bool, **options: Any) -> dict[str, Any]:
    result = _runtime(ctx).merges.integrate(
        options["session_ref"],
        strategy=options["strategy"],
        target=options["target"],
        message=options["message"],
        delete_branch=not options["keep_branch"],
        delete_worktree=not options["keep_worktree"],
        unstash=options["unstash"],
        force_remove=options["force"],
        auto_resolve=auto_resolve,
    )
    return result.to_dict()


@cli.command("integrate")
@_merge_options
@click.pass_context
@json_command
def integrate_command(ctx: click.Context, **options: Any) -> dict[str, Any]:
    return _integrate(ctx, False, **options)


@cli.command("smart-merge")
@_merge_options
@click.pass_context
@json_command
def smart_merge_command(ctx: click.Context, **options: Any) -> dict[str, Any]:
    return _integrate(ctx, True, **options)


@cli.command("commit-changes")
@click.argument("session_ref")
@click.option("--message", "-m", default=None)
@click.pass_context
@json_command
def commit_changes_command(ctx: click.Context, session_ref: str, message: str | None) -> dict[str, Any]:
    return {"success": True, **_runtime(ctx).merges.commit_changes(session_ref, message)}


@cli.command("stash")
@click.argument("session_ref")
@click.pass_context
@json_command
def stash_command(ctx: click.Context, session_ref: str) -> dict[str, Any]:
    return {"success": True, **_runtime(ctx).merges.stash_changes(session_ref)}


@cli.command("unstash")
@click.argument("session_ref")
@click.pass_context
@json_command
def unstash_command(ctx: click.Context, session_ref: str) -> dict[str, Any]:
    return {"success": True, **_runtime(ctx).merges.unstash(session_ref)}


@cli.command("discard-changes")
@click.argument("session_ref")
@click.pass_context
@json_command
def discard_changes_command(ctx: click.Context, session_ref: str) -> dict[str, Any]:
    return {"success": True, **_runtime(ctx).merges.discard_changes(session_ref)}


@cli.command("merge-history")
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_context
@json_command
def merge_history_command(ctx: click.Context, limit: int) -> dict[str, Any]:
    merges = _runtime(ctx).merges
    return {"success": True, "entries": merges.history(limit), "last_merge": merges.last_merge()}


# Tasks


@cli.group("task")
def task_group() -> None:
    """Task dependency graph."""


@task_group.command("create")
@click.option("--description", "-d", required=True)
@click.option("--subagent-type", "-t", required=True)
@click.option("--story", "story_id", default=None)
@click.option("--blocked-by", "blocked_by", multiple=True)
@click.option("--validator-for", "validator_for", default=None, help="Builder task this validates.")
@click.option("--metadata", "metadata_json", default=None, help="JSON object.")
@click.option("--id", "task_id", default=None)
@click.pass_context
@json_command
def task_create_command(
    ctx: click.Context,
    description: str,
    subagent_type: str,
    story_id: str | None,
    blocked_by: tuple[str, ...],
    validator_for: str | None,
    metadata_json: str | None,
    task_id: str | None,
) -> dict[str, Any]:
    metadata = _parse_json_option(metadata_json, "--metadata") or {}
    dependencies = list(blocked_by)
    if validator_for:
        metadata.update({"is_validator": True, "validates": validator_for})
        if validator_for not in dependencies:
            dependencies.append(validator_for)
    task = _runtime(ctx).tasks.create(
        description,
        subagent_type,
        story_id=story_id,
        blocked_by=dependencies,
        metadata=metadata,
        task_id=task_id,
    )
    return {"success": True, "task": task.to_dict()}


@task_group.command("update")
@click.argument("task_id")
@click.option("--state", type=click.Choice(TASK_STATES), default=None)
@click.option("--metadata", "metadata_json", default=None, help="JSON object merged into metadata.")
@click.option("--blocked-by", "blocked_by", multiple=True)
@click.option("--clear-blocked-by", is_flag=True, default=False)
@click.option("--description", default=None)
@click.option("--error", default=None)
@click.pass_context
@json_command
def task_update_command(
    ctx: click.Context,
    task_id: str,
    state: str | None,
    metadata_json: str | None,
    blocked_by: tuple[str, ...],
    clear_blocked_by: bool,
    description: str | None,
    error: str | None,
) -> dict[str, Any]:
    dependencies: list[str] | None = list(blocked_by) if blocked_by else None
    if clear_blocked_by:
        dependencies = []
    update = _runtime(ctx).tasks.update(
        task_id,
        state=state,
        metadata=_parse_json_option(metadata_json, "--metadata"),
        blocked_by=dependencies,
        description=description,
        error=error,
    )
    return {"success": True, **update.to_dict()}


@task_group.command("start")
@click.argument("task_id")
@click.pass_context
@json_command
def task_start_command(ctx: click.Context, task_id: str) -> dict[str, Any]:
    return {"success": True, **_runtime(ctx).tasks.start(task_id).to_dict()}


@task_group.command("complete")
@click.argument("task_id")
@click.option("--result", "result_json", default=None, help="JSON result payload.")
@click.pass_context
@json_command
def task_complete_command(ctx: click.Context, task_id: str, result_json: str | None) -> dict[str, Any]:
    result = _parse_json_option(result_json, "--result")
    return {"success": True, **_runtime(ctx).tasks.complete(task_id, result).to_dict()}


@task_group.command("fail")
@click.argument("task_id")
@click.option("--error", required=True)
@click.pass_context
@json_command
def task_fail_command(ctx: click.Context, task_id: str, error: str) -> dict[str, Any]:
    return {"success": True, **_runtime(ctx).tasks.fail(task_id, error).to_dict()}


@task_group.command("cancel")
@click.argument("task_id")
@click.pass_context
@json_command
def task_cancel_command(ctx: click.Context, task_id: str) -> dict[str, Any]:
    return {"success": True, **_runtime(ctx).tasks.cancel(task_id).to_dict()}


@task_group.command("retry")
@click.argument("task_id")
@click.pass_context
@json_command
def task_retry_command(ctx: click.Context, task_id: str) -> dict[str, Any]:
    return {"success": True, **_runtime(ctx).tasks.retry(task_id).to_dict()}


@task_group.command("get")
@click.argument("task_id")
@click.pass_context
@json_command
def task_get_command(ctx: click.Context, task_id: str) -> dict[str, Any]:
    return {"success": True, "task": _runtime(ctx).tasks.get(task_id).to_dict()}


@task_group.command("list")
@click.option("--state", type=click.Choice(TASK_STATES), default=None)
@click.option("--subagent-type", default=None)
@click.option("--story", "story_id", default=None)
@click.pass_context
@json_command
def task_list_command(
    ctx: click.Context,
    state: str | None,
    subagent_type: str | None,
    story_id: str | None,
) -> dict[str, Any]:
    tasks = _runtime(ctx).tasks.get_all(state=state, subagent_type=subagent_type, story_id=story_id)
    return {"success": True, "tasks": [task.to_dict() for task in tasks]}


@task_group.command("ready")
@click.pass_context
@json_command
def task_ready_command(ctx: click.Context) -> dict[str, Any]:
    tasks = _runtime(ctx).tasks.get_ready_tasks()
    return {"success": True, "tasks": [task.to_dict() for task in tasks]}


@task_group.command("graph")
@click.pass_context
@json_command
def task_graph_command(ctx: click.Context) -> dict[str, Any]:
    return {"success": True, **_runtime(ctx).tasks.get_dependency_graph()}


@task_group.command("stats")
@click.pass_context
@json_command
def task_stats_command(ctx: click.Context) -> dict[str, Any]:
    return {"success": True, **_runtime(ctx).tasks.get_stats()}


@task_group.command("audit")
@click.option("--task", "task_id", default=None)
@click.option("--limit", type=int, default=100, show_default=True)
@click.pass_context
@json_command
def task_audit_command(ctx: click.Context, task_id: str | None, limit: int) -> dict[str, Any]:
    return {"success": True, "entries": _runtime(ctx).tasks.get_audit_trail(task_id, limit)}


@task_group.command("add-dep")
@click.argument("task_id")
@click.argument("depends_on")
@click.pass_context
@json_command
def task_add_dep_command(ctx: click.Context, task_id: str, depends_on: str) -> dict[str, Any]:
    return {"success": True, **_runtime(ctx).tasks.add_dependency(task_id, depends_on).to_dict()}


@task_group.command("remove-dep")
@click.argument("task_id")
@click.argument("depends_on")
@click.pass_context
@json_command
def task_remove_dep_command(ctx: click.Context, task_id: str, depends_on: str) -> dict[str, Any]:
    return {"success": True, **_runtime(ctx).tasks.remove_dependency(task_id, depends_on).to_dict()}


@task_group.command("delete")
@click.argument("task_id")
@click.pass_context
@json_command
def task_delete_command(ctx: click.Context, task_id: str) -> dict[str, Any]:
    _runtime(ctx).tasks.delete(task_id)
    return {"success": True, "deleted": task_id}


@task_group.command("cleanup")
@click.option("--max-age-days", type=float, default=7, show_default=True)
@click.pass_context
@json_command
def task_cleanup_command(ctx: click.Context, max_age_days: float) -> dict[str, Any]:
    return {"success": True, "removed": _runtime(ctx).tasks.cleanup(max_age_days)}


# Automations


@cli.group("automation")
def automation_group() -> None:
    """Scheduled automations."""


@automation_group.command("list")
@click.pass_context
@json_command
def automation_list_command(ctx: click.Context) -> dict[str, Any]:
    automations = _runtime(ctx).automations.list()
    return {"success": True, "automations": [item.to_dict() for item in automations]}


@automation_group.command("add")
@click.argument("name")
@click.option("--command", "command_text", required=True)
@click.option(
    "--schedule",
    "schedule_type",
    type=click.Choice(["daily", "weekly", "monthly", "interval", "on_session"]),
    default="daily",
    show_default=True,
)
@click.option("--day", default=None, help="Weekly: weekday name or 0-6 (0 = Sunday).")
@click.option("--date", type=int, default=None, help="Monthly: day of month.")
@click.option("--hours", type=float, default=None, help="Interval: hours between runs.")
@click.option("--timeout-ms", type=int, default=None)
@click.option("--max-retries", type=int, default=None)
@click.option("--id", "automation_id", default=None)
@click.option("--description", default="")
@click.option("--disabled", is_flag=True, default=False)
@click.pass_context
@json_command
def automation_add_command(
    ctx: click.Context,
    name: str,
    command_text: str,
    schedule_type: str,
    day: str | None,
    date: int | None,
    hours: float | None,
    timeout_ms: int | None,
    max_retries: int | None,
    automation_id: str | None,
    description: str,
    disabled: bool,
) -> dict[str, Any]:
    schedule: dict[str, Any] = {"type": schedule_type}
    if day is not None:
        schedule["day"] = day
    if date is not None:
        schedule["date"] = date
    if hours is not None:
        schedule["hours"] = hours
    automation = _runtime(ctx).automations.add(
        name,
        command_text,
        schedule,
        automation_id=automation_id,
        timeout_ms=timeout_ms,
        max_retries=max_retries,
        enabled=not disabled,
        description=description,
    )
    return {"success": True, "automation": automation.to_dict()}


@automation_group.command("remove")
@click.argument("automation_id")
@click.pass_context
@json_command
def automation_remove_command(ctx: click.Context, automation_id: str) -> dict[str, Any]:
    _runtime(ctx).automations.remove(automation_id)
    return {"success": True, "removed": automation_id}


@automation_group.command("enable")
@click.argument("automation_id")
@click.pass_context
@json_command
def automation_enable_command(ctx: click.Context, automation_id: str) -> dict[str, Any]:
    return {"success": True, "automation": _runtime(ctx).automations.enable(automation_id).to_dict()}


@automation_group.command("disable")
@click.argument("automation_id")
@click.pass_context
@json_command
def automation_disable_command(ctx: click.Context, automation_id: str) -> dict[str, Any]:
    return {"success": True, "automation": _runtime(ctx).automations.disable(automation_id).to_dict()}


@automation_group.command("resume")
@click.argument("automation_id")
@click.pass_context
@json_command
def automation_resume_command(ctx: click.Context, automation_id: str) -> dict[str, Any]:
    return {"success": True, "automation": _runtime(ctx).automations.resume(automation_id).to_dict()}


@automation_group.command("due")
@click.option("--on-session", is_flag=True, default=False)
@click.pass_context
@json_command
def automation_due_command(ctx: click.Context, on_session: bool) -> dict[str, Any]:
    due = _runtime(ctx).scheduler.get_due(on_session=on_session)
    return {"success": True, "due": [item.id for item in due]}


@automation_group.command("run")
@click.argument("automation_id")
@click.pass_context
@json_command
def automation_run_command(ctx: click.Context, automation_id: str) -> dict[str, Any]:
    result = asyncio.run(_runtime(ctx).scheduler.run(automation_id))
    return result.to_dict()


@automation_group.command("run-due")
@click.option("--on-session", is_flag=True, default=False)
@click.pass_context
@json_command
def automation_run_due_command(ctx: click.Context, on_session: bool) -> dict[str, Any]:
    results = asyncio.run(_runtime(ctx).scheduler.run_due(on_session=on_session))
    return {
        "success": all(result.success for result in results),
        "runs": [result.to_dict() for result in results],
    }


@automation_group.command("history")
@click.argument("automation_id")
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_context
@json_command
def automation_history_command(ctx: click.Context, automation_id: str, limit: int) -> dict[str, Any]:
    return {
        "success": True,
        "automation_id": automation_id,
        "history": _runtime(ctx).automations.history(automation_id, limit),
    }
