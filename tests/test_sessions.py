import asyncio
import json
import subprocess
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from foreman.config import SessionsConfig
from foreman.errors import SessionError, SessionNotFoundError, ValidationError
from foreman.liveness import ProcessLivenessChecker
from foreman.sessions import SessionRegistry
from foreman.state import JsonStateStore


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


class FakeLiveness(ProcessLivenessChecker):
    def __init__(self, alive: set[int]) -> None:
        self.alive = alive

    def is_alive(self, pid: int | None) -> bool:
        return pid in self.alive


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


def _registry(
    repo: Path,
    alive: set[int] | None = None,
    clock: FakeClock | None = None,
    config: SessionsConfig | None = None,
) -> SessionRegistry:
    return SessionRegistry(
        repo,
        JsonStateStore(repo / ".foreman"),
        liveness=FakeLiveness(alive if alive is not None else set()),
        config=config,
        clock=clock,
    )


def test_main_session_is_registered_on_first_use(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)

    sessions = _registry(repo).list()

    assert len(sessions) == 1
    main = sessions[0]
    assert main.is_main
    assert main.id == "1"
    assert main.branch == "main"
    assert main.path == str(repo.resolve())


def test_create_session_with_nickname(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    registry = _registry(repo, alive={4242})

    session = asyncio.run(registry.create("auth", pid=4242, story_id="AUTH-1"))

    assert session.id == "2"
    assert session.kind == "worktree"
    assert session.branch == "session-2"
    assert Path(session.path) == (tmp_path / "repo-auth").resolve()
    assert (Path(session.path) / "seed.txt").exists()
    assert registry.get("auth").id == "2"
    assert registry.get(2).story_id == "AUTH-1"
    assert registry.get("auth").status == "active"
    assert [item.id for item in registry.list()] == ["1", "2"]


def test_duplicate_or_invalid_nickname_is_rejected(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    registry = _registry(repo)
    asyncio.run(registry.create("auth"))

    with pytest.raises(SessionError, match="already in use"):
        asyncio.run(registry.create("auth"))
    with pytest.raises(ValidationError):
        asyncio.run(registry.create("has space"))
    with pytest.raises(ValidationError):
        asyncio.run(registry.create("42"))


def test_explicit_branch_and_env_files_copied(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    (repo / ".env").write_text("TOKEN=abc\n", encoding="utf-8")
    registry = _registry(repo)

    session = asyncio.run(registry.create(None, "feature/login"))

    assert session.branch == "feature/login"
    assert Path(session.path).name == "repo-2"
    assert (Path(session.path) / ".env").read_text(encoding="utf-8") == "TOKEN=abc\n"


def test_dead_pid_reads_as_inactive(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    alive = {4242}
    registry = _registry(repo, alive=alive)
    asyncio.run(registry.create("auth", pid=4242))

    alive.clear()

    assert registry.get("auth").status == "inactive"


def test_mark_active_and_deactivate(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    clock = FakeClock()
    registry = _registry(repo, alive={7}, clock=clock)
    asyncio.run(registry.create("auth"))

    registry.deactivate("auth")
    assert registry.get("auth").status == "inactive"

    clock.now += timedelta(hours=2)
    touched = registry.mark_active("auth", pid=7)

    assert touched.status == "active"
    assert touched.pid == 7
    assert touched.last_active_at == "2026-03-02T11:00:00+00:00"


def test_main_session_cannot_be_deleted_but_can_be_deactivated(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    registry = _registry(repo)

    with pytest.raises(SessionError, match="cannot be deleted"):
        registry.delete("1")

    assert registry.deactivate("1").status == "inactive"
    assert registry.main().path == str(repo.resolve())


def test_delete_removes_worktree_and_entry(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    registry = _registry(repo)
    session = asyncio.run(registry.create("auth"))

    result = registry.delete("auth", delete_branch=True)

    assert result["worktree"]["removed"] is True
    assert result["branch_deleted"] is True
    assert not Path(session.path).exists()
    with pytest.raises(SessionNotFoundError):
        registry.get("auth")
    assert "session-2" not in _run(["git", "branch", "--list"], cwd=repo)


def test_in_place_registration(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    checkout = tmp_path / "manual"
    _run(["git", "worktree", "add", "-b", "manual", str(checkout)], cwd=repo)
    registry = _registry(repo)

    session = asyncio.run(registry.create("manual", in_place=True, path=checkout, pid=99))

    assert session.branch == "manual"
    assert session.path == str(checkout.resolve())
    again = asyncio.run(registry.create(None, in_place=True, path=checkout, pid=100))
    assert again.id == session.id
    assert again.pid == 100

    outsider = tmp_path / "outsider"
    _init_git_repo(outsider)
    with pytest.raises(ValidationError):
        asyncio.run(registry.create(None, in_place=True, path=outsider))


def test_health_reports_problems(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    clock = FakeClock()
    alive = {500}
    registry = _registry(repo, alive=alive, clock=clock)
    dirty = asyncio.run(registry.create("dirty", pid=500))
    stale = asyncio.run(registry.create("stale", pid=600))
    vanished = asyncio.run(registry.create("vanished"))
    (Path(dirty.path) / "notes.md").write_text("wip\n", encoding="utf-8")
    _run(["git", "worktree", "remove", "--force", vanished.path], cwd=repo)
    _run(["git", "worktree", "add", "-b", "stray", str(tmp_path / "stray")], cwd=repo)

    clock.now += timedelta(days=8)
    report = registry.health(detailed=True)

    assert report["healthy"] is False
    assert [item["id"] for item in report["uncommitted"]] == [dirty.id]
    assert report["uncommitted"][0]["files"][0]["path"] == "notes.md"
    assert [item["id"] for item in report["stale"]] == [stale.id]
    assert report["stale"][0]["days_inactive"] == 8
    assert [item["id"] for item in report["orphaned_registry"]] == [vanished.id]
    assert [item["branch"] for item in report["orphaned_worktrees"]] == ["stray"]
    assert registry.get("dirty").last_active_at == "2026-03-10T09:00:00+00:00"


def test_clean_repo_is_healthy(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    registry = _registry(repo)
    asyncio.run(registry.create("auth"))

    report = registry.health()

    assert report["healthy"] is True
    assert report["sessions"] == 2


def test_legacy_registry_is_migrated(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    state_dir = repo / ".foreman"
    state_dir.mkdir()
    (state_dir / "sessions.json").write_text(
        json.dumps(
            {
                "next_id": 3,
                "sessions": {
                    "1": {
                        "is_main": True,
                        "path": str(repo.resolve()),
                        "branch": "main",
                        "created": "2026-01-01T00:00:00+00:00",
                        "last_active": "2026-01-02T00:00:00+00:00",
                    },
                    "2": {
                        "path": str(tmp_path / "repo-2"),
                        "branch": "session-2",
                        "nickname": "old",
                        "created": "2026-01-01T00:00:00+00:00",
                    },
                },
            }
        ),
        encoding="utf-8",
    )
    registry = _registry(repo)

    main = registry.main()
    old = registry.get("old")

    assert main.id == "1"
    assert main.last_active_at == "2026-01-02T00:00:00+00:00"
    assert old.kind == "worktree"
    assert old.created_at == "2026-01-01T00:00:00+00:00"
    assert asyncio.run(registry.create("next")).id == "3"


def test_health_reports_unusable_checkout_without_aborting(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    registry = _registry(repo)
    broken = asyncio.run(registry.create("broken"))
    dirty = asyncio.run(registry.create("dirty"))
    (Path(broken.path) / ".git").write_text("gitdir: /nonexistent/foreman\n", encoding="utf-8")
    (Path(dirty.path) / "notes.md").write_text("wip\n", encoding="utf-8")

    report = registry.health()

    assert report["healthy"] is False
    assert [item["id"] for item in report["orphaned_registry"]] == [broken.id]
    assert "not a git repository" in report["orphaned_registry"][0]["error"]
    assert [item["id"] for item in report["uncommitted"]] == [dirty.id]
