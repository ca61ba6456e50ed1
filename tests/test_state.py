import json
import threading
from pathlib import Path

import pytest

from foreman.errors import StateError
from foreman.state import JsonStateStore, file_lock


def test_update_writes_versioned_envelope(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / ".foreman")
    store.register("metrics", 2)

    store.set("metrics", {"count": 1})
    store.update("metrics", lambda data: {"count": data["count"] + 1})

    on_disk = json.loads((tmp_path / ".foreman" / "metrics.json").read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == 2
    assert on_disk["revision"] == 2
    assert on_disk["data"] == {"count": 2}
    assert store.get("metrics") == {"count": 2}


def test_state_dir_is_git_ignored(tmp_path: Path) -> None:
    JsonStateStore(tmp_path / ".foreman")

    assert (tmp_path / ".foreman" / ".gitignore").read_text(encoding="utf-8") == "*\n"


def test_missing_namespace_returns_default_copy(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)
    store.register("things", 1)
    default = {"items": []}

    data = store.get("things", default=default)
    data["items"].append("x")

    assert default == {"items": []}
    assert store.get_envelope("things", default=default)["revision"] == 0


def test_legacy_payload_is_migrated_stepwise(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)
    store.register(
        "claims",
        2,
        migrations={
            0: lambda data: {"claims": data},
            1: lambda data: {**data, "migrated": True},
        },
    )
    (tmp_path / "claims.json").write_text(json.dumps({"STORY-1": {"session_id": "2"}}), encoding="utf-8")

    payload = store.get("claims")

    assert payload == {"claims": {"STORY-1": {"session_id": "2"}}, "migrated": True}


def test_newer_schema_is_rejected(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)
    store.register("tasks", 1)
    (tmp_path / "tasks.json").write_text(
        json.dumps({"schema_version": 5, "revision": 3, "data": {}}),
        encoding="utf-8",
    )

    with pytest.raises(StateError, match="newer than supported"):
        store.get("tasks")


def test_corrupt_file_raises_state_error(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)
    store.register("sessions", 1)
    (tmp_path / "sessions.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(StateError, match="not valid JSON"):
        store.get("sessions")


def test_failed_updater_writes_nothing(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)
    store.register("counter", 1)
    store.set("counter", {"value": 1})

    def _boom(data: dict) -> dict:
        data["value"] = 99
        raise ValueError("nope")

    with pytest.raises(ValueError):
        store.update("counter", _boom)

    envelope = store.get_envelope("counter")
    assert envelope["data"] == {"value": 1}
    assert envelope["revision"] == 1
    assert not list(tmp_path.glob("*.tmp"))


def test_concurrent_updates_do_not_lose_writes(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path)
    store.register("counter", 1)

    def _worker() -> None:
        # Separate store objects share nothing but the files on disk.
        local = JsonStateStore(tmp_path)
        local.register("counter", 1)
        for _ in range(20):
            local.update("counter", lambda data: {"value": data.get("value", 0) + 1})

    threads = [threading.Thread(target=_worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.get("counter") == {"value": 80}
    assert store.get_envelope("counter")["revision"] == 80


def test_file_lock_times_out_while_held(tmp_path: Path) -> None:
    lock_path = tmp_path / "locks" / "merge-main.lock"

    with file_lock(lock_path):
        holder_error: list[Exception] = []

        def _contender() -> None:
            try:
                with file_lock(lock_path, timeout_seconds=0.1):
                    pass
            except StateError as exc:
                holder_error.append(exc)

        thread = threading.Thread(target=_contender)
        thread.start()
        thread.join()

    assert holder_error
    assert "Timed out waiting for lock" in str(holder_error[0])
