from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from copy import deepcopy
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from foreman.errors import StateError
from foreman.state.locks import file_lock

logger = logging.getLogger(__name__)

Migration = Callable[[Any], Any]

_LOCK_NAME_PATTERN = re.compile(r"[^A-Za-z0-9._-]+")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class JsonStateStore:
    """One JSON document per namespace, each wrapped in a versioned envelope.

    Envelope shape: ``{"schema_version", "revision", "updated_at", "data"}``.
    Files written before envelopes existed are read as schema version 0 and
    brought forward by the migrations registered for their namespace.
    """

    def __init__(self, state_dir: Path, *, lock_timeout_seconds: float = 10.0) -> None:
        self.state_dir = state_dir.resolve()
        self.lock_timeout_seconds = lock_timeout_seconds
        self._schemas: dict[str, int] = {}
        self._migrations: dict[str, dict[int, Migration]] = {}
        self.state_dir.mkdir(parents=True, exist_ok=True)
        ignore_file = self.state_dir / ".gitignore"
        if not ignore_file.exists():
            ignore_file.write_text("*\n", encoding="utf-8")

    def register(
        self,
        namespace: str,
        schema_version: int,
        migrations: dict[int, Migration] | None = None,
    ) -> None:
        """Declare the current schema of ``namespace``.

        ``migrations`` maps a source version to a function producing the payload
        of the next version.
        """
        self._schemas[namespace] = schema_version
        self._migrations[namespace] = dict(migrations or {})

    def schema_version(self, namespace: str) -> int:
        if namespace not in self._schemas:
            raise StateError(f"Unsupported namespace: {namespace}", namespace=namespace)
        return self._schemas[namespace]

    def path_for(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    def _lock_path(self, name: str) -> Path:
        return self.state_dir / "locks" / f"{_LOCK_NAME_PATTERN.sub('_', name)}.lock"

    @contextmanager
    def locked(self, name: str) -> Iterator[None]:
        with file_lock(self._lock_path(name), timeout_seconds=self.lock_timeout_seconds):
            yield

    def _read_raw(self, namespace: str) -> Any:
        path = self.path_for(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateError(
                f"State file {path.name} is not valid JSON.",
                path=str(path),
                error=str(exc),
            ) from exc

    def _write_raw(self, namespace: str, envelope: dict[str, Any]) -> None:
        path = self.path_for(namespace)
        serialized = json.dumps(envelope, ensure_ascii=False, indent=2)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{namespace}-", suffix=".tmp", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def _normalize_envelope(self, namespace: str, raw_payload: Any, default: Any) -> dict[str, Any]:
        current_version = self.schema_version(namespace)
        if raw_payload is None:
            return {
                "schema_version": current_version,
                "revision": 0,
                "updated_at": _utcnow_iso(),
                "data": deepcopy(default),
            }

        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            version = int(raw_payload.get("schema_version") or 0)
            revision = int(raw_payload.get("revision") or 0)
            updated_at = raw_payload.get("updated_at") or _utcnow_iso()
            data = raw_payload.get("data")
        else:
            version = 0
            revision = 0
            updated_at = _utcnow_iso()
            data = raw_payload

        if version > current_version:
            raise StateError(
                f"State file for '{namespace}' has schema version {version}, "
                f"newer than supported version {current_version}.",
                namespace=namespace,
                schema_version=version,
            )
        migrations = self._migrations.get(namespace, {})
        while version < current_version:
            step = migrations.get(version)
            if step is not None:
                logger.info("migrating %s state from schema %s", namespace, version)
                data = step(data)
            version += 1

        return {
            "schema_version": current_version,
            "revision": revision,
            "updated_at": updated_at,
            "data": data,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        default_value = {} if default is None else default
        return self._normalize_envelope(namespace, self._read_raw(namespace), default_value)

    def get(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default)["data"]

    def update(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        """Apply ``updater`` to the latest data under the namespace lock.

        If ``updater`` raises, nothing is written.
        """
        default_value = {} if default is None else default
        with self.locked(namespace):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current["data"])
            self._write_raw(
                namespace,
                {
                    "schema_version": current["schema_version"],
                    "revision": int(current["revision"]) + 1,
                    "updated_at": _utcnow_iso(),
                    "data": updated,
                },
            )
            return updated

    def set(self, namespace: str, data: Any) -> None:
        self.update(namespace, lambda _current: data)
