from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


@dataclass(slots=True)
class CommandResult:
    command: list[str] | str
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "stdout_tail": self.stdout[-1000:],
            "stderr_tail": self.stderr[-1000:],
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
        }


def _signal_process(proc: asyncio.subprocess.Process, *, hard: bool) -> None:
    if proc.returncode is not None:
        return
    try:
        if os.name == "nt":
            if hard:
                proc.kill()
            else:
                proc.terminate()
            return
        # Started with start_new_session, so the pid is also the process group id.
        os.killpg(proc.pid, signal.SIGKILL if hard else signal.SIGTERM)
    except ProcessLookupError:
        pass


async def terminate_process(proc: asyncio.subprocess.Process, grace_seconds: float) -> None:
    """SIGTERM the process group, escalating to SIGKILL after ``grace_seconds``."""
    if proc.returncode is not None:
        return
    logger.info("terminating pid %s", proc.pid)
    _signal_process(proc, hard=False)
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
        return
    except TimeoutError:
        logger.warning("pid %s ignored SIGTERM for %.1fs, sending SIGKILL", proc.pid, grace_seconds)
    _signal_process(proc, hard=True)
    await proc.wait()


async def _tick_progress(callback: ProgressCallback, started: float, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        callback(time.monotonic() - started)


async def run_command(
    command: list[str] | str,
    *,
    cwd: Path,
    env: dict[str, str] | None = None,
    timeout_seconds: float | None = None,
    kill_grace_seconds: float = 1.0,
    progress: ProgressCallback | None = None,
    progress_interval_seconds: float = 10.0,
) -> CommandResult:
    """Run ``command`` and wait for it, killing it if it exceeds ``timeout_seconds``.

    A string command runs through the shell, a list is executed directly.
    ``progress`` is called with the elapsed seconds every
    ``progress_interval_seconds`` while the command is still running.
    """
    started = time.monotonic()
    if isinstance(command, str):
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    else:
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )

    communicate = asyncio.ensure_future(proc.communicate())
    ticker: asyncio.Task[None] | None = None
    if progress is not None and progress_interval_seconds > 0:
        ticker = asyncio.ensure_future(_tick_progress(progress, started, progress_interval_seconds))

    timed_out = False
    try:
        try:
            stdout, stderr = await asyncio.wait_for(
                asyncio.shield(communicate), timeout=timeout_seconds
            )
        except TimeoutError:
            timed_out = True
            await terminate_process(proc, kill_grace_seconds)
            try:
                stdout, stderr = await asyncio.wait_for(communicate, timeout=kill_grace_seconds + 5)
            except TimeoutError:
                stdout, stderr = b"", b""
    finally:
        if ticker is not None:
            ticker.cancel()

    return CommandResult(
        command=command,
        exit_code=proc.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        duration_ms=int((time.monotonic() - started) * 1000),
        timed_out=timed_out,
    )
