from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Any

from foreman.errors import GitCommandError, ValidationError
from foreman.process import CommandResult, ProgressCallback, run_command

logger = logging.getLogger(__name__)

_INVALID_BRANCH_PATTERN = re.compile(r"[\s~^:?*\[\\]|\.\.|@\{|//")


def validate_branch_name(name: str) -> str:
    """Reject names git would refuse, before anything is created on disk."""
    candidate = name.strip()
    if (
        not candidate
        or _INVALID_BRANCH_PATTERN.search(candidate)
        or candidate.startswith(("-", "/", "."))
        or candidate.endswith(("/", ".", ".lock"))
        or candidate == "@"
    ):
        raise ValidationError(f"Invalid branch name: {name!r}", branch=name)
    return candidate


class GitRunner:
    def __init__(self, binary: str = "git") -> None:
        self.binary = binary

    def build_command(self, args: list[str]) -> list[str]:
        return [self.binary, "--no-pager", "-c", "core.quotepath=false", *args]

    def run(
        self,
        args: list[str],
        cwd: Path,
        *,
        check: bool = True,
        input_text: str | None = None,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
        proc = subprocess.run(
            self.build_command(args),
            cwd=cwd,
            text=True,
            capture_output=True,
            input=input_text,
            env=env,
        )
        if check and proc.returncode != 0:
            raise GitCommandError(
                proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed",
                args=args,
                exit_code=proc.returncode,
                stderr=proc.stderr.strip(),
                cwd=str(cwd),
            )
        return proc

    async def run_async(
        self,
        args: list[str],
        cwd: Path,
        *,
        timeout_seconds: float | None = None,
        kill_grace_seconds: float = 1.0,
        progress: ProgressCallback | None = None,
        progress_interval_seconds: float = 10.0,
    ) -> CommandResult:
        logger.debug("git %s (cwd=%s, timeout=%s)", " ".join(args), cwd, timeout_seconds)
        return await run_command(
            self.build_command(args),
            cwd=cwd,
            timeout_seconds=timeout_seconds,
            kill_grace_seconds=kill_grace_seconds,
            progress=progress,
            progress_interval_seconds=progress_interval_seconds,
        )

    def output(self, args: list[str], cwd: Path) -> str:
        return self.run(args, cwd).stdout.strip()

    def repo_root(self, path: Path) -> Path:
        """Return the main checkout of the repository containing ``path``.

        Works from inside linked worktrees too, since they share the common git dir.
        """
        common_dir = Path(self.output(["rev-parse", "--git-common-dir"], path))
        if not common_dir.is_absolute():
            common_dir = path / common_dir
        common_dir = common_dir.resolve()
        if common_dir.name == ".git":
            return common_dir.parent
        return Path(self.output(["rev-parse", "--show-toplevel"], path)).resolve()

    def current_branch(self, cwd: Path) -> str:
        return self.output(["rev-parse", "--abbrev-ref", "HEAD"], cwd)

    def head(self, cwd: Path, ref: str = "HEAD") -> str:
        return self.output(["rev-parse", ref], cwd)

    def branch_exists(self, cwd: Path, branch: str) -> bool:
        proc = self.run(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], cwd, check=False
        )
        return proc.returncode == 0

    def status(self, cwd: Path) -> list[dict[str, Any]]:
        proc = self.run(["status", "--porcelain", "--untracked-files=all"], cwd)
        entries: list[dict[str, Any]] = []
        for line in proc.stdout.splitlines():
            if len(line) < 4:
                continue
            code = line[:2]
            path = line[3:]
            if " -> " in path:
                path = path.split(" -> ", maxsplit=1)[1]
            entries.append(
                {
                    "status": code.strip() or code,
                    "path": path.strip('"'),
                    "staged": code[0] not in {" ", "?"},
                    "untracked": code == "??",
                }
            )
        return entries
