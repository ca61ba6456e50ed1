from __future__ import annotations

from typing import Any


class ForemanError(RuntimeError):
    """Base class for every failure surfaced to callers."""

    code = "foreman_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = {key: value for key, value in details.items() if value is not None}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class ValidationError(ForemanError):
    code = "validation_error"


class StateError(ForemanError):
    """Raised when shared-state files cannot be locked, read or written."""

    code = "state_error"


class GitCommandError(ForemanError):
    code = "git_failure"

    def __init__(
        self,
        message: str,
        *,
        args: list[str] | None = None,
        exit_code: int | None = None,
        stderr: str | None = None,
        cwd: str | None = None,
    ) -> None:
        super().__init__(message, args=args, exit_code=exit_code, stderr=stderr, cwd=cwd)
        self.exit_code = exit_code
        self.stderr = stderr or ""


class WorktreeError(ForemanError):
    code = "worktree_error"
    kind = "git_failure"

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["kind"] = self.kind
        return payload


class DirectoryExistsError(WorktreeError):
    kind = "directory_exists"


class BranchConflictError(WorktreeError):
    kind = "branch_conflict"


class GitFailureError(WorktreeError):
    kind = "git_failure"


class WorktreeTimeoutError(WorktreeError):
    kind = "timeout"


class SessionError(ForemanError):
    code = "session_error"


class SessionNotFoundError(SessionError):
    code = "session_not_found"


class AlreadyClaimedError(ForemanError):
    code = "already_claimed"

    def __init__(self, item_id: str, by: str, **details: Any) -> None:
        super().__init__(
            f"Item '{item_id}' is already claimed by session {by}.",
            item_id=item_id,
            by=by,
            **details,
        )
        self.item_id = item_id
        self.by = by


class TaskNotFoundError(ForemanError):
    code = "task_not_found"


class CycleError(ForemanError):
    code = "cycle_detected"

    def __init__(self, message: str, cycle: list[str]) -> None:
        super().__init__(message, cycle=cycle)
        self.cycle = cycle


class InvalidTransitionError(ForemanError):
    code = "invalid_transition"


class ConflictManualRequiredError(ForemanError):
    code = "manual_required"


class AutomationNotFoundError(ForemanError):
    code = "automation_not_found"


class AutomationFailedError(ForemanError):
    code = "automation_failed"

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        retriable: bool = True,
        **details: Any,
    ) -> None:
        super().__init__(message, exit_code=exit_code, **details)
        self.exit_code = exit_code
        self.retriable = retriable


class AutomationTimeoutError(AutomationFailedError):
    code = "automation_timeout"


class LoopDetectedError(ForemanError):
    code = "loop_detected"
