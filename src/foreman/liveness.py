from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class ProcessLivenessChecker(ABC):
    @abstractmethod
    def is_alive(self, pid: int | None) -> bool:
        """Return True only when the process is known to exist."""


class PosixLivenessChecker(ProcessLivenessChecker):
    def is_alive(self, pid: int | None) -> bool:
        if pid is None or int(pid) <= 0:
            return False
        try:
            os.kill(int(pid), 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # The process exists but belongs to another user.
            return True
        except (OSError, ValueError, OverflowError) as exc:
            logger.debug("liveness probe for pid %s failed: %s", pid, exc)
            return False
        return True


class WindowsLivenessChecker(ProcessLivenessChecker):
    _PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
    _STILL_ACTIVE = 259

    def is_alive(self, pid: int | None) -> bool:
        if pid is None or int(pid) <= 0:
            return False
        import ctypes
        from ctypes import wintypes

        try:
            kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
            handle = kernel32.OpenProcess(self._PROCESS_QUERY_LIMITED_INFORMATION, False, int(pid))
            if not handle:
                return False
            try:
                exit_code = wintypes.DWORD()
                if not kernel32.GetExitCodeProcess(handle, ctypes.byref(exit_code)):
                    return False
                return exit_code.value == self._STILL_ACTIVE
            finally:
                kernel32.CloseHandle(handle)
        except (OSError, AttributeError) as exc:
            logger.debug("liveness probe for pid %s failed: %s", pid, exc)
            return False


def default_liveness_checker() -> ProcessLivenessChecker:
    if os.name == "nt":
        return WindowsLivenessChecker()
    return PosixLivenessChecker()
