"""
Process liveness probing for lock ownership checks.

Only existence is probed; no signal is ever delivered to the target.
"""

from typing import Any, Callable, Iterable, Optional, Protocol, Set

import psutil


class LivenessChecker(Protocol):
    """Anything that can tell whether a pid exists on this host."""

    def is_alive(self, pid: Any) -> bool:
        ...


class PsutilLiveness:
    """Liveness checker backed by the host process table."""

    def is_alive(self, pid: Any) -> bool:
        """
        Report whether ``pid`` exists.

        Sentinel and malformed pids (``0``, negatives, non-integers, bools)
        are not alive. A process we are not permitted to signal still exists,
        so permission-denied counts as alive.
        """
        if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
            return False

        try:
            return psutil.pid_exists(pid)
        except psutil.AccessDenied:
            return True
        except (ValueError, OverflowError):
            return False


class StaticLiveness:
    """Deterministic checker for tests and dry runs."""

    def __init__(
        self,
        alive: Optional[Iterable[int]] = None,
        predicate: Optional[Callable[[int], bool]] = None,
    ):
        self.alive: Set[int] = set(alive or ())
        self.predicate = predicate
        self.calls: list = []

    def is_alive(self, pid: Any) -> bool:
        self.calls.append(pid)
        if self.predicate is not None:
            return bool(self.predicate(pid))
        return pid in self.alive


_default = PsutilLiveness()


def is_alive(pid: Any) -> bool:
    """Module-level shortcut for the host liveness checker."""
    return _default.is_alive(pid)


__all__ = [
    'LivenessChecker',
    'PsutilLiveness',
    'StaticLiveness',
    'is_alive',
]
