"""
Cross-process registry lock.

The lock is a file created with ``O_CREAT | O_EXCL`` holding
``{"pid": ..., "acquiredAt": <epoch ms>, "token": ...}``. Waiters retry with
bounded backoff. A lock file becomes reclaimable only when it is older than
``lock_timeout_ms`` *and* its recorded owner is not alive; an aged lock whose
owner still runs is waited on, never stolen.

Lifecycle of one lock file::

    ABSENT -> CREATING -> HELD(self) -> ABSENT            (release)
    HELD(other, young) -> HELD(other, aged, alive) -> ... (keep waiting)
    HELD(other, aged, dead/unknown) -> ABSENT -> CREATING (reclaim, under a flock guard)
"""

import fcntl
import json
import os
import random
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..utils.config import RegistryConfig
from ..utils.errors import LockTimeoutError, RegistryError, error_context
from ..utils.logging import get_logger
from .liveness import LivenessChecker, PsutilLiveness

logger = get_logger(__name__)


class LockState(str, Enum):
    """What a waiter observed when its create attempt failed."""
    ABSENT = "absent"
    YOUNG = "young"
    AGED_ALIVE = "aged_alive"
    RECLAIMABLE = "reclaimable"


@dataclass
class LockInfo:
    """Contents of a lock file."""
    pid: Optional[int] = None
    acquired_at: Optional[int] = None
    token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "acquiredAt": self.acquired_at,
            "token": self.token,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def parse(cls, raw: str) -> "LockInfo":
        """Parse lock file content; legacy or garbage content means unknown owner."""
        try:
            data = json.loads(raw)
        except ValueError:
            return cls()
        if not isinstance(data, dict):
            return cls()

        pid = data.get("pid")
        if isinstance(pid, bool) or not isinstance(pid, int):
            pid = None
        acquired_at = data.get("acquiredAt")
        if isinstance(acquired_at, bool) or not isinstance(acquired_at, (int, float)):
            acquired_at = None
        token = data.get("token")
        if not isinstance(token, str):
            token = None

        return cls(
            pid=pid,
            acquired_at=int(acquired_at) if acquired_at is not None else None,
            token=token,
        )


class LockHandle:
    """A held registry lock. Release it exactly once, or use it as a context manager."""

    def __init__(self, path: Path, info: LockInfo):
        self.path = path
        self.info = info
        self._released = False

    @property
    def token(self) -> Optional[str]:
        return self.info.token

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """
        Delete the lock file if it still carries our token.

        Returns:
            True if the file was removed, False if it was already gone or now
            belongs to another process.
        """
        if self._released:
            return False
        self._released = True

        with error_context("lock", "release", path=self.path):
            try:
                raw = self.path.read_text(encoding="utf-8")
            except FileNotFoundError:
                logger.debug("lock_already_absent", path=str(self.path))
                return False

            current = LockInfo.parse(raw)
            if current.token != self.info.token:
                logger.warning(
                    "lock_release_skipped",
                    path=str(self.path),
                    reason="token_mismatch",
                    owner_pid=current.pid,
                )
                return False

            try:
                self.path.unlink()
            except FileNotFoundError:
                return False

        logger.debug("lock_released", path=str(self.path), pid=self.info.pid)
        return True

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.release()
            return

        # Never mask the error that is already unwinding the block
        try:
            self.release()
        except RegistryError as e:
            logger.warning(
                "lock_release_failed",
                path=str(self.path),
                error=str(e),
                error_code=e.code,
                pending_error=exc_type.__name__,
            )

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"<LockHandle {self.path} pid={self.info.pid} {state}>"


class RegistryLock:
    """Acquires the registry lock file on behalf of the current process."""

    def __init__(
        self,
        path: Path,
        lock_timeout_ms: int = 2000,
        acquire_timeout: float = 30.0,
        retry_initial_ms: int = 10,
        retry_max_ms: int = 200,
        liveness: Optional[LivenessChecker] = None,
    ):
        """
        Initialize the lock manager.

        Args:
            path: Lock file path
            lock_timeout_ms: Age after which a lock with a dead owner is reclaimed
            acquire_timeout: Overall ceiling on one ``acquire`` call, in seconds
            retry_initial_ms: First backoff delay
            retry_max_ms: Backoff cap
            liveness: Process liveness checker (defaults to the host process table)
        """
        self.path = Path(path)
        self.guard_path = self.path.with_name(self.path.name + ".reclaim")
        self.lock_timeout_ms = lock_timeout_ms
        self.acquire_timeout = acquire_timeout
        self.retry_initial_ms = retry_initial_ms
        self.retry_max_ms = max(retry_max_ms, retry_initial_ms)
        self.liveness = liveness or PsutilLiveness()

    @classmethod
    def from_config(
        cls,
        config: RegistryConfig,
        liveness: Optional[LivenessChecker] = None,
    ) -> "RegistryLock":
        return cls(
            config.lock_path,
            lock_timeout_ms=config.lock_timeout_ms,
            acquire_timeout=config.acquire_timeout_seconds,
            retry_initial_ms=config.retry_initial_ms,
            retry_max_ms=config.retry_max_ms,
            liveness=liveness,
        )

    def acquire(self) -> LockHandle:
        """
        Block until the lock is held by this process.

        Raises:
            LockTimeoutError: the overall ceiling elapsed first
            FilesystemError: the lock file could not be created or inspected
        """
        started = time.monotonic()
        attempts = 0
        last_info: Optional[LockInfo] = None
        last_state: Optional[LockState] = None

        while True:
            attempts += 1
            handle = self._try_create()
            if handle is not None:
                logger.debug(
                    "lock_acquired",
                    path=str(self.path),
                    attempts=attempts,
                    waited_ms=round((time.monotonic() - started) * 1000, 1),
                )
                return handle

            waited = time.monotonic() - started
            if waited >= self.acquire_timeout:
                logger.error(
                    "lock_acquire_timeout",
                    path=str(self.path),
                    waited_seconds=round(waited, 3),
                    attempts=attempts,
                    owner_pid=last_info.pid if last_info else None,
                )
                raise LockTimeoutError(
                    self.path,
                    waited_seconds=waited,
                    attempts=attempts,
                    owner_pid=last_info.pid if last_info else None,
                )

            state, info, observed = self._inspect()
            if info is not None:
                last_info = info

            if state is LockState.ABSENT:
                continue

            if state is LockState.RECLAIMABLE and self._reclaim(info, observed):
                continue

            if state is not last_state:
                logger.debug(
                    "lock_contended",
                    path=str(self.path),
                    state=state.value,
                    owner_pid=info.pid if info else None,
                )
                last_state = state

            delay = min(self._backoff(attempts - 1), self.acquire_timeout - waited)
            time.sleep(max(delay, 0.001))

    def _try_create(self) -> Optional[LockHandle]:
        """One atomic create-if-absent attempt."""
        info = LockInfo(
            pid=os.getpid(),
            acquired_at=int(time.time() * 1000),
            token=uuid.uuid4().hex,
        )
        payload = info.to_json().encode("utf-8")

        with error_context("lock", "acquire", path=self.path):
            self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                return None

            try:
                os.write(fd, payload)
            except OSError:
                os.close(fd)
                self._unlink_quietly()
                raise
            os.close(fd)

        return LockHandle(self.path, info)

    def _inspect(self) -> Tuple[LockState, Optional[LockInfo], Optional[os.stat_result]]:
        """Classify an existing lock file by age and owner liveness."""
        with error_context("lock", "inspect", path=self.path):
            try:
                observed = self.path.stat()
                raw = self.path.read_text(encoding="utf-8", errors="replace")
            except FileNotFoundError:
                return LockState.ABSENT, None, None

        info = LockInfo.parse(raw)
        age_ms = (time.time_ns() - observed.st_mtime_ns) / 1_000_000

        if age_ms < self.lock_timeout_ms:
            return LockState.YOUNG, info, observed

        if info.pid is not None and self.liveness.is_alive(info.pid):
            return LockState.AGED_ALIVE, info, observed

        return LockState.RECLAIMABLE, info, observed

    def _reclaim(self, info: Optional[LockInfo], observed: Optional[os.stat_result]) -> bool:
        """
        Remove a stale lock, unless it changed since it was inspected.

        The re-check and the unlink run under an exclusive flock on a sidecar
        guard file, so two reclaimers can never both pass the check. The
        kernel drops the flock if its holder dies.
        """
        with error_context("lock", "reclaim", path=self.path):
            guard = os.open(str(self.guard_path), os.O_CREAT | os.O_WRONLY, 0o600)
            try:
                try:
                    fcntl.flock(guard, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    logger.debug("lock_reclaim_in_progress", path=str(self.path))
                    return False

                try:
                    current = self.path.stat()
                    raw = self.path.read_text(encoding="utf-8", errors="replace")
                except FileNotFoundError:
                    return False

                # Another waiter may already have reclaimed and re-created it
                if observed is not None and (
                    current.st_ino != observed.st_ino
                    or current.st_mtime_ns != observed.st_mtime_ns
                ):
                    return False
                if info is not None and LockInfo.parse(raw).token != info.token:
                    return False

                try:
                    self.path.unlink()
                except FileNotFoundError:
                    return False
            finally:
                os.close(guard)

        logger.info(
            "stale_lock_reclaimed",
            path=str(self.path),
            owner_pid=info.pid if info else None,
            age_ms=round((time.time_ns() - observed.st_mtime_ns) / 1_000_000) if observed else None,
        )
        return True

    def _backoff(self, attempt: int) -> float:
        """Exponential backoff with jitter, in seconds."""
        base = min(self.retry_initial_ms * (2 ** min(attempt, 16)), self.retry_max_ms)
        jitter = random.uniform(0, base * 0.25)
        return (base + jitter) / 1000.0

    def _unlink_quietly(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


__all__ = [
    'LockState',
    'LockInfo',
    'LockHandle',
    'RegistryLock',
]
