"""
Registry Storage for reply correlation.

Persists message-to-pane mappings as JSON Lines. Appends are single
``O_APPEND`` writes bounded below the atomic-write size; deletions rewrite
the whole file under the registry lock.
"""

import json
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..utils.errors import (
    CorruptRecordError,
    FilesystemError,
    RecordTooLargeError,
    ValidationError,
    error_context,
)
from ..utils.logging import get_logger
from .lock import RegistryLock

logger = get_logger(__name__)

# Appends up to this size do not interleave with concurrent appends
ATOMIC_APPEND_BYTES = 4096


class Platform(str, Enum):
    """Reply-capable chat platforms."""
    DISCORD_BOT = "discord-bot"
    TELEGRAM = "telegram"


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC. None if unparseable."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class SessionMapping:
    """One sent message and the terminal pane that should receive its reply."""
    platform: Platform
    message_id: str
    session_id: str
    tmux_pane_id: str
    tmux_session_name: str
    event: str
    created_at: str
    project_path: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.platform, Platform):
            try:
                self.platform = Platform(self.platform)
            except ValueError:
                raise ValidationError(
                    "platform",
                    self.platform,
                    f"must be one of {[p.value for p in Platform]}",
                )

    @classmethod
    def create(
        cls,
        platform: Any,
        message_id: str,
        session_id: str,
        tmux_pane_id: str,
        tmux_session_name: str = "",
        event: str = "",
        project_path: Optional[str] = None,
        created_at: Optional[str] = None,
    ) -> "SessionMapping":
        """Build a mapping stamped with the current time."""
        return cls(
            platform=platform,
            message_id=message_id,
            session_id=session_id,
            tmux_pane_id=tmux_pane_id,
            tmux_session_name=tmux_session_name,
            event=event,
            created_at=created_at or utc_now_iso(),
            project_path=project_path,
        )

    def validate(self) -> None:
        """Reject mappings that could never be routed back to a pane."""
        for name in ("message_id", "session_id", "tmux_pane_id"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise ValidationError(name, value, "must be a non-empty string")
        for name in ("tmux_session_name", "event", "created_at"):
            value = getattr(self, name)
            if not isinstance(value, str):
                raise ValidationError(name, value, "must be a string")
        if self.project_path is not None and not isinstance(self.project_path, str):
            raise ValidationError("project_path", self.project_path, "must be a string")

    @property
    def created_datetime(self) -> Optional[datetime]:
        return parse_timestamp(self.created_at)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the on-disk JSON shape."""
        data = {
            "platform": self.platform.value,
            "messageId": self.message_id,
            "sessionId": self.session_id,
            "tmuxPaneId": self.tmux_pane_id,
            "tmuxSessionName": self.tmux_session_name,
            "event": self.event,
            "createdAt": self.created_at,
        }
        if self.project_path is not None:
            data["projectPath"] = self.project_path
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionMapping":
        """Create from the on-disk JSON shape."""
        if not isinstance(data, dict):
            raise TypeError(f"expected object, got {type(data).__name__}")

        fields = {}
        for key, attr in (
            ("messageId", "message_id"),
            ("sessionId", "session_id"),
            ("tmuxPaneId", "tmux_pane_id"),
            ("tmuxSessionName", "tmux_session_name"),
            ("event", "event"),
            ("createdAt", "created_at"),
        ):
            value = data[key]
            if not isinstance(value, str):
                raise TypeError(f"{key} must be a string")
            fields[attr] = value

        project_path = data.get("projectPath")
        if project_path is not None and not isinstance(project_path, str):
            raise TypeError("projectPath must be a string")

        return cls(
            platform=Platform(data["platform"]),
            project_path=project_path,
            **fields,
        )


@dataclass
class RewriteResult:
    """Outcome of one compaction."""
    kept: int
    removed: int
    # Undecodable lines left out of the rewritten file
    dropped: int = 0


class RegistryStorage:
    """JSON Lines storage backend for the session registry."""

    def __init__(
        self,
        path: Path,
        lock: RegistryLock,
        max_record_bytes: int = ATOMIC_APPEND_BYTES,
    ):
        """
        Initialize registry storage.

        Args:
            path: Registry file path
            lock: Lock serializing writers of ``path``
            max_record_bytes: Ceiling for one serialized line, newline included
        """
        if max_record_bytes > ATOMIC_APPEND_BYTES:
            raise ValueError(f"max_record_bytes cannot exceed {ATOMIC_APPEND_BYTES}")
        self.path = Path(path)
        self.lock = lock
        self.max_record_bytes = max_record_bytes

    @staticmethod
    def encode(mapping: SessionMapping) -> bytes:
        return (json.dumps(mapping.to_dict(), ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")

    def serialize(self, mapping: SessionMapping) -> bytes:
        """Encode one line, enforcing the atomic-append ceiling."""
        line = self.encode(mapping)
        if len(line) > self.max_record_bytes:
            raise RecordTooLargeError(len(line), self.max_record_bytes)
        return line

    def append(self, mapping: SessionMapping) -> None:
        """
        Append one mapping with a single write.

        Callers serialize against rewrites by holding ``self.lock``.
        """
        line = self.serialize(mapping)

        with error_context("storage", "append", path=self.path):
            self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            fd = os.open(str(self.path), os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
            try:
                written = os.write(fd, line)
            finally:
                os.close(fd)

        if written != len(line):
            raise FilesystemError(
                f"Short append to registry ({written} of {len(line)} bytes)",
                path=self.path,
            )

    def read_all(self) -> List[SessionMapping]:
        """
        Read every decodable mapping in file order.

        A missing file is an empty registry. Lines that fail to decode are
        skipped.
        """
        return self._read()[0]

    def _read(self) -> Tuple[List[SessionMapping], int]:
        """Decodable mappings plus the number of non-blank lines skipped."""
        with error_context("storage", "read", path=self.path):
            try:
                raw = self.path.read_bytes()
            except FileNotFoundError:
                return [], 0

        mappings: List[SessionMapping] = []
        skipped = 0
        for number, line in enumerate(raw.decode("utf-8", errors="replace").split("\n"), start=1):
            if not line.strip():
                continue
            try:
                mappings.append(self._parse_line(number, line))
            except CorruptRecordError as e:
                skipped += 1
                logger.debug("corrupt_record_skipped", path=str(self.path), line=e.line_number, reason=e.reason)

        if skipped:
            logger.debug("registry_read", path=str(self.path), records=len(mappings), skipped=skipped)
        return mappings, skipped

    def _parse_line(self, number: int, line: str) -> SessionMapping:
        try:
            data = json.loads(line)
        except (ValueError, RecursionError) as e:
            raise CorruptRecordError(number, f"invalid JSON: {e}", cause=e)
        try:
            return SessionMapping.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptRecordError(number, f"not a mapping record: {e!r}", cause=e)

    def rewrite(self, keep: Callable[[SessionMapping], bool]) -> RewriteResult:
        """
        Replace the registry with the mappings ``keep`` accepts, preserving order.

        This is the critical section shared by every compaction. Lines that
        do not decode are not carried over.
        """
        with self.lock.acquire():
            if not self.path.exists():
                return RewriteResult(kept=0, removed=0)

            current, skipped = self._read()
            kept = [m for m in current if keep(m)]
            self._write_all(kept)

        result = RewriteResult(kept=len(kept), removed=len(current) - len(kept), dropped=skipped)
        if result.dropped:
            logger.info("undecodable_records_dropped", path=str(self.path), dropped=result.dropped)
        logger.info("registry_rewritten", path=str(self.path), kept=result.kept, removed=result.removed)
        return result

    def _write_all(self, mappings: List[SessionMapping]) -> None:
        """Write through a temp file and rename so readers never see a truncated file."""
        content = b"".join(self.encode(m) for m in mappings)

        with error_context("storage", "rewrite", path=self.path):
            self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            # mkstemp creates the file 0600
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                dir=str(self.path.parent),
            )
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass
                raise


__all__ = [
    'ATOMIC_APPEND_BYTES',
    'Platform',
    'SessionMapping',
    'RewriteResult',
    'RegistryStorage',
    'parse_timestamp',
    'utc_now_iso',
]
