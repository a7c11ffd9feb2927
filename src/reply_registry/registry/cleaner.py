"""
Registry Cleaner for the session registry.

Periodically prunes mappings that outlived the retention window.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..utils.errors import RegistryError
from ..utils.logging import get_logger
from .manager import SessionRegistry

logger = get_logger(__name__)


@dataclass
class CleanupStats:
    """Statistics from one cleanup pass."""
    started_at: datetime
    completed_at: Optional[datetime] = None
    mappings_checked: int = 0
    mappings_removed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        """Get cleanup duration in seconds."""
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "mappings": {
                "checked": self.mappings_checked,
                "removed": self.mappings_removed,
            },
            "errors": self.errors,
        }


class RegistryCleaner:
    """Prunes stale registry mappings on an interval."""

    def __init__(self, registry: SessionRegistry):
        """
        Initialize cleaner.

        Args:
            registry: Registry to prune
        """
        self.registry = registry
        self.passes = 0

    def run_once(self) -> CleanupStats:
        """Run one pruning pass. Registry errors are recorded, not raised."""
        stats = CleanupStats(started_at=datetime.now(timezone.utc))

        try:
            stats.mappings_checked = len(self.registry.load_all_mappings())
            stats.mappings_removed = self.registry.prune_stale(now=stats.started_at)
        except RegistryError as e:
            logger.warning("cleanup_failed", error=str(e), error_code=e.code)
            stats.errors.append(f"{e.code}: {e.message}")

        stats.completed_at = datetime.now(timezone.utc)
        self.passes += 1

        logger.info(
            "cleanup_completed",
            checked=stats.mappings_checked,
            removed=stats.mappings_removed,
            duration_seconds=round(stats.duration_seconds, 3),
            errors=len(stats.errors),
        )
        return stats

    def run_forever(
        self,
        interval_seconds: float,
        stop_event: Optional[threading.Event] = None,
        max_passes: Optional[int] = None,
    ) -> List[CleanupStats]:
        """
        Prune every ``interval_seconds`` until ``stop_event`` is set.

        Args:
            interval_seconds: Delay between passes
            stop_event: Event that ends the loop when set
            max_passes: Stop after this many passes (None for no limit)

        Returns:
            Stats of every pass run
        """
        stop_event = stop_event or threading.Event()
        history: List[CleanupStats] = []

        logger.info("cleanup_loop_started", interval_seconds=interval_seconds)
        while not stop_event.is_set():
            started = time.monotonic()
            history.append(self.run_once())

            if max_passes is not None and len(history) >= max_passes:
                break

            remaining = interval_seconds - (time.monotonic() - started)
            if remaining > 0 and stop_event.wait(remaining):
                break

        logger.info("cleanup_loop_stopped", passes=len(history))
        return history


__all__ = [
    'CleanupStats',
    'RegistryCleaner',
]
