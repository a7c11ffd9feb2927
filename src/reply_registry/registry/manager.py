"""
Session registry: maps sent chat messages to the tmux pane awaiting the reply.

Mutating operations take the registry lock; ``load_all_mappings`` and
``lookup_by_message_id`` read without it and may see a file mid-rewrite.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from ..utils.config import AppConfig, RegistryConfig, load_config
from ..utils.logging import get_logger
from .liveness import LivenessChecker
from .lock import RegistryLock
from .storage import Platform, RegistryStorage, SessionMapping

logger = get_logger(__name__)

MAX_AGE = timedelta(hours=24)


def is_fresh(mapping: SessionMapping, now: datetime, max_age: timedelta = MAX_AGE) -> bool:
    """
    Retention predicate used by pruning.

    Mappings whose ``created_at`` does not parse are not fresh.
    """
    created = mapping.created_datetime
    if created is None:
        return False
    return now - created <= max_age


class SessionRegistry:
    """Reply-correlation registry over one JSON Lines file."""

    def __init__(
        self,
        config: Optional[RegistryConfig] = None,
        liveness: Optional[LivenessChecker] = None,
    ):
        """
        Initialize the registry.

        Args:
            config: Registry configuration (defaults to ``~/.omc/state``)
            liveness: Process liveness checker used for stale lock detection
        """
        self.config = config or RegistryConfig()
        self.lock = RegistryLock.from_config(self.config, liveness=liveness)
        self.storage = RegistryStorage(
            self.config.registry_path,
            self.lock,
            max_record_bytes=self.config.max_record_bytes,
        )
        self.max_age = timedelta(hours=self.config.max_age_hours)

    @property
    def registry_path(self):
        return self.storage.path

    @property
    def lock_path(self):
        return self.lock.path

    def register_message(self, mapping: SessionMapping) -> None:
        """Append a mapping. Creates the state directory and file (0600) on first use."""
        mapping.validate()
        # Encode before taking the lock so oversize records never block writers
        self.storage.serialize(mapping)

        with self.lock.acquire():
            self.storage.append(mapping)

        logger.debug(
            "message_registered",
            platform=mapping.platform.value,
            message_id=mapping.message_id,
            session_id=mapping.session_id,
            pane=mapping.tmux_pane_id,
        )

    def load_all_mappings(self) -> List[SessionMapping]:
        """All mappings, oldest first."""
        return self.storage.read_all()

    def lookup_by_message_id(self, platform, message_id: str) -> Optional[SessionMapping]:
        """
        Find the mapping for a platform message.

        When the same message id was registered more than once, the most
        recently appended entry wins.
        """
        platform_value = platform.value if isinstance(platform, Platform) else str(platform)
        for mapping in reversed(self.storage.read_all()):
            if mapping.platform.value == platform_value and mapping.message_id == message_id:
                return mapping
        return None

    def remove_session(self, session_id: str) -> int:
        """Drop every mapping for ``session_id``. Returns the number removed."""
        return self._compact(lambda m: m.session_id != session_id, "remove_session", session_id=session_id)

    def remove_messages_by_pane(self, pane_id: str) -> int:
        """Drop every mapping targeting ``pane_id``. Returns the number removed."""
        return self._compact(lambda m: m.tmux_pane_id != pane_id, "remove_messages_by_pane", pane=pane_id)

    def prune_stale(self, now: Optional[datetime] = None) -> int:
        """Drop mappings older than the retention window or with unparseable timestamps."""
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return self._compact(lambda m: is_fresh(m, now, self.max_age), "prune_stale")

    def _compact(self, keep: Callable[[SessionMapping], bool], operation: str, **context) -> int:
        result = self.storage.rewrite(keep)
        if result.removed:
            logger.info(f"{operation}_completed", removed=result.removed, kept=result.kept, **context)
        return result.removed


_registry: Optional[SessionRegistry] = None


def configure(config: Optional[AppConfig] = None, liveness: Optional[LivenessChecker] = None) -> SessionRegistry:
    """Replace the default registry used by the module-level functions."""
    global _registry
    if config is None:
        config = load_config()
    _registry = SessionRegistry(config.registry, liveness=liveness)
    return _registry


def get_registry() -> SessionRegistry:
    """Get the default registry, building it from loaded configuration on first use."""
    if _registry is None:
        return configure()
    return _registry


def reset_registry() -> None:
    """Forget the default registry so the next call reloads configuration."""
    global _registry
    _registry = None


def register_message(mapping: SessionMapping) -> None:
    get_registry().register_message(mapping)


def load_all_mappings() -> List[SessionMapping]:
    return get_registry().load_all_mappings()


def lookup_by_message_id(platform, message_id: str) -> Optional[SessionMapping]:
    return get_registry().lookup_by_message_id(platform, message_id)


def remove_session(session_id: str) -> int:
    return get_registry().remove_session(session_id)


def remove_messages_by_pane(pane_id: str) -> int:
    return get_registry().remove_messages_by_pane(pane_id)


def prune_stale(now: Optional[datetime] = None) -> int:
    return get_registry().prune_stale(now)


__all__ = [
    'MAX_AGE',
    'SessionRegistry',
    'is_fresh',
    'configure',
    'get_registry',
    'reset_registry',
    'register_message',
    'load_all_mappings',
    'lookup_by_message_id',
    'remove_session',
    'remove_messages_by_pane',
    'prune_stale',
]
