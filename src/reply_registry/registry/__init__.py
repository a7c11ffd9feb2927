"""
Session Registry for reply correlation.

This module provides the cross-process message-to-pane registry:
- Process liveness probing
- Crash-recoverable file locking
- JSON Lines append and compaction
- Periodic pruning of stale mappings
"""

from .liveness import LivenessChecker, PsutilLiveness, StaticLiveness, is_alive
from .lock import LockHandle, LockInfo, LockState, RegistryLock
from .storage import Platform, RegistryStorage, RewriteResult, SessionMapping
from .manager import (
    SessionRegistry,
    configure,
    get_registry,
    reset_registry,
    register_message,
    load_all_mappings,
    lookup_by_message_id,
    remove_session,
    remove_messages_by_pane,
    prune_stale,
)
from .cleaner import RegistryCleaner, CleanupStats

__all__ = [
    # Liveness
    'LivenessChecker',
    'PsutilLiveness',
    'StaticLiveness',
    'is_alive',

    # Lock
    'LockHandle',
    'LockInfo',
    'LockState',
    'RegistryLock',

    # Storage
    'Platform',
    'RegistryStorage',
    'RewriteResult',
    'SessionMapping',

    # Registry API
    'SessionRegistry',
    'configure',
    'get_registry',
    'reset_registry',
    'register_message',
    'load_all_mappings',
    'lookup_by_message_id',
    'remove_session',
    'remove_messages_by_pane',
    'prune_stale',

    # Cleaner
    'RegistryCleaner',
    'CleanupStats',
]
