"""
Reply correlation hooks for the notification pipeline.

These helpers sit where the dispatcher, the session-end hook and the reply
listener meet the registry. Registry failures here are logged and swallowed;
reply correlation is best-effort and must never abort a session workflow.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .registry.manager import SessionRegistry, get_registry
from .registry.storage import Platform, SessionMapping
from .utils.errors import ErrorSeverity, RegistryError, handle_errors
from .utils.logging import get_logger

logger = get_logger(__name__)

REPLY_PLATFORMS = frozenset(p.value for p in Platform)


@dataclass
class NotificationResult:
    """Outcome of one platform send."""
    platform: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DispatchResult:
    """Outcome of dispatching one event to every enabled platform."""
    event: str
    results: List[NotificationResult] = field(default_factory=list)

    @property
    def any_success(self) -> bool:
        return any(r.success for r in self.results)


def register_dispatch_results(
    result: DispatchResult,
    session_id: str,
    tmux_pane_id: Optional[str],
    tmux_session_name: Optional[str] = None,
    project_path: Optional[str] = None,
    registry: Optional[SessionRegistry] = None,
) -> int:
    """
    Record reply targets for every successful reply-capable send.

    Nothing is recorded without a pane to route replies to. Returns the
    number of mappings registered.
    """
    if not result.any_success or not tmux_pane_id:
        return 0

    if registry is None:
        try:
            registry = get_registry()
        except RegistryError as e:
            logger.warning("reply_correlation_unavailable", error=str(e), error_code=e.code)
            return 0

    registered = 0
    for sent in result.results:
        if not (sent.success and sent.message_id and sent.platform in REPLY_PLATFORMS):
            continue
        mapping = SessionMapping.create(
            platform=sent.platform,
            message_id=sent.message_id,
            session_id=session_id,
            tmux_pane_id=tmux_pane_id,
            tmux_session_name=tmux_session_name or "",
            event=result.event,
            project_path=project_path,
        )
        try:
            registry.register_message(mapping)
        except RegistryError as e:
            logger.warning(
                "reply_correlation_failed",
                platform=sent.platform,
                message_id=sent.message_id,
                error=str(e),
                error_code=e.code,
            )
            continue
        registered += 1

    return registered


@handle_errors(RegistryError, reraise=False, log_level=ErrorSeverity.WARNING)
def end_session(session_id: str, registry: Optional[SessionRegistry] = None) -> Optional[int]:
    """Session-end hook: forget every reply target of the session."""
    return (registry or get_registry()).remove_session(session_id)


def resolve_reply_target(
    platform,
    message_id: str,
    pane_exists: Callable[[str], bool],
    registry: Optional[SessionRegistry] = None,
) -> Optional[SessionMapping]:
    """
    Find the pane a reply should be injected into.

    If the mapped pane no longer exists, every mapping for that pane is
    dropped and None is returned.
    """
    registry = registry or get_registry()
    mapping = registry.lookup_by_message_id(platform, message_id)
    if mapping is None:
        return None

    if pane_exists(mapping.tmux_pane_id):
        return mapping

    logger.info("stale_pane_detected", pane=mapping.tmux_pane_id, session_id=mapping.session_id)
    try:
        registry.remove_messages_by_pane(mapping.tmux_pane_id)
    except RegistryError as e:
        logger.warning("stale_pane_cleanup_failed", pane=mapping.tmux_pane_id, error=str(e))
    return None


__all__ = [
    'REPLY_PLATFORMS',
    'NotificationResult',
    'DispatchResult',
    'register_dispatch_results',
    'end_session',
    'resolve_reply_target',
]
