"""
Reply Registry - cross-process reply correlation for chat notifications.

This package records which terminal pane should receive the reply to a
message sent to an external chat platform, with:
- Crash-safe cross-process locking
- Atomic JSON Lines appends
- Compaction by session, pane and age
"""

__version__ = "0.1.0"

__all__ = [
    '__version__',
]
