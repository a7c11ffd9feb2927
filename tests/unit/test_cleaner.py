"""
Unit tests for the registry cleaner.
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from reply_registry.registry.cleaner import CleanupStats, RegistryCleaner
from reply_registry.registry.manager import SessionRegistry
from reply_registry.utils.errors import LockTimeoutError
from tests.fixtures.registry_fixtures import RegistryFixtures


class TestRegistryCleaner:
    """Cleanup passes."""

    def test_run_once_prunes(self, registry):
        registry.register_message(RegistryFixtures.create_mapping(message_id="old", age=timedelta(days=2)))
        registry.register_message(RegistryFixtures.create_mapping(message_id="new"))

        cleaner = RegistryCleaner(registry)
        stats = cleaner.run_once()

        assert stats.ok
        assert stats.mappings_checked == 2
        assert stats.mappings_removed == 1
        assert stats.completed_at is not None
        assert stats.duration_seconds >= 0
        assert cleaner.passes == 1
        assert [m.message_id for m in registry.load_all_mappings()] == ["new"]

    def test_empty_registry(self, registry):
        stats = RegistryCleaner(registry).run_once()
        assert (stats.mappings_checked, stats.mappings_removed) == (0, 0)
        assert not registry.registry_path.exists()

    def test_registry_errors_are_recorded(self):
        registry = MagicMock(spec=SessionRegistry)
        registry.load_all_mappings.return_value = []
        registry.prune_stale.side_effect = LockTimeoutError("/tmp/r.lock", 30, 100, owner_pid=12)

        stats = RegistryCleaner(registry).run_once()

        assert not stats.ok
        assert stats.errors[0].startswith("LOCK_TIMEOUT")

    def test_to_dict(self, registry):
        data = RegistryCleaner(registry).run_once().to_dict()
        assert data["mappings"] == {"checked": 0, "removed": 0}
        assert data["errors"] == []
        assert data["completed_at"] is not None

    def test_incomplete_stats_have_zero_duration(self):
        assert CleanupStats(started_at=datetime.now(timezone.utc)).duration_seconds == 0.0


class TestRunForever:
    """Interval loop."""

    def test_stops_after_max_passes(self, registry):
        cleaner = RegistryCleaner(registry)
        history = cleaner.run_forever(interval_seconds=0.01, max_passes=3)
        assert len(history) == 3
        assert cleaner.passes == 3

    def test_stop_event_ends_loop(self, registry):
        stop = threading.Event()
        cleaner = RegistryCleaner(registry)

        worker = threading.Thread(target=cleaner.run_forever, args=(60,), kwargs={"stop_event": stop})
        worker.start()
        stop.set()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert cleaner.passes <= 1

    def test_preset_stop_event_runs_nothing(self, registry):
        stop = threading.Event()
        stop.set()
        assert RegistryCleaner(registry).run_forever(1, stop_event=stop) == []
