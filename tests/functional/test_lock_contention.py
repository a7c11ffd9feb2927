"""
Functional tests for registry writes under cross-process lock contention.
"""

import json
import os
import subprocess
import sys
import time
from pathlib import Path

import pytest

from reply_registry.registry.manager import SessionRegistry
from reply_registry.utils.config import RegistryConfig
from tests.fixtures.registry_fixtures import RegistryFixtures

pytestmark = pytest.mark.functional

SRC_DIR = Path(__file__).parent.parent.parent / "src"

WRITER = """
import json, sys
from reply_registry.registry.manager import SessionRegistry
from reply_registry.registry.storage import SessionMapping
from reply_registry.utils.config import RegistryConfig

registry = SessionRegistry(RegistryConfig(state_dir=sys.argv[1]))
registry.register_message(SessionMapping.from_dict(json.loads(sys.argv[2])))
"""


class TestLockContention:
    """A writer in a child process against a lock held here."""

    @pytest.fixture
    def registry(self, state_dir):
        # Real process table: the test process is alive, pid 0 never is
        return SessionRegistry(RegistryConfig(state_dir=state_dir))

    def spawn_writer(self, state_dir, temp_dir, message_id):
        mapping = RegistryFixtures.create_mapping(message_id=message_id)
        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC_DIR), env.get("PYTHONPATH")]))
        env["HOME"] = str(temp_dir)
        return subprocess.Popen(
            [sys.executable, "-c", WRITER, str(state_dir), json.dumps(mapping.to_dict())],
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )

    def hold_lock(self, lock_path):
        """Take the lock by exclusive create, recording this live process as owner."""
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        os.write(fd, json.dumps(RegistryFixtures.lock_content(pid=os.getpid())).encode())
        return fd

    def finish(self, proc):
        _, stderr = proc.communicate(timeout=30)
        assert proc.returncode == 0, stderr.decode(errors="replace")

    def test_blocked_writer_appends_after_release(self, registry, state_dir, temp_dir):
        fd = self.hold_lock(registry.lock_path)
        proc = self.spawn_writer(state_dir, temp_dir, "contended")
        try:
            time.sleep(0.15)
            assert not registry.registry_path.exists()
        finally:
            os.close(fd)
            registry.lock_path.unlink()

        self.finish(proc)
        assert any(m.message_id == "contended" for m in registry.load_all_mappings())

    def test_live_holder_past_staleness_window_is_waited_for(self, registry, state_dir, temp_dir):
        fd = self.hold_lock(registry.lock_path)
        proc = self.spawn_writer(state_dir, temp_dir, "timeout-retry")
        try:
            time.sleep(2.3)
            assert not registry.registry_path.exists()
            assert registry.lock_path.exists()
            assert proc.poll() is None
        finally:
            os.close(fd)
            registry.lock_path.unlink()

        self.finish(proc)
        assert any(m.message_id == "timeout-retry" for m in registry.load_all_mappings())

    def test_dead_owner_lock_is_reclaimed(self, registry, state_dir, temp_dir):
        RegistryFixtures.write_lock_file(
            registry.lock_path,
            RegistryFixtures.lock_content(pid=0, age_seconds=60, token="dead-owner-token"),
            age_seconds=30,
        )

        self.finish(self.spawn_writer(state_dir, temp_dir, "dead-owner"))

        assert any(m.message_id == "dead-owner" for m in registry.load_all_mappings())
        assert not registry.lock_path.exists()

    def test_parallel_writers_lose_nothing(self, registry, state_dir, temp_dir):
        procs = [self.spawn_writer(state_dir, temp_dir, f"w{i}") for i in range(6)]
        for proc in procs:
            self.finish(proc)

        ids = sorted(m.message_id for m in registry.load_all_mappings())
        assert ids == [f"w{i}" for i in range(6)]
        assert not registry.lock_path.exists()
