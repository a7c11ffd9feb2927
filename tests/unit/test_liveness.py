"""
Unit tests for process liveness probing.
"""

import os
import subprocess
import sys

import psutil
import pytest

from reply_registry.registry.liveness import PsutilLiveness, StaticLiveness, is_alive


class TestPsutilLiveness:
    """Host process table checks."""

    def test_current_process_is_alive(self):
        assert PsutilLiveness().is_alive(os.getpid())
        assert is_alive(os.getpid())

    @pytest.mark.parametrize("pid", [0, -1, None, "123", 1.5, True, False])
    def test_sentinel_and_malformed_pids(self, pid):
        assert PsutilLiveness().is_alive(pid) is False

    def test_reaped_process_is_not_alive(self):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait()
        assert PsutilLiveness().is_alive(proc.pid) is False

    def test_permission_denied_counts_as_alive(self, monkeypatch):
        def denied(pid):
            raise psutil.AccessDenied(pid)

        monkeypatch.setattr(psutil, "pid_exists", denied)
        assert PsutilLiveness().is_alive(12345) is True


class TestStaticLiveness:
    """Deterministic checker."""

    def test_alive_set(self):
        checker = StaticLiveness(alive=[10, 20])
        assert checker.is_alive(10)
        assert not checker.is_alive(30)
        assert checker.calls == [10, 30]

    def test_predicate(self):
        checker = StaticLiveness(predicate=lambda pid: pid % 2 == 0)
        assert checker.is_alive(4)
        assert not checker.is_alive(5)
