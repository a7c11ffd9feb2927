"""
Pytest configuration and shared fixtures for reply registry tests.
"""

import os
import pytest
import tempfile
import shutil
from pathlib import Path
from typing import Generator

# Add src and the project root to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent))

from reply_registry.registry.liveness import StaticLiveness
from reply_registry.registry.manager import SessionRegistry, reset_registry
from reply_registry.utils.config import RegistryConfig


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def state_dir(temp_dir: Path) -> Path:
    """State directory that does not exist yet."""
    return temp_dir / ".omc" / "state"


@pytest.fixture
def registry_config(state_dir: Path) -> RegistryConfig:
    """Registry configuration with a short acquire ceiling."""
    return RegistryConfig(state_dir=state_dir, acquire_timeout_seconds=5.0)


@pytest.fixture
def liveness() -> StaticLiveness:
    """Liveness checker where no pid is alive unless a test says so."""
    return StaticLiveness()


@pytest.fixture
def registry(registry_config: RegistryConfig, liveness: StaticLiveness) -> SessionRegistry:
    """Registry rooted in a temporary state directory."""
    return SessionRegistry(registry_config, liveness=liveness)


@pytest.fixture
def isolated_home(temp_dir: Path, monkeypatch) -> Generator[Path, None, None]:
    """Point HOME at a temporary directory and drop registry environment overrides."""
    home = temp_dir / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    for key in list(os.environ):
        if key.startswith("OMC_REGISTRY_"):
            monkeypatch.delenv(key)
    reset_registry()
    yield home
    reset_registry()
