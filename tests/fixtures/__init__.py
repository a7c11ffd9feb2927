"""
Test fixtures for the reply registry.

Provides reusable test data.
"""

from .registry_fixtures import RegistryFixtures

__all__ = [
    "RegistryFixtures",
]
