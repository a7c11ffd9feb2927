"""
Functional tests for the reply session registry.

These tests exercise the registry across real processes: a lock held by
one process, writers blocked in another, and crash leftovers on disk.
"""
