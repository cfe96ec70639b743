"""Test helpers package for shared fixtures and fakes."""

from tests.helpers.fake_store import InMemoryRecordStore
from tests.helpers.factories import fake_connect, make_migration

__all__ = [
    "InMemoryRecordStore",
    "fake_connect",
    "make_migration",
]
