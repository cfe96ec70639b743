"""Pytest fixtures for Stockroom tests."""

import pytest

from stockroom.db.config import set_config
from stockroom.db.migrations.service import set_migration_service

# Variables read at call time by the config and startup policy
ENV_VARS = [
    "APP_ENV",
    "AUTO_MIGRATE",
    "SURREAL_DISABLED",
    "SURREAL_URL",
    "SURREAL_DATABASE",
    "MIGRATIONS_PACKAGE",
    "MIGRATIONS_PATH",
    "MIGRATIONS_COLLECTION",
    "MIGRATIONS_TIMEOUT_MS",
    "MIGRATIONS_VALIDATE_CHECKSUMS",
    "MIGRATIONS_CANCEL_ON_TIMEOUT",
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Start every test from an empty environment and no cached singletons."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    set_config(None)
    set_migration_service(None)
    yield
    set_config(None)
    set_migration_service(None)
