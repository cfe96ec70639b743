"""Checksum and versioning helpers for migrations.

All functions here are pure apart from generate_version(), which reads
the clock when no timestamp is supplied.
"""

import hashlib
import re
from datetime import datetime, timezone
from typing import Optional

# <version>_<slug>.py, version being the digits of a UTC timestamp
MIGRATION_FILENAME_RE = re.compile(r"^(?P<version>\d+)_(?P<slug>[A-Za-z0-9_]+)\.py$")

VERSION_FORMAT = "%Y%m%d%H%M%S"

CHECKSUM_LENGTH = 64


def generate_checksum(content: str) -> str:
    """Return the SHA-256 hex digest of migration source text."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def generate_version(now: Optional[datetime] = None) -> str:
    """Mint a sortable version string from a UTC timestamp.

    >>> generate_version(datetime(2025, 7, 21, 12, 0, 5, tzinfo=timezone.utc))
    '20250721120005'
    """
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(VERSION_FORMAT)


def slugify(name: str) -> str:
    """Turn a human migration name into a filename-safe slug.

    >>> slugify("Add Product  Analytics-Fields!")
    'add_product_analytics_fields'
    """
    slug = re.sub(r"[^a-z0-9]+", "_", name.strip().lower())
    return slug.strip("_")


def class_name_for(slug: str) -> str:
    """CamelCase class name for a slug, e.g. add_foo -> MigrationAddFoo."""
    return "Migration" + "".join(part.capitalize() for part in slug.split("_") if part)


def parse_migration_filename(filename: str) -> Optional[tuple[str, str]]:
    """Split '<version>_<slug>.py' into (version, slug), or None if it doesn't match."""
    match = MIGRATION_FILENAME_RE.match(filename)
    if not match:
        return None
    return match.group("version"), match.group("slug")
