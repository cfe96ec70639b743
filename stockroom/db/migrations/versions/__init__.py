"""Migration versions.

Each module is named <version>_<slug>.py, where version is the UTC
timestamp it was created at (YYYYMMDDHHMMSS), and defines exactly one
BaseMigration subclass. Create new ones with `stockroom-migrate create`.
"""
