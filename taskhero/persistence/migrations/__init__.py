"""One-time migration of the legacy JSON file store into SQLite."""

from taskhero.persistence.migrations.legacy_migrator import (
    LegacyMigrator,
    LegacySources,
    MigrationResult,
    MigrationState,
)

__all__ = ["LegacyMigrator", "LegacySources", "MigrationResult", "MigrationState"]
