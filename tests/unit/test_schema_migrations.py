"""
Tests for versioned schema migrations.
"""

from unittest.mock import MagicMock

import pytest

from identity_cache.db import schema


class FakeSchemaDb:
    """Captures statements issued by apply_migrations."""

    def __init__(self, version: int | None):
        self.version = version
        self.statements: list[tuple[str, tuple | None]] = []

    async def fetch_val(self, query, params=None, connection=None):
        if "to_regclass" in query:
            return self.version is not None
        return self.version

    async def execute_query(self, query, params=None, connection=None):
        self.statements.append((query, params))
        return 0

    def applied_versions(self) -> list[int]:
        return [
            params[1]
            for query, params in self.statements
            if params and params[0] == schema.SCHEMA_VERSION_KEY
        ]

    def flagged(self) -> bool:
        return any(
            params == (schema.FULL_VERIFICATION_FLAG_KEY,) for _, params in self.statements
        )


@pytest.fixture
def fake_db(monkeypatch):
    def install(version):
        db = FakeSchemaDb(version)
        monkeypatch.setattr(schema, "fetch_val", db.fetch_val)
        monkeypatch.setattr(schema, "execute_query", db.execute_query)
        return db

    return install


@pytest.mark.asyncio
async def test_fresh_database_applies_every_version(fake_db):
    db = fake_db(None)

    result = await schema.apply_migrations(MagicMock())

    assert result == (0, schema.CURRENT_SCHEMA_VERSION)
    assert db.applied_versions() == sorted(schema.MIGRATIONS)
    assert db.flagged() is False


@pytest.mark.asyncio
async def test_upgrade_applies_pending_versions_and_flags_verification(fake_db):
    db = fake_db(3)

    result = await schema.apply_migrations(MagicMock())

    assert result == (3, schema.CURRENT_SCHEMA_VERSION)
    assert db.applied_versions() == [4, 5]
    assert db.flagged() is True


@pytest.mark.asyncio
async def test_current_schema_is_left_alone(fake_db):
    db = fake_db(schema.CURRENT_SCHEMA_VERSION)

    result = await schema.apply_migrations(MagicMock())

    assert result == (schema.CURRENT_SCHEMA_VERSION, schema.CURRENT_SCHEMA_VERSION)
    assert db.statements == []


def test_legacy_keyword_table_is_dropped_last():
    assert schema.CURRENT_SCHEMA_VERSION == 5
    assert schema.MIGRATIONS[5] == ["DROP TABLE IF EXISTS directory_keywords"]
