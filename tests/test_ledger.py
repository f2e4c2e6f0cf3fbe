"""Tests for the ledger table accessor."""

from __future__ import annotations

import pytest

from pgmigrate.orchestrator.errors import ConfigurationError
from pgmigrate.orchestrator.ledger import Ledger, quote_identifier


@pytest.mark.parametrize("name", ["migrations", "_ledger", "Schema_History2"])
def test_quote_identifier_accepts_plain_names(name):
    assert quote_identifier(name) == f'"{name}"'


@pytest.mark.parametrize("name", [
    "", "1migrations", "migra tions", 'mig"rations', "public.migrations",
    "x" * 64, "migrations; drop table users", None,
])
def test_quote_identifier_rejects_everything_else(name):
    with pytest.raises(ConfigurationError):
        quote_identifier(name)


async def test_ledger_round_trip(server, db):
    ledger = Ledger(db, "migrations")
    assert ledger.qualified_name == '"public"."migrations"'
    assert await ledger.exists() is False

    await ledger.ensure()
    await ledger.ensure()
    assert await ledger.exists() is True

    await ledger.record("20200101000001.sql", "b" * 32)
    await ledger.record("20200101000000.sql", "a" * 32)
    assert await ledger.digests() == {
        "20200101000000.sql": "a" * 32,
        "20200101000001.sql": "b" * 32,
    }
    assert list(await ledger.digests()) == ["20200101000000.sql", "20200101000001.sql"]

    await ledger.overwrite_digest("20200101000000.sql", "c" * 32)
    entries = await ledger.entries()
    assert entries[0]["md5"] == "c" * 32
    assert entries[0]["applied_at_utc"] is not None
