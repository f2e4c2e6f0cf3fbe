"""Tests for ledger/file drift classification."""

from __future__ import annotations

import pytest

from pgmigrate.orchestrator.consistency import (
    ConsistencyReport,
    Drift,
    check_digests,
    pending_filenames,
)
from pgmigrate.orchestrator.errors import DigestConflictError, IntegrityViolation

A = "a" * 32
B = "b" * 32


def test_matched_orphaned_conflicted():
    report = check_digests(
        {"1.sql": A, "2.sql": A, "3.sql": A},
        {"1.sql": A, "3.sql": B, "4.sql": A},
    )

    assert report.matched == ["1.sql"]
    assert report.orphaned == [Drift("2.sql", A)]
    assert report.conflicted == [Drift("3.sql", A, B)]
    assert not report.ok


def test_pending_files_are_not_drift():
    report = check_digests({}, {"1.sql": A})
    assert report == ConsistencyReport()
    assert report.ok


def test_orphan_warning_names_file_and_digest():
    report = check_digests({"0001.sql": A}, {})
    assert report.warnings == [
        f"Migration 0001.sql has digest {A} in database, and does not exist in files"
    ]
    report.raise_for_conflicts()


def test_raise_for_conflicts_names_both_digests():
    report = check_digests({"1.sql": A}, {"1.sql": B})

    with pytest.raises(DigestConflictError) as exc_info:
        report.raise_for_conflicts()

    err = exc_info.value
    assert isinstance(err, IntegrityViolation)
    assert (err.filename, err.file_digest, err.database_digest) == ("1.sql", B, A)
    assert str(err) == f"Migration 1.sql has digest {B} in files, and digest {A} in database"


def test_pending_filenames_sorted():
    assert pending_filenames(
        {"2.sql": A},
        {"3.sql": A, "1.sql": A, "2.sql": A},
    ) == ["1.sql", "3.sql"]
