"""Tests for library creation and schema upgrades."""

import sqlite3

import pytest

from skyline_blib.database import LibraryConnection, LibraryError, quote_identifier
from skyline_blib.library import BlibLibrary
from skyline_blib.schema import (
    OPTIONAL_REFSPECTRA_COLUMNS,
    SCHEMA_VERSION_CURRENT,
    SchemaManager,
    library_id_from_name,
    make_lsid,
)
from skyline_blib.score_types import ScoreType, score_type_to_string

from conftest import build_legacy_library, make_spectrum


def _schema_snapshot(path):
    conn = sqlite3.connect(str(path))
    try:
        tables = sorted(
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        )
        columns = {
            table: [row[1] for row in conn.execute(f"PRAGMA table_info({table})")]
            for table in tables
            if table != "sqlite_sequence"
        }
    finally:
        conn.close()
    return tables, columns


# =============================================================================
# LSID
# =============================================================================


class TestLsid:
    """Tests for library identifiers."""

    def test_redundant_lsid(self):
        lsid = make_lsid("proteome.gs.washington.edu", "yeast.blib", redundant=True)
        assert lsid == "urn:lsid:proteome.gs.washington.edu:spectral_library:bibliospec:redundant:yeast.blib"

    def test_nr_lsid(self):
        assert make_lsid("example.org", "lib", redundant=False).endswith(":bibliospec:nr:lib")

    @pytest.mark.parametrize("name,expected", [
        ("/data/libs/yeast.blib", "yeast.blib"),
        ("C:\\libs\\yeast.blib", "yeast.blib"),
        ("yeast.blib", "yeast.blib"),
    ])
    def test_library_id_from_name(self, name, expected):
        assert library_id_from_name(name) == expected


# =============================================================================
# New libraries
# =============================================================================


class TestCreateLibrary:
    """Tests for creating a library from scratch."""

    def test_creates_core_tables(self, new_library, library_path):
        tables, columns = _schema_snapshot(library_path)

        for table in ["LibInfo", "RefSpectra", "Modifications", "RefSpectraPeaks",
                      "SpectrumSourceFiles", "ScoreTypes"]:
            assert table in tables
        assert columns["RefSpectra"] == [
            "id", "peptideSeq", "precursorMZ", "precursorCharge", "peptideModSeq",
            "prevAA", "nextAA", "copies", "numPeaks", "driftTimeMsec",
            "collisionalCrossSectionSqA", "driftTimeHighEnergyOffsetMsec",
            "retentionTime", "fileID", "SpecIDinFile", "score", "scoreType",
        ]

    def test_lib_info_row(self, new_library, library_path):
        conn = sqlite3.connect(str(library_path))
        rows = conn.execute("SELECT * FROM LibInfo").fetchall()
        conn.close()

        assert len(rows) == 1
        lsid, create_time, num_specs, major, minor = rows[0]
        assert lsid == new_library.lsid
        assert lsid.endswith(":redundant:target.blib")
        assert create_time
        assert num_specs == -1
        assert major == 0
        assert minor == SCHEMA_VERSION_CURRENT

    def test_score_types_seeded(self, new_library, library_path):
        conn = sqlite3.connect(str(library_path))
        rows = dict(conn.execute("SELECT id, scoreType FROM ScoreTypes").fetchall())
        conn.close()

        assert len(rows) == len(ScoreType)
        assert rows[0] == "UNKNOWN"
        assert rows[int(ScoreType.PERCOLATOR_QVALUE)] == "PERCOLATOR QVALUE"
        assert rows[int(ScoreType.MSGF_SCORE)] == "MSGF+ SCORE"

    def test_zero_length_file_is_created(self, library_path):
        """Test that an empty existing file is treated as a new library."""
        library_path.touch()
        with BlibLibrary(library_path) as lib:
            assert lib.schema.created
            assert lib.get_revision_info() == (0, SCHEMA_VERSION_CURRENT)

    def test_overwrite_replaces_existing(self, library_path):
        with BlibLibrary(library_path, overwrite=True) as lib:
            with lib.transaction():
                lib.insert_spectrum(*_split(make_spectrum()))
            lib.commit()

        with BlibLibrary(library_path, overwrite=True) as lib:
            assert lib.count_spectra() == 0

    def test_missing_directory_is_fatal(self, tmp_path):
        with pytest.raises(LibraryError, match="Make sure the directory exists"):
            BlibLibrary(tmp_path / "missing" / "lib.blib").open()

    def test_invalid_cache_size(self):
        with pytest.raises(ValueError, match="cache size"):
            SchemaManager("urn:lsid:x", cache_size_mb=0)


def _split(spectrum_and_peaks):
    spectrum, peaks = spectrum_and_peaks
    return spectrum, None, peaks


# =============================================================================
# Upgrading existing libraries
# =============================================================================


class TestUpdateTables:
    """Tests for adding missing tables and columns to existing libraries."""

    def test_legacy_library_gains_current_columns(self, tmp_path):
        path = build_legacy_library(
            tmp_path / "old.blib", 0,
            [{"peptideSeq": "PEPTIDEK", "precursorMZ": 450.25, "precursorCharge": 2}],
        )

        with BlibLibrary(path) as lib:
            assert not lib.schema.created
            for column, _ in OPTIONAL_REFSPECTRA_COLUMNS:
                assert lib.db.column_exists("main", "RefSpectra", column)
            assert lib.db.table_exists("main", "SpectrumSourceFiles")
            assert lib.db.table_exists("main", "ScoreTypes")
            assert lib.get_revision_info() == (3, SCHEMA_VERSION_CURRENT)

            unknown_id = lib.registry.unknown_file_id
            row = lib.db.query_one("SELECT fileID, scoreType FROM RefSpectra")
            assert row["fileID"] == unknown_id
            assert row["scoreType"] == int(ScoreType.UNKNOWN)

            name = lib.db.query_one(
                "SELECT fileName, cutoffScore FROM SpectrumSourceFiles WHERE id = ?", (unknown_id,)
            )
            assert tuple(name) == ("UNKNOWN", -1.0)

    def test_upgrade_is_idempotent(self, tmp_path):
        """Test that a second upgrade leaves the schema unchanged."""
        path = build_legacy_library(
            tmp_path / "old.blib", 2,
            [{"peptideSeq": "PEPTIDEK", "precursorMZ": 450.25, "precursorCharge": 2}],
            source_files=[(1, "a.raw", 0.9)],
        )

        with BlibLibrary(path):
            pass
        first = _schema_snapshot(path)

        with BlibLibrary(path) as lib:
            lib.schema.update_tables()
        second = _schema_snapshot(path)

        assert first == second
        for table, columns in second[1].items():
            assert len(columns) == len(set(columns)), f"Duplicate columns in {table}"

    def test_schema_version_never_decreases(self, tmp_path):
        path = tmp_path / "future.blib"
        with BlibLibrary(path, overwrite=True):
            pass
        conn = sqlite3.connect(str(path))
        conn.execute("UPDATE LibInfo SET minorVersion = 7")
        conn.commit()
        conn.close()

        with BlibLibrary(path) as lib:
            assert lib.get_revision_info()[1] == 7

    def test_indexes_dropped_on_append(self, library_path):
        with BlibLibrary(library_path, overwrite=True) as lib:
            lib.commit()

        with BlibLibrary(library_path) as lib:
            names = {
                row[0] for row in lib.db.query_all("SELECT name FROM sqlite_master WHERE type = 'index'")
            }
            assert not names & {"idxPeptide", "idxPeptideMod", "idxRefIdPeaks"}

    def test_existing_unknown_file_reused(self, tmp_path):
        path = build_legacy_library(
            tmp_path / "old.blib", 1,
            [{"peptideSeq": "PEPTIDEK", "precursorMZ": 450.25, "precursorCharge": 2, "fileID": 4}],
            source_files=[(4, "UNKNOWN", -1.0)],
        )
        with BlibLibrary(path) as lib:
            assert lib.registry.unknown_file_id == 4


class TestScoreTypes:
    """Tests for score type display names."""

    def test_display_names(self):
        assert score_type_to_string(ScoreType.UNKNOWN) == "UNKNOWN"
        assert score_type_to_string(12) == "SEQUEST XCORR"
        assert score_type_to_string(ScoreType.GENERIC_QVALUE) == "GENERIC Q-VALUE"

    def test_unknown_ordinal(self):
        with pytest.raises(ValueError):
            score_type_to_string(999)


class TestLibraryConnection:
    """Tests for statement error reporting."""

    def test_error_names_statement(self, new_library):
        with pytest.raises(LibraryError) as excinfo:
            new_library.db.execute("SELECT * FROM NoSuchTable", message="Lookup failed.")

        error = excinfo.value
        assert error.statement == "SELECT * FROM NoSuchTable"
        assert "Lookup failed." in str(error)
        assert "SQL statement 'SELECT * FROM NoSuchTable'" in str(error)
        assert "no such table" in str(error)

    def test_ignore_failure(self, new_library):
        assert new_library.db.execute("SELECT * FROM NoSuchTable", ignore_failure=True) is None

    def test_rejects_bad_identifier(self, new_library):
        with pytest.raises(ValueError):
            new_library.db.table_exists("main; DROP TABLE RefSpectra", "RefSpectra")

    def test_existing_non_library_file(self, tmp_path):
        path = tmp_path / "notes.blib"
        path.write_bytes(b"this is not an sqlite file\n" * 64)

        with pytest.raises(LibraryError, match="Failed to open") as excinfo:
            LibraryConnection.open(path)
        assert "Make sure the directory exists" not in str(excinfo.value)

    def test_keyword_alias_attached(self, new_library, tmp_path):
        other = tmp_path / "other.blib"
        with BlibLibrary(other, overwrite=True):
            pass

        with new_library.db.attached(other, "check") as schema:
            assert schema == "check"
            assert new_library.db.table_exists(schema, "RefSpectra")
            assert new_library.db.column_exists(schema, "RefSpectra", "driftTimeMsec")

    def test_quote_identifier(self):
        assert quote_identifier("main") == '"main"'
        with pytest.raises(ValueError):
            quote_identifier('x" OR "1')

    def test_read_only_open(self, new_library, library_path):
        db = LibraryConnection.open(library_path, read_only=True)
        try:
            with pytest.raises(LibraryError):
                db.execute("DELETE FROM LibInfo")
        finally:
            db.close()
