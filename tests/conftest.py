"""Shared fixtures and builders for library tests."""

import sqlite3
import struct
import zlib
from pathlib import Path

import numpy as np
import pytest

from skyline_blib.ingest import PeakSet, RefSpectrum
from skyline_blib.library import BlibLibrary
from skyline_blib.score_types import ScoreType


def make_spectrum(
    seq: str = "PEPTIDEK",
    charge: int = 2,
    n_peaks: int = 5,
    source_file: str | None = "run1.raw",
    cutoff: float = 0.95,
    **kwargs,
) -> tuple[RefSpectrum, PeakSet]:
    """A spectrum with ``n_peaks`` evenly spaced peaks."""
    spectrum = RefSpectrum(
        peptide_seq=seq,
        precursor_mz=450.25,
        precursor_charge=charge,
        source_file=source_file,
        cutoff_score=cutoff,
        retention_time=25.5,
        spec_id_in_file="scan=1234",
        score=0.01,
        score_type=ScoreType.PERCOLATOR_QVALUE,
        **kwargs,
    )
    mz = 200.0 + 100.5 * np.arange(n_peaks)
    intensity = 1000.0 - 100.0 * np.arange(n_peaks)
    return spectrum, PeakSet(mz=mz, intensity=intensity)


@pytest.fixture
def library_path(tmp_path):
    return tmp_path / "target.blib"


@pytest.fixture
def new_library(library_path):
    """An empty, freshly created redundant library."""
    with BlibLibrary(library_path, overwrite=True) as lib:
        yield lib


# =============================================================================
# Hand-built libraries in historical layouts
# =============================================================================

_LEGACY_BASE_COLUMNS = (
    "id INTEGER primary key autoincrement not null, "
    "peptideSeq VARCHAR(150), "
    "precursorMZ REAL, "
    "precursorCharge INTEGER, "
    "peptideModSeq VARCHAR(200), "
    "prevAA CHAR(1), "
    "nextAA CHAR(1), "
    "copies INTEGER, "
    "numPeaks INTEGER"
)

_LEGACY_EXTRA_COLUMNS = {
    0: "",
    1: ", retentionTime REAL, fileID INTEGER, SpecIDinFile VARCHAR(256), "
       "score REAL, scoreType TINYINT",
    2: ", ionMobilityValue REAL, ionMobilityType INTEGER, retentionTime REAL, "
       "fileID INTEGER, SpecIDinFile VARCHAR(256), score REAL, scoreType TINYINT",
    3: ", ionMobilityValue REAL, ionMobilityType INTEGER, "
       "ionMobilityHighEnergyDriftTimeOffsetMsec REAL, retentionTime REAL, "
       "fileID INTEGER, SpecIDinFile VARCHAR(256), score REAL, scoreType TINYINT",
}


def build_legacy_library(
    path: Path,
    version: int,
    spectra: list[dict],
    source_files: list[tuple[int, str, float]] | None = None,
    with_cutoff: bool = True,
) -> Path:
    """Write a library in one of the pre-current RefSpectra layouts.

    Args:
        path: File to create
        version: Table version 0-3
        spectra: Dicts of RefSpectra column values; ``mz``, ``intensity``
            and ``mods`` keys give the peaks and modifications
        source_files: (id, fileName, cutoffScore) rows; None omits the
            SpectrumSourceFiles table
        with_cutoff: Include the cutoffScore column

    """
    conn = sqlite3.connect(str(path))
    cursor = conn.cursor()
    cursor.execute(
        "CREATE TABLE LibInfo(libLSID TEXT, createTime TEXT, numSpecs INTEGER, "
        "majorVersion INTEGER, minorVersion INTEGER)"
    )
    cursor.execute(
        "INSERT INTO LibInfo VALUES(?, ?, ?, ?, ?)",
        ("urn:lsid:test:spectral_library:bibliospec:redundant:legacy", "Mon Jan  1 00:00:00 2010",
         len(spectra), 3, version),
    )
    cursor.execute(f"CREATE TABLE RefSpectra ({_LEGACY_BASE_COLUMNS}{_LEGACY_EXTRA_COLUMNS[version]})")
    cursor.execute(
        "CREATE TABLE Modifications (id INTEGER primary key autoincrement not null, "
        "RefSpectraID INTEGER, position INTEGER, mass REAL)"
    )
    cursor.execute("CREATE TABLE RefSpectraPeaks(RefSpectraID INTEGER, peakMZ BLOB, peakIntensity BLOB)")

    if source_files is not None:
        if with_cutoff:
            cursor.execute(
                "CREATE TABLE SpectrumSourceFiles (id INTEGER PRIMARY KEY autoincrement not null, "
                "fileName VARCHAR(512), cutoffScore REAL)"
            )
            cursor.executemany("INSERT INTO SpectrumSourceFiles VALUES (?, ?, ?)", source_files)
        else:
            cursor.execute(
                "CREATE TABLE SpectrumSourceFiles (id INTEGER PRIMARY KEY autoincrement not null, "
                "fileName VARCHAR(512))"
            )
            cursor.executemany(
                "INSERT INTO SpectrumSourceFiles VALUES (?, ?)",
                [(file_id, name) for file_id, name, _ in source_files],
            )

    for spectrum in spectra:
        spectrum = dict(spectrum)
        mz = spectrum.pop("mz", [300.1, 400.2, 500.3])
        intensity = spectrum.pop("intensity", [10.0, 20.0, 30.0])
        mods = spectrum.pop("mods", [])
        spectrum.setdefault("numPeaks", len(mz))
        spectrum.setdefault("copies", 1)
        spectrum.setdefault("prevAA", "K")
        spectrum.setdefault("nextAA", "A")
        spectrum.setdefault("peptideModSeq", spectrum["peptideSeq"])

        columns = ", ".join(spectrum)
        placeholders = ", ".join("?" for _ in spectrum)
        cursor.execute(f"INSERT INTO RefSpectra ({columns}) VALUES ({placeholders})", tuple(spectrum.values()))
        spectrum_id = cursor.lastrowid

        for position, mass in mods:
            cursor.execute(
                "INSERT INTO Modifications (RefSpectraID, position, mass) VALUES (?, ?, ?)",
                (spectrum_id, position, mass),
            )
        cursor.execute(
            "INSERT INTO RefSpectraPeaks VALUES (?, ?, ?)",
            (
                spectrum_id,
                zlib.compress(struct.pack(f"<{len(mz)}d", *mz)),
                struct.pack(f"<{len(intensity)}f", *intensity),
            ),
        )

    conn.commit()
    conn.close()
    return path
