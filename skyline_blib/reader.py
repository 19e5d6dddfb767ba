"""Read access to BLIB (SQLite) spectral libraries.

BLIB stores spectra in SQLite with:
- RefSpectra: peptide/precursor info
- RefSpectraPeaks: m/z and intensity blobs
- Modifications: per-residue mass shifts
- SpectrumSourceFiles: originating files and their cutoff scores

Peak blobs are decoded with the spectrum's declared ``numPeaks``, which is
the only way to tell compressed blobs from raw ones.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pandas as pd

from .database import LibraryConnection
from .ingest import Modification
from .peak_codec import decompress_intensity, decompress_mz

logger = logging.getLogger(__name__)


@dataclass
class LibrarySpectrum:
    """One RefSpectra row with its decoded peaks and modifications."""

    id: int
    peptide_seq: str
    peptide_mod_seq: str
    precursor_mz: float
    precursor_charge: int
    num_peaks: int
    mz: np.ndarray
    intensity: np.ndarray
    copies: int = 1
    retention_time: float | None = None
    drift_time_msec: float | None = None
    collisional_cross_section_sqa: float | None = None
    drift_time_high_energy_offset_msec: float | None = None
    file_id: int | None = None
    spec_id_in_file: str | None = None
    score: float | None = None
    score_type: int | None = None
    modifications: list[Modification] = field(default_factory=list)

    @property
    def key(self) -> str:
        """Peptide key in the form "SEQUENCE_CHARGE"."""
        return f"{self.peptide_mod_seq}_{self.precursor_charge}"


# RefSpectra column -> LibrarySpectrum attribute, for optional columns
_OPTIONAL_FIELDS = {
    "copies": "copies",
    "retentionTime": "retention_time",
    "driftTimeMsec": "drift_time_msec",
    "collisionalCrossSectionSqA": "collisional_cross_section_sqa",
    "driftTimeHighEnergyOffsetMsec": "drift_time_high_energy_offset_msec",
    "fileID": "file_id",
    "SpecIDinFile": "spec_id_in_file",
    "score": "score",
    "scoreType": "score_type",
}


class BlibReader:
    """Read-only view of a BLIB spectral library.

    Args:
        path: Path to the BLIB file

    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        if not self.path.exists():
            raise FileNotFoundError(f"BLIB file not found: {self.path}")
        self.db = LibraryConnection.open(self.path, read_only=True)
        self._columns = {
            row[1].lower() for row in self.db.query_all("PRAGMA main.table_info(RefSpectra)")
        }

    def close(self) -> None:
        self.db.close()

    def __enter__(self) -> BlibReader:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def revision_info(self) -> tuple[int, int]:
        """(revision, schema version) from LibInfo."""
        row = self.db.query_one("SELECT majorVersion, minorVersion FROM LibInfo")
        return int(row[0]), int(row[1])

    def library_info(self) -> dict:
        row = self.db.query_one("SELECT * FROM LibInfo")
        return dict(row)

    def spectra_table(self) -> pd.DataFrame:
        """All RefSpectra rows as a DataFrame indexed by spectrum id."""
        df = pd.read_sql_query("SELECT * FROM RefSpectra ORDER BY id", self.db.connection)
        return df.set_index("id")

    def source_files(self) -> pd.DataFrame:
        """SpectrumSourceFiles rows as a DataFrame indexed by file id."""
        if not self.db.table_exists("main", "SpectrumSourceFiles"):
            return pd.DataFrame(columns=["fileName", "cutoffScore"]).rename_axis("id")
        df = pd.read_sql_query("SELECT * FROM SpectrumSourceFiles ORDER BY id", self.db.connection)
        return df.set_index("id")

    def modifications_table(self) -> pd.DataFrame:
        return pd.read_sql_query(
            "SELECT * FROM Modifications ORDER BY id", self.db.connection
        ).set_index("id")

    def spectrum_ids(self) -> list[int]:
        return [row[0] for row in self.db.query_all("SELECT id FROM RefSpectra ORDER BY id")]

    def get_peaks(self, spectrum_id: int, num_peaks: int) -> tuple[np.ndarray, np.ndarray]:
        """Decode the m/z and intensity arrays of one spectrum.

        Raises:
            KeyError: If the spectrum has no peaks row

        """
        row = self.db.query_one(
            "SELECT peakMZ, peakIntensity FROM RefSpectraPeaks WHERE RefSpectraID = ?",
            (spectrum_id,),
        )
        if row is None:
            raise KeyError(f"No peaks for spectrum {spectrum_id}")
        mz_blob, intensity_blob = row
        return decompress_mz(mz_blob, num_peaks), decompress_intensity(intensity_blob, num_peaks)

    def get_spectrum(self, spectrum_id: int) -> LibrarySpectrum:
        """Load one spectrum with peaks and modifications.

        Raises:
            KeyError: If the id is not in the library

        """
        row = self.db.query_one("SELECT * FROM RefSpectra WHERE id = ?", (spectrum_id,))
        if row is None:
            raise KeyError(f"Spectrum {spectrum_id} not found in {self.path}")
        return self._make_spectrum(row)

    def iter_spectra(self) -> Iterator[LibrarySpectrum]:
        """Yield every spectrum in id order."""
        for row in self.db.query_all("SELECT * FROM RefSpectra ORDER BY id"):
            yield self._make_spectrum(row)

    def _make_spectrum(self, row) -> LibrarySpectrum:
        spectrum_id = int(row["id"])
        num_peaks = int(row["numPeaks"])
        mz, intensity = self.get_peaks(spectrum_id, num_peaks)

        mods = [
            Modification(position=int(position), mass=float(mass))
            for position, mass in self.db.query_all(
                "SELECT position, mass FROM Modifications WHERE RefSpectraID = ? ORDER BY id",
                (spectrum_id,),
            )
        ]

        seq = row["peptideSeq"]
        spectrum = LibrarySpectrum(
            id=spectrum_id,
            peptide_seq=seq,
            peptide_mod_seq=row["peptideModSeq"] or seq,
            precursor_mz=float(row["precursorMZ"]),
            precursor_charge=int(row["precursorCharge"]),
            num_peaks=num_peaks,
            mz=mz,
            intensity=intensity,
            modifications=mods,
        )
        for column, attr in _OPTIONAL_FIELDS.items():
            if column.lower() in self._columns:
                setattr(spectrum, attr, row[column])
        return spectrum
