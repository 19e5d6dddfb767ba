"""Insertion of new reference spectra into a library."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np

from .database import LibraryConnection, LibraryError
from .peak_codec import DEFAULT_COMPRESSION_LEVEL, compress_intensity, compress_mz
from .schema import UNKNOWN_CUTOFF
from .score_types import ScoreType
from .source_files import SourceFileRegistry

logger = logging.getLogger(__name__)

REFSPECTRA_INSERT_COLUMNS = (
    "peptideSeq",
    "precursorMZ",
    "precursorCharge",
    "peptideModSeq",
    "prevAA",
    "nextAA",
    "copies",
    "numPeaks",
    "driftTimeMsec",
    "collisionalCrossSectionSqA",
    "driftTimeHighEnergyOffsetMsec",
    "retentionTime",
    "fileID",
    "SpecIDinFile",
    "score",
    "scoreType",
)

INSERT_REFSPECTRA_SQL = (
    f"INSERT INTO RefSpectra({', '.join(REFSPECTRA_INSERT_COLUMNS)}) "
    f"VALUES({', '.join('?' for _ in REFSPECTRA_INSERT_COLUMNS)})"
)
INSERT_MODIFICATION_SQL = "INSERT INTO Modifications(RefSpectraID, position, mass) VALUES(?, ?, ?)"
INSERT_PEAKS_SQL = "INSERT INTO RefSpectraPeaks VALUES(?, ?, ?)"


@dataclass
class Modification:
    """A mass shift on one residue of the peptide."""

    position: int  # Residue offset, 1-based
    mass: float


@dataclass
class PeakSet:
    """Peak arrays of one spectrum."""

    mz: np.ndarray
    intensity: np.ndarray

    def __post_init__(self):
        self.mz = np.asarray(self.mz, dtype=np.float64)
        self.intensity = np.asarray(self.intensity, dtype=np.float32)
        if self.mz.shape != self.intensity.shape or self.mz.ndim != 1:
            raise ValueError(
                f"Peak arrays must be one-dimensional and equal length "
                f"({self.mz.shape} m/z vs {self.intensity.shape} intensities)"
            )

    def __len__(self) -> int:
        return len(self.mz)


@dataclass
class RefSpectrum:
    """Identifying and scoring metadata of one reference spectrum.

    ``source_file`` of None attributes the spectrum to the reserved
    UNKNOWN source file.
    """

    peptide_seq: str
    precursor_mz: float
    precursor_charge: int
    peptide_mod_seq: str = ""
    prev_aa: str = "-"
    next_aa: str = "-"
    copies: int = 1

    # Ion mobility, zero when the instrument does not provide it
    drift_time_msec: float = 0.0
    collisional_cross_section_sqa: float = 0.0
    drift_time_high_energy_offset_msec: float = 0.0

    retention_time: float = 0.0
    source_file: str | None = None
    cutoff_score: float = UNKNOWN_CUTOFF
    spec_id_in_file: str = ""
    score: float = 0.0
    score_type: ScoreType = ScoreType.UNKNOWN

    modifications: list[Modification] = field(default_factory=list)

    def __post_init__(self):
        if not self.peptide_mod_seq:
            self.peptide_mod_seq = self.peptide_seq


class SpectrumIngestor:
    """Writes RefSpectra, Modifications and RefSpectraPeaks rows.

    Args:
        db: Connection to the target library
        registry: Source file registry of the session
        compression_level: zlib level for peak arrays, 0 for none

    """

    def __init__(
        self,
        db: LibraryConnection,
        registry: SourceFileRegistry,
        compression_level: int = DEFAULT_COMPRESSION_LEVEL,
    ):
        self.db = db
        self.registry = registry
        self.compression_level = compression_level

    def insert_spectrum(
        self,
        spectrum: RefSpectrum,
        modifications: Sequence[Modification] | None,
        peaks: PeakSet,
    ) -> int:
        """Insert one spectrum with its modifications and peaks.

        Must be called inside an open transaction. If any of the inserts
        fails the library is left with a partial spectrum, so the caller
        has to roll back.

        Args:
            spectrum: Spectrum metadata
            modifications: Modifications in residue order; None uses
                ``spectrum.modifications``
            peaks: Peak arrays

        Returns:
            Id of the new RefSpectra row

        Raises:
            LibraryError: If no transaction is open or a statement fails

        """
        if not self.db.in_transaction:
            raise LibraryError("Spectra must be inserted inside an open transaction")
        if modifications is None:
            modifications = spectrum.modifications

        if spectrum.source_file is None:
            file_id = self.registry.ensure_unknown_file()
        else:
            file_id = self.registry.resolve(spectrum.source_file, spectrum.cutoff_score)

        values = (
            spectrum.peptide_seq,
            float(spectrum.precursor_mz),
            int(spectrum.precursor_charge),
            spectrum.peptide_mod_seq,
            spectrum.prev_aa,
            spectrum.next_aa,
            int(spectrum.copies),
            len(peaks),
            float(spectrum.drift_time_msec),
            float(spectrum.collisional_cross_section_sqa),
            float(spectrum.drift_time_high_energy_offset_msec),
            float(spectrum.retention_time),
            file_id,
            spectrum.spec_id_in_file,
            float(spectrum.score),
            int(spectrum.score_type),
        )
        spectrum_id = self.db.insert(
            INSERT_REFSPECTRA_SQL,
            values,
            f"Failed inserting spectrum {spectrum.peptide_mod_seq}.",
        )

        for mod in modifications:
            self.db.insert(
                INSERT_MODIFICATION_SQL,
                (spectrum_id, int(mod.position), float(mod.mass)),
                "Failed inserting modification.",
            )

        self.insert_peaks(spectrum_id, peaks)
        return spectrum_id

    def insert_peaks(self, spectrum_id: int, peaks: PeakSet) -> None:
        """Compress and store the peak arrays of ``spectrum_id``."""
        mz_blob = compress_mz(peaks.mz, self.compression_level)
        intensity_blob = compress_intensity(peaks.intensity, self.compression_level)
        self.db.execute(
            INSERT_PEAKS_SQL,
            (spectrum_id, mz_blob, intensity_blob),
            "Failed importing peaks.",
        )
