"""Merging spectra from other libraries into the target library.

A secondary library is attached read-only under a private alias. Its
source files are matched against the target's by file name, and its
spectra are copied one by one with their modifications and peak blobs.
Secondary libraries may be of any historical layout; ``TableVersion``
identifies the layout and selects how its columns map onto the current
RefSpectra columns.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path

from .database import (
    LibraryConnection,
    LibraryError,
    SpectrumTransferError,
    TransactionController,
    quote_identifier,
)
from .ingest import INSERT_MODIFICATION_SQL, INSERT_PEAKS_SQL, INSERT_REFSPECTRA_SQL
from .schema import UNKNOWN_CUTOFF
from .source_files import SourceFileRegistry

logger = logging.getLogger(__name__)

DEFAULT_MERGE_BATCH_SIZE = 1000


class TableVersion(IntEnum):
    """RefSpectra layout of a secondary library."""

    NONE = 0  # No optional metadata columns
    LEGACY = 1  # Retention time, file, score columns; no ion mobility
    ION_MOBILITY = 2  # ionMobilityValue and ionMobilityType
    ION_MOBILITY_OFFSET = 3  # Adds high energy drift time offset
    DRIFT_TIME = 4  # driftTimeMsec and collisionalCrossSectionSqA


def detect_table_version(db: LibraryConnection, schema: str) -> TableVersion:
    """Probe the RefSpectra columns of ``schema`` for its layout."""
    def has(column: str) -> bool:
        return db.column_exists(schema, "RefSpectra", column)

    if has("driftTimeMsec"):
        return TableVersion.DRIFT_TIME
    if has("ionMobilityHighEnergyDriftTimeOffsetMsec"):
        return TableVersion.ION_MOBILITY_OFFSET
    if has("ionMobilityValue"):
        return TableVersion.ION_MOBILITY
    if has("retentionTime"):
        return TableVersion.LEGACY
    return TableVersion.NONE


# Columns present in every layout
_BASE_COLUMNS = (
    "peptideSeq",
    "precursorMZ",
    "precursorCharge",
    "peptideModSeq",
    "prevAA",
    "nextAA",
    "copies",
    "numPeaks",
)

_SCORE_COLUMNS = ("retentionTime", "SpecIDinFile", "score", "scoreType")

# Value stored for SpecIDinFile when the source has none
_MISSING_SPEC_ID = "0"


def _num(value) -> float:
    return 0.0 if value is None else float(value)


def _int(value) -> int:
    return 0 if value is None else int(value)


def _score_values(row) -> tuple:
    spec_id = row["SpecIDinFile"]
    return (
        _num(row["retentionTime"]),
        _MISSING_SPEC_ID if spec_id is None else str(spec_id),
        _num(row["score"]),
        _int(row["scoreType"]),
    )


def _ion_mobility_values(row, offset: float) -> tuple:
    # Type 1 is a drift time in msec, type 2 a collisional cross section
    value = _num(row["ionMobilityValue"])
    im_type = _int(row["ionMobilityType"])
    drift_time = value if im_type == 1 else 0.0
    ccs = value if im_type == 2 else 0.0
    return (drift_time, ccs, offset)


def _map_none(row) -> tuple:
    return (0.0, 0.0, 0.0, 0.0, _MISSING_SPEC_ID, 0.0, 0)


def _map_legacy(row) -> tuple:
    return (0.0, 0.0, 0.0) + _score_values(row)


def _map_ion_mobility(row) -> tuple:
    return _ion_mobility_values(row, 0.0) + _score_values(row)


def _map_ion_mobility_offset(row) -> tuple:
    offset = _num(row["ionMobilityHighEnergyDriftTimeOffsetMsec"])
    return _ion_mobility_values(row, offset) + _score_values(row)


def _map_drift_time(row) -> tuple:
    return (
        _num(row["driftTimeMsec"]),
        _num(row["collisionalCrossSectionSqA"]),
        _num(row["driftTimeHighEnergyOffsetMsec"]),
    ) + _score_values(row)


@dataclass(frozen=True)
class ColumnMapping:
    """How one layout's RefSpectra columns feed the current columns.

    ``map_row`` returns (driftTimeMsec, collisionalCrossSectionSqA,
    driftTimeHighEnergyOffsetMsec, retentionTime, SpecIDinFile, score,
    scoreType) for a row selected with ``source_columns``.
    """

    source_columns: tuple[str, ...]
    map_row: Callable
    has_file_id: bool


COLUMN_MAPPINGS: dict[TableVersion, ColumnMapping] = {
    TableVersion.NONE: ColumnMapping(_BASE_COLUMNS, _map_none, False),
    TableVersion.LEGACY: ColumnMapping(
        _BASE_COLUMNS + _SCORE_COLUMNS, _map_legacy, True
    ),
    TableVersion.ION_MOBILITY: ColumnMapping(
        _BASE_COLUMNS + ("ionMobilityValue", "ionMobilityType") + _SCORE_COLUMNS,
        _map_ion_mobility,
        True,
    ),
    TableVersion.ION_MOBILITY_OFFSET: ColumnMapping(
        _BASE_COLUMNS
        + ("ionMobilityValue", "ionMobilityType", "ionMobilityHighEnergyDriftTimeOffsetMsec")
        + _SCORE_COLUMNS,
        _map_ion_mobility_offset,
        True,
    ),
    TableVersion.DRIFT_TIME: ColumnMapping(
        _BASE_COLUMNS
        + ("driftTimeMsec", "collisionalCrossSectionSqA", "driftTimeHighEnergyOffsetMsec")
        + _SCORE_COLUMNS,
        _map_drift_time,
        True,
    ),
}


@dataclass
class MergeResult:
    """Result of merging one secondary library."""

    source_path: Path
    table_version: TableVersion
    n_transferred: int = 0
    # Secondary spectrum id -> target spectrum id
    new_ids: dict[int, int] = field(default_factory=dict)
    # Secondary spectrum id -> reason it was not transferred
    failed: dict[int, str] = field(default_factory=dict)
    # Secondary SpectrumSourceFiles id -> target id
    file_id_map: dict[int, int] = field(default_factory=dict)

    def __str__(self) -> str:
        text = f"{self.source_path.name}: {self.n_transferred} spectra transferred"
        if self.failed:
            text += f", {len(self.failed)} failed"
        return text


class _MergeState:
    """Per-merge state: the alias, layout and old-to-new file id map."""

    def __init__(self, schema: str, mapping: ColumnMapping, has_source_files: bool, has_cutoff: bool):
        self.schema = schema
        self.source = quote_identifier(schema)
        self.mapping = mapping
        self.has_source_files = has_source_files
        self.has_cutoff = has_cutoff
        self.file_id_map: dict[int, int] = {}


class LibraryMerger:
    """Copies spectra from secondary libraries into the target library.

    Args:
        db: Connection to the target library
        registry: Source file registry of the session
        transactions: Transaction controller of the session
        batch_size: Spectra copied per transaction

    """

    def __init__(
        self,
        db: LibraryConnection,
        registry: SourceFileRegistry,
        transactions: TransactionController,
        batch_size: int = DEFAULT_MERGE_BATCH_SIZE,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.db = db
        self.registry = registry
        self.transactions = transactions
        self.batch_size = batch_size
        # One alias per merge call of this session
        self._aliases = itertools.count(1)

    def merge_from(
        self,
        path: Path | str,
        selection: Iterable[int] | None = None,
        copies: Mapping[int, int] | None = None,
    ) -> MergeResult:
        """Merge spectra of the library at ``path`` into the target.

        Args:
            path: Secondary library
            selection: Secondary spectrum ids to copy; None copies all
            copies: Optional replacement ``copies`` value per secondary id

        Returns:
            MergeResult with the count of transferred spectra and any
            per-spectrum failures

        Raises:
            FileNotFoundError: If the secondary library does not exist
            LibraryError: If a transaction is already open, or on any store
                failure other than a missing spectrum; the open batch is
                rolled back

        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Library not found: {path}")

        # ATTACH is not allowed inside a transaction; the caller's stays untouched
        if self.db.in_transaction:
            raise LibraryError(
                f"Cannot merge {path} while a transaction is open. "
                "End or undo the active transaction first."
            )

        logger.info(f"Merging spectra from {path}")

        alias = f"tmp_{next(self._aliases)}"
        with self.db.attached(path, alias) as schema:
            table_version = detect_table_version(self.db, schema)
            logger.debug(f"{path.name} has RefSpectra table version {int(table_version)}")
            state = _MergeState(
                schema,
                COLUMN_MAPPINGS[table_version],
                self.db.table_exists(schema, "SpectrumSourceFiles"),
                self.db.column_exists(schema, "SpectrumSourceFiles", "cutoffScore"),
            )
            result = MergeResult(source_path=path, table_version=table_version)

            try:
                self.transactions.begin()
                self._transfer_spectrum_files(state)

                if selection is None:
                    selection = [
                        row[0]
                        for row in self.db.query_all(f"SELECT id FROM {state.source}.RefSpectra ORDER BY id")
                    ]

                in_batch = 0
                for spectrum_id in selection:
                    spectrum_copies = None if copies is None else copies.get(spectrum_id)
                    try:
                        new_id = self._transfer_spectrum(state, int(spectrum_id), spectrum_copies)
                    except SpectrumTransferError as e:
                        logger.warning(str(e))
                        result.failed[int(spectrum_id)] = str(e)
                        continue

                    result.new_ids[int(spectrum_id)] = new_id
                    result.n_transferred += 1
                    in_batch += 1
                    if in_batch >= self.batch_size:
                        self.transactions.begin()
                        in_batch = 0

                self.transactions.end()
            except BaseException:
                self.transactions.rollback()
                self.registry.clear_cache()
                raise

            result.file_id_map = dict(state.file_id_map)

        logger.info(f"Merged {result}")
        return result

    def transfer_spectrum(
        self,
        path: Path | str,
        spectrum_id: int,
        copies: int | None = None,
    ) -> int:
        """Copy a single spectrum; convenience wrapper over ``merge_from``.

        Raises:
            SpectrumTransferError: If the spectrum is not in the library

        """
        result = self.merge_from(path, [spectrum_id], None if copies is None else {spectrum_id: copies})
        if spectrum_id in result.failed:
            raise SpectrumTransferError(result.failed[spectrum_id])
        return result.new_ids[spectrum_id]

    def _transfer_spectrum_files(self, state: _MergeState) -> None:
        """Match every secondary source file to a target row."""
        if not state.has_source_files:
            logger.warning(
                "Original library does not contain filenames for the library spectra"
            )
            self.registry.ensure_unknown_file()
            return

        cutoff_select = "cutoffScore" if state.has_cutoff else "-1"
        rows = self.db.query_all(
            f"SELECT id, fileName, {cutoff_select} FROM {state.source}.SpectrumSourceFiles",
            message="Failed selecting file names from secondary library.",
        )
        for old_id, file_name, cutoff in rows:
            cutoff = UNKNOWN_CUTOFF if cutoff is None else float(cutoff)
            state.file_id_map[old_id] = self.registry.resolve(file_name, cutoff)

    def _new_file_id(self, state: _MergeState, old_file_id: int | None) -> int:
        """Target file id for a secondary fileID value."""
        if old_file_id is None or not state.has_source_files:
            return self.registry.ensure_unknown_file()

        new_id = state.file_id_map.get(old_file_id)
        if new_id is None:
            # Source file added to the secondary after the initial transfer
            cutoff_select = "cutoffScore" if state.has_cutoff else "-1"
            row = self.db.query_one(
                f"SELECT fileName, {cutoff_select} FROM {state.source}.SpectrumSourceFiles WHERE id = ?",
                (old_file_id,),
            )
            if row is None:
                new_id = self.registry.ensure_unknown_file()
            else:
                cutoff = UNKNOWN_CUTOFF if row[1] is None else float(row[1])
                new_id = self.registry.resolve(row[0], cutoff)
            state.file_id_map[old_file_id] = new_id
        return new_id

    def _transfer_spectrum(self, state: _MergeState, spectrum_id: int, copies: int | None) -> int:
        """Copy one spectrum, its modifications and its peaks atomically."""
        schema = state.schema
        mapping = state.mapping
        columns = mapping.source_columns + (("fileID",) if mapping.has_file_id else ())

        row = self.db.query_one(
            f"SELECT {', '.join(columns)} FROM {state.source}.RefSpectra WHERE id = ?",
            (spectrum_id,),
            f"Failed reading spectrum {spectrum_id}.",
        )
        if row is None:
            raise SpectrumTransferError(
                f"Spectrum {spectrum_id} not found in secondary library {schema}"
            )

        peaks = self.db.query_one(
            f"SELECT peakMZ, peakIntensity FROM {state.source}.RefSpectraPeaks WHERE RefSpectraID = ?",
            (spectrum_id,),
            "Failed getting peaks.",
        )
        if peaks is None:
            raise SpectrumTransferError(
                f"Spectrum {spectrum_id} in secondary library {schema} has no peaks"
            )

        mods = self.db.query_all(
            f"SELECT position, mass FROM {state.source}.Modifications WHERE RefSpectraID = ? ORDER BY id",
            (spectrum_id,),
            "Failed getting modifications.",
        )

        with self.transactions.savepoint("transfer_spectrum"):
            file_id = self._new_file_id(state, row["fileID"] if mapping.has_file_id else None)
            drift, ccs, offset, rt, spec_id, score, score_type = mapping.map_row(row)
            values = (
                row["peptideSeq"],
                _num(row["precursorMZ"]),
                _int(row["precursorCharge"]),
                row["peptideModSeq"],
                row["prevAA"],
                row["nextAA"],
                _int(row["copies"]) if copies is None else int(copies),
                _int(row["numPeaks"]),
                drift,
                ccs,
                offset,
                rt,
                file_id,
                spec_id,
                score,
                score_type,
            )
            new_id = self.db.insert(
                INSERT_REFSPECTRA_SQL, values, f"Failed transferring spectrum {spectrum_id}."
            )
            for position, mass in mods:
                self.db.insert(INSERT_MODIFICATION_SQL, (new_id, position, mass))
            # Blobs are copied as stored, compressed or not
            self.db.execute(
                INSERT_PEAKS_SQL,
                (new_id, peaks["peakMZ"], peaks["peakIntensity"]),
                "Failed importing peaks.",
            )
        return new_id
