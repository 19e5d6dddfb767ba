"""Build session over one BLIB spectral library.

Typical use::

    with BlibLibrary("out.blib", overwrite=True) as lib:
        with lib.transaction():
            lib.insert_spectrum(spectrum, None, peaks)
        lib.merge_from("other.blib")
        lib.commit()

Spectra are only appended during a session. ``commit()`` is the one place
where LibInfo and the lookup indexes are brought up to date with the
rows; running it again after an interrupted session repairs both.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path

from .database import LibraryConnection, LibraryError, TransactionController, quote_identifier
from .ingest import Modification, PeakSet, RefSpectrum, SpectrumIngestor
from .merge import DEFAULT_MERGE_BATCH_SIZE, LibraryMerger, MergeResult
from .peak_codec import DEFAULT_COMPRESSION_LEVEL
from .schema import (
    DEFAULT_AUTHORITY,
    DEFAULT_CACHE_SIZE_MB,
    SchemaManager,
    library_id_from_name,
    make_lsid,
)
from .source_files import SourceFileRegistry

logger = logging.getLogger(__name__)


class BlibLibrary:
    """A target library opened for building.

    Args:
        path: Library file
        overwrite: Replace an existing library instead of appending
        redundant: Redundant library (all spectra) vs. non-redundant
        authority: LSID authority
        library_id: LSID library id; defaults to the file name
        cache_size_mb: SQLite page cache size
        compression_level: zlib level for new peak arrays, 0 for none
        merge_batch_size: Spectra copied per transaction when merging

    """

    def __init__(
        self,
        path: Path | str,
        overwrite: bool = False,
        redundant: bool = True,
        authority: str = DEFAULT_AUTHORITY,
        library_id: str | None = None,
        cache_size_mb: int = DEFAULT_CACHE_SIZE_MB,
        compression_level: int = DEFAULT_COMPRESSION_LEVEL,
        merge_batch_size: int = DEFAULT_MERGE_BATCH_SIZE,
    ):
        self.path = Path(path)
        self.overwrite = overwrite
        self.redundant = redundant
        self.authority = authority
        self.library_id = library_id or library_id_from_name(path)
        self.cache_size_mb = cache_size_mb
        self.compression_level = compression_level
        self.merge_batch_size = merge_batch_size

        self.schema: SchemaManager | None = None
        self.db: LibraryConnection | None = None
        self.transactions: TransactionController | None = None
        self.registry: SourceFileRegistry | None = None
        self.ingestor: SpectrumIngestor | None = None
        self.merger: LibraryMerger | None = None

    @property
    def lsid(self) -> str:
        return make_lsid(self.authority, self.library_id, self.redundant)

    @property
    def is_open(self) -> bool:
        return self.db is not None

    def open(self) -> BlibLibrary:
        """Create or open the library and set up the session components."""
        if self.is_open:
            return self
        self.schema = SchemaManager(self.lsid, self.cache_size_mb)
        try:
            self.db = self.schema.initialize_or_open(self.path, self.overwrite)
        except LibraryError:
            if self.schema.db is not None:
                self.schema.db.close()
            raise
        self.transactions = TransactionController(self.db)
        self.registry = SourceFileRegistry(self.db, self.schema.unknown_file_id)
        self.ingestor = SpectrumIngestor(self.db, self.registry, self.compression_level)
        self.merger = LibraryMerger(self.db, self.registry, self.transactions, self.merge_batch_size)
        return self

    def close(self) -> None:
        """Close the library, discarding any uncommitted transaction."""
        if self.db is None:
            return
        self.transactions.rollback()
        self.db.close()
        self.db = None

    def __enter__(self) -> BlibLibrary:
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_open(self) -> LibraryConnection:
        if self.db is None:
            raise LibraryError(f"Library {self.path} is not open")
        return self.db

    # -- transactions ------------------------------------------------------

    def begin_transaction(self) -> None:
        self._require_open()
        self.transactions.begin()

    def end_transaction(self) -> None:
        self._require_open()
        self.transactions.end()

    def undo_active_transaction(self) -> None:
        """Roll back the open transaction and forget ids it created."""
        self._require_open()
        self.transactions.rollback()
        self.registry.clear_cache()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Commit the block's writes together, or none of them."""
        self._require_open()
        try:
            with self.transactions.transaction():
                yield
        except BaseException:
            self.registry.clear_cache()
            raise

    # -- writing -----------------------------------------------------------

    def insert_spectrum(
        self,
        spectrum: RefSpectrum,
        modifications: Sequence[Modification] | None,
        peaks: PeakSet,
    ) -> int:
        """Insert one spectrum; see ``SpectrumIngestor.insert_spectrum``."""
        self._require_open()
        return self.ingestor.insert_spectrum(spectrum, modifications, peaks)

    def merge_from(
        self,
        path: Path | str,
        selection: Iterable[int] | None = None,
        copies: Mapping[int, int] | None = None,
    ) -> MergeResult:
        """Merge another library; see ``LibraryMerger.merge_from``."""
        self._require_open()
        return self.merger.merge_from(path, selection, copies)

    def commit(self) -> int:
        """Bring LibInfo up to date and rebuild the lookup indexes.

        Returns:
            The new revision number

        """
        self._require_open()
        with self.transactions.transaction():
            spectrum_count = self.count_spectra()
            revision = self.schema.update_lib_info(spectrum_count)
            self.schema.create_indexes()
        logger.info(f"Committed {self.path}: {spectrum_count} spectra, revision {revision}")
        return revision

    def abort_current_library(self) -> None:
        """Close the library and delete its file."""
        logger.debug("Deleting current library.")
        if self.db is not None:
            self.db.close()
            self.db = None
        self.path.unlink(missing_ok=True)

    # -- queries -----------------------------------------------------------

    def count_spectra(self, schema: str | None = None) -> int:
        """Count RefSpectra rows, ignoring the LibInfo value."""
        db = self._require_open()
        table = "RefSpectra" if schema is None else f"{quote_identifier(schema)}.RefSpectra"
        row = db.query_one(f"SELECT count(*) FROM {table}", message="Failed getting spectrum count.")
        return int(row[0])

    def get_spectrum_count(self, schema: str | None = None) -> int:
        """Spectrum count from LibInfo, counting rows if it is not recorded."""
        db = self._require_open()
        table = "LibInfo" if schema is None else f"{quote_identifier(schema)}.LibInfo"
        cursor = db.execute(f"SELECT numSpecs FROM {table}", ignore_failure=True)
        row = None if cursor is None else cursor.fetchone()

        num_specs = -1 if row is None or row[0] is None else int(row[0])
        if num_specs == -1:
            logger.debug("Failed to get spectrum count, so count them.")
            num_specs = self.count_spectra(schema)
        return num_specs

    def is_empty(self) -> bool:
        return self.get_spectrum_count() == 0

    def get_revision_info(self) -> tuple[int, int]:
        """(revision, schema version) of the library."""
        self._require_open()
        return self.schema.get_revision_info()
