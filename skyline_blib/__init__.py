"""
skyline-blib: versioned, mergeable BLIB spectral-library store

Builds SQLite spectral libraries in the BiblioSpec/Skyline BLIB format:
reference spectra with peptide identity, retention and drift times,
scores and compressed peak arrays. Libraries are upgraded in place when
opened for append, and can be merged with deduplication of source files.
"""

__version__ = "0.1.0"

from .database import (
    LibraryConnection,
    LibraryError,
    SpectrumTransferError,
    TransactionController,
)
from .ingest import (
    Modification,
    PeakSet,
    RefSpectrum,
    SpectrumIngestor,
)
from .library import BlibLibrary
from .merge import (
    LibraryMerger,
    MergeResult,
    TableVersion,
    detect_table_version,
)
from .peak_codec import (
    compress_peaks,
    decompress_peaks,
)
from .reader import BlibReader, LibrarySpectrum
from .schema import (
    SCHEMA_VERSION_CURRENT,
    SchemaManager,
    make_lsid,
)
from .score_types import ScoreType, score_type_to_string
from .source_files import AMBIGUOUS_CUTOFF, SourceFileRegistry
