"""Creation and upgrade of the BLIB table layout.

A library records two version numbers in LibInfo. ``majorVersion`` is
the data revision and is bumped by every commit. ``minorVersion`` was
never used for its original purpose and now holds the schema version:

- 4: collisional cross section columns, no ion mobility type
- 3: product ion mobility offset for Waters MSe IMS data
- 2: ion mobility value and type
- earlier: none of the optional columns
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

from .database import LibraryConnection, LibraryError, TransactionController, quote_identifier
from .score_types import ScoreType, score_type_to_string

logger = logging.getLogger(__name__)

MAJOR_VERSION_CURRENT = 0
SCHEMA_VERSION_CURRENT = 4

DEFAULT_AUTHORITY = "proteome.gs.washington.edu"
TOOL_NAME = "bibliospec"

# SQLite pages are counted as 1.5K for the cache_size pragma
PAGES_PER_MEG = int(1024.0 / 1.5)
DEFAULT_CACHE_SIZE_MB = 250

UNKNOWN_FILE_NAME = "UNKNOWN"
UNKNOWN_CUTOFF = -1.0

INDEX_STATEMENTS = {
    "idxPeptide": "CREATE INDEX IF NOT EXISTS idxPeptide ON RefSpectra (peptideSeq, precursorCharge)",
    "idxPeptideMod": "CREATE INDEX IF NOT EXISTS idxPeptideMod ON RefSpectra (peptideModSeq, precursorCharge)",
    "idxRefIdPeaks": "CREATE INDEX IF NOT EXISTS idxRefIdPeaks ON RefSpectraPeaks (RefSpectraID)",
}

# RefSpectra columns added since the first library format, in the order
# they were introduced
OPTIONAL_REFSPECTRA_COLUMNS = [
    ("retentionTime", "REAL"),
    ("fileID", "INTEGER"),
    ("SpecIDinFile", "VARCHAR(256)"),
    ("score", "REAL"),
    ("scoreType", "TINYINT"),
    ("driftTimeMsec", "REAL"),
    ("collisionalCrossSectionSqA", "REAL"),
    ("driftTimeHighEnergyOffsetMsec", "REAL"),
]

_CREATE_LIBINFO = (
    "CREATE TABLE LibInfo(libLSID TEXT, "
    "createTime TEXT, "
    "numSpecs INTEGER, "
    "majorVersion INTEGER, "
    "minorVersion INTEGER)"
)

_CREATE_REFSPECTRA = (
    "CREATE TABLE RefSpectra (id INTEGER primary key autoincrement not null, "
    "peptideSeq VARCHAR(150), "
    "precursorMZ REAL, "
    "precursorCharge INTEGER, "
    "peptideModSeq VARCHAR(200), "
    "prevAA CHAR(1), "
    "nextAA CHAR(1), "
    "copies INTEGER, "
    "numPeaks INTEGER, "
    "driftTimeMsec REAL, "
    "collisionalCrossSectionSqA REAL, "
    "driftTimeHighEnergyOffsetMsec REAL, "
    "retentionTime REAL, "
    "fileID INTEGER, "
    "SpecIDinFile VARCHAR(256), "
    "score REAL, "
    "scoreType TINYINT)"
)

_CREATE_MODIFICATIONS = (
    "CREATE TABLE Modifications (id INTEGER primary key autoincrement not null,"
    "RefSpectraID INTEGER, "
    "position INTEGER, "
    "mass REAL)"
)

_CREATE_PEAKS = (
    "CREATE TABLE RefSpectraPeaks(RefSpectraID INTEGER, "
    "peakMZ BLOB, "
    "peakIntensity BLOB)"
)

_CREATE_SOURCE_FILES = (
    "CREATE TABLE SpectrumSourceFiles (id INTEGER PRIMARY KEY "
    "autoincrement not null,"
    "fileName VARCHAR(512),"
    "cutoffScore REAL )"
)

# Key is the enum ordinal, so no autoincrement
_CREATE_SCORE_TYPES = "CREATE TABLE ScoreTypes (id INTEGER PRIMARY KEY, scoreType VARCHAR(128) )"


def library_id_from_name(name: str | Path) -> str:
    """Default library ID: the file name without its directory."""
    name = str(name)
    slash = max(name.rfind("/"), name.rfind("\\"))
    return name[slash + 1:]


def make_lsid(authority: str, library_id: str, redundant: bool = True) -> str:
    """Build the libLSID stored in LibInfo.

    Args:
        authority: LSID authority, e.g. "proteome.gs.washington.edu"
        library_id: Library identifier, usually the file name
        redundant: Redundant libraries keep every spectrum, "nr" ones
            keep one per precursor

    Returns:
        ``urn:lsid:<authority>:spectral_library:bibliospec:<redundant|nr>:<id>``

    """
    lib_type = "redundant" if redundant else "nr"
    return f"urn:lsid:{authority}:spectral_library:{TOOL_NAME}:{lib_type}:{library_id}"


class SchemaManager:
    """Creates new libraries and upgrades existing ones in place.

    Args:
        lsid: LSID written to LibInfo when a library is created
        cache_size_mb: SQLite page cache size for the session

    """

    def __init__(self, lsid: str, cache_size_mb: int = DEFAULT_CACHE_SIZE_MB):
        if cache_size_mb <= 0:
            raise ValueError(f"Invalid cache size specified: {cache_size_mb}")
        self.lsid = lsid
        self.cache_size_mb = cache_size_mb
        self.db: LibraryConnection | None = None
        self.created = False
        self.unknown_file_id: int | None = None

    def initialize_or_open(self, path: Path | str, overwrite: bool = False) -> LibraryConnection:
        """Create a new library at ``path`` or open an existing one for append.

        A missing or zero-length file is always created from scratch. An
        existing library is removed first when ``overwrite`` is set;
        otherwise its commit-time indexes are dropped and any missing
        tables and columns are added.

        Args:
            path: Library file
            overwrite: Replace an existing library

        Returns:
            Open connection to the library

        Raises:
            LibraryError: If the file cannot be removed, created or upgraded

        """
        path = Path(path)

        if not path.exists():
            overwrite = True
        elif overwrite:
            try:
                path.unlink()
            except OSError as e:
                raise LibraryError(f"Failed to remove existing library '{path}'. ({e})") from e
        elif path.stat().st_size == 0:
            overwrite = True

        self.db = LibraryConnection.open(path)
        self.created = overwrite
        message = f"Failed to initialize {path}"

        self.db.execute("PRAGMA synchronous=OFF", message=message)
        self.db.execute(f"PRAGMA cache_size={int(self.cache_size_mb * PAGES_PER_MEG)}", message=message)
        self.db.execute("PRAGMA temp_store=MEMORY", message=message)

        # Schema changes are all-or-nothing
        with TransactionController(self.db).transaction():
            if overwrite:
                logger.info(f"Creating library {path}")
                self.create_tables()
            else:
                logger.info(f"Opening library {path} for append")
                self.drop_indexes()
                self.update_tables()

        return self.db

    def create_tables(self) -> None:
        """Create the full current table set in an empty library."""
        db = self._require_db()
        db.execute(_CREATE_LIBINFO)
        # numSpecs starts at -1 meaning "not counted"; 0 would mean empty
        db.execute(
            "INSERT INTO LibInfo VALUES(?, ?, ?, ?, ?)",
            (self.lsid, time.ctime(), -1, MAJOR_VERSION_CURRENT, SCHEMA_VERSION_CURRENT),
        )
        db.execute(_CREATE_REFSPECTRA)
        db.execute(_CREATE_MODIFICATIONS)
        db.execute(_CREATE_PEAKS)
        self.create_table("SpectrumSourceFiles")
        self.create_table("ScoreTypes")

    def create_table(self, table_name: str) -> None:
        """Create one of the tables that older libraries may lack."""
        db = self._require_db()
        if table_name == "SpectrumSourceFiles":
            db.execute(_CREATE_SOURCE_FILES)
        elif table_name == "ScoreTypes":
            db.execute(_CREATE_SCORE_TYPES)
            for score_type in ScoreType:
                db.execute(
                    "INSERT INTO ScoreTypes(id, scoreType) VALUES(?, ?)",
                    (int(score_type), score_type_to_string(score_type)),
                )
        else:
            raise LibraryError(f"Cannot create '{table_name}' table. Unknown name.")

    def update_tables(self) -> None:
        """Add whatever tables and columns an existing library is missing.

        Running this against an up-to-date library changes nothing.
        """
        db = self._require_db()

        if not db.table_exists("main", "SpectrumSourceFiles"):
            self.create_table("SpectrumSourceFiles")
            self.unknown_file_id = db.insert(
                "INSERT INTO SpectrumSourceFiles (fileName, cutoffScore) VALUES (?, ?)",
                (UNKNOWN_FILE_NAME, UNKNOWN_CUTOFF),
            )
        else:
            self.unknown_file_id = self.get_unknown_file_id()

        if not db.table_exists("main", "ScoreTypes"):
            self.create_table("ScoreTypes")

        added = set()
        for column, column_type in OPTIONAL_REFSPECTRA_COLUMNS:
            if not db.column_exists("main", "RefSpectra", column):
                logger.debug(f"Adding column RefSpectra.{column}")
                db.execute(f"ALTER TABLE RefSpectra ADD {quote_identifier(column)} {column_type}")
                added.add(column)

        if "driftTimeMsec" in added and db.column_exists("main", "RefSpectra", "ionMobilityValue"):
            self._copy_ion_mobility()

        # Existing spectra without provenance get the UNKNOWN file
        has_orphans = db.query_one("SELECT 1 FROM RefSpectra WHERE fileID IS NULL LIMIT 1")
        if has_orphans is not None:
            if self.unknown_file_id is None:
                if db.column_exists("main", "SpectrumSourceFiles", "cutoffScore"):
                    self.unknown_file_id = db.insert(
                        "INSERT INTO SpectrumSourceFiles (fileName, cutoffScore) VALUES (?, ?)",
                        (UNKNOWN_FILE_NAME, UNKNOWN_CUTOFF),
                    )
                else:
                    self.unknown_file_id = db.insert(
                        "INSERT INTO SpectrumSourceFiles (fileName) VALUES (?)",
                        (UNKNOWN_FILE_NAME,),
                    )
            db.execute(
                "UPDATE RefSpectra SET fileID = ? WHERE fileID IS NULL",
                (self.unknown_file_id,),
            )
        db.execute(
            "UPDATE RefSpectra SET scoreType = ? WHERE scoreType IS NULL",
            (int(ScoreType.UNKNOWN),),
        )

        _, schema_version = self.get_revision_info()
        if schema_version < SCHEMA_VERSION_CURRENT:
            db.execute("UPDATE LibInfo SET minorVersion = ?", (SCHEMA_VERSION_CURRENT,))

    def _copy_ion_mobility(self) -> None:
        """Fill the drift time columns from the older ion mobility columns.

        Ion mobility type 1 is a drift time in msec and type 2 a
        collisional cross section.
        """
        db = self._require_db()
        offset = "0"
        if db.column_exists("main", "RefSpectra", "ionMobilityHighEnergyDriftTimeOffsetMsec"):
            offset = "coalesce(ionMobilityHighEnergyDriftTimeOffsetMsec, 0)"
        logger.debug("Copying ion mobility values into drift time columns")
        db.execute(
            "UPDATE RefSpectra SET "
            "driftTimeMsec = CASE ionMobilityType WHEN 1 THEN coalesce(ionMobilityValue, 0) ELSE 0 END, "
            "collisionalCrossSectionSqA = "
            "CASE ionMobilityType WHEN 2 THEN coalesce(ionMobilityValue, 0) ELSE 0 END, "
            f"driftTimeHighEnergyOffsetMsec = {offset}",
            message="Failed copying ion mobility values",
        )

    def get_unknown_file_id(self) -> int | None:
        """Return the id of the reserved UNKNOWN source file, if present."""
        db = self._require_db()
        if not db.table_exists("main", "SpectrumSourceFiles"):
            return None
        row = db.query_one(
            "SELECT id FROM SpectrumSourceFiles WHERE fileName = ?",
            (UNKNOWN_FILE_NAME,),
            "Failed looking for spectrum file 'UNKNOWN'",
        )
        return None if row is None else row[0]

    def drop_indexes(self) -> None:
        """Drop the commit-time indexes so bulk inserts run faster."""
        db = self._require_db()
        for name in INDEX_STATEMENTS:
            db.execute(f"DROP INDEX IF EXISTS {name}")

    def create_indexes(self) -> None:
        db = self._require_db()
        for statement in INDEX_STATEMENTS.values():
            db.execute(statement)

    def get_revision_info(self, schema: str | None = None) -> tuple[int, int]:
        """Read (revision, schema version) from LibInfo.

        Args:
            schema: Attached schema alias, or None for the main library

        """
        db = self._require_db()
        table = "LibInfo" if schema is None else f"{quote_identifier(schema)}.LibInfo"
        row = db.query_one(
            f"SELECT majorVersion, minorVersion FROM {table}",
            message=f"Failed to read revision information from {db.path}",
        )
        if row is None:
            raise LibraryError(f"Library {db.path} has no LibInfo row")
        return int(row[0] or 0), int(row[1] or 0)

    def update_lib_info(self, spectrum_count: int) -> int:
        """Record the spectrum count and bump the revision.

        Returns:
            The new revision number

        """
        db = self._require_db()
        revision, _ = self.get_revision_info()
        revision += 1
        db.execute(
            "UPDATE LibInfo SET numSpecs = ?, majorVersion = ?",
            (spectrum_count, revision),
        )
        return revision

    def _require_db(self) -> LibraryConnection:
        if self.db is None:
            raise LibraryError("Library has not been opened")
        return self.db
