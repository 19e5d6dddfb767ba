"""Lookup and creation of SpectrumSourceFiles rows."""

from __future__ import annotations

import logging

from .database import LibraryConnection
from .schema import UNKNOWN_CUTOFF, UNKNOWN_FILE_NAME

logger = logging.getLogger(__name__)

# Stored when one file has been seen with different cutoff scores
AMBIGUOUS_CUTOFF = -1.0


class SourceFileRegistry:
    """Maps source file names to SpectrumSourceFiles ids for one session.

    Entries are cached by file name together with the cutoff score they
    were stored with. The same file may be searched with different score
    thresholds across merge inputs; when that happens the stored cutoff
    is replaced with ``AMBIGUOUS_CUTOFF`` instead of choosing one.

    Args:
        db: Connection to the target library
        unknown_file_id: Id of the reserved UNKNOWN row, if already known

    """

    def __init__(self, db: LibraryConnection, unknown_file_id: int | None = None):
        self.db = db
        self._cache: dict[str, tuple[int, float]] = {}
        self._unknown_file_id = unknown_file_id
        # Very old libraries have no cutoffScore column
        self.has_cutoff = db.column_exists("main", "SpectrumSourceFiles", "cutoffScore")

    @property
    def unknown_file_id(self) -> int | None:
        return self._unknown_file_id

    def resolve(self, file_name: str, cutoff_score: float = UNKNOWN_CUTOFF) -> int:
        """Return the id for ``file_name``, adding a row on first sight.

        A file already present with a different cutoff score has its stored
        cutoff replaced with ``AMBIGUOUS_CUTOFF``.
        """
        file_id = self.get_file_id(file_name)
        if file_id is None:
            return self.add_file(file_name, cutoff_score)

        _, stored_cutoff = self._cache[file_name]
        if (
            self.has_cutoff
            and stored_cutoff != AMBIGUOUS_CUTOFF
            and float(cutoff_score) != stored_cutoff
        ):
            logger.debug(
                f"Conflicting cutoff scores for '{file_name}' "
                f"({stored_cutoff} and {cutoff_score}), marking as ambiguous"
            )
            self.db.execute(
                "UPDATE SpectrumSourceFiles SET cutoffScore = ? WHERE id = ?",
                (AMBIGUOUS_CUTOFF, file_id),
                f"Failed marking cutoff of '{file_name}' as ambiguous",
            )
            self._cache[file_name] = (file_id, AMBIGUOUS_CUTOFF)
        return file_id

    def get_file_id(self, file_name: str) -> int | None:
        """Look up an existing row for ``file_name`` without changing it.

        Args:
            file_name: Source file name as stored in the library

        Returns:
            The row id, or None if the file is not in the library

        """
        cached = self._cache.get(file_name)
        if cached is None:
            cutoff_select = "cutoffScore" if self.has_cutoff else "-1"
            row = self.db.query_one(
                f"SELECT id, {cutoff_select} FROM SpectrumSourceFiles WHERE fileName = ?",
                (file_name,),
                f"Failed looking up source file '{file_name}'",
            )
            if row is None:
                return None
            stored_cutoff = UNKNOWN_CUTOFF if row[1] is None else float(row[1])
            cached = (row[0], stored_cutoff)
            self._cache[file_name] = cached
        return cached[0]

    def add_file(self, file_name: str, cutoff_score: float = UNKNOWN_CUTOFF) -> int:
        """Insert a new SpectrumSourceFiles row and cache it."""
        if self.has_cutoff:
            file_id = self.db.insert(
                "INSERT INTO SpectrumSourceFiles(fileName, cutoffScore) VALUES(?, ?)",
                (file_name, float(cutoff_score)),
                f"Failed adding source file '{file_name}'",
            )
        else:
            file_id = self.db.insert(
                "INSERT INTO SpectrumSourceFiles(fileName) VALUES(?)",
                (file_name,),
                f"Failed adding source file '{file_name}'",
            )
        self._cache[file_name] = (file_id, float(cutoff_score))
        return file_id

    def ensure_unknown_file(self) -> int:
        """Return the UNKNOWN file id, creating the row if needed."""
        if self._unknown_file_id is None:
            file_id = self.get_file_id(UNKNOWN_FILE_NAME)
            if file_id is None:
                file_id = self.add_file(UNKNOWN_FILE_NAME, UNKNOWN_CUTOFF)
            self._unknown_file_id = file_id
        return self._unknown_file_id

    def clear_cache(self) -> None:
        """Forget cached ids, e.g. after a rollback discarded new rows."""
        self._cache.clear()
        self._unknown_file_id = None
