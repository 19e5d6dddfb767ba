"""SQLite access layer shared by every library component.

All statements go through ``LibraryConnection`` so that a failing
statement is always reported with its SQL text and the SQLite error
code. ``TransactionController`` groups writes into explicit transactions;
the connection runs with ``isolation_level=None`` so that nothing but
these calls opens or closes a transaction.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class LibraryError(Exception):
    """Fatal failure of a library operation.

    Carries the statement that was attempted and the underlying SQLite
    error so batch jobs can report them without a debugger.
    """

    def __init__(
        self,
        message: str,
        statement: str | None = None,
        error: str | None = None,
        code: int | None = None,
    ):
        self.message = message
        self.statement = statement
        self.error = error
        self.code = code
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.statement is None:
            return self.message
        sql_msg = self.error if self.error else ""
        return (
            f"{self.message} {sql_msg} "
            f"[SQL statement '{self.statement}', return code {self.code}]"
        )


class SpectrumTransferError(LibraryError):
    """A single spectrum could not be copied from a secondary library."""


def quote_identifier(name: str) -> str:
    """Quote a schema, table or column name for use in SQL text.

    Identifiers cannot be bound as parameters, so only plain names are
    accepted. The quotes keep names such as ``check`` from parsing as
    keywords.
    """
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


class LibraryConnection:
    """Thin wrapper around a ``sqlite3.Connection`` to one BLIB file."""

    def __init__(self, connection: sqlite3.Connection, path: Path):
        self._conn = connection
        self.path = path

    @classmethod
    def open(cls, path: Path | str, read_only: bool = False) -> LibraryConnection:
        """Open (or create) the SQLite file at ``path``.

        The file is opened through a URI so that secondary libraries can
        later be attached read-only.
        """
        path = Path(path)
        uri = path.resolve().as_uri()
        if read_only:
            uri += "?mode=ro"
        conn = None
        try:
            conn = sqlite3.connect(uri, uri=True, isolation_level=None)
            # Force the file open now rather than on first statement
            conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
        except sqlite3.Error as e:
            if conn is not None:
                conn.close()
            if path.exists():
                raise LibraryError(
                    f"Failed to open '{path}'. Make sure it is a library file "
                    f"you have permission to read. ({e})"
                ) from e
            raise LibraryError(
                f"Failed to create '{path}'. Make sure the directory exists "
                f"with write permissions. ({e})"
            ) from e
        conn.row_factory = sqlite3.Row
        return cls(conn, path)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def in_transaction(self) -> bool:
        """True when an explicit transaction is open (autocommit is off)."""
        return self._conn.in_transaction

    def execute(
        self,
        sql: str,
        params: Sequence = (),
        message: str = "SQL failure.",
        ignore_failure: bool = False,
    ) -> sqlite3.Cursor | None:
        """Execute one statement, raising ``LibraryError`` on failure.

        Args:
            sql: Statement text
            params: Values bound to the statement's placeholders
            message: Description of what was being attempted
            ignore_failure: Log and return None instead of raising

        Returns:
            The cursor, or None if the statement failed and
            ``ignore_failure`` was set

        """
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            if ignore_failure:
                logger.debug(f"Ignoring failed statement '{sql}': {e}")
                return None
            raise LibraryError(
                message,
                statement=sql,
                error=str(e),
                code=getattr(e, "sqlite_errorcode", None),
            ) from e

    def query_one(self, sql: str, params: Sequence = (), message: str = "SQL failure."):
        return self.execute(sql, params, message).fetchone()

    def query_all(self, sql: str, params: Sequence = (), message: str = "SQL failure."):
        return self.execute(sql, params, message).fetchall()

    def insert(self, sql: str, params: Sequence = (), message: str = "SQL failure.") -> int:
        """Execute an INSERT and return the new row id."""
        return self.execute(sql, params, message).lastrowid

    def table_exists(self, schema: str, table: str) -> bool:
        """Check whether ``schema`` (``main`` or an attached alias) has ``table``."""
        row = self.query_one(
            f"SELECT name FROM {quote_identifier(schema)}.sqlite_master "
            "WHERE type = 'table' AND name = ?",
            (table,),
            "Failed checking for the existence of a table",
        )
        return row is not None

    def column_exists(self, schema: str, table: str, column: str) -> bool:
        """Check whether ``table`` in ``schema`` has ``column``."""
        rows = self.query_all(
            f"PRAGMA {quote_identifier(schema)}.table_info({quote_identifier(table)})",
            message="Failed checking for existence of a column",
        )
        return any(row[1] == column for row in rows)

    @contextmanager
    def attached(self, path: Path | str, alias: str) -> Iterator[str]:
        """Attach another library read-only under ``alias`` for the block.

        The library is detached on every exit path. SQLite refuses to
        attach or detach inside a transaction, so callers must have
        ended theirs.
        """
        uri = Path(path).resolve().as_uri() + "?mode=ro"
        quoted = quote_identifier(alias)
        self.execute(
            f"ATTACH DATABASE ? AS {quoted}",
            (uri,),
            f"Failed to attach library '{path}'.",
        )
        try:
            yield alias
        finally:
            self.execute(f"DETACH DATABASE {quoted}", message=f"Failed to detach '{alias}'.")

    def close(self) -> None:
        self._conn.close()


class TransactionController:
    """Explicit transaction control over a ``LibraryConnection``.

    Thousands of row inserts must share one transaction for acceptable
    throughput, while schema changes and merges need to commit at points
    of their own choosing.
    """

    def __init__(self, db: LibraryConnection):
        self.db = db

    def begin(self) -> None:
        """Start a transaction, committing any that is already open."""
        if self.db.in_transaction:
            self.db.execute("COMMIT")
        self.db.execute("BEGIN")

    def end(self) -> None:
        """Commit the open transaction, if any."""
        if not self.db.in_transaction:
            logger.debug("No open transaction to end.")
            return
        self.db.execute("COMMIT")

    def rollback(self) -> None:
        """Discard everything since the last ``begin()``, if anything."""
        if not self.db.in_transaction:
            logger.debug("No open transaction to roll back.")
            return
        self.db.execute("ROLLBACK")

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the block in one transaction; roll back if it raises."""
        self.begin()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.end()

    @contextmanager
    def savepoint(self, name: str) -> Iterator[None]:
        """Make the block atomic within the currently open transaction."""
        name = quote_identifier(name)
        self.db.execute(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            self.db.execute(f"ROLLBACK TO {name}")
            self.db.execute(f"RELEASE {name}")
            raise
        self.db.execute(f"RELEASE {name}")
