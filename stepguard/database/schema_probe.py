"""
Schema-missing detection.

The two-factor stores run against databases that may not have been migrated
yet (no `two_factor_auth` table, no legacy columns on `users`, ...). A
SchemaProbe tells the stores whether a failed statement failed because a
table or column does not exist, so they can fall back to another backend
instead of surfacing a 500.

Each database backend reports these errors differently, so there is one
probe per dialect and `probe_for(engine)` picks the right one.
"""
import logging
from typing import Iterable, Optional, Protocol

from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError

logger = logging.getLogger(__name__)

POSTGRES_UNDEFINED_TABLE = "42P01"
POSTGRES_UNDEFINED_COLUMN = "42703"
POSTGRES_INVALID_CONFLICT_TARGET = "42P10"
POSTGREST_MISSING_COLUMN = "PGRST204"
POSTGREST_MISSING_TABLE = "PGRST205"

ON_CONFLICT_MISMATCH = "no unique or exclusion constraint matching the on conflict specification"


class SchemaProbe(Protocol):
    """Classifies storage errors as 'schema element missing' or not."""

    def is_table_missing(self, error: BaseException, table: str) -> bool:
        ...

    def is_column_missing(self, error: BaseException, column: str) -> bool:
        ...

    def is_conflict_target_missing(self, error: BaseException) -> bool:
        ...


def _driver_error(error: BaseException) -> BaseException:
    if isinstance(error, DBAPIError) and error.orig is not None:
        return error.orig
    return error


def _error_text(error: BaseException) -> str:
    """Message plus any detail/hint the driver attaches, lower-cased."""
    orig = _driver_error(error)
    parts = [str(orig)]
    diag = getattr(orig, "diag", None)
    if diag is not None:
        parts.extend(str(getattr(diag, attr, "") or "") for attr in ("message_detail", "message_hint"))
    for attr in ("details", "hint"):
        value = getattr(orig, attr, None)
        if isinstance(value, str):
            parts.append(value)
    return " ".join(parts).lower()


def _error_code(error: BaseException) -> str:
    orig = _driver_error(error)
    for attr in ("pgcode", "sqlstate"):
        value = getattr(orig, attr, None)
        if isinstance(value, str) and value:
            return value
    # PostgREST-style errors carry the code directly; SQLAlchemy's own `.code` is not a SQLSTATE
    if not isinstance(orig, DBAPIError):
        value = getattr(orig, "code", None)
        if isinstance(value, str):
            return value
    return ""


class PostgresSchemaProbe:
    """SQLSTATE / PostgREST codes, with a message-text fallback."""

    def is_table_missing(self, error: BaseException, table: str) -> bool:
        needle = str(table or "").strip().lower()
        if not needle:
            return False
        if _error_code(error) in (POSTGRES_UNDEFINED_TABLE, POSTGREST_MISSING_TABLE):
            return True
        text = _error_text(error)
        return needle in text and any(word in text for word in ("does not exist", "relation", "table"))

    def is_column_missing(self, error: BaseException, column: str) -> bool:
        needle = str(column or "").strip().lower()
        if not needle:
            return False
        if _error_code(error) in (POSTGRES_UNDEFINED_COLUMN, POSTGREST_MISSING_COLUMN):
            return True
        text = _error_text(error)
        return needle in text and "column" in text

    def is_conflict_target_missing(self, error: BaseException) -> bool:
        return (
            _error_code(error) == POSTGRES_INVALID_CONFLICT_TARGET
            or ON_CONFLICT_MISMATCH in _error_text(error)
        )


class SqliteSchemaProbe:
    """sqlite3 reports schema problems only through the message text."""

    def is_table_missing(self, error: BaseException, table: str) -> bool:
        needle = str(table or "").strip().lower()
        text = _error_text(error)
        return bool(needle) and "no such table" in text and needle in text

    def is_column_missing(self, error: BaseException, column: str) -> bool:
        needle = str(column or "").strip().lower()
        text = _error_text(error)
        if not needle or needle not in text:
            return False
        return "no such column" in text or "has no column named" in text

    def is_conflict_target_missing(self, error: BaseException) -> bool:
        text = _error_text(error)
        return ON_CONFLICT_MISMATCH in text or "does not match any primary key or unique constraint" in text


def is_schema_error(
    probe: SchemaProbe,
    error: BaseException,
    table: str,
    columns: Iterable[str] = (),
    check_conflict_target: bool = False,
) -> bool:
    """
    True if `error` means `table` (or one of `columns`) is not there.

    Args:
        probe: Dialect-specific probe.
        error: Exception raised by the failed statement.
        table: Table the statement targeted.
        columns: Columns the statement relied on.
        check_conflict_target: Also treat a missing ON CONFLICT constraint as schema-missing.
    """
    if check_conflict_target and probe.is_conflict_target_missing(error):
        return True
    if probe.is_table_missing(error, table):
        return True
    return any(probe.is_column_missing(error, column) for column in columns)


def probe_for(engine: Optional[Engine]) -> SchemaProbe:
    """Pick the probe matching the engine's dialect (Postgres by default)."""
    dialect = getattr(getattr(engine, "dialect", None), "name", "postgresql")
    if dialect == "sqlite":
        return SqliteSchemaProbe()
    return PostgresSchemaProbe()
