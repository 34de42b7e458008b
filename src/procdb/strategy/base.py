"""
Base strategy interface for dialect-specific behavior.

Defines the abstract base class that all database-specific strategy implementations
must inherit from. The strategy pattern keeps procedure-call rendering, output
parameter retrieval, transaction control, timeouts and the bulk-insert path
behind one interface, so the Command Runner and Bulk Loader never branch on
the dialect themselves.
"""
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa

from procdb.exceptions import NotSupportedError
from procdb.parameters import CommandDescriptor, Parameter
from procdb.types import CommandType, TypeConverter

if TYPE_CHECKING:
    from procdb.connection import ConnectionWrapper
    from procdb.options import DatabaseOptions

logger = logging.getLogger(__name__)

# Registry of dialect name -> strategy class
# Defined here to avoid circular imports (concrete strategies import from base)
_STRATEGY_REGISTRY: dict[str, type['DatabaseStrategy']] = {}

# First column of the result set carrying output parameter values
OUTPUT_MARKER = '__procdb_outputs__'


def register_strategy(dialect: str):
    """Decorator to register a strategy class for a dialect.

    Usage:
        @register_strategy('postgresql')
        class PostgresStrategy(DatabaseStrategy):
            ...
    """
    def decorator(cls: type['DatabaseStrategy']) -> type['DatabaseStrategy']:
        _STRATEGY_REGISTRY[dialect] = cls
        return cls
    return decorator


def split_table_name(table: str) -> tuple[str | None, str]:
    """Split `schema.table` into its parts, stripping quote characters."""
    parts = [part.strip('"[]`') for part in table.split('.')]
    if len(parts) == 1:
        return None, parts[0]
    return parts[-2], parts[-1]


@dataclass
class BoundCommand:
    """A command rendered for one dialect.

    `outputs` pairs each output descriptor with the result column holding its
    post-execution value. `output_position` says where that row appears:
    'leading' is the first result set, 'trailing' the marker result set after
    every result set the procedure produced.
    """

    sql: str
    params: tuple = ()
    outputs: tuple[tuple[Parameter, str], ...] = field(default_factory=tuple)
    output_position: str | None = None


class DatabaseStrategy(ABC):
    """Base class for database-specific operations.
    """

    placeholder = '?'

    @property
    @abstractmethod
    def dialect_name(self) -> str:
        """Dialect identifier used by the registry."""

    @abstractmethod
    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL from individual option fields."""

    def get_engine_kwargs(self, options: 'DatabaseOptions') -> dict[str, Any]:
        """Return SQLAlchemy create_engine kwargs for the dialect."""
        return {}

    @classmethod
    def get_required_options(cls) -> list[str]:
        """Return options that must be set when no URL is supplied."""
        return []

    @classmethod
    def validate_options(cls, options: 'DatabaseOptions') -> None:
        """Raise ValueError when a required option is missing."""
        missing = [name for name in cls.get_required_options()
                   if getattr(options, name, None) in {None, ''}]
        if missing:
            raise ValueError(f'Missing required options for {options.drivername}: {missing}')

    # Connection and transaction control

    @abstractmethod
    def configure_connection(self, raw_conn: Any) -> None:
        """Configure a freshly opened DBAPI connection."""

    @abstractmethod
    def enable_autocommit(self, raw_conn: Any) -> None:
        """Enable auto-commit mode on the DBAPI connection."""

    @abstractmethod
    def disable_autocommit(self, raw_conn: Any) -> None:
        """Disable auto-commit mode on the DBAPI connection."""

    def transaction_mode(self, raw_conn: Any) -> Any:
        """The connection's commit mode, as accepted by `restore_mode`."""
        return raw_conn.autocommit

    def restore_mode(self, raw_conn: Any, mode: Any) -> None:
        raw_conn.autocommit = mode

    def in_transaction(self, raw_conn: Any) -> bool:
        """True when the connection has a transaction open that nobody committed."""
        return not raw_conn.autocommit

    def begin(self, raw_conn: Any) -> None:
        """Start a transaction on the DBAPI connection."""
        self.disable_autocommit(raw_conn)

    def commit(self, raw_conn: Any) -> None:
        raw_conn.commit()

    def rollback(self, raw_conn: Any) -> None:
        raw_conn.rollback()

    @abstractmethod
    def cancel(self, raw_conn: Any, dbapi_cursor: Any) -> None:
        """Abort the statement currently running on the connection."""

    @contextmanager
    def statement_timeout(self, raw_conn: Any, dbapi_cursor: Any,
                          seconds: int | None) -> Iterator[None]:
        """Apply a statement timeout for the duration of the block.

        Called with a transaction open on `raw_conn`. A falsy `seconds` leaves
        the driver default in place.
        """
        yield

    # Identifiers and types

    def quote_identifier(self, identifier: str) -> str:
        """Quote an identifier, handling `schema.name` forms."""
        return '.'.join(self._quote_part(part) for part in identifier.split('.'))

    def _quote_part(self, part: str) -> str:
        part = part.strip('"')
        return '"' + part.replace('"', '""') + '"'

    @abstractmethod
    def type_name(self, param: Parameter) -> str:
        """Native type name for a parameter's DbType, size and precision."""

    # Command rendering

    def bind_command(self, command: CommandDescriptor) -> BoundCommand:
        """Render a command descriptor into SQL text plus driver parameters.
        """
        match command.command_type:
            case CommandType.STORED_PROCEDURE:
                return self.bind_procedure(command)
            case CommandType.TEXT:
                return self.bind_text(command)
        raise NotSupportedError(f'Unknown command type: {command.command_type}')

    def bind_text(self, command: CommandDescriptor) -> BoundCommand:
        """Text commands pass IN values positionally in declaration order."""
        params = tuple(TypeConverter.convert_value(p.value) for p in command.parameters)
        return BoundCommand(command.procedure_name, params)

    @abstractmethod
    def bind_procedure(self, command: CommandDescriptor) -> BoundCommand:
        """Render a stored-procedure call with every parameter bound."""

    # Metadata

    @contextmanager
    def _cursor(self, cn: 'ConnectionWrapper', sql: str, params: tuple | None = None):
        """Context manager for cursor lifecycle.

        Handles cursor creation, SQL execution, and cleanup.
        """
        cursor = cn.dbapi_connection.cursor()
        try:
            cursor.execute(sql, params or ())
            yield cursor
        finally:
            cursor.close()

    def _execute_raw(self, cn: 'ConnectionWrapper', sql: str,
                     params: tuple | None = None) -> int:
        """Execute SQL and return rowcount."""
        with self._cursor(cn, sql, params) as cursor:
            return cursor.rowcount

    def _select_column_raw(self, cn: 'ConnectionWrapper', sql: str,
                           params: tuple | None = None) -> list:
        """Execute SQL and return first column as list."""
        with self._cursor(cn, sql, params) as cursor:
            return [row[0] for row in cursor.fetchall()]

    @abstractmethod
    def get_columns(self, cn: 'ConnectionWrapper', table: str,
                    bypass_cache: bool = False) -> list[str]:
        """Get all columns for a table ordered by position.

        Args:
            cn: Database connection object
            table: Table name, optionally schema-qualified
            bypass_cache: If True, bypass cache and query database directly

        Returns
            list: List of column names for the specified table
        """

    @abstractmethod
    def get_identity_columns(self, cn: 'ConnectionWrapper', table: str,
                             bypass_cache: bool = False) -> list[str]:
        """Get columns whose values the database generates on insert.

        Args:
            cn: Database connection object
            table: Table name, optionally schema-qualified
            bypass_cache: If True, bypass cache and query database directly

        Returns
            list: Identity/sequence column names
        """

    # Bulk copy

    @contextmanager
    def identity_insert(self, cn: 'ConnectionWrapper', table: str) -> Iterator[None]:
        """Allow explicit values in the table's identity column inside the block.
        """
        yield

    def after_identity_load(self, cn: 'ConnectionWrapper', table: str,
                            identity_columns: list[str]) -> None:
        """Hook run after explicit identity values were loaded."""

    def build_insert_sql(self, table: str, columns: Sequence[str]) -> str:
        quoted_table = self.quote_identifier(table)
        quoted_cols = ', '.join(self._quote_part(col) for col in columns)
        placeholders = ', '.join([self.placeholder] * len(columns))
        return f'INSERT INTO {quoted_table} ({quoted_cols}) VALUES ({placeholders})'

    def write_batch(self, dbapi_cursor: Any, table: str, columns: Sequence[str],
                    rows: Sequence[tuple]) -> int:
        """Write one batch of rows and return the number written.
        """
        dbapi_cursor.executemany(self.build_insert_sql(table, columns), rows)
        return len(rows)
