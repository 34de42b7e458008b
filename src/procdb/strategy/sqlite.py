"""
SQLite-specific strategy implementation.

SQLite has no stored procedures, so only text commands run here. It is the
embedded target used for local work and the integration suite:
- Explicit `BEGIN` for transactions (the connection otherwise stays in autocommit)
- `interrupt()` for cancellation, a progress-handler deadline for timeouts
- INTEGER PRIMARY KEY columns reported as identity columns
"""
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa

from procdb.cache import cacheable_strategy
from procdb.exceptions import NotSupportedError
from procdb.parameters import CommandDescriptor, Parameter
from procdb.strategy.base import BoundCommand, DatabaseStrategy
from procdb.strategy.base import register_strategy, split_table_name
from procdb.types import DbType, convert_date, convert_datetime

if TYPE_CHECKING:
    from procdb.connection import ConnectionWrapper
    from procdb.options import DatabaseOptions

logger = logging.getLogger(__name__)

# VM instructions between deadline checks
PROGRESS_STEPS = 1000

_TYPE_NAMES = {
    DbType.INTEGER: 'INTEGER',
    DbType.BIGINT: 'INTEGER',
    DbType.SMALLINT: 'INTEGER',
    DbType.BOOLEAN: 'INTEGER',
    DbType.STRING: 'TEXT',
    DbType.ANSI_STRING: 'TEXT',
    DbType.DECIMAL: 'NUMERIC',
    DbType.FLOAT: 'REAL',
    DbType.BINARY: 'BLOB',
    DbType.DATE: 'date',
    DbType.TIME: 'TEXT',
    DbType.DATETIME: 'datetime',
    DbType.DATETIMEOFFSET: 'datetime',
    DbType.GUID: 'TEXT',
}


@register_strategy('sqlite')
class SQLiteStrategy(DatabaseStrategy):
    """SQLite-specific operations.
    """

    @property
    def dialect_name(self) -> str:
        """Return the dialect identifier for SQLite."""
        return 'sqlite'

    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL for SQLite."""
        return sa.URL.create(drivername='sqlite', database=options.database)

    def get_engine_kwargs(self, options: 'DatabaseOptions') -> dict[str, Any]:
        """Return SQLAlchemy create_engine kwargs for SQLite."""
        connect_args: dict[str, Any] = {
            'detect_types': sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES
        }
        if options.timeout:
            connect_args['timeout'] = options.timeout
        return {'connect_args': connect_args}

    @classmethod
    def get_required_options(cls) -> list[str]:
        """Return required options for SQLite connections."""
        return ['database']

    def configure_connection(self, raw_conn: Any) -> None:
        """Configure connection settings for SQLite.

        Converters are registered process-wide by the sqlite3 module; the
        connection only needs foreign keys and autocommit.
        """
        sqlite3.register_converter('date', convert_date)
        sqlite3.register_converter('datetime', convert_datetime)
        raw_conn.execute('PRAGMA foreign_keys = ON')
        self.enable_autocommit(raw_conn)

    def enable_autocommit(self, raw_conn: Any) -> None:
        """Enable auto-commit mode for SQLite.
        """
        raw_conn.isolation_level = None

    def disable_autocommit(self, raw_conn: Any) -> None:
        """Disable auto-commit mode for SQLite.
        """
        raw_conn.isolation_level = 'DEFERRED'

    def transaction_mode(self, raw_conn: Any) -> Any:
        return raw_conn.isolation_level

    def restore_mode(self, raw_conn: Any, mode: Any) -> None:
        raw_conn.isolation_level = mode

    def in_transaction(self, raw_conn: Any) -> bool:
        return raw_conn.in_transaction

    def begin(self, raw_conn: Any) -> None:
        """Open the transaction explicitly so reads and DDL join it as well."""
        self.enable_autocommit(raw_conn)
        raw_conn.execute('BEGIN')

    def cancel(self, raw_conn: Any, dbapi_cursor: Any) -> None:
        """Abort the running statement; safe to call from another thread."""
        raw_conn.interrupt()

    @contextmanager
    def statement_timeout(self, raw_conn: Any, dbapi_cursor: Any,
                          seconds: int | None) -> Iterator[None]:
        """Interrupt statements that outlive the deadline.
        """
        if not seconds:
            yield
            return
        deadline = time.monotonic() + seconds
        raw_conn.set_progress_handler(lambda: int(time.monotonic() > deadline), PROGRESS_STEPS)
        try:
            yield
        finally:
            raw_conn.set_progress_handler(None, 0)

    def type_name(self, param: Parameter) -> str:
        return _TYPE_NAMES[param.db_type]

    def bind_procedure(self, command: CommandDescriptor) -> BoundCommand:
        raise NotSupportedError(
            f'SQLite has no stored procedures; run {command.procedure_name!r} '
            'as a CommandType.TEXT command')

    @cacheable_strategy('table_columns', ttl=300, maxsize=50)
    def get_columns(self, cn: 'ConnectionWrapper', table: str,
                    bypass_cache: bool = False) -> list[str]:
        """Get all columns for a table.
        """
        schema, name = split_table_name(table)
        sql = 'select name from pragma_table_info(?, ?) order by cid'
        return self._select_column_raw(cn, sql, (name, schema or 'main'))

    @cacheable_strategy('identity_columns', ttl=300, maxsize=50)
    def get_identity_columns(self, cn: 'ConnectionWrapper', table: str,
                             bypass_cache: bool = False) -> list[str]:
        """A lone INTEGER PRIMARY KEY aliases the rowid and is generated on insert.
        """
        schema, name = split_table_name(table)
        sql = 'select name, type from pragma_table_info(?, ?) where pk > 0'
        with self._cursor(cn, sql, (name, schema or 'main')) as cursor:
            keys = cursor.fetchall()
        if len(keys) == 1 and str(keys[0][1]).upper() == 'INTEGER':
            return [keys[0][0]]
        return []
