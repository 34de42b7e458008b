"""
PostgreSQL-specific strategy implementation.

Procedures are invoked with `CALL` using named notation. PostgreSQL returns
OUT and INOUT arguments of a procedure as a single row, so the output values
are the first result set of the call. A RETURN_VALUE descriptor turns the
call into `SELECT fn(...)` on a function instead.

Bulk loads stream through `COPY ... FROM STDIN`.
"""
import logging
import re
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from psycopg.pq import TransactionStatus

from procdb.cache import cacheable_strategy
from procdb.exceptions import BindingError
from procdb.parameters import CommandDescriptor, Parameter
from procdb.strategy.base import BoundCommand, DatabaseStrategy
from procdb.strategy.base import register_strategy
from procdb.types import DbType, ParameterDirection, TypeConverter

if TYPE_CHECKING:
    from procdb.connection import ConnectionWrapper
    from procdb.options import DatabaseOptions

logger = logging.getLogger(__name__)

_PLAIN_IDENTIFIER = re.compile(r'[A-Za-z_][A-Za-z0-9_$]*')

_TYPE_NAMES = {
    DbType.INTEGER: 'integer',
    DbType.BIGINT: 'bigint',
    DbType.SMALLINT: 'smallint',
    DbType.BOOLEAN: 'boolean',
    DbType.FLOAT: 'double precision',
    DbType.BINARY: 'bytea',
    DbType.DATE: 'date',
    DbType.TIME: 'time',
    DbType.DATETIME: 'timestamp',
    DbType.DATETIMEOFFSET: 'timestamptz',
    DbType.GUID: 'uuid',
}


def fold_identifier(name: str) -> str:
    """Quote a caller-supplied name the way PostgreSQL resolves it unquoted.

    Plain identifiers fold to lower case; quoted names and anything else keep
    their spelling.
    """
    if len(name) > 1 and name.startswith('"') and name.endswith('"'):
        name = name[1:-1]
    elif _PLAIN_IDENTIFIER.fullmatch(name):
        name = name.lower()
    return '"' + name.replace('"', '""') + '"'


@register_strategy('postgresql')
class PostgresStrategy(DatabaseStrategy):
    """PostgreSQL-specific operations.
    """

    placeholder = '%s'

    @property
    def dialect_name(self) -> str:
        """Return the dialect identifier for PostgreSQL."""
        return 'postgresql'

    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL for PostgreSQL."""
        query = {}
        if options.timeout:
            query['connect_timeout'] = str(options.timeout)
        if options.appname:
            query['application_name'] = options.appname

        return sa.URL.create(
            drivername='postgresql+psycopg',
            username=options.username,
            password=options.password,
            host=options.hostname,
            port=options.port or None,
            database=options.database,
            query=query,
        )

    @classmethod
    def get_required_options(cls) -> list[str]:
        """Return required options for PostgreSQL connections."""
        return ['hostname', 'username', 'password', 'database']

    def configure_connection(self, raw_conn: Any) -> None:
        """Configure connection settings for PostgreSQL.
        """
        self.enable_autocommit(raw_conn)

    def enable_autocommit(self, raw_conn: Any) -> None:
        """Enable auto-commit mode for PostgreSQL.
        """
        raw_conn.autocommit = True

    def disable_autocommit(self, raw_conn: Any) -> None:
        """Disable auto-commit mode for PostgreSQL.
        """
        raw_conn.autocommit = False

    def in_transaction(self, raw_conn: Any) -> bool:
        """psycopg refuses to change autocommit unless the session is idle."""
        return raw_conn.info.transaction_status != TransactionStatus.IDLE

    def cancel(self, raw_conn: Any, dbapi_cursor: Any) -> None:
        """Ask the server to cancel the running query."""
        raw_conn.cancel()

    @contextmanager
    def statement_timeout(self, raw_conn: Any, dbapi_cursor: Any,
                          seconds: int | None) -> Iterator[None]:
        """Set `statement_timeout` local to the open transaction.

        The setting ends with the transaction, so nothing is restored.
        """
        if seconds:
            dbapi_cursor.execute("select set_config('statement_timeout', %s, true)",
                                 (str(int(seconds * 1000)),))
        yield

    def type_name(self, param: Parameter) -> str:
        if param.db_type in {DbType.STRING, DbType.ANSI_STRING}:
            return f'varchar({param.size})' if param.size else 'text'
        if param.db_type is DbType.DECIMAL:
            if param.precision:
                return f'numeric({param.precision}, {param.scale or 0})'
            return 'numeric'
        return _TYPE_NAMES[param.db_type]

    def bind_procedure(self, command: CommandDescriptor) -> BoundCommand:
        """Render a `CALL` (or `SELECT` for functions) with named arguments.

        Every argument carries an explicit cast so overloaded routines
        resolve. OUT arguments are passed as typed NULLs.
        """
        return_param = command.return_parameter
        output_args = [p for p in command.argument_parameters if p.is_output]
        if return_param is not None and output_args:
            raise BindingError('PostgreSQL functions return OUT arguments as their result; '
                               'use either a RETURN_VALUE or OUT parameters, not both')

        arguments: list[str] = []
        params: list[Any] = []
        for param in command.argument_parameters:
            name = fold_identifier(param.bind_name)
            cast = self.type_name(param)
            match param.direction:
                case ParameterDirection.IN | ParameterDirection.INOUT:
                    arguments.append(f'{name} => %s::{cast}')
                    params.append(TypeConverter.convert_value(param.value))
                case ParameterDirection.OUT:
                    arguments.append(f'{name} => NULL::{cast}')

        routine = '.'.join(fold_identifier(part) for part in command.procedure_name.split('.'))
        call = f'{routine}({", ".join(arguments)})'

        if return_param is not None:
            label = return_param.bind_name
            return BoundCommand(
                sql=f'SELECT {call} AS {self._quote_part(label)}',
                params=tuple(params),
                outputs=((return_param, label),),
                output_position='leading',
            )

        return BoundCommand(
            sql=f'CALL {call}',
            params=tuple(params),
            outputs=tuple((p, p.bind_name) for p in output_args),
            output_position='leading' if output_args else None,
        )

    def quote_table(self, table: str) -> str:
        return '.'.join(fold_identifier(part) for part in table.split('.'))

    def _table_parts(self, table: str) -> tuple[str | None, str]:
        """Catalog spelling of `schema.table` after identifier folding."""
        parts = [fold_identifier(part)[1:-1].replace('""', '"') for part in table.split('.')]
        if len(parts) == 1:
            return None, parts[0]
        return parts[-2], parts[-1]

    @cacheable_strategy('table_columns', ttl=300, maxsize=50)
    def get_columns(self, cn: 'ConnectionWrapper', table: str,
                    bypass_cache: bool = False) -> list[str]:
        """Get all columns for a table.
        """
        schema, name = self._table_parts(table)
        sql = """
select column_name
from information_schema.columns
where table_name = %s and table_schema = coalesce(%s, current_schema())
order by ordinal_position
"""
        return self._select_column_raw(cn, sql, (name, schema))

    @cacheable_strategy('identity_columns', ttl=300, maxsize=50)
    def get_identity_columns(self, cn: 'ConnectionWrapper', table: str,
                             bypass_cache: bool = False) -> list[str]:
        """Get identity columns and columns fed by a sequence.
        """
        schema, name = self._table_parts(table)
        sql = """
select column_name
from information_schema.columns
where table_name = %s and table_schema = coalesce(%s, current_schema())
and (is_identity = 'YES' or column_default like 'nextval(%%')
order by ordinal_position
"""
        return self._select_column_raw(cn, sql, (name, schema))

    def after_identity_load(self, cn: 'ConnectionWrapper', table: str,
                            identity_columns: list[str]) -> None:
        """Move each sequence past the highest loaded value.
        """
        quoted_table = self.quote_table(table)
        for column in identity_columns:
            quoted_column = self._quote_part(column)
            sql = f"""
select setval(pg_get_serial_sequence(%s, %s), coalesce(max({quoted_column}), 0) + 1, false)
from {quoted_table}
"""
            self._select_column_raw(cn, sql, (quoted_table, column))
            logger.debug(f'Reset sequence for {table=} using {column=}')

    def build_insert_sql(self, table: str, columns: Sequence[str]) -> str:
        quoted_cols = ', '.join(self._quote_part(col) for col in columns)
        placeholders = ', '.join([self.placeholder] * len(columns))
        return f'INSERT INTO {self.quote_table(table)} ({quoted_cols}) VALUES ({placeholders})'

    def write_batch(self, dbapi_cursor: Any, table: str, columns: Sequence[str],
                    rows: Sequence[tuple]) -> int:
        """Stream the batch through `COPY ... FROM STDIN`.
        """
        quoted_cols = ', '.join(self._quote_part(col) for col in columns)
        sql = f'COPY {self.quote_table(table)} ({quoted_cols}) FROM STDIN'
        with dbapi_cursor.copy(sql) as copy:
            for row in rows:
                copy.write_row(row)
        return len(rows)
