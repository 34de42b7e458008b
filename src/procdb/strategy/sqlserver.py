"""
SQL Server-specific strategy implementation.

Stored procedures are called through a T-SQL batch:

    SET NOCOUNT ON;
    DECLARE @__rv INT;
    DECLARE @__p2 BIT;
    EXEC @__rv = [dbo].[set_flag] @id = ?, @active = @__p2 OUTPUT;
    SELECT 1 AS [__procdb_outputs__], @__rv AS [RETURN_VALUE], @__p2 AS [active];

The trailing marker result set carries the output values once every result
set produced by the procedure has been read. The driver is pyodbc; it is
loaded by SQLAlchemy and never imported here.
"""
import datetime
import logging
import struct
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa

from procdb.cache import cacheable_strategy
from procdb.parameters import CommandDescriptor, Parameter
from procdb.strategy.base import OUTPUT_MARKER, BoundCommand, DatabaseStrategy
from procdb.strategy.base import register_strategy, split_table_name
from procdb.types import DbType, ParameterDirection, TypeConverter

if TYPE_CHECKING:
    from procdb.connection import ConnectionWrapper
    from procdb.options import DatabaseOptions

logger = logging.getLogger(__name__)

_TYPE_NAMES = {
    DbType.INTEGER: 'INT',
    DbType.BIGINT: 'BIGINT',
    DbType.SMALLINT: 'SMALLINT',
    DbType.BOOLEAN: 'BIT',
    DbType.FLOAT: 'FLOAT',
    DbType.DATE: 'DATE',
    DbType.TIME: 'TIME(7)',
    DbType.DATETIME: 'DATETIME2(7)',
    DbType.DATETIMEOFFSET: 'DATETIMEOFFSET(7)',
    DbType.GUID: 'UNIQUEIDENTIFIER',
}

_SIZED_TYPE_NAMES = {
    DbType.STRING: 'NVARCHAR',
    DbType.ANSI_STRING: 'VARCHAR',
    DbType.BINARY: 'VARBINARY',
}

RETURN_VARIABLE = '@__rv'

SQL_SS_TIMESTAMPOFFSET = -155


def decode_datetimeoffset(value: bytes) -> datetime.datetime:
    """Decode the ODBC `SQL_SS_TIMESTAMPOFFSET_STRUCT` pyodbc hands back as bytes."""
    year, month, day, hour, minute, second, nanos, tz_hour, tz_minute = struct.unpack('<6hI2h', value)
    tz = datetime.timezone(datetime.timedelta(hours=tz_hour, minutes=tz_minute))
    return datetime.datetime(year, month, day, hour, minute, second, nanos // 1000, tzinfo=tz)


def bind_value(param: Parameter) -> Any:
    """Driver value for an IN or INOUT parameter.

    pyodbc drops `tzinfo`, so offsets travel as ISO 8601 text that SQL Server
    converts on assignment.
    """
    value = TypeConverter.convert_value(param.value)
    if param.db_type is DbType.DATETIMEOFFSET and isinstance(value, datetime.datetime):
        return value.isoformat()
    return value


@register_strategy('mssql')
class SQLServerStrategy(DatabaseStrategy):
    """SQL Server-specific operations"""

    @property
    def dialect_name(self) -> str:
        return 'mssql'

    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL for SQL Server over ODBC."""
        if options.odbc_connect:
            return sa.URL.create('mssql+pyodbc', query={'odbc_connect': options.odbc_connect})

        query = {'driver': options.odbc_driver}
        if options.trust_server_certificate:
            query['TrustServerCertificate'] = 'yes'
        if options.appname:
            query['APP'] = options.appname

        return sa.URL.create(
            drivername='mssql+pyodbc',
            username=options.username,
            password=options.password,
            host=options.hostname,
            port=options.port or None,
            database=options.database,
            query=query,
        )

    def get_engine_kwargs(self, options: 'DatabaseOptions') -> dict[str, Any]:
        if options.timeout:
            return {'connect_args': {'timeout': options.timeout}}
        return {}

    @classmethod
    def get_required_options(cls) -> list[str]:
        return ['hostname', 'username', 'password', 'database']

    def configure_connection(self, raw_conn: Any) -> None:
        """Configure connection settings for SQL Server"""
        raw_conn.add_output_converter(SQL_SS_TIMESTAMPOFFSET, decode_datetimeoffset)
        self.enable_autocommit(raw_conn)

    def begin(self, raw_conn: Any) -> None:
        """Adopted connections never went through `configure_connection`."""
        raw_conn.add_output_converter(SQL_SS_TIMESTAMPOFFSET, decode_datetimeoffset)
        self.disable_autocommit(raw_conn)

    def enable_autocommit(self, raw_conn: Any) -> None:
        raw_conn.autocommit = True

    def disable_autocommit(self, raw_conn: Any) -> None:
        raw_conn.autocommit = False

    def in_transaction(self, raw_conn: Any) -> bool:
        """Manual-commit connections only hold a transaction once `@@TRANCOUNT` says so."""
        if raw_conn.autocommit:
            return False
        cursor = raw_conn.cursor()
        try:
            cursor.execute('SELECT @@TRANCOUNT')
            return bool(cursor.fetchone()[0])
        finally:
            cursor.close()

    def cancel(self, raw_conn: Any, dbapi_cursor: Any) -> None:
        """Send an attention signal for the statement running on the cursor."""
        dbapi_cursor.cancel()

    @contextmanager
    def statement_timeout(self, raw_conn: Any, dbapi_cursor: Any,
                          seconds: int | None) -> Iterator[None]:
        """pyodbc applies `Connection.timeout` to every statement it sends.
        """
        if not seconds:
            yield
            return
        previous = raw_conn.timeout
        raw_conn.timeout = int(seconds)
        try:
            yield
        finally:
            raw_conn.timeout = previous

    def _quote_part(self, part: str) -> str:
        part = part.strip('[]')
        return f"[{part.replace(']', ']]')}]"

    def type_name(self, param: Parameter) -> str:
        """Native type name for a parameter.

        Strings and binaries without a size map to `(MAX)`, decimals without
        precision to `DECIMAL(38, 10)`.
        """
        if param.db_type in _SIZED_TYPE_NAMES:
            size = param.size if param.size else 'MAX'
            return f'{_SIZED_TYPE_NAMES[param.db_type]}({size})'
        if param.db_type is DbType.DECIMAL:
            precision = param.precision or 38
            scale = param.scale if param.scale is not None else 10
            return f'DECIMAL({precision}, {scale})'
        return _TYPE_NAMES[param.db_type]

    def bind_procedure(self, command: CommandDescriptor) -> BoundCommand:
        """Render an `EXEC` batch binding every parameter by name.

        IN values travel as `?` markers. OUT and INOUT parameters are bound to
        declared variables passed with `OUTPUT`; an INOUT variable is
        initialised from a marker. The values are selected back in a trailing
        marker result set.
        """
        declarations: list[str] = []
        declare_params: list[Any] = []
        arguments: list[str] = []
        call_params: list[Any] = []
        selected: list[str] = []
        outputs: list[tuple[Parameter, str]] = []

        return_param = command.return_parameter
        if return_param is not None:
            declarations.append(f'DECLARE {RETURN_VARIABLE} {self.type_name(return_param)};')
            selected.append(f'{RETURN_VARIABLE} AS {self._quote_part(return_param.bind_name)}')
            outputs.append((return_param, return_param.bind_name))

        for position, param in enumerate(command.argument_parameters, 1):
            variable = f'@__p{position}'
            match param.direction:
                case ParameterDirection.IN:
                    arguments.append(f'@{param.bind_name} = ?')
                    call_params.append(bind_value(param))
                case ParameterDirection.OUT:
                    declarations.append(f'DECLARE {variable} {self.type_name(param)};')
                    arguments.append(f'@{param.bind_name} = {variable} OUTPUT')
                case ParameterDirection.INOUT:
                    declarations.append(f'DECLARE {variable} {self.type_name(param)} = ?;')
                    declare_params.append(bind_value(param))
                    arguments.append(f'@{param.bind_name} = {variable} OUTPUT')
            if param.direction.is_output:
                selected.append(f'{variable} AS {self._quote_part(param.bind_name)}')
                outputs.append((param, param.bind_name))

        call = f'EXEC {RETURN_VARIABLE} = ' if return_param is not None else 'EXEC '
        call += self.quote_identifier(command.procedure_name)
        if arguments:
            call += ' ' + ', '.join(arguments)

        lines = ['SET NOCOUNT ON;', *declarations, call + ';']
        if outputs:
            lines.append(f'SELECT 1 AS {self._quote_part(OUTPUT_MARKER)}, {", ".join(selected)};')

        return BoundCommand(
            sql='\n'.join(lines),
            params=tuple(declare_params + call_params),
            outputs=tuple(outputs),
            output_position='trailing' if outputs else None,
        )

    @cacheable_strategy('table_columns', ttl=300, maxsize=50)
    def get_columns(self, cn: 'ConnectionWrapper', table: str,
                    bypass_cache: bool = False) -> list[str]:
        """Get all columns for a table ordered by position."""
        schema, name = split_table_name(table)
        sql = """
select c.name as column_name
from sys.columns c
join sys.tables t on c.object_id = t.object_id
join sys.schemas s on t.schema_id = s.schema_id
where t.name = ? and s.name = coalesce(?, schema_name())
order by c.column_id
"""
        return self._select_column_raw(cn, sql, (name, schema))

    @cacheable_strategy('identity_columns', ttl=300, maxsize=50)
    def get_identity_columns(self, cn: 'ConnectionWrapper', table: str,
                             bypass_cache: bool = False) -> list[str]:
        """Get identity columns"""
        schema, name = split_table_name(table)
        sql = """
select c.name as column_name
from sys.columns c
join sys.tables t on c.object_id = t.object_id
join sys.schemas s on t.schema_id = s.schema_id
where t.name = ? and s.name = coalesce(?, schema_name()) and c.is_identity = 1
"""
        return self._select_column_raw(cn, sql, (name, schema))

    @contextmanager
    def identity_insert(self, cn: 'ConnectionWrapper', table: str) -> Iterator[None]:
        """Keep source identity values with `SET IDENTITY_INSERT`.
        """
        quoted_table = self.quote_identifier(table)
        self._execute_raw(cn, f'SET IDENTITY_INSERT {quoted_table} ON')
        try:
            yield
        finally:
            try:
                self._execute_raw(cn, f'SET IDENTITY_INSERT {quoted_table} OFF')
            except Exception as exc:
                logger.warning(f'Could not switch IDENTITY_INSERT off for {table}: {exc}')

    def write_batch(self, dbapi_cursor: Any, table: str, columns: Sequence[str],
                    rows: Sequence[tuple]) -> int:
        """Send the batch as one parameter array with `fast_executemany`."""
        dbapi_cursor.fast_executemany = True
        dbapi_cursor.executemany(self.build_insert_sql(table, columns), rows)
        return len(rows)
