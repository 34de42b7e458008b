"""
Transactional stored-procedure and bulk-insert access for SQL Server,
PostgreSQL and SQLite.

Every command runs in its own transaction: it commits completely or rolls
back completely, and OUT, INOUT and RETURN_VALUE descriptors are filled in
once the commit went through. Bulk copy is a separate, faster path with a
weaker per-batch guarantee.

    import procdb
    from procdb import DbType, Parameter

    with procdb.create('postgresql+psycopg://app:secret@db/sales') as ctx:
        total = Parameter.output('total', DbType.DECIMAL)
        ctx.execute_non_query('order_total', Parameter.input('order_id', DbType.INTEGER, 7), total)
        print(total.value)
"""
__version__ = '0.1.0'

from procdb.bulk import bulk_copy
from procdb.cancel import CancellationToken
from procdb.command import execute_non_query, execute_scalar, execute_transaction
from procdb.command import execute_with_return_value, run_command
from procdb.connection import ConnectionWrapper, connect
from procdb.context import ContextState, DbContext, create
from procdb.cursor import LiveCommand
from procdb.exceptions import BindingError, ConnectionFailure, ContextBusyError
from procdb.exceptions import ContextDisposedError, ContextError, DatabaseError
from procdb.exceptions import DbConnectionError, IntegrityError
from procdb.exceptions import NotSupportedError, OperationalError
from procdb.exceptions import OperationCancelled, ProgrammingError
from procdb.exceptions import is_retryable_error
from procdb.options import DatabaseOptions
from procdb.parameters import CommandDescriptor, Parameter
from procdb.transaction import Transaction
from procdb.transaction import Transaction as transaction
from procdb.types import CommandType, DbType, ParameterDirection

__all__ = [
    'BindingError',
    'CancellationToken',
    'CommandDescriptor',
    'CommandType',
    'ConnectionFailure',
    'ConnectionWrapper',
    'ContextBusyError',
    'ContextDisposedError',
    'ContextError',
    'ContextState',
    'DatabaseError',
    'DatabaseOptions',
    'DbConnectionError',
    'DbContext',
    'DbType',
    'IntegrityError',
    'LiveCommand',
    'NotSupportedError',
    'OperationCancelled',
    'OperationalError',
    'Parameter',
    'ParameterDirection',
    'ProgrammingError',
    'Transaction',
    'bulk_copy',
    'connect',
    'create',
    'execute_non_query',
    'execute_scalar',
    'execute_transaction',
    'execute_with_return_value',
    'is_retryable_error',
    'run_command',
    'transaction',
]
