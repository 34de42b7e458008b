"""
Connection introspection helpers.
"""
from typing import Any


def get_dialect_name(obj: Any) -> str:
    """Get dialect name for a database connection or engine.

    Args:
        obj: ConnectionWrapper, Transaction, SQLAlchemy connection or engine,
            pool proxy, or raw DBAPI connection

    Returns
        str: Dialect name ('mssql', 'postgresql' or 'sqlite')

    Raises
        AttributeError: If dialect cannot be determined
    """
    if hasattr(obj, 'dialect'):
        dialect = obj.dialect
        if isinstance(dialect, str):
            return dialect.lower()
        return str(dialect.name).lower()

    if hasattr(obj, 'engine') and hasattr(obj.engine, 'dialect'):
        return str(obj.engine.dialect.name).lower()

    # SQLAlchemy pool wrapper (_ConnectionFairy)
    if hasattr(obj, 'dbapi_connection'):
        return get_dialect_name(obj.dbapi_connection)

    type_name = f'{type(obj).__module__}.{type(obj).__name__}'
    if 'psycopg' in type_name:
        return 'postgresql'
    if 'sqlite3' in type_name:
        return 'sqlite'
    if 'pyodbc' in type_name:
        return 'mssql'

    raise AttributeError(f'Cannot determine dialect for {type(obj)}')


def get_driver_connection(obj: Any) -> Any:
    """Unwrap to the driver's own connection object."""
    raw_conn = obj
    if hasattr(raw_conn, 'dbapi_connection'):
        raw_conn = raw_conn.dbapi_connection
    if hasattr(raw_conn, 'driver_connection'):
        raw_conn = raw_conn.driver_connection
    return raw_conn
