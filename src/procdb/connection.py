"""
Database connection handling with SQLAlchemy.

This module provides:
1. The `connect()` function for opening a wrapped connection
2. The `ConnectionWrapper` class that tracks calls and owns (or borrows) a
   SQLAlchemy connection
3. Engine creation and a thread-safe engine registry

SQLAlchemy is used for URLs, engines and pooling only. Transactions are driven
on the DBAPI connection through the dialect strategy.
"""
import atexit
import logging
import threading
from collections.abc import Callable
from typing import Any, Self

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool

from procdb.exceptions import ConnectionFailure
from procdb.options import DatabaseOptions
from procdb.strategy import get_db_strategy, get_strategy
from procdb.utils import get_dialect_name, get_driver_connection

__all__ = [
    'ConnectionWrapper',
    'connect',
    'open_connection',
    'create_url_from_options',
    'create_engine_for_options',
    'get_engine_for_options',
    'dispose_all_engines',
]

logger = logging.getLogger(__name__)

_engine_registry: dict[str, Engine] = {}
_engine_registry_lock = threading.RLock()


def create_url_from_options(options: DatabaseOptions) -> sa.URL:
    """Convert DatabaseOptions to SQLAlchemy URL.
    """
    if options.url:
        return sa.engine.make_url(options.url)
    return get_strategy(options.drivername).build_connection_url(options)


def create_engine_for_options(options: DatabaseOptions,
                              engine_factory: Callable[..., Engine] = sa.create_engine,
                              **kwargs: Any) -> Engine:
    """Create a new SQLAlchemy engine for the given options.
    """
    url = create_url_from_options(options)
    engine_kwargs: dict[str, Any] = {'echo': False}
    engine_kwargs.update(get_strategy(options.drivername).get_engine_kwargs(options))

    if not options.use_pool:
        engine_kwargs['poolclass'] = NullPool
    else:
        engine_kwargs['pool_size'] = options.pool_max_connections
        engine_kwargs['pool_recycle'] = options.pool_max_idle_time
        engine_kwargs['pool_timeout'] = options.pool_wait_timeout
        engine_kwargs['max_overflow'] = 10
        engine_kwargs['pool_pre_ping'] = True
        engine_kwargs['pool_reset_on_return'] = 'rollback'

    engine_kwargs.update(kwargs)
    engine = engine_factory(url, **engine_kwargs)
    logger.debug(f'Created new engine for {options.drivername}')
    return engine


def get_engine_for_options(options: DatabaseOptions, **kwargs: Any) -> Engine:
    """Get or create a shared SQLAlchemy engine for the given options.
    """
    url = create_url_from_options(options)
    key = (f'{url.render_as_string(hide_password=False)}_{options.use_pool}_'
           f'{options.pool_max_connections}_{options.pool_max_idle_time}_{options.pool_wait_timeout}')

    with _engine_registry_lock:
        if key in _engine_registry:
            logger.debug(f'Using existing engine for {options.drivername}')
            return _engine_registry[key]
        engine = create_engine_for_options(options, **kwargs)
        _engine_registry[key] = engine
        return engine


def dispose_all_engines() -> None:
    """Dispose all engines in the registry.
    """
    with _engine_registry_lock:
        for engine in list(_engine_registry.values()):
            engine.dispose()
        _engine_registry.clear()
        logger.debug('All database engines disposed')


atexit.register(dispose_all_engines)


class ConnectionWrapper:
    """Wraps a SQLAlchemy connection object to track calls and execution time

    - Tracks statement counts and timing
    - Exposes the pool proxy (`dbapi_connection`) and the driver's own
      connection (`driver_connection`)
    - Supports the context manager protocol
    - Closes the connection only when it owns it; a borrowed connection
      belongs to whoever opened it
    """

    def __init__(self, sa_connection: sa.engine.Connection,
                 options: DatabaseOptions | None = None,
                 owned: bool = True) -> None:
        self.sa_connection = sa_connection
        self.engine = sa_connection.engine
        self.options = options
        self.owned = owned
        self.dbapi_connection = sa_connection.connection
        self._dialect = get_dialect_name(sa_connection)
        self.calls = 0
        self.time = 0.0
        self.in_transaction = False

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        self.close()

    def __repr__(self) -> str:
        state = 'closed' if self.closed else 'open'
        return f'<ConnectionWrapper {self.dialect} {state} owned={self.owned}>'

    @property
    def dialect(self) -> str:
        """Return the dialect name ('mssql', 'postgresql' or 'sqlite')."""
        return self._dialect

    @property
    def driver_connection(self) -> Any:
        """The driver's connection (pyodbc, psycopg or sqlite3)."""
        return get_driver_connection(self.dbapi_connection)

    @property
    def closed(self) -> bool:
        return self.sa_connection.closed

    def cursor(self) -> Any:
        """Open a DBAPI cursor on the connection."""
        if self.closed:
            raise ConnectionFailure('Connection is closed')
        return self.dbapi_connection.cursor()

    def addcall(self, elapsed: float) -> None:
        """Track execution statistics
        """
        self.time += elapsed
        self.calls += 1

    def close(self) -> None:
        """Return the connection to its pool, if this wrapper owns it.
        """
        if not self.owned or self.closed:
            return
        self.sa_connection.close()
        logger.debug(f'Connection closed: {self.calls} queries in {self.time:.2f}s '
                     f'(avg: {self.time/max(1, self.calls):.3f}s per query)')


def configure_connection(sa_connection: sa.engine.Connection) -> None:
    """Apply dialect settings to a freshly checked-out connection.
    """
    strategy = get_db_strategy(sa_connection)
    strategy.configure_connection(get_driver_connection(sa_connection.connection))


def open_connection(engine: Engine, options: DatabaseOptions | None = None) -> ConnectionWrapper:
    """Check a connection out of `engine` and wrap it.

    Connect failures surface as the driver's own exception.
    """
    try:
        sa_connection = engine.connect()
    except sa.exc.DBAPIError as exc:
        if exc.orig is not None:
            raise exc.orig from exc
        raise
    try:
        configure_connection(sa_connection)
    except Exception:
        sa_connection.close()
        raise
    return ConnectionWrapper(sa_connection, options)


def connect(options: DatabaseOptions | dict[str, Any] | str, **kw: Any) -> ConnectionWrapper:
    """Connect to a database using SQLAlchemy for connection management

    Args:
        options: Can be:
                - DatabaseOptions object
                - Dictionary of options
                - SQLAlchemy URL string, ODBC connection string or driver name
        **kw: Additional keyword arguments to override options

    Connection pooling options:
        use_pool: Whether to use connection pooling (default: False)
        pool_max_connections: Maximum connections in pool (default: 5)
        pool_max_idle_time: Maximum seconds a connection can be idle (default: 300)
        pool_wait_timeout: Maximum seconds to wait for a connection (default: 30)

    Returns
        ConnectionWrapper owning a new connection
    """
    options = DatabaseOptions.from_source(options, **kw)
    engine = get_engine_for_options(options)
    return open_connection(engine, options)
