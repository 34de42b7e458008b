"""
Connection options and result data loaders.

`DatabaseOptions` is a pydantic-settings model, so every field can come from
keyword arguments, a dict, or `PROCDB_*` environment variables.
"""
import pathlib
import sys
from collections.abc import Callable
from typing import Any, Self

import pandas as pd
import sqlalchemy as sa
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from procdb.strategy import get_available_dialects, get_strategy_class
from procdb.strategy import is_supported_dialect

__all__ = [
    'DatabaseOptions',
    'iterdict_data_loader',
    'pandas_numpy_data_loader',
]

_BACKEND_ALIASES = {
    'mssql': 'mssql',
    'postgresql': 'postgresql',
    'postgres': 'postgresql',
    'sqlite': 'sqlite',
}


def iterdict_data_loader(data: list[dict], columns: list[str], **kwargs: Any) -> list[dict]:
    """Minimal data loader.

    Accepts additional keyword arguments for compatibility with other data
    loaders, but doesn't use them.
    """
    if not data:
        return []
    return list(data)


def pandas_numpy_data_loader(data: list[dict], columns: list[str], **kwargs: Any) -> pd.DataFrame:
    """Standard pandas DataFrame loader using NumPy.

    Always returns a DataFrame, never None, with columns preserved for empty results.
    """
    if not data:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame.from_records(list(data), columns=columns)


def _scriptname() -> str | None:
    name = pathlib.Path(sys.argv[0]).stem if sys.argv and sys.argv[0] else ''
    return name or None


class DatabaseOptions(BaseSettings):
    """Options

    supported driver names: `mssql`, `postgresql`, `sqlite`

    A full SQLAlchemy URL (`url`) or a raw ODBC connection string
    (`odbc_connect`) takes precedence over the individual host fields.

    Connection pooling options:
    - use_pool: Whether to use connection pooling (default: False)
    - pool_max_connections: Maximum connections in pool (default: 5)
    - pool_max_idle_time: Maximum seconds a connection can be idle (default: 300)
    - pool_wait_timeout: Maximum seconds to wait for a connection (default: 30)

    Execution defaults:
    - command_timeout: Seconds before a procedure call is aborted (default: 30, 0 disables)
    - bulk_batch_size: Rows per bulk-copy batch (default: 5000)
    - bulk_timeout: Seconds before a bulk-copy batch is aborted (default: 30, 0 disables)
    """
    model_config = SettingsConfigDict(env_prefix='PROCDB_', extra='ignore',
                                      arbitrary_types_allowed=True)

    drivername: str = 'postgresql'
    hostname: str | None = None
    username: str | None = None
    password: str | None = None
    database: str | None = None
    port: int = 0
    timeout: int = 0
    url: str | None = None
    odbc_connect: str | None = None
    odbc_driver: str = 'ODBC Driver 18 for SQL Server'
    trust_server_certificate: bool = True
    appname: str | None = None
    data_loader: Callable[..., Any] | None = None
    # Connection pooling parameters
    use_pool: bool = False
    pool_max_connections: int = 5
    pool_max_idle_time: int = 300
    pool_wait_timeout: int = 30
    # Execution defaults
    command_timeout: int = 30
    bulk_batch_size: int = 5000
    bulk_timeout: int = 30

    @model_validator(mode='after')
    def _check_dialect(self) -> Self:
        if self.url:
            backend = sa.engine.make_url(self.url).get_backend_name()
            self.drivername = _BACKEND_ALIASES.get(backend, backend)
        elif self.odbc_connect:
            self.drivername = 'mssql'

        if not is_supported_dialect(self.drivername):
            available = get_available_dialects()
            raise ValueError(f'drivername must be one of: {available}')
        if self.bulk_batch_size < 1:
            raise ValueError('bulk_batch_size must be positive')

        self.appname = self.appname or _scriptname() or 'python_console'
        if not (self.url or self.odbc_connect):
            get_strategy_class(self.drivername).validate_options(self)
        if self.data_loader is None:
            self.data_loader = iterdict_data_loader
        return self

    @classmethod
    def from_source(cls, source: 'DatabaseOptions | dict[str, Any] | str', **kw: Any) -> 'DatabaseOptions':
        """Build options from whatever the caller handed to a context.

        - `DatabaseOptions`: copied with keyword overrides
        - dict: field values
        - str with `://`: a SQLAlchemy URL
        - str with `=`: an ODBC connection string (`Server=...;Database=...`)
        - any other str: a driver name, remaining fields from the environment
        """
        if isinstance(source, DatabaseOptions):
            if not kw:
                return source
            return cls(**(source.model_dump() | kw))
        if isinstance(source, dict):
            return cls(**(source | kw))
        if isinstance(source, str):
            if '://' in source:
                return cls(url=source, **kw)
            if '=' in source:
                return cls(odbc_connect=source, **kw)
            return cls(drivername=source, **kw)
        raise TypeError(f'Cannot build DatabaseOptions from {type(source).__name__}')
