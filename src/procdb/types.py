"""
Type handling for procedure parameters and bulk rows.

This module provides:
- DbType: semantic parameter types shared by every dialect
- ParameterDirection / CommandType: tags switched on by the binding logic
- TypeConverter: Convert NumPy/Pandas values to database-compatible values
- rows_to_dicts: Convert driver rows to dictionaries
- SQLite converters for date/datetime columns
"""
import datetime
import decimal
import enum
import logging
import math
import uuid
from collections.abc import Sequence
from typing import Any

import dateutil.parser
import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


class ParameterDirection(enum.Enum):
    """Direction of a stored-procedure parameter."""

    IN = 'in'
    OUT = 'out'
    INOUT = 'inout'
    RETURN_VALUE = 'return_value'

    @property
    def is_output(self) -> bool:
        """True for directions whose value is read back after execution."""
        return self is not ParameterDirection.IN


class CommandType(enum.Enum):
    """How the command text is interpreted."""

    STORED_PROCEDURE = 'stored_procedure'
    TEXT = 'text'


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {'1', 't', 'true', 'y', 'yes'}
    return bool(value)


def _to_decimal(value: Any) -> decimal.Decimal:
    if isinstance(value, decimal.Decimal):
        return value
    return decimal.Decimal(str(value))


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, memoryview | bytearray):
        return bytes(value)
    return value


def _to_date(value: Any) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, str):
        return dateutil.parser.isoparse(value).date()
    return value


def _to_time(value: Any) -> datetime.time:
    if isinstance(value, datetime.datetime):
        return value.time()
    if isinstance(value, str):
        return datetime.time.fromisoformat(value)
    return value


def _to_datetime(value: Any) -> datetime.datetime:
    if isinstance(value, str):
        return dateutil.parser.isoparse(value)
    if isinstance(value, datetime.date) and not isinstance(value, datetime.datetime):
        return datetime.datetime.combine(value, datetime.time())
    return value


def _to_guid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


class DbType(enum.Enum):
    """Semantic data type of a procedure parameter.

    Each member knows the Python type it round-trips to. Dialect strategies map
    members to their native type names.
    """

    INTEGER = 'integer'
    BIGINT = 'bigint'
    SMALLINT = 'smallint'
    BOOLEAN = 'boolean'
    STRING = 'string'
    ANSI_STRING = 'ansi_string'
    DECIMAL = 'decimal'
    FLOAT = 'float'
    BINARY = 'binary'
    DATE = 'date'
    TIME = 'time'
    DATETIME = 'datetime'
    DATETIMEOFFSET = 'datetimeoffset'
    GUID = 'guid'

    def coerce(self, value: Any) -> Any:
        """Convert a value read back from the driver to this type's Python type.
        """
        if value is None:
            return None
        return _COERCERS[self](value)


_COERCERS = {
    DbType.INTEGER: int,
    DbType.BIGINT: int,
    DbType.SMALLINT: int,
    DbType.BOOLEAN: _to_bool,
    DbType.STRING: str,
    DbType.ANSI_STRING: str,
    DbType.DECIMAL: _to_decimal,
    DbType.FLOAT: float,
    DbType.BINARY: _to_bytes,
    DbType.DATE: _to_date,
    DbType.TIME: _to_time,
    DbType.DATETIME: _to_datetime,
    DbType.DATETIMEOFFSET: _to_datetime,
    DbType.GUID: _to_guid,
}


# Type Converter - Handles Python -> Database value conversion

SPECIAL_STRINGS: set[str] = {'null', 'nan', 'none', 'na', 'nat'}
NUMPY_FLOAT_TYPES = (np.floating,)
NUMPY_INT_TYPES = (np.integer, np.unsignedinteger)


def _convert_numpy_value(val: Any) -> float | int | bool | datetime.datetime | None:
    """Convert NumPy value to Python type."""
    if isinstance(val, np.floating) and np.isnan(val):
        return None

    if isinstance(val, np.datetime64) and np.isnat(val):
        return None

    if isinstance(val, np.floating | np.integer | np.unsignedinteger | np.bool_):
        return val.item()

    if isinstance(val, np.datetime64):
        return pd.Timestamp(val).to_pydatetime()

    return val


class TypeConverter:
    """Universal type conversion for database parameters.

    Handles NumPy and Pandas scalars coming out of DataFrame row sources.
    """

    @staticmethod
    def convert_value(value: Any) -> Any:
        """Convert a single value to a database-compatible format."""
        if value is None:
            return None

        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return None

        if isinstance(value, type(pd.NaT)):
            return None

        if isinstance(value, (*NUMPY_FLOAT_TYPES, *NUMPY_INT_TYPES, np.bool_, np.datetime64)):
            return _convert_numpy_value(value)

        if isinstance(value, pd.Timestamp):
            return value.to_pydatetime()

        if pd.api.types.is_scalar(value) and not isinstance(value, str | bytes) and pd.isna(value):
            return None

        return value

    @staticmethod
    def convert_params(params: Any) -> Any:
        """Convert a collection of parameters for database operations."""
        if params is None:
            return None

        if isinstance(params, dict):
            return {k: TypeConverter.convert_value(v) for k, v in params.items()}

        if isinstance(params, list | tuple):
            return type(params)(TypeConverter.convert_value(v) for v in params)

        return TypeConverter.convert_value(params)


# Row conversion - driver rows -> dictionaries

def column_names(description: Sequence | None) -> list[str]:
    """Column names from a DB-API cursor description."""
    if not description:
        return []
    return [getattr(desc, 'name', None) or desc[0] for desc in description]


def rows_to_dicts(description: Sequence | None, rows: Sequence) -> list[dict[str, Any]]:
    """Convert driver rows (tuples, pyodbc.Row, sqlite3.Row) to dictionaries."""
    names = column_names(description)
    return [dict(zip(names, tuple(row))) for row in rows]


# SQLite Adapters - Database value converters

def convert_date(val: bytes) -> datetime.date:
    """Convert ISO 8601 date string to date object."""
    return dateutil.parser.isoparse(val.decode()).date()


def convert_datetime(val: bytes) -> datetime.datetime:
    """Convert ISO 8601 datetime string to datetime object."""
    return dateutil.parser.isoparse(val.decode())
