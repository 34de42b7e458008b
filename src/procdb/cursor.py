"""
The live command handed to result projections.

`LiveCommand` executes a bound command on a cursor of the transaction's
connection and buffers every result set it produces as lists of dicts. The
dialect's output-parameter row is captured separately and never shown to the
projection.
"""
import logging
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from functools import wraps
from typing import TYPE_CHECKING, Any

import pandas as pd

from procdb.cancel import CancellationToken
from procdb.exceptions import DatabaseError
from procdb.options import iterdict_data_loader, pandas_numpy_data_loader
from procdb.parameters import Parameter
from procdb.strategy import OUTPUT_MARKER, BoundCommand
from procdb.types import TypeConverter, column_names, rows_to_dicts

if TYPE_CHECKING:
    from procdb.connection import ConnectionWrapper
    from procdb.transaction import Transaction

logger = logging.getLogger(__name__)


def dumpsql(func):
    """Decorator for logging SQL statements and parameters."""
    @wraps(func)
    def wrapper(self, operation: str, *args: Any, **kwargs: Any):
        start = time.time()
        logger.debug(f'SQL:\n{operation}\nargs: {args}')
        try:
            return func(self, operation, *args, **kwargs)
        except Exception:
            logger.error(f'Error with query:\nSQL:\n{operation}\nargs: {args}')
            raise
        finally:
            elapsed = time.time() - start
            self.connection.addcall(elapsed)
            logger.debug(f'Query time: {elapsed:.4f}s')
    return wrapper


@dataclass
class ResultSet:
    """One buffered result set."""

    columns: list[str]
    rows: list[dict[str, Any]] = field(default_factory=list)
    description: Any = None


class LiveCommand:
    """A command running inside a transaction, readable by a projection.

    Rows come back as dicts keyed by column name. `nextset()` advances to the
    next result set, `execute()` runs further statements in the same
    transaction and replaces the buffered results with theirs.

    Examples
        def to_customers(live):
            return [Customer(**row) for row in live.fetchall()]
    """

    def __init__(self, transaction: 'Transaction', bound: BoundCommand,
                 timeout: int | None = None,
                 cancel: CancellationToken | None = None) -> None:
        self._transaction = transaction
        self._bound = bound
        self._timeout = timeout
        self._cancel = cancel
        self._strategy = transaction.strategy
        self.dbapi_cursor = None
        self._sets: list[ResultSet] = []
        self._set_index = 0
        self._row_index = 0
        self._rowcount = -1
        self._output_row: dict[str, Any] | None = None

    def __enter__(self) -> 'LiveCommand':
        self.dbapi_cursor = self.connection.cursor()
        try:
            self._run(self._bound.sql, self._bound.params)
            self._capture_outputs()
        except Exception:
            self.close()
            raise
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        self.close()

    def close(self) -> None:
        if self.dbapi_cursor is not None:
            self.dbapi_cursor.close()
            self.dbapi_cursor = None

    @property
    def transaction(self) -> 'Transaction':
        return self._transaction

    @property
    def connection(self) -> 'ConnectionWrapper':
        return self._transaction.cn

    @dumpsql
    def _run(self, operation: str, params: tuple = ()) -> None:
        """Execute on the cursor and buffer every result set."""
        raw_conn = self.connection.driver_connection
        cursor = self.dbapi_cursor
        unregister = None
        if self._cancel is not None:
            self._cancel.raise_if_cancelled()
            unregister = self._cancel.register(lambda: self._strategy.cancel(raw_conn, cursor))
        try:
            with self._strategy.statement_timeout(raw_conn, cursor, self._timeout):
                cursor.execute(operation, params)
                self._rowcount = cursor.rowcount
                self._sets = list(self._read_sets(cursor))
        finally:
            if unregister is not None:
                unregister()
        self._set_index = 0
        self._row_index = 0

    def _read_sets(self, cursor: Any) -> Iterator[ResultSet]:
        nextset = getattr(cursor, 'nextset', None)
        while True:
            if cursor.description:
                rows = cursor.fetchall()
                yield ResultSet(column_names(cursor.description),
                                rows_to_dicts(cursor.description, rows),
                                cursor.description)
            if nextset is None or not nextset():
                break

    def _capture_outputs(self) -> None:
        """Pull the output-parameter row out of the buffered result sets."""
        match self._bound.output_position:
            case None:
                return
            case 'leading':
                index = 0 if self._sets else None
            case 'trailing':
                index = next((i for i, rs in enumerate(self._sets)
                              if rs.columns and rs.columns[0] == OUTPUT_MARKER), None)
            case other:
                raise DatabaseError(f'Unknown output position: {other}')
        if index is None or not self._sets[index].rows:
            raise DatabaseError('The command did not return its output parameter values')
        self._output_row = self._sets.pop(index).rows[0]

    def output_values(self) -> list[tuple[Parameter, Any]]:
        """Post-execution values for every output descriptor of the command.

        Columns are matched by name, ignoring case.
        """
        if not self._bound.outputs:
            return []
        row = {str(k).lower(): v for k, v in (self._output_row or {}).items()}
        values = []
        for param, label in self._bound.outputs:
            if label.lower() not in row:
                raise DatabaseError(f'No output value returned for parameter {param.name!r}')
            values.append((param, row[label.lower()]))
        return values

    # Result set navigation

    @property
    def _current(self) -> ResultSet | None:
        if self._set_index < len(self._sets):
            return self._sets[self._set_index]
        return None

    @property
    def description(self) -> Any:
        """DBAPI description of the current result set."""
        current = self._current
        return current.description if current else None

    @property
    def columns(self) -> list[str]:
        current = self._current
        return list(current.columns) if current else []

    @property
    def rowcount(self) -> int:
        """Row count reported by the driver for the last execution."""
        return self._rowcount

    @property
    def result_sets(self) -> list[list[dict[str, Any]]]:
        """Every buffered result set, regardless of the read position."""
        return [list(rs.rows) for rs in self._sets]

    def fetchone(self) -> dict[str, Any] | None:
        current = self._current
        if current is None or self._row_index >= len(current.rows):
            return None
        row = current.rows[self._row_index]
        self._row_index += 1
        return row

    def fetchmany(self, size: int = 1) -> list[dict[str, Any]]:
        current = self._current
        if current is None:
            return []
        rows = current.rows[self._row_index:self._row_index + size]
        self._row_index += len(rows)
        return rows

    def fetchall(self) -> list[dict[str, Any]]:
        current = self._current
        if current is None:
            return []
        rows = current.rows[self._row_index:]
        self._row_index = len(current.rows)
        return rows

    def fetch(self, **kwargs: Any) -> Any:
        """Remaining rows of the current set through the configured data loader."""
        columns = self.columns
        options = self.connection.options
        data_loader = options.data_loader if options and options.data_loader else iterdict_data_loader
        return data_loader(self.fetchall(), columns, **kwargs)

    def fetch_frame(self) -> pd.DataFrame:
        """Remaining rows of the current set as a pandas DataFrame."""
        columns = self.columns
        return pandas_numpy_data_loader(self.fetchall(), columns)

    def nextset(self) -> bool:
        """Advance to the next result set; False when none is left."""
        if self._set_index + 1 >= len(self._sets):
            self._set_index = len(self._sets)
            return False
        self._set_index += 1
        self._row_index = 0
        return True

    def scalar(self) -> Any:
        """First column of the first row of the first result set, or None."""
        if not self._sets or not self._sets[0].rows:
            return None
        first = self._sets[0].rows[0]
        return next(iter(first.values()), None)

    def execute(self, sql: str, *args: Any) -> int:
        """Run another statement in the same transaction.

        The statement's result sets replace the buffered ones.
        """
        if self.dbapi_cursor is None:
            raise DatabaseError('Command is closed')
        self._run(sql, TypeConverter.convert_params(args))
        return self._rowcount
