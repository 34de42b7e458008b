"""
Bulk loading of row sources into a table.

Bulk copy is a separate contract from the command runner. Rows are streamed in
batches through the dialect's fastest insert path (`COPY` on PostgreSQL,
`fast_executemany` on SQL Server, `executemany` on SQLite):

- without a caller transaction each batch commits on its own. A failing batch
  aborts the load and raises; batches written before it stay committed.
- with a caller `Transaction` nothing is committed here. The caller's commit
  or rollback decides the fate of every batch.

Row sources are consumed once and never closed:
- a pandas DataFrame
- an iterable of mappings (the first row fixes the column set)
- an iterable of sequences together with `columns`

Examples
    >>> rows = [{'id': i, 'name': f'n{i}'} for i in range(10_000)]  # doctest: +SKIP
    >>> bulk_copy(cn, 'items', rows, has_identity=True)  # doctest: +SKIP
    10000
"""
import logging
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from typing import TYPE_CHECKING, Any

import pandas as pd
from more_itertools import chunked, peekable

from procdb.cancel import CancellationToken
from procdb.exceptions import BindingError
from procdb.strategy import get_db_strategy
from procdb.transaction import Transaction
from procdb.types import TypeConverter

if TYPE_CHECKING:
    from procdb.connection import ConnectionWrapper
    from procdb.strategy import DatabaseStrategy

__all__ = ['bulk_copy', 'DEFAULT_BATCH_SIZE', 'DEFAULT_TIMEOUT']

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5000
DEFAULT_TIMEOUT = 30


def _row_source(rows: Any, columns: Sequence[str] | None) -> tuple[list[str], Iterator[tuple]]:
    """Normalise a row source into column names and an iterator of tuples."""
    if isinstance(rows, pd.DataFrame):
        names = [str(col) for col in rows.columns]
        if columns is not None:
            names = list(columns)
            rows = rows[names]
        return names, rows.itertuples(index=False, name=None)

    source = peekable(rows)
    first = source.peek(None)
    if first is None:
        return list(columns or []), iter(())

    if isinstance(first, Mapping):
        names = list(columns) if columns is not None else list(first.keys())
        return names, (tuple(row.get(name) for name in names) for row in source)

    if columns is None:
        raise BindingError('columns are required when rows are plain sequences')
    return list(columns), (tuple(row) for row in source)


def _map_columns(strategy: 'DatabaseStrategy', cn: 'ConnectionWrapper', table: str,
                 source_columns: list[str], has_identity: bool) -> tuple[list[int], list[str], list[str]]:
    """Match source columns to destination columns by name, ignoring case.

    Returns the source positions to keep, their destination names, and the
    identity columns receiving explicit values.
    """
    destination = strategy.get_columns(cn, table)
    if not destination:
        raise BindingError(f'Table {table!r} not found or has no columns')
    case_map = {col.lower(): col for col in destination}
    identity = {col.lower() for col in strategy.get_identity_columns(cn, table)}

    positions, names, dropped, generated = [], [], [], []
    for position, column in enumerate(source_columns):
        target = case_map.get(column.lower())
        if target is None:
            dropped.append(column)
        elif target.lower() in identity and not has_identity:
            generated.append(target)
        else:
            positions.append(position)
            names.append(target)

    if dropped:
        logger.warning(f'Dropped columns not in {table}: {dropped}')
    if generated:
        logger.debug(f'Leaving identity columns {generated} of {table} to the database')
    if not names:
        raise BindingError(f'No source column matches a column of {table!r}')

    explicit_identity = [name for name in names if name.lower() in identity]
    return positions, names, explicit_identity


def _write(strategy: 'DatabaseStrategy', tx: Transaction, table: str, columns: list[str],
           batch: list[tuple], identity_columns: list[str], timeout: int | None,
           cancel: CancellationToken | None) -> int:
    """Write one batch inside `tx`."""
    cn = tx.cn
    raw_conn = cn.driver_connection
    cursor = cn.cursor()
    unregister = None
    if cancel is not None:
        unregister = cancel.register(lambda: strategy.cancel(raw_conn, cursor))
    start = time.time()
    try:
        with strategy.statement_timeout(raw_conn, cursor, timeout):
            if identity_columns:
                with strategy.identity_insert(cn, table):
                    written = strategy.write_batch(cursor, table, columns, batch)
                strategy.after_identity_load(cn, table, identity_columns)
            else:
                written = strategy.write_batch(cursor, table, columns, batch)
    finally:
        if unregister is not None:
            unregister()
        cursor.close()
        elapsed = time.time() - start
        cn.addcall(elapsed)
    logger.debug(f'Wrote {written} rows to {table} in {elapsed:.4f}s')
    return written


def bulk_copy(target: 'ConnectionWrapper | Transaction', table: str, rows: Iterable[Any],
              has_identity: bool = False, batch_size: int | None = None, *,
              columns: Sequence[str] | None = None,
              timeout: int | None = DEFAULT_TIMEOUT,
              cancel: CancellationToken | None = None) -> int:
    """Stream `rows` into `table` and return the number of rows written.

    Args:
        target: A connection (each batch commits on its own) or an open
            `Transaction` (the caller commits)
        table: Destination table, optionally schema-qualified
        rows: DataFrame, iterable of mappings, or iterable of sequences
        has_identity: Write source values into identity columns instead of
            letting the database generate them
        batch_size: Rows per batch, default 5000
        columns: Column names for sequence rows, or a subset of a DataFrame
        timeout: Seconds before a batch is aborted, 0 or None disables
        cancel: Token that aborts the batch in flight

    Source columns without a destination column are dropped with a warning.
    """
    batch_size = DEFAULT_BATCH_SIZE if batch_size is None else batch_size
    if batch_size < 1:
        raise BindingError('batch_size must be positive')

    external = target if isinstance(target, Transaction) else None
    cn = external.cn if external is not None else target
    strategy = get_db_strategy(cn)

    if cancel is not None:
        cancel.raise_if_cancelled()

    source_columns, source = _row_source(rows, columns)
    if not source_columns:
        logger.debug(f'Skipping bulk copy of empty row source into {table}')
        return 0

    positions, names, identity_columns = _map_columns(strategy, cn, table, source_columns, has_identity)

    total = 0
    for number, chunk in enumerate(chunked(source, batch_size), 1):
        if cancel is not None:
            cancel.raise_if_cancelled()
        batch = [tuple(TypeConverter.convert_value(row[i]) for i in positions) for row in chunk]
        if external is not None:
            written = _write(strategy, external, table, names, batch, identity_columns, timeout, cancel)
        else:
            with Transaction(cn) as tx:
                written = _write(strategy, tx, table, names, batch, identity_columns, timeout, cancel)
        total += written
        logger.debug(f'Batch {number}: {written} rows into {table} ({total} total)')

    logger.info(f'Bulk copied {total} rows into {table}')
    return total
