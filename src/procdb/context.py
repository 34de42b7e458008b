"""
Execution context: the owner of a connection source and the entry point for
every execution mode.

Lifecycle: UNOPENED -> OPEN -> DISPOSED.

- A context built from options, a URL or an ODBC string owns a private
  engine. Each call checks a connection out of it and returns it afterwards.
- A context built from an open connection adopts it. The connection is used
  as-is, never re-opened, and never closed by the context. Each call leaves
  its commit mode as it found it, and a call is refused while the owner has
  a transaction open on it.
- One call at a time: an overlapping call, including one made from inside a
  projection, raises `ContextBusyError` instead of sharing the transaction.
- `dispose()` is idempotent. It cancels a call in flight (which rolls it
  back), disposes the owned engine and detaches an adopted connection. Any
  call afterwards raises `ContextDisposedError`.
"""
import enum
import logging
import threading
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any, Self, TypeVar

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from procdb import bulk, command
from procdb.cancel import CancellationToken
from procdb.connection import ConnectionWrapper, create_engine_for_options
from procdb.connection import open_connection
from procdb.cursor import LiveCommand
from procdb.exceptions import ConnectionFailure, ContextBusyError
from procdb.exceptions import ContextDisposedError, ContextError
from procdb.options import DatabaseOptions, iterdict_data_loader
from procdb.parameters import CommandDescriptor, Parameter
from procdb.strategy import get_db_strategy
from procdb.transaction import Transaction
from procdb.types import CommandType

__all__ = ['ContextState', 'DbContext', 'create']

logger = logging.getLogger(__name__)

R = TypeVar('R')


class ContextState(enum.Enum):
    UNOPENED = 'unopened'
    OPEN = 'open'
    DISPOSED = 'disposed'


def _adopted_options(cn: ConnectionWrapper) -> DatabaseOptions:
    """Defaults for a context built around a connection opened elsewhere."""
    if cn.options is not None:
        return cn.options
    return DatabaseOptions.model_construct(drivername=cn.dialect,
                                           data_loader=iterdict_data_loader)


class DbContext:
    """Owns a connection source for its lifetime and runs commands against it.

    Examples
        with DbContext('postgresql+psycopg://app:secret@db/sales') as ctx:
            active = Parameter.output('@is_active', DbType.BOOLEAN)
            ctx.execute_non_query('dbo.check_customer',
                                  Parameter.input('@id', DbType.INTEGER, 42), active)
            active.value
    """

    def __init__(self, source: Any, **overrides: Any) -> None:
        self._busy = threading.Lock()
        self._state_lock = threading.Lock()
        self._engine: Engine | None = None
        self._adopted: ConnectionWrapper | None = None
        self._active: CancellationToken | None = None

        if isinstance(source, ConnectionWrapper):
            self._adopted = source
        elif isinstance(source, sa.Connection):
            self._adopted = ConnectionWrapper(source, owned=False)

        if self._adopted is not None:
            if self._adopted.closed:
                raise ConnectionFailure('Cannot adopt a closed connection')
            self.options = _adopted_options(self._adopted)
            self._state = ContextState.OPEN
            logger.debug(f'Adopted {self._adopted!r}')
        else:
            self.options = DatabaseOptions.from_source(source, **overrides)
            self._state = ContextState.UNOPENED

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        self.dispose()

    def __repr__(self) -> str:
        return f'<DbContext {self.options.drivername} {self._state.value}>'

    @property
    def state(self) -> ContextState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    @property
    def is_adopted(self) -> bool:
        return self._adopted is not None

    def open(self) -> Self:
        """Create the engine and check connectivity once.

        Configuration errors surface here rather than on the first call.
        """
        with self._guard(None):
            pass
        return self

    def dispose(self) -> None:
        """Release everything the context holds. Safe to call repeatedly."""
        with self._state_lock:
            if self._state is ContextState.DISPOSED:
                return
            self._state = ContextState.DISPOSED
            active = self._active

        if active is not None:
            logger.warning('Disposing context with a call in flight; cancelling it')
            active.cancel()
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
        self._adopted = None
        logger.debug('Context disposed')

    # Connection scope

    def _check_usable(self) -> None:
        if self._state is ContextState.DISPOSED:
            raise ContextDisposedError('Context has been disposed')

    @contextmanager
    def _connection(self) -> Iterator[ConnectionWrapper]:
        self._check_usable()
        adopted = self._adopted
        if adopted is not None:
            if adopted.closed:
                raise ConnectionFailure('Adopted connection was closed by its owner')
            if get_db_strategy(adopted).in_transaction(adopted.driver_connection):
                raise ContextError('Adopted connection has an open transaction; '
                                   'commit or roll it back before calling')
            yield adopted
            return

        with self._state_lock:
            self._check_usable()
            if self._engine is None:
                self._engine = create_engine_for_options(self.options)
        cn = open_connection(self._engine, self.options)
        with self._state_lock:
            if self._state is ContextState.UNOPENED:
                self._state = ContextState.OPEN
        try:
            yield cn
        finally:
            cn.close()

    @contextmanager
    def _guard(self, cancel: CancellationToken | None,
               connect: bool = True) -> Iterator[tuple[ConnectionWrapper | None, CancellationToken]]:
        """Reject overlapping calls and scope one connection to one call."""
        self._check_usable()
        if not self._busy.acquire(blocking=False):
            raise ContextBusyError('Another call is in flight on this context')
        try:
            self._check_usable()
            if cancel is not None:
                cancel.raise_if_cancelled()
            token = CancellationToken()
            unlink = cancel.register(token.cancel) if cancel is not None else None
            self._active = token
            try:
                if connect:
                    with self._connection() as cn:
                        yield cn, token
                else:
                    yield None, token
            finally:
                self._active = None
                if unlink is not None:
                    unlink()
        finally:
            self._busy.release()

    # Command runner

    def _command(self, procedure_name: str, parameters: Sequence[Parameter],
                 command_type: CommandType, timeout: int | None) -> CommandDescriptor:
        return CommandDescriptor(procedure_name, tuple(parameters), command_type, timeout)

    def execute_non_query(self, procedure_name: str, *parameters: Parameter,
                          command_type: CommandType = CommandType.STORED_PROCEDURE,
                          timeout: int | None = None,
                          cancel: CancellationToken | None = None) -> None:
        """Execute a procedure for its side effects and output parameters.
        """
        cmd = self._command(procedure_name, parameters, command_type, timeout)
        with self._guard(cancel) as (cn, token):
            command.execute_non_query(cn, cmd, timeout=self.options.command_timeout, cancel=token)

    def execute_scalar(self, procedure_name: str, *parameters: Parameter,
                       command_type: CommandType = CommandType.STORED_PROCEDURE,
                       timeout: int | None = None,
                       cancel: CancellationToken | None = None) -> Any:
        """Execute and return the first column of the first row, or None.
        """
        cmd = self._command(procedure_name, parameters, command_type, timeout)
        with self._guard(cancel) as (cn, token):
            return command.execute_scalar(cn, cmd, timeout=self.options.command_timeout, cancel=token)

    def execute_with_return_value(self, procedure_name: str, *parameters: Parameter,
                                  timeout: int | None = None,
                                  cancel: CancellationToken | None = None) -> Any:
        """Execute a procedure and return its RETURN_VALUE.
        """
        cmd = self._command(procedure_name, parameters, CommandType.STORED_PROCEDURE, timeout)
        with self._guard(cancel) as (cn, token):
            return command.execute_with_return_value(cn, cmd, timeout=self.options.command_timeout,
                                                     cancel=token)

    def execute_transaction(self, cmd: CommandDescriptor,
                            projection: Callable[[LiveCommand], R], *,
                            cancel: CancellationToken | None = None) -> R:
        """Execute `cmd` and return `projection(live_command)`.

        The projection runs inside the call's transaction and may issue further
        statements through the live command.
        """
        with self._guard(cancel) as (cn, token):
            return command.execute_transaction(cn, cmd, projection,
                                               timeout=self.options.command_timeout, cancel=token)

    # Bulk loader

    def execute_bulk_copy(self, table: str, rows: Iterable[Any], has_identity: bool = False,
                          batch_size: int | None = None, *,
                          columns: Sequence[str] | None = None,
                          transaction: Transaction | None = None,
                          timeout: int | None = None,
                          cancel: CancellationToken | None = None) -> int:
        """Bulk-load `rows` into `table` and return the number of rows written.

        Without `transaction` each batch commits on its own and a failure
        leaves earlier batches in place. Pass a caller-managed `Transaction`
        for all-or-nothing loads; it may belong to another connection.
        """
        batch_size = self.options.bulk_batch_size if batch_size is None else batch_size
        timeout = self.options.bulk_timeout if timeout is None else timeout
        with self._guard(cancel, connect=transaction is None) as (cn, token):
            target = transaction if transaction is not None else cn
            return bulk.bulk_copy(target, table, rows, has_identity, batch_size,
                                  columns=columns, timeout=timeout, cancel=token)


def create(source: Any, **overrides: Any) -> DbContext:
    """Create a context from a connection string, options or an open connection.
    """
    return DbContext(source, **overrides)
