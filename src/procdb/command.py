"""
Transaction-scoped command runner.

Every mode follows the same sequence on the connection it is given:

1. begin a transaction
2. bind the command through the dialect strategy
3. execute it (non-query, scalar, or a caller projection over the live command)
4. collect OUT, INOUT and RETURN_VALUE values
5. commit, then write the collected values into the caller's descriptors

Any failure between begin and commit rolls the transaction back and re-raises
the original exception. The cursor, the transaction and (in the caller) the
connection are released in that order on every path. Nothing is retried.
"""
import dataclasses
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar

from procdb.cancel import CancellationToken
from procdb.cursor import LiveCommand
from procdb.parameters import CommandDescriptor, Parameter
from procdb.transaction import Transaction

if TYPE_CHECKING:
    from procdb.connection import ConnectionWrapper

__all__ = [
    'run_command',
    'execute_non_query',
    'execute_scalar',
    'execute_with_return_value',
    'execute_transaction',
]

logger = logging.getLogger(__name__)

R = TypeVar('R')


def run_command(cn: 'ConnectionWrapper', command: CommandDescriptor,
                execute: Callable[[LiveCommand], R], *,
                timeout: int | None = None,
                cancel: CancellationToken | None = None) -> R:
    """Run `command` in its own transaction and return what `execute` returns.

    `command.timeout` wins over `timeout`. Output descriptors are written only
    after the commit succeeded; a failed call leaves them untouched.
    """
    if cancel is not None:
        cancel.raise_if_cancelled()

    seconds = command.timeout if command.timeout is not None else timeout
    logger.debug(f'Running {command.command_type.name.lower()} {command.procedure_name!r} '
                 f'with {len(command.parameters)} parameters')

    with Transaction(cn) as tx:
        bound = tx.strategy.bind_command(command)
        with LiveCommand(tx, bound, timeout=seconds, cancel=cancel) as live:
            result = execute(live)
            outputs = live.output_values()
            if cancel is not None:
                cancel.raise_if_cancelled()

    for param, value in outputs:
        param._assign_output(value)
    return result


def execute_non_query(cn: 'ConnectionWrapper', command: CommandDescriptor, **kw: Any) -> None:
    """Run the command for its side effects and output parameters."""
    run_command(cn, command, lambda live: None, **kw)


def execute_scalar(cn: 'ConnectionWrapper', command: CommandDescriptor, **kw: Any) -> Any:
    """First column of the first row of the first result set, or None."""
    return run_command(cn, command, LiveCommand.scalar, **kw)


def execute_with_return_value(cn: 'ConnectionWrapper', command: CommandDescriptor,
                              **kw: Any) -> Any:
    """Run the command and return its RETURN_VALUE.

    A RETURN_VALUE descriptor is appended when the caller supplied none.
    """
    return_param = command.return_parameter
    if return_param is None:
        return_param = Parameter.return_value()
        command = dataclasses.replace(command, parameters=(*command.parameters, return_param))
    run_command(cn, command, lambda live: None, **kw)
    return return_param.value


def execute_transaction(cn: 'ConnectionWrapper', command: CommandDescriptor,
                        projection: Callable[[LiveCommand], R], **kw: Any) -> R:
    """Run the command and map its results with `projection`.

    The projection runs inside the transaction; anything it raises rolls the
    whole call back.
    """
    return run_command(cn, command, projection, **kw)
