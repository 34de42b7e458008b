"""
Exception classes and driver error groups.

Driver errors raised while executing a command are never wrapped: they reach
the caller as the driver's own exception after the transaction rolled back.
The classes below cover failures that originate in this package.
"""
import re
import sqlite3

import psycopg

RETRYABLE_PATTERNS = [
    # SSL/TLS errors
    r'ssl',
    r'tls',
    # Connection drops
    r'connection.*(closed|reset|refused|lost|terminated|broken)',
    r'server closed',
    r'eof detected',
    r'broken pipe',
    r'connection reset',
    # Timeouts
    r'timeout',
    r'timed out',
    # Deadlocks
    r'deadlock',
    # Network issues
    r'could not connect',
    r'no route to host',
    r'network.*(unreachable|error)',
    r'host.*(unreachable|down)',
    # Database unavailable
    r'database.*unavailable',
    r'too many connections',
]

_RETRYABLE_REGEX = re.compile('|'.join(RETRYABLE_PATTERNS), re.IGNORECASE)


def is_retryable_error(exc: BaseException) -> bool:
    """Check if an exception represents a transient error worth retrying.

    Nothing in this package retries on its own. Retrying a stored procedure
    is only safe when the caller knows it is idempotent, so this helper is
    offered for callers that build their own retry policy.

    Returns True for errors that are likely transient:
    - SSL/TLS errors
    - Connection drops/resets
    - Timeouts and deadlock victims
    - Database temporarily unavailable

    :param exc: The exception to check.
    :returns: True if the error is likely transient and worth retrying.
    """
    if isinstance(exc, ContextError | BindingError):
        return False
    error_msg = str(exc).lower()
    return bool(_RETRYABLE_REGEX.search(error_msg))


class DatabaseError(Exception):
    """Base class for all procdb errors.
    """


class ConnectionFailure(DatabaseError):
    """Error establishing or adopting a database connection.
    """


class BindingError(DatabaseError, ValueError):
    """Parameter descriptor is invalid or cannot be bound for the dialect.
    """


class NotSupportedError(DatabaseError):
    """Operation is not available for the connection's dialect.
    """


class OperationCancelled(DatabaseError):
    """The cancellation token fired before the command reached the database.
    """


class ContextError(DatabaseError):
    """Operation attempted on a context in the wrong lifecycle state.
    """


class ContextDisposedError(ContextError):
    """Execution attempted after the context was disposed.
    """


class ContextBusyError(ContextError):
    """Execution attempted while another call is in flight on the context.
    """


DbConnectionError = (
    psycopg.OperationalError,
    psycopg.InterfaceError,
    sqlite3.OperationalError,
    sqlite3.InterfaceError,
    ConnectionFailure,
    )

IntegrityError = (
    psycopg.IntegrityError,
    sqlite3.IntegrityError,
    )

ProgrammingError = (
    psycopg.ProgrammingError,
    sqlite3.ProgrammingError,
    )

OperationalError = (
    psycopg.OperationalError,
    sqlite3.OperationalError,
    )
