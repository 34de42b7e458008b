"""
Transaction handling for database operations.
"""
import logging
import threading
from typing import TYPE_CHECKING, Any

from procdb.strategy import get_db_strategy
from procdb.types import TypeConverter, rows_to_dicts

if TYPE_CHECKING:
    from procdb.connection import ConnectionWrapper

logger = logging.getLogger(__name__)


_local = threading.local()


class Transaction:
    """Context manager for running multiple commands in a transaction.

    The transaction is driven on the DBAPI connection: the strategy turns
    autocommit off (or issues `BEGIN`), and the exit path commits or rolls
    back, then puts back the commit mode the connection had on entry.

    A failed rollback is logged and never replaces the exception that caused
    it. Nested transactions on one connection within a thread are rejected.

    Examples
        with Transaction(cn) as tx:
            tx.execute('delete from ...', args)
            tx.execute('update from ...', args)
    """

    def __init__(self, cn: 'ConnectionWrapper') -> None:
        self.cn = cn
        self.strategy = get_db_strategy(cn)
        self._mode = None

        if not hasattr(_local, 'active_transactions'):
            _local.active_transactions = {}

        if id(cn) in _local.active_transactions:
            raise RuntimeError('Nested transactions are not supported')

    @property
    def dialect(self) -> str:
        return self.cn.dialect

    @property
    def connection(self) -> 'ConnectionWrapper':
        return self.cn

    def __enter__(self):
        _local.active_transactions[id(self.cn)] = True
        raw_conn = self.cn.driver_connection
        try:
            self._mode = self.strategy.transaction_mode(raw_conn)
            self.strategy.begin(raw_conn)
        except Exception:
            _local.active_transactions.pop(id(self.cn), None)
            raise
        self.cn.in_transaction = True
        logger.debug(f'Started transaction for connection {id(self.cn)}')
        return self

    def __exit__(self, exc_type: type | None, value: Exception | None, traceback: Any | None) -> None:
        try:
            if exc_type is not None:
                logger.warning('Rolling back the current transaction')
                self.rollback()
            else:
                try:
                    self.strategy.commit(self.cn.driver_connection)
                except Exception:
                    self.rollback()
                    raise
                logger.debug(f'Committed transaction for connection {id(self.cn)}')
        finally:
            _local.active_transactions.pop(id(self.cn), None)
            self.cn.in_transaction = False
            try:
                self.strategy.restore_mode(self.cn.driver_connection, self._mode)
            except Exception as exc:
                logger.warning(f'Could not restore commit mode on connection {id(self.cn)}: {exc}')
            logger.debug(f'Transaction cleanup complete for connection {id(self.cn)}')

    def rollback(self) -> None:
        """Roll back; failures are logged so the original error survives."""
        try:
            self.strategy.rollback(self.cn.driver_connection)
        except Exception as exc:
            logger.error(f'Rollback failed on connection {id(self.cn)}: {exc}')

    def execute(self, sql: str, *args: Any) -> int:
        """Execute SQL within transaction context and return the row count."""
        cursor = self.cn.cursor()
        try:
            cursor.execute(sql, TypeConverter.convert_params(args))
            return cursor.rowcount
        finally:
            cursor.close()

    def select(self, sql: str, *args: Any) -> list[dict[str, Any]]:
        """Execute a query within transaction context and return rows as dicts."""
        cursor = self.cn.cursor()
        try:
            cursor.execute(sql, TypeConverter.convert_params(args))
            rows = cursor.fetchall() if cursor.description else []
            return rows_to_dicts(cursor.description, rows)
        finally:
            cursor.close()
