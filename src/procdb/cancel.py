"""
Cooperative cancellation for in-flight calls.

A `CancellationToken` is handed to an execution method. Calling `cancel()`
from any thread aborts the driver call currently registered on the token, so
the transaction rolls back and the connection is released promptly.

Examples
    >>> token = CancellationToken()
    >>> token.cancelled
    False
    >>> token.cancel()
    >>> token.cancelled
    True
"""
import logging
import threading
from collections.abc import Callable

from procdb.exceptions import OperationCancelled

__all__ = ['CancellationToken']

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe, one-shot cancellation signal.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    def __repr__(self) -> str:
        return f'<CancellationToken cancelled={self.cancelled}>'

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal cancellation and run every registered callback once.
        """
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:
                logger.warning(f'Cancellation callback failed: {exc}')

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run `callback` on cancellation; returns a function that unregisters it.

        A token that is already cancelled runs the callback immediately.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._unregister(callback)
        callback()
        return lambda: None

    def _unregister(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled('Operation was cancelled')
