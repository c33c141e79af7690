"""
Cooperative cancellation for calls, reads and fetches.
"""
import asyncio
import inspect
import logging
import threading
from collections.abc import Callable
from contextlib import asynccontextmanager, contextmanager
from typing import Any

from pgroutine.exceptions import Cancelled

logger = logging.getLogger(__name__)


class CancelToken:
    """Thread-safe cancellation signal.

    Pass a token into an invoker call or a cursor read. A token that is
    already cancelled makes the operation raise `Cancelled` before any I/O;
    cancelling while a statement runs sends a cancel request to
    the server so the statement fails with `Cancelled`. Cancelling never
    closes a cursor or connection.

    Examples
        token = CancelToken()
        threading.Timer(5.0, token.cancel).start()
        invoker.call_proc('approve_flight', params, cancel=token)
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation and notify operations in flight."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
        logger.debug(f'Cancellation requested, notifying {len(callbacks)} operation(s)')
        for callback in callbacks:
            callback()

    def raise_if_cancelled(self, operation: str) -> None:
        if self._event.is_set():
            raise Cancelled(operation)

    @contextmanager
    def bind(self, callback: Callable[[], Any]):
        """Register ``callback`` to run on cancellation for the block's duration.
        """
        with self._lock:
            self._callbacks.append(callback)
        try:
            yield self
        finally:
            with self._lock:
                self._callbacks.remove(callback)


def check_cancelled(cancel: CancelToken | None, operation: str) -> None:
    """Raise `Cancelled` if an optional token has been cancelled."""
    if cancel is not None:
        cancel.raise_if_cancelled(operation)


@contextmanager
def cancel_scope(cancel: CancelToken | None, connection: Any, operation: str):
    """Run a synchronous statement that a token can interrupt.

    Checks the token first, then wires it to the connection's server-side
    cancel request while the block runs.
    """
    check_cancelled(cancel, operation)
    if cancel is None:
        yield
        return
    cancel_request = getattr(connection, 'cancel_safe', None) or connection.cancel
    with cancel.bind(cancel_request):
        # a cancel landing before the callback was registered sent no request
        check_cancelled(cancel, operation)
        yield


@asynccontextmanager
async def async_cancel_scope(cancel: CancelToken | None, connection: Any, operation: str):
    """Run an asyncio statement that a token can interrupt.

    Cancelling the token schedules ``cancel_safe()`` on the event loop, so a
    token tripped from any thread reaches the server. The block fails with
    `Cancelled` if the token was tripped while it ran, even when the
    statement finished before the cancel request arrived. Pending cancel
    requests are awaited before the scope exits so none can hit a later
    statement.
    """
    check_cancelled(cancel, operation)
    if cancel is None:
        yield
        return
    loop = asyncio.get_running_loop()
    cancel_request = getattr(connection, 'cancel_safe', None) or connection.cancel
    pending: list[asyncio.Future] = []

    def send_cancel() -> None:
        result = cancel_request()
        if inspect.isawaitable(result):
            pending.append(asyncio.ensure_future(result))

    try:
        with cancel.bind(lambda: loop.call_soon_threadsafe(send_cancel)):
            check_cancelled(cancel, operation)
            yield
    finally:
        await asyncio.sleep(0)
        for outcome in await asyncio.gather(*pending, return_exceptions=True):
            if isinstance(outcome, Exception):
                logger.warning(f'Cancel request for {operation} failed: {outcome}')
    check_cancelled(cancel, operation)
