"""Unit tests for cooperative cancellation."""

import asyncio
import threading
from contextlib import contextmanager

import pytest
from pgroutine.cancellation import CancelToken, async_cancel_scope, cancel_scope
from pgroutine.cancellation import check_cancelled
from pgroutine.exceptions import Cancelled


class CancelOnlyConnection:
    """Connection exposing only the blocking ``cancel`` call."""

    def __init__(self):
        self.cancels = 0

    def cancel(self):
        self.cancels += 1


class LateCancelToken(CancelToken):
    """Token cancelled just before a scope registers its callback."""

    @contextmanager
    def bind(self, callback):
        self.cancel()
        with super().bind(callback):
            yield self


class TestCancelToken:
    """Token state and callbacks."""

    def test_initial_state(self):
        token = CancelToken()
        assert not token.cancelled
        token.raise_if_cancelled('read')

    def test_cancel(self):
        token = CancelToken()
        token.cancel()
        assert token.cancelled
        with pytest.raises(Cancelled) as exc_info:
            token.raise_if_cancelled('fetch from get_boarding_pax_cursor')
        assert exc_info.value.operation == 'fetch from get_boarding_pax_cursor'
        assert str(exc_info.value) == 'fetch from get_boarding_pax_cursor was cancelled'

    def test_callbacks_run_once(self):
        token = CancelToken()
        calls = []
        with token.bind(lambda: calls.append(1)):
            token.cancel()
            token.cancel()
        assert calls == [1]

    def test_callback_unbound_after_block(self):
        token = CancelToken()
        calls = []
        with token.bind(lambda: calls.append(1)):
            pass
        token.cancel()
        assert calls == []

    def test_cancel_from_another_thread(self):
        token = CancelToken()
        fired = threading.Event()
        with token.bind(fired.set):
            thread = threading.Thread(target=token.cancel)
            thread.start()
            thread.join()
        assert fired.is_set()
        assert token.cancelled


class TestCheckCancelled:

    def test_no_token(self):
        check_cancelled(None, 'call approve_flight')

    def test_cancelled_token(self):
        token = CancelToken()
        token.cancel()
        with pytest.raises(Cancelled):
            check_cancelled(token, 'call approve_flight')


class TestCancelScope:
    """Wiring a token to the connection's cancel request."""

    def test_no_token_is_a_no_op(self, fake_connection):
        with cancel_scope(None, fake_connection, 'call approve_flight'):
            pass
        assert fake_connection.cancel_requests == 0

    def test_cancel_inside_scope_uses_cancel_safe(self, fake_connection):
        token = CancelToken()
        with cancel_scope(token, fake_connection, 'call approve_flight'):
            token.cancel()
        assert fake_connection.cancel_requests == 1

    def test_cancel_after_scope_sends_nothing(self, fake_connection):
        token = CancelToken()
        with cancel_scope(token, fake_connection, 'call approve_flight'):
            pass
        token.cancel()
        assert fake_connection.cancel_requests == 0

    def test_falls_back_to_cancel(self):
        connection = CancelOnlyConnection()
        token = CancelToken()
        with cancel_scope(token, connection, 'call approve_flight'):
            token.cancel()
        assert connection.cancels == 1

    def test_cancelled_token_raises_before_block(self, fake_connection):
        token = CancelToken()
        token.cancel()
        entered = []
        with pytest.raises(Cancelled):
            with cancel_scope(token, fake_connection, 'call approve_flight'):
                entered.append(True)
        assert entered == []
        assert fake_connection.cancel_requests == 0

    def test_cancel_before_callback_registered(self, fake_connection):
        token = LateCancelToken()
        entered = []
        with pytest.raises(Cancelled):
            with cancel_scope(token, fake_connection, 'call approve_flight'):
                entered.append(True)
        assert entered == []
        assert fake_connection.cancel_requests == 0


class TestAsyncCancelScope:
    """Wiring a token to an asyncio connection's cancel request."""

    def test_no_token_is_a_no_op(self, fake_async_connection):

        async def run():
            async with async_cancel_scope(None, fake_async_connection, 'call approve_flight'):
                pass

        asyncio.run(run())
        assert fake_async_connection.cancel_requests == 0

    def test_cancel_inside_scope_fails_the_operation(self, fake_async_connection):
        token = CancelToken()

        async def run():
            async with async_cancel_scope(token, fake_async_connection, 'call approve_flight'):
                token.cancel()

        with pytest.raises(Cancelled, match='call approve_flight'):
            asyncio.run(run())
        assert fake_async_connection.cancel_requests == 1

    def test_cancel_from_another_thread(self, fake_async_connection):
        token = CancelToken()

        async def run():
            async with async_cancel_scope(token, fake_async_connection, 'fetch from get_boarding_pax_cursor'):
                thread = threading.Thread(target=token.cancel)
                thread.start()
                thread.join()
                await asyncio.sleep(0)

        with pytest.raises(Cancelled):
            asyncio.run(run())
        assert fake_async_connection.cancel_requests == 1

    def test_cancel_after_scope_sends_nothing(self, fake_async_connection):
        token = CancelToken()

        async def run():
            async with async_cancel_scope(token, fake_async_connection, 'call approve_flight'):
                pass

        asyncio.run(run())
        token.cancel()
        assert fake_async_connection.cancel_requests == 0

    def test_cancel_before_callback_registered(self, fake_async_connection):
        token = LateCancelToken()
        entered = []

        async def run():
            async with async_cancel_scope(token, fake_async_connection, 'call approve_flight'):
                entered.append(True)

        with pytest.raises(Cancelled):
            asyncio.run(run())
        assert entered == []
        assert fake_async_connection.cancel_requests == 0


if __name__ == '__main__':
    __import__('pytest').main([__file__])
