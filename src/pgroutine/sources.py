"""
Result sources: how the rows of a routine call arrive.

Two response shapes share one read/close contract:

- `DirectResultSource` wraps a cursor whose statement already produced the
  rows (table/setof functions, ad-hoc queries).
- `CursorResultSource` pages through a named server-side cursor (refcursor)
  with ``FETCH FORWARD n`` each time the previous batch is used up.

Each has an asyncio counterpart over ``psycopg.AsyncConnection``. The invoker
picks the variant when it builds the call; row consumers only ever see the
`ResultSource` interface through a row cursor.

A server-side cursor lives until the end of the transaction that opened it.
Closing a `CursorResultSource` releases the client-side batch cursor only,
unless ``release_server_cursor`` is set; callers must open cursor functions
inside a transaction and end it to free the server object.
"""
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

import psycopg
from pgroutine.cancellation import CancelToken, async_cancel_scope, cancel_scope
from pgroutine.cancellation import check_cancelled
from pgroutine.exceptions import CursorClosed, RoutineExecutionFailed
from pgroutine.exceptions import translate_errors
from pgroutine.sql import close_cursor_sql, fetch_sql
from psycopg.rows import tuple_row

logger = logging.getLogger(__name__)

DEFAULT_FETCH_SIZE = 100


class SourceState(Enum):
    UNOPENED = 'unopened'
    ACTIVE = 'active'
    CLOSED = 'closed'


class _SourceBase:
    """State and metadata shared by every result source."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.state = SourceState.UNOPENED
        self._cursor: Any = None
        self._record: tuple | None = None

    @property
    def record(self) -> tuple | None:
        """The current row, or None before the first or after the last read."""
        return self._record

    @property
    def description(self) -> list | None:
        if self._cursor is None:
            return None
        return self._cursor.description

    @property
    def field_count(self) -> int:
        return len(self.description or ())

    @property
    def records_affected(self) -> int:
        if self._cursor is None:
            return 0
        return max(self._cursor.rowcount, 0)

    @property
    def is_closed(self) -> bool:
        return self.state is SourceState.CLOSED

    def _check_open(self) -> None:
        if self.state is SourceState.CLOSED:
            raise CursorClosed(f'Result of {self.name} is closed')

    def _advance(self, row: tuple | None) -> bool:
        self._record = row
        return row is not None

    def __repr__(self) -> str:
        return f'{type(self).__name__}({self.name!r}, state={self.state.name})'


class _CursorBatch(_SourceBase):
    """Bookkeeping for paging a named server-side cursor.

    ``_read_count`` is the number of rows read from the current batch, -1
    before the first fetch.
    """

    def __init__(self, connection: Any, cursor_name: str,
                 fetch_size: int = DEFAULT_FETCH_SIZE, name: str | None = None,
                 release_server_cursor: bool = False) -> None:
        if fetch_size is None or int(fetch_size) < 1:
            raise ValueError(f'fetch_size must be at least 1, got {fetch_size!r}')
        super().__init__(name or cursor_name)
        self.connection = connection
        self.cursor_name = cursor_name
        self.fetch_size = int(fetch_size)
        self.release_server_cursor = release_server_cursor
        self.fetch_count = 0
        self._read_count = -1
        self._exhausted = False

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def _fetch_needed(self) -> bool:
        return self._read_count < 0 or self._read_count >= self.fetch_size

    def _start_batch(self) -> Any:
        self._read_count = 0
        self.fetch_count += 1
        logger.debug(f'Fetching batch {self.fetch_count} of {self.fetch_size} rows '
                     f'from cursor "{self.cursor_name}" ({self.name})')
        self._cursor = self.connection.cursor(row_factory=tuple_row)
        self.state = SourceState.ACTIVE
        return self._cursor

    def _advance(self, row: tuple | None) -> bool:
        if row is None:
            self._exhausted = True
            logger.debug(f'Cursor "{self.cursor_name}" exhausted after {self.fetch_count} fetch(es)')
        else:
            self._read_count += 1
        return super()._advance(row)


class ResultSource(_SourceBase, ABC):
    """Synchronous row-supplying handle: read-and-advance, then close.
    """

    @abstractmethod
    def read(self, cancel: CancelToken | None = None) -> bool:
        """Advance to the next row; False when there are no more rows."""

    @abstractmethod
    def close(self) -> None:
        """Release the client-side handle. Closing twice is a no-op."""


class DirectResultSource(ResultSource):
    """Pass-through over a cursor whose statement returned the rows directly.
    """

    def __init__(self, cursor: Any, name: str = '<query>') -> None:
        super().__init__(name)
        self._cursor = cursor
        self.state = SourceState.ACTIVE

    def read(self, cancel: CancelToken | None = None) -> bool:
        self._check_open()
        check_cancelled(cancel, f'read from {self.name}')
        with translate_errors(self.name, f'read from {self.name}'):
            row = self._cursor.fetchone()
        return self._advance(row)

    def close(self) -> None:
        if self.state is SourceState.CLOSED:
            return
        try:
            if not self._cursor.closed:
                self._cursor.close()
        finally:
            self.state = SourceState.CLOSED
            self._record = None


class CursorResultSource(_CursorBatch, ResultSource):
    """Rows pulled in ``fetch_size`` batches from a named server-side cursor.

    Reading fetches the next batch on the first read and whenever
    ``fetch_size`` rows of the current batch have been consumed. A read that
    finds no row marks the source exhausted; later reads return False without
    fetching again.
    """

    def read(self, cancel: CancelToken | None = None) -> bool:
        self._check_open()
        check_cancelled(cancel, f'read from {self.name}')
        if self._exhausted:
            return False
        if self._fetch_needed:
            self._fetch(cancel)
        with translate_errors(self.name, f'read from {self.name}'):
            row = self._cursor.fetchone()
        return self._advance(row)

    def _fetch(self, cancel: CancelToken | None) -> None:
        self._close_batch()
        cursor = self._start_batch()
        operation = f'fetch from {self.name}'
        with translate_errors(self.name, operation), cancel_scope(cancel, self.connection, operation):
            cursor.execute(fetch_sql(self.cursor_name, self.fetch_size))

    def _close_batch(self) -> None:
        if self._cursor is not None and not self._cursor.closed:
            self._cursor.close()

    def close(self) -> None:
        if self.state is SourceState.CLOSED:
            return
        try:
            self._close_batch()
            if self.release_server_cursor:
                self._release_server_cursor()
        finally:
            self.state = SourceState.CLOSED
            self._record = None

    def _release_server_cursor(self) -> None:
        with self.connection.cursor() as cursor:
            try:
                with translate_errors(self.name, f'close {self.name}'):
                    cursor.execute(close_cursor_sql(self.cursor_name))
            except RoutineExecutionFailed as err:
                if not isinstance(err.__cause__, psycopg.errors.InvalidCursorName):
                    raise
                logger.debug(f'Cursor "{self.cursor_name}" already released by the server')
                return
        logger.debug(f'Released server cursor "{self.cursor_name}"')


class AsyncResultSource(_SourceBase, ABC):
    """Asyncio row-supplying handle over ``psycopg.AsyncConnection``.
    """

    @abstractmethod
    async def read(self, cancel: CancelToken | None = None) -> bool:
        """Advance to the next row; False when there are no more rows."""

    @abstractmethod
    async def close(self) -> None:
        """Release the client-side handle. Closing twice is a no-op."""


class AsyncDirectResultSource(AsyncResultSource):
    """Asyncio pass-through over a cursor that returned rows directly.
    """

    def __init__(self, cursor: Any, name: str = '<query>') -> None:
        super().__init__(name)
        self._cursor = cursor
        self.state = SourceState.ACTIVE

    async def read(self, cancel: CancelToken | None = None) -> bool:
        self._check_open()
        operation = f'read from {self.name}'
        with translate_errors(self.name, operation):
            async with async_cancel_scope(cancel, self._cursor.connection, operation):
                row = await self._cursor.fetchone()
        return self._advance(row)

    async def close(self) -> None:
        if self.state is SourceState.CLOSED:
            return
        try:
            if not self._cursor.closed:
                await self._cursor.close()
        finally:
            self.state = SourceState.CLOSED
            self._record = None


class AsyncCursorResultSource(_CursorBatch, AsyncResultSource):
    """Asyncio variant of `CursorResultSource`.
    """

    async def read(self, cancel: CancelToken | None = None) -> bool:
        self._check_open()
        check_cancelled(cancel, f'read from {self.name}')
        if self._exhausted:
            return False
        if self._fetch_needed:
            await self._fetch(cancel)
        with translate_errors(self.name, f'read from {self.name}'):
            row = await self._cursor.fetchone()
        return self._advance(row)

    async def _fetch(self, cancel: CancelToken | None) -> None:
        await self._close_batch()
        cursor = self._start_batch()
        operation = f'fetch from {self.name}'
        with translate_errors(self.name, operation):
            async with async_cancel_scope(cancel, self.connection, operation):
                await cursor.execute(fetch_sql(self.cursor_name, self.fetch_size))

    async def _close_batch(self) -> None:
        if self._cursor is not None and not self._cursor.closed:
            await self._cursor.close()

    async def close(self) -> None:
        if self.state is SourceState.CLOSED:
            return
        try:
            await self._close_batch()
            if self.release_server_cursor:
                await self._release_server_cursor()
        finally:
            self.state = SourceState.CLOSED
            self._record = None

    async def _release_server_cursor(self) -> None:
        async with self.connection.cursor() as cursor:
            try:
                with translate_errors(self.name, f'close {self.name}'):
                    await cursor.execute(close_cursor_sql(self.cursor_name))
            except RoutineExecutionFailed as err:
                if not isinstance(err.__cause__, psycopg.errors.InvalidCursorName):
                    raise
                logger.debug(f'Cursor "{self.cursor_name}" already released by the server')
                return
        logger.debug(f'Released server cursor "{self.cursor_name}"')
