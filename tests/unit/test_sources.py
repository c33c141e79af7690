"""Unit tests for direct and server-side cursor result sources."""

import psycopg
import pytest
from pgroutine.cancellation import CancelToken
from pgroutine.exceptions import Cancelled, CursorClosed, RoutineExecutionFailed
from pgroutine.sources import CursorResultSource, DirectResultSource, SourceState

from tests.fixtures.fakes import INT4, TEXT

COLUMNS = [('pax_id', INT4), ('full_name', TEXT)]
ROWS = [(i, f'Passenger {i}') for i in range(1, 11)]


def drain(source):
    rows = []
    while source.read():
        rows.append(source.record)
    return rows


def direct_source(connection, rows=ROWS):
    connection.on('get_boarding_pax', COLUMNS, rows)
    cursor = connection.cursor()
    cursor.execute('SELECT * FROM get_boarding_pax()')
    return DirectResultSource(cursor, 'get_boarding_pax')


def cursor_source(connection, fetch_size, rows=ROWS, **kwargs):
    connection.open_portal('<unnamed portal 1>', COLUMNS, rows)
    return CursorResultSource(connection, '<unnamed portal 1>', fetch_size,
                              name='get_boarding_pax_cursor', **kwargs)


# =============================================================================
# Direct results
# =============================================================================


class TestDirectResultSource:
    """Pass-through over rows returned by the statement itself."""

    def test_reads_all_rows_in_order(self, fake_connection):
        source = direct_source(fake_connection)
        assert drain(source) == ROWS
        assert source.record is None

    def test_metadata(self, fake_connection):
        source = direct_source(fake_connection)
        assert source.field_count == 2
        assert [d.name for d in source.description] == ['pax_id', 'full_name']
        assert source.records_affected == 10
        assert source.state is SourceState.ACTIVE

    def test_empty_result(self, fake_connection):
        source = direct_source(fake_connection, rows=[])
        assert not source.read()
        assert source.field_count == 2

    def test_close_is_idempotent(self, fake_connection):
        source = direct_source(fake_connection)
        source.close()
        source.close()
        assert source.is_closed
        assert fake_connection.cursors[0].closed

    def test_read_after_close_raises(self, fake_connection):
        source = direct_source(fake_connection)
        source.close()
        with pytest.raises(CursorClosed):
            source.read()

    def test_cancelled_token_stops_read(self, fake_connection):
        source = direct_source(fake_connection)
        token = CancelToken()
        token.cancel()
        with pytest.raises(Cancelled):
            source.read(token)
        assert not source.is_closed


# =============================================================================
# Server-side cursor paging
# =============================================================================


class TestCursorResultSource:
    """Batched FETCH FORWARD over a named cursor."""

    @pytest.mark.parametrize('fetch_size', [1, 7, 100, len(ROWS), len(ROWS) + 1])
    def test_same_rows_as_direct(self, fake_connection, fetch_size):
        expected = drain(direct_source(fake_connection))
        assert drain(cursor_source(fake_connection, fetch_size)) == expected

    @pytest.mark.parametrize('fetch_size', [1, 7, 100, len(ROWS), len(ROWS) + 1])
    def test_fetch_count(self, fake_connection, fetch_size):
        source = cursor_source(fake_connection, fetch_size)
        drain(source)
        assert source.fetch_count == len(ROWS) // fetch_size + 1
        assert all(count == fetch_size for _, count, _ in fake_connection.fetches)

    def test_fetch_statements(self, fake_connection):
        source = cursor_source(fake_connection, 7)
        drain(source)
        assert fake_connection.statements == [
            'FETCH FORWARD 7 IN "<unnamed portal 1>"',
            'FETCH FORWARD 7 IN "<unnamed portal 1>"',
        ]
        assert [got for _, _, got in fake_connection.fetches] == [7, 3]

    def test_no_fetch_before_first_read(self, fake_connection):
        source = cursor_source(fake_connection, 5)
        assert source.state is SourceState.UNOPENED
        assert source.description is None
        assert fake_connection.executed == []

    def test_exhausted_source_does_not_fetch_again(self, fake_connection):
        source = cursor_source(fake_connection, 100)
        drain(source)
        assert source.exhausted
        fetches = source.fetch_count
        assert not source.read()
        assert not source.read()
        assert source.fetch_count == fetches

    def test_empty_cursor(self, fake_connection):
        source = cursor_source(fake_connection, 5, rows=[])
        assert not source.read()
        assert source.fetch_count == 1
        assert source.exhausted

    def test_metadata_from_current_batch(self, fake_connection):
        source = cursor_source(fake_connection, 4)
        source.read()
        assert source.field_count == 2
        assert source.records_affected == 4
        assert source.name == 'get_boarding_pax_cursor'
        assert source.cursor_name == '<unnamed portal 1>'

    @pytest.mark.parametrize('fetch_size', [0, -1, None])
    def test_invalid_fetch_size(self, fake_connection, fetch_size):
        with pytest.raises(ValueError, match='fetch_size'):
            CursorResultSource(fake_connection, 'c1', fetch_size)

    def test_previous_batch_closed_before_next_fetch(self, fake_connection):
        source = cursor_source(fake_connection, 3)
        for _ in range(4):
            source.read()
        first, second = fake_connection.cursors
        assert first.closed
        assert not second.closed

    def test_close_keeps_server_cursor_by_default(self, fake_connection):
        source = cursor_source(fake_connection, 3)
        source.read()
        source.close()
        source.close()
        assert source.is_closed
        assert fake_connection.released == []
        assert '<unnamed portal 1>' in fake_connection.portals
        assert all(cursor.closed for cursor in fake_connection.cursors)

    def test_read_after_close_raises(self, fake_connection):
        source = cursor_source(fake_connection, 3)
        source.close()
        with pytest.raises(CursorClosed):
            source.read()

    def test_release_server_cursor(self, fake_connection):
        source = cursor_source(fake_connection, 3, release_server_cursor=True)
        source.read()
        source.close()
        assert fake_connection.released == ['<unnamed portal 1>']
        assert fake_connection.statements[-1] == 'CLOSE "<unnamed portal 1>"'

    def test_release_of_missing_cursor_is_ignored(self, fake_connection):
        source = CursorResultSource(fake_connection, 'gone', 3, release_server_cursor=True)
        source.close()
        assert source.is_closed
        assert fake_connection.released == []

    def test_release_failure_propagates(self, fake_connection):
        fake_connection.fail_on('CLOSE', psycopg.errors.InsufficientPrivilege('permission denied'))
        source = cursor_source(fake_connection, 3, release_server_cursor=True)
        with pytest.raises(RoutineExecutionFailed):
            source.close()
        assert source.is_closed

    def test_fetch_error_is_translated(self, fake_connection):
        fake_connection.fail_on('FETCH', psycopg.errors.InvalidCursorName('cursor "c1" does not exist'))
        source = CursorResultSource(fake_connection, 'c1', 3, name='get_boarding_pax_cursor')
        with pytest.raises(RoutineExecutionFailed) as exc_info:
            source.read()
        assert exc_info.value.routine == 'get_boarding_pax_cursor'
        assert isinstance(exc_info.value.__cause__, psycopg.errors.InvalidCursorName)

    def test_server_cancel_becomes_cancelled(self, fake_connection):
        fake_connection.fail_on('FETCH', psycopg.errors.QueryCanceled('canceling statement due to user request'))
        source = cursor_source(fake_connection, 3)
        with pytest.raises(Cancelled):
            source.read()

    def test_cancelled_token_stops_fetch(self, fake_connection):
        source = cursor_source(fake_connection, 3)
        token = CancelToken()
        token.cancel()
        with pytest.raises(Cancelled):
            source.read(token)
        assert fake_connection.executed == []
        assert not source.is_closed
