"""Unit tests for ad-hoc SQL execution."""

import psycopg
import pytest
from pgroutine.cancellation import CancelToken
from pgroutine.exceptions import Cancelled, RoutineExecutionFailed
from pgroutine.parameters import ParameterSet
from pgroutine.query import execute_query
from pgroutine.rowcursor import RowCursor
from pgroutine.types import WireType

from tests.fixtures.fakes import INT4, TEXT

FLIGHTS_SQL = 'select flight_id, status from customer_manager_utils.flight where dest_id = %(dest_id)s'


@pytest.fixture
def flights(fake_connection):
    fake_connection.on('customer_manager_utils.flight', [('flight_id', INT4), ('status', TEXT)],
                       [(10, 'scheduled'), (11, 'approved')])
    return fake_connection


def test_mapping_parameters(flights):
    """Plain mappings are marshalled like routine arguments"""
    rows = execute_query(flights, FLIGHTS_SQL, {'dest_id': 42})
    assert isinstance(rows, RowCursor)
    assert rows.name == '<query>'
    assert [row.flight_id for row in rows] == [10, 11]
    assert flights.executed == [(FLIGHTS_SQL, {'dest_id': 42})]


def test_parameter_set(flights):
    params = ParameterSet()
    params.add('dest_id', 42, WireType.BIGINT)
    df = execute_query(flights, FLIGHTS_SQL, params).copy_to_table()
    assert df['status'].tolist() == ['scheduled', 'approved']
    assert df.attrs['name'] == '<query>'


def test_no_parameters(fake_connection):
    rows = execute_query(fake_connection, 'set search_path to customer_manager_utils')
    assert not rows.read()
    assert fake_connection.executed == [('set search_path to customer_manager_utils', {})]


def test_error_translated_and_cursor_closed(fake_connection):
    fake_connection.fail_on('no_such_table', psycopg.errors.UndefinedTable('relation "no_such_table" does not exist'))
    with pytest.raises(RoutineExecutionFailed) as exc_info:
        execute_query(fake_connection, 'select * from no_such_table')
    assert exc_info.value.routine == '<query>'
    assert fake_connection.cursors[0].closed


def test_cancelled_query(flights):
    token = CancelToken()
    token.cancel()
    with pytest.raises(Cancelled):
        execute_query(flights, FLIGHTS_SQL, {'dest_id': 42}, cancel=token)
    assert flights.executed == []
    assert flights.cursors[0].closed


if __name__ == '__main__':
    __import__('pytest').main([__file__])
