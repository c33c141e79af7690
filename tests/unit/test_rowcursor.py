"""Unit tests for the row cursor facade: lookup, typed accessors, draining."""

import datetime
from decimal import Decimal

import pandas as pd
import pytest
from pgroutine.cancellation import CancelToken
from pgroutine.exceptions import Cancelled, CursorClosed, CursorStateError
from pgroutine.exceptions import FieldNotFound, RoutineExecutionFailed
from pgroutine.options import iterdict_data_loader
from pgroutine.rowcursor import RowCursor
from pgroutine.sources import DirectResultSource, ResultSource, SourceState

from tests.fixtures.fakes import BOOL, BYTEA, FLOAT8, INT4, INT4_ARRAY, NUMERIC
from tests.fixtures.fakes import TEXT, TIMESTAMP

MANIFEST = [
    ('pax_id', INT4),
    ('full_name', TEXT),
    ('fare', NUMERIC),
    ('ratio', FLOAT8),
    ('boarded', BOOL),
    ('departs_at', TIMESTAMP),
    ('digest', BYTEA),
    ('seat_ids', INT4_ARRAY),
]

FULL_ROW = (1, 'Alice Martin', Decimal('350.00'), 0.5, True,
            datetime.datetime(2025, 3, 11, 8, 30), b'\xde\xad\xbe\xef', [1, 2])
NULL_ROW = (2, None, None, None, None, None, None, None)

PAX = [('pax_id', INT4), ('full_name', TEXT)]
PAX_ROWS = [(1, 'Alice Martin'), (2, 'Bob Chen'), (3, 'Charlie Diaz')]


def row_cursor(connection, columns, rows, name='get_boarding_pax', **kwargs):
    connection.on(name, columns, rows)
    cursor = connection.cursor()
    cursor.execute(f'SELECT * FROM {name}()')
    return RowCursor(DirectResultSource(cursor, name), **kwargs)


@pytest.fixture
def manifest(fake_connection):
    return row_cursor(fake_connection, MANIFEST, [FULL_ROW, NULL_ROW])


@pytest.fixture
def pax(fake_connection):
    return row_cursor(fake_connection, PAX, PAX_ROWS)


class FailingSource(ResultSource):

    def __init__(self):
        super().__init__('broken_routine')
        self.state = SourceState.ACTIVE
        self.closes = 0

    def read(self, cancel=None):
        raise RoutineExecutionFailed(self.name, 'connection lost')

    def close(self):
        self.closes += 1
        self.state = SourceState.CLOSED


# =============================================================================
# Field lookup
# =============================================================================


class TestFieldLookup:
    """Name and ordinal resolution."""

    def test_value_by_name_and_ordinal(self, manifest):
        assert manifest.read()
        assert manifest.get_value('full_name') == 'Alice Martin'
        assert manifest.get_value(1) == 'Alice Martin'

    def test_case_insensitive_fallback(self, manifest):
        manifest.read()
        assert manifest.get_value('FULL_NAME') == 'Alice Martin'
        assert manifest.field_exists('Pax_Id')

    def test_unknown_field_raises_and_is_not_cached(self, manifest):
        manifest.read()
        with pytest.raises(FieldNotFound) as exc_info:
            manifest.get_value('middle_name')
        assert exc_info.value.name == 'middle_name'
        assert isinstance(exc_info.value, KeyError)
        assert 'middle_name' not in manifest._field_cache
        with pytest.raises(FieldNotFound):
            manifest.get_value('middle_name')

    def test_found_names_are_cached(self, manifest):
        manifest.read()
        manifest.get_value('fare')
        assert manifest._field_cache == {'fare': 2}

    def test_field_exists(self, manifest):
        assert manifest.field_exists('digest')
        assert not manifest.field_exists('middle_name')

    def test_ordinal_out_of_range(self, manifest):
        manifest.read()
        with pytest.raises(IndexError):
            manifest.get_value(8)

    def test_field_metadata(self, manifest):
        assert manifest.field_count == 8
        assert manifest.get_field_name(1) == 'full_name'
        assert manifest.get_field_type(0) is int
        assert manifest.get_field_type(2) is Decimal
        assert [c.name for c in manifest.columns] == [name for name, _ in MANIFEST]
        assert manifest.records_affected == 2

    def test_no_current_row(self, manifest):
        with pytest.raises(CursorStateError):
            manifest.get_value('pax_id')

    def test_past_last_row(self, pax):
        while pax.read():
            pass
        with pytest.raises(CursorStateError):
            pax.get_value('pax_id')


# =============================================================================
# Typed accessors
# =============================================================================


class TestTypedAccessors:
    """Null-safe typed reads of the current row."""

    def test_values_of_full_row(self, manifest):
        manifest.read()
        assert manifest.get_int('pax_id') == 1
        assert manifest.get_int64('pax_id') == 1
        assert manifest.get_int16('pax_id') == 1
        assert manifest.get_string('full_name') == 'Alice Martin'
        assert manifest.get_decimal('fare') == Decimal('350.00')
        assert manifest.get_double('ratio') == 0.5
        assert manifest.get_bool('boarded') is True
        assert manifest.get_date('departs_at') == datetime.datetime(2025, 3, 11, 8, 30)
        assert manifest.get_list_number('seat_ids') == [1, 2]

    def test_binary_as_upper_hex(self, manifest):
        manifest.read()
        assert manifest.get_string('digest') == 'DEADBEEF'

    def test_nulls(self, manifest):
        manifest.read()
        manifest.read()
        assert manifest.is_null('full_name')
        assert not manifest.is_null('pax_id')
        assert manifest.get_string('full_name') == ''
        assert manifest.get_int('full_name') is None
        assert manifest.get_decimal('fare') is None
        assert manifest.get_double('ratio') is None
        assert manifest.get_bool('boarded') is None
        assert manifest.get_date('departs_at') is None
        assert manifest.get_list_number('seat_ids') is None

    def test_not_null_variants(self, manifest):
        manifest.read()
        manifest.read()
        assert manifest.get_int_not_null('fare') == 0
        assert manifest.get_int16_not_null('fare') == 0
        assert manifest.get_int64_not_null('fare') == 0
        assert manifest.get_decimal_not_null('fare') == Decimal(0)
        assert manifest.get_double_not_null('ratio') == 0.0
        assert manifest.get_bool_not_null('boarded') is False

    def test_get_field_value_checks_kind(self, manifest):
        manifest.read()
        assert manifest.get_field_value('pax_id', int) == 1
        assert manifest.get_field_value('fare') == Decimal('350.00')
        with pytest.raises(TypeError):
            manifest.get_field_value('full_name', int)
        manifest.read()
        assert manifest.get_field_value('full_name', int) is None

    def test_list_number_rejects_scalars(self, manifest):
        manifest.read()
        with pytest.raises(TypeError):
            manifest.get_list_number('pax_id')


class TestConversions:
    """Conversions applied when the column type differs from the accessor."""

    @pytest.fixture
    def mixed(self, fake_connection):
        columns = [('a', FLOAT8), ('b', FLOAT8), ('c', INT4), ('d', TEXT), ('e', TEXT),
                   ('f', TIMESTAMP), ('g', TEXT)]
        row = (2.5, 3.5, 40000, 'true', '42', datetime.date(2025, 3, 11), '2025-03-11 08:30')
        cursor = row_cursor(fake_connection, columns, [row], name='mixed')
        cursor.read()
        return cursor

    def test_ints_round_half_to_even(self, mixed):
        assert mixed.get_int('a') == 2
        assert mixed.get_int('b') == 4

    def test_int_from_text(self, mixed):
        assert mixed.get_int('e') == 42

    def test_int16_overflow(self, mixed):
        assert mixed.get_int('c') == 40000
        with pytest.raises(OverflowError):
            mixed.get_int16('c')

    def test_decimal_from_double(self, mixed):
        assert mixed.get_decimal('a') == Decimal('2.5')
        assert mixed.get_decimal('c') == Decimal(40000)

    def test_bool_from_text(self, mixed):
        assert mixed.get_bool('d') is True
        with pytest.raises(ValueError):
            mixed.get_bool('e')

    def test_date_promotion(self, mixed):
        assert mixed.get_date('f') == datetime.datetime(2025, 3, 11)
        assert mixed.get_date('g') == datetime.datetime(2025, 3, 11, 8, 30)

    def test_date_from_number_raises(self, mixed):
        with pytest.raises(TypeError):
            mixed.get_date('c')


# =============================================================================
# Iteration and draining
# =============================================================================


class TestIteration:
    """Row iteration and copying into tables."""

    def test_iterate_attribute_rows(self, pax):
        rows = list(pax)
        assert [row.pax_id for row in rows] == [1, 2, 3]
        assert rows[1]['full_name'] == 'Bob Chen'
        assert not pax.is_closed

    def test_copy_to_dataframe(self, pax):
        df = pax.copy_to_table()
        assert isinstance(df, pd.DataFrame)
        assert list(df.columns) == ['pax_id', 'full_name']
        assert df['full_name'].tolist() == ['Alice Martin', 'Bob Chen', 'Charlie Diaz']
        assert df.attrs['name'] == 'get_boarding_pax'
        assert 'pax_id' in df.attrs['column_types']
        assert pax.is_closed

    def test_copy_remaining_rows_only(self, pax):
        pax.read()
        df = pax.copy_to_table()
        assert df['pax_id'].tolist() == [2, 3]

    def test_copy_empty_result_keeps_columns(self, fake_connection):
        rows = row_cursor(fake_connection, PAX, [])
        df = rows.copy_to_table()
        assert df.empty
        assert list(df.columns) == ['pax_id', 'full_name']

    def test_copy_with_dict_loader(self, fake_connection):
        rows = row_cursor(fake_connection, PAX, PAX_ROWS[:1], data_loader=iterdict_data_loader)
        assert rows.copy_to_table() == [{'pax_id': 1, 'full_name': 'Alice Martin'}]

    def test_append_to_existing_dataframe(self, pax):
        table = pd.DataFrame({'id': [0], 'name': ['Crew Member']})
        table.attrs['name'] = 'manifest'
        df = pax.copy_to_table(table)
        assert list(df.columns) == ['id', 'name']
        assert df['id'].tolist() == [0, 1, 2, 3]
        assert df['name'].tolist()[-1] == 'Charlie Diaz'
        assert df.attrs['name'] == 'manifest'

    def test_append_to_empty_dataframe(self, pax):
        df = pax.copy_to_table(pd.DataFrame())
        assert len(df) == 3
        assert df.attrs['name'] == 'get_boarding_pax'

    def test_append_to_list(self, fake_connection):
        rows = row_cursor(fake_connection, PAX, PAX_ROWS, data_loader=iterdict_data_loader)
        table = [{'pax_id': 0, 'full_name': 'Crew Member'}]
        result = rows.copy_to_table(table)
        assert result is table
        assert [row['pax_id'] for row in table] == [0, 1, 2, 3]

    def test_copy_closes_on_error(self):
        source = FailingSource()
        rows = RowCursor(source)
        with pytest.raises(RoutineExecutionFailed):
            rows.copy_to_table()
        assert rows.is_closed
        assert source.closes == 1


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """Closing, disposing and cancellation."""

    def test_close_is_idempotent(self, pax, fake_connection):
        pax.close()
        pax.close()
        assert pax.is_closed
        assert fake_connection.cursors[0].closed

    def test_dispose_is_close(self, pax):
        pax.dispose()
        assert pax.is_closed

    def test_context_manager_closes(self, pax):
        with pax as rows:
            rows.read()
        assert pax.is_closed

    def test_use_after_close_raises(self, pax):
        pax.read()
        pax.close()
        with pytest.raises(CursorClosed):
            pax.read()
        with pytest.raises(CursorClosed):
            pax.get_value('pax_id')
        with pytest.raises(CursorClosed):
            pax.copy_to_table()
        with pytest.raises(CursorClosed):
            pax.field_count

    def test_closed_is_a_state_error(self):
        assert issubclass(CursorClosed, CursorStateError)

    def test_cancelled_read(self, pax):
        token = CancelToken()
        assert pax.read(token)
        token.cancel()
        with pytest.raises(Cancelled):
            pax.read(token)
        assert not pax.is_closed

    def test_name_and_repr(self, pax):
        assert pax.name == 'get_boarding_pax'
        assert repr(pax) == "RowCursor('get_boarding_pax', open)"
