"""
Row cursor facade over a result source.

A `RowCursor` owns exactly one result source and adds what callers need to
consume rows: a field name to ordinal cache, typed null-safe accessors and
draining into a table through the configured data loader.

Examples
    with invoker.exec_func_dataset('get_boarding_pax', params) as rows:
        while rows.read():
            print(rows.get_int('pax_id'), rows.get_string('full_name'))
"""
import datetime
import logging
from collections.abc import Callable
from decimal import Decimal
from typing import Any

import pandas as pd
from dateutil import parser as dateparser
from pgroutine.cancellation import CancelToken
from pgroutine.exceptions import CursorClosed, CursorStateError, FieldNotFound
from pgroutine.options import pandas_numpy_data_loader
from pgroutine.sources import AsyncResultSource, ResultSource
from pgroutine.types import INT16_RANGE, INT32_RANGE, INT64_RANGE
from pgroutine.types import columns_from_description, resolve_type

from libb import attrdict

logger = logging.getLogger(__name__)

__all__ = ['RowCursor', 'AsyncRowCursor']

Field = int | str


def _to_int(value: Any, bounds: tuple[int, int]) -> int:
    """Convert to int rounding half to even, raising when out of range."""
    if isinstance(value, str):
        value = Decimal(value.strip())
    if isinstance(value, (float, Decimal)):
        value = round(value)
    value = int(value)
    if not bounds[0] <= value <= bounds[1]:
        raise OverflowError(f'{value} is outside the range {bounds[0]}..{bounds[1]}')
    return value


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value if isinstance(value, (int, str)) else str(value))


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered not in {'true', 'false'}:
            raise ValueError(f'String {value!r} is not a valid boolean')
        return lowered == 'true'
    return bool(value)


def _to_datetime(value: Any) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time.min)
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, str):
        return dateparser.parse(value)
    raise TypeError(f'Cannot convert {type(value).__name__} to datetime')


class _RecordAccessors:
    """Field lookup and typed accessors over the current record.

    Subclasses set ``_source``, ``_closed`` and ``_field_cache``.
    """

    _source: Any
    _closed: bool
    _field_cache: dict[str, int] | None

    def _ensure_open(self) -> None:
        if self._closed:
            raise CursorClosed(f'Row cursor {self.name} is closed')

    @property
    def name(self) -> str:
        return self._name

    @property
    def field_count(self) -> int:
        self._ensure_open()
        return self._source.field_count

    @property
    def records_affected(self) -> int:
        self._ensure_open()
        return self._source.records_affected

    @property
    def description(self) -> list | None:
        self._ensure_open()
        return self._source.description

    @property
    def columns(self) -> list:
        """Column metadata of the result."""
        return columns_from_description(self.description)

    def _field_names(self) -> list[str]:
        return [d.name for d in (self._source.description or ())]

    def _field_index(self, name: str) -> int:
        """Ordinal of a named field; exact match first, then case-insensitive.

        Found names are cached for the life of the cursor. An unknown name
        raises `FieldNotFound` and leaves the cache untouched.
        """
        if name in self._field_cache:
            return self._field_cache[name]
        names = self._field_names()
        if name in names:
            index = names.index(name)
        else:
            lowered = [n.lower() for n in names]
            if name.lower() not in lowered:
                raise FieldNotFound(name)
            index = lowered.index(name.lower())
        self._field_cache[name] = index
        return index

    def _record(self) -> tuple:
        self._ensure_open()
        record = self._source.record
        if record is None:
            raise CursorStateError(f'Row cursor {self.name} has no current row')
        return record

    def _ordinal(self, field: Field) -> int:
        if isinstance(field, str):
            return self._field_index(field)
        if not 0 <= field < self.field_count:
            raise IndexError(f'Field index {field} out of range 0..{self.field_count - 1}')
        return field

    def get_value(self, field: Field) -> Any:
        """Raw value of a field by ordinal or name."""
        self._ensure_open()
        return self._record()[self._ordinal(field)]

    def get_field_name(self, index: int) -> str:
        self._ensure_open()
        return self._field_names()[self._ordinal(index)]

    def get_field_type(self, index: int) -> type:
        """Python type for the column's PostgreSQL type."""
        self._ensure_open()
        return resolve_type(self._source.description[self._ordinal(index)].type_code)

    def field_exists(self, name: str) -> bool:
        self._ensure_open()
        try:
            self._field_index(name)
        except FieldNotFound:
            return False
        return True

    def is_null(self, field: Field) -> bool:
        return self.get_value(field) is None

    def get_field_value(self, name: str, kind: type | None = None) -> Any:
        """Value of a named field, checked against ``kind`` when given.

        Raises
            TypeError: If the value is not NULL and not an instance of ``kind``
        """
        value = self.get_value(name)
        if value is None or kind is None or isinstance(value, kind):
            return value
        raise TypeError(f'Field {name} holds {type(value).__name__}, not {kind.__name__}')

    def get_string(self, field: Field) -> str:
        """Text of a field; '' on NULL, upper-case hex for binary values."""
        value = self.get_value(field)
        if value is None:
            return ''
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value).hex().upper()
        return str(value)

    def _convert(self, field: Field, convert: Callable[[Any], Any]) -> Any:
        value = self.get_value(field)
        if value is None:
            return None
        return convert(value)

    def get_int(self, field: Field) -> int | None:
        return self._convert(field, lambda v: _to_int(v, INT32_RANGE))

    def get_int16(self, field: Field) -> int | None:
        return self._convert(field, lambda v: _to_int(v, INT16_RANGE))

    def get_int64(self, field: Field) -> int | None:
        return self._convert(field, lambda v: _to_int(v, INT64_RANGE))

    def get_decimal(self, field: Field) -> Decimal | None:
        return self._convert(field, _to_decimal)

    def get_double(self, field: Field) -> float | None:
        return self._convert(field, float)

    def get_bool(self, field: Field) -> bool | None:
        return self._convert(field, _to_bool)

    def get_date(self, field: Field) -> datetime.datetime | None:
        return self._convert(field, _to_datetime)

    def get_list_number(self, field: Field) -> list[int] | None:
        """Integer array field as a list."""
        value = self.get_value(field)
        if value is None:
            return None
        if not isinstance(value, (list, tuple)):
            raise TypeError(f'Field {field} holds {type(value).__name__}, not an array')
        return [None if v is None else int(v) for v in value]

    def get_int_not_null(self, field: Field) -> int:
        value = self.get_int(field)
        return 0 if value is None else value

    def get_int16_not_null(self, field: Field) -> int:
        value = self.get_int16(field)
        return 0 if value is None else value

    def get_int64_not_null(self, field: Field) -> int:
        value = self.get_int64(field)
        return 0 if value is None else value

    def get_double_not_null(self, field: Field) -> float:
        value = self.get_double(field)
        return 0.0 if value is None else value

    def get_decimal_not_null(self, field: Field) -> Decimal:
        value = self.get_decimal(field)
        return Decimal(0) if value is None else value

    def get_bool_not_null(self, field: Field) -> bool:
        value = self.get_bool(field)
        return False if value is None else value

    def _current_row(self) -> attrdict:
        return attrdict(zip(self._field_names(), self._record()))

    def _load(self, rows: list[dict], table: Any) -> Any:
        result = self._data_loader(rows, self.columns, table_name=self.name)
        if isinstance(result, pd.DataFrame):
            result.attrs['name'] = self.name
        if table is None:
            return result
        if isinstance(table, pd.DataFrame):
            if len(result.columns) == len(table.columns):
                result.columns = table.columns
            attrs = dict(table.attrs)
            table = pd.concat([table, result], ignore_index=True) if len(table) else result
            table.attrs.update(attrs)
            return table
        table.extend(result)
        return table

    def __repr__(self) -> str:
        state = 'closed' if self._closed else 'open'
        return f'{type(self).__name__}({self.name!r}, {state})'


class RowCursor(_RecordAccessors):
    """Cursor-like reader over a `ResultSource`.

    Closing (or disposing) releases the source; any later use raises
    `CursorClosed`. Closing twice is a no-op.
    """

    def __init__(self, source: ResultSource, data_loader: Callable[..., Any] | None = None,
                 name: str | None = None) -> None:
        self._source = source
        self._data_loader = data_loader or pandas_numpy_data_loader
        self._name = name or source.name
        self._field_cache = {}
        self._closed = False

    def __enter__(self) -> 'RowCursor':
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        self.close()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def read(self, cancel: CancelToken | None = None) -> bool:
        """Advance to the next row. Returns False when no rows remain."""
        self._ensure_open()
        return self._source.read(cancel)

    def __iter__(self):
        """Iterate the remaining rows as attribute dictionaries."""
        while self.read():
            yield self._current_row()

    def copy_to_table(self, table: Any = None) -> Any:
        """Drain the remaining rows into a table and close the cursor.

        The table is built by the data loader (a pandas DataFrame by default,
        with column metadata in ``attrs['column_types']``). When an existing
        table is given, the rows are appended to it by column position.
        The source is closed even if reading fails.
        """
        self._ensure_open()
        try:
            rows = [dict(row) for row in self]
            logger.debug(f'Copied {len(rows)} rows from {self.name}')
            return self._load(rows, table)
        finally:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        try:
            if not self._source.is_closed:
                self._source.close()
        finally:
            self._closed = True
            self._field_cache = None
            logger.debug(f'Closed row cursor {self.name}')

    dispose = close


class AsyncRowCursor(_RecordAccessors):
    """Asyncio variant of `RowCursor` over an `AsyncResultSource`.

    Reading, draining and closing are coroutines; the typed accessors work on
    the current record without I/O.

    Examples
        async with await invoker.exec_func_dataset('get_boarding_pax', params) as rows:
            async for row in rows:
                print(row.pax_id)
    """

    def __init__(self, source: AsyncResultSource, data_loader: Callable[..., Any] | None = None,
                 name: str | None = None) -> None:
        self._source = source
        self._data_loader = data_loader or pandas_numpy_data_loader
        self._name = name or source.name
        self._field_cache = {}
        self._closed = False

    async def __aenter__(self) -> 'AsyncRowCursor':
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None,
                        exc_tb: Any | None) -> None:
        await self.close()

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def read(self, cancel: CancelToken | None = None) -> bool:
        self._ensure_open()
        return await self._source.read(cancel)

    async def __aiter__(self):
        while await self.read():
            yield self._current_row()

    async def copy_to_table(self, table: Any = None) -> Any:
        """Drain the remaining rows into a table and close the cursor."""
        self._ensure_open()
        try:
            rows = [dict(row) async for row in self]
            logger.debug(f'Copied {len(rows)} rows from {self.name}')
            return self._load(rows, table)
        finally:
            await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        try:
            if not self._source.is_closed:
                await self._source.close()
        finally:
            self._closed = True
            self._field_cache = None
            logger.debug(f'Closed row cursor {self.name}')

    dispose = close
