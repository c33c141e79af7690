"""
Type handling for stored routine calls.

This module provides:
- WireType / ArrayOf: the PostgreSQL type tags bound to parameters
- infer_wire_type: the fixed native type to wire type table
- TypeConverter: convert native values to driver-bindable values
- postgres_types / resolve_type: type OIDs of result columns to Python types
- Column: column metadata from cursor descriptions
"""
import datetime
import logging
import math
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Self

import numpy as np
import pandas as pd
from pgroutine.exceptions import UnsupportedType
from psycopg.postgres import types as pg_types
from psycopg.types.json import Json, Jsonb

logger = logging.getLogger(__name__)

INT16_RANGE = (-2**15, 2**15 - 1)
INT32_RANGE = (-2**31, 2**31 - 1)
INT64_RANGE = (-2**63, 2**63 - 1)


class WireType(Enum):
    """PostgreSQL type tag of a bound parameter or scalar result.

    The value is the SQL type name used to cast the placeholder.
    """
    INTEGER = 'integer'
    BIGINT = 'bigint'
    SMALLINT = 'smallint'
    REAL = 'real'
    DOUBLE = 'double precision'
    NUMERIC = 'numeric'
    BOOLEAN = 'boolean'
    CHAR = 'char'
    TEXT = 'text'
    VARCHAR = 'varchar'
    TIMESTAMP = 'timestamp'
    DATE = 'date'
    TIME = 'time'
    BYTEA = 'bytea'
    JSON = 'json'
    JSONB = 'jsonb'
    UUID = 'uuid'
    REFCURSOR = 'refcursor'
    UNKNOWN = 'unknown'

    @property
    def is_array(self) -> bool:
        return False

    @property
    def element(self) -> None:
        return None

    @property
    def sized(self) -> bool:
        """Whether a size renders into the cast."""
        return self in {WireType.VARCHAR, WireType.CHAR}

    def cast(self, size: int | None = None) -> str | None:
        """SQL cast target, or None when the server should infer the type.
        """
        if self is WireType.UNKNOWN:
            return None
        if size is not None and self.sized:
            return f'{self.value}({size})'
        return self.value


@dataclass(frozen=True)
class ArrayOf:
    """Array of a scalar wire type (the array flag over an element type).
    """
    element: WireType

    @property
    def is_array(self) -> bool:
        return True

    @property
    def sized(self) -> bool:
        return self.element.sized

    @property
    def value(self) -> str:
        return f'{self.element.value}[]'

    def cast(self, size: int | None = None) -> str | None:
        inner = self.element.cast(size)
        if inner is None:
            return None
        return f'{inner}[]'

    def __repr__(self) -> str:
        return f'ArrayOf({self.element.name})'


SqlType = WireType | ArrayOf


# Native type table

_NUMPY_TYPES: dict[type, WireType] = {
    np.bool_: WireType.BOOLEAN,
    np.int16: WireType.SMALLINT,
    np.int32: WireType.INTEGER,
    np.int64: WireType.BIGINT,
    np.float32: WireType.REAL,
    np.float64: WireType.DOUBLE,
    np.datetime64: WireType.TIMESTAMP,
    np.str_: WireType.TEXT,
    np.bytes_: WireType.BYTEA,
}


def _int_wire_type(value: int) -> WireType:
    """Python ints have no width; pick the narrowest integer type that fits."""
    if INT32_RANGE[0] <= value <= INT32_RANGE[1]:
        return WireType.INTEGER
    if INT64_RANGE[0] <= value <= INT64_RANGE[1]:
        return WireType.BIGINT
    return WireType.NUMERIC


def _scalar_wire_type(value: Any) -> WireType | None:
    if isinstance(value, (bool, np.bool_)):
        return WireType.BOOLEAN
    if type(value) in _NUMPY_TYPES:
        return _NUMPY_TYPES[type(value)]
    if isinstance(value, (bytes, bytearray, memoryview)):
        return WireType.BYTEA
    if isinstance(value, str):
        return WireType.TEXT
    if isinstance(value, Decimal):
        return WireType.NUMERIC
    if isinstance(value, int):
        return _int_wire_type(value)
    if isinstance(value, float):
        return WireType.DOUBLE
    if isinstance(value, datetime.datetime):
        return WireType.TIMESTAMP
    if isinstance(value, datetime.date):
        return WireType.DATE
    if isinstance(value, datetime.time):
        return WireType.TIME
    if isinstance(value, uuid.UUID):
        return WireType.UUID
    return None


# Element types that widen into one another inside an array, narrowest first
_WIDENING = (
    (WireType.SMALLINT, WireType.INTEGER, WireType.BIGINT, WireType.NUMERIC),
    (WireType.REAL, WireType.DOUBLE),
)


def _common_element_type(current: WireType | None, element: WireType) -> WireType | None:
    if current is None or current is element:
        return element
    for widths in _WIDENING:
        if current in widths and element in widths:
            return max(current, element, key=widths.index)
    return None


def _sequence_wire_type(values: list | tuple) -> SqlType:
    """Array type of a list or tuple.

    Every non-null element must map to the same kind; integers widen to
    the widest width in the sequence.

    >>> _sequence_wire_type([1, 2**40])
    ArrayOf(BIGINT)
    >>> _sequence_wire_type([None, [1.5], [2.5]])
    ArrayOf(DOUBLE)
    """
    element_type = None
    nested = None
    for value in values:
        if value is None:
            continue
        is_nested = isinstance(value, (list, tuple, np.ndarray))
        if nested is None:
            nested = is_nested
        elif nested != is_nested:
            raise UnsupportedType(type(value), 'array mixes nested and scalar elements')
        if is_nested:
            kind = infer_wire_type(value).element
            if kind is WireType.UNKNOWN:
                continue
        else:
            kind = _scalar_wire_type(value)
            if kind is None:
                raise UnsupportedType(type(value), 'unsupported array element type')
        common = _common_element_type(element_type, kind)
        if common is None:
            raise UnsupportedType(type(value), f'array mixes {element_type.name} and {kind.name} elements')
        element_type = common
    return ArrayOf(element_type or WireType.UNKNOWN)


def infer_wire_type(value: Any) -> SqlType:
    """Return the wire type for a native value.

    >>> infer_wire_type(42)
    <WireType.INTEGER: 'integer'>
    >>> infer_wire_type([1.5, 2.5])
    ArrayOf(DOUBLE)
    >>> infer_wire_type(None)
    <WireType.UNKNOWN: 'unknown'>

    Raises
        UnsupportedType: If the value's type has no mapping
    """
    if value is None:
        return WireType.UNKNOWN

    wire_type = _scalar_wire_type(value)
    if wire_type is not None:
        return wire_type

    if isinstance(value, np.ndarray):
        if value.dtype == object:
            return _sequence_wire_type(value.tolist())
        element = _NUMPY_TYPES.get(value.dtype.type)
        if element is None:
            raise UnsupportedType(value.dtype.type, 'unsupported array dtype')
        return ArrayOf(element)

    if isinstance(value, (list, tuple)):
        return _sequence_wire_type(value)

    raise UnsupportedType(type(value))


# Type Converter - native values to driver-bindable values

def _convert_numpy_value(val: Any) -> Any:
    """Convert NumPy value to Python type."""
    if isinstance(val, np.floating) and np.isnan(val):
        return None

    if isinstance(val, np.datetime64):
        if np.isnat(val):
            return None
        return pd.Timestamp(val).to_pydatetime()

    if isinstance(val, np.generic):
        return val.item()

    return val


class TypeConverter:
    """Conversion of native values into something psycopg can dump.

    Handles NumPy and Pandas values; NaN/NaT become None.
    """

    @staticmethod
    def convert_value(value: Any, wire_type: SqlType = WireType.UNKNOWN) -> Any:
        """Convert a single value to a database-compatible format."""
        if value is None:
            return None

        if isinstance(value, float) and math.isnan(value):
            return None

        if value is pd.NaT or value is pd.NA:
            return None

        if isinstance(value, np.generic):
            return _convert_numpy_value(value)

        if isinstance(value, pd.Timestamp):
            return value.to_pydatetime()

        if isinstance(value, np.ndarray):
            value = value.tolist()

        if wire_type in {WireType.JSON, WireType.JSONB} and not isinstance(value, str):
            return Jsonb(value) if wire_type is WireType.JSONB else Json(value)

        if isinstance(value, (list, tuple)):
            return [TypeConverter.convert_value(v) for v in value]

        if isinstance(value, memoryview):
            return value.tobytes()

        return value

    @staticmethod
    def is_null(value: Any) -> bool:
        """Whether the value binds as SQL NULL."""
        if isinstance(value, (list, tuple, np.ndarray)):
            return False
        return TypeConverter.convert_value(value) is None


# Type Resolution - result column type codes to Python types

_oid = lambda x: pg_types.get(x).oid
_aoid = lambda x: pg_types.get(x).array_oid

postgres_types: dict[int, type] = {}

for v in [_oid('"char"'), _oid('bpchar'), _oid('character varying'), _oid('character'),
          _oid('name'), _oid('text'), _oid('varchar'), _oid('refcursor')]:
    postgres_types[v] = str

for v in [_oid('bigint'), _oid('int2'), _oid('int4'), _oid('int8'), _oid('integer')]:
    postgres_types[v] = int

for v in [_oid('float4'), _oid('float8'), _oid('double precision')]:
    postgres_types[v] = float

postgres_types[_oid('numeric')] = Decimal
postgres_types[_oid('date')] = datetime.date
postgres_types[_oid('uuid')] = uuid.UUID

for v in [_oid('time'), _oid('timetz')]:
    postgres_types[v] = datetime.time

for v in [_oid('timestamp'), _oid('timestamptz')]:
    postgres_types[v] = datetime.datetime

postgres_types[_oid('bool')] = bool
postgres_types[_oid('bytea')] = bytes

for v in [_oid('json'), _oid('jsonb')]:
    postgres_types[v] = dict

for k in tuple(postgres_types):
    postgres_types[_aoid(k)] = list


def resolve_type(type_code: Any) -> type:
    """Resolve a PostgreSQL type OID to a Python type, defaulting to str.
    """
    if isinstance(type_code, type):
        return type_code
    return postgres_types.get(type_code, str)


# Python type expected for a scalar function result of a given wire type
RESULT_TYPES: dict[WireType, type | tuple[type, ...]] = {
    WireType.INTEGER: int,
    WireType.BIGINT: int,
    WireType.SMALLINT: int,
    WireType.REAL: float,
    WireType.DOUBLE: float,
    WireType.NUMERIC: Decimal,
    WireType.BOOLEAN: bool,
    WireType.CHAR: str,
    WireType.TEXT: str,
    WireType.VARCHAR: str,
    WireType.REFCURSOR: str,
    WireType.TIMESTAMP: datetime.datetime,
    WireType.DATE: datetime.date,
    WireType.TIME: datetime.time,
    WireType.BYTEA: (bytes, bytearray, memoryview),
    WireType.UUID: uuid.UUID,
    }


def coerce_result(value: Any, wire_type: SqlType) -> Any:
    """Return the value if it matches the requested kind, else None.

    >>> coerce_result(7, WireType.INTEGER)
    7
    >>> coerce_result('7', WireType.INTEGER) is None
    True
    >>> coerce_result(True, WireType.INTEGER) is None
    True
    """
    if value is None:
        return None
    if isinstance(wire_type, ArrayOf):
        return value if isinstance(value, list) else None
    expected = RESULT_TYPES.get(wire_type)
    if expected is None:
        return value
    if expected is int and isinstance(value, bool):
        return None
    if isinstance(value, expected):
        if isinstance(value, memoryview):
            return value.tobytes()
        return value
    logger.debug(f'Result {value!r} does not match {wire_type.name}, returning None')
    return None


# Column - Metadata from cursor descriptions

class Column:
    """Result column metadata."""

    def __init__(self,
                 name: str,
                 type_code: Any,
                 python_type: type | None = None,
                 display_size: int | None = None,
                 internal_size: int | None = None,
                 precision: int | None = None,
                 scale: int | None = None):
        self.name = name
        self.type_code = type_code
        self.python_type = python_type
        self.display_size = display_size
        self.internal_size = internal_size
        self.precision = precision
        self.scale = scale

    @classmethod
    def from_cursor_description(cls, description_item: Any) -> Self:
        """Create a Column from a psycopg description item."""
        type_code = getattr(description_item, 'type_code', None)
        return cls(
            name=getattr(description_item, 'name', None),
            type_code=type_code,
            python_type=resolve_type(type_code),
            display_size=getattr(description_item, 'display_size', None),
            internal_size=getattr(description_item, 'internal_size', None),
            precision=getattr(description_item, 'precision', None),
            scale=getattr(description_item, 'scale', None),
            )

    def __repr__(self) -> str:
        return (f'Column(name={self.name!r}, type_code={self.type_code!r}, '
                f'python_type={self.python_type.__name__ if self.python_type else None})')

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'type_code': self.type_code,
            'python_type': self.python_type.__name__ if self.python_type else None,
            'display_size': self.display_size,
            'internal_size': self.internal_size,
            'precision': self.precision,
            'scale': self.scale,
        }

    @staticmethod
    def get_names(columns: list[Self]) -> list[str]:
        return [col.name for col in columns]

    @staticmethod
    def get_column_types_dict(columns: list[Self]) -> dict[str, dict]:
        return {col.name: col.to_dict() for col in columns}


def columns_from_description(description: Any) -> list[Column]:
    """Create Column objects from a cursor description."""
    if description is None:
        return []
    return [Column.from_cursor_description(desc) for desc in description]
