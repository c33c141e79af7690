"""
Named, typed parameters for stored routine calls.

A `ParameterSet` is built per call. Values are marshalled when added: the wire
type is inferred from the native value unless declared, nullish values are
canonicalized to SQL NULL, and a size is resolved for varchar parameters.

Examples
    params = ParameterSet()
    params.add('p_dest_id', 42)
    params.add('p_payload', '{"a": 1}', WireType.JSONB)
    params.add_out_param('p_message', None, wire_type=WireType.VARCHAR)
"""
import datetime
import logging
import re
import sys
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from pgroutine.exceptions import NotAnOutputParameter, ValidationError
from pgroutine.types import SqlType, TypeConverter, WireType, infer_wire_type

logger = logging.getLogger(__name__)

__all__ = [
    'DEFAULT_VARCHAR_SIZE',
    'Direction',
    'Parameter',
    'ParameterSet',
    'result_to_decimal',
    'result_to_double',
]

DEFAULT_VARCHAR_SIZE = 30000

# Legacy minimum-value sentinels that callers use to unset a double parameter
DOUBLE_NULL_SENTINELS = (-sys.float_info.max, Decimal('-79228162514264337593543950335'))

NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_$]*$')

_TEMPORAL_TYPES = {WireType.DATE, WireType.TIME, WireType.TIMESTAMP}


class Direction(Enum):
    INPUT = 'input'
    OUTPUT = 'output'
    INPUT_OUTPUT = 'inout'


def _is_zero_date(value: Any) -> bool:
    if isinstance(value, datetime.datetime):
        return value.replace(tzinfo=None) == datetime.datetime.min
    if isinstance(value, datetime.date):
        return value == datetime.date.min
    return False


def _is_double_sentinel(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        return False
    return any(value == sentinel for sentinel in DOUBLE_NULL_SENTINELS)


def canonicalize(value: Any, wire_type: SqlType, declared: bool) -> Any:
    """Map nullish and sentinel values to None (SQL NULL).

    - None, NaN, NaT and the zero date always become NULL.
    - For a declared varchar/text parameter an empty string becomes NULL.
    - For a declared double parameter the minimum-value sentinel becomes NULL.

    >>> canonicalize(datetime.datetime.min, WireType.TIMESTAMP, False) is None
    True
    >>> canonicalize('', WireType.TEXT, True) is None
    True
    >>> canonicalize('', WireType.TEXT, False)
    ''
    """
    if TypeConverter.is_null(value) or _is_zero_date(value):
        return None
    if not declared:
        return value
    if wire_type in {WireType.VARCHAR, WireType.TEXT} and isinstance(value, str) and not value:
        return None
    if wire_type is WireType.DOUBLE and _is_double_sentinel(value):
        return None
    return value


def resolve_size(value: Any, wire_type: SqlType, direction: 'Direction',
                 size: int | None) -> int | None:
    """Explicit size wins; varchar defaults depend on direction."""
    if size is not None and size >= 0:
        return size
    if wire_type is WireType.VARCHAR:
        if direction in {Direction.OUTPUT, Direction.INPUT_OUTPUT}:
            return DEFAULT_VARCHAR_SIZE
        if isinstance(value, str):
            return len(value)
    return None


@dataclass
class Parameter:
    """One bound argument of a stored routine call.

    ``value`` holds the marshalled native value before the call and, for
    output-capable parameters, the value returned by the server after it.
    """
    name: str
    value: Any
    wire_type: SqlType = WireType.UNKNOWN
    direction: Direction = Direction.INPUT
    size: int | None = None

    @property
    def is_output(self) -> bool:
        return self.direction in {Direction.OUTPUT, Direction.INPUT_OUTPUT}

    @property
    def is_null(self) -> bool:
        return self.value is None

    def placeholder(self) -> str:
        """Named placeholder with a cast to the wire type.

        >>> Parameter('p_id', 1, WireType.INTEGER).placeholder()
        '%(p_id)s::integer'
        >>> Parameter('p_msg', None, WireType.VARCHAR, size=30000).placeholder()
        '%(p_msg)s::varchar(30000)'
        """
        cast = self.wire_type.cast(self.size)
        if cast is None:
            return f'%({self.name})s'
        return f'%({self.name})s::{cast}'

    def bind_value(self) -> Any:
        """The value as handed to the driver."""
        return TypeConverter.convert_value(self.value, self.wire_type)


class ParameterSet:
    """Ordered map of parameter name to `Parameter`.

    Names are unique; enumeration follows insertion order.
    """

    def __init__(self, values: Mapping[str, Any] | None = None, unknown_type: bool = False) -> None:
        """Build the set, optionally from a mapping of name to native value.

        Args:
            values: Parameter values, added in mapping order
            unknown_type: Bind the mapping's values as `WireType.UNKNOWN`
                instead of inferring their types
        """
        self._params: dict[str, Parameter] = {}
        for name, value in (values or {}).items():
            if unknown_type:
                self.add(name, value, WireType.UNKNOWN)
            else:
                self.add(name, value)

    @classmethod
    def from_dict(cls, values: Mapping[str, Any], unknown_type: bool = False) -> 'ParameterSet':
        return cls(values, unknown_type=unknown_type)

    def add(self, name: str, value: Any, wire_type: SqlType | None = None,
            size: int | None = None, direction: Direction = Direction.INPUT) -> Parameter:
        """Add a parameter and return it.

        Args:
            name: Parameter name, unique within the set
            value: Native value
            wire_type: Declared wire type; inferred from ``value`` when omitted
            size: Explicit size, wins over the varchar defaults
            direction: Parameter direction

        Raises
            UnsupportedType: If no wire type is declared and the value's type
                has no mapping
            ValidationError: If the name is invalid or already present
        """
        if not isinstance(name, str) or not NAME_PATTERN.match(name):
            raise ValidationError(f'Invalid parameter name: {name!r}')
        if name in self._params:
            raise ValidationError(f'Parameter "{name}" is already present')

        declared = wire_type is not None
        if not declared:
            wire_type = infer_wire_type(value)

        value = canonicalize(value, wire_type, declared)
        param = Parameter(name=name, value=value, wire_type=wire_type,
                          direction=direction,
                          size=resolve_size(value, wire_type, direction, size))
        self._params[name] = param
        logger.debug(f'Added parameter {name} ({wire_type!r}, {direction.name})')
        return param

    def add_out_param(self, name: str, value: Any, size: int | None = None,
                      wire_type: SqlType | None = None) -> Parameter:
        """Add an input-output parameter whose returned value can be read back.
        """
        return self.add(name, value, wire_type, size=size, direction=Direction.INPUT_OUTPUT)

    def __getitem__(self, name: str) -> Parameter:
        try:
            return self._params[name]
        except KeyError:
            raise KeyError(f'No parameter named "{name}"') from None

    def __contains__(self, name: object) -> bool:
        return name in self._params

    def __iter__(self) -> Iterator[str]:
        return iter(self._params)

    def __len__(self) -> int:
        return len(self._params)

    def __repr__(self) -> str:
        return f'ParameterSet({list(self._params.values())!r})'

    def keys(self) -> list[str]:
        return list(self._params)

    def values(self) -> list[Parameter]:
        return list(self._params.values())

    def items(self) -> list[tuple[str, Parameter]]:
        return list(self._params.items())

    def bind_args(self, include_output: bool = True) -> dict[str, Any]:
        """Name to driver value mapping for ``cursor.execute``."""
        return {name: param.bind_value()
                for name, param in self._params.items()
                if include_output or param.direction is not Direction.OUTPUT}

    @property
    def output_parameters(self) -> list[Parameter]:
        return [p for p in self._params.values() if p.is_output]

    def apply_returned_row(self, names: list[str], row: tuple) -> None:
        """Copy a returned row into the output-capable parameters.

        Columns are matched by name; output parameters without a matching
        column take the remaining columns in order.
        """
        outputs = self.output_parameters
        if not outputs or row is None:
            return
        by_name = dict(zip(names, row))
        unmatched = [p for p in outputs if p.name not in by_name]
        leftovers = [value for name, value in zip(names, row) if name not in self._params]
        for param in outputs:
            if param.name in by_name:
                param.value = by_name[param.name]
        for param, value in zip(unmatched, leftovers):
            param.value = value
        logger.debug(f'Updated out parameters: {[p.name for p in outputs]}')

    def _get_out_parameter(self, name: str) -> Parameter:
        param = self[name]
        if not param.is_output:
            raise NotAnOutputParameter(name)
        return param

    def update_out_param(self, name: str, kind: type, not_null: bool = False) -> Any:
        """Return the value the server returned for an out parameter.

        The value is type-checked against ``kind`` (``str``, ``int``,
        ``Decimal``, ``float`` or ``datetime.datetime``). A mismatch or NULL
        gives None, or the zero value of ``kind`` when ``not_null`` is set.

        Raises
            NotAnOutputParameter: If the parameter is input-only
            KeyError: If there is no parameter with that name
        """
        param = self._get_out_parameter(name)
        value = param.value

        if kind is str:
            result = value if isinstance(value, str) else None
        elif kind is int:
            result = None if value is None else int(value)
        elif kind is Decimal:
            result = value if isinstance(value, Decimal) else None
        elif kind is float:
            result = value if isinstance(value, float) else None
        elif kind is datetime.datetime:
            result = value if param.wire_type in _TEMPORAL_TYPES else None
        else:
            raise TypeError(f'Unsupported out parameter kind: {kind!r}')

        if result is None and not_null:
            return _ZERO_VALUES[kind]
        return result


_ZERO_VALUES: dict[type, Any] = {
    str: '',
    int: 0,
    Decimal: Decimal(0),
    float: 0.0,
    datetime.datetime: datetime.datetime.min,
    }


def _unwrap(result: Any) -> Any:
    if isinstance(result, Parameter):
        return result.value
    return result


def result_to_decimal(result: Any) -> Decimal | None:
    """Type-check a function result (or returned parameter) as Decimal."""
    result = _unwrap(result)
    return result if isinstance(result, Decimal) else None


def result_to_double(result: Any) -> float | None:
    """Type-check a function result (or returned parameter) as float."""
    result = _unwrap(result)
    return result if isinstance(result, float) else None
