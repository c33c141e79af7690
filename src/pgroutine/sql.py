"""
SQL text for stored routine calls and cursor paging.

Statements are plain strings with psycopg named placeholders
(``%(name)s``); every identifier that is not quoted is validated first.

- `function_call_sql()` - ``SELECT`` over a scalar or set-returning function
- `procedure_call_sql()` - ``CALL`` of a procedure
- `fetch_sql()` / `close_cursor_sql()` - paging a server-side cursor
"""
import re

from pgroutine.exceptions import ValidationError
from pgroutine.parameters import Direction, ParameterSet

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_$]*$')


def quote_identifier(identifier: str) -> str:
    """Safely quote a PostgreSQL identifier.

    >>> quote_identifier('<unnamed portal 1>')
    '"<unnamed portal 1>"'
    >>> quote_identifier('a"b')
    '"a""b"'
    """
    return '"' + identifier.replace('"', '""') + '"'


def validate_identifier(identifier: str, kind: str = 'identifier') -> str:
    """Return the identifier if it can be used unquoted, else raise.

    Raises
        ValidationError: If the identifier is empty or has unsafe characters
    """
    if not isinstance(identifier, str) or not _IDENTIFIER.match(identifier):
        raise ValidationError(f'Invalid {kind}: {identifier!r}')
    return identifier


def qualified_name(schema: str | None, routine: str) -> str:
    """Return ``schema.routine``, or the bare routine when no schema is given.

    >>> qualified_name('customer_manager_utils', 'get_boarding_pax')
    'customer_manager_utils.get_boarding_pax'
    >>> qualified_name(None, 'approve_flight')
    'approve_flight'
    >>> qualified_name('  ', 'approve_flight')
    'approve_flight'
    """
    validate_identifier(routine, 'routine name')
    if schema is None or not schema.strip():
        return routine
    return f'{validate_identifier(schema, "schema name")}.{routine}'


def _named_arguments(parameters: ParameterSet | None) -> str:
    if not parameters:
        return ''
    return ', '.join(f'{p.name} => {p.placeholder()}'
                     for p in parameters.values()
                     if p.direction is not Direction.OUTPUT)


def function_call_sql(name: str, parameters: ParameterSet | None = None,
                      set_returning: bool = False) -> str:
    """Build the statement for a function call in named notation.

    Set-returning calls select every column; scalar calls select the single
    return value as ``result``. Pure output parameters are not passed to a
    function; the server reports them as result columns.

    >>> params = ParameterSet({'p_dest_id': 42})
    >>> function_call_sql('utils.get_boarding_pax', params, set_returning=True)
    'SELECT * FROM utils.get_boarding_pax(p_dest_id => %(p_dest_id)s::integer)'
    >>> function_call_sql('utils.next_id')
    'SELECT utils.next_id() AS result'
    """
    args = _named_arguments(parameters)
    if set_returning:
        return f'SELECT * FROM {name}({args})'
    return f'SELECT {name}({args}) AS result'


def procedure_call_sql(name: str, parameters: ParameterSet | None = None) -> str:
    """Build ``CALL [schema.]routine(p1,p2,...)`` in parameter insertion order.

    >>> params = ParameterSet({'p_flight_id': 10, 'p_note': 'ok'})
    >>> procedure_call_sql('utils.approve_flight', params)
    'CALL utils.approve_flight(%(p_flight_id)s::integer,%(p_note)s::text)'
    >>> procedure_call_sql('sync_data')
    'CALL sync_data()'
    """
    placeholders = ''
    if parameters:
        placeholders = ','.join(p.placeholder() for p in parameters.values())
    return f'CALL {name}({placeholders})'


def fetch_sql(cursor_name: str, fetch_size: int) -> str:
    """Build the batch fetch for a server-side cursor.

    >>> fetch_sql('<unnamed portal 1>', 100)
    'FETCH FORWARD 100 IN "<unnamed portal 1>"'
    """
    return f'FETCH FORWARD {int(fetch_size)} IN {quote_identifier(cursor_name)}'


def close_cursor_sql(cursor_name: str) -> str:
    """Build the statement releasing a server-side cursor.

    >>> close_cursor_sql('c1')
    'CLOSE "c1"'
    """
    return f'CLOSE {quote_identifier(cursor_name)}'
