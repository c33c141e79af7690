"""
Database-specific exception classes.
"""
from contextlib import contextmanager

import psycopg


class DatabaseError(Exception):
    """Base class for all pgroutine errors.
    """


class ConnectionFailure(DatabaseError):
    """Error establishing or maintaining database connection.
    """


class QueryError(DatabaseError):
    """Error in query syntax or execution.
    """


class TypeConversionError(DatabaseError):
    """Error converting types between Python and database.
    """


class ValidationError(DatabaseError):
    """Error in input validation.
    """


class UnsupportedType(TypeConversionError):
    """A native value has no wire type mapping.

    Raised while a parameter is built, before any call reaches the server.
    """

    def __init__(self, type_: type, detail: str | None = None) -> None:
        self.type = type_
        message = f'Type {type_.__module__}.{type_.__qualname__} is not supported'
        if detail:
            message = f'{message}: {detail}'
        super().__init__(message)


class NotAnOutputParameter(DatabaseError, KeyError):
    """Read-back requested for a parameter that is not output-capable.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f'Parameter "{name}" is not an out parameter')

    def __str__(self) -> str:
        return self.args[0]


class FieldNotFound(DatabaseError, KeyError):
    """Unknown field name requested from a result row.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f'Field [{name}] not found in the result returned by the server')

    def __str__(self) -> str:
        return self.args[0]


class RoutineExecutionFailed(QueryError):
    """The server rejected or failed a stored routine call.

    The driver error is chained as ``__cause__``.
    """

    def __init__(self, routine: str, reason: str | None = None) -> None:
        self.routine = routine
        message = f'Execution of {routine} failed'
        if reason:
            message = f'{message}: {reason}'
        super().__init__(message)


class Cancelled(DatabaseError):
    """An in-flight execute, read or fetch was cancelled cooperatively.
    """

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f'{operation} was cancelled')


class CursorStateError(DatabaseError):
    """Row data requested while the cursor is not positioned on a row.
    """


class CursorClosed(CursorStateError):
    """Use of a row cursor or result source after it was closed.
    """


@contextmanager
def translate_errors(routine: str, operation: str):
    """Re-raise driver errors as package errors.

    Server-side cancellation becomes `Cancelled`, any other driver error
    becomes `RoutineExecutionFailed` carrying the routine name.
    """
    try:
        yield
    except psycopg.errors.QueryCanceled as exc:
        raise Cancelled(operation) from exc
    except psycopg.Error as exc:
        raise RoutineExecutionFailed(routine, str(exc).strip() or None) from exc
