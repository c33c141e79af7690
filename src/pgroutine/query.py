"""
Ad-hoc SQL execution returning the same row cursor as routine calls.

Statements use psycopg named placeholders (``%(name)s``). Parameters may be a
`ParameterSet` or a plain mapping, which is marshalled like routine arguments.

Examples
    rows = execute_query(cn, 'select * from flights where dest_id = %(d)s', {'d': 42})
"""
import logging
from collections.abc import Mapping
from typing import Any

from pgroutine.cancellation import CancelToken
from pgroutine.invoker import AsyncRoutineInvoker, RoutineInvoker
from pgroutine.parameters import ParameterSet
from pgroutine.rowcursor import AsyncRowCursor, RowCursor

logger = logging.getLogger(__name__)

__all__ = ['execute_query', 'execute_query_async']

QueryParams = ParameterSet | Mapping[str, Any] | None


def _parameter_set(parameters: QueryParams) -> ParameterSet | None:
    if parameters is None or isinstance(parameters, ParameterSet):
        return parameters
    return ParameterSet.from_dict(parameters)


def execute_query(cn: Any, sql: str, parameters: QueryParams = None,
                  cancel: CancelToken | None = None) -> RowCursor:
    """Execute SQL text and return a row cursor over its result.

    Args:
        cn: Connection wrapper or psycopg connection
        sql: Statement with ``%(name)s`` placeholders
        parameters: Values for the placeholders
        cancel: Token that can interrupt the statement

    Returns
        RowCursor over the rows the statement returned
    """
    return RoutineInvoker(cn).execute_query(sql, _parameter_set(parameters), cancel)


async def execute_query_async(cn: Any, sql: str, parameters: QueryParams = None,
                              cancel: CancelToken | None = None) -> AsyncRowCursor:
    """Asyncio variant of `execute_query`."""
    return await AsyncRoutineInvoker(cn).execute_query(sql, _parameter_set(parameters), cancel)
