"""
Stored routine invocation.

`RoutineInvoker` builds one `StoredCall` per operation, executes it on a
psycopg connection and hands back the result in the shape the routine
produces:

- scalar functions: the single value, type-checked against the requested kind
- table/set functions: a `RowCursor` over a direct result
- cursor functions: a `RowCursor` that pages the returned refcursor
- procedures: ``True``, with INOUT values copied back into the parameters

Examples
    invoker = RoutineInvoker(cn)
    params = ParameterSet({'p_dest_id': 42})
    with Transaction(cn):
        df = invoker.exec_func_dataset_using_cursor(
            'get_boarding_pax', params, schema='customer_manager_utils').copy_to_table()
"""
import datetime
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pgroutine.cancellation import CancelToken, async_cancel_scope, cancel_scope
from pgroutine.connection import get_driver_connection
from pgroutine.cursor import dumpsql, dumpsql_async
from pgroutine.exceptions import RoutineExecutionFailed, translate_errors
from pgroutine.options import DatabaseOptions
from pgroutine.parameters import ParameterSet
from pgroutine.rowcursor import AsyncRowCursor, RowCursor
from pgroutine.sources import DEFAULT_FETCH_SIZE, AsyncCursorResultSource
from pgroutine.sources import AsyncDirectResultSource, CursorResultSource
from pgroutine.sources import DirectResultSource
from pgroutine.sql import function_call_sql, procedure_call_sql, qualified_name
from pgroutine.types import SqlType, WireType, coerce_result
from psycopg.rows import tuple_row

logger = logging.getLogger(__name__)

QUERY_NAME = '<query>'

__all__ = [
    'CallKind',
    'StoredCall',
    'RoutineInvoker',
    'AsyncRoutineInvoker',
    'SchemaApi',
    'AsyncSchemaApi',
]


class CallKind(Enum):
    SCALAR = 'scalar'
    TABLE = 'table'
    CURSOR = 'cursor'
    PROCEDURE = 'procedure'


@dataclass(frozen=True)
class StoredCall:
    """One round trip to a stored routine.

    ``return_type`` is the wire type of the synthetic return parameter of a
    scalar or cursor function call.
    """
    routine: str
    parameters: ParameterSet = field(default_factory=ParameterSet)
    kind: CallKind = CallKind.SCALAR
    schema: str | None = None
    return_type: SqlType | None = None

    def __post_init__(self):
        qualified_name(self.schema, self.routine)

    @property
    def qualified_name(self) -> str:
        return qualified_name(self.schema, self.routine)

    @property
    def returns_row(self) -> bool:
        """Whether a function call selects every column of its result."""
        if self.kind is CallKind.TABLE:
            return True
        return self.kind is CallKind.SCALAR and bool(self.parameters.output_parameters)

    def to_sql(self) -> str:
        """Statement text for the call.

        >>> StoredCall('approve_flight', ParameterSet({'p_flight_id': 10}),
        ...            CallKind.PROCEDURE, 'customer_manager_utils').to_sql()
        'CALL customer_manager_utils.approve_flight(%(p_flight_id)s::integer)'
        """
        if self.kind is CallKind.PROCEDURE:
            return procedure_call_sql(self.qualified_name, self.parameters)
        return function_call_sql(self.qualified_name, self.parameters,
                                 set_returning=self.returns_row)

    def bind_args(self) -> dict[str, Any]:
        return self.parameters.bind_args(include_output=self.kind is CallKind.PROCEDURE)


def _as_datetime(value: Any) -> datetime.datetime | None:
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time.min)
    return None


class _InvokerBase:
    """Call building and bookkeeping shared by the sync and async invokers.
    """

    def __init__(self, cn: Any, options: DatabaseOptions | None = None,
                 cursor_fetch_size: int | None = None,
                 release_server_cursor: bool | None = None) -> None:
        """
        Args:
            cn: A connection wrapper from `connect()`/`connect_async()` or a
                psycopg connection
            options: Options to read the fetch size and data loader from;
                defaults to the wrapper's options
            cursor_fetch_size: Rows per fetch for cursor functions, overrides
                the options
            release_server_cursor: Close server-side cursors together with
                their row cursors, overrides the options
        """
        self.cn = cn
        self.connection = get_driver_connection(cn)
        self.options = options or getattr(cn, 'options', None)

        fetch_size = cursor_fetch_size
        if fetch_size is None:
            fetch_size = self.options.cursor_fetch_size if self.options else DEFAULT_FETCH_SIZE
        if int(fetch_size) < 1:
            raise ValueError(f'cursor_fetch_size must be at least 1, got {fetch_size!r}')
        self.cursor_fetch_size = int(fetch_size)

        if release_server_cursor is None:
            release_server_cursor = bool(self.options and self.options.release_server_cursor)
        self.release_server_cursor = release_server_cursor
        self.data_loader: Callable[..., Any] | None = self.options.data_loader if self.options else None

    def addcall(self, elapsed: float) -> None:
        if hasattr(self.cn, 'addcall'):
            self.cn.addcall(elapsed)

    def _build(self, routine: str, parameters: ParameterSet | None, kind: CallKind,
               schema: str | None, return_type: SqlType | None = None) -> StoredCall:
        if parameters is None:
            parameters = ParameterSet()
        return StoredCall(routine, parameters, kind, schema, return_type)

    def _fetch_size(self, fetch_size: int | None) -> int:
        if fetch_size is None:
            return self.cursor_fetch_size
        if int(fetch_size) < 1:
            raise ValueError(f'fetch_size must be at least 1, got {fetch_size!r}')
        return int(fetch_size)

    def _warn_autocommit(self, call: StoredCall) -> None:
        if getattr(self.connection, 'autocommit', False):
            logger.warning(f'{call.qualified_name} returns a cursor but the connection is in '
                           f'auto-commit mode; run it inside a Transaction')

    @staticmethod
    def _scalar_result(call: StoredCall, names: list[str], row: tuple | None) -> Any:
        if row is None:
            return None
        value = row[0]
        if call.returns_row:
            call.parameters.apply_returned_row(names, row)
            value = next((v for n, v in zip(names, row) if n not in call.parameters), value)
        return coerce_result(value, call.return_type or WireType.UNKNOWN)

    @staticmethod
    def _procedure_result(call: StoredCall, names: list[str], row: tuple | None) -> bool:
        if row is not None:
            call.parameters.apply_returned_row(names, row)
        logger.debug(f'Procedure {call.qualified_name} completed')
        return True

    @staticmethod
    def _cursor_name(call: StoredCall, value: Any) -> str:
        if not isinstance(value, str) or not value:
            raise RoutineExecutionFailed(call.qualified_name, 'no cursor was returned')
        return value


class RoutineInvoker(_InvokerBase):
    """Executes stored functions and procedures on a synchronous connection.

    Every call optionally takes a `CancelToken`; cancelling it while the
    statement runs sends a cancel request to the server.
    """

    @dumpsql
    def _run(self, cursor: Any, operation: str, args: dict) -> None:
        cursor.execute(operation, args)

    def _execute(self, cursor: Any, call: StoredCall, cancel: CancelToken | None) -> None:
        operation = f'call {call.qualified_name}'
        with translate_errors(call.qualified_name, operation), \
                cancel_scope(cancel, self.connection, operation):
            self._run(cursor, call.to_sql(), call.bind_args())

    def _execute_row(self, call: StoredCall, cancel: CancelToken | None) -> tuple[list[str], tuple | None]:
        with self.connection.cursor(row_factory=tuple_row) as cursor:
            self._execute(cursor, call, cancel)
            if cursor.description is None:
                return [], None
            with translate_errors(call.qualified_name, f'call {call.qualified_name}'):
                row = cursor.fetchone()
            return [d.name for d in cursor.description], row

    def exec_func(self, routine: str, parameters: ParameterSet | None = None,
                  kind: SqlType = WireType.UNKNOWN, schema: str | None = None,
                  cancel: CancelToken | None = None) -> Any:
        """Call a scalar function and return its value.

        The value is returned only if it matches ``kind``; a mismatch or a
        missing result gives None. Output parameters of the function are
        copied back into ``parameters``.

        Raises
            ValidationError: If a name is not a plain identifier
            RoutineExecutionFailed: If the server fails the call
            Cancelled: If ``cancel`` is tripped
        """
        call = self._build(routine, parameters, CallKind.SCALAR, schema, kind)
        names, row = self._execute_row(call, cancel)
        return self._scalar_result(call, names, row)

    def exec_func_int(self, routine: str, parameters: ParameterSet | None = None,
                      schema: str | None = None, cancel: CancelToken | None = None) -> int | None:
        return self.exec_func(routine, parameters, WireType.INTEGER, schema, cancel)

    def exec_func_double(self, routine: str, parameters: ParameterSet | None = None,
                         schema: str | None = None, cancel: CancelToken | None = None) -> float | None:
        return self.exec_func(routine, parameters, WireType.DOUBLE, schema, cancel)

    def exec_func_decimal(self, routine: str, parameters: ParameterSet | None = None,
                          schema: str | None = None, cancel: CancelToken | None = None):
        return self.exec_func(routine, parameters, WireType.NUMERIC, schema, cancel)

    def exec_func_date(self, routine: str, parameters: ParameterSet | None = None,
                       schema: str | None = None,
                       cancel: CancelToken | None = None) -> datetime.datetime | None:
        """Timestamp result; a date result is promoted to midnight."""
        return _as_datetime(self.exec_func(routine, parameters, WireType.UNKNOWN, schema, cancel))

    def exec_func_varchar(self, routine: str, parameters: ParameterSet | None = None,
                          schema: str | None = None, cancel: CancelToken | None = None) -> str | None:
        return self.exec_func(routine, parameters, WireType.VARCHAR, schema, cancel)

    def exec_func_text(self, routine: str, parameters: ParameterSet | None = None,
                       schema: str | None = None, cancel: CancelToken | None = None) -> str | None:
        return self.exec_func(routine, parameters, WireType.TEXT, schema, cancel)

    def exec_func_bytea(self, routine: str, parameters: ParameterSet | None = None,
                        schema: str | None = None, cancel: CancelToken | None = None) -> bytes | None:
        return self.exec_func(routine, parameters, WireType.BYTEA, schema, cancel)

    def exec_func_dataset(self, routine: str, parameters: ParameterSet | None = None,
                          schema: str | None = None, cancel: CancelToken | None = None) -> RowCursor:
        """Call a table or set-returning function and stream its rows.
        """
        call = self._build(routine, parameters, CallKind.TABLE, schema)
        cursor = self.connection.cursor(row_factory=tuple_row)
        try:
            self._execute(cursor, call, cancel)
        except Exception:
            cursor.close()
            raise
        source = DirectResultSource(cursor, call.qualified_name)
        return RowCursor(source, data_loader=self.data_loader)

    def exec_func_dataset_using_cursor(self, routine: str, parameters: ParameterSet | None = None,
                                       schema: str | None = None,
                                       cancel: CancelToken | None = None,
                                       fetch_size: int | None = None) -> RowCursor:
        """Call a function returning a refcursor and page through its rows.

        The cursor is read in batches of ``fetch_size`` rows (the invoker's
        ``cursor_fetch_size`` by default). The call must run inside a
        transaction that stays open while the rows are read.

        Raises
            RoutineExecutionFailed: If the function returns no cursor name
        """
        call = self._build(routine, parameters, CallKind.CURSOR, schema, WireType.REFCURSOR)
        fetch_size = self._fetch_size(fetch_size)
        self._warn_autocommit(call)
        names, row = self._execute_row(call, cancel)
        cursor_name = self._cursor_name(call, self._scalar_result(call, names, row))
        source = CursorResultSource(self.connection, cursor_name,
                                    fetch_size,
                                    name=call.qualified_name,
                                    release_server_cursor=self.release_server_cursor)
        return RowCursor(source, data_loader=self.data_loader)

    def exec_func_table(self, routine: str, parameters: ParameterSet | None = None,
                        schema: str | None = None, cancel: CancelToken | None = None) -> Any:
        """Call a table function and load all rows with the data loader.
        """
        return self.exec_func_dataset(routine, parameters, schema, cancel).copy_to_table()

    def call_proc(self, routine: str, parameters: ParameterSet | None = None,
                  schema: str | None = None, cancel: CancelToken | None = None) -> bool:
        """Call a procedure; INOUT values come back in ``parameters``.
        """
        call = self._build(routine, parameters, CallKind.PROCEDURE, schema)
        names, row = self._execute_row(call, cancel)
        return self._procedure_result(call, names, row)

    def execute_query(self, sql: str, parameters: ParameterSet | None = None,
                      cancel: CancelToken | None = None) -> RowCursor:
        """Run SQL text with ``%(name)s`` placeholders and stream its rows.
        """
        cursor = self.connection.cursor(row_factory=tuple_row)
        args = parameters.bind_args() if parameters else {}
        try:
            with translate_errors(QUERY_NAME, 'query'), cancel_scope(cancel, self.connection, 'query'):
                self._run(cursor, sql, args)
        except Exception:
            cursor.close()
            raise
        return RowCursor(DirectResultSource(cursor, QUERY_NAME), data_loader=self.data_loader)


class AsyncRoutineInvoker(_InvokerBase):
    """Asyncio variant of `RoutineInvoker` over ``psycopg.AsyncConnection``.

    Every call optionally takes a `CancelToken`; cancelling it while the
    statement runs sends a cancel request to the server from the event loop.
    """

    @dumpsql_async
    async def _run(self, cursor: Any, operation: str, args: dict) -> None:
        await cursor.execute(operation, args)

    async def _execute(self, cursor: Any, call: StoredCall, cancel: CancelToken | None) -> None:
        operation = f'call {call.qualified_name}'
        with translate_errors(call.qualified_name, operation):
            async with async_cancel_scope(cancel, self.connection, operation):
                await self._run(cursor, call.to_sql(), call.bind_args())

    async def _execute_row(self, call: StoredCall,
                           cancel: CancelToken | None) -> tuple[list[str], tuple | None]:
        async with self.connection.cursor(row_factory=tuple_row) as cursor:
            await self._execute(cursor, call, cancel)
            if cursor.description is None:
                return [], None
            with translate_errors(call.qualified_name, f'call {call.qualified_name}'):
                row = await cursor.fetchone()
            return [d.name for d in cursor.description], row

    async def exec_func(self, routine: str, parameters: ParameterSet | None = None,
                        kind: SqlType = WireType.UNKNOWN, schema: str | None = None,
                        cancel: CancelToken | None = None) -> Any:
        call = self._build(routine, parameters, CallKind.SCALAR, schema, kind)
        names, row = await self._execute_row(call, cancel)
        return self._scalar_result(call, names, row)

    async def exec_func_int(self, routine, parameters=None, schema=None, cancel=None):
        return await self.exec_func(routine, parameters, WireType.INTEGER, schema, cancel)

    async def exec_func_double(self, routine, parameters=None, schema=None, cancel=None):
        return await self.exec_func(routine, parameters, WireType.DOUBLE, schema, cancel)

    async def exec_func_decimal(self, routine, parameters=None, schema=None, cancel=None):
        return await self.exec_func(routine, parameters, WireType.NUMERIC, schema, cancel)

    async def exec_func_date(self, routine, parameters=None, schema=None, cancel=None):
        return _as_datetime(await self.exec_func(routine, parameters, WireType.UNKNOWN, schema, cancel))

    async def exec_func_varchar(self, routine, parameters=None, schema=None, cancel=None):
        return await self.exec_func(routine, parameters, WireType.VARCHAR, schema, cancel)

    async def exec_func_text(self, routine, parameters=None, schema=None, cancel=None):
        return await self.exec_func(routine, parameters, WireType.TEXT, schema, cancel)

    async def exec_func_bytea(self, routine, parameters=None, schema=None, cancel=None):
        return await self.exec_func(routine, parameters, WireType.BYTEA, schema, cancel)

    async def exec_func_dataset(self, routine: str, parameters: ParameterSet | None = None,
                                schema: str | None = None,
                                cancel: CancelToken | None = None) -> AsyncRowCursor:
        call = self._build(routine, parameters, CallKind.TABLE, schema)
        cursor = self.connection.cursor(row_factory=tuple_row)
        try:
            await self._execute(cursor, call, cancel)
        except BaseException:
            await cursor.close()
            raise
        source = AsyncDirectResultSource(cursor, call.qualified_name)
        return AsyncRowCursor(source, data_loader=self.data_loader)

    async def exec_func_dataset_using_cursor(self, routine: str,
                                             parameters: ParameterSet | None = None,
                                             schema: str | None = None,
                                             cancel: CancelToken | None = None,
                                             fetch_size: int | None = None) -> AsyncRowCursor:
        call = self._build(routine, parameters, CallKind.CURSOR, schema, WireType.REFCURSOR)
        fetch_size = self._fetch_size(fetch_size)
        self._warn_autocommit(call)
        names, row = await self._execute_row(call, cancel)
        cursor_name = self._cursor_name(call, self._scalar_result(call, names, row))
        source = AsyncCursorResultSource(self.connection, cursor_name,
                                         fetch_size,
                                         name=call.qualified_name,
                                         release_server_cursor=self.release_server_cursor)
        return AsyncRowCursor(source, data_loader=self.data_loader)

    async def exec_func_table(self, routine: str, parameters: ParameterSet | None = None,
                              schema: str | None = None, cancel: CancelToken | None = None) -> Any:
        rows = await self.exec_func_dataset(routine, parameters, schema, cancel)
        return await rows.copy_to_table()

    async def call_proc(self, routine: str, parameters: ParameterSet | None = None,
                        schema: str | None = None, cancel: CancelToken | None = None) -> bool:
        call = self._build(routine, parameters, CallKind.PROCEDURE, schema)
        names, row = await self._execute_row(call, cancel)
        return self._procedure_result(call, names, row)

    async def execute_query(self, sql: str, parameters: ParameterSet | None = None,
                            cancel: CancelToken | None = None) -> AsyncRowCursor:
        cursor = self.connection.cursor(row_factory=tuple_row)
        args = parameters.bind_args() if parameters else {}
        try:
            with translate_errors(QUERY_NAME, 'query'):
                async with async_cancel_scope(cancel, self.connection, 'query'):
                    await self._run(cursor, sql, args)
        except BaseException:
            await cursor.close()
            raise
        return AsyncRowCursor(AsyncDirectResultSource(cursor, QUERY_NAME), data_loader=self.data_loader)


class SchemaApi:
    """Base class for wrappers over the routines of one schema.

    Subclasses name the schema once and expose one method per routine:

        class CustomerManagerUtils(SchemaApi):
            def __init__(self, cn):
                super().__init__(cn, 'customer_manager_utils')

            def approve_flight(self, flight_id):
                return self.call_proc('approve_flight', ParameterSet({'p_flight_id': flight_id}))
    """

    invoker_class = RoutineInvoker

    def __init__(self, cn: Any, schema_name: str, options: DatabaseOptions | None = None,
                 **kwargs: Any) -> None:
        self.schema_name = schema_name
        self.invoker = self.invoker_class(cn, options, **kwargs)

    def exec_func(self, routine, parameters=None, kind=WireType.UNKNOWN, cancel=None):
        return self.invoker.exec_func(routine, parameters, kind, self.schema_name, cancel)

    def exec_func_int(self, routine, parameters=None, cancel=None):
        return self.invoker.exec_func_int(routine, parameters, self.schema_name, cancel)

    def exec_func_double(self, routine, parameters=None, cancel=None):
        return self.invoker.exec_func_double(routine, parameters, self.schema_name, cancel)

    def exec_func_decimal(self, routine, parameters=None, cancel=None):
        return self.invoker.exec_func_decimal(routine, parameters, self.schema_name, cancel)

    def exec_func_date(self, routine, parameters=None, cancel=None):
        return self.invoker.exec_func_date(routine, parameters, self.schema_name, cancel)

    def exec_func_varchar(self, routine, parameters=None, cancel=None):
        return self.invoker.exec_func_varchar(routine, parameters, self.schema_name, cancel)

    def exec_func_text(self, routine, parameters=None, cancel=None):
        return self.invoker.exec_func_text(routine, parameters, self.schema_name, cancel)

    def exec_func_bytea(self, routine, parameters=None, cancel=None):
        return self.invoker.exec_func_bytea(routine, parameters, self.schema_name, cancel)

    def exec_func_dataset(self, routine, parameters=None, cancel=None):
        return self.invoker.exec_func_dataset(routine, parameters, self.schema_name, cancel)

    def exec_func_dataset_using_cursor(self, routine, parameters=None, cancel=None, fetch_size=None):
        return self.invoker.exec_func_dataset_using_cursor(
            routine, parameters, self.schema_name, cancel, fetch_size)

    def exec_func_table(self, routine, parameters=None, cancel=None):
        return self.invoker.exec_func_table(routine, parameters, self.schema_name, cancel)

    def call_proc(self, routine, parameters=None, cancel=None):
        return self.invoker.call_proc(routine, parameters, self.schema_name, cancel)


class AsyncSchemaApi(SchemaApi):
    """`SchemaApi` over an `AsyncRoutineInvoker`; every method is awaitable.
    """

    invoker_class = AsyncRoutineInvoker
