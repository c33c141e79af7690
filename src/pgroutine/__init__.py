"""
Stored function and procedure access for PostgreSQL.

Routines are called through a `RoutineInvoker` (or a `SchemaApi` subclass
bound to one schema) and their rows are read through a `RowCursor`, whether
the server returned them directly or through a refcursor:

    cn = pgroutine.connect('postgresql', config=config)
    invoker = pgroutine.RoutineInvoker(cn)
    with pgroutine.transaction(cn):
        rows = invoker.exec_func_dataset_using_cursor('get_boarding_pax',
                                                      ParameterSet({'p_dest_id': 42}))
        df = rows.copy_to_table()
"""
__version__ = '0.1.0'

from pgroutine.cancellation import CancelToken
from pgroutine.connection import AsyncConnectionWrapper, AsyncTransaction
from pgroutine.connection import ConnectionWrapper, Transaction, connect
from pgroutine.connection import connect_async
from pgroutine.exceptions import Cancelled, ConnectionFailure, CursorClosed
from pgroutine.exceptions import CursorStateError, DatabaseError
from pgroutine.exceptions import FieldNotFound, NotAnOutputParameter, QueryError
from pgroutine.exceptions import RoutineExecutionFailed, TypeConversionError
from pgroutine.exceptions import UnsupportedType, ValidationError
from pgroutine.invoker import AsyncRoutineInvoker, AsyncSchemaApi, CallKind
from pgroutine.invoker import RoutineInvoker, SchemaApi, StoredCall
from pgroutine.options import DatabaseOptions, iterdict_data_loader
from pgroutine.options import pandas_numpy_data_loader
from pgroutine.options import pandas_pyarrow_data_loader
from pgroutine.parameters import Direction, Parameter, ParameterSet
from pgroutine.parameters import result_to_decimal, result_to_double
from pgroutine.query import execute_query, execute_query_async
from pgroutine.rowcursor import AsyncRowCursor, RowCursor
from pgroutine.sources import AsyncCursorResultSource, AsyncDirectResultSource
from pgroutine.sources import CursorResultSource, DirectResultSource
from pgroutine.sources import ResultSource, SourceState
from pgroutine.types import ArrayOf, Column, WireType, infer_wire_type

transaction = Transaction

__all__ = [
    'connect',
    'connect_async',
    'ConnectionWrapper',
    'AsyncConnectionWrapper',
    'transaction',
    'Transaction',
    'AsyncTransaction',
    'DatabaseOptions',
    'iterdict_data_loader',
    'pandas_numpy_data_loader',
    'pandas_pyarrow_data_loader',
    'CancelToken',
    'WireType',
    'ArrayOf',
    'Column',
    'infer_wire_type',
    'Direction',
    'Parameter',
    'ParameterSet',
    'result_to_decimal',
    'result_to_double',
    'CallKind',
    'StoredCall',
    'RoutineInvoker',
    'AsyncRoutineInvoker',
    'SchemaApi',
    'AsyncSchemaApi',
    'execute_query',
    'execute_query_async',
    'RowCursor',
    'AsyncRowCursor',
    'ResultSource',
    'SourceState',
    'DirectResultSource',
    'CursorResultSource',
    'AsyncDirectResultSource',
    'AsyncCursorResultSource',
    'DatabaseError',
    'ConnectionFailure',
    'QueryError',
    'TypeConversionError',
    'ValidationError',
    'UnsupportedType',
    'NotAnOutputParameter',
    'FieldNotFound',
    'RoutineExecutionFailed',
    'Cancelled',
    'CursorStateError',
    'CursorClosed',
]
