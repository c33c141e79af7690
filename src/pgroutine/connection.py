"""
Database connection handling with SQLAlchemy and psycopg.

This module provides:
1. The `connect()` function for creating new database connections
2. The `ConnectionWrapper` class that tracks calls and time on a connection
3. Engine creation and management through a thread-safe registry
4. `Transaction`, the context manager stored routine chains run in
5. Asyncio counterparts over ``psycopg.AsyncConnection``

Connections are in auto-commit mode outside a `Transaction`. Functions that
return a refcursor must be called inside one: the server drops the cursor when
the transaction that opened it ends.
"""
import atexit
import logging
import threading
from collections.abc import Callable
from dataclasses import fields
from typing import Any, Self

import psycopg
import sqlalchemy as sa
from pgroutine.exceptions import ConnectionFailure
from pgroutine.options import DatabaseOptions
from psycopg.conninfo import make_conninfo
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool

from libb import load_options

__all__ = [
    'ConnectionWrapper',
    'AsyncConnectionWrapper',
    'Transaction',
    'AsyncTransaction',
    'connect',
    'connect_async',
    'create_url_from_options',
    'get_engine_for_options',
    'get_driver_connection',
    'dispose_all_engines',
]

logger = logging.getLogger(__name__)

_engine_registry: dict[str, Engine] = {}
_engine_registry_lock = threading.RLock()

_local = threading.local()


def create_url_from_options(options: DatabaseOptions,
                            url_creator: Callable[..., sa.URL] = sa.URL.create) -> sa.URL:
    """Convert DatabaseOptions to SQLAlchemy URL.
    """
    if options.drivername != 'postgresql':
        raise ValueError(f'Unsupported database type: {options.drivername}')

    query = {'application_name': options.appname}
    if options.timeout:
        query['connect_timeout'] = str(options.timeout)

    return url_creator(
        drivername='postgresql+psycopg',
        username=options.username,
        password=options.password,
        host=options.hostname,
        port=options.port or None,
        database=options.database,
        query=query
    )


def create_conninfo_from_options(options: DatabaseOptions) -> str:
    """Convert DatabaseOptions to a libpq connection string.
    """
    return make_conninfo(
        '',
        host=options.hostname,
        port=options.port or None,
        user=options.username,
        password=options.password,
        dbname=options.database,
        connect_timeout=options.timeout or None,
        application_name=options.appname,
    )


def get_engine_for_options(options: DatabaseOptions,
                           engine_factory: Callable[..., Engine] = sa.create_engine,
                           **kwargs: Any) -> Engine:
    """Get or create a SQLAlchemy engine for the given options.
    """
    key = str(create_url_from_options(options).render_as_string(hide_password=False))

    with _engine_registry_lock:
        if key in _engine_registry:
            logger.debug(f'Using existing engine for {options.drivername}')
            return _engine_registry[key]

        engine_kwargs: dict[str, Any] = {'echo': False, 'poolclass': NullPool}
        engine_kwargs.update(kwargs)

        engine = engine_factory(create_url_from_options(options), **engine_kwargs)

        _engine_registry[key] = engine
        logger.debug(f'Created new engine for {options.drivername}')

        return engine


def dispose_all_engines() -> None:
    """Dispose all engines in the registry.
    """
    with _engine_registry_lock:
        for engine in list(_engine_registry.values()):
            engine.dispose()
        _engine_registry.clear()
        logger.debug('All database engines disposed')


atexit.register(dispose_all_engines)


def get_driver_connection(cn: Any) -> Any:
    """The psycopg connection behind a wrapper, or the object itself.
    """
    return getattr(cn, 'driver_connection', cn)


class ConnectionWrapper:
    """Wraps a SQLAlchemy connection object to track calls and execution time

    This class provides a thin wrapper around SQLAlchemy connection objects that:
    1. Tracks routine call counts and timing
    2. Supports context manager protocol for explicit resource management
    3. Provides access to the psycopg connection via driver_connection
    4. Delegates other attribute access to the psycopg connection
    """

    def __init__(self, sa_connection: sa.engine.Connection | None = None,
                 options: DatabaseOptions | None = None) -> None:
        self.sa_connection = sa_connection
        self.engine = sa_connection.engine if sa_connection else None
        self.options = options
        self.dbapi_connection = sa_connection.connection if sa_connection else None
        self.calls = 0
        self.time = 0
        self.in_transaction = False

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        self.close()
        logger.debug('Closed connection via context manager')

    def __getattr__(self, name: str) -> Any:
        """Delegate attribute access to the psycopg connection.
        """
        if name.startswith('__') or self.__dict__.get('dbapi_connection') is None:
            raise AttributeError(name)
        return getattr(self.driver_connection, name)

    @property
    def driver_connection(self) -> psycopg.Connection:
        return self.dbapi_connection.driver_connection

    @property
    def dialect(self) -> str:
        return 'postgresql'

    @property
    def autocommit(self) -> bool:
        return self.driver_connection.autocommit

    @autocommit.setter
    def autocommit(self, value: bool) -> None:
        self.driver_connection.autocommit = value

    @property
    def closed(self) -> bool:
        return self.sa_connection is None or self.sa_connection.closed

    def cursor(self, **kwargs: Any) -> psycopg.Cursor:
        """Get a cursor on the psycopg connection
        """
        return self.driver_connection.cursor(**kwargs)

    def addcall(self, elapsed: float) -> None:
        """Track execution statistics
        """
        self.time += elapsed
        self.calls += 1

    def commit(self) -> None:
        self.driver_connection.commit()

    def rollback(self) -> None:
        self.driver_connection.rollback()

    def close(self) -> None:
        """Close the SQLAlchemy connection, committing first if needed
        """
        if self.closed:
            return
        if not self.in_transaction and not self.autocommit:
            self.commit()
        self.sa_connection.close()
        logger.debug(f'Connection closed: {self.calls} calls in {self.time:.2f}s (avg: {self.time/max(1,self.calls):.3f}s per call)')


def configure_connection(sa_connection: sa.engine.Connection) -> None:
    """Put a new connection in auto-commit mode.
    """
    sa_connection.connection.driver_connection.autocommit = True


@load_options(cls=DatabaseOptions)
def connect(options: DatabaseOptions | dict[str, Any] | str,
            config: Any | None = None, **kw: Any) -> ConnectionWrapper:
    """Connect to a PostgreSQL database using SQLAlchemy for connection management

    Args:
        options: Can be:
                - DatabaseOptions object
                - String path to configuration
                - Dictionary of options
                - Options specified as keyword arguments
        config: Configuration object (for loading from config files)
        **kw: Additional keyword arguments to override options

    Returns
        ConnectionWrapper object for connecting to the database

    Raises
        ValueError: If a required connection option is missing
        ConnectionFailure: If the server cannot be reached
    """
    if isinstance(options, DatabaseOptions):
        for field in fields(options):
            kw.pop(field.name, None)
    else:
        options_func = load_options(cls=DatabaseOptions)(lambda o, c: o)
        options = options_func(options, config, **kw)

    options.validate_connection()
    engine = get_engine_for_options(options)

    try:
        sa_connection = engine.connect()
    except sa.exc.OperationalError as err:
        raise ConnectionFailure(f'Could not connect to {options.hostname}/{options.database}') from err
    configure_connection(sa_connection)

    return ConnectionWrapper(sa_connection, options)


class AsyncConnectionWrapper:
    """Wraps a ``psycopg.AsyncConnection`` to track calls and execution time
    """

    def __init__(self, connection: psycopg.AsyncConnection,
                 options: DatabaseOptions | None = None) -> None:
        self.driver_connection = connection
        self.options = options
        self.calls = 0
        self.time = 0
        self.in_transaction = False

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None,
                        exc_tb: Any | None) -> None:
        await self.close()

    @property
    def autocommit(self) -> bool:
        return self.driver_connection.autocommit

    @property
    def closed(self) -> bool:
        return self.driver_connection.closed

    def cursor(self, **kwargs: Any) -> psycopg.AsyncCursor:
        return self.driver_connection.cursor(**kwargs)

    def addcall(self, elapsed: float) -> None:
        self.time += elapsed
        self.calls += 1

    async def commit(self) -> None:
        await self.driver_connection.commit()

    async def rollback(self) -> None:
        await self.driver_connection.rollback()

    async def close(self) -> None:
        if self.closed:
            return
        await self.driver_connection.close()
        logger.debug(f'Connection closed: {self.calls} calls in {self.time:.2f}s')


async def connect_async(options: DatabaseOptions | dict[str, Any],
                        **kw: Any) -> AsyncConnectionWrapper:
    """Open an asyncio connection in auto-commit mode.

    Raises
        ValueError: If a required connection option is missing
        ConnectionFailure: If the server cannot be reached
    """
    if not isinstance(options, DatabaseOptions):
        options = DatabaseOptions(**{**options, **kw})
    options.validate_connection()

    try:
        connection = await psycopg.AsyncConnection.connect(
            create_conninfo_from_options(options), autocommit=True)
    except psycopg.OperationalError as err:
        raise ConnectionFailure(f'Could not connect to {options.hostname}/{options.database}') from err

    return AsyncConnectionWrapper(connection, options)


def _enter_transaction(cn: Any) -> None:
    if not hasattr(_local, 'active_transactions'):
        _local.active_transactions = set()
    if id(cn) in _local.active_transactions:
        raise RuntimeError('Nested transactions are not supported')
    _local.active_transactions.add(id(cn))
    if hasattr(cn, 'in_transaction'):
        cn.in_transaction = True


def _leave_transaction(cn: Any) -> None:
    _local.active_transactions.discard(id(cn))
    if hasattr(cn, 'in_transaction'):
        cn.in_transaction = False
    logger.debug(f'Transaction cleanup complete for connection {id(cn)}')


class Transaction:
    """Context manager for running routine calls in one transaction.

    Auto-commit is switched off for the block and restored afterwards; the
    block commits on success and rolls back on error. Refcursors opened by
    cursor functions in the block stay readable until it ends.

    Uses thread-local storage to reject nested transactions on the same
    connection.

    Examples
        with Transaction(cn):
            rows = invoker.exec_func_dataset_using_cursor('get_boarding_pax', params)
            df = rows.copy_to_table()
    """

    def __init__(self, cn: Any) -> None:
        self.connection = cn
        self.driver_connection = get_driver_connection(cn)

    def __enter__(self) -> Self:
        _enter_transaction(self.connection)
        self._autocommit = self.driver_connection.autocommit
        self.driver_connection.autocommit = False
        logger.debug(f'Started transaction for connection {id(self.connection)}')
        return self

    def __exit__(self, exc_type: type | None, value: Exception | None, traceback: Any | None) -> None:
        try:
            if exc_type is not None:
                self.driver_connection.rollback()
                logger.warning('Rolling back the current transaction')
            else:
                self.driver_connection.commit()
                logger.debug(f'Committed transaction for connection {id(self.connection)}')
        finally:
            self.driver_connection.autocommit = self._autocommit
            _leave_transaction(self.connection)


def transaction(cn: Any) -> Transaction:
    return Transaction(cn)


class AsyncTransaction:
    """Asyncio variant of `Transaction`.
    """

    def __init__(self, cn: Any) -> None:
        self.connection = cn
        self.driver_connection = get_driver_connection(cn)

    async def __aenter__(self) -> Self:
        _enter_transaction(self.connection)
        self._autocommit = self.driver_connection.autocommit
        await self.driver_connection.set_autocommit(False)
        logger.debug(f'Started transaction for connection {id(self.connection)}')
        return self

    async def __aexit__(self, exc_type: type | None, value: Exception | None,
                        traceback: Any | None) -> None:
        try:
            if exc_type is not None:
                await self.driver_connection.rollback()
                logger.warning('Rolling back the current transaction')
            else:
                await self.driver_connection.commit()
                logger.debug(f'Committed transaction for connection {id(self.connection)}')
        finally:
            await self.driver_connection.set_autocommit(self._autocommit)
            _leave_transaction(self.connection)
