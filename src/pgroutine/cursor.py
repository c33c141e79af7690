"""
Statement logging and timing for routine calls.

`dumpsql` wraps a method ``(self, cursor, operation, args)`` that executes
one statement: it logs the SQL and arguments at DEBUG, logs the SQL again at
ERROR when the statement fails and accounts the elapsed time on the owning
connection through ``self.addcall``.
"""
import logging
import time
from functools import wraps
from typing import Any

logger = logging.getLogger(__name__)

__all__ = ['dumpsql', 'dumpsql_async']


def _status(cursor: Any) -> None:
    status = getattr(cursor, 'statusmessage', None)
    if status:
        logger.debug(f'Query result: {status}')


def dumpsql(func):
    """Decorator for logging SQL statements and parameters."""
    @wraps(func)
    def wrapper(self, cursor: Any, operation: str, args: Any, *a: Any, **kw: Any):
        start = time.time()
        logger.debug(f'SQL:\n{operation}\nargs: {args}')
        try:
            result = func(self, cursor, operation, args, *a, **kw)
            _status(cursor)
            return result
        except Exception:
            logger.error(f'Error with query:\nSQL:\n{operation}\nargs: {args}')
            raise
        finally:
            elapsed = time.time() - start
            self.addcall(elapsed)
            logger.debug(f'Query time: {elapsed:.4f}s')
    return wrapper


def dumpsql_async(func):
    """Decorator for logging SQL statements run by a coroutine."""
    @wraps(func)
    async def wrapper(self, cursor: Any, operation: str, args: Any, *a: Any, **kw: Any):
        start = time.time()
        logger.debug(f'SQL:\n{operation}\nargs: {args}')
        try:
            result = await func(self, cursor, operation, args, *a, **kw)
            _status(cursor)
            return result
        except Exception:
            logger.error(f'Error with query:\nSQL:\n{operation}\nargs: {args}')
            raise
        finally:
            elapsed = time.time() - start
            self.addcall(elapsed)
            logger.debug(f'Query time: {elapsed:.4f}s')
    return wrapper
