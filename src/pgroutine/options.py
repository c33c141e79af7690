from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pandas as pd
import pyarrow as pa
from pgroutine.sources import DEFAULT_FETCH_SIZE
from pgroutine.types import Column

from libb import ConfigOptions, scriptname

__all__ = [
    'DatabaseOptions',
    'pandas_numpy_data_loader',
    'pandas_pyarrow_data_loader',
    'iterdict_data_loader',
]

SUPPORTED_DRIVERS = ('postgresql',)


def iterdict_data_loader(data, columns, **kwargs) -> list[dict]:
    """Minimal data loader.

    Accepts additional keyword arguments (like table_name) for compatibility
    with other data loaders, but doesn't use them.
    """
    if not data:
        return []
    return list(data)


def _empty_dataframe(columns) -> pd.DataFrame:
    """Create empty DataFrame with column metadata."""
    df = pd.DataFrame(columns=Column.get_names(columns))
    df.attrs['column_types'] = Column.get_column_types_dict(columns)
    return df


def pandas_numpy_data_loader(data, columns, **kwargs) -> pd.DataFrame:
    """Standard pandas DataFrame loader using NumPy.

    Always returns a DataFrame, never None, with columns preserved for empty results.
    Includes type information in the DataFrame.attrs attribute.
    """
    if not data:
        return _empty_dataframe(columns)

    df = pd.DataFrame.from_records(list(data), columns=Column.get_names(columns))
    df.attrs['column_types'] = Column.get_column_types_dict(columns)
    return df


def pandas_pyarrow_data_loader(data, columns, **kwargs) -> pd.DataFrame:
    """PyArrow-based pandas DataFrame loader.

    Always returns a DataFrame, never None, with columns preserved for empty results.
    """
    if not data:
        return _empty_dataframe(columns)

    column_names = Column.get_names(columns)
    columns_data = [[row[col] for row in data] for col in column_names]
    df = pa.table(columns_data, names=column_names).to_pandas(types_mapper=pd.ArrowDtype)
    df.attrs['column_types'] = Column.get_column_types_dict(columns)
    return df


@dataclass
class DatabaseOptions(ConfigOptions):
    """Options

    supported driver names: `postgresql`

    Stored routine options:
    - cursor_fetch_size: Rows per ``FETCH FORWARD`` when paging a cursor
      function's result (default: 100)
    - release_server_cursor: Send ``CLOSE`` for the server-side cursor when its
      row cursor is closed, instead of leaving it to the end of the
      transaction (default: False)
    """
    drivername: str = 'postgresql'
    hostname: str = None
    username: str = None
    password: str = None
    database: str = None
    port: int = 0
    timeout: int = 0
    appname: str = None
    data_loader: Callable[..., Any] | None = None
    cursor_fetch_size: int = DEFAULT_FETCH_SIZE
    release_server_cursor: bool = False

    def __post_init__(self):
        if self.drivername not in SUPPORTED_DRIVERS:
            raise ValueError(f'drivername must be one of: {list(SUPPORTED_DRIVERS)}')
        if self.cursor_fetch_size is None or int(self.cursor_fetch_size) < 1:
            raise ValueError(f'cursor_fetch_size must be at least 1, got {self.cursor_fetch_size!r}')
        self.cursor_fetch_size = int(self.cursor_fetch_size)
        self.appname = self.appname or scriptname() or 'python_console'
        if self.data_loader is None:
            self.data_loader = pandas_numpy_data_loader

    def validate_connection(self) -> None:
        """Check the fields a server connection needs.

        Raises
            ValueError: If hostname, username, password or database is missing
        """
        missing = [name for name in ('hostname', 'username', 'password', 'database')
                   if not getattr(self, name)]
        if missing:
            raise ValueError(f'Missing connection options: {", ".join(missing)}')
