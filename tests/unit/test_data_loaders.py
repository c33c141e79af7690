import pandas as pd
import pytest
from pgroutine.options import iterdict_data_loader, pandas_numpy_data_loader
from pgroutine.options import pandas_pyarrow_data_loader
from pgroutine.types import Column

from tests.fixtures.fakes import INT4, TEXT

COLUMNS = [Column(name='full_name', type_code=TEXT, python_type=str),
           Column(name='pax_id', type_code=INT4, python_type=int)]
DATA = [{'full_name': 'Alice Martin', 'pax_id': 1}, {'full_name': 'Bob Chen', 'pax_id': 2}]


def test_pandas_numpy_data_loader():
    """Test pandas_numpy_data_loader function"""
    result = pandas_numpy_data_loader(DATA, COLUMNS, table_name='get_boarding_pax')
    assert isinstance(result, pd.DataFrame)
    assert list(result.columns) == Column.get_names(COLUMNS)
    assert len(result) == 2
    assert result.iloc[0]['full_name'] == 'Alice Martin'
    assert result.iloc[1]['pax_id'] == 2
    assert result.attrs['column_types']['pax_id']['python_type'] == 'int'


@pytest.mark.skipif(
    not hasattr(pd, 'ArrowDtype'),
    reason='ArrowDtype not available in this pandas version'
)
def test_pandas_pyarrow_data_loader():
    """Test pandas_pyarrow_data_loader function"""
    result = pandas_pyarrow_data_loader(DATA, COLUMNS)
    assert isinstance(result, pd.DataFrame)
    assert list(result.columns) == Column.get_names(COLUMNS)
    assert len(result) == 2
    assert result.iloc[0]['full_name'] == 'Alice Martin'
    assert result.iloc[1]['pax_id'] == 2


def test_empty_results_keep_columns():
    """Test loaders on a result without rows"""
    for loader in (pandas_numpy_data_loader, pandas_pyarrow_data_loader):
        result = loader([], COLUMNS)
        assert result.empty
        assert list(result.columns) == ['full_name', 'pax_id']
    assert iterdict_data_loader([], COLUMNS) == []


def test_iterdict_data_loader():
    assert iterdict_data_loader(iter(DATA), COLUMNS, table_name='x') == DATA


if __name__ == '__main__':
    __import__('pytest').main([__file__])
