"""
Unit tests for connection introspection and the strategy factory.
"""
import sqlite3
import types

import pytest
import sqlalchemy as sa
from procdb.strategy import get_available_dialects, get_db_strategy, get_strategy
from procdb.strategy import get_strategy_class, is_supported_dialect
from procdb.strategy.sqlite import SQLiteStrategy
from procdb.utils import get_dialect_name, get_driver_connection


@pytest.mark.parametrize('connection_type', ['postgresql', 'sqlite', 'mssql'])
def test_dialect_from_driver_module(create_simple_mock_connection, connection_type):
    assert get_dialect_name(create_simple_mock_connection(connection_type)) == connection_type


def test_unknown_driver(create_simple_mock_connection):
    with pytest.raises(AttributeError):
        get_dialect_name(create_simple_mock_connection('unknown'))


def test_dialect_attribute():
    assert get_dialect_name(types.SimpleNamespace(dialect='MSSQL')) == 'mssql'


def test_sqlalchemy_engine_and_connection(tmp_path):
    engine = sa.create_engine(f'sqlite:///{tmp_path / "utils.db"}')
    try:
        assert get_dialect_name(engine) == 'sqlite'
        with engine.connect() as conn:
            assert get_dialect_name(conn) == 'sqlite'
            assert get_dialect_name(conn.connection) == 'sqlite'
            assert isinstance(get_driver_connection(conn.connection), sqlite3.Connection)
    finally:
        engine.dispose()


def test_raw_driver_connection():
    cn = sqlite3.connect(':memory:')
    try:
        assert get_dialect_name(cn) == 'sqlite'
        assert get_driver_connection(cn) is cn
    finally:
        cn.close()


def test_strategy_factory():
    assert set(get_available_dialects()) >= {'mssql', 'postgresql', 'sqlite'}
    assert is_supported_dialect('sqlite')
    assert not is_supported_dialect('oracle')
    assert get_strategy_class('sqlite') is SQLiteStrategy
    assert get_strategy('sqlite') is get_strategy('sqlite')
    assert get_db_strategy(types.SimpleNamespace(dialect='sqlite')) is get_strategy('sqlite')

    with pytest.raises(ValueError, match='Unsupported dialect'):
        get_strategy('oracle')


if __name__ == '__main__':
    __import__('pytest').main([__file__])
