import pytest
from procdb import Transaction
from procdb.strategy import get_strategy


def test_commit_restores_autocommit(fake_mssql):
    raw = fake_mssql.driver_connection
    with Transaction(fake_mssql) as tx:
        assert raw.autocommit is False
        assert fake_mssql.in_transaction is True
        tx.execute('update t set a = ?', 1)
    assert raw.events == ['commit']
    assert raw.autocommit is True
    assert fake_mssql.in_transaction is False
    assert raw.executed == [('update t set a = ?', (1,))]


def test_exception_rolls_back(fake_mssql):
    raw = fake_mssql.driver_connection
    with pytest.raises(ZeroDivisionError), Transaction(fake_mssql):
        1 / 0
    assert raw.events == ['rollback']
    assert raw.autocommit is True


def test_manual_commit_mode_kept(fake_mssql):
    raw = fake_mssql.driver_connection
    raw.autocommit = False
    with Transaction(fake_mssql):
        pass
    assert raw.events == ['commit']
    assert raw.autocommit is False

    with pytest.raises(ZeroDivisionError), Transaction(fake_mssql):
        1 / 0
    assert raw.autocommit is False


def test_sqlserver_open_transaction_detected(fake_mssql):
    raw = fake_mssql.driver_connection
    strategy = get_strategy('mssql')
    assert strategy.in_transaction(raw) is False
    assert raw.executed == []

    raw.autocommit = False
    raw.script([(('',), [(0,)])], [(('',), [(1,)])])
    assert strategy.in_transaction(raw) is False
    assert strategy.in_transaction(raw) is True
    assert raw.executed == [('SELECT @@TRANCOUNT', ())] * 2
    assert all(cursor.closed for cursor in raw.cursors)


def test_nested_rejected(fake_mssql):
    with Transaction(fake_mssql):
        with pytest.raises(RuntimeError, match='Nested'):
            Transaction(fake_mssql)
    with Transaction(fake_mssql):
        pass
    assert fake_mssql.driver_connection.events == ['commit', 'commit']


def test_select_returns_dicts(fake_mssql):
    fake_mssql.driver_connection.script([(('id', 'name'), [(1, 'Alice')])])
    with Transaction(fake_mssql) as tx:
        assert tx.select('select id, name from t') == [{'id': 1, 'name': 'Alice'}]
        assert tx.dialect == 'mssql'
        assert tx.connection is fake_mssql


if __name__ == '__main__':
    __import__('pytest').main([__file__])
