"""
Context lifecycle and command execution against a SQLite file.
"""
import dataclasses
import sqlite3
import threading
import time

import pandas as pd
import procdb
import pytest
import sqlalchemy as sa
from procdb import CancellationToken, CommandDescriptor, CommandType, ConnectionFailure
from procdb import ContextBusyError, ContextDisposedError, ContextError, ContextState, DbType
from procdb import NotSupportedError, OperationCancelled, Parameter
from procdb.options import DatabaseOptions, pandas_numpy_data_loader

import config
from tests.fixtures.sqlite import count_rows

TEXT = CommandType.TEXT

# Never finishes on its own
SPIN = 'with recursive c(x) as (select 1 union all select x + 1 from c) select count(*) from c'


@dataclasses.dataclass
class Customer:
    id: int
    name: str
    value: int


def insert(ctx, name, value):
    ctx.execute_non_query('insert into test_table (name, value) values (?, ?)',
                          Parameter.input('name', DbType.STRING, name),
                          Parameter.input('value', DbType.INTEGER, value),
                          command_type=TEXT)


def wait_until(predicate, seconds=5):
    deadline = time.monotonic() + seconds
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError('condition not reached')
        time.sleep(0.01)


class TestLifecycle:

    def test_states(self, sqlite_options):
        ctx = procdb.create(sqlite_options)
        assert ctx.state is ContextState.UNOPENED
        assert ctx.open() is ctx
        assert ctx.state is ContextState.OPEN

        ctx.dispose()
        ctx.dispose()
        assert ctx.state is ContextState.DISPOSED

        with pytest.raises(ContextDisposedError):
            ctx.execute_scalar('select 1', command_type=TEXT)
        with pytest.raises(ContextDisposedError):
            ctx.execute_bulk_copy('test_table', [{'name': 'x', 'value': 1}])

    def test_context_manager_disposes(self, sqlite_path):
        with procdb.create(f'sqlite:///{sqlite_path}') as ctx:
            assert ctx.execute_scalar('select count(*) from test_table', command_type=TEXT) == 3
        assert ctx.state is ContextState.DISPOSED

    def test_unusable_database_fails_on_open(self, tmp_path):
        ctx = procdb.create({'drivername': 'sqlite',
                             'database': str(tmp_path / 'missing' / 'nowhere.db')})
        with pytest.raises(sqlite3.OperationalError):
            ctx.open()
        ctx.dispose()


class TestCommands:

    def test_commit_visible_to_other_context(self, sqlite_ctx, sqlite_path):
        insert(sqlite_ctx, 'Dana', 40)

        with procdb.create(f'sqlite:///{sqlite_path}') as other:
            value = other.execute_scalar('select value from test_table where name = ?',
                                         Parameter.input('name', DbType.STRING, 'Dana'),
                                         command_type=TEXT)
        assert value == 40

    def test_scalar(self, sqlite_ctx):
        assert sqlite_ctx.execute_scalar('select count(*) from test_table', command_type=TEXT) == 3
        assert sqlite_ctx.execute_scalar('select id from test_table where 0', command_type=TEXT) is None

    def test_projection(self, sqlite_ctx):
        cmd = CommandDescriptor('select id, name, value from test_table where value >= ? order by id',
                                (Parameter.input('min_value', DbType.INTEGER, 20),), TEXT)

        customers = sqlite_ctx.execute_transaction(
            cmd, lambda live: [Customer(**row) for row in live.fetchall()])

        assert customers == [Customer(2, 'Bob', 20), Customer(3, 'Charlie', 30)]

    def test_projection_fetch_uses_configured_loader(self, sqlite_path):
        options = DatabaseOptions(**(config.sqlite | {'database': sqlite_path,
                                                      'data_loader': pandas_numpy_data_loader}))
        cmd = CommandDescriptor('select name, value from test_table order by id', command_type=TEXT)
        with procdb.create(options) as ctx:
            df = ctx.execute_transaction(cmd, lambda live: live.fetch())

        assert isinstance(df, pd.DataFrame)
        assert list(df.columns) == ['name', 'value']
        assert df['value'].tolist() == [10, 20, 30]

    def test_projection_runs_more_statements(self, sqlite_ctx, sqlite_path):
        def bump_and_total(live):
            live.execute('update test_table set value = value + ?', 1)
            live.execute('select sum(value) from test_table')
            return live.scalar()

        cmd = CommandDescriptor('select 1', command_type=TEXT)
        assert sqlite_ctx.execute_transaction(cmd, bump_and_total) == 63

        cn = sqlite3.connect(sqlite_path)
        try:
            assert cn.execute('select sum(value) from test_table').fetchone()[0] == 63
        finally:
            cn.close()

    def test_partial_insert_rolled_back(self, sqlite_ctx, sqlite_path):
        def insert_two(live):
            live.execute("insert into test_table (name, value) values ('Dana', 40)")
            live.execute("insert into test_table (name, value) values ('Alice', 50)")

        with pytest.raises(procdb.IntegrityError):
            sqlite_ctx.execute_transaction(CommandDescriptor('select 1', command_type=TEXT),
                                           insert_two)

        assert count_rows(sqlite_path) == 3
        assert sqlite_ctx.execute_scalar("select count(*) from test_table where name = 'Dana'",
                                         command_type=TEXT) == 0

    def test_projection_error_rolls_back(self, sqlite_ctx, sqlite_path):
        def insert_then_fail(live):
            live.execute("insert into test_table (name, value) values ('Dana', 40)")
            raise LookupError('no such customer')

        with pytest.raises(LookupError):
            sqlite_ctx.execute_transaction(CommandDescriptor('select 1', command_type=TEXT),
                                           insert_then_fail)
        assert count_rows(sqlite_path) == 3

    def test_stored_procedure_not_supported(self, sqlite_ctx):
        with pytest.raises(NotSupportedError):
            sqlite_ctx.execute_non_query('archive_items')
        assert sqlite_ctx.busy is False
        assert sqlite_ctx.execute_scalar('select 1', command_type=TEXT) == 1

    def test_return_value_not_supported(self, sqlite_ctx):
        with pytest.raises(NotSupportedError):
            sqlite_ctx.execute_with_return_value('item_count')


class TestConcurrency:

    def test_call_from_projection_is_busy(self, sqlite_ctx, sqlite_path):
        def nested(live):
            live.execute("insert into test_table (name, value) values ('Dana', 40)")
            return sqlite_ctx.execute_scalar('select 1', command_type=TEXT)

        with pytest.raises(ContextBusyError):
            sqlite_ctx.execute_transaction(CommandDescriptor('select 1', command_type=TEXT), nested)

        assert count_rows(sqlite_path) == 3
        assert sqlite_ctx.busy is False

    def test_overlapping_call_from_other_thread_is_busy(self, sqlite_ctx):
        token = CancellationToken()
        errors = []

        def spin():
            try:
                sqlite_ctx.execute_scalar(SPIN, command_type=TEXT, timeout=10, cancel=token)
            except Exception as e:
                errors.append(e)

        thread = threading.Thread(target=spin)
        thread.start()
        try:
            wait_until(lambda: sqlite_ctx.busy)
            with pytest.raises(ContextBusyError):
                sqlite_ctx.execute_scalar('select 1', command_type=TEXT)
        finally:
            token.cancel()
            thread.join(15)

        assert len(errors) == 1
        assert sqlite_ctx.execute_scalar('select 1', command_type=TEXT) == 1

    def test_independent_contexts_on_threads(self, sqlite_options):
        workers = 8
        rounds = 20
        barrier = threading.Barrier(workers)
        results = {}
        params = {}
        errors = []

        def work(n):
            try:
                own = [Parameter.input('n', DbType.INTEGER, n * 1000 + i) for i in range(rounds)]
                params[n] = own
                with procdb.create(sqlite_options) as ctx:
                    barrier.wait(5)
                    results[n] = [ctx.execute_scalar('select ? * 10', p, command_type=TEXT)
                                  for p in own]
                    cmd = CommandDescriptor('select ? as worker, name from test_table order by id',
                                            (Parameter.input('worker', DbType.INTEGER, n),), TEXT)
                    rows = ctx.execute_transaction(cmd, lambda live: live.fetchall())
                    assert {row['worker'] for row in rows} == {n}
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=work, args=(n,)) for n in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        for n in range(workers):
            assert results[n] == [(n * 1000 + i) * 10 for i in range(rounds)]
            assert [p.value for p in params[n]] == [n * 1000 + i for i in range(rounds)]


class TestTimeoutAndCancel:

    def test_timeout_aborts_call(self, sqlite_ctx):
        started = time.monotonic()
        with pytest.raises(sqlite3.OperationalError):
            sqlite_ctx.execute_scalar(SPIN, command_type=TEXT, timeout=1)
        assert time.monotonic() - started < 10
        assert sqlite_ctx.execute_scalar('select count(*) from test_table', command_type=TEXT) == 3

    def test_context_default_timeout(self, sqlite_options):
        with procdb.create(sqlite_options, command_timeout=1) as ctx:
            with pytest.raises(sqlite3.OperationalError):
                ctx.execute_scalar(SPIN, command_type=TEXT)

    def test_cancel_token(self, sqlite_ctx, sqlite_path):
        token = CancellationToken()
        timer = threading.Timer(0.5, token.cancel)
        timer.start()
        try:
            with pytest.raises((sqlite3.OperationalError, OperationCancelled)):
                sqlite_ctx.execute_scalar(SPIN, command_type=TEXT, timeout=10, cancel=token)
        finally:
            timer.cancel()
        assert sqlite_ctx.busy is False
        assert count_rows(sqlite_path) == 3

    def test_cancelled_token_rejected_up_front(self, sqlite_ctx):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            sqlite_ctx.execute_scalar('select 1', command_type=TEXT, cancel=token)

    def test_dispose_cancels_call_in_flight(self, sqlite_ctx):
        timer = threading.Timer(0.5, sqlite_ctx.dispose)
        timer.start()
        try:
            with pytest.raises((sqlite3.OperationalError, OperationCancelled)):
                sqlite_ctx.execute_scalar(SPIN, command_type=TEXT, timeout=10)
        finally:
            timer.cancel()
        assert sqlite_ctx.state is ContextState.DISPOSED
        with pytest.raises(ContextDisposedError):
            sqlite_ctx.execute_scalar('select 1', command_type=TEXT)


class TestAdoption:

    def test_adopted_sqlalchemy_connection_left_open(self, sqlite_path):
        engine = sa.create_engine(f'sqlite:///{sqlite_path}')
        try:
            with engine.connect() as conn:
                ctx = procdb.create(conn)
                assert ctx.is_adopted
                assert ctx.state is ContextState.OPEN
                insert(ctx, 'Dana', 40)
                ctx.dispose()

                assert conn.closed is False
                assert conn.exec_driver_sql('select count(*) from test_table').scalar() == 4
                with pytest.raises(ContextDisposedError):
                    ctx.execute_scalar('select 1', command_type=TEXT)
        finally:
            engine.dispose()

    def test_owner_transactions_unchanged_after_call(self, sqlite_path):
        engine = sa.create_engine(f'sqlite:///{sqlite_path}')
        try:
            with engine.connect() as conn:
                raw = conn.connection.driver_connection
                isolation_level = raw.isolation_level
                ctx = procdb.create(conn)
                assert ctx.execute_scalar('select 1', command_type=TEXT) == 1
                assert raw.isolation_level == isolation_level

                conn.exec_driver_sql("insert into test_table (name, value) values ('Dana', 40)")
                conn.rollback()
                assert count_rows(sqlite_path) == 3
                ctx.dispose()
        finally:
            engine.dispose()

    def test_call_refused_inside_owner_transaction(self, sqlite_path):
        engine = sa.create_engine(f'sqlite:///{sqlite_path}')
        try:
            with engine.connect() as conn:
                ctx = procdb.create(conn)
                conn.exec_driver_sql("insert into test_table (name, value) values ('Dana', 40)")
                with pytest.raises(ContextError):
                    insert(ctx, 'Erin', 50)
                assert ctx.busy is False

                conn.rollback()
                insert(ctx, 'Erin', 50)
                assert count_rows(sqlite_path) == 4
                ctx.dispose()
        finally:
            engine.dispose()

    def test_adopted_wrapper_left_open(self, sqlite_conn):
        with procdb.create(sqlite_conn) as ctx:
            assert ctx.options is sqlite_conn.options
            assert ctx.execute_scalar('select count(*) from test_table', command_type=TEXT) == 3
        assert sqlite_conn.closed is False

    def test_closed_connection_rejected(self, sqlite_options):
        cn = procdb.connect(sqlite_options)
        cn.close()
        with pytest.raises(ConnectionFailure):
            procdb.create(cn)

    def test_connection_closed_by_owner(self, sqlite_options):
        cn = procdb.connect(sqlite_options)
        ctx = procdb.create(cn)
        cn.close()
        with pytest.raises(ConnectionFailure):
            ctx.execute_scalar('select 1', command_type=TEXT)


if __name__ == '__main__':
    __import__('pytest').main([__file__])
