import dataclasses
import datetime
import decimal
import uuid

import pytest
from procdb import BindingError, CommandDescriptor, CommandType, DbType
from procdb import Parameter, ParameterDirection


class TestParameter:

    def test_input_keeps_value(self):
        p = Parameter.input('@customer_id', DbType.INTEGER, 42)
        assert p.direction is ParameterDirection.IN
        assert p.value == 42
        assert p.bind_name == 'customer_id'
        assert not p.is_output

    def test_input_none_binds_null(self):
        p = Parameter.input('note', DbType.STRING, None)
        assert p.value is None

    def test_input_without_value_rejected(self):
        with pytest.raises(BindingError, match='requires a value'):
            Parameter('id', DbType.INTEGER)

    def test_input_output_without_value_rejected(self):
        with pytest.raises(BindingError):
            Parameter('count', DbType.INTEGER, ParameterDirection.INOUT)

    def test_output_starts_empty(self):
        p = Parameter.output('@is_active', DbType.BOOLEAN)
        assert p.value is None
        assert p.is_output

    def test_return_value_rejects_value(self):
        with pytest.raises(BindingError, match='RETURN_VALUE'):
            Parameter('rv', DbType.INTEGER, ParameterDirection.RETURN_VALUE, 5)

    def test_return_value_defaults(self):
        p = Parameter.return_value()
        assert p.name == 'RETURN_VALUE'
        assert p.db_type is DbType.INTEGER
        assert p.is_output

    @pytest.mark.parametrize('name', ['', '@', '   '])
    def test_empty_name_rejected(self, name):
        with pytest.raises(BindingError, match='name'):
            Parameter.input(name, DbType.INTEGER, 1)

    @pytest.mark.parametrize('name', [
        'id = 1; DROP TABLE t; --',
        '@id OUTPUT',
        '1st',
        'a.b',
        "x'",
        '@@rowcount',
    ])
    def test_non_identifier_name_rejected(self, name):
        with pytest.raises(BindingError, match='not a valid identifier'):
            Parameter.input(name, DbType.INTEGER, 1)

    @pytest.mark.parametrize('name', ['@id', 'customer_id', '@Kunde_Nr', '@tmp#1', '_x$'])
    def test_identifier_names_accepted(self, name):
        assert Parameter.input(name, DbType.INTEGER, 1).bind_name == name.lstrip('@')

    def test_db_type_must_be_enum(self):
        with pytest.raises(BindingError, match='db_type'):
            Parameter.input('id', 'int', 1)

    def test_binding_error_is_value_error(self):
        with pytest.raises(ValueError):
            Parameter.input('id', 'int', 1)

    def test_descriptor_is_frozen(self):
        p = Parameter.input('id', DbType.INTEGER, 1)
        with pytest.raises(dataclasses.FrozenInstanceError):
            p.value = 2

    def test_assign_output_coerces(self):
        active = Parameter.output('active', DbType.BOOLEAN)
        active._assign_output(1)
        assert active.value is True

        amount = Parameter.output('amount', DbType.DECIMAL)
        amount._assign_output(12.5)
        assert amount.value == decimal.Decimal('12.5')

        missing = Parameter.output('missing', DbType.INTEGER)
        missing._assign_output(None)
        assert missing.value is None


class TestDbTypeCoerce:

    def test_date_from_datetime(self):
        value = DbType.DATE.coerce(datetime.datetime(2024, 3, 1, 12, 30))
        assert value == datetime.date(2024, 3, 1)

    def test_datetime_from_string(self):
        value = DbType.DATETIME.coerce('2024-03-01T12:30:00')
        assert value == datetime.datetime(2024, 3, 1, 12, 30)

    def test_guid_from_string(self):
        value = DbType.GUID.coerce('12345678-1234-5678-1234-567812345678')
        assert value == uuid.UUID('12345678-1234-5678-1234-567812345678')

    def test_binary_from_memoryview(self):
        assert DbType.BINARY.coerce(memoryview(b'abc')) == b'abc'

    def test_boolean_from_string(self):
        assert DbType.BOOLEAN.coerce('true') is True
        assert DbType.BOOLEAN.coerce('0') is False


class TestCommandDescriptor:

    def test_parameters_become_tuple(self):
        cmd = CommandDescriptor('dbo.proc', [Parameter.input('a', DbType.INTEGER, 1)])
        assert isinstance(cmd.parameters, tuple)
        assert cmd.command_type is CommandType.STORED_PROCEDURE

    def test_empty_text_rejected(self):
        with pytest.raises(BindingError):
            CommandDescriptor('  ')

    def test_non_parameter_rejected(self):
        with pytest.raises(BindingError, match='Expected Parameter'):
            CommandDescriptor('proc', (('a', 1),))

    def test_duplicate_names_ignore_case_and_prefix(self):
        with pytest.raises(BindingError, match='Duplicate'):
            CommandDescriptor('proc', (Parameter.input('@Id', DbType.INTEGER, 1),
                                       Parameter.input('id', DbType.INTEGER, 2)))

    def test_single_return_value(self):
        with pytest.raises(BindingError, match='RETURN_VALUE'):
            CommandDescriptor('proc', (Parameter.return_value('rv1'),
                                       Parameter.return_value('rv2')))

    def test_text_rejects_outputs(self):
        with pytest.raises(BindingError, match='Text commands'):
            CommandDescriptor('select 1', (Parameter.output('x', DbType.INTEGER),),
                              CommandType.TEXT)

    def test_parameter_groups(self):
        a = Parameter.input('a', DbType.INTEGER, 1)
        b = Parameter.output('b', DbType.STRING)
        c = Parameter.input_output('c', DbType.INTEGER, 3)
        rv = Parameter.return_value()
        cmd = CommandDescriptor('proc', (a, rv, b, c))
        assert cmd.output_parameters == (rv, b, c)
        assert cmd.return_parameter is rv
        assert cmd.argument_parameters == (a, b, c)

    def test_no_return_parameter(self):
        cmd = CommandDescriptor('proc')
        assert cmd.return_parameter is None
        assert cmd.output_parameters == ()


if __name__ == '__main__':
    __import__('pytest').main([__file__])
