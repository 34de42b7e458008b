"""
Parameter and command descriptors.

A `Parameter` describes one stored-procedure parameter: name, semantic type,
direction and optional value. Descriptors are immutable with one documented
exception: after a call commits, the Command Runner writes the post-execution
value of every OUT, INOUT and RETURN_VALUE descriptor it was given, so the
caller can read it from the object it passed in. The write happens only after
the call completed; a failed call leaves the descriptor untouched.

Examples
    >>> p = Parameter.input('@customer_id', DbType.INTEGER, 42)
    >>> p.bind_name
    'customer_id'
    >>> out = Parameter.output('@is_active', DbType.BOOLEAN)
    >>> out.value is None
    True
"""
import re
from dataclasses import dataclass, field
from typing import Any, Self

from procdb.exceptions import BindingError
from procdb.types import CommandType, DbType, ParameterDirection

__all__ = [
    'Parameter',
    'CommandDescriptor',
    'RETURN_VALUE_NAME',
]

RETURN_VALUE_NAME = 'RETURN_VALUE'


class _Missing:
    """Marker for a parameter constructed without a value."""

    def __repr__(self) -> str:
        return '<missing>'

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()

_PARAMETER_NAME = re.compile(r'@?[^\W\d][\w@#$]*')


@dataclass(frozen=True, eq=False)
class Parameter:
    """One stored-procedure parameter.

    `value=None` on an IN parameter binds SQL NULL. Leaving the value out
    entirely is only valid for OUT and RETURN_VALUE parameters.
    """

    name: str
    db_type: DbType
    direction: ParameterDirection = ParameterDirection.IN
    value: Any = MISSING
    size: int | None = None
    precision: int | None = None
    scale: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.lstrip('@').strip():
            raise BindingError('Parameter name must be a non-empty string')
        if not _PARAMETER_NAME.fullmatch(self.name):
            raise BindingError(f'Parameter name {self.name!r} is not a valid identifier')
        if not isinstance(self.db_type, DbType):
            raise BindingError(f'Parameter {self.name!r}: db_type must be a DbType, got {self.db_type!r}')
        if not isinstance(self.direction, ParameterDirection):
            raise BindingError(f'Parameter {self.name!r}: direction must be a ParameterDirection')

        match self.direction:
            case ParameterDirection.IN | ParameterDirection.INOUT:
                if self.value is MISSING:
                    raise BindingError(f'Parameter {self.name!r}: {self.direction.name} requires a value')
            case ParameterDirection.OUT:
                if self.value is MISSING:
                    object.__setattr__(self, 'value', None)
            case ParameterDirection.RETURN_VALUE:
                if self.value is not MISSING and self.value is not None:
                    raise BindingError(f'Parameter {self.name!r}: RETURN_VALUE does not accept a value')
                object.__setattr__(self, 'value', None)

    @classmethod
    def input(cls, name: str, db_type: DbType, value: Any, **kw: Any) -> Self:
        """Caller-to-database parameter."""
        return cls(name, db_type, ParameterDirection.IN, value, **kw)

    @classmethod
    def output(cls, name: str, db_type: DbType, **kw: Any) -> Self:
        """Database-to-caller parameter, populated after the call."""
        return cls(name, db_type, ParameterDirection.OUT, **kw)

    @classmethod
    def input_output(cls, name: str, db_type: DbType, value: Any, **kw: Any) -> Self:
        """Parameter sent with an initial value and read back after the call."""
        return cls(name, db_type, ParameterDirection.INOUT, value, **kw)

    @classmethod
    def return_value(cls, name: str = RETURN_VALUE_NAME,
                     db_type: DbType = DbType.INTEGER) -> Self:
        """The procedure's scalar return value."""
        return cls(name, db_type, ParameterDirection.RETURN_VALUE)

    @property
    def bind_name(self) -> str:
        """Name as declared by the procedure, without a leading `@`."""
        return self.name.lstrip('@')

    @property
    def is_output(self) -> bool:
        return self.direction.is_output

    def _assign_output(self, value: Any) -> None:
        """Write the post-execution value. Only the Command Runner calls this.
        """
        object.__setattr__(self, 'value', self.db_type.coerce(value))

    def __repr__(self) -> str:
        return (f'Parameter(name={self.name!r}, db_type={self.db_type.name}, '
                f'direction={self.direction.name}, value={self.value!r})')


@dataclass(frozen=True)
class CommandDescriptor:
    """A procedure name plus its ordered parameters. Created per call.
    """

    procedure_name: str
    parameters: tuple[Parameter, ...] = field(default_factory=tuple)
    command_type: CommandType = CommandType.STORED_PROCEDURE
    timeout: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.procedure_name, str) or not self.procedure_name.strip():
            raise BindingError('Command text must be a non-empty string')
        parameters = tuple(self.parameters)
        for param in parameters:
            if not isinstance(param, Parameter):
                raise BindingError(f'Expected Parameter, got {type(param).__name__}')
        object.__setattr__(self, 'parameters', parameters)

        names = [p.bind_name.lower() for p in parameters]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise BindingError(f'Duplicate parameter names: {sorted(duplicates)}')

        returns = [p for p in parameters if p.direction is ParameterDirection.RETURN_VALUE]
        if len(returns) > 1:
            raise BindingError('Only one RETURN_VALUE parameter is allowed')

        if self.command_type is CommandType.TEXT:
            outputs = [p.name for p in parameters if p.is_output]
            if outputs:
                raise BindingError(f'Text commands only accept IN parameters, got outputs {outputs}')

    @property
    def output_parameters(self) -> tuple[Parameter, ...]:
        return tuple(p for p in self.parameters if p.is_output)

    @property
    def return_parameter(self) -> Parameter | None:
        for p in self.parameters:
            if p.direction is ParameterDirection.RETURN_VALUE:
                return p
        return None

    @property
    def argument_parameters(self) -> tuple[Parameter, ...]:
        """Parameters passed as procedure arguments, in declaration order."""
        return tuple(p for p in self.parameters
                     if p.direction is not ParameterDirection.RETURN_VALUE)
