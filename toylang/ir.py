"""In-memory IR for the Toy dialect: types, values, operations and printing."""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Optional, Union

from .lexer import Location

F64 = "f64"

NameOf = Callable[["Value"], str]


class VerificationError(Exception):
    """Raised when the IR breaks one of the dialect's structural rules."""

    def __init__(self, message: str, location: Optional[SourceLocation] = None) -> None:
        super().__init__(message)
        self.location = location


@dataclass(frozen=True)
class TensorType:
    """A tensor of ``element_type``; ``shape`` is None for an unranked tensor."""

    shape: Optional[tuple[int, ...]] = None
    element_type: str = F64

    def __post_init__(self) -> None:
        if self.shape is not None:
            object.__setattr__(self, "shape", tuple(int(dim) for dim in self.shape))

    @property
    def is_ranked(self) -> bool:
        return self.shape is not None

    @property
    def rank(self) -> Optional[int]:
        return None if self.shape is None else len(self.shape)

    def __str__(self) -> str:
        if self.shape is None:
            return f"tensor<*x{self.element_type}>"
        dims = "".join(f"{dim}x" for dim in self.shape)
        return f"tensor<{dims}{self.element_type}>"


def _format_type_list(types: Sequence[object]) -> str:
    return ", ".join(str(t) for t in types)


def _format_results(results: Sequence[object]) -> str:
    if len(results) == 1:
        return str(results[0])
    return f"({_format_type_list(results)})"


@dataclass(frozen=True)
class FunctionType:
    """The signature of a function: input types and result types."""

    inputs: tuple[TensorType, ...] = ()
    results: tuple[TensorType, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "results", tuple(self.results))

    def __str__(self) -> str:
        return f"({_format_type_list(self.inputs)}) -> {_format_results(self.results)}"


@dataclass(frozen=True)
class SourceLocation:
    """Where an operation came from; ``file`` is None when unknown."""

    file: Optional[str] = None
    line: int = 0
    col: int = 0

    @classmethod
    def from_location(cls, location: Location) -> SourceLocation:
        return cls(location.file, location.line, location.col)

    def __str__(self) -> str:
        if self.file is None:
            return "loc(unknown)"
        return f'loc("{self.file}":{self.line}:{self.col})'


class Value:
    """An SSA value: an operation result or a function argument."""

    def __init__(self, type: TensorType, defining_op: Optional[Operation] = None) -> None:
        self.type = type
        self.defining_op = defining_op
        self._users: list[Operation] = []

    @property
    def uses(self) -> tuple[Operation, ...]:
        """The operations using this value, once per operand slot."""
        return tuple(self._users)

    @property
    def has_uses(self) -> bool:
        return bool(self._users)

    def replace_all_uses_with(self, other: Value) -> None:
        """Make every user of this value use ``other`` instead."""
        if other is self:
            return
        for user in dict.fromkeys(self._users):
            user.set_operands(other if value is self else value for value in user.operands)

    def __repr__(self) -> str:
        return f"Value({self.type})"


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "0x7FF8000000000000"
    if math.isinf(value):
        return "0xFFF0000000000000" if value < 0 else "0x7FF0000000000000"
    text = f"{value:e}"
    return text if float(text) == value else repr(value)


def _nested_dense(values: Sequence[float], shape: Sequence[int]) -> str:
    if not shape:
        return _format_float(values[0])
    count = shape[0]
    step = len(values) // count if count else 0
    parts = (
        _nested_dense(values[i * step : (i + 1) * step], shape[1:]) for i in range(count)
    )
    return "[" + ", ".join(parts) + "]"


def _format_dense(values: Sequence[float], shape: Sequence[int]) -> str:
    if not values:
        return "dense<>"
    if len(set(values)) == 1:
        return f"dense<{_format_float(values[0])}>"
    return f"dense<{_nested_dense(values, shape)}>"


class Operation:
    """Base of all operations: operands, results and a location."""

    name = "toy.op"
    supports_shape_inference = False

    def __init__(
        self,
        operands: Iterable[Value] = (),
        result_types: Iterable[TensorType] = (),
        location: Optional[SourceLocation] = None,
    ) -> None:
        self.location = location if location is not None else SourceLocation()
        self.parent: Optional[object] = None
        self._operands: list[Value] = []
        self.set_operands(operands)
        self.results: tuple[Value, ...] = tuple(Value(t, self) for t in result_types)

    @property
    def operands(self) -> tuple[Value, ...]:
        return tuple(self._operands)

    def set_operands(self, values: Iterable[Value]) -> None:
        """Replace the operand list, keeping use lists up to date."""
        values = list(values)
        for value in self._operands:
            value._users.remove(self)
        self._operands = values
        for value in values:
            value._users.append(self)

    @property
    def operand_types(self) -> tuple[TensorType, ...]:
        return tuple(value.type for value in self._operands)

    @property
    def result_types(self) -> tuple[TensorType, ...]:
        return tuple(value.type for value in self.results)

    @property
    def result(self) -> Value:
        """The single result of this operation."""
        if len(self.results) != 1:
            raise ValueError(f"'{self.name}' has {len(self.results)} results, not one")
        return self.results[0]

    def _error(self, message: str) -> VerificationError:
        return VerificationError(f"'{self.name}' op {message}", self.location)

    def verify(self) -> None:
        """Check the operation's invariants; raise VerificationError if broken."""
        for index, value in enumerate(self._operands):
            if not isinstance(value.type, TensorType) or value.type.element_type != F64:
                raise self._error(
                    f"operand #{index} must be tensor of 64-bit float values"
                )
        for index, value in enumerate(self.results):
            if not isinstance(value.type, TensorType) or value.type.element_type != F64:
                raise self._error(
                    f"result #{index} must be tensor of 64-bit float values"
                )

    def infer_shapes(self) -> None:
        """Compute the result type from the operand types."""
        raise TypeError(
            "unable to infer shape of operation without shape inference interface"
        )

    def erase(self) -> None:
        """Remove this operation from its function; its results must be unused."""
        if any(result.has_uses for result in self.results):
            raise ValueError(f"cannot erase '{self.name}': its results are still in use")
        self.set_operands(())
        parent = self.parent
        if isinstance(parent, FuncOp):
            parent.body.remove(self)
        self.parent = None

    def assembly(self, name_of: NameOf) -> str:
        """The operation's text, without the leading result names."""
        operands = ", ".join(name_of(value) for value in self._operands)
        signature = FunctionType(self.operand_types, self.result_types)
        return f'"{self.name}"({operands}) : {signature}'


class ConstantOp(Operation):
    """A constant tensor, stored flattened in row-major order."""

    name = "toy.constant"

    def __init__(
        self,
        values: Iterable[float],
        shape: Iterable[int],
        location: Optional[SourceLocation] = None,
        result_type: Optional[TensorType] = None,
    ) -> None:
        self.shape = tuple(int(dim) for dim in shape)
        self.values = tuple(float(value) for value in values)
        if len(self.values) != math.prod(self.shape):
            raise ValueError(
                f"{len(self.values)} values do not fill a tensor of shape {self.shape}"
            )
        result = result_type if result_type is not None else TensorType(self.shape)
        super().__init__((), (result,), location)

    @classmethod
    def scalar(cls, value: float, location: Optional[SourceLocation] = None) -> ConstantOp:
        """A rank-0 constant holding one number."""
        return cls((value,), (), location)

    @property
    def value_type(self) -> TensorType:
        """The type of the attached data."""
        return TensorType(self.shape)

    def verify(self) -> None:
        super().verify()
        result_type = self.result.type
        if not result_type.is_ranked:
            return
        if len(self.shape) != result_type.rank:
            raise self._error(
                "return type must match the one of the attached value attribute: "
                f"{len(self.shape)} != {result_type.rank}"
            )
        for dim, (attr_dim, result_dim) in enumerate(zip(self.shape, result_type.shape)):
            if attr_dim != result_dim:
                raise self._error(
                    "return type shape mismatches its attribute at dimension "
                    f"{dim}: {attr_dim} != {result_dim}"
                )

    def assembly(self, name_of: NameOf) -> str:
        return f"{self.name} {_format_dense(self.values, self.shape)} : {self.value_type}"


class _BinaryOp(Operation):
    def __init__(
        self, lhs: Value, rhs: Value, location: Optional[SourceLocation] = None
    ) -> None:
        super().__init__((lhs, rhs), (TensorType(),), location)

    supports_shape_inference = True

    @property
    def lhs(self) -> Value:
        return self._operands[0]

    @property
    def rhs(self) -> Value:
        return self._operands[1]

    def infer_shapes(self) -> None:
        self.result.type = self.lhs.type

    def assembly(self, name_of: NameOf) -> str:
        operands = ", ".join(name_of(value) for value in self._operands)
        result_type = self.result.type
        if all(t == result_type for t in self.operand_types):
            return f"{self.name} {operands} : {result_type}"
        signature = FunctionType(self.operand_types, self.result_types)
        return f"{self.name} {operands} : {signature}"


class AddOp(_BinaryOp):
    """Element-wise addition."""

    name = "toy.add"


class MulOp(_BinaryOp):
    """Element-wise multiplication."""

    name = "toy.mul"


def are_cast_compatible(inputs: Sequence[object], outputs: Sequence[object]) -> bool:
    """Whether a cast from ``inputs`` to ``outputs`` is allowed."""
    if len(inputs) != 1 or len(outputs) != 1:
        return False
    source, target = inputs[0], outputs[0]
    if not isinstance(source, TensorType) or not isinstance(target, TensorType):
        return False
    if source.element_type != target.element_type:
        return False
    return not source.is_ranked or not target.is_ranked or source == target


class CastOp(Operation):
    """Changes a tensor's static shape information without touching its data."""

    name = "toy.cast"
    supports_shape_inference = True

    def __init__(
        self,
        input: Value,
        result_type: TensorType,
        location: Optional[SourceLocation] = None,
    ) -> None:
        super().__init__((input,), (result_type,), location)

    @property
    def input(self) -> Value:
        return self._operands[0]

    def infer_shapes(self) -> None:
        self.result.type = self.input.type

    def verify(self) -> None:
        super().verify()
        if not are_cast_compatible(self.operand_types, self.result_types):
            raise self._error(
                f"operand type {self.input.type} and result type "
                f"{self.result.type} are cast incompatible"
            )

    def assembly(self, name_of: NameOf) -> str:
        return f"{self.name} {name_of(self.input)} : {self.input.type} to {self.result.type}"


class TransposeOp(Operation):
    """Reverses the dimensions of a tensor."""

    name = "toy.transpose"
    supports_shape_inference = True

    def __init__(self, input: Value, location: Optional[SourceLocation] = None) -> None:
        super().__init__((input,), (TensorType(),), location)

    @property
    def input(self) -> Value:
        return self._operands[0]

    def infer_shapes(self) -> None:
        input_type = self.input.type
        if not input_type.is_ranked:
            raise ValueError("cannot infer the shape of a transpose of an unranked tensor")
        self.result.type = TensorType(
            tuple(reversed(input_type.shape)), input_type.element_type
        )

    def verify(self) -> None:
        super().verify()
        input_type, result_type = self.input.type, self.result.type
        if not input_type.is_ranked or not result_type.is_ranked:
            return
        if input_type.shape != tuple(reversed(result_type.shape)):
            raise VerificationError(
                "expected result shape to be a transpose of the input", self.location
            )

    def assembly(self, name_of: NameOf) -> str:
        return (
            f"{self.name}({name_of(self.input)} : {self.input.type}) "
            f"to {self.result.type}"
        )


class ReshapeOp(Operation):
    """Gives a tensor a new static shape."""

    name = "toy.reshape"

    def __init__(
        self,
        input: Value,
        result_type: TensorType,
        location: Optional[SourceLocation] = None,
    ) -> None:
        super().__init__((input,), (result_type,), location)

    @property
    def input(self) -> Value:
        return self._operands[0]

    def verify(self) -> None:
        super().verify()
        if not self.result.type.is_ranked:
            raise self._error(
                "result #0 must be statically shaped tensor of 64-bit float values"
            )

    def assembly(self, name_of: NameOf) -> str:
        return (
            f"{self.name}({name_of(self.input)} : {self.input.type}) "
            f"to {self.result.type}"
        )


class GenericCallOp(Operation):
    """A call to a user-defined function, returning an unranked tensor."""

    name = "toy.generic_call"

    def __init__(
        self,
        callee: str,
        arguments: Iterable[Value],
        location: Optional[SourceLocation] = None,
    ) -> None:
        super().__init__(arguments, (TensorType(),), location)
        self.callee = callee

    @property
    def arguments(self) -> tuple[Value, ...]:
        return self.operands

    def assembly(self, name_of: NameOf) -> str:
        args = ", ".join(name_of(value) for value in self._operands)
        signature = FunctionType(self.operand_types, self.result_types)
        return f"{self.name} @{self.callee}({args}) : {signature}"


class PrintOp(Operation):
    """Prints a tensor."""

    name = "toy.print"

    def __init__(self, input: Value, location: Optional[SourceLocation] = None) -> None:
        super().__init__((input,), (), location)

    @property
    def input(self) -> Value:
        return self._operands[0]

    def verify(self) -> None:
        # Lowered code prints buffers as well as tensors, so any operand type is accepted.
        if len(self._operands) != 1:
            raise self._error(f"expected 1 operand, but found {len(self._operands)}")

    def assembly(self, name_of: NameOf) -> str:
        return f"{self.name} {name_of(self.input)} : {self.input.type}"


class ReturnOp(Operation):
    """Terminates a function, optionally returning one value."""

    name = "toy.return"

    def __init__(
        self,
        operands: Iterable[Value] = (),
        location: Optional[SourceLocation] = None,
    ) -> None:
        super().__init__(operands, (), location)

    @property
    def has_operand(self) -> bool:
        return bool(self._operands)

    @property
    def value(self) -> Optional[Value]:
        return self._operands[0] if self._operands else None

    def verify(self) -> None:
        super().verify()
        function = self.parent
        if not isinstance(function, FuncOp):
            raise self._error("expects parent op 'toy.func'")
        if function.body[-1] is not self:
            raise self._error("must be the last operation in the parent block")
        if len(self._operands) > 1:
            raise self._error("expects at most 1 return operand")
        results = function.function_type.results
        if len(self._operands) != len(results):
            raise self._error(
                f"does not return the same number of values ({len(self._operands)}) "
                f"as the enclosing function ({len(results)})"
            )
        if not self._operands:
            return
        input_type, result_type = self._operands[0].type, results[0]
        if input_type == result_type or not input_type.is_ranked or not result_type.is_ranked:
            return
        raise VerificationError(
            f"type of return operand ({input_type}) doesn't match function "
            f"result type ({result_type})",
            self.location,
        )

    def assembly(self, name_of: NameOf) -> str:
        if not self._operands:
            return self.name
        operands = ", ".join(name_of(value) for value in self._operands)
        return f"{self.name} {operands} : {_format_type_list(self.operand_types)}"


class FuncOp(Operation):
    """A function: a signature, entry arguments and a straight-line body."""

    name = "toy.func"

    def __init__(
        self,
        sym_name: str,
        function_type: FunctionType,
        location: Optional[SourceLocation] = None,
        private: bool = False,
    ) -> None:
        super().__init__((), (), location)
        self.sym_name = sym_name
        self.function_type = function_type
        self.private = private
        self.arguments: tuple[Value, ...] = tuple(Value(t) for t in function_type.inputs)
        self.body: list[Operation] = []

    def _adopt(self, op: Operation) -> None:
        if op.parent is not None:
            raise ValueError(f"'{op.name}' already belongs to a function")
        op.parent = self

    def append(self, op: Operation) -> Operation:
        """Add ``op`` at the end of the body and return it."""
        self._adopt(op)
        self.body.append(op)
        return op

    def insert(self, index: int, op: Operation) -> Operation:
        """Insert ``op`` at ``index`` in the body and return it."""
        self._adopt(op)
        self.body.insert(index, op)
        return op

    def insert_before(self, anchor: Operation, op: Operation) -> Operation:
        """Insert ``op`` just before ``anchor`` and return it."""
        return self.insert(self.body.index(anchor), op)

    def walk(self) -> Iterator[Operation]:
        """Yield the operations of the body in order; the body may change meanwhile."""
        yield from list(self.body)

    def verify(self) -> None:
        if self.body and len(self.arguments) != len(self.function_type.inputs):
            raise self._error(
                f"entry block must have {len(self.function_type.inputs)} arguments "
                "to match function signature"
            )
        available = set(self.arguments)
        for op in self.body:
            for index, operand in enumerate(op.operands):
                if operand not in available:
                    raise VerificationError(
                        f"'{op.name}' op operand #{index} does not dominate this use",
                        op.location,
                    )
            op.verify()
            available.update(op.results)
        if self.body and not isinstance(self.body[-1], ReturnOp):
            raise VerificationError("block with no terminator", self.body[-1].location)

    def erase(self) -> None:
        """Remove this function from its module and drop its body."""
        for op in reversed(self.body):
            op.set_operands(())
            op.parent = None
        self.body.clear()
        if isinstance(self.parent, ModuleOp):
            self.parent.functions.remove(self)
        self.parent = None

    def format_lines(self, indent: str = "") -> list[str]:
        """The function's text, one line per entry."""
        names: dict[Value, str] = {}
        for index, argument in enumerate(self.arguments):
            names[argument] = f"%arg{index}"
        counter = 0
        for op in self.body:
            for result in op.results:
                names[result] = f"%{counter}"
                counter += 1

        def name_of(value: Value) -> str:
            return names.get(value, "<<UNKNOWN SSA VALUE>>")

        params = ", ".join(f"{names[arg]}: {arg.type}" for arg in self.arguments)
        visibility = "private " if self.private else ""
        header = f"{indent}{self.name} {visibility}@{self.sym_name}({params})"
        if self.function_type.results:
            header += f" -> {_format_results(self.function_type.results)}"
        if not self.body:
            return [header]
        lines = [header + " {"]
        for op in self.body:
            result_names = ", ".join(names[result] for result in op.results)
            prefix = f"{result_names} = " if result_names else ""
            lines.append(f"{indent}  {prefix}{op.assembly(name_of)}")
        lines.append(f"{indent}}}")
        return lines

    def assembly(self, name_of: NameOf) -> str:
        return "\n".join(self.format_lines())


class ModuleOp:
    """A list of functions, addressed by symbol name."""

    def __init__(
        self,
        functions: Iterable[FuncOp] = (),
        location: Optional[SourceLocation] = None,
    ) -> None:
        self.location = location if location is not None else SourceLocation()
        self.functions: list[FuncOp] = []
        for function in functions:
            self.append(function)

    def append(self, function: FuncOp) -> FuncOp:
        """Add ``function`` to the module and return it."""
        if function.parent is not None:
            raise ValueError(f"function '{function.sym_name}' already belongs to a module")
        function.parent = self
        self.functions.append(function)
        return function

    def __iter__(self) -> Iterator[FuncOp]:
        return iter(list(self.functions))

    def __len__(self) -> int:
        return len(self.functions)

    def lookup(self, name: str) -> Optional[FuncOp]:
        """The function called ``name``, or None."""
        return next((f for f in self.functions if f.sym_name == name), None)

    def verify(self) -> None:
        """Check every function; raise VerificationError on the first problem."""
        seen: set[str] = set()
        for function in self.functions:
            if function.sym_name in seen:
                raise VerificationError(
                    f"redefinition of symbol named '{function.sym_name}'",
                    function.location,
                )
            seen.add(function.sym_name)
        for function in self.functions:
            function.verify()


Operand = Union[Value, Operation]


def format_module(module: ModuleOp) -> str:
    """Render a module in the dialect's textual form."""
    lines = ["module {"]
    for function in module:
        lines.extend(function.format_lines("  "))
    lines.append("}")
    return "\n".join(lines) + "\n"