"""Partial lowering of Toy functions to affine loops over memory buffers.

Computational Toy operations (constants, element-wise arithmetic and
transposes) become buffer allocations filled by affine loop nests, while
``toy.print`` is kept and simply switched over to the lowered buffers.  The
lowering expects every call to have been inlined into ``main`` and every shape
to have been inferred.
"""

from __future__ import annotations

import itertools
import math
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

from .ir import (
    F64,
    AddOp,
    ConstantOp,
    FuncOp,
    ModuleOp,
    MulOp,
    Operation,
    PrintOp,
    ReturnOp,
    SourceLocation,
    TensorType,
    TransposeOp,
    Value,
    VerificationError,
    format_module,
)

INDEX = "index"

NameOf = Callable[[Value], str]


class LoweringError(Exception):
    """Raised when a Toy module cannot be lowered to affine loops."""

    def __init__(self, message: str, location: Optional[SourceLocation] = None) -> None:
        super().__init__(message)
        self.location = location


@dataclass(frozen=True)
class MemRefType:
    """A statically shaped memory buffer of ``element_type``."""

    shape: tuple[int, ...] = ()
    element_type: str = F64

    def __post_init__(self) -> None:
        object.__setattr__(self, "shape", tuple(int(dim) for dim in self.shape))

    @property
    def rank(self) -> int:
        return len(self.shape)

    def __str__(self) -> str:
        dims = "".join(f"{dim}x" for dim in self.shape)
        return f"memref<{dims}{self.element_type}>"


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "0x7FF8000000000000"
    if math.isinf(value):
        return "0xFFF0000000000000" if value < 0 else "0x7FF0000000000000"
    text = f"{value:e}"
    return text if float(text) == value else repr(value)


def _check_access(memref: Value, indices: Sequence[Value]) -> MemRefType:
    memref_type = memref.type
    if not isinstance(memref_type, MemRefType):
        raise ValueError(f"expected a buffer, got a value of type {memref_type}")
    if len(indices) != memref_type.rank:
        raise ValueError(
            f"{len(indices)} indices given for a buffer of rank {memref_type.rank}"
        )
    return memref_type


class _LoweredOp(Operation):
    """Base of the operations produced by the lowering."""

    def verify(self) -> None:
        for index, value in enumerate(self.operands):
            if not isinstance(value.type, (MemRefType, str)):
                raise VerificationError(
                    f"'{self.name}' op operand #{index} must be a buffer or a scalar",
                    self.location,
                )


class AllocOp(_LoweredOp):
    """Allocates a buffer."""

    name = "memref.alloc"

    def __init__(
        self, memref_type: MemRefType, location: Optional[SourceLocation] = None
    ) -> None:
        super().__init__((), (memref_type,), location)

    @property
    def memref_type(self) -> MemRefType:
        return self.result.type

    def assembly(self, name_of: NameOf) -> str:
        return f"{self.name}() : {self.result.type}"


class DeallocOp(_LoweredOp):
    """Frees a buffer."""

    name = "memref.dealloc"

    def __init__(self, memref: Value, location: Optional[SourceLocation] = None) -> None:
        super().__init__((memref,), (), location)

    @property
    def memref(self) -> Value:
        return self.operands[0]

    def assembly(self, name_of: NameOf) -> str:
        return f"{self.name} {name_of(self.memref)} : {self.memref.type}"


class AffineLoadOp(_LoweredOp):
    """Reads one element of a buffer."""

    name = "affine.load"

    def __init__(
        self,
        memref: Value,
        indices: Iterable[Value],
        location: Optional[SourceLocation] = None,
    ) -> None:
        indices = tuple(indices)
        memref_type = _check_access(memref, indices)
        super().__init__((memref, *indices), (memref_type.element_type,), location)

    @property
    def memref(self) -> Value:
        return self.operands[0]

    @property
    def indices(self) -> tuple[Value, ...]:
        return self.operands[1:]

    def assembly(self, name_of: NameOf) -> str:
        indices = ", ".join(name_of(index) for index in self.indices)
        return f"{self.name} {name_of(self.memref)}[{indices}] : {self.memref.type}"


class AffineStoreOp(_LoweredOp):
    """Writes one element of a buffer."""

    name = "affine.store"

    def __init__(
        self,
        value: Value,
        memref: Value,
        indices: Iterable[Value],
        location: Optional[SourceLocation] = None,
    ) -> None:
        indices = tuple(indices)
        _check_access(memref, indices)
        super().__init__((value, memref, *indices), (), location)

    @property
    def value(self) -> Value:
        return self.operands[0]

    @property
    def memref(self) -> Value:
        return self.operands[1]

    @property
    def indices(self) -> tuple[Value, ...]:
        return self.operands[2:]

    def assembly(self, name_of: NameOf) -> str:
        indices = ", ".join(name_of(index) for index in self.indices)
        return (
            f"{self.name} {name_of(self.value)}, {name_of(self.memref)}[{indices}] "
            f": {self.memref.type}"
        )


class ArithConstantOp(_LoweredOp):
    """A floating-point scalar constant."""

    name = "arith.constant"

    def __init__(self, value: float, location: Optional[SourceLocation] = None) -> None:
        super().__init__((), (F64,), location)
        self.value = float(value)

    def assembly(self, name_of: NameOf) -> str:
        return f"{self.name} {_format_float(self.value)} : {F64}"


class ConstantIndexOp(_LoweredOp):
    """An index constant, used to address buffer elements."""

    name = "arith.constant"

    def __init__(self, value: int, location: Optional[SourceLocation] = None) -> None:
        super().__init__((), (INDEX,), location)
        self.value = int(value)

    def assembly(self, name_of: NameOf) -> str:
        return f"{self.name} {self.value} : {INDEX}"


class _BinaryFloatOp(_LoweredOp):
    def __init__(
        self, lhs: Value, rhs: Value, location: Optional[SourceLocation] = None
    ) -> None:
        super().__init__((lhs, rhs), (F64,), location)

    @property
    def lhs(self) -> Value:
        return self.operands[0]

    @property
    def rhs(self) -> Value:
        return self.operands[1]

    def assembly(self, name_of: NameOf) -> str:
        return f"{self.name} {name_of(self.lhs)}, {name_of(self.rhs)} : {F64}"


class AddFOp(_BinaryFloatOp):
    """Scalar floating-point addition."""

    name = "arith.addf"


class MulFOp(_BinaryFloatOp):
    """Scalar floating-point multiplication."""

    name = "arith.mulf"


class FuncReturnOp(_LoweredOp):
    """Terminates a lowered function."""

    name = "func.return"

    def __init__(self, location: Optional[SourceLocation] = None) -> None:
        super().__init__((), (), location)

    def assembly(self, name_of: NameOf) -> str:
        return "return"


class AffineForOp(_LoweredOp):
    """A loop with constant bounds over an index induction variable."""

    name = "affine.for"

    def __init__(
        self,
        lower_bound: int,
        upper_bound: int,
        step: int = 1,
        location: Optional[SourceLocation] = None,
    ) -> None:
        super().__init__((), (), location)
        self.lower_bound = int(lower_bound)
        self.upper_bound = int(upper_bound)
        self.step = int(step)
        self.induction_var = Value(INDEX)
        self.body: list[Operation] = []

    def append(self, op: Operation) -> Operation:
        """Add ``op`` at the end of the loop body and return it."""
        if op.parent is not None:
            raise ValueError(f"'{op.name}' already has a parent")
        op.parent = self
        self.body.append(op)
        return op

    def assembly(self, name_of: NameOf) -> str:
        header = (
            f"{self.name} {name_of(self.induction_var)} = "
            f"{self.lower_bound} to {self.upper_bound}"
        )
        return header if self.step == 1 else f"{header} step {self.step}"


class LoweredFunc:
    """A function whose body works on buffers and affine loops."""

    name = "func.func"

    def __init__(
        self,
        sym_name: str,
        body: Iterable[Operation] = (),
        location: Optional[SourceLocation] = None,
    ) -> None:
        self.sym_name = sym_name
        self.location = location if location is not None else SourceLocation()
        self.parent: Optional[object] = None
        self.body: list[Operation] = []
        for op in body:
            self.append(op)

    def append(self, op: Operation) -> Operation:
        """Add ``op`` at the end of the body and return it."""
        if op.parent is not None:
            raise ValueError(f"'{op.name}' already has a parent")
        op.parent = self
        self.body.append(op)
        return op

    def walk(self) -> Iterator[Operation]:
        """Yield every operation, loops before their bodies."""
        yield from _walk(self.body)

    def verify(self) -> None:
        """Check that values are defined before use and the body is terminated."""
        _verify_block(self.body, set())
        if not self.body or not isinstance(self.body[-1], FuncReturnOp):
            raise VerificationError("block with no terminator", self.location)

    def format_lines(self, indent: str = "") -> list[str]:
        """The function's text, one line per entry."""
        names: dict[Value, str] = {}
        results = itertools.count()
        arguments = itertools.count()
        for op in self.walk():
            if isinstance(op, AffineForOp):
                names[op.induction_var] = f"%arg{next(arguments)}"
            for result in op.results:
                names[result] = f"%{next(results)}"

        def name_of(value: Value) -> str:
            return names.get(value, "<<UNKNOWN SSA VALUE>>")

        lines = [f"{indent}{self.name} @{self.sym_name}() {{"]
        _format_block(self.body, indent + "  ", name_of, lines)
        lines.append(f"{indent}}}")
        return lines


def _walk(ops: Sequence[Operation]) -> Iterator[Operation]:
    for op in ops:
        yield op
        if isinstance(op, AffineForOp):
            yield from _walk(op.body)


def _verify_block(ops: Sequence[Operation], available: set[Value]) -> None:
    available = set(available)
    for op in ops:
        for index, operand in enumerate(op.operands):
            if operand not in available:
                raise VerificationError(
                    f"'{op.name}' op operand #{index} does not dominate this use",
                    op.location,
                )
        op.verify()
        if isinstance(op, AffineForOp):
            _verify_block(op.body, available | {op.induction_var})
        available.update(op.results)


def _format_block(
    ops: Sequence[Operation], indent: str, name_of: NameOf, lines: list[str]
) -> None:
    for op in ops:
        result_names = ", ".join(name_of(result) for result in op.results)
        prefix = f"{result_names} = " if result_names else ""
        if isinstance(op, AffineForOp):
            lines.append(f"{indent}{op.assembly(name_of)} {{")
            _format_block(op.body, indent + "  ", name_of, lines)
            lines.append(f"{indent}}}")
        else:
            lines.append(f"{indent}{prefix}{op.assembly(name_of)}")


class _FunctionLowering:
    """Lowers the body of one ``main`` function."""

    def __init__(self, function: FuncOp) -> None:
        self._function = function
        self._buffers: dict[Value, Value] = {}
        self._allocs: list[AllocOp] = []
        self._deallocs: list[DeallocOp] = []
        self._ops: list[Operation] = []
        self._loop: Optional[AffineForOp] = None
        self._terminator: Optional[FuncReturnOp] = None

    def run(self) -> LoweredFunc:
        function = self._function
        if function.arguments or function.function_type.results:
            raise LoweringError(
                "expected 'main' to have 0 inputs and 0 results", function.location
            )
        for op in function.body:
            self._lower(op)
        # Allocations land at the top of the block, each new one in front of the
        # others; deallocations go just before the terminator in creation order.
        body: list[Operation] = [*reversed(self._allocs), *self._ops, *self._deallocs]
        if self._terminator is not None:
            body.append(self._terminator)
        return LoweredFunc(function.sym_name, body, function.location)

    # -- helpers ----------------------------------------------------------

    def _emit(self, op: Operation) -> Operation:
        if self._loop is None:
            self._ops.append(op)
            return op
        return self._loop.append(op)

    @contextmanager
    def _inside(self, loop: AffineForOp) -> Iterator[None]:
        previous = self._loop
        self._loop = loop
        try:
            yield
        finally:
            self._loop = previous

    def _buffer(self, value: Value) -> Value:
        try:
            return self._buffers[value]
        except KeyError:
            raise LoweringError(
                f"value of type {value.type} has no lowered buffer"
            ) from None

    def _allocate(self, op: Operation) -> Value:
        tensor_type = op.result.type
        if not isinstance(tensor_type, TensorType) or not tensor_type.is_ranked:
            raise LoweringError(
                f"'{op.name}' must produce a ranked tensor to be lowered, "
                f"not {tensor_type}",
                op.location,
            )
        memref_type = MemRefType(tensor_type.shape, tensor_type.element_type)
        alloc = AllocOp(memref_type, op.location)
        self._allocs.append(alloc)
        self._deallocs.append(DeallocOp(alloc.result, op.location))
        return alloc.result

    def _loop_nest(
        self,
        shape: Sequence[int],
        location: SourceLocation,
        body: Callable[[tuple[Value, ...]], None],
        ivs: tuple[Value, ...] = (),
    ) -> None:
        if len(ivs) == len(shape):
            body(ivs)
            return
        loop = self._emit(AffineForOp(0, shape[len(ivs)], 1, location))
        assert isinstance(loop, AffineForOp)
        with self._inside(loop):
            self._loop_nest(shape, location, body, ivs + (loop.induction_var,))

    def _lower_to_loops(
        self, op: Operation, process: Callable[[tuple[Value, ...]], Value]
    ) -> None:
        buffer = self._allocate(op)
        location = op.location

        def body(ivs: tuple[Value, ...]) -> None:
            value = process(ivs)
            self._emit(AffineStoreOp(value, buffer, ivs, location))

        self._loop_nest(buffer.type.shape, location, body)
        self._buffers[op.result] = buffer

    # -- patterns ---------------------------------------------------------

    def _lower(self, op: Operation) -> None:
        match op:
            case ConstantOp():
                self._constant(op)
            case AddOp():
                self._binary(op, AddFOp)
            case MulOp():
                self._binary(op, MulFOp)
            case TransposeOp():
                self._transpose(op)
            case PrintOp():
                self._emit(PrintOp(self._buffer(op.input), op.location))
            case ReturnOp():
                if op.has_operand:
                    raise LoweringError(
                        "failed to legalize operation 'toy.return': all calls must "
                        "be inlined, so it may not return a value",
                        op.location,
                    )
                self._terminator = FuncReturnOp(op.location)
            case _:
                raise LoweringError(
                    f"failed to legalize operation '{op.name}'", op.location
                )

    def _constant(self, op: ConstantOp) -> None:
        location = op.location
        buffer = self._allocate(op)
        shape = buffer.type.shape
        if len(op.values) != math.prod(shape):
            raise LoweringError(
                f"{len(op.values)} constant values do not fill a buffer of type "
                f"{buffer.type}",
                location,
            )
        count = max(shape) if shape else 1
        indices = [
            self._emit(ConstantIndexOp(i, location)).result for i in range(count)
        ]
        positions = itertools.product(*(range(dim) for dim in shape))
        for position, value in zip(positions, op.values):
            constant = self._emit(ArithConstantOp(value, location)).result
            element = [indices[i] for i in position]
            self._emit(AffineStoreOp(constant, buffer, element, location))
        self._buffers[op.result] = buffer

    def _binary(self, op: Operation, lowered: type[_BinaryFloatOp]) -> None:
        lhs, rhs = (self._buffer(value) for value in op.operands)
        location = op.location

        def process(ivs: tuple[Value, ...]) -> Value:
            left = self._emit(AffineLoadOp(lhs, ivs, location)).result
            right = self._emit(AffineLoadOp(rhs, ivs, location)).result
            return self._emit(lowered(left, right, location)).result

        self._lower_to_loops(op, process)

    def _transpose(self, op: TransposeOp) -> None:
        source = self._buffer(op.input)
        location = op.location

        def process(ivs: tuple[Value, ...]) -> Value:
            return self._emit(
                AffineLoadOp(source, tuple(reversed(ivs)), location)
            ).result

        self._lower_to_loops(op, process)


def lower_to_affine(module: ModuleOp) -> ModuleOp:
    """Return a new module with ``main`` lowered to buffers and affine loops.

    The input module is left untouched.
    """
    functions = list(module)
    for function in functions:
        if function.sym_name != "main":
            raise LoweringError(
                f"failed to legalize operation 'toy.func' (@{function.sym_name}): "
                "only 'main' is lowered, other functions must be inlined first",
                function.location,
            )
    lowered = [_FunctionLowering(function).run() for function in functions]
    return ModuleOp(lowered, module.location)


def format_lowered(module: ModuleOp) -> str:
    """Render a lowered module in textual form."""
    return format_module(module)