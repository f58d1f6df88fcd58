"""Function-level transformations: inlining, shape inference, canonicalization, CSE."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from typing import Optional, Union

from .ir import (
    AddOp,
    CastOp,
    ConstantOp,
    FuncOp,
    GenericCallOp,
    ModuleOp,
    MulOp,
    Operation,
    PrintOp,
    ReshapeOp,
    ReturnOp,
    SourceLocation,
    TensorType,
    TransposeOp,
    Value,
)
from .lowering import (
    AddFOp,
    AffineForOp,
    ArithConstantOp,
    ConstantIndexOp,
    LoweredFunc,
    MulFOp,
)

AnyFunc = Union[FuncOp, LoweredFunc]
_Owner = Union[FuncOp, LoweredFunc, AffineForOp]

# Operations without side effects: they may be erased when unused and merged
# when identical.
_PURE = (
    ConstantOp,
    AddOp,
    MulOp,
    CastOp,
    TransposeOp,
    ReshapeOp,
    ArithConstantOp,
    ConstantIndexOp,
    AddFOp,
    MulFOp,
)


class ShapeInferenceError(Exception):
    """Raised when the shapes of a function's operations cannot all be inferred."""

    def __init__(self, message: str, location: Optional[SourceLocation] = None) -> None:
        super().__init__(message)
        self.location = location


# -- block helpers ---------------------------------------------------------


def _blocks(owner: _Owner) -> list[tuple[_Owner, list[Operation]]]:
    """Every block of ``owner``, nested loop bodies included."""
    found: list[tuple[_Owner, list[Operation]]] = [(owner, owner.body)]
    for op in owner.body:
        if isinstance(op, AffineForOp):
            found.extend(_blocks(op))
    return found


def _insert_before(
    owner: _Owner, block: list[Operation], anchor: Operation, op: Operation
) -> Operation:
    op.parent = owner
    block.insert(block.index(anchor), op)
    return op


def _remove(op: Operation, block: list[Operation]) -> None:
    if any(result.has_uses for result in op.results):
        raise ValueError(f"cannot remove '{op.name}': its results are still in use")
    op.set_operands(())
    block.remove(op)
    op.parent = None


def _replace(op: Operation, block: list[Operation], values: Sequence[Value]) -> None:
    for result, value in zip(op.results, values):
        result.replace_all_uses_with(value)
    _remove(op, block)


def _is_dead(op: Operation) -> bool:
    return isinstance(op, _PURE) and not any(result.has_uses for result in op.results)


# -- inlining --------------------------------------------------------------


def _clone(op: Operation, mapping: Mapping[Value, Value]) -> Operation:
    operands = [mapping.get(value, value) for value in op.operands]
    location = op.location
    match op:
        case ConstantOp():
            clone: Operation = ConstantOp(op.values, op.shape, location, op.result.type)
        case AddOp() | MulOp():
            clone = type(op)(operands[0], operands[1], location)
        case CastOp():
            clone = CastOp(operands[0], op.result.type, location)
        case TransposeOp():
            clone = TransposeOp(operands[0], location)
        case ReshapeOp():
            clone = ReshapeOp(operands[0], op.result.type, location)
        case GenericCallOp():
            clone = GenericCallOp(op.callee, operands, location)
        case PrintOp():
            clone = PrintOp(operands[0], location)
        case _:
            raise TypeError(f"cannot clone operation '{op.name}'")
    for new, old in zip(clone.results, op.results):
        new.type = old.type
    return clone


def _can_inline(call: GenericCallOp, callee: FuncOp) -> bool:
    return (
        bool(callee.body)
        and len(callee.arguments) == len(call.operands)
        and len(callee.function_type.results) == len(call.results)
    )


def _inline_call(caller: FuncOp, call: GenericCallOp, callee: FuncOp) -> None:
    mapping: dict[Value, Value] = {}
    for argument, operand in zip(callee.arguments, call.operands):
        if argument.type != operand.type:
            operand = caller.insert_before(
                call, CastOp(operand, argument.type, call.location)
            ).result
        mapping[argument] = operand

    returned: list[Value] = []
    for op in callee.body:
        if isinstance(op, ReturnOp):
            returned = [mapping.get(value, value) for value in op.operands]
            break
        clone = caller.insert_before(call, _clone(op, mapping))
        mapping.update(zip(op.results, clone.results))

    for result, value in zip(call.results, returned):
        if value.type != result.type:
            value = caller.insert_before(
                call, CastOp(value, result.type, call.location)
            ).result
        result.replace_all_uses_with(value)
    call.erase()


def _called_names(functions: Iterable[FuncOp]) -> set[str]:
    return {
        op.callee
        for function in functions
        for op in function.body
        if isinstance(op, GenericCallOp)
    }


def _drop_dead_functions(module: ModuleOp) -> None:
    while True:
        used = _called_names(module)
        dead = [f for f in module if f.private and f.sym_name not in used]
        if not dead:
            return
        for function in dead:
            function.erase()


def inline_calls(module: ModuleOp) -> int:
    """Inline every non-recursive call, then drop unused private functions.

    Returns the number of calls inlined.
    """
    inlined = 0

    def process(function: FuncOp, stack: frozenset[str]) -> None:
        nonlocal inlined
        for op in function.walk():
            if not isinstance(op, GenericCallOp) or op.parent is not function:
                continue
            callee = module.lookup(op.callee)
            if not isinstance(callee, FuncOp) or callee.sym_name in stack:
                continue
            process(callee, stack | {callee.sym_name})
            if not _can_inline(op, callee):
                continue
            _inline_call(function, op, callee)
            inlined += 1

    for function in module:
        if function.parent is module:
            process(function, frozenset({function.sym_name}))
    _drop_dead_functions(module)
    return inlined


# -- shape inference -------------------------------------------------------


def _is_ranked(type_: object) -> bool:
    return isinstance(type_, TensorType) and type_.is_ranked


def infer_shapes(func: FuncOp) -> None:
    """Resolve every unranked result type in ``func`` from its operands."""
    worklist = [
        op for op in func.walk() if not all(_is_ranked(t) for t in op.result_types)
    ]
    while worklist:
        ready = next(
            (op for op in worklist if all(_is_ranked(t) for t in op.operand_types)),
            None,
        )
        if ready is None:
            break
        worklist.remove(ready)
        if not ready.supports_shape_inference:
            raise ShapeInferenceError(
                "unable to infer shape of operation without shape inference interface",
                ready.location,
            )
        ready.infer_shapes()
    if worklist:
        raise ShapeInferenceError(
            f"Shape inference failed, {len(worklist)} operations couldn't be inferred",
            func.location,
        )


# -- canonicalization ------------------------------------------------------


def _simplify(op: Operation, owner: _Owner, block: list[Operation]) -> bool:
    if _is_dead(op):
        _remove(op, block)
        return True

    if isinstance(op, TransposeOp):
        inner = op.input.defining_op
        if isinstance(inner, TransposeOp):
            _replace(op, block, [inner.input])
            return True
        return False

    if isinstance(op, ReshapeOp):
        source = op.input
        inner = source.defining_op
        result_type = op.result.type
        if isinstance(inner, ReshapeOp):
            merged = _insert_before(
                owner, block, op, ReshapeOp(inner.input, result_type, op.location)
            )
            _replace(op, block, [merged.result])
            return True
        if source.type == result_type:
            _replace(op, block, [source])
            return True
        if (
            isinstance(inner, ConstantOp)
            and result_type.is_ranked
            and len(inner.values) == math.prod(result_type.shape)
        ):
            folded = _insert_before(
                owner,
                block,
                op,
                ConstantOp(inner.values, result_type.shape, op.location, result_type),
            )
            _replace(op, block, [folded.result])
            return True
        return False

    if isinstance(op, CastOp) and op.input.type == op.result.type:
        _replace(op, block, [op.input])
        return True

    return False


def canonicalize(func: AnyFunc) -> bool:
    """Apply the simplification patterns until nothing changes.

    Returns whether anything changed.
    """
    changed_any = False
    while True:
        changed = False
        for owner, block in _blocks(func):
            for op in list(block):
                if op.parent is owner and _simplify(op, owner, block):
                    changed = True
        if not changed:
            return changed_any
        changed_any = True


# -- common subexpression elimination --------------------------------------


def _cse_key(op: Operation) -> Optional[tuple]:
    if not isinstance(op, _PURE):
        return None
    attributes: tuple = ()
    if isinstance(op, ConstantOp):
        attributes = (op.shape, tuple(v.hex() for v in op.values))
    elif isinstance(op, ArithConstantOp):
        attributes = (op.value.hex(),)
    elif isinstance(op, ConstantIndexOp):
        attributes = (op.value,)
    return (type(op), op.operands, op.result_types, attributes)


def eliminate_common_subexpressions(func: AnyFunc) -> int:
    """Merge identical side-effect-free operations and drop dead ones.

    Returns the number of operations removed.
    """
    removed = 0

    def visit(block: list[Operation], known: dict[tuple, Operation]) -> None:
        nonlocal removed
        table = dict(known)
        for op in list(block):
            if _is_dead(op):
                _remove(op, block)
                removed += 1
                continue
            key = _cse_key(op)
            if key is not None:
                existing = table.get(key)
                if existing is not None:
                    _replace(op, block, existing.results)
                    removed += 1
                    continue
                table[key] = op
            if isinstance(op, AffineForOp):
                visit(op.body, table)

    visit(func.body, {})
    return removed