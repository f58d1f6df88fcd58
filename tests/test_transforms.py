import pytest

from toylang.ir import (
    AddOp,
    CastOp,
    ConstantOp,
    FuncOp,
    FunctionType,
    GenericCallOp,
    ModuleOp,
    MulOp,
    PrintOp,
    ReshapeOp,
    ReturnOp,
    TensorType,
    TransposeOp,
)
from toylang.lowering import (
    AffineForOp,
    AffineStoreOp,
    AllocOp,
    ArithConstantOp,
    ConstantIndexOp,
    DeallocOp,
    FuncReturnOp,
    LoweredFunc,
    MemRefType,
)
from toylang.transforms import (
    ShapeInferenceError,
    canonicalize,
    eliminate_common_subexpressions,
    infer_shapes,
    inline_calls,
)

SIX = [1.0, 2.0, 3.0, 4.0, 5.0, 6.0]


def _main(module=None):
    module = module if module is not None else ModuleOp()
    return module, module.append(FuncOp("main", FunctionType()))


def _func_with_arg(arg_type):
    module = ModuleOp()
    func = module.append(FuncOp("f", FunctionType((arg_type,), ())))
    return module, func


def test_double_transpose_is_removed():
    module, main = _main()
    c = main.append(ConstantOp(SIX, (2, 3)))
    t1 = main.append(TransposeOp(c.result))
    t2 = main.append(TransposeOp(t1.result))
    p = main.append(PrintOp(t2.result))
    main.append(ReturnOp())
    assert canonicalize(main) is True
    assert p.input is c.result
    assert [type(op) for op in main.body] == [ConstantOp, PrintOp, ReturnOp]
    module.verify()


def test_reshape_of_constant_folds():
    module, main = _main()
    c = main.append(ConstantOp(SIX, (6,)))
    r = main.append(ReshapeOp(c.result, TensorType((2, 3))))
    p = main.append(PrintOp(r.result))
    main.append(ReturnOp())
    canonicalize(main)
    assert [type(op) for op in main.body] == [ConstantOp, PrintOp, ReturnOp]
    folded = main.body[0]
    assert folded.shape == (2, 3)
    assert folded.values == tuple(SIX)
    assert p.input is folded.result


def test_redundant_reshape_is_removed():
    _, f = _func_with_arg(TensorType((2,)))
    r = f.append(ReshapeOp(f.arguments[0], TensorType((2,))))
    p = f.append(PrintOp(r.result))
    f.append(ReturnOp())
    canonicalize(f)
    assert p.input is f.arguments[0]
    assert not any(isinstance(op, ReshapeOp) for op in f.body)


def test_reshape_of_reshape_merges():
    _, f = _func_with_arg(TensorType())
    r1 = f.append(ReshapeOp(f.arguments[0], TensorType((2, 3))))
    r2 = f.append(ReshapeOp(r1.result, TensorType((3, 2))))
    p = f.append(PrintOp(r2.result))
    f.append(ReturnOp())
    canonicalize(f)
    reshapes = [op for op in f.body if isinstance(op, ReshapeOp)]
    assert len(reshapes) == 1
    assert reshapes[0].input is f.arguments[0]
    assert reshapes[0].result.type == r2.result.type
    assert p.input is reshapes[0].result


def test_identity_cast_folds_but_real_cast_stays():
    _, f = _func_with_arg(TensorType((2,)))
    same = f.append(CastOp(f.arguments[0], TensorType((2,))))
    widen = f.append(CastOp(f.arguments[0], TensorType()))
    p1 = f.append(PrintOp(same.result))
    p2 = f.append(PrintOp(widen.result))
    f.append(ReturnOp())
    canonicalize(f)
    assert p1.input is f.arguments[0]
    assert p2.input is widen.result
    assert [op for op in f.body if isinstance(op, CastOp)] == [widen]


def test_dead_pure_operations_are_erased():
    _, main = _main()
    a = main.append(ConstantOp([1.0], (1,)))
    b = main.append(ConstantOp([2.0], (1,)))
    main.append(AddOp(a.result, b.result))
    main.append(ReturnOp())
    assert canonicalize(main) is True
    assert [type(op) for op in main.body] == [ReturnOp]


def test_unused_call_is_kept():
    _, main = _main()
    call = main.append(GenericCallOp("g", []))
    main.append(ReturnOp())
    assert canonicalize(main) is False
    assert main.body[0] is call


def test_cse_merges_identical_constants():
    _, main = _main()
    c1 = main.append(ConstantOp(SIX, (2, 3)))
    c2 = main.append(ConstantOp(SIX, (2, 3)))
    add = main.append(AddOp(c1.result, c2.result))
    main.append(PrintOp(add.result))
    main.append(ReturnOp())
    assert eliminate_common_subexpressions(main) == 1
    assert add.lhs is add.rhs
    assert add.lhs is c1.result


def test_cse_keeps_distinct_constants():
    _, main = _main()
    c1 = main.append(ConstantOp([1.0], (1,)))
    c2 = main.append(ConstantOp([2.0], (1,)))
    add = main.append(AddOp(c1.result, c2.result))
    main.append(PrintOp(add.result))
    main.append(ReturnOp())
    assert eliminate_common_subexpressions(main) == 0
    assert add.lhs is not add.rhs


def test_shape_inference_propagates_through_chain():
    _, main = _main()
    c = main.append(ConstantOp(SIX, (2, 3)))
    t = main.append(TransposeOp(c.result))
    m = main.append(MulOp(t.result, t.result))
    cast = main.append(CastOp(c.result, TensorType()))
    main.append(PrintOp(m.result))
    main.append(ReturnOp())
    infer_shapes(main)
    assert t.result.type == TensorType((3, 2))
    assert m.result.type == t.result.type
    assert cast.result.type == c.result.type


def test_shape_inference_rejects_op_without_interface():
    _, main = _main()
    c = main.append(ConstantOp(SIX, (2, 3)))
    main.append(GenericCallOp("g", [c.result]))
    main.append(ReturnOp())
    with pytest.raises(ShapeInferenceError, match="unable to infer shape"):
        infer_shapes(main)


def test_shape_inference_reports_stuck_operations():
    _, f = _func_with_arg(TensorType())
    f.append(AddOp(f.arguments[0], f.arguments[0]))
    f.append(ReturnOp())
    with pytest.raises(ShapeInferenceError, match="1 operations couldn't be inferred"):
        infer_shapes(f)


def _helper_module():
    module = ModuleOp()
    helper = module.append(
        FuncOp("helper", FunctionType((TensorType(),), (TensorType(),)), private=True)
    )
    t = helper.append(TransposeOp(helper.arguments[0]))
    helper.append(ReturnOp((t.result,)))
    main = module.append(FuncOp("main", FunctionType()))
    c = main.append(ConstantOp(SIX, (2, 3)))
    call = main.append(GenericCallOp("helper", [c.result]))
    p = main.append(PrintOp(call.result))
    main.append(ReturnOp())
    return module, main, p


def test_inline_then_infer_and_canonicalize():
    module, main, p = _helper_module()
    assert inline_calls(module) == 1
    assert [f.sym_name for f in module] == ["main"]
    assert not any(isinstance(op, GenericCallOp) for op in main.body)
    assert any(isinstance(op, CastOp) for op in main.body)
    infer_shapes(main)
    canonicalize(main)
    assert not any(isinstance(op, CastOp) for op in main.body)
    assert p.input.type == TensorType((3, 2))
    module.verify()


def test_recursive_call_is_left_in_place():
    module = ModuleOp()
    f = module.append(
        FuncOp("f", FunctionType((TensorType(),), (TensorType(),)), private=True)
    )
    inner = f.append(GenericCallOp("f", [f.arguments[0]]))
    f.append(ReturnOp((inner.result,)))
    _, main = _main(module)
    c = main.append(ConstantOp(SIX, (2, 3)))
    call = main.append(GenericCallOp("f", [c.result]))
    main.append(PrintOp(call.result))
    main.append(ReturnOp())
    assert inline_calls(module) == 1
    assert len(module) == 2
    assert [op.callee for op in main.body if isinstance(op, GenericCallOp)] == ["f"]


def test_call_to_void_function_is_not_inlined():
    module = ModuleOp()
    g = module.append(FuncOp("g", FunctionType(), private=True))
    g.append(ReturnOp())
    _, main = _main(module)
    main.append(GenericCallOp("g", []))
    main.append(ReturnOp())
    assert inline_calls(module) == 0
    assert [f.sym_name for f in module] == ["g", "main"]


def test_unused_private_function_is_dropped():
    module = ModuleOp()
    unused = module.append(FuncOp("unused", FunctionType(), private=True))
    unused.append(ReturnOp())
    _, main = _main(module)
    main.append(ReturnOp())
    assert inline_calls(module) == 0
    assert module.lookup("unused") is None
    assert [f.sym_name for f in module] == ["main"]