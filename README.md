# toylang

A small compiler for the Toy language. Toy is a tiny language built around
multi-dimensional arrays of 64-bit floats. The compiler reads Toy source and
builds a syntax tree, then turns the tree into a typed IR made of operations.
It can optimise that IR, infer tensor shapes, and lower `main` to affine loops
over memory buffers.

It has no runtime dependencies.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## The language

```
def multiply_transpose(a, b) {
  return transpose(a) * transpose(b);
}

def main() {
  var a<2, 3> = [[1, 2, 3], [4, 5, 6]];
  var b<2, 3> = [1, 2, 3, 4, 5, 6];
  var c = multiply_transpose(a, b);
  print(c);
}
```

- `def` declares a function. Its arguments are tensors of unknown shape.
- `var name<d0, d1, ...> = expr;` declares a variable. The shape is optional.
  When a shape is given, a `toy.reshape` is emitted.
- Array literals use nested brackets. Every nesting level must have the
  same dimensions.
- `+` and `*` work element by element. `transpose(x)` and `print(x)` are
  built in.
- `#` starts a comment that runs to the end of the line.

## Command line

```
toyc program.toy -emit=ast
toyc program.toy -emit=mlir
toyc program.toy -emit=mlir -opt
toyc program.toy -emit=mlir-affine
```

- `-emit=ast` writes the syntax tree.
- `-emit=mlir` writes the Toy IR.
- `-emit=mlir-affine` inlines every call into `main` and infers shapes. It then
  canonicalises and removes common subexpressions. Last, it lowers `main` to
  buffers and affine loops.
- `-opt` runs the same inlining, shape inference, canonicalisation and common
  subexpression elimination for `-emit=mlir`.
- `-x toy` (the default) or `-x mlir` gives the kind of input.

The options also take the double-dash spelling, for example `--emit=ast`.

If no input file is given, or the file is `-`, the program is read from
standard input. All output, dumps and error messages alike, goes to standard
error. If no `-emit` is given, the command only reports that no action was
specified.

Exit statuses:

| Status | Meaning |
| --- | --- |
| 0 | success |
| 1 | IR generation failed, or the source failed to parse with `-emit=ast` |
| 3 | the input was textual IR |
| 4 | verification, shape inference or lowering failed |
| 5 | `-emit=ast` was asked for with `-x mlir` |
| 6 | the source could not be read or parsed with `-emit=mlir` or `-emit=mlir-affine` |

## Library use

```python
from toylang.parser import parse_source
from toylang.syntax import dump
from toylang.mlirgen import mlir_gen
from toylang.ir import format_module
from toylang.transforms import (
    canonicalize,
    eliminate_common_subexpressions,
    infer_shapes,
    inline_calls,
)
from toylang.lowering import format_lowered, lower_to_affine

module_ast = parse_source(source_text, "program.toy")
print(dump(module_ast))          # dump() returns the tree as text

module = mlir_gen(module_ast)    # Toy IR, already verified
inline_calls(module)             # returns the number of calls inlined
main = module.lookup("main")
infer_shapes(main)
canonicalize(main)
eliminate_common_subexpressions(main)
print(format_module(module))

lowered = lower_to_affine(module)  # a new module; the input is left as it is
print(format_lowered(lowered))
```

The modules:

- `toylang.lexer`: `Lexer`, `Token` and `Location`.
- `toylang.syntax`: the syntax tree node classes, `Module`, and `dump`.
- `toylang.parser`: `Parser`, `parse_source` and `ParseError`.
- `toylang.ir`: types (`TensorType`, `FunctionType`), `Value`, the Toy
  operations, `FuncOp`, `ModuleOp`, `are_cast_compatible` and `format_module`.
- `toylang.mlirgen`: `mlir_gen` and `CodegenError`.
- `toylang.transforms`: `inline_calls`, `infer_shapes`, `canonicalize`,
  `eliminate_common_subexpressions` and `ShapeInferenceError`.
- `toylang.lowering`: the buffer and loop operations, `LoweredFunc`,
  `lower_to_affine` and `format_lowered`.
- `toylang.cli`: `main`, the `toyc` command.

Errors are raised as exceptions:

- The parser raises `ParseError`.
- IR generation raises `CodegenError`.
- The verifier raises `VerificationError`.
- Shape inference raises `ShapeInferenceError`.
- Lowering raises `LoweringError`.

## What it does not do

- The IR is printed but cannot be read back. `-x mlir` and input files ending
  in `.mlir` are refused with exit status 3.
- Lowering covers `main` only, so every other function must be inlined first.
  `toy.print` is left in place on the lowered buffers. Nothing is lowered
  further than affine loops.
- There is no loop fusion or scalar replacement after lowering, even with
  `-opt`.
- Nothing is executed. The compiler produces text only.