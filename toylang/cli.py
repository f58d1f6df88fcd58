"""Command-line driver: parse Toy source, emit its AST, IR or lowered IR."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from typing import Optional

from .ir import ModuleOp, VerificationError, format_module
from .lowering import LoweringError, format_lowered, lower_to_affine
from .mlirgen import CodegenError, mlir_gen
from .parser import ParseError, parse_source
from .syntax import Module, dump
from .transforms import (
    ShapeInferenceError,
    canonicalize,
    eliminate_common_subexpressions,
    infer_shapes,
    inline_calls,
)

EMIT_CHOICES = ("ast", "mlir", "mlir-affine")


def _argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toyc", description="toy compiler", allow_abbrev=False
    )
    parser.add_argument(
        "input", nargs="?", default="-", metavar="filename", help="input toy file"
    )
    parser.add_argument(
        "-x",
        "--x",
        dest="input_type",
        choices=("toy", "mlir"),
        default="toy",
        help="the kind of input: Toy source or textual IR",
    )
    parser.add_argument(
        "-emit", "--emit", dest="emit", choices=EMIT_CHOICES, help="output to produce"
    )
    parser.add_argument(
        "-opt", "--opt", dest="opt", action="store_true", help="enable optimizations"
    )
    return parser


def _error(message: str) -> None:
    print(message, file=sys.stderr)


def _report(exc: Exception) -> None:
    location = getattr(exc, "location", None)
    if location is not None and getattr(location, "file", None) is not None:
        _error(f"{location.file}:{location.line}:{location.col}: error: {exc}")
    else:
        _error(f"error: {exc}")


def _read(filename: str) -> str:
    if filename == "-":
        return sys.stdin.read()
    with open(filename, encoding="utf-8") as handle:
        return handle.read()


def _parse_toy(filename: str) -> Optional[Module]:
    """The syntax tree of ``filename``, or None after reporting an error."""
    try:
        text = _read(filename)
    except OSError as exc:
        _error(f"Could not open input file: {exc.strerror or exc}")
        return None
    try:
        return parse_source(text, filename)
    except ParseError as exc:
        _error(str(exc))
        return None


def _load(args: argparse.Namespace) -> tuple[Optional[ModuleOp], int]:
    if args.input_type != "mlir" and not args.input.endswith(".mlir"):
        module_ast = _parse_toy(args.input)
        if module_ast is None:
            return None, 6
        try:
            return mlir_gen(module_ast), 0
        except CodegenError as exc:
            _report(exc)
            return None, 1

    try:
        _read(args.input)
    except OSError as exc:
        _error(f"Could not open input file: {exc.strerror or exc}")
        return None, -1
    _error(f"Error can't load file {args.input}: textual IR input is not supported")
    return None, 3


def _run_pipeline(module: ModuleOp, optimize: bool, lower: bool) -> ModuleOp:
    if optimize or lower:
        inline_calls(module)
        for function in module:
            canonicalize(function)
        for function in module:
            infer_shapes(function)
            canonicalize(function)
            eliminate_common_subexpressions(function)
    if lower:
        module = lower_to_affine(module)
        for function in module:
            canonicalize(function)
            eliminate_common_subexpressions(function)
    module.verify()
    return module


def _dump_mlir(args: argparse.Namespace) -> int:
    module, status = _load(args)
    if module is None:
        return status
    lower = args.emit == "mlir-affine"
    try:
        module = _run_pipeline(module, args.opt, lower)
    except (VerificationError, ShapeInferenceError, LoweringError) as exc:
        _report(exc)
        return 4
    sys.stderr.write(format_lowered(module) if lower else format_module(module))
    return 0


def _dump_ast(args: argparse.Namespace) -> int:
    if args.input_type == "mlir":
        _error("Can't dump a Toy AST when the input is MLIR")
        return 5
    module_ast = _parse_toy(args.input)
    if module_ast is None:
        return 1
    output = dump(module_ast)
    if output:
        sys.stderr.write(output)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the compiler on the command line ``argv``; return the exit status."""
    args = _argument_parser().parse_args(argv)
    if args.emit == "ast":
        return _dump_ast(args)
    if args.emit in ("mlir", "mlir-affine"):
        return _dump_mlir(args)
    _error("No action specified (parsing only?), use -emit=<action>")
    return 0


if __name__ == "__main__":
    sys.exit(main())