"""Compiler for the Toy tensor language: parsing, IR generation, shape inference, optimisation and affine lowering."""

__version__ = "0.1.0"
__all__ = ["__version__"]