[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "toylang"
version = "0.1.0"
description = "A compiler for the Toy tensor language: lexer, parser, IR generation, shape inference and affine lowering"
requires-python = ">=3.10"
dependencies = []
keywords = ["compiler", "toy", "tensor", "ir", "shape-inference", "affine", "lowering"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Software Development :: Compilers",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
toyc = "toylang.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["toylang"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
