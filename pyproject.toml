[build-system]
requires = ["setuptools>=61"]
build-backend = "setuptools.build_meta"

[project]
name = "arsvm"
version = "0.1.0"
description = "A small multitasking bytecode virtual machine and an assembler for its line-oriented language"
requires-python = ">=3.10"
dependencies = []
keywords = ["bytecode", "virtual machine", "interpreter", "assembler", "gpio"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Interpreters",
    "Topic :: Software Development :: Assemblers",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
arsvm = "arsvm.interpreter:main"
arsvm-compile = "arsvm.compiler:main"

[tool.setuptools.packages.find]
include = ["arsvm*"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
