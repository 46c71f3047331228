"""A multitasking bytecode virtual machine, its frame allocator and its assembler."""

__version__ = "0.1.0"
__all__ = ["compiler", "interpreter", "memory", "opcodes"]