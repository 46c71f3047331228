"""Instruction set, value types and bit-level helpers shared by the VM and compiler."""

from __future__ import annotations

import math
import struct
from enum import IntEnum

MAX_TASKS = 8
"""Number of programs that may run side by side."""

MAX_PARAMS = 16
"""Capacity of a task's subroutine parameter stack."""

MAX_PROGRAM_SIZE = 2048
"""Bytes of program space reserved for each task."""

MEMORY_SIZE = 8192
"""Bytes of shared runtime memory."""

_FLOAT32 = struct.Struct("<f")
_INT32 = struct.Struct("<i")
_UINT32 = struct.Struct("<I")


class Opcode(IntEnum):
    """Instruction numbers; an instruction byte holds one in its upper five bits."""

    MOV = 0
    EXT_BYTE = 1
    SETARRAY = 2
    READARRAY = 3
    INITARRAY = 4
    PUSH = 5
    PUSHP = 6
    ADD = 7
    SUB = 8
    MUL = 9
    DIV = 10
    EQ = 11
    LT = 12
    GT = 13
    LE = 14
    GE = 15
    NE = 16
    JMP = 17
    JMP_T = 18
    CALL = 19
    RET = 20
    BIT_AOX = 21
    BIT_MOV = 22
    ARS_TIMER = 23
    GPIO_WRITE = 24
    GPIO_READ = 25
    VAL = 26
    TO_INT = 27
    TO_FLOAT = 28
    HLT = 29


class ValueType(IntEnum):
    """Operand types encoded in bits 1-2 of an instruction byte."""

    BYTE = 0
    INT = 1
    FLOAT = 2


def to_int32(value):
    """Wrap an integer to a signed 32-bit value."""
    value = int(value) & 0xFFFFFFFF
    return value - (1 << 32) if value & 0x80000000 else value


def to_int8(value):
    """Wrap an integer to a signed 8-bit value."""
    value = int(value) & 0xFF
    return value - (1 << 8) if value & 0x80 else value


def int_bits_to_float(value):
    """Read the 32 bits of an integer as an IEEE-754 single-precision float."""
    return _FLOAT32.unpack(_UINT32.pack(int(value) & 0xFFFFFFFF))[0]


def float_to_int_bits(value):
    """Return the bits of a single-precision float as a signed 32-bit integer."""
    value = float(value)
    try:
        packed = _FLOAT32.pack(value)
    except OverflowError:
        packed = _FLOAT32.pack(math.copysign(math.inf, value))
    return _INT32.unpack(packed)[0]