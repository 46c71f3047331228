"""Compiler from the line-oriented assembly language to VM bytecode."""

from __future__ import annotations

import os
import re
import struct
import sys
from pathlib import Path

from arsvm.opcodes import Opcode, ValueType, float_to_int_bits, to_int32

MAX_SYMBOLS = 512
"""Variables a single frame may declare."""

MAX_LABELS = 256
"""Jump labels, and pending jumps, a program may hold."""

MAX_FUNCS = 256
"""Subroutines a program may define."""

MAX_CODE_SIZE = 65536
"""Largest program the compiler produces, in bytes."""

OUTPUT_SUFFIX = ".ars_bin"
"""Suffix of compiled program files."""

_INT32 = struct.Struct("<i")
_TYPES = {"B": ValueType.BYTE, "I": ValueType.INT, "F": ValueType.FLOAT}
_ELEMENT_SIZES = {"B": 1, "I": 4, "F": 4}
_ARITHMETIC = ("add", "sub", "mul", "div", "eq", "lt", "gt", "le", "ge", "ne")
_ATOI = re.compile(r"\s*([+-]?\d+)")
_ATOF = re.compile(
    r"\s*([+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf(?:inity)?|nan))",
    re.IGNORECASE,
)


class CompileError(Exception):
    """Raised when a source line cannot be compiled."""


def _atoi(text):
    match = _ATOI.match(text)
    return to_int32(int(match.group(1))) if match else 0


def _atof(text):
    match = _ATOF.match(text)
    return float(match.group(1)) if match else 0.0


def _float_bits(text):
    return float_to_int_bits(_atof(text))


class _Tokens:
    """Reads blank-separated words off a line; a quoted word keeps its quotes."""

    def __init__(self, text):
        self.rest = text.lstrip(" \t")

    def next(self):
        text = self.rest
        if text.startswith('"'):
            end = text.find('"', 1)
            word = text if end == -1 else text[: end + 1]
        else:
            word = re.match(r"[^ \t]*", text).group()
        self.rest = text[len(word):].lstrip(" \t")
        return word


class Compiler:
    """Compiles source one line at a time; ``finish`` returns the program bytes.

    The first four bytes of a program hold the address of ``main``.  Every
    routine starts with a four-byte field giving the size of its variables.
    """

    def __init__(self):
        self.code = bytearray(4)
        self.entry_point = 0
        self.symbols: list[tuple[str, int]] = []
        self.functions: list[tuple[str, int]] = []
        self.labels: list[tuple[str, int]] = []
        self.pending_jumps: list[tuple[str, int]] = []
        self.messages: list[str] = []
        self.warnings: list[str] = []
        self.current_function = ""
        self.frame_size = 0
        self.depth = 0
        self._need_mem_init = False
        self._in_mem = False
        self._handlers = {
            "main": self._routine,
            "fn": self._routine,
            "lb": self._label,
            "mov": self._mov,
            "ext_byte": self._ext_byte,
            "set_array": self._array_access,
            "read_array": self._array_access,
            "val": self._val,
            "init_array": self._init_array,
            "to_int": self._convert,
            "to_float": self._convert,
            "gpio_read": self._gpio_read,
            "gpio_write": self._gpio_write,
            "pushp": self._pushp,
            "push": self._push,
            "bit_aox": self._bit_aox,
            "bit_move": self._bit_move,
            "timer": self._timer,
            "call": self._call,
            "endfn": self._end_routine,
            "endmain": self._end_routine,
            "ret": self._ret,
            "hlt": self._hlt,
            "jmp": self._jump,
            "jmp_t": self._jump,
        }
        for name in _ARITHMETIC:
            self._handlers[name] = self._arithmetic

    # -- output --------------------------------------------------------

    def _append(self, data):
        if len(self.code) + len(data) > MAX_CODE_SIZE:
            raise CompileError(f"program exceeds {MAX_CODE_SIZE} bytes")
        self.code += data

    def _emit(self, opcode_byte, params=()):
        words = b"".join(_INT32.pack(to_int32(p)) for p in params)
        self._append(bytes([opcode_byte & 0xFF]) + words)

    def _emit_typed(self, opcode, value_type, param_type, params):
        self._emit((opcode << 3) | (value_type << 1) | param_type, params)

    def _emit_mode(self, opcode, param_type, params):
        self._emit((opcode << 3) | param_type, params)

    # -- operands ------------------------------------------------------

    def _address(self, name):
        for symbol, offset in self.symbols:
            if symbol == name:
                return offset
        raise CompileError(f"undefined variable {name}")

    def _operand(self, word, is_float=False):
        """Return (is_address, value) for an immediate or a ``$`` variable."""
        if word.startswith("$"):
            return True, self._address(word)
        return False, _float_bits(word) if is_float else _atoi(word)

    def _operand_pair(self, tokens, is_float=False):
        """Read two operands; mode is 0 both immediate, 1 first address, 2 second, 3 both."""
        first_addr, first = self._operand(tokens.next(), is_float)
        second_addr, second = self._operand(tokens.next(), is_float)
        mode = (1 if first_addr else 0) | (2 if second_addr else 0)
        return mode, first, second

    @staticmethod
    def _type(word, message):
        try:
            return _TYPES[word]
        except KeyError:
            raise CompileError(message) from None

    # -- lines ---------------------------------------------------------

    def compile_line(self, line):
        """Compile one line of source."""
        if self._need_mem_init:
            self._declare(_Tokens(line))
            return
        tokens = _Tokens(line)
        keyword = tokens.next()
        if not keyword or keyword.startswith(";"):
            return
        handler = self._handlers.get(keyword)
        if handler is None:
            self.warnings.append(keyword)
            self.messages.append(f"Warning: unimplemented instruction {keyword}")
            return
        handler(keyword, tokens)

    def _declare(self, tokens):
        word = tokens.next()
        if word == "mem":
            self._in_mem = True
            return
        if word == "end_mem":
            self._in_mem = False
            self._need_mem_init = False
            for name, offset in self.symbols:
                self.messages.append(
                    f"FuncName:{self.current_function} VarName:{name} Offset:{offset}"
                )
            self.messages.append(
                f"Total memory length of {self.current_function}:{self.frame_size}"
            )
            self._append(_INT32.pack(to_int32(self.frame_size)))
            return
        if not self._in_mem:
            return
        if len(self.symbols) >= MAX_SYMBOLS:
            raise CompileError(f"more than {MAX_SYMBOLS} variables")
        type_name = tokens.next()
        if type_name not in _ELEMENT_SIZES:
            raise CompileError(f"unknown type {type_name}")
        length = _atoi(tokens.next())
        self.symbols.append((word, self.frame_size))
        self.frame_size += _ELEMENT_SIZES[type_name] * (length + 1)

    def _routine(self, keyword, tokens):
        address = len(self.code)
        if keyword == "main":
            self.entry_point = address
            self.code[0:4] = _INT32.pack(address)
            self.current_function = "main"
        else:
            name = tokens.next()
            if len(self.functions) >= MAX_FUNCS:
                raise CompileError(f"more than {MAX_FUNCS} functions")
            self.functions.append((name, address))
            self.current_function = name
        self.messages.append(f"Addr of function {self.current_function}:{address}")
        self._need_mem_init = True
        self.depth += 1

    def _label(self, keyword, tokens):
        name = tokens.next()
        if len(self.labels) >= MAX_LABELS:
            raise CompileError(f"more than {MAX_LABELS} labels")
        self.labels.append((name, len(self.code)))
        self.messages.append(f"Label {name}:{len(self.code)}")

    def _mov(self, keyword, tokens):
        kind = self._type(tokens.next(), "MOV missing type")
        dest = self._address(tokens.next())
        is_addr, value = self._operand(tokens.next(), kind == ValueType.FLOAT)
        self._emit_typed(Opcode.MOV, kind, int(is_addr), [dest, value])

    def _ext_byte(self, keyword, tokens):
        dest = self._address(tokens.next())
        src = self._address(tokens.next())
        self._emit_typed(Opcode.EXT_BYTE, 0, 0, [dest, src])

    def _array_access(self, keyword, tokens):
        kind = self._type(tokens.next(), "set_array/read_array missing type (B/I/F)")
        array = self._address(tokens.next())
        is_addr, index = self._operand(tokens.next())
        opcode = Opcode.SETARRAY if keyword == "set_array" else Opcode.READARRAY
        self._emit_typed(opcode, kind, int(is_addr), [array, index])

    def _val(self, keyword, tokens):
        kind = self._type(tokens.next(), "VAL missing type (B/I/F)")
        is_addr, value = self._operand(tokens.next(), kind == ValueType.FLOAT)
        self._emit_typed(Opcode.VAL, kind, int(is_addr), [value])

    def _init_array(self, keyword, tokens):
        kind = self._type(tokens.next(), "init_array missing type (B/I/F)")
        array = self._address(tokens.next())
        is_addr, count = self._operand(tokens.next())
        self._emit_typed(Opcode.INITARRAY, kind, int(is_addr), [array, count])
        while tokens.rest and tokens.rest[0] not in "\n;":
            word = tokens.next()
            if word.startswith("$"):
                self._append(b"\x01" + _INT32.pack(self._address(word)))
            elif kind == ValueType.BYTE:
                self._append(bytes([0, _atoi(word) & 0xFF]))
            elif kind == ValueType.INT:
                self._append(b"\x00" + _INT32.pack(_atoi(word)))
            else:
                self._append(b"\x00" + _INT32.pack(_float_bits(word)))

    def _convert(self, keyword, tokens):
        opcode = Opcode.TO_INT if keyword == "to_int" else Opcode.TO_FLOAT
        word = tokens.next()
        if not word.startswith("$"):
            raise CompileError(f"{word} requires a variable address (with $)")
        self._emit(opcode << 3, [self._address(word)])

    def _gpio_read(self, keyword, tokens):
        dest = self._address(tokens.next())
        is_addr, pin = self._operand(tokens.next())
        self._emit_typed(Opcode.GPIO_READ, 0, int(is_addr), [dest, pin])

    def _gpio_write(self, keyword, tokens):
        mode, pin, value = self._operand_pair(tokens)
        self._emit_mode(Opcode.GPIO_WRITE, mode, [pin, value])

    def _arithmetic(self, keyword, tokens):
        type_name = tokens.next()
        if type_name not in ("I", "F"):
            raise CompileError("missing type for arithmetic")
        is_float = type_name == "F"
        mode, first, second = self._operand_pair(tokens, is_float)
        opcode = Opcode.ADD + _ARITHMETIC.index(keyword)
        byte = (opcode << 3) | (int(is_float) << 2) | mode
        self._emit(byte, [first, second])

    def _pushp(self, keyword, tokens):
        kind = self._type(tokens.next(), "PUSHP missing type")
        is_addr, value = self._operand(tokens.next(), kind == ValueType.FLOAT)
        self._emit_typed(Opcode.PUSHP, kind, int(is_addr), [value])

    def _push(self, keyword, tokens):
        kind = self._type(tokens.next(), "PUSH missing type")
        self._emit_mode(Opcode.PUSH, kind, [self._address(tokens.next())])

    def _ordered_mode(self, tokens, name):
        """Operands where an address may not follow an immediate."""
        mode, first, second = self._operand_pair(tokens)
        if mode == 2:
            raise CompileError(
                f"{name} does not support immediate first operand and address second operand"
            )
        return (2 if mode == 3 else mode), first, second

    def _bit_aox(self, keyword, tokens):
        operation = {"a": 1, "o": 2, "x": 3}.get(tokens.next())
        if operation is None:
            raise CompileError("bit_aox requires A/O/X")
        mode, first, second = self._ordered_mode(tokens, "bit_aox")
        self._emit_mode(Opcode.BIT_AOX, mode, [operation, first, second])

    def _bit_move(self, keyword, tokens):
        direction = {"l": 0, "r": 1}.get(tokens.next())
        if direction is None:
            raise CompileError("bit_move requires L/R")
        mode, first, second = self._ordered_mode(tokens, "bit_move")
        self._emit_mode(Opcode.BIT_MOV, mode | (direction << 2), [first, second])

    def _timer(self, keyword, tokens):
        self._emit_mode(Opcode.ARS_TIMER, 0, [self._address(tokens.next())])

    def _call(self, keyword, tokens):
        name = tokens.next()
        address = next((addr for func, addr in self.functions if func == name), 0)
        if not address:
            raise CompileError(f"undefined function {name}")
        self._emit(Opcode.CALL << 3, [address])

    def _reset_frame(self):
        self.symbols = []
        self.frame_size = 0
        self.depth -= 1

    def _end_routine(self, keyword, tokens):
        self._reset_frame()

    def _ret(self, keyword, tokens):
        self._emit(Opcode.RET << 3)

    def _hlt(self, keyword, tokens):
        self._reset_frame()
        self._emit(Opcode.HLT << 3)

    def _jump(self, keyword, tokens):
        opcode = Opcode.JMP if keyword == "jmp" else Opcode.JMP_T
        name = tokens.next()
        if len(self.pending_jumps) >= MAX_LABELS:
            raise CompileError(f"more than {MAX_LABELS} jumps")
        self.pending_jumps.append((name, len(self.code)))
        self._emit(opcode << 3, [0])

    # -- result --------------------------------------------------------

    def finish(self):
        """Fill in jump targets and return the compiled program."""
        for name, at in self.pending_jumps:
            target = next((addr for label, addr in self.labels if label == name), 0)
            if not target:
                raise CompileError(f"undefined label {name}")
            self.code[at + 1:at + 5] = _INT32.pack(target)
        return bytes(self.code)


def _source_lines(text):
    lines = text.split("\n")
    if text.endswith("\n"):
        lines.pop()
    return lines


def compile_source(text):
    """Compile a whole source text and return the program bytes."""
    compiler = Compiler()
    for line in _source_lines(text):
        compiler.compile_line(line)
    return compiler.finish()


def output_path(source_path):
    """Name of the compiled file: the text after the last dot becomes the suffix."""
    path = os.fspath(source_path)
    dot = path.rfind(".")
    return (path[:dot] if dot != -1 else path) + OUTPUT_SUFFIX


def main(argv=None):
    """Compile a source file to ``<name>.ars_bin`` and dump its bytes."""
    args = sys.argv[1:] if argv is None else list(argv)
    if not args:
        print("Usage: arsvm-compile <source file>")
        return 1
    source = args[0]
    try:
        text = Path(source).read_text()
    except OSError as exc:
        print(f"Failed to open source file: {exc}", file=sys.stderr)
        return 1
    compiler = Compiler()
    try:
        for line in _source_lines(text):
            compiler.compile_line(line)
        program = compiler.finish()
    except CompileError as exc:
        print("\n".join(compiler.messages))
        print(f"Error: {exc}")
        return 1
    for message in compiler.messages:
        print(message)
    target = output_path(source)
    try:
        Path(target).write_bytes(program)
    except OSError as exc:
        print(f"Failed to create output file: {exc}", file=sys.stderr)
        return 1
    print(f"\nCompiled successfully to {target} ({len(program)} bytes)")
    print("Bytecode dump:{")
    for start in range(0, len(program), 16):
        print("".join(f"0x{byte:02X}," for byte in program[start:start + 16]))
    print("}")
    return 0


if __name__ == "__main__":
    sys.exit(main())