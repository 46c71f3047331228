"""Bytecode virtual machine that runs compiled programs as cooperative tasks."""

from __future__ import annotations

import argparse
import struct
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path

from arsvm.memory import ErrorCode, MemoryManager
from arsvm.opcodes import (
    MAX_PARAMS,
    MAX_PROGRAM_SIZE,
    Opcode,
    ValueType,
    float_to_int_bits,
    int_bits_to_float,
    to_int8,
    to_int32,
)

LED_FLASH = bytes.fromhex(
    "34000000 10000000 B808000000 B804000000 4304000000 08000000"
    " 290C000000 7B0C000000 00000000 9033000000 880D000000 A0"
    " 04000000 0200000000 06000000 C100000000 01000000 3264000000"
    " 9804000000 C100000000 00000000 3264000000 9804000000 8841000000 E8"
)
"""Demo program: toggles one pin with a delay subroutine."""

LED_STREAM = bytes.fromhex(
    "34000000100000 00B808000000B80400"
    "00004304000000080000002 90C000000"
    "7B0C0000000000000090330000 00880D"
    "000000A01800000002000000006400 00"
    "00020800000000000000220C00000003"
    "00000000120000000013000000001400"
    "00001B0C0000000800000029040000 00"
    "C1040000000100000033000000009804"
    "000000C10400000000000000390800 00"
    "00010000002908000000690800000002"
    "000000 90AD00000088B6000000020800"
    "0000000000008862000000E8".replace(" ", "")
)
"""Demo program: lights a row of pins one after another."""

_PARAM_COUNTS = {
    Opcode.MOV: 2,
    Opcode.EXT_BYTE: 2,
    Opcode.SETARRAY: 2,
    Opcode.READARRAY: 2,
    Opcode.INITARRAY: 2,
    Opcode.PUSH: 1,
    Opcode.PUSHP: 1,
    Opcode.ADD: 2,
    Opcode.SUB: 2,
    Opcode.MUL: 2,
    Opcode.DIV: 2,
    Opcode.EQ: 2,
    Opcode.LT: 2,
    Opcode.GT: 2,
    Opcode.LE: 2,
    Opcode.GE: 2,
    Opcode.NE: 2,
    Opcode.JMP: 1,
    Opcode.JMP_T: 1,
    Opcode.CALL: 1,
    Opcode.RET: 0,
    Opcode.BIT_AOX: 3,
    Opcode.BIT_MOV: 2,
    Opcode.ARS_TIMER: 1,
    Opcode.GPIO_WRITE: 2,
    Opcode.GPIO_READ: 2,
    Opcode.VAL: 1,
    Opcode.TO_INT: 1,
    Opcode.TO_FLOAT: 1,
    Opcode.HLT: 0,
}


class VMError(Exception):
    """Raised when an instruction cannot be executed."""

    def __init__(self, message, code=None):
        self.code = None if code is None else ErrorCode(code)
        super().__init__(message)


class SimulatedPins:
    """In-memory stand-in for digital I/O pins that records every write."""

    def __init__(self):
        self.levels: dict[int, int] = {}
        self.modes: dict[int, str] = {}
        self.history: list[tuple[int, int]] = []

    def write(self, pin, value):
        """Drive ``pin`` to ``value`` as an output."""
        self.modes[pin] = "output"
        self.levels[pin] = value
        self.history.append((pin, value))

    def read(self, pin):
        """Return the level of ``pin``; pins never written read as 0."""
        return self.levels.get(pin, 0)


@dataclass
class _Task:
    program: bytes
    pc: int
    result: int = 0
    params: list = field(default_factory=list)
    running: bool = True


def _f32(value):
    return int_bits_to_float(float_to_int_bits(value))


def _trunc_div(a, b):
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q


class Interpreter:
    """Executes programs for up to ``memory.max_tasks`` tasks in a shared memory."""

    def __init__(self, memory=None, pins=None, clock=None):
        self.memory = memory if memory is not None else MemoryManager()
        self.pins = pins if pins is not None else SimulatedPins()
        if clock is None:
            start = time.monotonic()

            def clock():
                return int((time.monotonic() - start) * 1000)

        self.clock = clock
        self.tasks: dict[int, _Task] = {}

    # -- task control --------------------------------------------------

    def load(self, task_id, program):
        """Load a program for a task and allocate its main frame."""
        program = bytes(program)
        if len(program) > MAX_PROGRAM_SIZE:
            raise VMError(f"program of {len(program)} bytes exceeds {MAX_PROGRAM_SIZE}")
        if len(program) < 8:
            raise VMError("program too short")
        task = self.tasks.get(task_id)
        if task is not None and task.running:
            raise VMError(f"task {task_id} is already running")
        entry = self._program_int(program, 0)
        size = self._program_int(program, entry)
        self.memory.allocate(task_id, size)
        self.tasks[task_id] = _Task(program, entry + 4)

    def result(self, task_id):
        """Return the task's calculation register."""
        return self._task(task_id).result

    def step(self, task_id):
        """Execute one instruction; return False once the task has halted."""
        task = self._task(task_id)
        if not task.running:
            return False
        if not 0 <= task.pc < len(task.program):
            raise VMError(f"program counter {task.pc} outside program")
        opcode_byte = task.program[task.pc]
        cmd = opcode_byte >> 3
        if cmd not in _PARAM_COUNTS.keys():
            raise VMError(f"unknown opcode {cmd}")
        count = _PARAM_COUNTS[Opcode(cmd)]
        start = task.pc + 1
        params = [self._program_int(task.program, start + 4 * i) for i in range(count)]
        task.pc = start + 4 * count
        self.execute(opcode_byte, params, task_id)
        return task.running

    def run(self, task_id, max_steps=None):
        """Run a task until it halts or ``max_steps`` is reached; return steps taken."""
        steps = 0
        while max_steps is None or steps < max_steps:
            if not self._task(task_id).running:
                break
            self.step(task_id)
            steps += 1
        return steps

    def execute(self, opcode_byte, params, task_id):
        """Execute one decoded instruction with its 32-bit parameters."""
        cmd = opcode_byte >> 3
        try:
            op = Opcode(cmd)
        except ValueError:
            raise VMError(f"unknown opcode {cmd}") from None
        self._task(task_id)
        params = [to_int32(p) for p in params]
        handler = getattr(self, "_op_" + op.name.lower())
        handler(opcode_byte, params, task_id)

    # -- helpers -------------------------------------------------------

    def _task(self, task_id):
        try:
            return self.tasks[task_id]
        except KeyError:
            raise VMError(f"task {task_id} has no program") from None

    @staticmethod
    def _program_int(program, offset):
        if offset < 0 or offset + 4 > len(program):
            raise VMError(f"read past end of program at {offset}")
        return struct.unpack_from("<i", program, offset)[0]

    def _int_at(self, task_id, address):
        self.memory.find_offset(task_id, address)
        return self.memory.read_int(task_id)

    def _float_at(self, task_id, address):
        self.memory.find_offset(task_id, address)
        return self.memory.read_float(task_id)

    def _byte_at(self, task_id, address):
        self.memory.find_offset(task_id, address)
        return self.memory.read_byte(task_id)

    def _operands(self, mode, params, task_id, reader, immediate):
        """Resolve two operands by the four-way immediate/address mode."""
        a, b = params[0], params[1]
        first = reader(task_id, a) if mode in (1, 3) else immediate(a)
        second = reader(task_id, b) if mode in (2, 3) else immediate(b)
        return first, second

    def _ordered_operands(self, mode, first, second, task_id):
        """Operands for bit operations: 0 both immediate, 1 first address, 2 both addresses."""
        a = self._int_at(task_id, first) if mode in (1, 2) else first
        b = self._int_at(task_id, second) if mode == 2 else second
        return a, b

    # -- data movement -------------------------------------------------

    def _op_mov(self, byte, params, task_id):
        kind = (byte & 0x06) >> 1
        from_addr = byte & 0x01
        mem = self.memory
        if kind == ValueType.BYTE:
            value = self._byte_at(task_id, params[1]) if from_addr else to_int8(params[1])
            mem.find_offset(task_id, params[0])
            mem.write_byte(task_id, value)
        elif kind == ValueType.INT:
            value = self._int_at(task_id, params[1]) if from_addr else params[1]
            mem.find_offset(task_id, params[0])
            mem.write_int(task_id, value)
        elif kind == ValueType.FLOAT:
            value = self._float_at(task_id, params[1]) if from_addr else int_bits_to_float(params[1])
            mem.find_offset(task_id, params[0])
            mem.write_float(task_id, value)

    def _op_ext_byte(self, byte, params, task_id):
        value = self._byte_at(task_id, params[1])
        self.memory.find_offset(task_id, params[0])
        self.memory.write_int(task_id, value)

    def _op_initarray(self, byte, params, task_id):
        task = self._task(task_id)
        kind = (byte & 0x06) >> 1
        count = self._int_at(task_id, params[1]) if byte & 0x01 else params[1]
        program = task.program
        # element values are read before the cursor is placed on the array
        values = []
        for _ in range(max(count, 0)):
            if task.pc >= len(program):
                raise VMError("array initialiser runs past end of program")
            tag = program[task.pc]
            task.pc += 1
            if not tag and kind == ValueType.BYTE:
                if task.pc >= len(program):
                    raise VMError("array initialiser runs past end of program")
                values.append((tag, program[task.pc]))
                task.pc += 1
            else:
                values.append((tag, self._program_int(program, task.pc)))
                task.pc += 4
        mem = self.memory
        mem.find_offset(task_id, params[0])
        for tag, raw in values:
            if tag:
                saved = mem.tasks[task_id].cursor
                if kind == ValueType.BYTE:
                    value = self._byte_at(task_id, raw)
                elif kind == ValueType.INT:
                    value = self._int_at(task_id, raw)
                else:
                    value = self._float_at(task_id, raw)
                mem.tasks[task_id].cursor = saved
            elif kind == ValueType.FLOAT:
                value = int_bits_to_float(raw)
            else:
                value = raw
            if kind == ValueType.BYTE:
                mem.write_byte(task_id, value)
            elif kind == ValueType.INT:
                mem.write_int(task_id, value)
            elif kind == ValueType.FLOAT:
                mem.write_float(task_id, value)

    def _op_setarray(self, byte, params, task_id):
        self._array_access(byte, params, task_id, reading=False)

    def _op_readarray(self, byte, params, task_id):
        self._array_access(byte, params, task_id, reading=True)

    def _array_access(self, byte, params, task_id, reading):
        task = self._task(task_id)
        kind = (byte & 0x06) >> 1
        index = self._int_at(task_id, params[1]) if byte & 0x01 else params[1]
        mem = self.memory
        mem.find_offset(task_id, params[0])
        mem.tasks[task_id].cursor += (1 if kind == ValueType.BYTE else 4) * index
        if kind == ValueType.BYTE:
            if reading:
                task.result = mem.read_byte(task_id)
            else:
                mem.write_byte(task_id, task.result)
        elif kind == ValueType.INT:
            if reading:
                task.result = mem.read_int(task_id)
            else:
                mem.write_int(task_id, task.result)
        elif kind == ValueType.FLOAT:
            if reading:
                task.result = float_to_int_bits(mem.read_float(task_id))
            else:
                mem.write_float(task_id, int_bits_to_float(task.result))

    def _op_val(self, byte, params, task_id):
        task = self._task(task_id)
        kind = (byte & 0x06) >> 1
        if byte & 0x01:
            if kind == ValueType.BYTE:
                task.result = self._byte_at(task_id, params[0])
            elif kind == ValueType.INT:
                task.result = self._int_at(task_id, params[0])
            else:
                task.result = float_to_int_bits(self._float_at(task_id, params[0]))
        elif kind == ValueType.BYTE:
            task.result = to_int8(params[0])
        else:
            task.result = params[0]

    def _op_to_int(self, byte, params, task_id):
        value = self._float_at(task_id, params[0])
        if value != value or value in (float("inf"), float("-inf")):
            raise VMError("cannot convert non-finite float to int")
        self._task(task_id).result = to_int32(int(value))

    def _op_to_float(self, byte, params, task_id):
        value = self._int_at(task_id, params[0])
        self._task(task_id).result = float_to_int_bits(float(value))

    def _op_push(self, byte, params, task_id):
        task = self._task(task_id)
        kind = byte & 0x07
        self.memory.find_offset(task_id, params[0])
        if kind == 0:
            self.memory.write_byte(task_id, task.result)
        elif kind == 1:
            self.memory.write_int(task_id, task.result)
        else:
            self.memory.write_float(task_id, float(task.result))

    def _op_ars_timer(self, byte, params, task_id):
        self.memory.find_offset(task_id, params[0])
        self.memory.write_int(task_id, to_int32(self.clock()))

    # -- I/O -----------------------------------------------------------

    def _op_gpio_write(self, byte, params, task_id):
        pin, value = self._operands(byte & 0x03, params, task_id, self._int_at, lambda v: v)
        self.pins.write(pin & 0xFF, value & 0xFF)

    def _op_gpio_read(self, byte, params, task_id):
        pin = self._byte_at(task_id, params[1]) if byte & 0x01 else params[1]
        level = self.pins.read(pin)
        self.memory.find_offset(task_id, params[0])
        self.memory.write_int(task_id, level)

    # -- subroutines ---------------------------------------------------

    def _op_pushp(self, byte, params, task_id):
        task = self._task(task_id)
        kind = ValueType(min((byte & 0x06) >> 1, 2))
        if byte & 0x01:
            if kind == ValueType.BYTE:
                value = self._byte_at(task_id, params[0])
            elif kind == ValueType.INT:
                value = self._int_at(task_id, params[0])
            else:
                value = self._float_at(task_id, params[0])
        elif kind == ValueType.BYTE:
            value = to_int8(params[0])
        elif kind == ValueType.INT:
            value = params[0]
        else:
            value = int_bits_to_float(params[0])
        task.params.append((kind, value))
        if len(task.params) >= MAX_PARAMS:
            raise VMError("parameter stack full", ErrorCode.OUT_PARAM_BOUND)

    def _op_call(self, byte, params, task_id):
        task = self._task(task_id)
        address = params[0] & 0xFFFFFFFF
        size = self._program_int(task.program, address)
        mem = self.memory
        mem.allocate(task_id, size)
        mem.write_int(task_id, task.pc)
        for kind, value in task.params:
            if kind == ValueType.BYTE:
                mem.write_byte(task_id, value)
            elif kind == ValueType.INT:
                mem.write_int(task_id, value)
            else:
                mem.write_float(task_id, value)
        task.params.clear()
        task.pc = address + 4

    def _op_ret(self, byte, params, task_id):
        task = self._task(task_id)
        task.pc = self.memory.release_last_frame(task_id)
        if self.memory.tasks[task_id].head is None:
            task.running = False

    def _op_jmp(self, byte, params, task_id):
        self._task(task_id).pc = params[0]

    def _op_jmp_t(self, byte, params, task_id):
        task = self._task(task_id)
        if task.result:
            task.pc = params[0]

    def _op_hlt(self, byte, params, task_id):
        self.memory.release_task(task_id)
        self._task(task_id).running = False

    # -- arithmetic and comparison -------------------------------------

    def _compare(self, byte, params, task_id):
        is_float = (byte & 0x04) >> 2
        if is_float:
            a, b = self._operands(byte & 0x03, params, task_id, self._float_at, int_bits_to_float)
        else:
            a, b = self._operands(byte & 0x03, params, task_id, self._int_at, lambda v: v)
        op = Opcode(byte >> 3)
        outcome = {
            Opcode.EQ: a == b,
            Opcode.LT: a < b,
            Opcode.GT: a > b,
            Opcode.LE: a <= b,
            Opcode.GE: a >= b,
            Opcode.NE: a != b,
        }[op]
        self._task(task_id).result = int(outcome)

    _op_eq = _op_lt = _op_gt = _op_le = _op_ge = _op_ne = _compare

    def _calc(self, byte, params, task_id):
        task = self._task(task_id)
        op = Opcode(byte >> 3)
        if byte & 0x04:
            a, b = self._operands(byte & 0x03, params, task_id, self._float_at, int_bits_to_float)
            if op == Opcode.DIV:
                if b == 0.0:
                    raise VMError("division by zero", ErrorCode.DIV_BY_0)
                value = a / b
            elif op == Opcode.ADD:
                value = a + b
            elif op == Opcode.SUB:
                value = a - b
            else:
                value = a * b
            task.result = float_to_int_bits(_f32(value))
        else:
            a, b = self._operands(byte & 0x03, params, task_id, self._int_at, lambda v: v)
            if op == Opcode.DIV:
                if b == 0:
                    raise VMError("division by zero", ErrorCode.DIV_BY_0)
                value = _trunc_div(a, b)
            elif op == Opcode.ADD:
                value = a + b
            elif op == Opcode.SUB:
                value = a - b
            else:
                value = a * b
            task.result = to_int32(value)

    _op_add = _op_sub = _op_mul = _op_div = _calc

    def _op_bit_aox(self, byte, params, task_id):
        a, b = self._ordered_operands(byte & 0x07, params[1], params[2], task_id)
        if params[0] == 1:
            a &= b
        elif params[0] == 2:
            a |= b
        elif params[0] == 3:
            a ^= b
        self._task(task_id).result = to_int32(a)

    def _op_bit_mov(self, byte, params, task_id):
        a, b = self._ordered_operands(byte & 0x03, params[0], params[1], task_id)
        shift = b & 31
        a = a >> shift if (byte & 0x04) else a << shift
        self._task(task_id).result = to_int32(a)


_DEMOS = {"flash": LED_FLASH, "stream": LED_STREAM}


def main(argv=None):
    """Run a compiled program, or a built-in demo, and print its pin writes."""
    parser = argparse.ArgumentParser(description="Run a compiled bytecode program.")
    parser.add_argument("program", help="path of a compiled program, or 'flash' / 'stream'")
    parser.add_argument("--task", type=int, default=0)
    parser.add_argument("--max-steps", type=int, default=10000)
    args = parser.parse_args(argv)
    if args.program in _DEMOS:
        code = _DEMOS[args.program]
    else:
        try:
            code = Path(args.program).read_bytes()
        except OSError as exc:
            print(f"cannot read {args.program}: {exc}", file=sys.stderr)
            return 1
    vm = Interpreter()
    try:
        vm.load(args.task, code)
        steps = vm.run(args.task, args.max_steps)
    except Exception as exc:  # report any VM failure as a clean exit code
        print(f"error: {exc}", file=sys.stderr)
        return 1
    for pin, value in vm.pins.history:
        print(f"pin {pin} <- {value}")
    state = "halted" if not vm.tasks[args.task].running else "stopped"
    print(f"{state} after {steps} steps, result {vm.result(args.task)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())