import struct

import pytest

from arsvm.interpreter import (
    LED_FLASH,
    LED_STREAM,
    Interpreter,
    SimulatedPins,
    VMError,
    main,
)
from arsvm.memory import ErrorCode
from arsvm.opcodes import Opcode, float_to_int_bits, int_bits_to_float


def ins(op, flags=0, *params):
    return bytes([(int(op) << 3) | flags]) + b"".join(struct.pack("<i", p) for p in params)


def make_program(mem_size, code):
    return struct.pack("<i", 4) + struct.pack("<i", mem_size) + code


class FakeClock:
    def __init__(self, step=50):
        self.now = 0
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


@pytest.fixture
def vm():
    machine = Interpreter(clock=FakeClock())
    machine.load(0, make_program(32, ins(Opcode.HLT)))
    return machine


def test_led_flash_toggles_pin():
    assert len(LED_FLASH) == 109
    machine = Interpreter(clock=FakeClock())
    machine.load(0, LED_FLASH)
    machine.run(0, 400)
    history = machine.pins.history
    assert len(history) >= 4
    assert {pin for pin, _ in history} == {6}
    assert [v for _, v in history[:4]] == [1, 0, 1, 0]


def test_led_stream_cycles_pins():
    assert len(LED_STREAM) == 188
    machine = Interpreter(clock=FakeClock())
    machine.load(0, LED_STREAM)
    machine.run(0, 2000)
    on_pins = [pin for pin, value in machine.pins.history if value == 1]
    assert on_pins[:4] == [18, 19, 20, 18]


def test_int_add_sub_round_trip(vm):
    vm.execute(Opcode.ADD << 3, [1234, 5678], 0)
    total = vm.result(0)
    vm.execute(Opcode.SUB << 3, [total, 5678], 0)
    assert vm.result(0) == 1234


def test_int_add_wraps_to_32_bits(vm):
    vm.execute(Opcode.ADD << 3, [0x7FFFFFFF, 1], 0)
    assert vm.result(0) == -(2**31)


def test_int_division_truncates(vm):
    vm.execute(Opcode.DIV << 3, [-7, 2], 0)
    assert vm.result(0) == -3


@pytest.mark.parametrize("is_float", [0, 4])
def test_division_by_zero(vm, is_float):
    with pytest.raises(VMError) as info:
        vm.execute((Opcode.DIV << 3) | is_float, [5, 0], 0)
    assert info.value.code == ErrorCode.DIV_BY_0


def test_float_add(vm):
    a, b = float_to_int_bits(1.5), float_to_int_bits(2.25)
    vm.execute((Opcode.ADD << 3) | 4, [a, b], 0)
    assert int_bits_to_float(vm.result(0)) == 3.75


@pytest.mark.parametrize(
    "op,a,b,expected",
    [
        (Opcode.LT, 1, 2, 1),
        (Opcode.GT, 1, 2, 0),
        (Opcode.EQ, 3, 3, 1),
        (Opcode.NE, 3, 3, 0),
        (Opcode.LE, 3, 3, 1),
        (Opcode.GE, 2, 3, 0),
    ],
)
def test_comparisons(vm, op, a, b, expected):
    vm.execute(op << 3, [a, b], 0)
    assert vm.result(0) == expected


def test_mov_and_val_read_back(vm):
    vm.execute((Opcode.MOV << 3) | (1 << 1), [4, 777], 0)
    vm.execute((Opcode.VAL << 3) | (1 << 1) | 1, [4], 0)
    assert vm.result(0) == 777


def test_to_float_and_to_int_round_trip(vm):
    vm.execute((Opcode.MOV << 3) | (1 << 1), [0, 42], 0)
    vm.execute(Opcode.TO_FLOAT << 3, [0], 0)
    assert int_bits_to_float(vm.result(0)) == 42.0
    vm.execute((Opcode.MOV << 3) | (2 << 1), [4, vm.result(0)], 0)
    vm.execute(Opcode.TO_INT << 3, [4], 0)
    assert vm.result(0) == 42


def test_set_and_read_array(vm):
    vm.execute((Opcode.VAL << 3) | (1 << 1), [99], 0)
    vm.execute((Opcode.SETARRAY << 3) | (1 << 1), [8, 2], 0)
    vm.execute((Opcode.VAL << 3) | (1 << 1), [0], 0)
    vm.execute((Opcode.READARRAY << 3) | (1 << 1), [8, 2], 0)
    assert vm.result(0) == 99


def test_bit_shift_round_trip(vm):
    vm.execute(Opcode.BIT_MOV << 3, [5, 3], 0)
    shifted = vm.result(0)
    vm.execute((Opcode.BIT_MOV << 3) | 4, [shifted, 3], 0)
    assert vm.result(0) == 5


def test_bit_xor_self_is_zero(vm):
    vm.execute(Opcode.BIT_AOX << 3, [3, 0x1234, 0x1234], 0)
    assert vm.result(0) == 0


def test_gpio_read_stores_pin_level(vm):
    vm.pins.write(7, 1)
    vm.execute(Opcode.GPIO_READ << 3, [0, 7], 0)
    vm.execute((Opcode.VAL << 3) | (1 << 1) | 1, [0], 0)
    assert vm.result(0) == 1


def test_pushp_overflow(vm):
    with pytest.raises(VMError) as info:
        for _ in range(20):
            vm.execute((Opcode.PUSHP << 3) | (1 << 1), [1], 0)
    assert info.value.code == ErrorCode.OUT_PARAM_BOUND


def test_unknown_opcode(vm):
    with pytest.raises(VMError):
        vm.execute(31 << 3, [], 0)


def test_call_passes_parameter_and_returns():
    func = struct.pack("<i", 4) + ins(Opcode.VAL, (1 << 1) | 1, 0) + ins(Opcode.RET)
    main_addr = 4 + len(func)
    main_code = (
        struct.pack("<i", 4)
        + ins(Opcode.PUSHP, 1 << 1, 42)
        + ins(Opcode.CALL, 0, 4)
        + ins(Opcode.HLT)
    )
    program = struct.pack("<i", main_addr) + func + main_code
    machine = Interpreter(clock=FakeClock())
    machine.load(0, program)
    steps = machine.run(0, 100)
    assert steps == 5
    assert machine.result(0) == 42
    assert machine.memory.tasks[0].head is None


def test_hlt_stops_task(vm):
    assert vm.step(0) is False
    assert vm.run(0, 10) == 0


def test_step_without_program():
    machine = Interpreter(pins=SimulatedPins(), clock=FakeClock())
    with pytest.raises(VMError):
        machine.step(3)


def test_main_runs_demo(capsys):
    assert main(["flash", "--max-steps", "50"]) == 0
    assert "pin 6 <- 1" in capsys.readouterr().out