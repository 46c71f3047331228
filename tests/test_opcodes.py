import math

import pytest

from arsvm.opcodes import (
    Opcode,
    float_to_int_bits,
    int_bits_to_float,
    to_int8,
    to_int32,
)


def test_one_point_zero_bit_pattern():
    assert int_bits_to_float(0x3F800000) == 1.0
    assert float_to_int_bits(1.0) == 0x3F800000


@pytest.mark.parametrize("value", [0.0, 1.5, -2.25, 3.0e10, -7.0e-5, math.inf, -math.inf])
def test_float_round_trip(value):
    assert int_bits_to_float(float_to_int_bits(value)) == pytest.approx(value, rel=1e-6)


@pytest.mark.parametrize("bits", [0, 1, -1, 0x12345678, -0x7F000000, 0x7F7FFFFF])
def test_bits_round_trip(bits):
    assert float_to_int_bits(int_bits_to_float(bits)) == to_int32(bits)


def test_float_overflow_becomes_infinity():
    assert float_to_int_bits(1e40) == float_to_int_bits(math.inf)
    assert int_bits_to_float(float_to_int_bits(-1e40)) == -math.inf


def test_negative_float_sets_sign_bit():
    assert float_to_int_bits(-1.0) < 0
    assert float_to_int_bits(-1.0) == to_int32(float_to_int_bits(1.0) | 0x80000000)


@pytest.mark.parametrize("value", [0, 1, 127, 128, 255, 256, -1, -129, 1000])
def test_to_int8_range_and_congruence(value):
    result = to_int8(value)
    assert -128 <= result <= 127
    assert (result - value) % 256 == 0


@pytest.mark.parametrize("value", [0, 5, 2**31 - 1, 2**31, 2**32 + 5, -(2**31), -(2**31) - 1])
def test_to_int32_range_and_congruence(value):
    result = to_int32(value)
    assert -(2**31) <= result < 2**31
    assert (result - value) % 2**32 == 0


def test_to_int32_wraps_top_bit():
    assert to_int32(2**31) == -(2**31)
    assert to_int8(255) == -1