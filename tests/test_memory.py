import pytest

from arsvm.memory import (
    CONTEXT_SIZE,
    FREE,
    HEADER_SIZE,
    SPLIT,
    ErrorCode,
    MemoryManager,
    VMMemoryError,
)
from arsvm.opcodes import to_int8


@pytest.fixture
def memory():
    return MemoryManager()


def test_first_allocation_is_main_frame(memory):
    cursor = memory.allocate(0, 16)
    state = memory.tasks[0]
    assert state.head == 0
    assert state.tail == 0
    assert state.level == 0
    assert cursor == HEADER_SIZE
    assert state.cursor == cursor
    assert bytes(memory.arena[0:4]) == SPLIT
    assert memory.last_mem == HEADER_SIZE + 16 + CONTEXT_SIZE


def test_int_round_trip(memory):
    memory.allocate(0, 16)
    memory.find_offset(0, 4)
    memory.write_int(0, 123)
    memory.find_offset(0, 4)
    assert memory.read_int(0) == 123


def test_int_write_wraps(memory):
    memory.allocate(0, 8)
    memory.find_offset(0, 0)
    memory.write_int(0, 2**32 + 5)
    memory.find_offset(0, 0)
    assert memory.read_int(0) == 5


def test_byte_is_signed(memory):
    memory.allocate(0, 8)
    memory.find_offset(0, 0)
    memory.write_byte(0, 200)
    memory.find_offset(0, 0)
    assert memory.read_byte(0) == to_int8(200)


def test_float_round_trip(memory):
    memory.allocate(0, 8)
    memory.find_offset(0, 0)
    memory.write_float(0, 1.5)
    memory.find_offset(0, 0)
    assert memory.read_float(0) == 1.5


def test_cursor_advances_over_consecutive_values(memory):
    memory.allocate(0, 12)
    memory.find_offset(0, 0)
    memory.write_byte(0, 7)
    memory.write_int(0, 99)
    memory.write_float(0, -2.5)
    memory.find_offset(0, 0)
    assert memory.read_byte(0) == 7
    assert memory.read_int(0) == 99
    assert memory.read_float(0) == -2.5


def test_find_offset_without_memory(memory):
    with pytest.raises(VMMemoryError) as info:
        memory.find_offset(0, 0)
    assert info.value.code is ErrorCode.NO_MEM_TAIL
    assert info.value.code == 11


def test_find_offset_past_frame(memory):
    memory.allocate(0, 8)
    with pytest.raises(VMMemoryError) as info:
        memory.find_offset(0, 500)
    assert info.value.code is ErrorCode.OUT_BOUND
    assert info.value.code == 1


def test_out_of_memory():
    small = MemoryManager(size=64)
    with pytest.raises(VMMemoryError) as info:
        small.allocate(0, 100)
    assert info.value.code is ErrorCode.OUT_BOUND


def test_sub_frame_chains_and_returns(memory):
    memory.allocate(0, 8)
    cursor = memory.allocate(0, 4)
    state = memory.tasks[0]
    assert state.level == 1
    assert state.tail != state.head
    assert cursor == state.tail + HEADER_SIZE
    memory.write_int(0, 77)
    assert memory.release_last_frame(0) == 77
    assert state.level == 0
    assert state.tail == state.head


def test_sub_frame_variables_are_separate(memory):
    memory.allocate(0, 8)
    memory.find_offset(0, 0)
    memory.write_int(0, 11)
    memory.allocate(0, 8)
    memory.find_offset(0, 0)
    memory.write_int(0, 22)
    memory.release_last_frame(0)
    memory.find_offset(0, 0)
    assert memory.read_int(0) == 11


def test_release_main_frame_releases_task(memory):
    memory.allocate(0, 8)
    memory.release_last_frame(0)
    state = memory.tasks[0]
    assert state.head is None
    assert state.tail is None
    assert state.level == -1
    assert memory.free_head == 0


def test_release_task_marks_free_and_zeroes(memory):
    memory.allocate(0, 8)
    memory.find_offset(0, 0)
    memory.write_int(0, 123)
    memory.release_task(0)
    assert bytes(memory.arena[0:4]) == FREE
    data = memory.arena[HEADER_SIZE:HEADER_SIZE + 8 + CONTEXT_SIZE]
    assert not any(data)
    assert memory.free_head == memory.free_tail == 0


def test_release_task_without_memory(memory):
    with pytest.raises(VMMemoryError) as info:
        memory.release_task(3)
    assert info.value.code is ErrorCode.NO_MEM_HEAD


def test_freed_block_is_reused_whole(memory):
    memory.allocate(0, 100)
    memory.allocate(1, 100)
    memory.release_task(0)
    last = memory.last_mem
    memory.allocate(2, 90)
    assert memory.tasks[2].head == 0
    assert memory.last_mem == last
    assert memory.free_head is None


def test_large_free_block_is_split(memory):
    memory.allocate(0, 200)
    memory.allocate(1, 10)
    memory.release_task(0)
    memory.allocate(2, 10)
    spare = memory.free_head
    assert memory.tasks[2].head == 0
    assert spare > 0
    assert bytes(memory.arena[spare:spare + 4]) == FREE
    memory.allocate(3, 10)
    assert memory.tasks[3].head == spare


def _fits_merged_block(memory, guard_task, length):
    last = memory.last_mem
    memory.allocate(guard_task, length)
    return memory.tasks[guard_task].head == 0 and memory.last_mem == last


def test_merge_with_previous_free_block(memory):
    memory.allocate(0, 50)
    memory.allocate(1, 50)
    memory.allocate(2, 10)
    memory.release_task(0)
    memory.release_task(1)
    assert memory.free_head == memory.free_tail == 0
    assert _fits_merged_block(memory, 3, 100)


def test_merge_with_following_free_block(memory):
    memory.allocate(0, 50)
    memory.allocate(1, 50)
    memory.allocate(2, 10)
    memory.release_task(1)
    memory.release_task(0)
    assert memory.free_head == memory.free_tail == 0
    assert _fits_merged_block(memory, 3, 100)


def test_merge_on_both_sides(memory):
    memory.allocate(0, 50)
    memory.allocate(1, 50)
    memory.allocate(2, 50)
    memory.allocate(3, 10)
    memory.release_task(0)
    memory.release_task(2)
    memory.release_task(1)
    assert memory.free_head == memory.free_tail == 0
    assert _fits_merged_block(memory, 4, 190)


def test_damaged_magic_is_repaired(memory):
    memory.allocate(0, 8)
    memory.arena[0:4] = b"XXXX"
    cursor = memory.find_offset(0, 0)
    assert bytes(memory.arena[0:4]) == SPLIT
    assert cursor == HEADER_SIZE + CONTEXT_SIZE


def test_damaged_guard_cannot_be_repaired(memory):
    memory.allocate(0, 8)
    memory.arena[0:9] = bytes(9)
    with pytest.raises(VMMemoryError) as info:
        memory.find_offset(0, 0)
    assert info.value.code is ErrorCode.HEAD_ERR


def test_foreign_block_is_rejected(memory):
    memory.allocate(0, 8)
    memory.arena[4] = 3
    with pytest.raises(VMMemoryError) as info:
        memory.find_offset(0, 0)
    assert info.value.code is ErrorCode.ID_ERR


def test_reset_forgets_everything(memory):
    memory.allocate(0, 8)
    memory.allocate(1, 8)
    memory.reset()
    assert memory.last_mem == 0
    assert memory.free_head is None
    assert all(state.head is None and state.level == -1 for state in memory.tasks)
    assert not any(memory.arena)


def test_invalid_task_id(memory):
    with pytest.raises(ValueError):
        memory.allocate(memory.max_tasks, 8)