"""Shared runtime memory: a block allocator with tagged headers and a free list."""

from __future__ import annotations

import struct
from dataclasses import dataclass, replace
from enum import IntEnum

from arsvm.opcodes import (
    MAX_TASKS,
    MEMORY_SIZE,
    float_to_int_bits,
    to_int8,
    to_int32,
)

SPLIT = b"SPLT"
"""Magic of a block owned by a task."""

FREE = b"FREE"
"""Magic of a released block."""

CHECK = 1145141919
"""Guard value; a header whose guard is intact can be repaired."""

# magic, task id, guard, length, previous block, next block (pointers stored +1, 0 = none)
_HEADER = struct.Struct("<4sBiIII")
HEADER_SIZE = _HEADER.size
CONTEXT_SIZE = 4
"""Bytes at the start of every frame that hold the caller's return address."""

_SPLIT_THRESHOLD = 40


class ErrorCode(IntEnum):
    """Failure reasons reported by the memory manager."""

    OUT_BOUND = 1
    ID_ERR = 2
    HEAD_ERR = 3
    BAD_MEM_TRACE = 4
    DIV_BY_0 = 5
    OUT_PARAM_BOUND = 6
    INVALID_LEN = 7
    NEED_APPEND_TO_TAIL = 8
    MEM_CLEAN_PARTLY = 9
    NO_FREE_MEM = 10
    NO_MEM_TAIL = 11
    NO_MEM_HEAD = 12
    BAD_FREE_BLOCK = 13


class VMMemoryError(Exception):
    """Raised when a memory operation fails; ``code`` says why."""

    def __init__(self, code, message=None):
        self.code = ErrorCode(code)
        super().__init__(message or self.code.name)


@dataclass
class _Header:
    magic: bytes
    task_id: int
    check: int
    length: int
    prev: int | None
    next: int | None


@dataclass
class _TaskState:
    head: int | None = None
    tail: int | None = None
    level: int = -1
    cursor: int = 0


def _pack_ptr(address):
    return 0 if address is None else address + 1


def _unpack_ptr(raw):
    return None if raw == 0 else raw - 1


class MemoryManager:
    """Allocates call frames for tasks inside one flat byte arena.

    Each block is a header followed by a data area whose first four bytes
    hold the return address of the frame.  Every task has a cursor that
    reads and writes advance.
    """

    def __init__(self, size=MEMORY_SIZE, max_tasks=MAX_TASKS):
        self.size = size
        self.max_tasks = max_tasks
        self.arena = bytearray(size)
        self.reset()

    def reset(self):
        """Clear the arena and forget every task and free block."""
        self.arena[:] = bytes(self.size)
        self.free_head: int | None = None
        self.free_tail: int | None = None
        self.last_mem = 0
        self.tasks = [_TaskState() for _ in range(self.max_tasks)]

    # -- header access -------------------------------------------------

    def _read(self, address):
        if address < 0 or address + HEADER_SIZE > self.size:
            raise VMMemoryError(ErrorCode.OUT_BOUND)
        magic, task_id, check, length, prev, nxt = _HEADER.unpack_from(self.arena, address)
        return _Header(magic, task_id, check, length, _unpack_ptr(prev), _unpack_ptr(nxt))

    def _write(self, address, header):
        if address < 0 or address + HEADER_SIZE > self.size:
            raise VMMemoryError(ErrorCode.OUT_BOUND)
        _HEADER.pack_into(
            self.arena,
            address,
            header.magic,
            header.task_id,
            header.check,
            header.length & 0xFFFFFFFF,
            _pack_ptr(header.prev),
            _pack_ptr(header.next),
        )

    def _set_next(self, address, value):
        if address is not None:
            self._write(address, replace(self._read(address), next=value))

    def _set_prev(self, address, value):
        if address is not None:
            self._write(address, replace(self._read(address), prev=value))

    def _zero(self, start, count):
        end = min(start + count, self.size)
        if start < end:
            self.arena[start:end] = bytes(end - start)

    def _repair(self, address, task_id, code):
        """Restore a damaged magic if the guard survived, else raise ``code``."""
        header = self._read(address)
        if header.check != CHECK:
            raise VMMemoryError(code)
        header.magic = SPLIT
        header.task_id = task_id
        self._write(address, header)

    def _state(self, task_id):
        if not 0 <= task_id < self.max_tasks:
            raise ValueError(f"task id {task_id} out of range")
        return self.tasks[task_id]

    # -- free list -----------------------------------------------------

    def _unlink_free(self, address, header, spare):
        """Take a free block out of the list, putting ``spare`` in its place if given."""
        split = spare is not None
        is_head = address == self.free_head
        is_tail = address == self.free_tail
        if header.prev is not None and header.next is not None:
            self._set_next(header.prev, spare if split else header.next)
            self._set_prev(header.next, spare if split else header.prev)
        elif is_head and not is_tail:
            self._set_prev(header.next, spare)
            self.free_head = spare if split else header.next
        elif not is_head and is_tail:
            self._set_next(header.prev, spare)
            self.free_tail = spare if split else header.prev
        elif is_head and is_tail:
            self.free_head = spare
            self.free_tail = spare
        else:
            return False
        return True

    def _take_free_block(self, total, task_id):
        address = self.free_head
        while address is not None and address < self.last_mem:
            header = self._read(address)
            if header.magic == FREE:
                if header.length > total:
                    if header.length - total < _SPLIT_THRESHOLD:
                        if not self._unlink_free(address, header, None):
                            return None
                    else:
                        spare = address + HEADER_SIZE + total
                        self._write(spare, replace(header, length=header.length - total - HEADER_SIZE))
                        self._write(address, replace(header, length=total))
                        if not self._unlink_free(address, header, spare):
                            return None
                    return address
            else:
                self._repair(address, task_id, ErrorCode.HEAD_ERR)
            address = header.next
        return None

    def _merge_free(self, block):
        """Coalesce ``block`` with adjacent free blocks; True if it must be appended."""
        ptr = self.free_head
        if ptr is None:
            return False
        first = self._read(ptr)
        if first.magic != FREE and first.check != CHECK:
            return False
        block_header = self._read(block)
        before = after = None
        found = 0
        while ptr is not None:
            header = self._read(ptr)
            if header.magic != FREE and header.check != CHECK:
                self.free_tail = ptr
                return False
            if ptr + header.length + HEADER_SIZE == block:
                before = ptr
                found += 1
            if block + block_header.length + HEADER_SIZE == ptr:
                after = ptr
                found += 1
            if found == 2:
                break
            ptr = header.next

        if before is not None and after is not None:
            after_header = self._read(after)
            if after_header.next is not None and after_header.prev is not None:
                self._set_next(after_header.prev, after_header.next)
                self._set_prev(after_header.next, after_header.prev)
            elif after_header.next is not None:
                self._set_prev(after_header.next, None)
                self.free_head = after_header.next
            elif after_header.prev is not None:
                self._set_next(after_header.prev, None)
                self.free_tail = after_header.prev
            before_header = self._read(before)
            before_header.length += 2 * HEADER_SIZE + block_header.length + after_header.length
            self._write(before, before_header)
            self._zero(block, HEADER_SIZE)
            self._zero(after, HEADER_SIZE)
            return False
        if before is not None:
            before_header = self._read(before)
            before_header.length += HEADER_SIZE + block_header.length
            self._write(before, before_header)
            self._zero(block, HEADER_SIZE)
            return False
        if after is not None:
            after_header = self._read(after)
            after_header.length += HEADER_SIZE + block_header.length
            self._write(block, after_header)
            self._set_next(after_header.prev, block)
            self._set_prev(after_header.next, block)
            if after == self.free_tail:
                self.free_tail = block
            if after == self.free_head:
                self.free_head = block
            self._zero(after, HEADER_SIZE)
            return False
        return True

    def _free_block(self, address):
        header = self._read(address)
        header.magic = FREE
        self._write(address, header)
        self._zero(address + HEADER_SIZE, header.length)
        if self.free_head is None:
            self.free_head = self.free_tail = address
            header = self._read(address)
            header.prev = header.next = None
            self._write(address, header)
        elif self._merge_free(address):
            self._set_next(self.free_tail, address)
            header = self._read(address)
            header.next = None
            header.prev = self.free_tail
            self._write(address, header)
            self.free_tail = address

    # -- allocation ----------------------------------------------------

    def allocate(self, task_id, length):
        """Allocate a frame of ``length`` data bytes for a task.

        The first frame of a task is its main frame; later ones are chained
        after the current tail one scope level deeper.  The task's cursor is
        left on the frame's return-address slot, whose address is returned.
        """
        state = self._state(task_id)
        total = length + CONTEXT_SIZE
        prev = state.tail
        if state.head is not None and prev is None:
            raise VMMemoryError(ErrorCode.NO_MEM_TAIL)

        block = self._take_free_block(total, task_id)
        if block is None:
            block = self.last_mem
            if block + HEADER_SIZE + total >= self.size:
                raise VMMemoryError(ErrorCode.OUT_BOUND)
            self.last_mem += HEADER_SIZE + total
            header = _Header(SPLIT, task_id, CHECK, total, None, None)
        else:
            header = self._read(block)
        header.magic = SPLIT
        header.task_id = task_id
        header.check = CHECK
        header.prev = prev
        header.next = None
        self._write(block, header)

        if prev is not None:
            self._set_next(prev, block)
            state.level += 1
        else:
            state.head = block
            state.level = 0
        state.tail = block
        state.cursor = block + HEADER_SIZE
        return state.cursor

    def find_offset(self, task_id, offset):
        """Point the task's cursor at ``offset`` within its newest frame and return it."""
        state = self._state(task_id)
        block = state.tail
        if block is None:
            raise VMMemoryError(ErrorCode.NO_MEM_TAIL)
        offset &= 0xFFFFFFFF
        while True:
            header = self._read(block)
            if header.magic != SPLIT:
                self._repair(block, task_id, ErrorCode.HEAD_ERR)
                continue
            if header.task_id != task_id:
                raise VMMemoryError(ErrorCode.ID_ERR)
            size = to_int32(header.length)
            if size < 0:
                raise VMMemoryError(ErrorCode.INVALID_LEN)
            if size < offset:
                raise VMMemoryError(ErrorCode.OUT_BOUND)
            state.cursor = block + HEADER_SIZE + CONTEXT_SIZE + offset
            return state.cursor

    # -- cursor access -------------------------------------------------

    def _take(self, task_id, count):
        state = self._state(task_id)
        start = state.cursor
        if start < 0 or start + count > self.size:
            raise VMMemoryError(ErrorCode.OUT_BOUND)
        state.cursor += count
        return start

    def read_byte(self, task_id):
        """Read a signed byte at the cursor and advance past it."""
        start = self._take(task_id, 1)
        return to_int8(self.arena[start])

    def read_int(self, task_id):
        """Read a little-endian signed 32-bit integer at the cursor."""
        start = self._take(task_id, 4)
        return struct.unpack_from("<i", self.arena, start)[0]

    def read_float(self, task_id):
        """Read a little-endian single-precision float at the cursor."""
        start = self._take(task_id, 4)
        return struct.unpack_from("<f", self.arena, start)[0]

    def write_byte(self, task_id, value):
        """Write the low byte of ``value`` at the cursor."""
        start = self._take(task_id, 1)
        self.arena[start] = to_int8(value) & 0xFF

    def write_int(self, task_id, value):
        """Write ``value`` wrapped to 32 bits at the cursor."""
        start = self._take(task_id, 4)
        struct.pack_into("<i", self.arena, start, to_int32(value))

    def write_float(self, task_id, value):
        """Write ``value`` as a single-precision float at the cursor."""
        start = self._take(task_id, 4)
        struct.pack_into("<i", self.arena, start, float_to_int_bits(value))

    # -- release -------------------------------------------------------

    def release_task(self, task_id):
        """Free every frame of a task and return the task to its unused state."""
        state = self._state(task_id)
        block = state.head
        if block is None:
            raise VMMemoryError(ErrorCode.NO_MEM_HEAD)
        while block is not None and block < self.size:
            header = self._read(block)
            if header.magic != SPLIT:
                self._repair(block, task_id, ErrorCode.MEM_CLEAN_PARTLY)
                continue
            if header.task_id != task_id:
                raise VMMemoryError(ErrorCode.ID_ERR)
            following = header.next
            self._free_block(block)
            if following is None:
                state.head = None
                state.tail = None
                state.level = -1
                return
            block = following
        raise VMMemoryError(ErrorCode.OUT_BOUND)

    def release_last_frame(self, task_id):
        """Free a task's newest frame and return the return address it held.

        Releasing the main frame releases the whole task.
        """
        state = self._state(task_id)
        block = state.tail
        if block is None:
            raise VMMemoryError(ErrorCode.NO_MEM_TAIL)
        header = self._read(block)
        if header.prev is not None and state.level > 0:
            self._set_next(header.prev, None)
            state.tail = header.prev
        if block + header.length >= self.size:
            raise VMMemoryError(ErrorCode.OUT_BOUND)
        if header.magic != SPLIT:
            # a repaired header is released like an intact one
            self._repair(block, task_id, ErrorCode.MEM_CLEAN_PARTLY)
            header = self._read(block)
        if header.task_id != task_id:
            raise VMMemoryError(ErrorCode.ID_ERR)
        return_address = int.from_bytes(
            self.arena[block + HEADER_SIZE:block + HEADER_SIZE + CONTEXT_SIZE], "little"
        )
        if state.level > 0:
            self._free_block(block)
            state.level -= 1
        else:
            self.release_task(task_id)
        return return_address