# arsvm

A small bytecode virtual machine that keeps several programs (tasks) in one
shared block of memory, together with an assembler for its line-oriented
source language. It has no dependencies outside the standard library.

## Installing

    pip install .

For running the tests:

    pip install .[test]
    pytest

## Writing a program

A source file is a list of routines. Each routine begins with `main` or
`fn <name>`, declares its variables between `mem` and `end_mem`, and then
lists its instructions. A subroutine must be defined before it is called.

    fn blink
    mem
    $pin I 0
    end_mem
    gpio_write 13 1
    ret
    endfn

    main
    mem
    $i I 0
    end_mem
    mov I $i 0
    lb loop
    add I $i 1
    push I $i
    lt I $i 10
    jmp_t loop
    call blink
    hlt
    endmain

Variables are declared as `<name> <B|I|F> <array length>`; a variable takes
`size * (length + 1)` bytes. Operands starting with `$` refer to variables;
anything else is an immediate value. Lines starting with `;` are comments.
Unknown keywords are skipped with a warning.

The instructions are `mov`, `ext_byte`, `set_array`, `read_array`,
`init_array`, `val`, `push`, `pushp`, `add`, `sub`, `mul`, `div`, `eq`, `lt`,
`gt`, `le`, `ge`, `ne`, `bit_aox`, `bit_move`, `to_int`, `to_float`,
`timer`, `gpio_write`, `gpio_read`, `jmp`, `jmp_t`, `call`, `ret` and `hlt`.
Arithmetic and comparisons leave their result in the task's calculation
register; `push` stores that register into a variable.

## Compiling

    arsvm-compile program.ars

This writes `program.ars_bin` next to the source (the text after the last
dot is replaced) and prints the function and label addresses, the variable
offsets of each routine and a dump of the produced bytecode. On an error it
prints `Error: ...` and exits with status 1.

From Python, `arsvm.compiler.compile_source(text)` returns the bytecode as
`bytes`, and `arsvm.compiler.output_path(path)` gives the name the command
line writes to. A `Compiler` object can also be fed line by line with
`compile_line()` and completed with `finish()`, which fills in jump targets;
its `messages` and `warnings` lists collect what the command prints.
Malformed input, undefined variables, functions or labels raise
`CompileError`.

The first four bytes of a program hold the address of `main`; every routine
starts with a four-byte field giving the size of its variables.

## Running

    arsvm program.ars_bin
    arsvm flash
    arsvm stream --max-steps 500

The argument is a compiled file, or the name of one of two built-in demo
programs, `flash` and `stream`, which drive pins. Options: `--task` chooses
the task slot (default 0) and `--max-steps` limits the instructions executed
(default 10000). The command prints every pin write and whether the task
halted or was stopped, with its final calculation register.

From Python:

    from arsvm.memory import MemoryManager
    from arsvm.interpreter import Interpreter, SimulatedPins

    vm = Interpreter(MemoryManager(8192, 8), SimulatedPins(), None)
    vm.load(0, bytecode)
    vm.run(0, 10_000)
    print(vm.result(0))

`Interpreter()` with no arguments uses the same defaults. The third
argument is a clock: a callable returning milliseconds, read by `timer`;
by default it counts from the interpreter's creation. `step()` executes a
single instruction and returns `False` once the task has halted;
`execute()` runs one decoded instruction directly. Failures such as
division by zero, a full parameter stack or a bad opcode raise `VMError`;
memory failures raise `VMMemoryError`, whose `code` is an `ErrorCode`.

`SimulatedPins` records pin levels and modes, and keeps every write in its
`history` list; pins never written read as 0.

## Memory model

`MemoryManager` hands out frames from a flat byte array. Each frame starts
with a header that records its owner task, a guard value, its length and
the frames before and after it; the first four data bytes hold the return
address. Released frames join a free list and are merged with free
neighbours; a free block is split when much larger than a request. A
damaged header whose guard survived is repaired. Every call gets a fresh
frame, and returning releases it; returning from, or halting in, the main
frame releases the whole task.

## What it does not do

Pins are simulated only: `gpio_write` and `gpio_read` act on a
`SimulatedPins` object (or any object with `write(pin, value)` and
`read(pin)`), not on real hardware. There is no built-in scheduler that
switches between tasks; to run several tasks side by side, load each one
and call `step()` on them in turn.