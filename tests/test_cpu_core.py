import pytest

from ossim.cpu_context import EvictionReason, InstructionType
from ossim.cpu_core import (
    SEGFAULT_ADDRESS,
    Cpu,
    EvictionReport,
    MemoryAccessError,
    ProtocolError,
)

REGS = ("ax", "bx", "cx", "dx", "ex", "fx", "gx", "hx")


class FakeMemory:
    def __init__(self, program, base=0, limit=64, cells=None, fail_instruction=None):
        self.program = list(program)
        self.context = {"base": base, "limit": limit, "pc": 0, **{r: 0 for r in REGS}}
        self.cells = dict(cells or {})
        self.saved = []
        self.fetched = []
        self.writes = []
        self.on_fetch = None
        self.fail_instruction = fail_instruction

    def get_context(self, pid, tid):
        return dict(self.context)

    def get_instruction(self, pid, tid, pc):
        self.fetched.append(pc)
        if self.on_fetch is not None:
            self.on_fetch(pc)
        if self.fail_instruction is not None:
            raise self.fail_instruction
        if pc >= len(self.program):
            raise MemoryAccessError("instruction not found")
        return self.program[pc]

    def update_context(self, pid, tid, values):
        self.saved.append((pid, tid, dict(values)))

    def read(self, pid, tid, address):
        if address not in self.cells:
            raise MemoryAccessError("segfault")
        return self.cells[address]

    def write(self, pid, tid, address, value):
        self.writes.append((address, value))
        self.cells[address] = value


def test_decode_splits_mnemonic_and_params():
    cpu = Cpu(FakeMemory([]))
    cpu.context.instruction = "SET AX 5"
    cpu.decode()
    assert cpu.context.instruction == "SET"
    assert cpu.context.params == ["AX", "5"]
    assert cpu.context.instruction_type is InstructionType.SET


def test_sum_program_saves_registers():
    memory = FakeMemory(["SET AX 3", "SET BX 2", "SUM AX BX", "PROCESS_EXIT"])
    cpu = Cpu(memory)
    report = cpu.dispatch(1, 0)
    assert report == EvictionReport(1, 0, EvictionReason.M_PROCESS_EXIT, ())
    pid, tid, values = memory.saved[-1]
    assert (pid, tid) == (1, 0)
    assert values["ax"] == 5
    assert values["bx"] == 2
    assert values["pc"] == len(memory.program)


def test_sub_wraps_to_unsigned():
    memory = FakeMemory(["SET AX 0", "SET BX 1", "SUB AX BX", "THREAD_EXIT"])
    Cpu(memory).dispatch(0, 0)
    assert memory.saved[-1][2]["ax"] == 0xFFFFFFFF


def test_jnz_loops_until_zero():
    program = ["SET AX 3", "SET BX 1", "SUB AX BX", "JNZ AX 2", "THREAD_EXIT"]
    memory = FakeMemory(program)
    report = Cpu(memory).dispatch(0, 0)
    assert report.reason is EvictionReason.M_THREAD_EXIT
    assert memory.saved[-1][2]["ax"] == 0
    assert memory.fetched.count(2) == 3


def test_mmu_translates_within_limit():
    cpu = Cpu(FakeMemory([]))
    cpu.context.base = 100
    cpu.context.limit = 16
    cpu.context.ax = 8
    assert cpu.mmu("AX") == 108
    assert cpu.context.evict is False


def test_mmu_out_of_bounds_is_segfault():
    cpu = Cpu(FakeMemory([]))
    cpu.context.limit = 4
    cpu.context.ax = 1
    assert cpu.mmu("AX") == SEGFAULT_ADDRESS
    assert cpu.context.evict is True
    assert cpu.context.eviction_reason is EvictionReason.SEGFAULT


def test_read_mem_loads_register():
    memory = FakeMemory(["SET BX 4", "READ_MEM AX BX", "THREAD_EXIT"], base=32, cells={36: 77})
    Cpu(memory).dispatch(0, 0)
    assert memory.saved[-1][2]["ax"] == 77


def test_write_mem_stores_register_value():
    memory = FakeMemory(["SET AX 0", "SET BX 9", "WRITE_MEM AX BX", "THREAD_EXIT"], base=40)
    Cpu(memory).dispatch(0, 0)
    assert memory.writes == [(40, 9)]


def test_read_mem_refused_by_memory_is_segfault():
    memory = FakeMemory(["READ_MEM AX BX", "THREAD_EXIT"])
    report = Cpu(memory).dispatch(0, 0)
    assert report.reason is EvictionReason.SEGFAULT
    assert memory.fetched == [0]


def test_unknown_instruction_is_segfault():
    memory = FakeMemory(["JUMP AX"])
    report = Cpu(memory).dispatch(2, 1)
    assert report == EvictionReport(2, 1, EvictionReason.SEGFAULT, ())


def test_missing_parameters_is_segfault():
    memory = FakeMemory(["SET AX"])
    report = Cpu(memory).dispatch(0, 0)
    assert report.reason is EvictionReason.SEGFAULT


def test_instruction_not_found_is_not_fatal():
    cpu = Cpu(FakeMemory([]))
    report = cpu.dispatch(0, 0)
    assert report.reason is EvictionReason.SEGFAULT
    assert cpu.finished is False


def test_protocol_error_finishes_cpu():
    cpu = Cpu(FakeMemory([], fail_instruction=ProtocolError("bad code")))
    report = cpu.dispatch(0, 0)
    assert report.reason is EvictionReason.SEGFAULT
    assert cpu.finished is True


def test_interrupt_evicts_after_current_instruction():
    memory = FakeMemory(["SET AX 1", "SET AX 2", "SET AX 3"])
    cpu = Cpu(memory)
    memory.on_fetch = lambda pc: cpu.interrupt() if pc == 1 else None
    report = cpu.dispatch(0, 0)
    assert report.reason is EvictionReason.INTERRUPCION
    assert memory.saved[-1][2]["ax"] == 2
    assert memory.fetched == [0, 1]


def test_interrupt_ignored_when_idle():
    cpu = Cpu(FakeMemory([]))
    assert cpu.interrupt() is False
    assert cpu.context.interrupted is False


@pytest.mark.parametrize(
    "line, reason, params",
    [
        ("IO 500", EvictionReason.M_IO, ("500",)),
        ("PROCESS_CREATE prog.txt 32 1", EvictionReason.M_PROCESS_CREATE, ("prog.txt", "32", "1")),
        ("THREAD_CREATE hilo.txt 2", EvictionReason.M_THREAD_CREATE, ("hilo.txt", "2")),
        ("THREAD_JOIN 1", EvictionReason.M_THREAD_JOIN, ("1",)),
        ("MUTEX_LOCK RECURSO_1", EvictionReason.M_MUTEX_LOCK, ("RECURSO_1",)),
        ("DUMP_MEMORY", EvictionReason.M_DUMP_MEMORY, ()),
    ],
)
def test_syscalls_report_parameters(line, reason, params):
    report = Cpu(FakeMemory([line])).dispatch(3, 1)
    assert report == EvictionReport(3, 1, reason, params)


def test_dispatch_resets_context():
    cpu = Cpu(FakeMemory(["SET AX 4", "THREAD_EXIT"]))
    cpu.dispatch(5, 2)
    assert cpu.context.ax == 0
    assert cpu.context.pid == 0
    assert cpu.context.instruction is None
    assert cpu.context.eviction_reason is EvictionReason.CONTINUE
    assert cpu.executing is False


def test_invalid_register_stops_execution():
    memory = FakeMemory(["SET ZX 1", "SET AX 1"])
    Cpu(memory).dispatch(0, 0)
    assert memory.fetched == [0]
    assert memory.saved[-1][2]["ax"] == 0