import itertools
import threading
import time

import pytest

from ossim.cpu_context import EvictionReason
from ossim.cpu_core import EvictionReport, ProtocolError
from ossim.kernel_model import Kernel, Tcb, ThreadState
from ossim.kernel_scheduler import (
    LongTermScheduler,
    ShortTermScheduler,
    has_higher_priority,
    pick_by_priority,
    pick_fifo,
    pick_next,
)
from ossim.kernel_syscalls import MemoryResponse, Syscalls


class FakeMemory:
    def __init__(self, create_response=MemoryResponse.SUCCESS):
        self.create_response = create_response
        self.calls = []

    def create_process(self, pid, size, path):
        self.calls.append(("create_process", pid, size, path))
        return self.create_response

    def finish_process(self, pid):
        self.calls.append(("finish_process", pid))
        return MemoryResponse.SUCCESS

    def create_thread(self, pid, tid, path):
        self.calls.append(("create_thread", pid, tid, path))
        return MemoryResponse.SUCCESS

    def finish_thread(self, pid, tid):
        self.calls.append(("finish_thread", pid, tid))
        return MemoryResponse.SUCCESS

    def dump_memory(self, pid, tid):
        self.calls.append(("dump_memory", pid, tid))
        return MemoryResponse.SUCCESS


class ScriptedCpu:
    def __init__(self, script):
        self.script = list(script)
        self.dispatched = []
        self.interrupts = 0
        self.done = threading.Event()

    def dispatch(self, pid, tid):
        self.dispatched.append((pid, tid))
        item = self.script.pop(0)
        if not self.script:
            self.done.set()
        if isinstance(item, Exception):
            raise item
        reason, params = item
        return EvictionReport(pid, tid, reason, tuple(params))

    def interrupt(self):
        self.interrupts += 1


class WaitingCpu:
    def __init__(self):
        self.signal = threading.Event()
        self.interrupts = 0

    def dispatch(self, pid, tid):
        self.signal.wait(5)
        reason = EvictionReason.INTERRUPCION if self.signal.is_set() else EvictionReason.M_PROCESS_EXIT
        return EvictionReport(pid, tid, reason)

    def interrupt(self):
        self.interrupts += 1
        self.signal.set()


def make_kernel():
    return Kernel(clock=itertools.count().__next__)


def ready_process(kernel, priority=0, size=16, path="prog"):
    process = kernel.create_process(path, size, priority)
    kernel.new_queue.remove(process)
    process.state = ThreadState.READY
    kernel.enqueue_ready(process.threads[0])
    return process


def make_short(kernel, script, algorithm="FIFO", memory=None):
    memory = memory or FakeMemory()
    cpu = ScriptedCpu(script)
    sched = ShortTermScheduler(kernel, Syscalls(kernel, memory), cpu, algorithm=algorithm, quantum_ms=0)
    return sched, cpu, memory


def tcb(priority, ready_since):
    return Tcb(pid=0, tid=0, priority=priority, path="p", ready_since=ready_since)


def test_has_higher_priority_lower_number_wins():
    assert has_higher_priority(tcb(3, 0), tcb(1, 5)) is True
    assert has_higher_priority(tcb(1, 5), tcb(3, 0)) is False


def test_has_higher_priority_tie_goes_to_longer_wait():
    assert has_higher_priority(tcb(2, 5), tcb(2, 1)) is True
    assert has_higher_priority(tcb(2, 1), tcb(2, 5)) is False
    assert has_higher_priority(tcb(2, 1), tcb(2, 1)) is False


def test_pick_fifo_takes_oldest_and_removes_it():
    kernel = make_kernel()
    first = ready_process(kernel, priority=5)
    second = ready_process(kernel, priority=0)
    assert pick_fifo(kernel) is first.threads[0]
    assert kernel.ready_queue == [second.threads[0]]


def test_pick_on_empty_queue_returns_none():
    kernel = make_kernel()
    assert pick_fifo(kernel) is None
    assert pick_by_priority(kernel) is None


def test_pick_by_priority_prefers_lowest_number_then_oldest():
    kernel = make_kernel()
    low = ready_process(kernel, priority=3)
    high_old = ready_process(kernel, priority=1)
    high_new = ready_process(kernel, priority=1)
    assert pick_by_priority(kernel) is high_old.threads[0]
    assert pick_by_priority(kernel) is high_new.threads[0]
    assert pick_by_priority(kernel) is low.threads[0]


def test_pick_next_is_case_insensitive_and_cmn_uses_priority():
    kernel = make_kernel()
    a = ready_process(kernel, priority=4)
    b = ready_process(kernel, priority=1)
    assert pick_next(kernel, "cmn") is b.threads[0]
    assert pick_next(kernel, "fifo") is a.threads[0]


def test_pick_next_unknown_algorithm_ends_kernel():
    kernel = make_kernel()
    ready_process(kernel)
    assert pick_next(kernel, "LOTTERY") is None
    assert kernel.finished is True
    assert len(kernel.ready_queue) == 1


def test_scheduler_without_algorithm_or_config_raises():
    kernel = make_kernel()
    with pytest.raises(ValueError):
        ShortTermScheduler(kernel, Syscalls(kernel, FakeMemory()), ScriptedCpu([]))


def test_run_once_empty_ready_returns_none():
    kernel = make_kernel()
    sched, cpu, _ = make_short(kernel, [])
    assert sched.run_once() is None
    assert cpu.dispatched == []


def test_mutex_syscalls_keep_thread_on_cpu_until_interrupt():
    kernel = make_kernel()
    process = ready_process(kernel)
    script = [
        (EvictionReason.M_MUTEX_CREATE, ("m",)),
        (EvictionReason.M_MUTEX_LOCK, ("m",)),
        (EvictionReason.INTERRUPCION, ()),
    ]
    sched, cpu, _ = make_short(kernel, script)
    sched.run_once()
    assert len(cpu.dispatched) == 3
    mutex = kernel.find_mutex("M", process)
    assert mutex.owner == 0
    assert kernel.ready_queue == [process.threads[0]]
    assert process.threads[0].state is ThreadState.READY


def test_protocol_error_ends_process():
    kernel = make_kernel()
    process = ready_process(kernel)
    sched, _, memory = make_short(kernel, [ProtocolError("bad")])
    sched.run_once()
    assert ("finish_process", process.pid) in memory.calls
    assert kernel.find_process(process.pid) is None


def test_segfault_ends_process():
    kernel = make_kernel()
    process = ready_process(kernel)
    sched, _, _ = make_short(kernel, [(EvictionReason.SEGFAULT, ())])
    sched.run_once()
    assert kernel.find_process(process.pid) is None


def test_process_create_parameters_are_path_size_priority():
    kernel = make_kernel()
    parent = ready_process(kernel)
    script = [
        (EvictionReason.M_PROCESS_CREATE, ("child", "64", "2")),
        (EvictionReason.INTERRUPCION, ()),
    ]
    sched, _, _ = make_short(kernel, script)
    sched.run_once()
    child = kernel.new_queue[0]
    assert child.pid != parent.pid
    assert child.size == 64
    assert child.threads[0].priority == 2
    assert child.threads[0].path == "child"


def test_thread_create_makes_new_thread_ready():
    kernel = make_kernel()
    process = ready_process(kernel)
    script = [
        (EvictionReason.M_THREAD_CREATE, ("worker", "1")),
        (EvictionReason.INTERRUPCION, ()),
    ]
    sched, _, memory = make_short(kernel, script)
    sched.run_once()
    assert ("create_thread", process.pid, 1, "worker") in memory.calls
    assert [t.tid for t in kernel.ready_queue] == [1, 0]


def test_pending_eviction_sends_thread_back_without_dispatch():
    kernel = make_kernel()
    process = ready_process(kernel)
    sched, cpu, _ = make_short(kernel, [])
    kernel.evict_requested = True
    sched.run_once()
    assert cpu.dispatched == []
    assert kernel.evict_requested is False
    assert kernel.ready_queue == [process.threads[0]]


def test_finished_kernel_sends_thread_back_without_dispatch():
    kernel = make_kernel()
    process = ready_process(kernel)
    sched, cpu, _ = make_short(kernel, [])
    kernel.finished = True
    sched.run_once()
    assert cpu.dispatched == []
    assert kernel.ready_queue == [process.threads[0]]


def test_round_robin_quantum_interrupts_cpu():
    kernel = make_kernel()
    process = ready_process(kernel)
    cpu = WaitingCpu()
    sched = ShortTermScheduler(
        kernel, Syscalls(kernel, FakeMemory()), cpu, algorithm="CMN", quantum_ms=10
    )
    sched.run_once()
    assert cpu.interrupts == 1
    assert kernel.ready_queue == [process.threads[0]]
    assert kernel.executing_on_cpu is False


def test_short_term_start_and_stop():
    kernel = make_kernel()
    process = ready_process(kernel)
    sched, cpu, _ = make_short(kernel, [(EvictionReason.M_PROCESS_EXIT, ())])
    sched.start()
    assert cpu.done.wait(5)
    sched.stop()
    assert kernel.short_term_stopped is True
    assert kernel.find_process(process.pid) is None


def test_admit_next_success_moves_main_thread_to_ready():
    kernel = make_kernel()
    process = kernel.create_process("prog", 32, 1)
    memory = FakeMemory()
    response = LongTermScheduler(kernel, memory).admit_next()
    assert response is MemoryResponse.SUCCESS
    assert memory.calls == [("create_process", process.pid, 32, "prog")]
    assert kernel.new_queue == []
    assert process.state is ThreadState.READY
    assert kernel.ready_queue == [process.threads[0]]


def test_admit_next_path_error_drops_process():
    kernel = make_kernel()
    process = kernel.create_process("missing", 32, 0)
    response = LongTermScheduler(kernel, FakeMemory(MemoryResponse.PATH_ERROR)).admit_next()
    assert response is MemoryResponse.PATH_ERROR
    assert kernel.find_process(process.pid) is None
    assert kernel.new_queue == []
    assert kernel.ready_queue == []


def test_admit_next_size_error_pauses_admission():
    kernel = make_kernel()
    process = kernel.create_process("big", 4096, 0)
    response = LongTermScheduler(kernel, FakeMemory(MemoryResponse.SIZE_ERROR)).admit_next()
    assert response is MemoryResponse.SIZE_ERROR
    assert kernel.long_term_enabled is False
    assert kernel.new_queue == [process]


def test_admit_next_empty_queue_returns_none():
    assert LongTermScheduler(make_kernel(), FakeMemory()).admit_next() is None


def test_long_term_start_and_stop():
    kernel = make_kernel()
    process = kernel.create_process("prog", 8, 0)
    sched = LongTermScheduler(kernel, FakeMemory())
    sched.start()
    deadline = time.monotonic() + 5
    while not kernel.ready_queue and time.monotonic() < deadline:
        time.sleep(0.01)
    sched.stop()
    assert kernel.ready_queue == [process.threads[0]]
    assert kernel.long_term_stopped is True