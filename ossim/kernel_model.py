"""Kernel bookkeeping: processes, threads, mutexes and the scheduling queues."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, IntEnum

from .config import KernelConfig
from .cpu_context import EvictionReason

logger = logging.getLogger(__name__)


class ThreadState(IntEnum):
    """Scheduling state of a process or thread."""

    NEW = 0
    READY = 1
    BLOCKED = 2
    EXEC = 3
    EXIT = 4


class BlockReason(IntEnum):
    """Why a thread sits in the blocked queue."""

    NONE = 0
    THREAD_JOIN = 1
    MUTEX = 2
    IO = 3
    DUMP_MEMORY = 4


_STATE_NAMES = {
    ThreadState.NEW: "NEW",
    ThreadState.READY: "READY",
    ThreadState.EXEC: "EXEC",
    ThreadState.BLOCKED: "BLOCKED",
    ThreadState.EXIT: "EXIT",
}

_BLOCK_REASON_NAMES = {
    BlockReason.NONE: "NONE",
    BlockReason.THREAD_JOIN: "PTHREAD_JOIN",
    BlockReason.MUTEX: "MUTEX",
    BlockReason.IO: "IO",
    BlockReason.DUMP_MEMORY: "DUMP_MEMORY",
}

_SYSCALL_NAMES = {
    EvictionReason.M_DUMP_MEMORY: "DUMP_MEMORY",
    EvictionReason.M_IO: "IO",
    EvictionReason.M_PROCESS_CREATE: "PROCESS_CREATE",
    EvictionReason.M_PROCESS_EXIT: "PROCESS_EXIT",
    EvictionReason.M_THREAD_CREATE: "THREAD_CREATE",
    EvictionReason.M_THREAD_JOIN: "THREAD_JOIN",
    EvictionReason.M_THREAD_CANCEL: "THREAD_CANCEL",
    EvictionReason.M_THREAD_EXIT: "THREAD_EXIT",
    EvictionReason.M_MUTEX_CREATE: "MUTEX_CREATE",
    EvictionReason.M_MUTEX_LOCK: "MUTEX_LOCK",
    EvictionReason.M_MUTEX_UNLOCK: "MUTEX_UNLOCK",
    EvictionReason.CONTINUE: "CONTINUE",
    EvictionReason.INTERRUPCION: "INTERRUPCION",
    EvictionReason.SEGFAULT: "SEGFAULT",
}


def state_name(state: ThreadState) -> str:
    """Printable name of a scheduling state."""
    return _STATE_NAMES[ThreadState(state)]


def block_reason_name(reason: BlockReason) -> str:
    """Printable name of a block reason, as the kernel logs it."""
    return _BLOCK_REASON_NAMES[BlockReason(reason)]


def syscall_name(reason: int | Enum) -> str:
    """Name of the syscall behind an eviction reason; "NO DEFINIDO" when unknown."""
    try:
        return _SYSCALL_NAMES[EvictionReason(int(reason))]
    except (ValueError, TypeError, KeyError):
        return "NO DEFINIDO"


@dataclass(eq=False)
class Tcb:
    """Thread control block."""

    pid: int
    tid: int
    priority: int
    path: str
    state: ThreadState = ThreadState.READY
    ready_since: float | None = None
    blocker_tid: int | None = None
    block_reason: BlockReason = BlockReason.NONE


@dataclass(eq=False)
class Mutex:
    """A user-level mutex of a process; owner is a tid or None when free."""

    name: str
    waiters: list[Tcb] = field(default_factory=list)
    owner: int | None = None


@dataclass(eq=False)
class Pcb:
    """Process control block."""

    pid: int
    size: int
    threads: list[Tcb] = field(default_factory=list)
    mutexes: list[Mutex] = field(default_factory=list)
    state: ThreadState = ThreadState.NEW
    tid_counter: int = 0


def _discard(items: list, item: object) -> None:
    try:
        items.remove(item)
    except ValueError:
        pass


class Kernel:
    """All processes and queues the kernel schedules over, with their locks and signals."""

    def __init__(
        self,
        config: KernelConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.clock = clock

        self.new_queue: list[Pcb] = []
        self.ready_queue: list[Tcb] = []
        self.blocked_queue: list[Tcb] = []
        self.running: Tcb | None = None
        self.processes: list[Pcb] = []

        self.new_lock = threading.RLock()
        self.ready_lock = threading.RLock()
        self.blocked_lock = threading.RLock()
        self.io_lock = threading.Lock()

        self.new_available = threading.Semaphore(0)
        self.ready_available = threading.Semaphore(0)
        self.blocked_available = threading.Semaphore(0)

        self.pid_counter = 0
        self.long_term_enabled = True
        self.executing_on_cpu = False
        self.evict_requested = False
        self.finished = False
        self.short_term_stopped = False
        self.long_term_stopped = False

    # Creation

    def create_process(self, path: str, size: int, priority: int) -> Pcb:
        """Create a process with its main thread (tid 0) and put it in NEW."""
        process = Pcb(pid=self.pid_counter, size=size)
        self.pid_counter += 1
        self.processes.append(process)
        self.create_thread(process, path, priority)
        self.enqueue_new(process)
        return process

    def create_thread(self, process: Pcb, path: str, priority: int) -> Tcb:
        """Add a thread with the next tid to a process; it is not queued."""
        thread = Tcb(pid=process.pid, tid=process.tid_counter, priority=priority, path=path)
        process.tid_counter += 1
        process.threads.append(thread)
        return thread

    def create_mutex(self, name: str, process: Pcb) -> Mutex:
        """Add a free mutex to a process."""
        mutex = Mutex(name=name)
        process.mutexes.append(mutex)
        return mutex

    # Release

    def release_process(self, process: Pcb) -> None:
        """Remove a process, all its threads and its mutexes from the system."""
        logger.info("## Finaliza el proceso %d", process.pid)
        threads = list(process.threads)
        for thread in threads:
            self.dequeue_current(thread)
            thread.state = ThreadState.EXIT
        for thread in threads:
            self.release_thread(thread)
        process.threads.clear()
        process.mutexes.clear()
        process.state = ThreadState.EXIT
        with self.new_lock:
            _discard(self.new_queue, process)
        _discard(self.processes, process)

    def release_thread(self, thread: Tcb) -> None:
        """Remove a thread, wake its joiners and hand its mutexes to the next waiter."""
        logger.info("## (%d:%d) Finaliza el hilo", thread.pid, thread.tid)
        process = self.find_process(thread.pid)
        if process is not None:
            _discard(process.threads, thread)

        with self.blocked_lock:
            joiners = [
                blocked
                for blocked in self.blocked_queue
                if blocked.pid == thread.pid
                and blocked.blocker_tid == thread.tid
                and blocked.block_reason is BlockReason.THREAD_JOIN
            ]
        for joiner in joiners:
            joiner.blocker_tid = None
            joiner.block_reason = BlockReason.NONE
            self.dequeue_current(joiner)
            self.enqueue_ready(joiner)

        if process is not None:
            for mutex in process.mutexes:
                _discard(mutex.waiters, thread)
                if mutex.owner != thread.tid:
                    continue
                if mutex.waiters:
                    new_owner = mutex.waiters.pop(0)
                    mutex.owner = new_owner.tid
                    if new_owner.state is not ThreadState.EXIT:
                        self.dequeue_current(new_owner)
                        self.enqueue_ready(new_owner)
                else:
                    mutex.owner = None

        thread.state = ThreadState.EXIT
        thread.ready_since = None

    # Lookup

    def find_process(self, pid: int) -> Pcb | None:
        """Process with the given pid, or None."""
        return next((p for p in self.processes if p.pid == pid), None)

    def find_thread(self, process: Pcb, tid: int) -> Tcb | None:
        """Thread of a process with the given tid, or None."""
        return next((t for t in process.threads if t.tid == tid), None)

    def find_mutex(self, name: str, process: Pcb) -> Mutex | None:
        """Mutex of a process by name, ignoring case, or None."""
        wanted = name.casefold()
        return next((m for m in process.mutexes if m.name.casefold() == wanted), None)

    # Queues

    def enqueue_new(self, process: Pcb) -> None:
        """Append a process to NEW and signal the long-term scheduler."""
        with self.new_lock:
            self.new_queue.append(process)
            process.state = ThreadState.NEW
        logger.info("Proceso <PID>: %d - <Estado>: %s", process.pid, state_name(process.state))
        self.new_available.release()

    def enqueue_ready(self, thread: Tcb) -> None:
        """Append a thread to READY, stamp its arrival and signal the short-term scheduler."""
        with self.ready_lock:
            self.ready_queue.append(thread)
            thread.state = ThreadState.READY
            thread.ready_since = self.clock()
        logger.info("Proceso <PID>: %d - <Estado>: %s", thread.pid, state_name(thread.state))
        self.ready_available.release()

    def enqueue_blocked(self, thread: Tcb, reason: BlockReason) -> None:
        """Append a thread to BLOCKED with the reason it waits for."""
        with self.blocked_lock:
            self.blocked_queue.append(thread)
            thread.state = ThreadState.BLOCKED
            thread.block_reason = BlockReason(reason)
        logger.info(
            "## (%d:%d)- Bloqueado por: <%s>",
            thread.pid,
            thread.tid,
            block_reason_name(thread.block_reason),
        )
        self.blocked_available.release()

    def dequeue_current(self, thread: Tcb) -> None:
        """Take a thread out of whatever queue its state puts it in."""
        state = thread.state
        if state is ThreadState.NEW:
            with self.new_lock:
                _discard(self.new_queue, thread)
        elif state is ThreadState.READY:
            with self.ready_lock:
                _discard(self.ready_queue, thread)
        elif state is ThreadState.EXEC:
            if self.running is thread:
                self.running = None
        elif state is ThreadState.BLOCKED:
            with self.blocked_lock:
                _discard(self.blocked_queue, thread)