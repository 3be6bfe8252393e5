"""Short- and long-term schedulers of the kernel and the algorithms they pick threads with."""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable
from typing import Protocol

from .cpu_context import EvictionReason
from .cpu_core import EvictionReport, ProtocolError
from .kernel_model import Kernel, Tcb, ThreadState, syscall_name
from .kernel_syscalls import KernelMemoryPort, MemoryResponse, Syscalls

logger = logging.getLogger(__name__)

_LEADING_INT = re.compile(r"\s*([+-]?)(\d+)")
_PRIORITY_ALGORITHMS = ("PRIORIDADES", "CMN")
_ROUND_ROBIN = "CMN"


class CpuPort(Protocol):
    """What the kernel needs from the CPU module."""

    def dispatch(self, pid: int, tid: int) -> EvictionReport:
        """Run a thread until it leaves the CPU; ProtocolError on an unexpected answer."""
        ...

    def interrupt(self) -> None:
        """Send an end-of-quantum interrupt."""
        ...


def _atoi(text: str) -> int:
    match = _LEADING_INT.match(text)
    if match is None:
        return 0
    value = int(match.group(2))
    return -value if match.group(1) == "-" else value


def _waiting_since(thread: Tcb) -> float:
    return float("inf") if thread.ready_since is None else thread.ready_since


def has_higher_priority(current: Tcb, candidate: Tcb) -> bool:
    """Whether candidate goes before current: lower priority number, then longer wait."""
    if candidate.priority < current.priority:
        return True
    if candidate.priority == current.priority:
        return _waiting_since(candidate) < _waiting_since(current)
    return False


def pick_fifo(kernel: Kernel) -> Tcb | None:
    """Take the oldest thread in READY, or None when READY is empty."""
    with kernel.ready_lock:
        if not kernel.ready_queue:
            return None
        return kernel.ready_queue.pop(0)


def pick_by_priority(kernel: Kernel) -> Tcb | None:
    """Take the READY thread with the best priority, or None when READY is empty."""
    with kernel.ready_lock:
        if not kernel.ready_queue:
            return None
        best = kernel.ready_queue[0]
        for candidate in kernel.ready_queue[1:]:
            if has_higher_priority(best, candidate):
                best = candidate
        kernel.ready_queue.remove(best)
        return best


def pick_next(kernel: Kernel, algorithm: str) -> Tcb | None:
    """Pick a thread with the named algorithm; an unknown name ends the kernel."""
    name = algorithm.upper()
    if name == "FIFO":
        return pick_fifo(kernel)
    if name in _PRIORITY_ALGORITHMS:
        return pick_by_priority(kernel)
    logger.info("Algoritmo incorrecto")
    kernel.finished = True
    return None


class ShortTermScheduler:
    """Sends READY threads to the CPU and serves the syscalls they come back with."""

    def __init__(
        self,
        kernel: Kernel,
        syscalls: Syscalls,
        cpu: CpuPort,
        algorithm: str | None = None,
        quantum_ms: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if algorithm is None:
            if kernel.config is None:
                raise ValueError("no scheduling algorithm given")
            algorithm = kernel.config.scheduling_algorithm
        if quantum_ms is None:
            quantum_ms = kernel.config.quantum if kernel.config is not None else 0
        self.kernel = kernel
        self.syscalls = syscalls
        self.cpu = cpu
        self.algorithm = algorithm
        self.quantum_ms = quantum_ms
        self._sleep = sleep
        self._worker: threading.Thread | None = None

    @property
    def round_robin(self) -> bool:
        return self.algorithm.upper() == _ROUND_ROBIN

    def _quantum_timer(self, thread: Tcb) -> None:
        kernel = self.kernel
        pid, tid = thread.pid, thread.tid
        self._sleep(self.quantum_ms / 1000)
        running = kernel.running
        if (
            running is not None
            and kernel.executing_on_cpu
            and running.pid == pid
            and running.tid == tid
        ):
            kernel.evict_requested = True
            logger.warning("## (%d:%d) - Desalojado por fin de Quantum", pid, tid)
            self.cpu.interrupt()

    def run_once(self) -> Tcb | None:
        """Schedule one READY thread and run it; the thread, or None when none ran."""
        kernel = self.kernel
        if not kernel.ready_queue:
            return None
        thread = pick_next(kernel, self.algorithm)
        if thread is None:
            logger.error("No se pudo planificar el hilo")
            if kernel.running is not None:
                self.syscalls.process_exit_thread(kernel.running)
            return None
        thread.state = ThreadState.EXEC
        kernel.running = thread
        logger.debug(
            "Proceso <PID>: %d - Hilo <TID>: %d - <Estado Anterior>: READY - <Estado Nuevo>: EXEC",
            thread.pid,
            thread.tid,
        )
        timer: threading.Thread | None = None
        if self.round_robin:
            kernel.executing_on_cpu = True
            timer = threading.Thread(target=self._quantum_timer, args=(thread,), daemon=True)
            timer.start()
        self.execute_thread()
        kernel.executing_on_cpu = False
        kernel.running = None
        kernel.evict_requested = False
        if timer is not None:
            timer.join()
        return thread

    def _may_continue(self, thread: Tcb) -> bool:
        kernel = self.kernel
        if kernel.finished or kernel.short_term_stopped:
            kernel.dequeue_current(thread)
            kernel.enqueue_ready(thread)
            return False
        if kernel.evict_requested:
            logger.info("Desalojado por fin de Quantum (%d:%d)", thread.pid, thread.tid)
            kernel.evict_requested = False
            kernel.dequeue_current(thread)
            kernel.enqueue_ready(thread)
            return False
        return True

    def _serve(self, report: EvictionReport) -> bool:
        """Handle a syscall; True when the thread goes straight back to the CPU."""
        reason = report.reason
        params = report.params
        calls = self.syscalls
        if reason is EvictionReason.INTERRUPCION:
            logger.debug("El hilo fue desalojado por una interrupcion")
            calls.interrupt()
        elif reason is EvictionReason.M_DUMP_MEMORY:
            calls.dump_memory()
        elif reason is EvictionReason.M_IO:
            calls.io_request(_atoi(params[0]))
        elif reason is EvictionReason.M_PROCESS_CREATE:
            calls.start_process(params[0], _atoi(params[2]), _atoi(params[1]))
            return True
        elif reason is EvictionReason.M_THREAD_CREATE:
            calls.thread_create(params[0], _atoi(params[1]))
            return True
        elif reason is EvictionReason.M_THREAD_JOIN:
            return calls.thread_join(_atoi(params[0]))
        elif reason is EvictionReason.M_THREAD_CANCEL:
            calls.thread_cancel(_atoi(params[0]))
        elif reason is EvictionReason.M_MUTEX_CREATE:
            calls.mutex_create(params[0])
            return True
        elif reason is EvictionReason.M_MUTEX_LOCK:
            return calls.mutex_lock(params[0])
        elif reason is EvictionReason.M_MUTEX_UNLOCK:
            calls.mutex_unlock(params[0])
            return True
        elif reason is EvictionReason.M_THREAD_EXIT:
            calls.thread_exit()
        elif reason is EvictionReason.M_PROCESS_EXIT:
            calls.process_exit()
        else:
            logger.error("El motivo de desalojo no es valido: %d", int(reason))
            calls.process_exit()
        return False

    def execute_thread(self) -> None:
        """Run the current thread on the CPU, serving syscalls until it must leave."""
        kernel = self.kernel
        while True:
            thread = kernel.running
            if thread is None or not self._may_continue(thread):
                return
            logger.debug("Ejecutando hilo <PID>: %d - <TID>: %d", thread.pid, thread.tid)
            try:
                report = self.cpu.dispatch(thread.pid, thread.tid)
            except ProtocolError:
                logger.error(
                    "Error en la respuesta de la CPU - PID: %d - TID: %d", thread.pid, thread.tid
                )
                self.syscalls.process_exit()
                return
            reason = report.reason
            if reason not in (EvictionReason.SEGFAULT, EvictionReason.CONTINUE):
                logger.info(
                    "## (%d:%d) - Solicitó syscall: <%s>",
                    thread.pid,
                    thread.tid,
                    syscall_name(reason),
                )
            else:
                logger.debug("Motivo desalojo: %s", syscall_name(reason))
            if not self._serve(report):
                return

    def _loop(self) -> None:
        kernel = self.kernel
        while not kernel.finished and not kernel.short_term_stopped:
            kernel.ready_available.acquire()
            if kernel.finished or kernel.short_term_stopped:
                break
            self.run_once()

    def start(self) -> None:
        """Start scheduling in a background thread."""
        logger.info("Inicializando planificador de corto plazo")
        self.kernel.short_term_stopped = False
        self._worker = threading.Thread(target=self._loop, daemon=True)
        self._worker.start()

    def stop(self) -> None:
        """Stop scheduling and wait for the background thread."""
        self.kernel.short_term_stopped = True
        self.kernel.ready_available.release()
        if self._worker is not None:
            self._worker.join()
            self._worker = None
        logger.info("Planificador de corto plazo finalizado")


class LongTermScheduler:
    """Admits NEW processes once memory has room for them."""

    def __init__(
        self,
        kernel: Kernel,
        memory: KernelMemoryPort,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = 1.0,
    ) -> None:
        self.kernel = kernel
        self.memory = memory
        self._sleep = sleep
        self.poll_interval = poll_interval
        self._worker: threading.Thread | None = None

    def admit_next(self) -> MemoryResponse | None:
        """Ask memory to create the first NEW process; its answer, or None when NEW is empty."""
        kernel = self.kernel
        with kernel.new_lock:
            if not kernel.new_queue:
                return None
            process = kernel.new_queue[0]
        thread = process.threads[0]
        response = self.memory.create_process(thread.pid, process.size, thread.path)
        if response is MemoryResponse.SUCCESS:
            logger.info("Proceso <PID>: %d - Creado en memoria", process.pid)
            with kernel.new_lock:
                if process in kernel.new_queue:
                    kernel.new_queue.remove(process)
            process.state = ThreadState.READY
            kernel.enqueue_ready(thread)
        elif response is MemoryResponse.SIZE_ERROR:
            logger.error(
                "Error al crear el proceso <PID>: %d - No hay espacio disponible actualmente",
                process.pid,
            )
            kernel.long_term_enabled = False
            kernel.new_available.release()
        else:
            logger.error("Error al crear el proceso <PID>: %d - %s", process.pid, response.value)
            with kernel.new_lock:
                if process in kernel.new_queue:
                    kernel.new_queue.remove(process)
            process.state = ThreadState.EXIT
            kernel.release_process(process)
        return response

    def _loop(self) -> None:
        kernel = self.kernel
        while not kernel.finished and not kernel.long_term_stopped:
            if not kernel.long_term_enabled:
                self._sleep(self.poll_interval)
                continue
            kernel.new_available.acquire()
            if kernel.finished or kernel.long_term_stopped:
                break
            self.admit_next()

    def start(self) -> None:
        """Start admitting processes in a background thread."""
        logger.info("Inicializando planificador de largo plazo")
        self.kernel.long_term_stopped = False
        self._worker = threading.Thread(target=self._loop, daemon=True)
        self._worker.start()

    def stop(self) -> None:
        """Stop admitting processes and wait for the background thread."""
        self.kernel.long_term_stopped = True
        self.kernel.new_available.release()
        if self._worker is not None:
            self._worker.join()
            self._worker = None
        logger.info("Planificador de largo plazo finalizado")