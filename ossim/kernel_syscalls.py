"""System calls the kernel serves for the running thread, and its requests to memory."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum

from typing import Protocol

from .kernel_model import BlockReason, Kernel, Pcb, Tcb, ThreadState, state_name

logger = logging.getLogger(__name__)


class MemoryResponse(Enum):
    """Answer of the memory module to a kernel request."""

    SUCCESS = "SUCCESS"
    MAX_SIZE_ERROR = "MAX_SIZE_ERROR"
    PATH_ERROR = "PATH_ERROR"
    SIZE_ERROR = "SIZE_ERROR"
    ERROR = "ERROR"


class KernelMemoryPort(Protocol):
    """What the kernel asks of the memory module; every call answers a MemoryResponse."""

    def create_process(self, pid: int, size: int, path: str) -> MemoryResponse:
        """Reserve memory for a process and load its main thread's program."""
        ...

    def finish_process(self, pid: int) -> MemoryResponse:
        """Free everything memory holds for a process."""
        ...

    def create_thread(self, pid: int, tid: int, path: str) -> MemoryResponse:
        """Load the program of a new thread."""
        ...

    def finish_thread(self, pid: int, tid: int) -> MemoryResponse:
        """Drop a thread's context and program."""
        ...

    def dump_memory(self, pid: int, tid: int) -> MemoryResponse:
        """Dump the process memory to the filesystem."""
        ...


class Syscalls:
    """Syscall handlers acting on the kernel's running thread."""

    def __init__(
        self,
        kernel: Kernel,
        memory: KernelMemoryPort,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.kernel = kernel
        self.memory = memory
        self._sleep = sleep
        self._background: list[threading.Thread] = []
        self._background_lock = threading.Lock()

    def _current(self) -> Tcb:
        thread = self.kernel.running
        if thread is None:
            raise RuntimeError("no thread is running")
        return thread

    def _process_of(self, thread: Tcb) -> Pcb:
        process = self.kernel.find_process(thread.pid)
        if process is None:
            raise LookupError(f"process {thread.pid} does not exist")
        return process

    def _spawn(self, target: Callable[..., None], *args: object) -> None:
        worker = threading.Thread(target=target, args=args, daemon=True)
        with self._background_lock:
            self._background = [t for t in self._background if t.is_alive()]
            self._background.append(worker)
        worker.start()

    def wait_background(self) -> None:
        """Wait until every pending IO and dump request has finished."""
        while True:
            with self._background_lock:
                pending = [t for t in self._background if t.is_alive()]
                self._background = pending
            if not pending:
                return
            for worker in pending:
                worker.join()

    def interrupt(self) -> None:
        """The running thread used up its quantum: back to READY."""
        thread = self._current()
        self.kernel.dequeue_current(thread)
        self.kernel.enqueue_ready(thread)
        logger.info(
            "## (<PID>: %d - <TID>: %d) finalizó por interrupción y pasa a READY",
            thread.pid,
            thread.tid,
        )

    def _dump_worker(self, thread: Tcb) -> None:
        response = self.memory.dump_memory(thread.pid, thread.tid)
        if response is MemoryResponse.SUCCESS:
            self.kernel.dequeue_current(thread)
            self.kernel.enqueue_ready(thread)
        else:
            logger.error(
                "Error al realizar el dump de memoria del hilo <PID>: %d - <TID>: %d",
                thread.pid,
                thread.tid,
            )
            self.process_exit_thread(thread)

    def dump_memory(self) -> None:
        """Block the running thread while memory is dumped in the background."""
        thread = self._current()
        self.kernel.dequeue_current(thread)
        self.kernel.enqueue_blocked(thread, BlockReason.DUMP_MEMORY)
        self._spawn(self._dump_worker, thread)

    def _io_worker(self, thread: Tcb, duration_ms: int) -> None:
        with self.kernel.io_lock:
            self._sleep(duration_ms / 1000)
        self.kernel.dequeue_current(thread)
        self.kernel.enqueue_ready(thread)
        logger.info("## (%d:%d) finalizó IO y pasa a READY", thread.pid, thread.tid)

    def io_request(self, duration_ms: int) -> None:
        """Block the running thread for an IO of duration_ms; one IO at a time."""
        thread = self._current()
        self.kernel.dequeue_current(thread)
        self.kernel.enqueue_blocked(thread, BlockReason.IO)
        self._spawn(self._io_worker, thread, duration_ms)

    def start_process(self, path: str, priority: int, size: int) -> Pcb:
        """Create a process in NEW; the long-term scheduler admits it later."""
        process = self.kernel.create_process(path, size, priority)
        logger.info("## (%d:0) Se crea el proceso - Estado: NEW", process.pid)
        return process

    def thread_create(self, path: str, priority: int) -> Tcb:
        """Create a thread in the running thread's process and make it READY."""
        process = self._process_of(self._current())
        new_thread = self.kernel.create_thread(process, path, priority)
        response = self.memory.create_thread(new_thread.pid, new_thread.tid, path)
        if response is not MemoryResponse.SUCCESS:
            logger.error(
                "Error al crear el hilo en memoria <PID>: %d - <TID>: %d",
                new_thread.pid,
                new_thread.tid,
            )
            self.process_exit_thread(new_thread)
            return new_thread
        logger.info("## (%d:%d) - Se crea el hilo - Estado: READY", new_thread.pid, new_thread.tid)
        self.kernel.enqueue_ready(new_thread)
        return new_thread

    def thread_join(self, tid: int) -> bool:
        """Block the running thread until tid ends; True when it may keep running."""
        thread = self._current()
        process = self._process_of(thread)
        target = self.kernel.find_thread(process, tid)
        if target is None:
            logger.warning(
                "El hilo bloqueador %d no existe en el proceso <PID>: %d", tid, thread.pid
            )
            return True
        if target.state is ThreadState.EXIT:
            return True
        self.kernel.dequeue_current(thread)
        thread.blocker_tid = tid
        self.kernel.enqueue_blocked(thread, BlockReason.THREAD_JOIN)
        return False

    def thread_cancel(self, tid: int) -> None:
        """End thread tid of the running thread's process."""
        thread = self._current()
        process = self._process_of(thread)
        cancelled = self.kernel.find_thread(process, tid)
        if cancelled is None:
            logger.warning(
                "El hilo cancelado %d no existe en el proceso <PID>: %d", tid, thread.pid
            )
            return
        self.kernel.dequeue_current(cancelled)
        logger.info(
            "Proceso <PID>: %d - <Estado>: %s", cancelled.pid, state_name(cancelled.state)
        )
        response = self.memory.finish_thread(cancelled.pid, cancelled.tid)
        if response is not MemoryResponse.SUCCESS:
            logger.error(
                "Error al finalizar el hilo en memoria <PID>: %d - <TID>: %d",
                cancelled.pid,
                cancelled.tid,
            )
        self.kernel.release_thread(cancelled)

    def mutex_create(self, name: str) -> None:
        """Create a free mutex in the running thread's process."""
        process = self._process_of(self._current())
        self.kernel.create_mutex(name, process)

    def mutex_lock(self, name: str) -> bool:
        """Take a mutex; False when the running thread had to block for it."""
        thread = self._current()
        process = self._process_of(thread)
        mutex = self.kernel.find_mutex(name, process)
        if mutex is None:
            logger.warning("El recurso %s no existe en el proceso <PID>: %d", name, thread.pid)
            return True
        if mutex.owner is None:
            mutex.owner = thread.tid
            logger.info(
                "## MUTEX_LOCK: Recurso '%s' asignado a <PID>: %d - <TID>: %d",
                name,
                thread.pid,
                thread.tid,
            )
            return True
        self.kernel.dequeue_current(thread)
        self.kernel.enqueue_blocked(thread, BlockReason.MUTEX)
        logger.info(
            "## MUTEX_LOCK: Recurso '%s' bloqueado por <PID>: %d - <TID>: %d",
            name,
            thread.pid,
            thread.tid,
        )
        mutex.waiters.append(thread)
        return False

    def mutex_unlock(self, name: str) -> None:
        """Release a mutex held by the running thread, handing it to the first waiter."""
        thread = self._current()
        process = self._process_of(thread)
        mutex = self.kernel.find_mutex(name, process)
        if mutex is None:
            logger.warning("El recurso %s no existe en el proceso <PID>: %d", name, thread.pid)
            return
        if mutex.owner != thread.tid:
            logger.warning(
                "El hilo <PID>: %d - <TID>: %d no es el dueño del recurso %s",
                thread.pid,
                thread.tid,
                name,
            )
            return
        if mutex.waiters:
            new_owner = mutex.waiters.pop(0)
            mutex.owner = new_owner.tid
            logger.info(
                "## MUTEX_UNLOCK: Recurso '%s' asignado a <PID>: %d - <TID>: %d",
                name,
                new_owner.pid,
                new_owner.tid,
            )
            self.kernel.dequeue_current(new_owner)
            self.kernel.enqueue_ready(new_owner)
        else:
            mutex.owner = None
            logger.info("## MUTEX_UNLOCK: No hay hilos a asignar Recurso: '%s'", name)

    def thread_exit(self) -> None:
        """End the running thread; the main thread (tid 0) ends its whole process."""
        thread = self._current()
        self.kernel.dequeue_current(thread)
        if thread.tid == 0:
            self.process_exit_thread(thread)
            return
        response = self.memory.finish_thread(thread.pid, thread.tid)
        if response is MemoryResponse.SUCCESS:
            self.kernel.release_thread(thread)
        else:
            logger.error(
                "Error al finalizar el hilo en memoria <PID>: %d - <TID>: %d",
                thread.pid,
                thread.tid,
            )

    def process_exit(self) -> None:
        """End the process of the running thread."""
        self.process_exit_thread(self._current())

    def process_exit_thread(self, thread: Tcb) -> None:
        """End the process a thread belongs to and re-enable admission of new processes."""
        process = self._process_of(thread)
        self.kernel.dequeue_current(thread)
        response = self.memory.finish_process(process.pid)
        if response is MemoryResponse.SUCCESS:
            self.kernel.release_process(process)
            self.kernel.long_term_enabled = True
        else:
            logger.error("Error al finalizar el proceso en memoria <PID>: %d", process.pid)