"""Instruction cycle of the CPU and its exchanges with memory and the kernel."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Mapping, Protocol

from .cpu_context import (
    REGISTER_NAMES,
    CpuContext,
    EvictionReason,
    InstructionType,
    decode_instruction_type,
    eviction_reason_text,
)

logger = logging.getLogger(__name__)

_UINT32_MASK = 0xFFFFFFFF
WORD_SIZE = 4
SEGFAULT_ADDRESS = _UINT32_MASK
"""Physical address the MMU yields for an out-of-bounds access."""

_LEADING_INT = re.compile(r"\s*([+-]?)(\d+)")

_ARITY = {
    InstructionType.SET: 2,
    InstructionType.READ_MEM: 2,
    InstructionType.WRITE_MEM: 2,
    InstructionType.SUM: 2,
    InstructionType.SUB: 2,
    InstructionType.JNZ: 2,
    InstructionType.LOG: 1,
    InstructionType.THREAD_EXIT: 0,
    InstructionType.PROCESS_EXIT: 0,
    InstructionType.DUMP_MEMORY: 0,
    InstructionType.IO: 1,
    InstructionType.PROCESS_CREATE: 3,
    InstructionType.THREAD_CREATE: 2,
    InstructionType.THREAD_JOIN: 1,
    InstructionType.THREAD_CANCEL: 1,
    InstructionType.MUTEX_CREATE: 1,
    InstructionType.MUTEX_LOCK: 1,
    InstructionType.MUTEX_UNLOCK: 1,
}

_SYSCALLS = {
    InstructionType.THREAD_EXIT: EvictionReason.M_THREAD_EXIT,
    InstructionType.PROCESS_EXIT: EvictionReason.M_PROCESS_EXIT,
    InstructionType.DUMP_MEMORY: EvictionReason.M_DUMP_MEMORY,
    InstructionType.IO: EvictionReason.M_IO,
    InstructionType.PROCESS_CREATE: EvictionReason.M_PROCESS_CREATE,
    InstructionType.THREAD_CREATE: EvictionReason.M_THREAD_CREATE,
    InstructionType.THREAD_JOIN: EvictionReason.M_THREAD_JOIN,
    InstructionType.THREAD_CANCEL: EvictionReason.M_THREAD_CANCEL,
    InstructionType.MUTEX_CREATE: EvictionReason.M_MUTEX_CREATE,
    InstructionType.MUTEX_LOCK: EvictionReason.M_MUTEX_LOCK,
    InstructionType.MUTEX_UNLOCK: EvictionReason.M_MUTEX_UNLOCK,
}

_REPORTED_PARAMS = {
    EvictionReason.M_IO: 1,
    EvictionReason.M_PROCESS_CREATE: 3,
    EvictionReason.M_THREAD_CREATE: 2,
    EvictionReason.M_THREAD_JOIN: 1,
    EvictionReason.M_THREAD_CANCEL: 1,
    EvictionReason.M_MUTEX_CREATE: 1,
    EvictionReason.M_MUTEX_LOCK: 1,
    EvictionReason.M_MUTEX_UNLOCK: 1,
}

_CONTEXT_KEYS = ("base", "limit", *(name.lower() for name in REGISTER_NAMES), "pc")


class MemoryAccessError(Exception):
    """Memory refused an access: segmentation fault or missing thread/instruction."""


class ProtocolError(Exception):
    """Memory answered with an unexpected operation code."""


class MemoryPort(Protocol):
    """What the CPU needs from the memory module.

    Implementations raise MemoryAccessError for a refused access and
    ProtocolError for any other unexpected answer.
    """

    def get_context(self, pid: int, tid: int) -> Mapping[str, int]:
        """Registers of a thread: keys base, limit, ax..hx and pc."""
        ...

    def get_instruction(self, pid: int, tid: int, pc: int) -> str:
        """Text of the instruction at pc."""
        ...

    def update_context(self, pid: int, tid: int, values: Mapping[str, int]) -> None:
        """Store a thread's registers: keys pc, ax..hx, base and limit."""
        ...

    def read(self, pid: int, tid: int, address: int) -> int:
        """Read a 32-bit word at a physical address."""
        ...

    def write(self, pid: int, tid: int, address: int, value: int) -> None:
        """Write a 32-bit word at a physical address."""
        ...


@dataclass(frozen=True)
class EvictionReport:
    """What the CPU tells the kernel when a thread leaves it."""

    pid: int
    tid: int
    reason: EvictionReason
    params: tuple[str, ...] = ()


def _c_integer(text: str) -> int:
    """Leading integer of text, 0 when there is none (as strtoul/atoi read it)."""
    match = _LEADING_INT.match(text)
    if match is None:
        return 0
    value = int(match.group(2))
    return -value if match.group(1) == "-" else value


class Cpu:
    """Runs threads instruction by instruction against a memory port."""

    def __init__(self, memory: MemoryPort, context: CpuContext | None = None) -> None:
        self.memory = memory
        self.context = context if context is not None else CpuContext()
        self.finished = False
        self.executing = False

    def _fatal(self, message: str) -> None:
        logger.error(message)
        self.finished = True
        self.context.evict = True
        self.context.interrupted = True
        self.context.eviction_reason = EvictionReason.SEGFAULT

    def _segfault(self, message: str, *, interrupt: bool = False) -> None:
        logger.error(message)
        self.context.evict = True
        if interrupt:
            self.context.interrupted = True
        self.context.eviction_reason = EvictionReason.SEGFAULT

    def load_context(self, pid: int, tid: int) -> None:
        """Fetch the registers of a thread from memory into the context."""
        ctx = self.context
        ctx.pid, ctx.tid = pid, tid
        logger.info("## TID: %d - Solicito Contexto Ejecucion", tid)
        try:
            values = self.memory.get_context(pid, tid)
        except (ProtocolError, MemoryAccessError):
            self._fatal("El codigo de operacion es invalido al obtener el contexto")
            return
        for key in _CONTEXT_KEYS:
            setattr(ctx, key, int(values[key]) & _UINT32_MASK)

    def save_context(self) -> None:
        """Send the current registers back to memory."""
        ctx = self.context
        logger.info("## TID: %d - Actualizo Contexto Ejecucion", ctx.tid)
        values = {key: getattr(ctx, key) for key in ("pc", *(n.lower() for n in REGISTER_NAMES), "base", "limit")}
        try:
            self.memory.update_context(ctx.pid, ctx.tid, values)
        except (ProtocolError, MemoryAccessError):
            self._fatal("El codigo de operacion es invalido al actualizar el contexto")

    def fetch(self) -> None:
        """Ask memory for the instruction at pc, then advance pc."""
        ctx = self.context
        logger.info("## TID: %d - FETCH - Program Counter: %d", ctx.tid, ctx.pc)
        ctx.instruction = None
        try:
            ctx.instruction = self.memory.get_instruction(ctx.pid, ctx.tid, ctx.pc)
        except MemoryAccessError as exc:
            self._segfault(f"No se pudo obtener la instruccion {ctx.pc}: {exc}")
        except ProtocolError:
            self._fatal("El codigo de operacion es invalido al obtener la instruccion")
        ctx.pc = (ctx.pc + 1) & _UINT32_MASK

    def decode(self) -> None:
        """Split the instruction into mnemonic and parameters and translate addresses."""
        ctx = self.context
        if ctx.instruction is None:
            ctx.instruction_type = InstructionType.UNKNOWN
            ctx.params = []
            return
        parts = ctx.instruction.split(" ", 3)
        ctx.instruction = parts[0]
        ctx.params = parts[1:]
        kind = decode_instruction_type(ctx.instruction)
        if kind is not InstructionType.UNKNOWN and len(ctx.params) < _ARITY[kind]:
            logger.error("Faltan parametros en la instruccion: %s", ctx.instruction)
            kind = InstructionType.UNKNOWN
        ctx.instruction_type = kind
        if kind is InstructionType.UNKNOWN:
            ctx.evict = True
            ctx.eviction_reason = EvictionReason.SEGFAULT
        elif kind is InstructionType.READ_MEM:
            ctx.physical_address = self.mmu(ctx.params[1])
        elif kind is InstructionType.WRITE_MEM:
            ctx.physical_address = self.mmu(ctx.params[0])

    def mmu(self, register: str) -> int:
        """Physical address for the offset held in a register; SEGFAULT_ADDRESS when out of bounds."""
        ctx = self.context
        offset = ctx.get_register(register)
        if offset + WORD_SIZE > ctx.limit:
            logger.error("Segmentation Fault - Direccion Fisica: %d", offset)
            ctx.evict = True
            ctx.eviction_reason = EvictionReason.SEGFAULT
            return SEGFAULT_ADDRESS
        return (ctx.base + offset) & _UINT32_MASK

    def _log_execution(self) -> None:
        ctx = self.context
        shown = (ctx.params or [])[: _ARITY.get(ctx.instruction_type, 0)]
        suffix = " - " + " ".join(shown) if shown else ""
        logger.info("## TID: %d - Ejecutando: %s%s", ctx.tid, ctx.instruction, suffix)

    def _read_mem(self) -> None:
        ctx = self.context
        logger.info("## TID: %d - Accion: LEER - Direccion Fisica: %d", ctx.tid, ctx.physical_address)
        try:
            value = self.memory.read(ctx.pid, ctx.tid, ctx.physical_address)
        except MemoryAccessError:
            self._segfault("Segmentation Fault al leer la memoria", interrupt=True)
            return
        except ProtocolError:
            self._fatal("El codigo de operacion es invalido al leer la memoria")
            return
        ctx.set_register(ctx.params[0], value)

    def _write_mem(self) -> None:
        ctx = self.context
        logger.info("## TID: %d - Accion: ESCRIBIR - Direccion Fisica: %d", ctx.tid, ctx.physical_address)
        value = ctx.get_register(ctx.params[1])
        try:
            self.memory.write(ctx.pid, ctx.tid, ctx.physical_address, value)
        except MemoryAccessError:
            self._segfault("Segmentation Fault al escribir en la memoria", interrupt=True)
        except ProtocolError:
            self._fatal("El codigo de operacion es invalido al escribir en la memoria")

    def execute(self) -> None:
        """Carry out the decoded instruction."""
        ctx = self.context
        kind = ctx.instruction_type
        if kind is InstructionType.UNKNOWN:
            ctx.evict = True
            ctx.request_eviction(EvictionReason.SEGFAULT)
            return
        self._log_execution()
        params = ctx.params or []
        if kind is InstructionType.SET:
            ctx.set_register(params[0], _c_integer(params[1]))
            ctx.request_eviction(EvictionReason.CONTINUE)
        elif kind is InstructionType.READ_MEM:
            self._read_mem()
        elif kind is InstructionType.WRITE_MEM:
            self._write_mem()
        elif kind in (InstructionType.SUM, InstructionType.SUB):
            target = ctx.get_register(params[0])
            source = ctx.get_register(params[1])
            result = target + source if kind is InstructionType.SUM else target - source
            ctx.set_register(params[0], result)
            ctx.request_eviction(EvictionReason.CONTINUE)
        elif kind is InstructionType.JNZ:
            target_pc = _c_integer(params[1])
            if ctx.get_register(params[0]) != 0:
                ctx.pc = target_pc & _UINT32_MASK
            ctx.request_eviction(EvictionReason.CONTINUE)
        elif kind is InstructionType.LOG:
            logger.info("## Registro %s: %d", params[0], ctx.get_register(params[0]))
            ctx.request_eviction(EvictionReason.CONTINUE)
        else:
            ctx.evict = True
            ctx.request_eviction(_SYSCALLS[kind])

    def _must_stop(self) -> bool:
        return self.context.evict or self.context.interrupted or self.finished

    def run_thread(self) -> None:
        """Run fetch/decode/execute until the thread is evicted or interrupted."""
        ctx = self.context
        while True:
            self.fetch()
            self.decode()
            self.execute()
            if self._must_stop():
                break
            ctx.instruction = None
            ctx.params = None
        if ctx.interrupted and ctx.eviction_reason is EvictionReason.CONTINUE:
            ctx.eviction_reason = EvictionReason.INTERRUPCION

    def interrupt(self) -> bool:
        """Flag an end-of-quantum interrupt; ignored (False) when no thread is running."""
        if not self.executing:
            return False
        logger.info("## Llega interrupcion al puerto interrupt")
        self.context.interrupted = True
        return True

    def report(self) -> EvictionReport:
        """Eviction message for the kernel, with the syscall's parameters."""
        ctx = self.context
        reason = EvictionReason(ctx.eviction_reason)
        logger.info("Enviando motivo de desalojo al kernel %s.", eviction_reason_text(reason))
        count = _REPORTED_PARAMS.get(reason, 0)
        params = tuple((ctx.params or [])[:count])
        return EvictionReport(ctx.pid, ctx.tid, reason, params)

    def dispatch(self, pid: int, tid: int) -> EvictionReport:
        """Run one thread from context load to eviction and return the report."""
        ctx = self.context
        self.executing = True
        self.load_context(pid, tid)
        self.run_thread()
        self.save_context()
        result = self.report()
        ctx.reset()
        self.executing = False
        ctx.evict = False
        ctx.interrupted = False
        ctx.eviction_reason = EvictionReason.CONTINUE
        return result