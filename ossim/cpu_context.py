"""Execution context of the CPU: registers, decoded instruction and eviction state."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum

logger = logging.getLogger(__name__)

REGISTER_NAMES = ("AX", "BX", "CX", "DX", "EX", "FX", "GX", "HX")
_UINT32_MASK = 0xFFFFFFFF


class InstructionType(IntEnum):
    """Kinds of instruction the CPU understands."""

    SET = 0
    READ_MEM = 1
    WRITE_MEM = 2
    SUM = 3
    SUB = 4
    JNZ = 5
    LOG = 6
    THREAD_EXIT = 7
    PROCESS_EXIT = 8
    DUMP_MEMORY = 9
    IO = 10
    PROCESS_CREATE = 11
    THREAD_CREATE = 12
    THREAD_JOIN = 13
    THREAD_CANCEL = 14
    MUTEX_CREATE = 15
    MUTEX_LOCK = 16
    MUTEX_UNLOCK = 17
    UNKNOWN = 18


class EvictionReason(IntEnum):
    """Why a thread left the CPU (or CONTINUE while it keeps running)."""

    CONTINUE = 0
    SEGFAULT = 1
    INTERRUPCION = 2
    M_IO = 3
    M_PROCESS_CREATE = 4
    M_THREAD_CREATE = 5
    M_THREAD_JOIN = 6
    M_THREAD_CANCEL = 7
    M_MUTEX_CREATE = 8
    M_MUTEX_LOCK = 9
    M_MUTEX_UNLOCK = 10
    M_PROCESS_EXIT = 11
    M_THREAD_EXIT = 12
    M_DUMP_MEMORY = 13


_MNEMONICS = {
    "SET": InstructionType.SET,
    "READ_MEM": InstructionType.READ_MEM,
    "WRITE_MEM": InstructionType.WRITE_MEM,
    "SUM": InstructionType.SUM,
    "SUB": InstructionType.SUB,
    "JNZ": InstructionType.JNZ,
    "LOG": InstructionType.LOG,
    "DUMP_MEMORY": InstructionType.DUMP_MEMORY,
    "IO": InstructionType.IO,
    "PROCESS_CREATE": InstructionType.PROCESS_CREATE,
    "PROCESS_EXIT": InstructionType.PROCESS_EXIT,
    "THREAD_CREATE": InstructionType.THREAD_CREATE,
    "THREAD_EXIT": InstructionType.THREAD_EXIT,
    "THREAD_JOIN": InstructionType.THREAD_JOIN,
    "THREAD_CANCEL": InstructionType.THREAD_CANCEL,
    "MUTEX_CREATE": InstructionType.MUTEX_CREATE,
    "MUTEX_LOCK": InstructionType.MUTEX_LOCK,
    "MUTEX_UNLOCK": InstructionType.MUTEX_UNLOCK,
}

_REASON_TEXT = {
    EvictionReason.SEGFAULT: "Segmentation Fault",
    EvictionReason.INTERRUPCION: "Interrupcion",
    EvictionReason.M_IO: "IO",
    EvictionReason.M_PROCESS_CREATE: "Process Create",
    EvictionReason.M_THREAD_CREATE: "Thread Create",
    EvictionReason.M_THREAD_JOIN: "Thread Join",
    EvictionReason.M_THREAD_CANCEL: "Thread Cancel",
    EvictionReason.M_MUTEX_CREATE: "Mutex Create",
    EvictionReason.M_MUTEX_LOCK: "Mutex Lock",
    EvictionReason.M_MUTEX_UNLOCK: "Mutex Unlock",
    EvictionReason.M_PROCESS_EXIT: "Process Exit",
    EvictionReason.M_THREAD_EXIT: "Thread Exit",
    EvictionReason.M_DUMP_MEMORY: "Dump Memory",
    EvictionReason.CONTINUE: "Continue",
}


def decode_instruction_type(name: str) -> InstructionType:
    """Map an instruction mnemonic (case sensitive) to its type, UNKNOWN otherwise."""
    return _MNEMONICS.get(name, InstructionType.UNKNOWN)


def eviction_reason_text(reason: int | Enum) -> str:
    """Human-readable text for an eviction reason; "Unknown" for unrecognised values."""
    try:
        return _REASON_TEXT[EvictionReason(int(reason))]
    except (ValueError, TypeError, KeyError):
        return "Unknown"


@dataclass
class CpuContext:
    """Registers and state of the thread currently on the CPU."""

    pid: int = 0
    tid: int = 0
    pc: int = 0
    ax: int = 0
    bx: int = 0
    cx: int = 0
    dx: int = 0
    ex: int = 0
    fx: int = 0
    gx: int = 0
    hx: int = 0
    base: int = 0
    limit: int = 0
    physical_address: int = 0
    instruction_type: InstructionType = InstructionType.UNKNOWN
    instruction: str | None = None
    params: list[str] | None = None
    evict: bool = False
    interrupted: bool = False
    eviction_reason: EvictionReason = EvictionReason.CONTINUE
    _unused: None = field(default=None, repr=False, compare=False)

    def _invalid_register(self, name: str) -> None:
        logger.error("Registro invalido: %s", name)
        self.evict = True
        self.eviction_reason = EvictionReason.SEGFAULT

    def get_register(self, name: str) -> int:
        """Value of a general register; an unknown name forces a segfault eviction and yields 0."""
        if name in REGISTER_NAMES:
            return getattr(self, name.lower())
        self._invalid_register(name)
        return 0

    def set_register(self, name: str, value: int) -> None:
        """Store a 32-bit unsigned value; an unknown name forces a segfault eviction."""
        if name not in REGISTER_NAMES:
            self._invalid_register(name)
            return
        value &= _UINT32_MASK
        logger.debug(
            "Registro: %s - Valor antes de setear: %d - Valor a setear: %d",
            name,
            getattr(self, name.lower()),
            value,
        )
        setattr(self, name.lower(), value)

    def reset(self) -> None:
        """Clear registers, addresses and the decoded instruction (eviction state is kept)."""
        self.pid = self.tid = self.pc = 0
        for name in REGISTER_NAMES:
            setattr(self, name.lower(), 0)
        self.base = self.limit = self.physical_address = 0
        self.instruction_type = InstructionType.UNKNOWN
        self.instruction = None
        self.params = None

    def request_eviction(self, reason: EvictionReason) -> None:
        """Record the reason; a pending interrupt turns it into an actual eviction."""
        if self.interrupted:
            self.evict = True
        self.eviction_reason = reason