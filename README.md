# ossim

`ossim` models the moving parts of a small teaching operating system in
plain Python. It has three parts:

- a kernel that keeps processes, threads and mutexes and schedules them,
- a CPU that runs a tiny register-machine instruction set,
- a filesystem that stores memory dumps in fixed-size blocks.

Each part can be driven and inspected on its own. A part reaches memory, or
another part, through a small port object (a `typing.Protocol`), so you supply
the implementation: a real transport, or a test double.

The package has no runtime dependencies.

## Modules

| Module | What it holds |
| --- | --- |
| `ossim.config` | `load_properties`, `save_properties` and the typed `CpuConfig`, `FilesystemConfig` and `KernelConfig` with their `read_*_config` loaders |
| `ossim.cpu_context` | The CPU register file (`CpuContext`), `InstructionType`, `EvictionReason`, `decode_instruction_type` and `eviction_reason_text` |
| `ossim.cpu_core` | The fetch/decode/execute cycle (`Cpu`), the MMU, `EvictionReport` and the memory port contract (`MemoryPort`, `MemoryAccessError`, `ProtocolError`) |
| `ossim.fs_storage` | `BlockStore`: bitmap allocation, index blocks, data blocks and file metadata |
| `ossim.kernel_model` | Processes (`Pcb`), threads (`Tcb`), mutexes (`Mutex`), `ThreadState`, `BlockReason` and the kernel's queues (`Kernel`) |
| `ossim.kernel_syscalls` | The system calls the CPU can raise (`Syscalls`) and the kernel's memory port (`KernelMemoryPort`, `MemoryResponse`) |
| `ossim.kernel_scheduler` | FIFO and priority picking, the short-term scheduler with an optional quantum, and the long-term scheduler |

## Configuration

Configuration files hold one `KEY=VALUE` pair per line. Lines that start with
`#` and lines without `=` are skipped.

```python
from ossim.config import load_properties, read_cpu_config

props = load_properties("cpu.config")      # dict[str, str]
cpu_config = read_cpu_config("cpu.config") # CpuConfig
```

A missing key raises `KeyError`. A value that should be a number but is not
raises `ValueError`.

- A CPU configuration needs `IP_MEMORIA`, `PUERTO_MEMORIA`,
  `PUERTO_ESCUCHA_DISPATCH`, `PUERTO_ESCUCHA_INTERRUPT` and `LOG_LEVEL`.
- A filesystem configuration needs `PUERTO_ESCUCHA`, `MOUNT_DIR`, `BLOCK_SIZE`,
  `BLOCK_COUNT`, `RETARDO_ACCESO_BLOQUE` (milliseconds) and `LOG_LEVEL`.
- A kernel configuration needs `IP_MEMORIA`, `PUERTO_MEMORIA`, `IP_CPU`,
  `PUERTO_CPU_DISPATCH`, `PUERTO_CPU_INTERRUPT`, `ALGORITMO_PLANIFICACION`
  (`FIFO`, `PRIORIDADES` or `CMN`), `QUANTUM` (milliseconds) and `LOG_LEVEL`.

## The CPU

The CPU has eight 32-bit general registers, `AX` to `HX`, and these
instructions:

`SET`, `READ_MEM`, `WRITE_MEM`, `SUM`, `SUB`, `JNZ`, `LOG`, `DUMP_MEMORY`, `IO`,
`PROCESS_CREATE`, `PROCESS_EXIT`, `THREAD_CREATE`, `THREAD_EXIT`,
`THREAD_JOIN`, `THREAD_CANCEL`, `MUTEX_CREATE`, `MUTEX_LOCK`, `MUTEX_UNLOCK`

`Cpu.dispatch(pid, tid)` loads a thread's registers from memory, runs it until
it leaves the CPU, stores the registers back and returns an `EvictionReport`:

```python
from ossim.cpu_core import Cpu, MemoryAccessError

class ProgramMemory:
    def __init__(self, program):
        self.program = program
        self.saved = None

    def get_context(self, pid, tid):
        return {"base": 0, "limit": 64, "ax": 0, "bx": 0, "cx": 0, "dx": 0,
                "ex": 0, "fx": 0, "gx": 0, "hx": 0, "pc": 0}

    def get_instruction(self, pid, tid, pc):
        if pc >= len(self.program):
            raise MemoryAccessError(f"no instruction {pc}")
        return self.program[pc]

    def update_context(self, pid, tid, values):
        self.saved = dict(values)

    def read(self, pid, tid, address):
        return 0

    def write(self, pid, tid, address, value):
        pass

memory = ProgramMemory(["SET AX 5", "SET BX 3", "SUM AX BX", "PROCESS_EXIT"])
report = Cpu(memory).dispatch(pid=0, tid=0)
report.reason        # EvictionReason.M_PROCESS_EXIT
memory.saved["ax"]   # 8
```

How the CPU behaves:

- Arithmetic and register writes wrap modulo 2**32.
- `READ_MEM` and `WRITE_MEM` addresses go through `Cpu.mmu`. It adds the
  thread's base register to the offset held in the register. When the 4-byte
  access would run past the limit, it flags a segmentation-fault eviction and
  returns `SEGFAULT_ADDRESS`.
- An unknown instruction, too few parameters or an unknown register name
  evicts the thread with `EvictionReason.SEGFAULT`.
- Every system-call instruction evicts the thread. The report carries the
  reason and the instruction's parameters.
- `Cpu.interrupt()` flags an end-of-quantum interrupt while a thread is
  running. The thread leaves the CPU after the current instruction, with
  `EvictionReason.INTERRUPCION` unless that instruction gave another reason.

The memory port signals a refused access with `MemoryAccessError` and any other
unexpected answer with `ProtocolError`. The CPU turns both into a
segmentation-fault eviction. A `ProtocolError` also sets `Cpu.finished`.

## The filesystem

`BlockStore` keeps a `bitmap.dat` (one bit per block, least significant bit
first) and a `bloques.dat` under its mount directory. It memory-maps both files
and creates them, zero-filled, when they are missing. It writes one metadata
file per dump under `files/`, holding `SIZE` and `INDEX_BLOCK`.

A dump takes one index block, which lists the byte offsets of its data blocks
as little-endian 32-bit words. It also takes as many data blocks as the content
needs, always the lowest free blocks. `create_dump` returns `False` in two
cases: when there are not enough free blocks, or when the file would need more
data blocks than one index block can list.

```python
from ossim.config import FilesystemConfig
from ossim.fs_storage import BlockStore

config = FilesystemConfig(listen_port=0, mount_dir="/tmp/fs", block_size=16,
                          block_count=32, block_access_delay=0, log_level="INFO")
with BlockStore(config, sleep=lambda seconds: None) as store:
    store.create_dump("1-0-dump.dmp", 8, b"\x01\x02\x03\x04\x05\x06\x07\x08")
    store.free_blocks()   # 30: one index block and one data block taken
```

Each block write waits `RETARDO_ACCESO_BLOQUE` milliseconds through the
`sleep` callable you pass.

## The kernel

`Kernel` keeps the NEW, READY and BLOCKED queues, the thread in EXEC
(`Kernel.running`) and every process in the system. `create_process` gives the
new process the next pid and a main thread with tid 0, and puts the process in
NEW.

`Syscalls` carries out what the CPU asks for, using a `KernelMemoryPort` that
answers each request with a `MemoryResponse`:

- it creates and ends processes and threads,
- it joins and cancels threads,
- it creates, locks and unlocks mutexes (names compare without case),
- it serves I/O and memory dumps in background threads.

I/O requests run one at a time. `wait_background()` waits for all of them.
When a thread ends, the threads that joined it wake up, and every mutex it
owned goes to the first thread waiting for it. When thread 0 exits, its whole
process ends.

The short-term scheduler picks the next READY thread with `pick_next`:

- `FIFO` takes threads in arrival order.
- `PRIORIDADES` takes the lowest priority number first. Among threads of equal
  priority, it takes the one that has been in READY longest.
- `CMN` picks like `PRIORIDADES`, and it also starts a quantum timer. When the
  quantum runs out, the timer calls the CPU port's `interrupt()`.

`ShortTermScheduler.run_once()` runs one thread. It keeps sending the thread
back to the CPU after syscalls that let it continue, such as `MUTEX_CREATE`,
or a `MUTEX_LOCK` that got the lock. `start()` and `stop()` run the scheduler
loop in a background thread.

`LongTermScheduler.admit_next()` asks memory to create the first NEW process
and moves its main thread to READY on success. On `SIZE_ERROR`, the process
stays in NEW and admission pauses until some process exits. On any other
error, the process is dropped.

## What the package does not do

The package has no command-line programs and no network servers. It does not
listen on the configured ports and it opens no sockets. It has no memory module
either. The kernel, the CPU and the filesystem are connected only through the
port objects you give them. The configuration's IP addresses and ports are read
and kept, but nothing in the package uses them to connect.