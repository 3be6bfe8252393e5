"""Reading and writing the KEY=VALUE configuration files used by every module."""

from __future__ import annotations

from dataclasses import dataclass
from os import PathLike
from pathlib import Path
from typing import Mapping, Union

PathArg = Union[str, "PathLike[str]"]

DEFAULT_CPU_CONFIG = "./cpu.config"
DEFAULT_FILESYSTEM_CONFIG = "filesystem.config"
DEFAULT_KERNEL_CONFIG = "kernel.config"


def load_properties(path: PathArg) -> dict[str, str]:
    """Parse a properties file: one KEY=VALUE per line, '#' starts a comment line.

    Lines without '=' are ignored. Only the first '=' separates key and value.
    Raises OSError (usually FileNotFoundError) when the file cannot be read.
    """
    properties: dict[str, str] = {}
    with open(path, encoding="utf-8") as handle:
        for raw in handle:
            line = raw.rstrip("\r\n")
            if not line or line.startswith("#"):
                continue
            key, sep, value = line.partition("=")
            if not sep:
                continue
            properties[key] = value
    return properties


def save_properties(path: PathArg, properties: Mapping[str, object]) -> None:
    """Write properties as KEY=VALUE lines, replacing the file's contents."""
    text = "".join(f"{key}={value}\n" for key, value in properties.items())
    Path(path).write_text(text, encoding="utf-8")


def _get_str(properties: Mapping[str, str], key: str) -> str:
    try:
        return properties[key]
    except KeyError:
        raise KeyError(f"missing configuration key {key!r}") from None


def _get_int(properties: Mapping[str, str], key: str) -> int:
    value = _get_str(properties, key)
    try:
        return int(value.strip())
    except ValueError:
        raise ValueError(f"configuration key {key!r} is not an integer: {value!r}") from None


@dataclass(frozen=True)
class CpuConfig:
    """Settings of the CPU module. Ports are kept as strings, ready for connecting."""

    memory_ip: str
    memory_port: str
    dispatch_port: str
    interrupt_port: str
    log_level: str


@dataclass(frozen=True)
class FilesystemConfig:
    """Settings of the filesystem module."""

    listen_port: int
    mount_dir: str
    block_size: int
    block_count: int
    block_access_delay: int
    log_level: str


@dataclass(frozen=True)
class KernelConfig:
    """Settings of the kernel module."""

    memory_ip: str
    memory_port: str
    cpu_ip: str
    cpu_dispatch_port: str
    cpu_interrupt_port: str
    scheduling_algorithm: str
    quantum: int
    log_level: str


def read_cpu_config(path: PathArg = DEFAULT_CPU_CONFIG) -> CpuConfig:
    """Load the CPU configuration; ports are read as integers and kept as text."""
    props = load_properties(path)
    return CpuConfig(
        memory_ip=_get_str(props, "IP_MEMORIA"),
        memory_port=str(_get_int(props, "PUERTO_MEMORIA")),
        dispatch_port=str(_get_int(props, "PUERTO_ESCUCHA_DISPATCH")),
        interrupt_port=str(_get_int(props, "PUERTO_ESCUCHA_INTERRUPT")),
        log_level=_get_str(props, "LOG_LEVEL"),
    )


def read_filesystem_config(path: PathArg = DEFAULT_FILESYSTEM_CONFIG) -> FilesystemConfig:
    """Load the filesystem configuration."""
    props = load_properties(path)
    return FilesystemConfig(
        listen_port=_get_int(props, "PUERTO_ESCUCHA"),
        mount_dir=_get_str(props, "MOUNT_DIR"),
        block_size=_get_int(props, "BLOCK_SIZE"),
        block_count=_get_int(props, "BLOCK_COUNT"),
        block_access_delay=_get_int(props, "RETARDO_ACCESO_BLOQUE"),
        log_level=_get_str(props, "LOG_LEVEL"),
    )


def read_kernel_config(path: PathArg = DEFAULT_KERNEL_CONFIG) -> KernelConfig:
    """Load the kernel configuration."""
    props = load_properties(path)
    return KernelConfig(
        memory_ip=_get_str(props, "IP_MEMORIA"),
        memory_port=_get_str(props, "PUERTO_MEMORIA"),
        cpu_ip=_get_str(props, "IP_CPU"),
        cpu_dispatch_port=_get_str(props, "PUERTO_CPU_DISPATCH"),
        cpu_interrupt_port=_get_str(props, "PUERTO_CPU_INTERRUPT"),
        scheduling_algorithm=_get_str(props, "ALGORITMO_PLANIFICACION"),
        quantum=_get_int(props, "QUANTUM"),
        log_level=_get_str(props, "LOG_LEVEL"),
    )