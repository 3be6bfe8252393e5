"""Block storage of the filesystem: bitmap, block file and dump file metadata."""

from __future__ import annotations

import logging
import math
import mmap
import struct
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import BinaryIO

from .config import FilesystemConfig, save_properties

logger = logging.getLogger(__name__)

WORD_SIZE = 4
BITMAP_FILE = "bitmap.dat"
BLOCKS_FILE = "bloques.dat"
FILES_DIR = "files"

_WORD = struct.Struct("<I")


class BlockStore:
    """Bitmap-managed block file under a mount directory.

    The bitmap holds one bit per block, least significant bit first. Every dump
    takes one index block, which lists the byte offsets of its data blocks, and
    as many data blocks as the content needs.
    """

    def __init__(
        self,
        config: FilesystemConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._sleep = sleep
        self._bitmap_lock = threading.RLock()
        self._blocks_lock = threading.Lock()
        self._bitmap_file: BinaryIO | None = None
        self._blocks_file: BinaryIO | None = None
        self._bitmap: mmap.mmap | None = None
        self._blocks: mmap.mmap | None = None

    @property
    def mount_dir(self) -> Path:
        return Path(self.config.mount_dir)

    @property
    def bitmap_path(self) -> Path:
        return self.mount_dir / BITMAP_FILE

    @property
    def blocks_path(self) -> Path:
        return self.mount_dir / BLOCKS_FILE

    @property
    def files_dir(self) -> Path:
        return self.mount_dir / FILES_DIR

    @property
    def bitmap_size(self) -> int:
        """Bytes the bitmap takes."""
        return math.ceil(self.config.block_count / 8)

    @property
    def blocks_size(self) -> int:
        """Bytes the block file takes."""
        return self.config.block_count * self.config.block_size

    def __enter__(self) -> BlockStore:
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @staticmethod
    def _map(path: Path, size: int) -> tuple[BinaryIO, mmap.mmap, bool]:
        created = not path.exists()
        if created:
            path.touch()
        handle = open(path, "r+b")
        try:
            handle.truncate(size)
            mapping = mmap.mmap(handle.fileno(), size)
        except BaseException:
            handle.close()
            raise
        return handle, mapping, created

    def open(self) -> BlockStore:
        """Open (creating when missing) the bitmap and block files and map them."""
        if self._bitmap is not None:
            return self
        self._bitmap_file, self._bitmap, created = self._map(self.bitmap_path, self.bitmap_size)
        if created:
            self.reset_bitmap()
        try:
            self._blocks_file, self._blocks, created = self._map(self.blocks_path, self.blocks_size)
        except BaseException:
            self.close()
            raise
        if created:
            with self._blocks_lock:
                self._blocks[:] = bytes(self.blocks_size)
                self._blocks.flush()
        return self

    def close(self) -> None:
        """Flush and release both mapped files."""
        for mapping in (self._bitmap, self._blocks):
            if mapping is not None:
                mapping.flush()
                mapping.close()
        for handle in (self._bitmap_file, self._blocks_file):
            if handle is not None:
                handle.close()
        self._bitmap = self._blocks = None
        self._bitmap_file = self._blocks_file = None

    def _require_bitmap(self) -> mmap.mmap:
        if self._bitmap is None:
            raise RuntimeError("block store is not open")
        return self._bitmap

    def _require_blocks(self) -> mmap.mmap:
        if self._blocks is None:
            raise RuntimeError("block store is not open")
        return self._blocks

    def _check_bit(self, index: int) -> None:
        if not 0 <= index < len(self._require_bitmap()) * 8:
            raise IndexError(f"bit {index} out of range")

    def test_bit(self, index: int) -> bool:
        """Whether the block at index is in use."""
        bitmap = self._require_bitmap()
        self._check_bit(index)
        with self._bitmap_lock:
            return bool(bitmap[index // 8] & (1 << (index % 8)))

    def set_bit(self, index: int, value: bool) -> None:
        """Mark a block used (True) or free (False) and persist the change."""
        bitmap = self._require_bitmap()
        self._check_bit(index)
        mask = 1 << (index % 8)
        with self._bitmap_lock:
            byte = bitmap[index // 8]
            bitmap[index // 8] = (byte | mask) if value else (byte & ~mask & 0xFF)
            bitmap.flush()

    def reset_bitmap(self) -> None:
        """Mark every block free."""
        bitmap = self._require_bitmap()
        with self._bitmap_lock:
            bitmap[:] = bytes(len(bitmap))
            bitmap.flush()

    def free_blocks(self) -> int:
        """Number of free blocks."""
        return sum(not self.test_bit(i) for i in range(self.config.block_count))

    def blocks_needed(self, size: int) -> int:
        """Data blocks needed to hold size bytes."""
        return math.ceil(size / self.config.block_size)

    def has_space(self, blocks_needed: int, name: str) -> bool:
        """Whether a file of blocks_needed data blocks (plus its index block) fits."""
        free = self.free_blocks()
        index_capacity = self.config.block_size // WORD_SIZE
        if index_capacity < blocks_needed:
            logger.error(
                "[%s]:Archivo excede tamanio que acepta el FS. Limite cant bloques: %d "
                "Cant bloques solicitados: %d",
                name,
                index_capacity,
                blocks_needed,
            )
            return False
        if free < blocks_needed + 1:
            logger.error(
                "[%s]:No hay suficiente espacio para %d bloques. Avisando a memoria",
                name,
                blocks_needed + 1,
            )
            return False
        logger.info("[%s]:Hay espacio para %d bloques del archivo.", name, blocks_needed)
        return True

    def reserve_blocks(self, blocks_needed: int, name: str) -> list[int]:
        """Reserve the index block and blocks_needed data blocks, lowest first.

        The first element is the index block. Raises ValueError when there are
        not enough free blocks; nothing is reserved then.
        """
        with self._bitmap_lock:
            free = [i for i in range(self.config.block_count) if not self.test_bit(i)]
            if len(free) < blocks_needed + 1:
                raise ValueError(f"not enough free blocks for {name!r}")
            reserved = free[: blocks_needed + 1]
            remaining = len(free)
            for index in reserved:
                self.set_bit(index, True)
                remaining -= 1
                logger.info(
                    "## Bloque asignado: %d - Archivo: %s - Bloques Libres: %d",
                    index,
                    name,
                    remaining,
                )
        return reserved

    def write_metadata(self, name: str, size: int, index_block: int) -> Path:
        """Write the metadata file of a dump and return its path."""
        self.files_dir.mkdir(parents=True, exist_ok=True)
        path = self.files_dir / name
        save_properties(path, {"SIZE": size, "INDEX_BLOCK": index_block})
        logger.info("## Archivo Creado: %s - Tamaño: %d", name, size)
        return path

    def write_index_block(self, indices: Sequence[int], name: str) -> None:
        """Store the byte offsets of the data blocks in the index block (indices[0])."""
        blocks = self._require_blocks()
        block_size = self.config.block_size
        data_blocks = indices[1:]
        if len(data_blocks) * WORD_SIZE > block_size:
            raise ValueError("too many data blocks for one index block")
        start = indices[0] * block_size
        with self._blocks_lock:
            for position, block in enumerate(data_blocks):
                offset = start + position * WORD_SIZE
                blocks[offset : offset + WORD_SIZE] = _WORD.pack(block * block_size)
            blocks.flush()
        self._sleep(self.config.block_access_delay / 1000)
        logger.info(
            "## Acceso Bloque - Archivo: %s - Tipo Bloque: ÍNDICE - Bloque File System %d",
            name,
            start,
        )

    def write_data_blocks(
        self, indices: Sequence[int], content: bytes, size: int, name: str
    ) -> None:
        """Copy size bytes of content, word by word, into the data blocks indices[1:]."""
        blocks = self._require_blocks()
        block_size = self.config.block_size
        data = bytes(content)
        data_blocks = indices[1:]
        content_offset = 0
        for number, block in enumerate(data_blocks, start=1):
            start = block * block_size
            end = start + block_size
            length = size - (number - 1) * block_size if number == len(data_blocks) else block_size
            for word_offset in range(0, length, WORD_SIZE):
                word = data[content_offset : content_offset + WORD_SIZE]
                position = start + word_offset
                word = word[: max(0, end - position)]
                with self._blocks_lock:
                    blocks[position : position + len(word)] = word
                    blocks.flush()
                self._sleep(self.config.block_access_delay / 1000)
                logger.info(
                    "## Acceso Bloque - Archivo: %s - Tipo Bloque: DATOS - Bloque File System %d",
                    name,
                    block,
                )
                content_offset += WORD_SIZE

    def create_dump(self, name: str, size: int, content: bytes) -> bool:
        """Store a dump file; False when it does not fit."""
        needed = self.blocks_needed(size)
        if not self.has_space(needed, name):
            logger.info("## Fin de solicitud - Archivo: %s", name)
            return False
        indices = self.reserve_blocks(needed, name)
        self.write_metadata(name, size, indices[0])
        self.write_index_block(indices, name)
        self.write_data_blocks(indices, content, size, name)
        logger.info("## Fin de solicitud - Archivo: %s", name)
        return True