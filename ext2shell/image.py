"""Block-level access to an ext2 image file: blocks, inodes, bitmaps and file data."""

from __future__ import annotations

import os
import struct
from collections.abc import Iterator
from typing import BinaryIO, Optional

from .structures import (
    BASE_OFFSET,
    EXT2_SUPER_MAGIC,
    GroupDesc,
    Inode,
    Superblock,
)

_DIRECT_BLOCKS = 12
_INDIRECT = 12
_DOUBLE_INDIRECT = 13


class Ext2Error(Exception):
    """Raised when the image cannot be used or an ext2 operation fails."""


class NoSpaceError(Ext2Error):
    """Raised when no free inode or block is left in a group."""


def _find_clear_bit(bitmap: bytes, limit: int) -> Optional[int]:
    bits = min(limit, len(bitmap) * 8)
    return next(
        (bit for bit in range(bits) if not bitmap[bit >> 3] & (1 << (bit & 7))),
        None,
    )


def _with_bit(bitmap: bytes, bit: int, value: bool) -> bytes:
    updated = bytearray(bitmap)
    mask = 1 << (bit & 7)
    if value:
        updated[bit >> 3] |= mask
    else:
        updated[bit >> 3] &= ~mask & 0xFF
    return bytes(updated)


class Ext2Image:
    """An ext2 filesystem image opened for reading and writing."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = path
        try:
            self._file: BinaryIO = open(path, "r+b")
        except OSError as exc:
            raise Ext2Error(f"Could not open image file '{path}'.") from exc
        try:
            data = self._read_at(BASE_OFFSET, Superblock.SIZE)
            self.superblock = Superblock.from_bytes(data)
            if self.superblock.magic != EXT2_SUPER_MAGIC:
                raise Ext2Error("Not a valid EXT2 filesystem.")
            self.block_size = self.superblock.block_size
        except BaseException:
            self._file.close()
            raise

    def close(self) -> None:
        """Close the underlying image file."""
        self._file.close()

    def __enter__(self) -> "Ext2Image":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --- raw access -----------------------------------------------------

    def _read_at(self, offset: int, size: int) -> bytes:
        self._file.seek(offset)
        return self._file.read(size).ljust(size, b"\0")

    def _write_at(self, offset: int, data: bytes) -> None:
        self._file.seek(offset)
        self._file.write(data)
        self._file.flush()

    def _block_offset(self, block: int) -> int:
        return BASE_OFFSET + (block - 1) * self.block_size

    def read_block(self, block: int) -> bytes:
        """Return the contents of one block; bytes past the end of the image read as zero."""
        return self._read_at(self._block_offset(block), self.block_size)

    def write_block(self, block: int, data: bytes) -> None:
        """Overwrite one whole block."""
        if len(data) != self.block_size:
            raise ValueError(f"block data must be {self.block_size} bytes, got {len(data)}")
        self._write_at(self._block_offset(block), bytes(data))

    def write_superblock(self) -> None:
        """Store the in-memory superblock back to the image."""
        self._write_at(BASE_OFFSET, self.superblock.to_bytes())

    def _group_desc_offset(self, group: int) -> int:
        return BASE_OFFSET + self.block_size + group * GroupDesc.SIZE

    def read_group_desc(self, group: int) -> GroupDesc:
        """Read the descriptor of a block group."""
        return GroupDesc.from_bytes(self._read_at(self._group_desc_offset(group), GroupDesc.SIZE))

    def write_group_desc(self, group: int, desc: GroupDesc) -> None:
        """Store the descriptor of a block group."""
        self._write_at(self._group_desc_offset(group), desc.to_bytes())

    # --- inodes ---------------------------------------------------------

    def group_of_inode(self, inode_num: int) -> int:
        """Block group that holds the given inode."""
        return (inode_num - 1) // self.superblock.inodes_per_group

    def _inode_offset(self, inode_num: int) -> int:
        desc = self.read_group_desc(self.group_of_inode(inode_num))
        index = (inode_num - 1) % self.superblock.inodes_per_group
        return desc.inode_table * self.block_size + index * Inode.SIZE

    def read_inode(self, inode_num: int) -> Inode:
        """Read an inode by number."""
        return Inode.from_bytes(self._read_at(self._inode_offset(inode_num), Inode.SIZE))

    def write_inode(self, inode_num: int, inode: Inode) -> None:
        """Store an inode by number."""
        self._write_at(self._inode_offset(inode_num), inode.to_bytes())

    # --- allocation -----------------------------------------------------

    def find_free_inode(self, group: int) -> Optional[int]:
        """First free inode number in a group, or None if the group has none."""
        desc = self.read_group_desc(group)
        per_group = self.superblock.inodes_per_group
        bit = _find_clear_bit(self.read_block(desc.inode_bitmap), per_group)
        return None if bit is None else bit + 1 + group * per_group

    def find_free_block(self, group: int) -> Optional[int]:
        """First free block number in a group, or None if the group has none."""
        desc = self.read_group_desc(group)
        per_group = self.superblock.blocks_per_group
        bit = _find_clear_bit(self.read_block(desc.block_bitmap), per_group)
        return None if bit is None else bit + 1 + group * per_group

    def _commit_counts(self, group: int, desc: GroupDesc) -> None:
        self.write_superblock()
        self.write_group_desc(group, desc)

    def allocate_inode(self, group: int) -> int:
        """Mark a free inode of the group as used and return its number."""
        inode_num = self.find_free_inode(group)
        if inode_num is None:
            raise NoSpaceError("No free inodes available.")
        desc = self.read_group_desc(group)
        bit = (inode_num - 1) % self.superblock.inodes_per_group
        self.write_block(desc.inode_bitmap, _with_bit(self.read_block(desc.inode_bitmap), bit, True))
        self.superblock.free_inodes_count = (self.superblock.free_inodes_count - 1) & 0xFFFFFFFF
        desc.free_inodes_count = (desc.free_inodes_count - 1) & 0xFFFF
        self._commit_counts(group, desc)
        return inode_num

    def allocate_block(self, group: int) -> int:
        """Mark a free block of the group as used and return its number."""
        block_num = self.find_free_block(group)
        if block_num is None:
            raise NoSpaceError("No free blocks available.")
        desc = self.read_group_desc(group)
        bit = (block_num - 1) % self.superblock.blocks_per_group
        self.write_block(desc.block_bitmap, _with_bit(self.read_block(desc.block_bitmap), bit, True))
        self.superblock.free_blocks_count = (self.superblock.free_blocks_count - 1) & 0xFFFFFFFF
        desc.free_blocks_count = (desc.free_blocks_count - 1) & 0xFFFF
        self._commit_counts(group, desc)
        return block_num

    def free_inode(self, group: int, inode_num: int) -> None:
        """Mark an inode as free in the group's bitmap and update the counters."""
        desc = self.read_group_desc(group)
        bit = (inode_num - 1) % self.superblock.inodes_per_group
        self.write_block(desc.inode_bitmap, _with_bit(self.read_block(desc.inode_bitmap), bit, False))
        self.superblock.free_inodes_count = (self.superblock.free_inodes_count + 1) & 0xFFFFFFFF
        desc.free_inodes_count = (desc.free_inodes_count + 1) & 0xFFFF
        self._commit_counts(group, desc)

    def free_block(self, group: int, block_num: int) -> None:
        """Mark a block as free in the group's bitmap and update the counters."""
        desc = self.read_group_desc(group)
        bit = (block_num - 1) % self.superblock.blocks_per_group
        self.write_block(desc.block_bitmap, _with_bit(self.read_block(desc.block_bitmap), bit, False))
        self.superblock.free_blocks_count = (self.superblock.free_blocks_count + 1) & 0xFFFFFFFF
        desc.free_blocks_count = (desc.free_blocks_count + 1) & 0xFFFF
        self._commit_counts(group, desc)

    # --- file data ------------------------------------------------------

    def iter_data_blocks(self, inode_num: int) -> Iterator[tuple[int, bytes]]:
        """Yield (block number, contents) for each non-empty direct block of an inode."""
        inode = self.read_inode(inode_num)
        for block_num in inode.block[:_DIRECT_BLOCKS]:
            if block_num:
                yield block_num, self.read_block(block_num)

    def _pointers(self, block_num: int) -> tuple[int, ...]:
        count = self.block_size // 4
        return struct.unpack(f"<{count}I", self.read_block(block_num))

    def _file_blocks(self, inode: Inode) -> Iterator[int]:
        for block_num in inode.block[:_DIRECT_BLOCKS]:
            if block_num == 0:
                break
            yield block_num
        if inode.block[_INDIRECT]:
            for block_num in self._pointers(inode.block[_INDIRECT]):
                if block_num == 0:
                    break
                yield block_num
        if inode.block[_DOUBLE_INDIRECT]:
            for indirect in self._pointers(inode.block[_DOUBLE_INDIRECT]):
                if indirect == 0:
                    break
                for block_num in self._pointers(indirect):
                    if block_num == 0:
                        break
                    yield block_num

    def read_file(self, inode: Inode) -> bytes:
        """Contents of a file through direct, indirect and double indirect blocks.

        The result is shorter than ``inode.size`` when the block pointers run out first.
        """
        remaining = inode.size
        chunks = []
        blocks = self._file_blocks(inode)
        while remaining > 0:
            block_num = next(blocks, None)
            if block_num is None:
                break
            chunk = self.read_block(block_num)[:remaining]
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)