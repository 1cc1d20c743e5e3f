"""Reading and editing directory blocks of an ext2 image."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Optional

from .image import Ext2Image, NoSpaceError
from .structures import NAME_LEN, DirEntry, FileType, Inode, ideal_rec_len

_DIRECT_BLOCKS = 12


def _scan_block(data: bytes) -> Iterator[tuple[int, DirEntry]]:
    """Yield (offset, entry) for each record of a directory block.

    Scanning stops at a record with a zero length or one that runs past the block.
    """
    offset = 0
    size = len(data)
    while offset + DirEntry.HEADER_SIZE <= size:
        name_len = data[offset + 6]
        if offset + DirEntry.HEADER_SIZE + name_len > size:
            return
        entry = DirEntry.from_bytes(data, offset)
        if entry.rec_len == 0:
            return
        yield offset, entry
        offset += entry.rec_len


def iter_entries(image: Ext2Image, dir_inode_num: int) -> Iterator[DirEntry]:
    """Yield the entries of a directory's direct blocks.

    Nothing is yielded for an inode that is not a directory. Within a block,
    listing stops at the first entry whose inode number is zero.
    """
    if not image.read_inode(dir_inode_num).is_dir():
        return
    for _, data in image.iter_data_blocks(dir_inode_num):
        for _, entry in _scan_block(data):
            if entry.inode == 0:
                break
            yield entry


def lookup(image: Ext2Image, dir_inode_num: int, name: str) -> Optional[int]:
    """Inode number of ``name`` in a directory, or None if there is no such entry."""
    return next(
        (entry.inode for entry in iter_entries(image, dir_inode_num) if entry.name == name),
        None,
    )


def add_entry(
    image: Ext2Image,
    parent_inode_num: int,
    child_inode_num: int,
    name: str,
    file_type: int,
) -> None:
    """Insert a directory entry into the first record with enough slack space.

    The parent's link count grows by one when the new entry is a directory.
    Raises NoSpaceError when no direct block of the parent has room.
    """
    raw_name = name.encode("utf-8", errors="surrogateescape")
    if len(raw_name) > NAME_LEN:
        raise ValueError(f"name longer than {NAME_LEN} bytes")
    needed = ideal_rec_len(len(raw_name))
    parent = image.read_inode(parent_inode_num)

    for block_num in parent.block[:_DIRECT_BLOCKS]:
        if not block_num:
            continue
        data = bytearray(image.read_block(block_num))
        for offset, entry in _scan_block(data):
            ideal = ideal_rec_len(entry.name_len)
            leftover = entry.rec_len - ideal
            if leftover < needed:
                continue
            entry.rec_len = ideal
            entry.write_into(data, offset)
            new_entry = DirEntry(
                inode=child_inode_num,
                rec_len=leftover,
                file_type=int(file_type),
                name=name,
            )
            new_entry.write_into(data, offset + ideal)
            image.write_block(block_num, bytes(data))
            if file_type == FileType.DIR:
                parent.links_count += 1
                image.write_inode(parent_inode_num, parent)
            return

    raise NoSpaceError(f"No space left in directory for '{name}'.")


def remove_entry(image: Ext2Image, parent_inode_num: int, name: str) -> bool:
    """Unlink ``name`` from a directory without freeing its inode.

    The freed record is merged into the previous one; a block's first record
    is instead marked empty. Returns False when the name is not found.
    """
    parent = image.read_inode(parent_inode_num)
    for block_num in parent.block[:_DIRECT_BLOCKS]:
        if not block_num:
            continue
        data = bytearray(image.read_block(block_num))
        previous: Optional[tuple[int, DirEntry]] = None
        for offset, entry in _scan_block(data):
            if entry.inode == 0:
                break
            if entry.name == name:
                if previous is not None:
                    prev_offset, prev_entry = previous
                    prev_entry.rec_len += entry.rec_len
                    prev_entry.write_into(data, prev_offset)
                else:
                    entry.inode = 0
                    entry.write_into(data, offset)
                image.write_block(block_num, bytes(data))
                return True
            previous = (offset, entry)
    return False


def is_empty_directory(image: Ext2Image, inode: Inode) -> bool:
    """True if the directory's first block holds nothing but '.' and '..'."""
    first = inode.block[0]
    if not first:
        return True
    return all(
        entry.inode == 0 or entry.name in (".", "..")
        for _, entry in _scan_block(image.read_block(first))
    )