"""On-disk structures of the ext2 filesystem and helpers to encode them."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum

BASE_OFFSET = 1024
EXT2_SUPER_MAGIC = 0xEF53
N_BLOCKS = 15
NAME_LEN = 255
ROOT_INO = 2

S_IFMT = 0xF000
S_IFREG = 0x8000
S_IFDIR = 0x4000

S_IRUSR = 0x0100
S_IWUSR = 0x0080
S_IXUSR = 0x0040
S_IRGRP = 0x0020
S_IWGRP = 0x0010
S_IXGRP = 0x0008
S_IROTH = 0x0004
S_IWOTH = 0x0002
S_IXOTH = 0x0001


class FileType(IntEnum):
    """File type codes stored in directory entries."""

    UNKNOWN = 0
    REG_FILE = 1
    DIR = 2
    CHRDEV = 3
    BLKDEV = 4
    FIFO = 5
    SOCK = 6
    SYMLINK = 7


def is_dir(mode: int) -> bool:
    """Return True if an inode mode describes a directory."""
    return (mode & S_IFMT) == S_IFDIR


def is_regular(mode: int) -> bool:
    """Return True if an inode mode describes a regular file."""
    return (mode & S_IFMT) == S_IFREG


def ideal_rec_len(name_len: int) -> int:
    """Smallest record length for a directory entry with a name of this length."""
    return 8 + ((name_len + 3) & ~3)


def _require(data: bytes, size: int, what: str, offset: int = 0) -> None:
    if offset < 0 or len(data) < offset + size:
        raise ValueError(f"{what} needs {size} bytes at offset {offset}, got {len(data)} total")


_SUPER_HEAD = struct.Struct("<13I6H4I")
_SUPER_HEAD_FIELDS = (
    "inodes_count",
    "blocks_count",
    "r_blocks_count",
    "free_blocks_count",
    "free_inodes_count",
    "first_data_block",
    "log_block_size",
    "log_frag_size",
    "blocks_per_group",
    "frags_per_group",
    "inodes_per_group",
    "mtime",
    "wtime",
    "mnt_count",
    "max_mnt_count",
    "magic",
    "state",
    "errors",
    "minor_rev_level",
    "lastcheck",
    "checkinterval",
    "creator_os",
    "rev_level",
)
_VOLUME_NAME_OFFSET = 120
_VOLUME_NAME_SIZE = 16


@dataclass
class Superblock:
    """The filesystem superblock; bytes not modelled here are kept in ``raw``."""

    SIZE = 1024

    inodes_count: int = 0
    blocks_count: int = 0
    r_blocks_count: int = 0
    free_blocks_count: int = 0
    free_inodes_count: int = 0
    first_data_block: int = 0
    log_block_size: int = 0
    log_frag_size: int = 0
    blocks_per_group: int = 0
    frags_per_group: int = 0
    inodes_per_group: int = 0
    mtime: int = 0
    wtime: int = 0
    mnt_count: int = 0
    max_mnt_count: int = 0
    magic: int = EXT2_SUPER_MAGIC
    state: int = 0
    errors: int = 0
    minor_rev_level: int = 0
    lastcheck: int = 0
    checkinterval: int = 0
    creator_os: int = 0
    rev_level: int = 0
    raw_volume_name: bytes = bytes(_VOLUME_NAME_SIZE)
    raw: bytes = field(default=bytes(1024), repr=False)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Superblock":
        """Decode a superblock from at least 1024 bytes."""
        _require(data, cls.SIZE, "superblock")
        raw = bytes(data[: cls.SIZE])
        values = _SUPER_HEAD.unpack_from(raw, 0)
        name = raw[_VOLUME_NAME_OFFSET : _VOLUME_NAME_OFFSET + _VOLUME_NAME_SIZE]
        return cls(**dict(zip(_SUPER_HEAD_FIELDS, values)), raw_volume_name=name, raw=raw)

    def to_bytes(self) -> bytes:
        """Encode the superblock as 1024 bytes."""
        buffer = bytearray(self.raw[: self.SIZE].ljust(self.SIZE, b"\0"))
        try:
            _SUPER_HEAD.pack_into(
                buffer, 0, *(getattr(self, name) for name in _SUPER_HEAD_FIELDS)
            )
        except struct.error as exc:
            raise ValueError(f"superblock field out of range: {exc}") from exc
        if len(self.raw_volume_name) > _VOLUME_NAME_SIZE:
            raise ValueError("volume name longer than 16 bytes")
        buffer[_VOLUME_NAME_OFFSET : _VOLUME_NAME_OFFSET + _VOLUME_NAME_SIZE] = (
            self.raw_volume_name.ljust(_VOLUME_NAME_SIZE, b"\0")
        )
        return bytes(buffer)

    @property
    def block_size(self) -> int:
        """Size of a filesystem block in bytes."""
        return 1024 << self.log_block_size

    @property
    def volume_name(self) -> str:
        """Volume label, up to the first NUL byte."""
        return self.raw_volume_name.split(b"\0", 1)[0].decode("utf-8", errors="replace")


_GROUP_DESC = struct.Struct("<3I4H3I")


@dataclass
class GroupDesc:
    """A block group descriptor."""

    SIZE = _GROUP_DESC.size

    block_bitmap: int = 0
    inode_bitmap: int = 0
    inode_table: int = 0
    free_blocks_count: int = 0
    free_inodes_count: int = 0
    used_dirs_count: int = 0
    pad: int = 0
    reserved: tuple[int, int, int] = (0, 0, 0)

    @classmethod
    def from_bytes(cls, data: bytes) -> "GroupDesc":
        """Decode a group descriptor from the start of ``data``."""
        _require(data, cls.SIZE, "group descriptor")
        values = _GROUP_DESC.unpack_from(data, 0)
        return cls(*values[:7], reserved=tuple(values[7:]))

    def to_bytes(self) -> bytes:
        """Encode the group descriptor."""
        if len(self.reserved) != 3:
            raise ValueError("group descriptor needs exactly 3 reserved words")
        try:
            return _GROUP_DESC.pack(
                self.block_bitmap,
                self.inode_bitmap,
                self.inode_table,
                self.free_blocks_count,
                self.free_inodes_count,
                self.used_dirs_count,
                self.pad,
                *self.reserved,
            )
        except struct.error as exc:
            raise ValueError(f"group descriptor field out of range: {exc}") from exc


_INODE = struct.Struct(f"<2H5I2H3I{N_BLOCKS}I4I12s")


@dataclass
class Inode:
    """An inode: metadata and block pointers of one file or directory."""

    SIZE = _INODE.size

    mode: int = 0
    uid: int = 0
    size: int = 0
    atime: int = 0
    ctime: int = 0
    mtime: int = 0
    dtime: int = 0
    gid: int = 0
    links_count: int = 0
    blocks: int = 0
    flags: int = 0
    osd1: int = 0
    block: list[int] = field(default_factory=lambda: [0] * N_BLOCKS)
    generation: int = 0
    file_acl: int = 0
    dir_acl: int = 0
    faddr: int = 0
    osd2: bytes = bytes(12)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Inode":
        """Decode an inode from the start of ``data``."""
        _require(data, cls.SIZE, "inode")
        values = _INODE.unpack_from(data, 0)
        head, pointers, tail = values[:12], values[12 : 12 + N_BLOCKS], values[12 + N_BLOCKS :]
        return cls(*head, list(pointers), *tail)

    def to_bytes(self) -> bytes:
        """Encode the inode."""
        if len(self.block) != N_BLOCKS:
            raise ValueError(f"inode needs exactly {N_BLOCKS} block pointers")
        if len(self.osd2) > 12:
            raise ValueError("osd2 longer than 12 bytes")
        try:
            return _INODE.pack(
                self.mode,
                self.uid,
                self.size,
                self.atime,
                self.ctime,
                self.mtime,
                self.dtime,
                self.gid,
                self.links_count,
                self.blocks,
                self.flags,
                self.osd1,
                *self.block,
                self.generation,
                self.file_acl,
                self.dir_acl,
                self.faddr,
                self.osd2,
            )
        except struct.error as exc:
            raise ValueError(f"inode field out of range: {exc}") from exc

    def is_dir(self) -> bool:
        """True if this inode is a directory."""
        return is_dir(self.mode)

    def is_regular(self) -> bool:
        """True if this inode is a regular file."""
        return is_regular(self.mode)


_DIR_HEAD = struct.Struct("<IHBB")


@dataclass
class DirEntry:
    """One record of a directory block."""

    HEADER_SIZE = _DIR_HEAD.size

    inode: int
    rec_len: int
    file_type: int
    name: str

    @property
    def raw_name(self) -> bytes:
        """The name as stored on disk."""
        return self.name.encode("utf-8", errors="surrogateescape")

    @property
    def name_len(self) -> int:
        """Length of the stored name in bytes."""
        return len(self.raw_name)

    @classmethod
    def from_bytes(cls, data: bytes, offset: int = 0) -> "DirEntry":
        """Decode the entry that starts at ``offset`` in ``data``."""
        _require(data, cls.HEADER_SIZE, "directory entry", offset)
        inode, rec_len, name_len, file_type = _DIR_HEAD.unpack_from(data, offset)
        start = offset + cls.HEADER_SIZE
        _require(data, name_len, "directory entry name", start)
        name = bytes(data[start : start + name_len]).decode("utf-8", errors="surrogateescape")
        return cls(inode=inode, rec_len=rec_len, file_type=file_type, name=name)

    def _encode(self) -> bytes:
        raw = self.raw_name
        if len(raw) > NAME_LEN:
            raise ValueError(f"name longer than {NAME_LEN} bytes")
        try:
            return _DIR_HEAD.pack(self.inode, self.rec_len, len(raw), self.file_type) + raw
        except struct.error as exc:
            raise ValueError(f"directory entry field out of range: {exc}") from exc

    def to_bytes(self) -> bytes:
        """Header and name, padded with NULs to the ideal record length."""
        encoded = self._encode()
        return encoded.ljust(ideal_rec_len(self.name_len), b"\0")

    def write_into(self, buffer: bytearray, offset: int) -> None:
        """Write header and name (without padding) into ``buffer`` at ``offset``."""
        encoded = self._encode()
        if offset < 0 or offset + len(encoded) > len(buffer):
            raise ValueError("directory entry does not fit in buffer")
        buffer[offset : offset + len(encoded)] = encoded