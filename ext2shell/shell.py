"""Interactive command shell operating on an ext2 image."""

from __future__ import annotations

import sys
import time
from collections.abc import Callable, Iterable
from typing import Optional, TextIO

from .directory import add_entry, is_empty_directory, iter_entries, lookup, remove_entry
from .image import Ext2Error, Ext2Image, NoSpaceError
from .structures import NAME_LEN, ROOT_INO, S_IFDIR, S_IFREG, DirEntry, FileType, Inode

_DIRECT_BLOCKS = 12


class ShellError(Exception):
    """A command failed; the message is shown to the user after 'Error: '."""


def tokenize(text: str) -> list[str]:
    """Split a command line on whitespace, honouring double quotes and backslash escapes."""
    tokens: list[str] = []
    current: list[str] = []
    in_quotes = False
    escaping = False
    for char in text:
        if escaping:
            current.append(char)
            escaping = False
        elif char == "\\":
            escaping = True
        elif char == '"':
            in_quotes = not in_quotes
        elif char.isspace() and not in_quotes:
            if current:
                tokens.append("".join(current))
                current.clear()
        else:
            current.append(char)
    if current:
        tokens.append("".join(current))
    return tokens


class Ext2Shell:
    """A small shell that lists, reads and edits the directories of an ext2 image."""

    def __init__(
        self,
        image: Ext2Image,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
    ) -> None:
        self.image = image
        self.out = out if out is not None else sys.stdout
        self.err = err if err is not None else sys.stderr
        self.path: list[str] = []
        self.current_inode_num = ROOT_INO
        self.current_group = 0
        self._enter(ROOT_INO)

    # --- helpers --------------------------------------------------------

    def _enter(self, inode_num: int) -> None:
        self.current_inode_num = inode_num
        self.current_group = self.image.group_of_inode(inode_num)

    def _say(self, text: str = "") -> None:
        print(text, file=self.out)

    def _block_group(self, block_num: int) -> int:
        return (block_num - 1) // self.image.superblock.blocks_per_group

    def _lookup(self, name: str) -> Optional[int]:
        return lookup(self.image, self.current_inode_num, name)

    @staticmethod
    def _check_name_length(name: str) -> None:
        if len(name.encode("utf-8", errors="surrogateescape")) >= NAME_LEN:
            raise ShellError(f"Name too long (max {NAME_LEN - 1} characters).")

    def _allocate_inode(self) -> int:
        try:
            return self.image.allocate_inode(self.current_group)
        except NoSpaceError as exc:
            raise ShellError("No free inodes available.") from exc

    def _free_inode(self, inode_num: int) -> None:
        self.image.free_inode(self.image.group_of_inode(inode_num), inode_num)

    def _free_block(self, block_num: int) -> None:
        self.image.free_block(self._block_group(block_num), block_num)

    # --- shell loop -----------------------------------------------------

    def prompt(self) -> str:
        """The prompt, showing the current path."""
        return "[/" + "/".join(self.path) + "]$> "

    def run(self, lines: Iterable[str]) -> None:
        """Read commands from ``lines`` until they run out or one is 'exit'."""
        self._say("nEXT2 Shell initialized. Type 'exit' to quit.")
        for raw in self._prompted(lines):
            line = raw.rstrip("\r\n")
            if line == "exit":
                break
            if line:
                self.process_command(line)
        self._say("Exiting shell.")

    def _prompted(self, lines: Iterable[str]) -> Iterable[str]:
        self.out.write(self.prompt())
        self.out.flush()
        for line in lines:
            yield line
            self.out.write(self.prompt())
            self.out.flush()

    def process_command(self, line: str) -> None:
        """Run one command line, reporting failures on the error stream."""
        tokens = tokenize(line)
        if not tokens:
            return
        command, args = tokens[0], tokens[1:]
        no_args: dict[str, Callable[[], None]] = {
            "info": self.info,
            "ls": self.ls,
            "pwd": self.pwd,
        }
        one_arg: dict[str, Callable[[str], None]] = {
            "cd": self.cd,
            "cat": self.cat,
            "touch": self.touch,
            "mkdir": self.mkdir,
            "rm": self.rm,
            "rmdir": self.rmdir,
        }
        two_args: dict[str, Callable[[str, str], None]] = {
            "cp": self.cp,
            "rename": self.rename,
        }
        try:
            if command in no_args:
                no_args[command]()
            elif command in one_arg and len(args) == 1:
                one_arg[command](args[0])
            elif command in two_args and len(args) == 2:
                two_args[command](args[0], args[1])
            else:
                raise ShellError("Unknown command or incorrect arguments.")
        except ShellError as exc:
            print(f"Error: {exc}", file=self.err)
        except (Ext2Error, OSError, ValueError) as exc:
            print(f"Caught exception: {exc}", file=self.err)

    # --- commands -------------------------------------------------------

    def info(self) -> None:
        """Print a summary of the filesystem."""
        sb = self.image.superblock
        bs = self.image.block_size
        self._say(f"Volume name.....: {sb.volume_name}")
        self._say(f"Image size......: {sb.blocks_count * bs // 1024} KiB")
        self._say(f"Free space......: {sb.free_blocks_count * bs // 1024} KiB")
        self._say(f"Free inodes.....: {sb.free_inodes_count}")
        self._say(f"Block size......: {bs} bytes")
        groups = sb.blocks_count // sb.blocks_per_group if sb.blocks_per_group else 0
        self._say(f"Groups count....: {groups}")

    def ls(self) -> None:
        """Print every entry of the current directory."""
        for entry in iter_entries(self.image, self.current_inode_num):
            self._say(entry.name)
            self._say(f"inode: {entry.inode}")
            self._say(f"record lenght: {entry.rec_len}")
            self._say(f"name lenght: {entry.name_len}")
            self._say(f"file type: {entry.file_type}")
            self._say()

    def pwd(self) -> None:
        """Print the current path."""
        self._say(self.prompt())

    def cd(self, path: str) -> None:
        """Change into a subdirectory of the current directory, or '..' / '.'."""
        if path == "..":
            if self.path:
                parents = self.path[:-1]
                self.path = []
                self._enter(ROOT_INO)
                for part in parents:
                    self.cd(part)
            return
        if path == ".":
            return
        inode_num = self._lookup(path)
        if inode_num is None:
            raise ShellError(f"Directory '{path}' not found.")
        if not self.image.read_inode(inode_num).is_dir():
            raise ShellError(f"'{path}' is not a directory.")
        self._enter(inode_num)
        self.path.append(path)

    def cat(self, name: str) -> None:
        """Print the contents of a regular file."""
        inode_num = self._lookup(name)
        if inode_num is None:
            raise ShellError(f"File '{name}' not found.")
        inode = self.image.read_inode(inode_num)
        if not inode.is_regular():
            raise ShellError(f"'{name}' is not a regular file.")
        data = self.image.read_file(inode)
        self.out.write(data.decode("utf-8", errors="replace"))
        self._say()
        if len(data) < inode.size:
            raise ShellError(f"Failed to read entire file '{name}'.")

    def touch(self, name: str) -> None:
        """Create an empty regular file."""
        self._check_name_length(name)
        if self._lookup(name) is not None:
            raise ShellError(f"File '{name}' already exists.")
        inode_num = self._allocate_inode()
        now = int(time.time()) & 0xFFFFFFFF
        inode = Inode(
            mode=S_IFREG | 0o644,
            links_count=1,
            atime=now,
            ctime=now,
            mtime=now,
        )
        self.image.write_inode(inode_num, inode)
        try:
            add_entry(self.image, self.current_inode_num, inode_num, name, FileType.REG_FILE)
        except NoSpaceError as exc:
            self._free_inode(inode_num)
            raise ShellError("Failed to add directory entry.") from exc
        self._say(f"File '{name}' created successfully.")

    def mkdir(self, name: str) -> None:
        """Create an empty directory holding '.' and '..'."""
        if self._lookup(name) is not None:
            raise ShellError(f"File or directory '{name}' already exists.")
        inode_num = self._allocate_inode()
        try:
            block_num = self.image.allocate_block(self.current_group)
        except NoSpaceError as exc:
            self._free_inode(inode_num)
            raise ShellError("No free blocks available.") from exc

        bs = self.image.block_size
        now = int(time.time()) & 0xFFFFFFFF
        inode = Inode(
            mode=S_IFDIR | 0o755,
            size=bs,
            links_count=2,
            blocks=bs // 512,
            atime=now,
            ctime=now,
            mtime=now,
        )
        inode.block[0] = block_num
        self.image.write_inode(inode_num, inode)

        data = bytearray(bs)
        DirEntry(inode=inode_num, rec_len=12, file_type=FileType.DIR, name=".").write_into(data, 0)
        DirEntry(
            inode=self.current_inode_num, rec_len=bs - 12, file_type=FileType.DIR, name=".."
        ).write_into(data, 12)
        self.image.write_block(block_num, bytes(data))

        try:
            add_entry(self.image, self.current_inode_num, inode_num, name, FileType.DIR)
        except NoSpaceError as exc:
            self._free_block(block_num)
            self._free_inode(inode_num)
            raise ShellError("Failed to add directory entry.") from exc
        self._say(f"Directory '{name}' created successfully.")

    def rm(self, name: str) -> None:
        """Remove a regular file, freeing it once no links are left."""
        inode_num = self._lookup(name)
        if inode_num is None:
            raise ShellError(f"File or directory named '{name}' does not exist.")
        inode = self.image.read_inode(inode_num)
        if inode.is_dir():
            raise ShellError(f"'{name}' is a directory. 'rmdir' should be used instead.")

        removed = remove_entry(self.image, self.current_inode_num, name)
        if not removed:
            raise ShellError(f"File '{name}' not found in current directory.")

        inode.links_count = max(inode.links_count - 1, 0)
        self.image.write_inode(inode_num, inode)
        if inode.links_count == 0:
            self._say(f"Removing file '{name}' and freeing its resources.")
            for block_num in inode.block[:_DIRECT_BLOCKS]:
                if block_num:
                    self._free_block(block_num)
            self._free_inode(inode_num)
        self._say(f"File '{name}' removed successfully.")

    def rmdir(self, name: str) -> None:
        """Remove an empty directory."""
        inode_num = self._lookup(name)
        if inode_num is None:
            raise ShellError(f"File or directory named '{name}' does not exist.")
        inode = self.image.read_inode(inode_num)
        if not inode.is_dir():
            raise ShellError(f"'{name}' is not a directory.")
        if inode.links_count > 2 or not is_empty_directory(self.image, inode):
            raise ShellError(f"Directory '{name}' is not empty.")

        if not remove_entry(self.image, self.current_inode_num, name):
            raise ShellError(f"Could not remove directory entry for '{name}'.")

        parent = self.image.read_inode(self.current_inode_num)
        parent.links_count = max(parent.links_count - 1, 0)
        self.image.write_inode(self.current_inode_num, parent)

        if inode.block[0]:
            self._free_block(inode.block[0])
        self._free_inode(inode_num)
        self._say(f"Directory '{name}' removed successfully.")

    def cp(self, source: str, dest: str) -> None:
        """Copy a regular file out of the image to a path on the host."""
        inode_num = self._lookup(source)
        if inode_num is None:
            raise ShellError(f"Source file '{source}' does not exist.")
        inode = self.image.read_inode(inode_num)
        if not inode.is_regular():
            raise ShellError(f"Source '{source}' is not a regular file.")
        try:
            handle = open(dest, "wb")
        except OSError as exc:
            raise ShellError(f"Could not open destination file '{dest}' for writing.") from exc
        with handle:
            handle.write(self.image.read_file(inode))
        self._say(f"File '{source}' copied to '{dest}' successfully.")

    def rename(self, old_name: str, new_name: str) -> None:
        """Give an entry of the current directory a new name."""
        self._check_name_length(new_name)
        inode_num = self._lookup(old_name)
        if inode_num is None:
            raise ShellError(f"'{old_name}' not found.")
        if self._lookup(new_name) is not None:
            raise ShellError(f"'{new_name}' already exists.")

        is_directory = self.image.read_inode(inode_num).is_dir()
        file_type = FileType.DIR if is_directory else FileType.REG_FILE
        try:
            add_entry(self.image, self.current_inode_num, inode_num, new_name, file_type)
        except NoSpaceError as exc:
            raise ShellError(f"Insufficient space to create '{new_name}'.") from exc
        remove_entry(self.image, self.current_inode_num, old_name)

        if is_directory:
            # The new entry counted as an extra link of the parent; the old one is gone.
            parent = self.image.read_inode(self.current_inode_num)
            parent.links_count = max(parent.links_count - 1, 0)
            self.image.write_inode(self.current_inode_num, parent)
        self._say(f"Renamed '{old_name}' to '{new_name}' successfully.")