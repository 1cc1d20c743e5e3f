# ext2shell

An interactive shell for exploring and modifying ext2 filesystem images
directly, without mounting them.

## Installation

```
pip install .
```

## Usage

```
ext2shell disk.img
```

The single argument is the image file, which is opened for reading and
writing. Without exactly one argument the command prints a usage line and
exits with status 1; an image that cannot be opened or has no ext2 magic
number gives a `Fatal Error:` message and status 1.

The shell reads commands from standard input, starts in the root directory
and shows the current path in its prompt:

```
nEXT2 Shell initialized. Type 'exit' to quit.
[/]$> mkdir docs
Directory 'docs' created successfully.
[/]$> cd docs
[/docs]$> exit
Exiting shell.
```

Input ends at `exit` or at the end of standard input.

### Commands

| Command                 | Effect                                                   |
|-------------------------|----------------------------------------------------------|
| `info`                  | Volume name, sizes, free space, block size, group count  |
| `ls`                    | List entries of the current directory with inode, record length, name length and file type |
| `pwd`                   | Print the current path                                   |
| `cd <dir>`              | Enter a subdirectory (`..` goes up, `.` stays)           |
| `cat <file>`            | Print a regular file's contents                          |
| `touch <file>`          | Create an empty regular file                             |
| `mkdir <dir>`           | Create a directory holding `.` and `..`                  |
| `rm <file>`             | Unlink a regular file; free it when no links remain      |
| `rmdir <dir>`           | Remove an empty directory                                |
| `cp <file> <host path>` | Copy a file from the image to the host filesystem        |
| `rename <old> <new>`    | Rename an entry in the current directory                 |
| `exit`                  | Leave the shell                                          |

Names containing spaces can be written in double quotes or with a backslash
before each space: `cat "my file.txt"` or `cat my\ file.txt`.

Failures are written to standard error as `Error: ...` (or
`Caught exception: ...` for problems reading the image); the shell keeps
running afterwards.

## Library use

The pieces are usable on their own:

```python
import sys
from ext2shell.image import Ext2Image
from ext2shell.directory import iter_entries, lookup
from ext2shell.structures import ROOT_INO
from ext2shell.shell import Ext2Shell, tokenize

with Ext2Image("disk.img") as image:
    for entry in iter_entries(image, ROOT_INO):
        print(entry.name, entry.inode)
    print(lookup(image, ROOT_INO, "lost+found"))

    shell = Ext2Shell(image, sys.stdout, sys.stderr)
    shell.process_command("info")

print(tokenize('cat "my file.txt"'))  # ['cat', 'my file.txt']
```

- `ext2shell.structures` — `Superblock`, `GroupDesc`, `Inode`, `DirEntry`
  and `FileType`, with `from_bytes` / `to_bytes` encoding.
- `ext2shell.image` — `Ext2Image`: blocks, group descriptors, inodes,
  bitmap allocation (`allocate_inode`, `allocate_block`, `free_inode`,
  `free_block`) and `read_file`. Errors are `Ext2Error` and `NoSpaceError`.
- `ext2shell.directory` — `iter_entries`, `lookup`, `add_entry`,
  `remove_entry` and `is_empty_directory`.
- `ext2shell.shell` — `Ext2Shell`, whose `run` takes any iterable of lines.
- `ext2shell.cli` — `main`, the `ext2shell` command.

## Limitations

- Directories are listed and edited through their twelve direct block
  pointers only; a directory never grows a new block, so an entry that does
  not fit in the existing blocks is refused.
- `cat` and `cp` follow single and double indirect blocks; triple indirect
  blocks are not read.
- `rm` frees only the direct blocks of a file.
- `cd` takes one directory name, not a path with slashes.
- There is no command to write file contents into the image or to copy a
  host file into it; `touch` creates empty files only.
- There is no command to show an inode's attributes or permissions.
- New inodes and blocks are taken from the block group of the current
  directory only.

## Running the tests

```
pip install .[test]
pytest
```