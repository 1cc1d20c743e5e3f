"""Command-line entry point: open an image and start the shell."""

from __future__ import annotations

import sys
from typing import Optional, Sequence

from .image import Ext2Error, Ext2Image
from .shell import Ext2Shell


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the shell on the image named by the single argument; return the exit status."""
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) != 1:
        print("Usage: next2shell <image_file.img>", file=sys.stderr)
        return 1
    try:
        with Ext2Image(args[0]) as image:
            Ext2Shell(image, sys.stdout, sys.stderr).run(sys.stdin)
    except Ext2Error as exc:
        print(f"Fatal Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())