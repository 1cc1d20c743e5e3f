"""Browse and edit ext2 filesystem images: on-disk structures, image access, directories and a shell."""

__version__ = "0.1.0"
__all__ = ["structures", "image", "directory", "shell", "cli"]