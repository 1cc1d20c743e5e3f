[build-system]
requires = ["setuptools>=61"]
build-backend = "setuptools.build_meta"

[project]
name = "ext2shell"
version = "0.1.0"
description = "Interactive shell for browsing and editing ext2 filesystem images"
requires-python = ">=3.10"
dependencies = []
keywords = ["ext2", "filesystem", "disk image", "shell", "inode"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
ext2shell = "ext2shell.cli:main"

[tool.setuptools.packages.find]
include = ["ext2shell*"]

[tool.pytest.ini_options]
addopts = "-ra"
