[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "famshelf"
version = "0.1.0"
description = "Shared-memory shelf structures: lock-free stacks, fixed-block allocators, free lists, ownership tables, bump heaps, shelf regions and epoch vectors"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "shared-memory",
    "mmap",
    "allocator",
    "lock-free",
    "epoch",
    "persistent-memory",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["famshelf"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
