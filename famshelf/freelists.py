"""Per-shelf lists of free global pointers kept in shared memory.

Layout, starting at the beginning of the buffer::

    header                 [cache-line aligned]  magic_num, size, list_count
    stacks[list_count]     [cache-line aligned]  one lock-free stack per list
    fixed block allocator  [rest of the space]

Every pointer on a list lives in a block taken from the fixed block
allocator. The block holds the stack link in its first word and the
pointer in its second word.
"""

from __future__ import annotations

import logging

from famshelf.fixed_block_allocator import FixedBlockAllocator
from famshelf.smart_shelf import (
    CACHE_LINE_SIZE,
    VIRTUAL_PAGE_SIZE,
    read_u64,
    round_up,
    write_u64,
)
from famshelf.stack import Stack

log = logging.getLogger(__name__)

MAGIC_NUM = 373354787

_MAGIC_OFFSET = 0
_SIZE_OFFSET = 8
_LIST_COUNT_OFFSET = 16
HEADER_SIZE = round_up(24, CACHE_LINE_SIZE)

_STACK_SIZE = 16
_FBA_BLOCK_SIZE = 16
_POINTER_IN_BLOCK = 8


class FreeListsError(Exception):
    """A free-list structure could not be created, opened or destroyed."""


class FreeListsEmpty(FreeListsError):
    """The requested free list holds no pointer."""


class FreeLists:
    """Free lists laid out at the start of ``buffer``.

    ``avail_size`` is the space available from the start of the buffer.
    After :meth:`create` or :meth:`open`, :attr:`size` is the space the
    structure actually occupies.
    """

    def __init__(self, buffer, avail_size: int) -> None:
        if buffer is None:
            raise ValueError("buffer must not be None")
        view = memoryview(buffer)
        if avail_size > len(view):
            raise ValueError(
                f"available size {avail_size} exceeds the buffer ({len(view)} bytes)"
            )
        self._buf = view
        self._size = avail_size
        self._is_open = False
        self._list_count = 0
        self._fba: FixedBlockAllocator | None = None
        self._stacks: list[Stack] = []

    @property
    def is_open(self) -> bool:
        """Whether the free lists are open."""
        return self._is_open

    @property
    def size(self) -> int:
        """Space occupied by the structure (or available, before create/open)."""
        return self._size

    @property
    def count(self) -> int:
        """Number of lists, known once the structure is open."""
        return self._list_count

    def __enter__(self) -> FreeLists:
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        if self._is_open:
            self.close()

    @staticmethod
    def _lists_size(list_count: int) -> int:
        return round_up(list_count * _STACK_SIZE, CACHE_LINE_SIZE)

    def _make_allocator(self, start: int, length: int) -> FixedBlockAllocator:
        # Keep every block inside the buffer: the allocator's shelf spans whole pages.
        usable = length - length % VIRTUAL_PAGE_SIZE
        if usable <= 0:
            log.error("FreeLists: insufficient space for fba")
            raise FreeListsError("insufficient space for the block allocator")
        try:
            return FixedBlockAllocator(
                self._buf[start : start + usable], _FBA_BLOCK_SIZE, 0, 0, usable
            )
        except (ValueError, RuntimeError) as exc:
            raise FreeListsError(f"cannot set up the block allocator: {exc}") from exc

    def create(self, list_count: int) -> None:
        """Format the buffer with ``list_count`` empty lists."""
        if self._is_open:
            raise FreeListsError("cannot create free lists that are open")
        if list_count <= 0:
            raise ValueError("list_count must be positive")

        cur_size = self._size
        if cur_size < HEADER_SIZE:
            log.error("FreeLists: insufficient space for header")
            raise FreeListsError("insufficient space for header")
        self._buf[0:HEADER_SIZE] = bytes(HEADER_SIZE)

        cur_size -= HEADER_SIZE
        lists_size = self._lists_size(list_count)
        if cur_size < lists_size:
            log.error(
                "FreeLists: insufficient space (%d) for free stacks (%d)",
                cur_size,
                lists_size,
            )
            raise FreeListsError(
                f"insufficient space ({cur_size}) for free stacks ({lists_size})"
            )
        self._buf[HEADER_SIZE : HEADER_SIZE + lists_size] = bytes(lists_size)

        fba_start = HEADER_SIZE + lists_size
        cur_size -= lists_size
        self._make_allocator(fba_start, cur_size)

        total = HEADER_SIZE + lists_size + cur_size
        write_u64(self._buf, _LIST_COUNT_OFFSET, list_count)
        write_u64(self._buf, _SIZE_OFFSET, total)
        # The magic number goes last so a half-made structure never verifies.
        write_u64(self._buf, _MAGIC_OFFSET, MAGIC_NUM)
        self._size = total

    def destroy(self) -> None:
        """Wipe the structure; raise FreeListsError if there is none."""
        if self._is_open:
            raise FreeListsError("cannot destroy free lists that are open")
        if not self.verify():
            raise FreeListsError("no free lists to destroy")
        size = read_u64(self._buf, _SIZE_OFFSET)
        self._size = size
        self._buf[0:size] = bytes(size)

    def verify(self) -> bool:
        """Whether the buffer holds formatted free lists."""
        return read_u64(self._buf, _MAGIC_OFFSET) == MAGIC_NUM

    def open(self) -> None:
        """Open formatted free lists for use."""
        if self._is_open:
            raise FreeListsError("free lists are already open")
        if not self.verify():
            found = read_u64(self._buf, _MAGIC_OFFSET)
            log.error("FreeLists: header->magic_num does not match %d", found)
            raise FreeListsError("header magic number does not match")
        stored_size = read_u64(self._buf, _SIZE_OFFSET)
        if stored_size > self._size:
            log.error("FreeLists: header->size does not match")
            raise FreeListsError("header size does not fit in the available space")

        self._size = stored_size
        self._list_count = read_u64(self._buf, _LIST_COUNT_OFFSET)
        total_header = HEADER_SIZE + self._lists_size(self._list_count)
        self._fba = self._make_allocator(total_header, self._size - total_header)
        shelf = self._fba.underlying_shelf()
        self._stacks = [
            Stack(self._buf, HEADER_SIZE + index * _STACK_SIZE, shelf)
            for index in range(self._list_count)
        ]
        self._is_open = True

    def close(self) -> None:
        """Close the free lists."""
        if not self._is_open:
            raise FreeListsError("free lists are not open")
        self._is_open = False
        self._stacks = []
        self._fba = None

    def _stack(self, shelf_idx: int) -> Stack:
        if not self._is_open:
            raise FreeListsError("free lists are not open")
        if not 0 <= shelf_idx < self._list_count:
            raise IndexError(f"list index {shelf_idx} out of range")
        return self._stacks[shelf_idx]

    def put_pointer(self, shelf_idx: int, ptr: int) -> bool:
        """Add ``ptr`` to list ``shelf_idx``; return False if no block was free to hold it."""
        stack = self._stack(shelf_idx)
        assert self._fba is not None
        block = self._fba.alloc()
        if block == 0:
            return False
        write_u64(self._fba.underlying_shelf().buffer, block + _POINTER_IN_BLOCK, ptr)
        stack.push(block)
        return True

    def get_pointer(self, shelf_idx: int) -> int:
        """Take the most recently added pointer off list ``shelf_idx``."""
        stack = self._stack(shelf_idx)
        assert self._fba is not None
        block = stack.pop()
        if block == 0:
            raise FreeListsEmpty(f"free list {shelf_idx} is empty")
        ptr = read_u64(self._fba.underlying_shelf().buffer, block + _POINTER_IN_BLOCK)
        self._fba.free(block)
        return ptr