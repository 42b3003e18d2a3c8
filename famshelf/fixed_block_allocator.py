"""An allocator of fixed-size blocks living inside a shared-memory shelf.

Shelf layout::

    shelf metadata        [1 cache line]
    allocator metadata    [fixed section]
    user metadata         [cache-line aligned]
    blocks                [up to the shelf size, block-size aligned]

Freed blocks are kept on a lock-free stack; blocks that were never handed
out are taken from a high-water mark that only ever grows.
"""

from __future__ import annotations

from famshelf.smart_shelf import (
    CACHE_LINE_SIZE,
    SmartShelf,
    cas_u64,
    read_u64,
    round_up,
)
from famshelf.stack import Stack

# Allocator metadata, relative to the start of the shelf (fixed section
# begins one cache line in). The stack head is 16-byte aligned.
_BLOCK_SIZE_OFFSET = CACHE_LINE_SIZE
_FIRST_BLOCK_OFFSET = CACHE_LINE_SIZE + 8
_NEVER_ALLOCATED_OFFSET = CACHE_LINE_SIZE + 16
_FREE_STACK_OFFSET = CACHE_LINE_SIZE + 32
_METADATA_SIZE = 48


def _incompatible(thing: str, desired: int, actual: int) -> RuntimeError:
    return RuntimeError(
        f"FixedBlockAllocator: shelf has existing incompatible {thing} "
        f"({actual} versus desired {desired})"
    )


class FixedBlockAllocator:
    """Hands out blocks of one size from a shelf mapped at the start of ``buffer``.

    Constructing the allocator on zeroed memory formats it; constructing it
    again on the same memory checks that the parameters agree and raises
    :class:`RuntimeError` if they do not.
    """

    def __init__(
        self,
        buffer,
        block_size: int,
        user_metadata_size: int,
        initial_pool_size: int,
        max_pool_size: int,
    ) -> None:
        del initial_pool_size  # the pool is never grown, so this is unused
        self._shelf = SmartShelf(buffer, _METADATA_SIZE, max_pool_size)
        self._free_stack = Stack(self._shelf.buffer, _FREE_STACK_OFFSET, self._shelf)

        if block_size == 0:
            block_size = 1
        # The smallest unit of sharing is one cache line.
        block_size = round_up(block_size, CACHE_LINE_SIZE)
        user_metadata_size = round_up(user_metadata_size, CACHE_LINE_SIZE)

        user_metadata_start = self._shelf.start_ptr()
        first_block = round_up(user_metadata_start + user_metadata_size, block_size)
        if first_block > max_pool_size:
            raise RuntimeError(
                "FixedBlockAllocator: there is insufficient space for requested user metadata"
            )

        buf = self._shelf.buffer
        old = cas_u64(buf, _BLOCK_SIZE_OFFSET, 0, block_size)
        if old not in (0, block_size):
            raise _incompatible("block size", block_size, old)

        old = cas_u64(buf, _FIRST_BLOCK_OFFSET, 0, first_block)
        if old not in (0, first_block):
            raise _incompatible(
                "user metadata size",
                first_block - user_metadata_start,
                old - user_metadata_start,
            )

    def _first_block(self) -> int:
        return read_u64(self._shelf.buffer, _FIRST_BLOCK_OFFSET)

    def size(self) -> int:
        """Size of the underlying shelf."""
        return self._shelf.size()

    def block_size(self) -> int:
        """Size of every block, a multiple of the cache line size."""
        return read_u64(self._shelf.buffer, _BLOCK_SIZE_OFFSET)

    def max_blocks(self) -> int:
        """Maximum number of blocks that can be allocated at once."""
        return (self._shelf.size() - self._first_block()) // self.block_size()

    def user_metadata(self) -> memoryview:
        """Writable view of the user metadata area."""
        start = self._shelf.start_ptr()
        return self._shelf.buffer[start : self._first_block()]

    def user_metadata_size(self) -> int:
        """Size of the user metadata area (cache-line aligned)."""
        return self._first_block() - self._shelf.start_ptr()

    def underlying_shelf(self) -> SmartShelf:
        """The shelf the blocks live in."""
        return self._shelf

    def alloc(self) -> int:
        """Allocate a block and return its offset, or 0 if none is available."""
        block = self._free_stack.pop()
        if block:
            return block

        buf = self._shelf.buffer
        block_size = self.block_size()
        old_never = read_u64(buf, _NEVER_ALLOCATED_OFFSET)
        while True:
            block = old_never or self._first_block()
            new_never = block + block_size
            if new_never > self._shelf.size():
                return 0
            result = cas_u64(buf, _NEVER_ALLOCATED_OFFSET, old_never, new_never)
            if result == old_never:
                return block
            old_never = result

    def free(self, block: int) -> None:
        """Return a block to the allocator; freeing offset 0 does nothing."""
        if block == 0:
            return
        # Writes go straight to the buffer, so there is nothing to flush.
        self.unsafe_free(block)

    def unsafe_free(self, block: int) -> None:
        """Return a block whose contents are already persisted; 0 does nothing."""
        if block == 0:
            return
        self._free_stack.push(block)

    def from_offset(self, offset: int) -> memoryview | None:
        """View of the shelf starting at ``offset``; ``None`` for 0."""
        return self._shelf.from_offset(offset)

    def to_offset(self, address: memoryview | None) -> int:
        """Offset of a view obtained from :meth:`from_offset`; 0 for ``None``."""
        return self._shelf.to_offset(address)

    def __getitem__(self, offset: int) -> memoryview | None:
        return self.from_offset(offset)