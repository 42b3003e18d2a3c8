"""A simple lock-free stack of blocks kept in shared memory.

The stack head is a 128-bit value: the offset of the top block and an ABA
counter that is incremented every time the head is written. Each block on
the stack holds the offset of the next block in its first 64-bit word.
Blocks must be cache-line aligned, at least a cache line long, not touched
by anyone else while on the stack, and all belong to the same base region.
"""

from __future__ import annotations

from famshelf.smart_shelf import SmartShelf, cas_u128, read_u128, read_u64, write_u64

_U64_MASK = (1 << 64) - 1


class Stack:
    """Stack whose head lives at ``head_offset`` in ``buffer``.

    ``base`` is the region the block offsets refer to: either a
    :class:`SmartShelf` or a raw buffer.
    """

    def __init__(self, buffer, head_offset: int, base) -> None:
        self._head_buffer = memoryview(buffer)
        self._head_offset = head_offset
        if isinstance(base, SmartShelf):
            self._blocks = base.buffer
        else:
            self._blocks = memoryview(base)

    def push(self, block: int) -> None:
        """Push the block at offset ``block``."""
        if block == 0:
            raise ValueError("cannot push block at offset 0")
        old = read_u128(self._head_buffer, self._head_offset)
        while True:
            write_u64(self._blocks, block, old[0])
            store = (block, (old[1] + 1) & _U64_MASK)
            result = cas_u128(self._head_buffer, self._head_offset, old, store)
            if result == old:
                return
            old = result

    def pop(self) -> int:
        """Pop the top block and return its offset, or 0 if the stack is empty."""
        old = read_u128(self._head_buffer, self._head_offset)
        while True:
            block = old[0]
            if block == 0:
                return 0
            following = read_u64(self._blocks, block)
            store = (following, (old[1] + 1) & _U64_MASK)
            result = cas_u128(self._head_buffer, self._head_offset, old, store)
            if result == old:
                return block
            old = result