"""A shelf laid out in shared memory: a metadata line, a fixed section and a variable section.

Layout of a shelf::

    shelf metadata   [1 cache line]  fixed_section_size, max_shelf_size
    fixed section    [multiple of cache lines]
    variable section

Offsets into the variable section are measured from the start of the shelf;
offset 0 plays the role of a null pointer.

The atomic helpers in this module work on any writable buffer (``bytearray``,
``mmap``, ``memoryview``). Words are stored little-endian. A 128-bit value is
a pair of 64-bit words in memory order. The helpers serialise through one
process-wide lock, which makes them atomic between the threads of a process.
"""

from __future__ import annotations

import os
import struct
import threading

CACHE_LINE_SIZE = 64
VIRTUAL_PAGE_SIZE = 4096

_U64 = struct.Struct("<Q")
_U128 = struct.Struct("<QQ")
_ATOMIC_LOCK = threading.RLock()


class ShelfIOError(OSError):
    """An I/O error on a shelf, carrying the errno value."""

    def __init__(self, error_no: int) -> None:
        super().__init__(error_no, "I/O error: " + os.strerror(error_no))
        self.error_no = error_no


def round_up(value: int, alignment: int) -> int:
    """Round ``value`` up to the next multiple of ``alignment``."""
    if alignment <= 0:
        raise ValueError("alignment must be positive")
    return -(-value // alignment) * alignment


def read_u64(buffer, offset: int) -> int:
    """Atomically read the 64-bit word at ``offset``."""
    with _ATOMIC_LOCK:
        return _U64.unpack_from(buffer, offset)[0]


def write_u64(buffer, offset: int, value: int) -> None:
    """Atomically write the 64-bit word at ``offset``."""
    with _ATOMIC_LOCK:
        _U64.pack_into(buffer, offset, value)


def cas_u64(buffer, offset: int, expected: int, desired: int) -> int:
    """Compare-and-store a 64-bit word; return the value found before the operation."""
    with _ATOMIC_LOCK:
        current = _U64.unpack_from(buffer, offset)[0]
        if current == expected:
            _U64.pack_into(buffer, offset, desired)
        return current


def read_u128(buffer, offset: int) -> tuple[int, int]:
    """Atomically read the pair of 64-bit words at ``offset``."""
    with _ATOMIC_LOCK:
        return _U128.unpack_from(buffer, offset)


def write_u128(buffer, offset: int, value: tuple[int, int]) -> None:
    """Atomically write a pair of 64-bit words at ``offset``."""
    low, high = value
    with _ATOMIC_LOCK:
        _U128.pack_into(buffer, offset, low, high)


def cas_u128(
    buffer, offset: int, expected: tuple[int, int], desired: tuple[int, int]
) -> tuple[int, int]:
    """Compare-and-store a pair of 64-bit words; return the pair found before the operation."""
    expected = tuple(expected)
    low, high = desired
    with _ATOMIC_LOCK:
        current = _U128.unpack_from(buffer, offset)
        if current == expected:
            _U128.pack_into(buffer, offset, low, high)
        return current


_FIXED_SIZE_OFFSET = 0
_MAX_SIZE_OFFSET = 8


class SmartShelf:
    """A shelf mapped at the start of ``buffer``.

    Creating a shelf on zeroed memory records its parameters; creating it
    again on the same memory checks that the parameters agree.
    """

    def __init__(self, buffer, fixed_section_size: int, max_shelf_size: int) -> None:
        if buffer is None:
            raise ValueError("shelf buffer must not be None")
        max_shelf_size = round_up(max_shelf_size, VIRTUAL_PAGE_SIZE)
        start = round_up(CACHE_LINE_SIZE + fixed_section_size, CACHE_LINE_SIZE)
        if start > max_shelf_size:
            raise ValueError("Shelf size too small for shelf overhead+fixed section")

        self.buffer = memoryview(buffer)
        self._start = start
        self._mapped_size = max_shelf_size

        old_size = cas_u64(self.buffer, _FIXED_SIZE_OFFSET, 0, fixed_section_size)
        if old_size not in (0, fixed_section_size):
            raise RuntimeError(
                "Shelf has different fixed section size from one specified "
                f"({old_size} versus {fixed_section_size})"
            )

        old_size = cas_u64(self.buffer, _MAX_SIZE_OFFSET, 0, max_shelf_size)
        if old_size not in (0, max_shelf_size):
            raise RuntimeError(
                "Shelf has different maximum size from one specified "
                f"({old_size} versus {max_shelf_size})"
            )

    def start_ptr(self) -> int:
        """Offset of the first byte of the variable section (cache-line aligned)."""
        return self._start

    def size(self) -> int:
        """Size of the shelf, rounded up to whole pages."""
        return self._mapped_size

    def fixed_section(self) -> memoryview:
        """View of the shelf from the start of its fixed section."""
        return self.buffer[CACHE_LINE_SIZE:]

    def from_offset(self, offset: int) -> memoryview | None:
        """View of the shelf starting at ``offset``; ``None`` for offset 0."""
        if offset == 0:
            return None
        if not 0 < offset <= len(self.buffer):
            raise ValueError(f"offset {offset} lies outside the shelf")
        return self.buffer[offset:]

    def to_offset(self, address: memoryview | None) -> int:
        """Offset of a view obtained from :meth:`from_offset`; 0 for ``None``."""
        if address is None:
            return 0
        view = memoryview(address)
        if view.obj is not self.buffer.obj or len(view) > len(self.buffer):
            raise ValueError("address does not belong to this shelf")
        return len(self.buffer) - len(view)

    def __getitem__(self, offset: int) -> memoryview | None:
        return self.from_offset(offset)