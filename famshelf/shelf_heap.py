"""A bump-pointer heap kept in a shelf file.

Layout of the heap at the start of the shelf::

    magic_num   [1 cache line]
    heap_size   [1 cache line]  capacity of the heap, excluding metadata
    next_free   [1 cache line]  offset of the next free byte
    data        [heap_size bytes]

Offsets handed out are absolute offsets from the start of the shelf, so 0
never names a valid allocation and serves as the null offset. Space is only
ever handed out, never reclaimed.
"""

from __future__ import annotations

import logging
import mmap
import os

from famshelf.smart_shelf import CACHE_LINE_SIZE, cas_u64, read_u64, round_up, write_u64

log = logging.getLogger(__name__)

MAGIC_NUM = 684327
METADATA_SIZE = CACHE_LINE_SIZE * 3

_MAGIC_OFFSET = 0
_HEAP_SIZE_OFFSET = CACHE_LINE_SIZE
_NEXT_FREE_OFFSET = CACHE_LINE_SIZE * 2


class ShelfHeapError(Exception):
    """A shelf heap could not be created, opened, mapped or closed."""


class NvHeapLayout:
    """The heap structure at the start of ``buffer``."""

    def __init__(self, buffer) -> None:
        if len(buffer) < METADATA_SIZE:
            raise ValueError("buffer is too small to hold the heap metadata")
        self._buf = buffer

    @staticmethod
    def create(buffer, heap_size: int) -> None:
        """Format ``buffer`` as an empty heap of ``heap_size`` bytes."""
        if heap_size <= 0:
            raise ValueError("heap_size must be positive")
        if len(buffer) < METADATA_SIZE + heap_size:
            raise ValueError(
                f"buffer of {len(buffer)} bytes cannot hold a heap of {heap_size} bytes"
            )
        write_u64(buffer, _NEXT_FREE_OFFSET, METADATA_SIZE)
        write_u64(buffer, _HEAP_SIZE_OFFSET, heap_size)
        buffer[METADATA_SIZE : METADATA_SIZE + heap_size] = bytes(heap_size)
        # The magic number goes last so a half-made heap never verifies.
        write_u64(buffer, _MAGIC_OFFSET, MAGIC_NUM)

    @staticmethod
    def destroy(buffer) -> None:
        """Wipe the heap formatted in ``buffer``."""
        if not NvHeapLayout.verify(buffer):
            raise ValueError("buffer holds no heap to destroy")
        heap_size = read_u64(buffer, _HEAP_SIZE_OFFSET)
        write_u64(buffer, _NEXT_FREE_OFFSET, 0)
        write_u64(buffer, _HEAP_SIZE_OFFSET, 0)
        buffer[METADATA_SIZE : METADATA_SIZE + heap_size] = bytes(heap_size)
        write_u64(buffer, _MAGIC_OFFSET, 0)

    @staticmethod
    def verify(buffer) -> bool:
        """Whether ``buffer`` holds a formatted heap."""
        if len(buffer) < METADATA_SIZE:
            return False
        return read_u64(buffer, _MAGIC_OFFSET) == MAGIC_NUM

    def size(self) -> int:
        """Capacity of the heap, excluding metadata."""
        return read_u64(self._buf, _HEAP_SIZE_OFFSET)

    def next_free(self) -> int:
        """Offset of the next byte that would be handed out."""
        return read_u64(self._buf, _NEXT_FREE_OFFSET)

    def alloc(self, size: int) -> int:
        """Allocate ``size`` bytes (rounded up to cache lines); return the offset or 0."""
        if size < 0:
            raise ValueError("size must not be negative")
        heap_size = self.size()
        step = round_up(size, CACHE_LINE_SIZE)
        while True:
            expected = self.next_free()
            desired = expected + step
            if desired - METADATA_SIZE > heap_size:
                return 0
            actual = cas_u64(self._buf, _NEXT_FREE_OFFSET, expected, desired)
            if actual == expected:
                return expected

    def free(self, offset: int) -> None:
        """Check ``offset`` names heap space; the space itself is not reclaimed."""
        if offset != 0 and not self.is_valid(offset):
            raise ValueError(f"offset {offset} is not inside the heap")

    def is_valid(self, offset: int) -> bool:
        """Whether ``offset`` lies inside the data area of the heap."""
        if offset < METADATA_SIZE:
            return False
        return offset - METADATA_SIZE < self.size()


class ShelfHeap:
    """A heap in the shelf file at ``pathname``, which must already exist."""

    def __init__(self, pathname) -> None:
        self._path = os.fspath(pathname)
        self._is_open = False
        self._fd: int | None = None
        self._mmap: mmap.mmap | None = None
        self._view: memoryview | None = None
        self._layout: NvHeapLayout | None = None

    @property
    def is_open(self) -> bool:
        """Whether the heap is open."""
        return self._is_open

    def __enter__(self) -> ShelfHeap:
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        if self._is_open:
            self.close()

    def _exists(self) -> bool:
        return os.path.isfile(self._path)

    def _open_map(self) -> tuple[int, mmap.mmap | None]:
        if not self._exists():
            raise ShelfHeapError(f"shelf file {self._path} not found")
        try:
            fd = os.open(self._path, os.O_RDWR)
        except OSError as exc:
            raise ShelfHeapError(f"cannot open shelf file {self._path}: {exc}") from exc
        try:
            size = os.fstat(fd).st_size
            mapped = mmap.mmap(fd, size) if size else None
        except (OSError, ValueError) as exc:
            os.close(fd)
            raise ShelfHeapError(f"cannot map shelf file {self._path}: {exc}") from exc
        return fd, mapped

    @staticmethod
    def _unmap_close(fd: int, mapped: mmap.mmap | None) -> None:
        if mapped is not None:
            mapped.close()
        os.close(fd)

    def create(self, heap_size: int) -> None:
        """Size the shelf file for a heap of ``heap_size`` bytes and format it."""
        if self._is_open:
            raise ShelfHeapError("cannot create a heap that is open")
        if heap_size <= 0:
            raise ValueError("heap_size must be positive")
        if not self._exists():
            raise ShelfHeapError(f"shelf file {self._path} not found")
        try:
            os.truncate(self._path, heap_size + METADATA_SIZE)
        except OSError as exc:
            raise ShelfHeapError(f"cannot size shelf file {self._path}: {exc}") from exc
        fd, mapped = self._open_map()
        try:
            assert mapped is not None
            NvHeapLayout.create(mapped, heap_size)
            mapped.flush()
        finally:
            self._unmap_close(fd, mapped)

    def destroy(self) -> None:
        """Check the shelf can be mapped; the file itself is left to the caller."""
        if self._is_open:
            raise ShelfHeapError("cannot destroy a heap that is open")
        fd, mapped = self._open_map()
        self._unmap_close(fd, mapped)

    def verify(self) -> bool:
        """Whether the shelf file holds a formatted heap."""
        if self._is_open:
            raise ShelfHeapError("cannot verify a heap that is open")
        fd, mapped = self._open_map()
        try:
            return mapped is not None and NvHeapLayout.verify(mapped)
        finally:
            self._unmap_close(fd, mapped)

    def recover(self) -> None:
        """Check the shelf file is still there; the heap keeps no state to repair."""
        if not self._exists():
            raise ShelfHeapError(f"shelf file {self._path} not found")

    def open(self) -> None:
        """Map the shelf and open the heap in it."""
        if self._is_open:
            raise ShelfHeapError("heap is already open")
        fd, mapped = self._open_map()
        if mapped is None or not NvHeapLayout.verify(mapped):
            self._unmap_close(fd, mapped)
            raise ShelfHeapError(f"shelf file {self._path} holds no valid heap")
        self._fd = fd
        self._mmap = mapped
        self._view = memoryview(mapped)
        self._layout = NvHeapLayout(self._view)
        self._is_open = True

    def close(self) -> None:
        """Unmap the shelf; fails while views from :meth:`offset_to_view` are held."""
        if not self._is_open:
            raise ShelfHeapError("heap is not open")
        assert self._mmap is not None and self._view is not None and self._fd is not None
        self._layout = None
        self._view.release()
        try:
            self._mmap.close()
        except BufferError as exc:
            self._view = memoryview(self._mmap)
            self._layout = NvHeapLayout(self._view)
            raise ShelfHeapError("views into the heap are still in use") from exc
        os.close(self._fd)
        self._fd = None
        self._mmap = None
        self._view = None
        self._is_open = False

    def _require_open(self) -> NvHeapLayout:
        if not self._is_open or self._layout is None:
            raise ShelfHeapError("heap is not open")
        return self._layout

    def size(self) -> int:
        """Capacity of the heap."""
        return self._require_open().size()

    def alloc(self, size: int) -> int:
        """Allocate ``size`` bytes; return the offset, or 0 when the heap is full."""
        offset = self._require_open().alloc(size)
        log.debug("ShelfHeap.alloc %d", offset)
        return offset

    def free(self, offset: int) -> None:
        """Free the allocation at ``offset`` (space is not reclaimed)."""
        self._require_open().free(offset)
        log.debug("ShelfHeap.free %d", offset)

    def is_valid_offset(self, offset: int) -> bool:
        """Whether ``offset`` lies inside the heap's data area."""
        return self._require_open().is_valid(offset)

    def offset_to_view(self, offset: int, length: int) -> memoryview:
        """Writable view of ``length`` bytes at ``offset``; release it before closing."""
        layout = self._require_open()
        assert self._view is not None
        if not layout.is_valid(offset):
            raise ValueError(f"offset {offset} is not inside the heap")
        if length < 0 or offset + length > len(self._view):
            raise ValueError(f"length {length} at offset {offset} runs past the shelf")
        return self._view[offset : offset + length]

    def map(self, offset: int, size: int) -> memoryview:
        """Map ``size`` bytes at ``offset`` separately; the mapping ends with the view."""
        self._require_open()
        assert self._fd is not None
        granularity = mmap.ALLOCATIONGRANULARITY
        file_size = os.fstat(self._fd).st_size
        if offset < 0 or size <= 0 or offset + size > file_size:
            raise ShelfHeapError(f"cannot map {size} bytes at offset {offset}")
        aligned_start = offset - offset % granularity
        end = offset + size
        aligned_end = min(end + (granularity - end % granularity), file_size)
        try:
            mapped = mmap.mmap(
                self._fd, aligned_end - aligned_start, offset=aligned_start
            )
        except (OSError, ValueError) as exc:
            raise ShelfHeapError(f"cannot map {size} bytes at offset {offset}") from exc
        start = offset - aligned_start
        return memoryview(mapped)[start : start + size]