"""Ownership records kept in shared memory, one per item.

Layout, starting at the beginning of the buffer::

    header               [cache-line aligned]  magic_num, size, item_count
    items[item_count]    [cache-line aligned]  a ProcessId (pid, start time) each

An item holding the zero ProcessId is unowned. Owners are recorded and
cleared with 128-bit compare-and-store, so competing processes never both
take an item.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass

from famshelf.smart_shelf import (
    CACHE_LINE_SIZE,
    cas_u128,
    read_u128,
    read_u64,
    round_up,
    write_u128,
    write_u64,
)

log = logging.getLogger(__name__)

MAGIC_NUM = 696377447

_MAGIC_OFFSET = 0
_SIZE_OFFSET = 8
_ITEM_COUNT_OFFSET = 16
HEADER_SIZE = round_up(32, CACHE_LINE_SIZE)
_ITEM_SIZE = 16


def _process_start_time(pid: int) -> int:
    """Start time of process ``pid`` in clock ticks, or 0 when it cannot be read."""
    try:
        with open(f"/proc/{pid}/stat", encoding="ascii", errors="replace") as stat:
            content = stat.read()
    except OSError:
        return 0
    fields = content.rpartition(")")[2].split()
    # Fields after the command name start at "state" (field 3); starttime is field 22.
    try:
        return int(fields[19])
    except (IndexError, ValueError):
        return 0


@dataclass(frozen=True)
class ProcessId:
    """A process identified by its pid and start time; all zero means nobody."""

    pid: int = 0
    start_time: int = 0

    @classmethod
    def current(cls) -> ProcessId:
        """The calling process."""
        pid = os.getpid()
        return cls(pid, _process_start_time(pid))

    def is_valid(self) -> bool:
        """Whether this names a process at all."""
        return self.pid != 0

    def is_alive(self) -> bool:
        """Whether the named process still runs (and is the same incarnation)."""
        if not self.is_valid():
            return False
        try:
            os.kill(self.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            pass
        except (OverflowError, ValueError):
            return False
        if self.start_time:
            actual = _process_start_time(self.pid)
            if actual and actual != self.start_time:
                return False
        return True

    def pack(self) -> tuple[int, int]:
        """The pair of 64-bit words stored in shared memory."""
        return (self.pid, self.start_time)

    @classmethod
    def unpack(cls, value) -> ProcessId:
        """Rebuild a ProcessId from the pair of words produced by :meth:`pack`."""
        pid, start_time = value
        return cls(pid, start_time)

    def __str__(self) -> str:
        return f"{self.pid}:{self.start_time}"


_NOBODY = ProcessId()


class OwnershipError(Exception):
    """An ownership structure could not be created, opened or destroyed."""


class Ownership:
    """Ownership records laid out at the start of ``buffer``.

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
        self._pid = _NOBODY
        self._item_count = 0

    @property
    def is_open(self) -> bool:
        """Whether the structure is open."""
        return self._is_open

    @property
    def size(self) -> int:
        """Space occupied by the structure (or available, before create/open)."""
        return self._size

    @property
    def count(self) -> int:
        """Number of items, known once the structure is open."""
        return self._item_count

    def __enter__(self) -> Ownership:
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        if self._is_open:
            self.close()

    def create(self, item_count: int) -> None:
        """Format the buffer with ``item_count`` unowned items."""
        if self._is_open:
            raise OwnershipError("cannot create an ownership structure that is open")
        if item_count <= 0:
            raise ValueError("item_count must be positive")

        cur_size = self._size
        if cur_size < HEADER_SIZE:
            log.error("Ownership: insufficient space for header")
            raise OwnershipError("insufficient space for header")
        self._buf[0:HEADER_SIZE] = bytes(HEADER_SIZE)

        cur_size -= HEADER_SIZE
        items_size = round_up(item_count * _ITEM_SIZE, CACHE_LINE_SIZE)
        if cur_size < items_size:
            log.error("Ownership: insufficient space for items")
            raise OwnershipError(
                f"insufficient space ({cur_size}) for items ({items_size})"
            )
        self._buf[HEADER_SIZE : HEADER_SIZE + items_size] = bytes(items_size)

        total = HEADER_SIZE + items_size
        write_u64(self._buf, _ITEM_COUNT_OFFSET, item_count)
        write_u64(self._buf, _SIZE_OFFSET, total)
        # The magic number goes last so a half-made structure never verifies.
        write_u64(self._buf, _MAGIC_OFFSET, MAGIC_NUM)
        self._size = total

    def destroy(self) -> None:
        """Wipe the structure; raise OwnershipError if there is none."""
        if self._is_open:
            raise OwnershipError("cannot destroy an ownership structure that is open")
        if not self.verify():
            raise OwnershipError("no ownership structure to destroy")
        size = read_u64(self._buf, _SIZE_OFFSET)
        self._size = size
        self._buf[0:size] = bytes(size)

    def verify(self) -> bool:
        """Whether the buffer holds a formatted ownership structure."""
        return read_u64(self._buf, _MAGIC_OFFSET) == MAGIC_NUM

    def open(self) -> None:
        """Open a formatted ownership structure for use."""
        if self._is_open:
            raise OwnershipError("ownership structure is already open")
        if not self.verify():
            log.error("Ownership: header->magic_num does not match")
            raise OwnershipError("header magic number does not match")
        stored_size = read_u64(self._buf, _SIZE_OFFSET)
        if stored_size > self._size:
            log.error("Ownership: insufficient in this shelf")
            raise OwnershipError("header size does not fit in the available space")
        self._size = stored_size
        self._item_count = read_u64(self._buf, _ITEM_COUNT_OFFSET)
        self._pid = ProcessId.current()
        self._is_open = True

    def close(self) -> None:
        """Close the structure."""
        if not self._is_open:
            raise OwnershipError("ownership structure is not open")
        self._is_open = False

    def _item_offset(self, item_idx: int) -> int:
        if not self._is_open:
            raise OwnershipError("ownership structure is not open")
        if not 0 <= item_idx < self._item_count:
            raise IndexError(f"item index {item_idx} out of range")
        return HEADER_SIZE + item_idx * _ITEM_SIZE

    def owner(self, item_idx: int) -> ProcessId:
        """The process recorded as owning ``item_idx``."""
        return ProcessId.unpack(read_u128(self._buf, self._item_offset(item_idx)))

    def acquire_item(self, item_idx: int) -> bool:
        """Record this process as owner of an unowned item; report success."""
        offset = self._item_offset(item_idx)
        self._pid = ProcessId.current()
        result = cas_u128(self._buf, offset, _NOBODY.pack(), self._pid.pack())
        return ProcessId.unpack(result) == _NOBODY

    def release_item(self, item_idx: int) -> bool:
        """Clear an item this process owns; report success."""
        offset = self._item_offset(item_idx)
        result = cas_u128(self._buf, offset, self._pid.pack(), _NOBODY.pack())
        return ProcessId.unpack(result) == self._pid

    def check_item(self, item_idx: int) -> bool:
        """Whether some process owns the item."""
        return self.owner(item_idx).is_valid()

    def check_and_revoke_item(
        self,
        item_idx: int,
        recover: Callable[[int], object] | None = None,
    ) -> bool:
        """Take an item away from a dead owner.

        Without ``recover`` the item is simply cleared. With ``recover`` this
        process takes the item, calls ``recover(item_idx)`` and then clears
        it; if ``recover`` raises, the dead owner is written back so others
        can try again, and the exception propagates. Returns True when this
        call revoked the item.
        """
        offset = self._item_offset(item_idx)
        old = ProcessId.unpack(read_u128(self._buf, offset))
        if old.is_valid():
            log.debug("Ownership: checking ownership of heap %d: pid %s", item_idx, old)
        if not old.is_valid() or old.is_alive():
            return False

        if recover is None:
            result = ProcessId.unpack(cas_u128(self._buf, offset, old.pack(), _NOBODY.pack()))
            if result == old:
                log.critical(
                    "Ownership: successfully revoking ownership of process %s of heap %d",
                    old,
                    item_idx,
                )
                return True
            log.critical(
                "Ownership: failed to revoke ownership of process %s of heap %d",
                old,
                item_idx,
            )
            return False

        self._pid = ProcessId.current()
        result = ProcessId.unpack(cas_u128(self._buf, offset, old.pack(), self._pid.pack()))
        if result != old:
            log.critical(
                "Ownership: someone else is doing recovery for process %s of heap %d",
                old,
                item_idx,
            )
            return False

        log.critical("Ownership: start recovery for process %s of heap %d", old, item_idx)
        try:
            recover(item_idx)
        except Exception:
            log.critical("Ownership: failed to recover heap %d", item_idx)
            write_u128(self._buf, offset, old.pack())
            raise
        log.critical("Ownership: heap %d recovered", item_idx)
        write_u128(self._buf, offset, _NOBODY.pack())
        return True