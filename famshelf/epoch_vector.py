"""The epoch vector: a frontier epoch and the epochs reported by participants.

Shared layout, starting at the beginning of the buffer::

    frontier                  [1 cache line]  64-bit epoch counter
    slots[NR_PARTICIPANT]     16 bytes each   (participant id, reported epoch)

A slot holding (0, EPOCH_NO_PARTICIPANT) is free. Participants take a slot
with a 128-bit compare-and-store, so no two processes share one.

:class:`EpochVector` wraps the shared vector for one process and keeps a
cached copy of every slot together with the time a change was last seen.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from dataclasses import dataclass, field

from famshelf.smart_shelf import (
    CACHE_LINE_SIZE,
    cas_u128,
    cas_u64,
    read_u128,
    read_u64,
    write_u128,
    write_u64,
)

NR_PARTICIPANT = 128

PID_NO_PARTICIPANT = 0

EPOCH_NO_PARTICIPANT = 0
EPOCH_NEW_PARTICIPANT = 1
EPOCH_ACTIVE_PARTICIPANT = 2
EPOCH_MIN_ACTIVE = 3

_FRONTIER_OFFSET = 0
_SLOTS_OFFSET = CACHE_LINE_SIZE
_SLOT_SIZE = 16
_REPORTED_IN_SLOT = 8

SHARED_SIZE = _SLOTS_OFFSET + NR_PARTICIPANT * _SLOT_SIZE

_FREE_SLOT = (PID_NO_PARTICIPANT, EPOCH_NO_PARTICIPANT)


class EpochVectorFull(RuntimeError):
    """Every participant slot of the epoch vector is taken."""


class SharedEpochVector:
    """The epoch vector stored at the start of ``buffer`` (shared memory)."""

    def __init__(self, buffer) -> None:
        view = memoryview(buffer)
        if len(view) < SHARED_SIZE:
            raise ValueError(
                f"buffer of {len(view)} bytes cannot hold an epoch vector ({SHARED_SIZE} bytes)"
            )
        self._buf = view

    @staticmethod
    def _slot_offset(slot_id: int) -> int:
        if not 0 <= slot_id < NR_PARTICIPANT:
            raise IndexError(f"slot {slot_id} out of range")
        return _SLOTS_OFFSET + slot_id * _SLOT_SIZE

    def frontier(self) -> int:
        """The frontier epoch."""
        return read_u64(self._buf, _FRONTIER_OFFSET)

    def set_frontier(self, epoch: int) -> int:
        """Overwrite the frontier and return the value now stored."""
        write_u64(self._buf, _FRONTIER_OFFSET, epoch)
        return read_u64(self._buf, _FRONTIER_OFFSET)

    def cas_frontier(self, old_epoch: int, new_epoch: int) -> int:
        """Compare-and-store the frontier; return the frontier found before."""
        return cas_u64(self._buf, _FRONTIER_OFFSET, old_epoch, new_epoch)

    def reported(self, slot_id: int) -> int:
        """Epoch reported in slot ``slot_id``."""
        return read_u64(self._buf, self._slot_offset(slot_id) + _REPORTED_IN_SLOT)

    def set_reported(self, slot_id: int, epoch: int) -> None:
        """Write the epoch reported in slot ``slot_id``."""
        write_u64(self._buf, self._slot_offset(slot_id) + _REPORTED_IN_SLOT, epoch)

    def slot(self, slot_id: int) -> tuple[int, int]:
        """The (participant id, reported epoch) pair of slot ``slot_id``."""
        return read_u128(self._buf, self._slot_offset(slot_id))

    def cas_slot(
        self, slot_id: int, old: tuple[int, int], new: tuple[int, int]
    ) -> tuple[int, int]:
        """Compare-and-store a whole slot; return the pair found before."""
        return cas_u128(self._buf, self._slot_offset(slot_id), old, new)

    def acquire_slot(self, pid: int) -> int:
        """Take the first free slot for ``pid`` and return its index."""
        for slot_id in range(NR_PARTICIPANT):
            result = self.cas_slot(slot_id, _FREE_SLOT, (pid, EPOCH_NEW_PARTICIPANT))
            if result == _FREE_SLOT:
                return slot_id
        raise EpochVectorFull("no free slot in the epoch vector")

    def release_slot(self, slot_id: int) -> None:
        """Mark slot ``slot_id`` free."""
        write_u128(self._buf, self._slot_offset(slot_id), _FREE_SLOT)

    def reset(self) -> None:
        """Clear the frontier and every slot."""
        write_u64(self._buf, _FRONTIER_OFFSET, 0)
        for slot_id in range(NR_PARTICIPANT):
            write_u128(self._buf, self._slot_offset(slot_id), (0, 0))


@dataclass
class _CachedSlot:
    valid: bool = False
    pid: int = PID_NO_PARTICIPANT
    reported: int = EPOCH_NO_PARTICIPANT
    last_modified: float = field(default_factory=time.monotonic)


class EpochVector:
    """Per-process view of a :class:`SharedEpochVector` with a local cache.

    With ``may_create`` the frontier is initialised to ``EPOCH_MIN_ACTIVE``.
    Iterating yields a :class:`Participant` for every slot, in slot order.
    """

    def __init__(self, shared: SharedEpochVector, may_create: bool) -> None:
        self._shared = shared
        if may_create:
            shared.set_frontier(EPOCH_MIN_ACTIVE)
        self._cache = [_CachedSlot() for _ in range(NR_PARTICIPANT)]

    def frontier(self) -> int:
        """The frontier epoch."""
        return self._shared.frontier()

    def cas_frontier(self, old_epoch: int, new_epoch: int) -> int:
        """Compare-and-store the frontier; return the frontier found before."""
        return self._shared.cas_frontier(old_epoch, new_epoch)

    def register_participant(self, pid: int) -> Participant:
        """Take a slot for ``pid``; raise :class:`EpochVectorFull` if none is free."""
        slot = self._shared.acquire_slot(pid)
        self._cache[slot].pid = pid
        return Participant(self, slot)

    def unregister_participant(self, participant: Participant) -> None:
        """Free the slot of ``participant``."""
        self._cache[participant.slot].valid = False
        self._shared.release_slot(participant.slot)

    def invalidate_cache(self) -> None:
        """Force the next reads of every slot to go to shared memory."""
        for entry in self._cache:
            entry.valid = False

    def refresh_modified_time(self) -> None:
        """Set the last-seen-change time of every slot to now."""
        now = time.monotonic()
        for entry in self._cache:
            entry.last_modified = now

    def __iter__(self) -> Iterator[Participant]:
        for slot in range(NR_PARTICIPANT):
            yield Participant(self, slot)

    def __len__(self) -> int:
        return NR_PARTICIPANT

    def to_string(self) -> str:
        """The frontier followed by every participant reporting beyond the minimum."""
        parts = [f"F: {self.frontier():<10}"]
        for participant in self:
            reported = participant.reported()
            if reported > EPOCH_MIN_ACTIVE:
                parts.append(f"{participant.id():>7}: {reported:<10}")
        return "".join(parts)

    def __str__(self) -> str:
        return self.to_string()

    def reset(self) -> None:
        """Clear the shared vector."""
        self._shared.reset()

    def _pid(self, slot: int) -> int:
        return self._cache[slot].pid

    def _reported(self, slot: int) -> int:
        entry = self._cache[slot]
        if entry.valid:
            return entry.reported
        pid, reported = self._shared.slot(slot)
        entry.pid = pid
        if entry.reported != reported:
            entry.reported = reported
            entry.last_modified = time.monotonic()
        entry.valid = True
        return reported

    def _set_reported(self, slot: int, epoch: int) -> None:
        self._shared.set_reported(slot, epoch)
        entry = self._cache[slot]
        entry.valid = True
        entry.reported = epoch
        entry.last_modified = time.monotonic()

    def _last_modified(self, slot: int) -> float:
        return self._cache[slot].last_modified


@dataclass(frozen=True)
class Participant:
    """The participant in one slot of an :class:`EpochVector`."""

    vector: EpochVector
    slot: int

    def last_modified(self) -> float:
        """Monotonic time at which a change of the reported epoch was last seen."""
        return self.vector._last_modified(self.slot)

    def activate(self) -> None:
        """Freeze the frontier, then report the current frontier.

        Reported epochs only ever grow: first the active marker, then the
        frontier, which is never below it.
        """
        self.update_reported(EPOCH_ACTIVE_PARTICIPANT)
        self.update_reported(self.vector.frontier())

    def unregister(self) -> None:
        """Give the slot back."""
        self.vector.unregister_participant(self)

    def update_reported(self, epoch: int) -> None:
        """Report ``epoch`` as this participant's view of the frontier."""
        self.vector._set_reported(self.slot, epoch)

    def reported(self) -> int:
        """The epoch last reported by this participant."""
        return self.vector._reported(self.slot)

    def id(self) -> int:
        """The participant's id."""
        return self.vector._pid(self.slot)